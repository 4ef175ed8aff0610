"""
Identity registry: durable internal-id -> UID bindings, foreign UID mappings
and SEQUENCE bookkeeping.

One instance is constructed per process with its backing store injected.
Reads go through plain dict lookups; writes for one internal id are
serialised by a per-id lock that lives only while someone holds or waits
for it, with the store's insert acting as the final
compare-and-set.
"""

import logging
import threading
import time
import uuid
from contextlib import contextmanager
from typing import Callable

from ics_lifecycle.models import DEFAULT_UID_DOMAIN
from ics_lifecycle.models import IdentityConflictError
from ics_lifecycle.models import IdentityRecord
from ics_lifecycle.models import LifecycleNotice
from ics_lifecycle.parser import extract_sequence
from ics_lifecycle.parser import extract_uid

logger = logging.getLogger(__name__)

OPERATION_ASSIGN = "assign"
OPERATION_CANCEL = "cancel"
OPERATION_DELETE = "delete"


class _KeyLock:
    __slots__ = ("lock", "users")

    def __init__(self):
        self.lock = threading.Lock()
        self.users = 0


def generate_uid(domain: str = DEFAULT_UID_DOMAIN) -> str:
    """New UID of the form ``event-<epoch ms>-<random>@<domain>``."""
    return f"event-{int(time.time() * 1000)}-{uuid.uuid4().hex[:12]}@{domain}"


class IdentityRegistry:
    """Tracks which UID belongs to which internal event id.

    ``store`` is duck-typed (see ``ics_lifecycle.db.IdentityStore``); without
    one the registry keeps its state in memory only.  ``notifier`` is called
    with a ``LifecycleNotice`` after each assignment, cancellation or delete.
    """

    def __init__(
        self,
        store=None,
        notifier: Callable[[LifecycleNotice], None] | None = None,
        uid_domain: str = DEFAULT_UID_DOMAIN,
    ):
        self.store = store
        self.notifier = notifier
        self.uid_domain = uid_domain
        self.conflicts: list[IdentityConflictError] = []

        self._records: dict[str, IdentityRecord] = {}
        self._external: dict[str, str] = {}
        self._sequences: dict[str, int] = {}
        self._locks: dict[str, _KeyLock] = {}
        self._locks_guard = threading.Lock()
        self._load()

    def _load(self):
        if self.store is None:
            return
        for record in self.store.all_identities():
            self._records[record.internal_id] = record
            if record.raw_document is not None:
                self._sequences[record.internal_id] = record.sequence
        self._external.update(self.store.all_mappings())
        logger.debug(
            "Loaded %d UID binding(s) and %d external mapping(s)",
            len(self._records),
            len(self._external),
        )

    @contextmanager
    def _locked(self, internal_id: str):
        """Hold the lock for one id; it is dropped once no thread needs it."""
        with self._locks_guard:
            entry = self._locks.get(internal_id)
            if entry is None:
                entry = self._locks[internal_id] = _KeyLock()
            entry.users += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._locks_guard:
                entry.users -= 1
                if entry.users == 0:
                    del self._locks[internal_id]

    # ------------------------------------------------------------------ #
    # UID bindings                                                        #
    # ------------------------------------------------------------------ #

    def generate_uid(self) -> str:
        return generate_uid(self.uid_domain)

    def get_uid(self, internal_id) -> str | None:
        """Bound UID for ``internal_id`` or None. Lock-free."""
        record = self._records.get(str(internal_id))
        return record.uid if record else None

    def get_record(self, internal_id) -> IdentityRecord | None:
        key = str(internal_id)
        record = self._records.get(key)
        if record is None and self.store is not None:
            record = self.store.get_identity(key)
            if record is not None:
                self._records[key] = record
        return record

    def _conflict(self, internal_id: str, existing_uid: str, offered_uid: str):
        conflict = IdentityConflictError(internal_id, existing_uid, offered_uid)
        self.conflicts.append(conflict)
        logger.warning("UID conflict: %s; keeping existing binding", conflict)

    def _check_offers(self, internal_id: str, bound: str, *offers: str | None):
        for offered in offers:
            if offered and offered != bound:
                self._conflict(internal_id, bound, offered)

    def _bind(self, internal_id: str, uid: str) -> str:
        """Bind under the caller's per-id lock; returns the UID that won."""
        if self.store is not None:
            winner = self.store.bind_uid(internal_id, uid)
            record = self.store.get_identity(internal_id)
        else:
            winner = uid
            now = int(time.time())
            record = IdentityRecord(internal_id, uid, created_at=now, updated_at=now)
        if record is not None:
            self._records[internal_id] = record
        if winner != uid:
            self._conflict(internal_id, winner, uid)
            return winner
        logger.info("Assigned UID %s to internal id %s", uid, internal_id)
        self.notify(internal_id, uid, OPERATION_ASSIGN)
        return uid

    def resolve_uid(
        self,
        internal_id,
        provided_uid: str | None = None,
        existing_raw_document: str | None = None,
    ) -> str:
        """Return the permanent UID for ``internal_id``, binding one if needed.

        Candidates, in order: the UID in ``existing_raw_document``, the UID in
        the stored raw document for this id, ``provided_uid``, a fresh UID.
        Once bound, the binding is returned unchanged and any differing
        candidate is recorded as a conflict.
        """
        key = str(internal_id)
        supplied_uid = extract_uid(existing_raw_document)

        bound = self.get_uid(key)
        if bound is None and self.store is not None:
            record = self.get_record(key)
            bound = record.uid if record else None
        if bound is not None:
            self._check_offers(key, bound, supplied_uid, provided_uid)
            return bound

        with self._locked(key):
            bound = self.get_uid(key)
            if bound is not None:
                self._check_offers(key, bound, supplied_uid, provided_uid)
                return bound

            candidate, source = supplied_uid, "supplied raw document"
            if not candidate:
                candidate, source = self._stored_document_uid(key), "stored raw document"
            if not candidate:
                candidate, source = provided_uid, "provided UID"
            if not candidate:
                candidate, source = self.generate_uid(), "generated"
            logger.debug("Resolving UID for %s from %s: %s", key, source, candidate)

            winner = self._bind(key, candidate)
            if provided_uid != candidate:
                self._check_offers(key, winner, provided_uid)
            return winner

    def register_uid(self, internal_id, uid: str) -> str:
        """Bind ``uid`` unless the id is already bound; returns the binding."""
        key = str(internal_id)
        with self._locked(key):
            bound = self.get_uid(key)
            if bound is not None:
                self._check_offers(key, bound, uid)
                return bound
            return self._bind(key, uid)

    def sync_external_uids(self, bindings) -> int:
        """Register ``(internal_id, uid)`` pairs seen in a foreign source.

        Returns the number of new bindings.
        """
        added = 0
        for internal_id, uid in bindings:
            if not uid:
                continue
            had = self.get_uid(internal_id) is not None
            self.register_uid(internal_id, uid)
            if not had:
                added += 1
        logger.debug("Synchronised external UIDs: %d new binding(s)", added)
        return added

    def delete_uid(self, internal_id) -> bool:
        """Forget the binding for an event that no longer exists anywhere."""
        key = str(internal_id)
        with self._locked(key):
            record = self._records.pop(key, None)
            self._sequences.pop(key, None)
            if self.store is not None:
                if record is None:
                    record = self.store.get_identity(key)
                self.store.delete_identity(key)
        if record is None:
            return False
        logger.info("Deleted UID binding %s for internal id %s", record.uid, key)
        self.notify(key, record.uid, OPERATION_DELETE)
        return True

    def _stored_document_uid(self, internal_id: str) -> str | None:
        if self.store is None:
            return None
        stored = self.store.get_document(internal_id)
        return extract_uid(stored[0]) if stored else None

    # ------------------------------------------------------------------ #
    # External UID mappings                                               #
    # ------------------------------------------------------------------ #

    def register_external_mapping(self, external_uid: str, internal_uid: str):
        if not external_uid or not internal_uid:
            return
        previous = self._external.get(external_uid)
        if previous == internal_uid:
            return
        if previous is not None:
            logger.warning(
                "External UID %s remapped from %s to %s", external_uid, previous, internal_uid
            )
        self._external[external_uid] = internal_uid
        if self.store is not None:
            self.store.put_mapping(external_uid, internal_uid)

    def lookup_internal_uid(self, external_uid: str) -> str:
        """Internal UID for a foreign UID, or the foreign UID itself."""
        return self._external.get(external_uid, external_uid)

    # ------------------------------------------------------------------ #
    # SEQUENCE bookkeeping                                                #
    # ------------------------------------------------------------------ #

    def current_sequence(self, internal_id, raw_document: str | None = None) -> int:
        """Highest SEQUENCE known for ``internal_id`` (0 when none)."""
        key = str(internal_id)
        known = self._sequences.get(key)
        if known is None and self.store is not None:
            stored = self.store.get_document(key)
            if stored is not None:
                known = max(stored[1], extract_sequence(stored[0]) or 0)
                self._sequences[key] = known
        return max(known or 0, extract_sequence(raw_document) or 0)

    def record_sequence(self, internal_id, sequence: int) -> int:
        """Raise the known SEQUENCE to ``sequence``; never lowers it."""
        key = str(internal_id)
        with self._locked(key):
            current = self.current_sequence(key)
            if sequence < current:
                logger.warning(
                    "Refusing to lower SEQUENCE for %s from %d to %d", key, current, sequence
                )
                return current
            self._sequences[key] = sequence
            record = self._records.get(key)
            if record is not None:
                record.sequence = sequence
            return sequence

    def next_sequence(self, internal_id, raw_document: str | None = None) -> int:
        """Reserve and return the next SEQUENCE for ``internal_id``."""
        key = str(internal_id)
        with self._locked(key):
            value = self.current_sequence(key, raw_document) + 1
            self._sequences[key] = value
        logger.debug("Next SEQUENCE for %s is %d", key, value)
        return value

    def store_document(self, internal_id, raw_document: str, sequence: int | None = None):
        """Persist the latest raw document and its SEQUENCE."""
        key = str(internal_id)
        if sequence is None:
            sequence = extract_sequence(raw_document) or 0
        sequence = self.record_sequence(key, sequence)
        record = self._records.get(key)
        if record is not None:
            record.raw_document = raw_document
            record.updated_at = int(time.time())
        if self.store is not None:
            self.store.save_document(key, raw_document, sequence)

    # ------------------------------------------------------------------ #
    # Notifications                                                       #
    # ------------------------------------------------------------------ #

    def notify(self, internal_id, uid: str, operation: str):
        """Tell the notification collaborator about a lifecycle change."""
        if self.notifier is None:
            return
        try:
            self.notifier(LifecycleNotice(str(internal_id), uid, operation))
        except Exception as e:
            logger.warning("Lifecycle notifier failed for %s (%s): %s", internal_id, operation, e)
