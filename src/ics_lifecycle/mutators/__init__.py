"""
DocumentMutator: thin orchestrator binding configuration and the identity
registry to the invitation, update and cancellation builders.
"""

import logging

from ics_lifecycle.models import CalendarDocument
from ics_lifecycle.models import CodecConfig
from ics_lifecycle.models import EventData
from ics_lifecycle.models import MutationResult
from ics_lifecycle.mutators.cancellation import transform_to_cancellation
from ics_lifecycle.mutators.invitation import build_invitation
from ics_lifecycle.mutators.invitation import build_publish
from ics_lifecycle.mutators.update import apply_update
from ics_lifecycle.registry import OPERATION_CANCEL
from ics_lifecycle.registry import IdentityRegistry
from ics_lifecycle.registry import generate_uid
from ics_lifecycle.serializer import content_type
from ics_lifecycle.serializer import serialize


class DocumentMutator:
    """Produces finished documents and keeps the registry's bookkeeping current."""

    def __init__(self, config: CodecConfig | None = None, registry: IdentityRegistry | None = None):
        self.config = config or CodecConfig()
        self.registry = registry
        self.logger = logging.getLogger(__name__)

    def _finish(self, doc: CalendarDocument, internal_id: str | None) -> MutationResult:
        text = serialize(doc)
        return MutationResult(
            document=doc,
            text=text,
            content_type=content_type(doc.method),
            internal_id=internal_id,
        )

    def _sequence_for(self, internal_id: str, requested: int | None, known: bool) -> int | None:
        """SEQUENCE for a new document of a tracked id; never below one already issued."""
        if requested is None:
            return self.registry.next_sequence(internal_id) if known else None
        current = self.registry.current_sequence(internal_id)
        if 0 <= requested < current:
            self.logger.warning(
                "SEQUENCE %d for %s is below the issued %d; using %d",
                requested,
                internal_id,
                current,
                current,
            )
            return current
        return requested

    def invite(
        self,
        event_data: EventData,
        *,
        internal_id: str | None = None,
        uid: str | None = None,
        sequence: int | None = None,
    ) -> MutationResult:
        """Build a METHOD:REQUEST document, resolving the UID through the registry.

        Re-inviting an id the registry already tracks is an edit: without an
        explicit ``sequence`` the next SEQUENCE is reserved for it.
        """
        internal_id = internal_id or event_data.internal_id
        offered = uid or event_data.uid
        if sequence is None:
            sequence = event_data.sequence
        if self.registry is not None and internal_id:
            known = (
                self.registry.get_record(internal_id) is not None
                or self.registry.current_sequence(internal_id) > 0
            )
            uid = self.registry.resolve_uid(internal_id, provided_uid=offered)
            sequence = self._sequence_for(internal_id, sequence, known)
        else:
            uid = offered or generate_uid(self.config.uid_domain)

        doc = build_invitation(event_data, uid, sequence=sequence, config=self.config)
        result = self._finish(doc, internal_id)
        if self.registry is not None and internal_id:
            self.registry.store_document(internal_id, result.text, doc.event.sequence)
        return result

    def update(
        self,
        original: CalendarDocument | str | None,
        event_data: EventData | None = None,
        *,
        internal_id: str | None = None,
    ) -> MutationResult:
        """Build the next revision of ``original``, keeping the properties it does not change."""
        if internal_id is None and event_data is not None:
            internal_id = event_data.internal_id
        doc = apply_update(
            original,
            event_data,
            internal_id=internal_id,
            registry=self.registry,
            config=self.config,
        )
        result = self._finish(doc, internal_id)
        for diagnostic in doc.diagnostics:
            self.logger.debug("Update diagnostic: %s", diagnostic)

        if self.registry is not None and internal_id:
            self.registry.store_document(internal_id, result.text, doc.event.sequence)
        return result

    def cancel(
        self,
        original: CalendarDocument | str | None,
        event_data: EventData | None = None,
        *,
        internal_id: str | None = None,
    ) -> MutationResult:
        """Build the cancellation of ``original``; never raises on malformed input."""
        if internal_id is None and event_data is not None:
            internal_id = event_data.internal_id
        doc = transform_to_cancellation(
            original,
            event_data,
            internal_id=internal_id,
            registry=self.registry,
            config=self.config,
        )
        result = self._finish(doc, internal_id)
        for diagnostic in doc.diagnostics:
            self.logger.debug("Cancellation diagnostic: %s", diagnostic)

        if self.registry is not None and internal_id:
            self.registry.store_document(internal_id, result.text, doc.event.sequence)
            self.registry.notify(internal_id, result.uid, OPERATION_CANCEL)
        return result

    def publish(self, documents: list[CalendarDocument], calendar_name: str | None = None):
        """Merge the events of several documents into one PUBLISH export."""
        events = [event for doc in documents for event in doc.events]
        doc = build_publish(events, calendar_name, self.config)
        return self._finish(doc, None)
