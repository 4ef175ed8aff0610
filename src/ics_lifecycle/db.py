"""
SQLite persistence for UID bindings, stored raw documents and external UID mappings.
"""

import logging
import sqlite3
import threading
import time
from pathlib import Path

from ics_lifecycle.models import CalendarCodecError
from ics_lifecycle.models import IdentityRecord


class IdentityStore:
    """Backing store injected into IdentityRegistry.

    One connection is shared between threads; every statement runs under
    ``self._lock`` so callers need no coordination of their own.
    """

    def __init__(self, db_path: Path):
        self.db_path = db_path
        self.conn: sqlite3.Connection | None = None
        self._lock = threading.RLock()
        self.logger = logging.getLogger(__name__)

    def __enter__(self):
        if self.conn is None:
            self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def connect(self):
        """Initialize and connect to the identity database."""
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self.conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        except (OSError, sqlite3.Error) as e:
            raise CalendarCodecError(f"Cannot open identity database {self.db_path}: {e}") from e
        self.conn.row_factory = sqlite3.Row  # Enable column access by name
        self._init_schema()

    def _init_schema(self):
        """Create the tables if they don't exist."""
        self.conn.executescript("""
            CREATE TABLE IF NOT EXISTS event_uid (
                internal_id TEXT PRIMARY KEY,
                uid TEXT NOT NULL,
                created_at INTEGER NOT NULL,
                updated_at INTEGER NOT NULL
            );
            CREATE TABLE IF NOT EXISTS event_document (
                internal_id TEXT PRIMARY KEY,
                raw_document TEXT NOT NULL,
                sequence INTEGER NOT NULL DEFAULT 0,
                updated_at INTEGER NOT NULL
            );
            CREATE TABLE IF NOT EXISTS uid_mapping (
                external_uid TEXT PRIMARY KEY,
                internal_uid TEXT NOT NULL,
                created_at INTEGER NOT NULL
            );
        """)
        self.conn.commit()

    # ------------------------------------------------------------------ #
    # UID bindings                                                        #
    # ------------------------------------------------------------------ #

    def _record(self, row: sqlite3.Row) -> IdentityRecord:
        return IdentityRecord(
            internal_id=row["internal_id"],
            uid=row["uid"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            sequence=row["sequence"] or 0,
            raw_document=row["raw_document"],
        )

    def get_identity(self, internal_id: str) -> IdentityRecord | None:
        """Get the binding for an internal id, joined with its stored document."""
        with self._lock:
            cursor = self.conn.execute(
                "SELECT u.internal_id, u.uid, u.created_at, u.updated_at, "
                "d.sequence, d.raw_document "
                "FROM event_uid u LEFT JOIN event_document d ON d.internal_id = u.internal_id "
                "WHERE u.internal_id = ? LIMIT 1",
                (internal_id,),
            )
            row = cursor.fetchone()
        return self._record(row) if row else None

    def all_identities(self) -> list[IdentityRecord]:
        """Retrieve every binding (used to warm the registry cache)."""
        with self._lock:
            cursor = self.conn.execute(
                "SELECT u.internal_id, u.uid, u.created_at, u.updated_at, "
                "d.sequence, d.raw_document "
                "FROM event_uid u LEFT JOIN event_document d ON d.internal_id = u.internal_id"
            )
            rows = cursor.fetchall()
        return [self._record(row) for row in rows]

    def bind_uid(self, internal_id: str, uid: str) -> str:
        """Bind ``uid`` to ``internal_id`` unless a binding exists; return the bound UID.

        The insert is a compare-and-set: an existing binding is never
        overwritten, and the caller learns which UID won.
        """
        timestamp = int(time.time())
        with self._lock:
            self.conn.execute(
                "INSERT INTO event_uid (internal_id, uid, created_at, updated_at) "
                "VALUES (?, ?, ?, ?) ON CONFLICT(internal_id) DO NOTHING",
                (internal_id, uid, timestamp, timestamp),
            )
            self.conn.commit()
            row = self.conn.execute(
                "SELECT uid FROM event_uid WHERE internal_id = ?", (internal_id,)
            ).fetchone()
        return row["uid"]

    def find_internal_id(self, uid: str) -> str | None:
        """Reverse lookup: internal id bound to ``uid``."""
        with self._lock:
            row = self.conn.execute(
                "SELECT internal_id FROM event_uid WHERE uid = ? LIMIT 1", (uid,)
            ).fetchone()
        return row["internal_id"] if row else None

    def delete_identity(self, internal_id: str):
        """Delete the binding and stored document for an internal id."""
        with self._lock:
            self.conn.execute("DELETE FROM event_uid WHERE internal_id = ?", (internal_id,))
            self.conn.execute("DELETE FROM event_document WHERE internal_id = ?", (internal_id,))
            self.conn.commit()

    # ------------------------------------------------------------------ #
    # Stored raw documents                                                #
    # ------------------------------------------------------------------ #

    def get_document(self, internal_id: str) -> tuple[str, int] | None:
        """Return ``(raw_document, sequence)`` for an internal id."""
        with self._lock:
            row = self.conn.execute(
                "SELECT raw_document, sequence FROM event_document WHERE internal_id = ?",
                (internal_id,),
            ).fetchone()
        return (row["raw_document"], row["sequence"]) if row else None

    def save_document(self, internal_id: str, raw_document: str, sequence: int):
        """Upsert the raw document; the stored sequence never decreases."""
        with self._lock:
            self.conn.execute(
                "INSERT INTO event_document (internal_id, raw_document, sequence, updated_at) "
                "VALUES (?, ?, ?, ?) "
                "ON CONFLICT(internal_id) DO UPDATE SET "
                "raw_document = excluded.raw_document, "
                "sequence = MAX(event_document.sequence, excluded.sequence), "
                "updated_at = excluded.updated_at",
                (internal_id, raw_document, sequence, int(time.time())),
            )
            self.conn.execute(
                "UPDATE event_uid SET updated_at = ? WHERE internal_id = ?",
                (int(time.time()), internal_id),
            )
            self.conn.commit()

    # ------------------------------------------------------------------ #
    # External UID mappings                                               #
    # ------------------------------------------------------------------ #

    def put_mapping(self, external_uid: str, internal_uid: str):
        """Record (or replace) the internal UID for a foreign UID."""
        with self._lock:
            self.conn.execute(
                "INSERT INTO uid_mapping (external_uid, internal_uid, created_at) "
                "VALUES (?, ?, ?) "
                "ON CONFLICT(external_uid) DO UPDATE SET internal_uid = excluded.internal_uid",
                (external_uid, internal_uid, int(time.time())),
            )
            self.conn.commit()

    def all_mappings(self) -> dict[str, str]:
        with self._lock:
            cursor = self.conn.execute("SELECT external_uid, internal_uid FROM uid_mapping")
            return {row[0]: row[1] for row in cursor.fetchall()}

    def close(self):
        """Close the database connection."""
        with self._lock:
            if self.conn:
                self.conn.close()
                self.conn = None


def query_status(db_path: Path) -> dict[str, int]:
    """
    Return aggregate counts for an identity database.

    Keys: ``bindings``, ``documents``, ``mappings``, ``last_update`` (epoch seconds,
    0 when empty).  Returns an empty dict when the DB file does not exist or
    has no identity tables yet.
    """
    if not db_path.exists():
        return {}
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    try:
        tables = {
            row["name"]
            for row in conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'")
        }
        if not {"event_uid", "event_document", "uid_mapping"} <= tables:
            return {}
        row = conn.execute("""
            SELECT
                (SELECT COUNT(*) FROM event_uid)            AS bindings,
                (SELECT COUNT(*) FROM event_document)       AS documents,
                (SELECT COUNT(*) FROM uid_mapping)          AS mappings,
                (SELECT COALESCE(MAX(updated_at), 0) FROM event_uid) AS last_update
        """).fetchone()
        return dict(row)
    finally:
        conn.close()
