"""SQLite persistence: document store, migrations, update_runs table."""

import json
import logging
import sqlite3
import threading
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

logger = logging.getLogger(__name__)

# Document types.  Keyed documents use the fingerprint as key; singleton
# documents use the empty string.
STATUS_SUMMARY = "status_summary"
OUT_SUMMARY = "out_summary"
OUT_UPDATE = "out_update"
WEIGHTS_STATUS = "weights_status"
WEIGHTS = "weights"

DOCUMENT_TYPES = frozenset(
    {STATUS_SUMMARY, OUT_SUMMARY, OUT_UPDATE, WEIGHTS_STATUS, WEIGHTS}
)

_SCHEMA_VERSION = 2

_SCHEMA_V1 = """\
CREATE TABLE IF NOT EXISTS documents (
    doc_type    TEXT NOT NULL,
    doc_key     TEXT NOT NULL DEFAULT '',
    content     TEXT NOT NULL,
    updated_at  TEXT NOT NULL,
    PRIMARY KEY (doc_type, doc_key)
);
"""

_SCHEMA_V2 = """\
CREATE TABLE IF NOT EXISTS update_runs (
    id                TEXT PRIMARY KEY,
    timestamp         TEXT NOT NULL,
    relay_count       INTEGER NOT NULL,
    bridge_count      INTEGER NOT NULL,
    duration_seconds  REAL NOT NULL,
    meta              TEXT NOT NULL DEFAULT '{}'
);
"""


@dataclass
class UpdateRun:
    """Metadata for a single update pass.

    Attributes:
        relay_count: Relays in the current view after the update.
        bridge_count: Bridges in the current view after the update.
        duration_seconds: Wall-clock duration of the pass.
        timestamp: UTC start time of the pass.
        id: UUID assigned by ``save_update_run``.
        meta: Free-form counters (snapshots read, documents written, ...).
    """

    relay_count: int
    bridge_count: int
    duration_seconds: float
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    id: str | None = None
    meta: dict = field(default_factory=dict)


def init_db(db_path: str) -> sqlite3.Connection:
    """Open (or create) the SQLite database and apply pending migrations.

    Args:
        db_path: Filesystem path for the database, or ``":memory:"`` for
            an in-memory database (useful in tests).  Missing parent
            directories are created.

    Returns:
        An open ``sqlite3.Connection`` with WAL journal mode.  The
        connection may be shared between threads; callers serialize
        access (see ``DocumentStore``).
    """
    if db_path != ":memory:":
        Path(db_path).expanduser().parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(db_path, check_same_thread=False)
    conn.execute("PRAGMA journal_mode = WAL")
    conn.row_factory = sqlite3.Row
    _migrate(conn)
    return conn


def save_update_run(conn: sqlite3.Connection, update_run: UpdateRun) -> str:
    """Persist an update run and assign it a UUID.

    The generated UUID is written back to ``update_run.id``.

    Returns:
        The generated UUID string.
    """
    run_id = uuid.uuid4().hex
    update_run.id = run_id
    conn.execute(
        "INSERT INTO update_runs (id, timestamp, relay_count, bridge_count, "
        "duration_seconds, meta) VALUES (?, ?, ?, ?, ?, ?)",
        (
            run_id,
            update_run.timestamp.isoformat(),
            update_run.relay_count,
            update_run.bridge_count,
            update_run.duration_seconds,
            json.dumps(update_run.meta),
        ),
    )
    conn.commit()
    return run_id


class DocumentStore:
    """Typed, keyed text documents on top of one SQLite connection.

    Every operation holds an internal lock, so a store can be shared by
    the weights worker threads.

    Args:
        conn: Open database connection (from ``init_db``).
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn
        self._lock = threading.Lock()

    @classmethod
    def open(cls, db_path: str) -> "DocumentStore":
        """Open the database at *db_path* and wrap it."""
        return cls(init_db(db_path))

    @property
    def connection(self) -> sqlite3.Connection:
        return self._conn

    def store(self, doc_type: str, key: str, content: str) -> None:
        """Insert or replace a document.

        Raises:
            ValueError: If *doc_type* is unknown.
            sqlite3.Error: If the write fails.
        """
        _check_type(doc_type)
        now = datetime.now(UTC).isoformat()
        with self._lock:
            self._conn.execute(
                """\
                INSERT INTO documents (doc_type, doc_key, content, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT (doc_type, doc_key) DO UPDATE SET
                    content    = excluded.content,
                    updated_at = excluded.updated_at
                """,
                (doc_type, key, content, now),
            )
            self._conn.commit()

    def retrieve(self, doc_type: str, key: str = "") -> str | None:
        """Return a document's content, or ``None`` if it does not exist."""
        _check_type(doc_type)
        with self._lock:
            row = self._conn.execute(
                "SELECT content FROM documents WHERE doc_type = ? AND doc_key = ?",
                (doc_type, key),
            ).fetchone()
        return None if row is None else row["content"]

    def keys(self, doc_type: str) -> list[str]:
        """Return all keys of *doc_type*, sorted."""
        _check_type(doc_type)
        with self._lock:
            rows = self._conn.execute(
                "SELECT doc_key FROM documents WHERE doc_type = ? ORDER BY doc_key",
                (doc_type,),
            ).fetchall()
        return [row["doc_key"] for row in rows]

    def remove(self, doc_type: str, key: str = "") -> bool:
        """Delete a document.

        Returns:
            True if a document was deleted.
        """
        _check_type(doc_type)
        with self._lock:
            cursor = self._conn.execute(
                "DELETE FROM documents WHERE doc_type = ? AND doc_key = ?",
                (doc_type, key),
            )
            self._conn.commit()
        return cursor.rowcount > 0

    def close(self) -> None:
        with self._lock:
            self._conn.close()


def _check_type(doc_type: str) -> None:
    if doc_type not in DOCUMENT_TYPES:
        raise ValueError(f"Unknown document type: {doc_type!r}")


def _migrate(conn: sqlite3.Connection) -> None:
    """Apply database migrations up to ``_SCHEMA_VERSION``.

    Uses the SQLite ``user_version`` pragma to track the current schema
    version.  Each version bump is applied in order so that databases
    created at any prior version are brought up to date.
    """
    (current,) = conn.execute("PRAGMA user_version").fetchone()

    if current >= _SCHEMA_VERSION:
        return

    if current < 1:
        logger.debug("Applying schema migration v0 -> v1")
        conn.executescript(_SCHEMA_V1)

    if current < 2:
        logger.debug("Applying schema migration v1 -> v2")
        conn.executescript(_SCHEMA_V2)

    conn.execute(f"PRAGMA user_version = {_SCHEMA_VERSION}")
    conn.commit()
    logger.debug("Database schema at version %d", _SCHEMA_VERSION)
