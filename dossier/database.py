"""SQLite access shared by the progress store, queue backend and cleanup."""

from collections.abc import Iterable, Iterator
from contextlib import contextmanager
import json
from pathlib import Path
import sqlite3
from typing import Any

from dossier.utils.logging_config import get_logger

log = get_logger(__name__)

_DEFAULT_TIMEOUT_SECONDS = 5.0
_BUSY_TIMEOUT_MS = 5000


class Database:
    """A SQLite database file. Every operation opens its own short-lived connection,
    so one instance can be shared freely between worker threads.

    In-memory databases are not supported since each connection would see a different database.
    """

    def __init__(self, db_path: str | Path, timeout_seconds: float = _DEFAULT_TIMEOUT_SECONDS) -> None:
        db_path = str(db_path)
        if not db_path.strip() or db_path == ":memory:":
            raise ValueError("Database needs a file path")

        self.db_path = db_path
        self.timeout_seconds = timeout_seconds

    def connect(self) -> sqlite3.Connection:
        """Create and configure a new database connection."""

        # isolation_level=None for manual transaction control
        conn = sqlite3.connect(
            self.db_path,
            timeout=self.timeout_seconds,
            isolation_level=None,
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row

        conn.execute("PRAGMA busy_timeout=%d;" % _BUSY_TIMEOUT_MS)
        # WAL-mode for concurrent reads and writes
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA foreign_keys=ON;")
        conn.execute("PRAGMA synchronous=NORMAL;")

        return conn

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """A write transaction; takes the write lock up front and rolls back on any error."""

        conn = self.connect()
        try:
            conn.execute("begin immediate;")
            yield conn
            conn.execute("commit;")
        except BaseException:
            if conn.in_transaction:
                conn.execute("rollback;")
            raise
        finally:
            conn.close()

    @contextmanager
    def reader(self) -> Iterator[sqlite3.Connection]:
        conn = self.connect()
        try:
            yield conn
        finally:
            conn.close()

    def apply_schema(self, statements: Iterable[str]) -> None:
        """Run idempotent DDL statements in a single transaction."""

        log.debug(f"Applying schema to {self.db_path}")
        with self.transaction() as conn:
            for statement in statements:
                conn.execute(statement)


def json_dumps(data: Any) -> str | None:
    """Serialize a payload for a JSON text column. None stays NULL."""

    if data is None:
        return None
    return json.dumps(data, ensure_ascii=False, default=str)


def json_loads(text: str | None) -> Any:
    if text is None or text == "":
        return None
    return json.loads(text)
