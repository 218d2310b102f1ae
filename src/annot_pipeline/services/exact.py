"""Exact-match index: fingerprint -> known protein, backed by SQLite.

Table layout:
    exact(fingerprint TEXT PRIMARY KEY, source_id TEXT, product TEXT,
          gene TEXT, dbxrefs TEXT)   -- dbxrefs comma-separated
"""

import logging
import queue
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator, Optional

from annot_pipeline.exceptions import LookupServiceError, LookupTimeout
from annot_pipeline.models import TIER_EXACT, Hit
from annot_pipeline.services import BaseService

logger = logging.getLogger("annot_pipeline.services.exact")

SCHEMA = (
    "CREATE TABLE IF NOT EXISTS exact ("
    "fingerprint TEXT PRIMARY KEY, source_id TEXT NOT NULL, product TEXT, gene TEXT, dbxrefs TEXT)"
)


class ConnectionPool:
    """Bounded pool of database connections.

    Connections are created lazily up to *size*, health-checked on checkout
    and replaced when broken. Waiting longer than *acquire_timeout* for a
    free connection raises LookupTimeout. Use ``with pool.connection() as conn:``.
    """

    def __init__(
        self,
        factory: Callable[[], sqlite3.Connection],
        size: int = 4,
        acquire_timeout: float = 30.0,
        name: str = "database",
    ):
        if size < 1:
            raise ValueError("Connection pool size must be at least 1.")
        self._factory = factory
        self._size = size
        self._acquire_timeout = acquire_timeout
        self._name = name
        self._idle: queue.LifoQueue = queue.LifoQueue(maxsize=size)
        self._created = 0
        self._lock = threading.Lock()
        self._closed = False

    @property
    def size(self) -> int:
        return self._size

    @property
    def created(self) -> int:
        return self._created

    def _create(self) -> sqlite3.Connection:
        try:
            return self._factory()
        except sqlite3.Error as e:
            with self._lock:
                self._created -= 1
            raise LookupServiceError(self._name, f"cannot open connection: {e}") from e

    def _acquire(self) -> sqlite3.Connection:
        if self._closed:
            raise LookupServiceError(self._name, "connection pool is closed")
        try:
            conn = self._idle.get_nowait()
        except queue.Empty:
            with self._lock:
                can_create = self._created < self._size
                if can_create:
                    self._created += 1
            if can_create:
                return self._create()
            try:
                conn = self._idle.get(timeout=self._acquire_timeout)
            except queue.Empty:
                raise LookupTimeout(self._name, self._acquire_timeout) from None

        if self._healthy(conn):
            return conn
        logger.warning(f"Recycling unhealthy {self._name} connection")
        self._discard(conn)
        with self._lock:
            self._created += 1
        return self._create()

    @staticmethod
    def _healthy(conn: sqlite3.Connection) -> bool:
        try:
            conn.execute("SELECT 1").fetchone()
            return True
        except sqlite3.Error:
            return False

    def _discard(self, conn: sqlite3.Connection):
        with self._lock:
            self._created -= 1
        try:
            conn.close()
        except sqlite3.Error:
            pass

    def _release(self, conn: sqlite3.Connection):
        if self._closed:
            self._discard(conn)
            return
        self._idle.put_nowait(conn)

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        conn = self._acquire()
        broken = False
        try:
            yield conn
        except sqlite3.DatabaseError:
            broken = True
            raise
        finally:
            if broken:
                self._discard(conn)
            else:
                self._release(conn)

    def close(self):
        self._closed = True
        while True:
            try:
                conn = self._idle.get_nowait()
            except queue.Empty:
                break
            self._discard(conn)


class ExactMatchIndex(BaseService):
    """Tier 1: O(1) lookup of a fingerprint in the exact-match table."""

    tier = TIER_EXACT

    def __init__(self, db_path: str | Path, pool_size: int = 4, acquire_timeout: float = 30.0):
        self.db_path = Path(db_path)
        self._pool = ConnectionPool(
            self._connect, size=pool_size, acquire_timeout=acquire_timeout, name=self.name,
        )

    @property
    def name(self) -> str:
        return "exact-index"

    def _connect(self) -> sqlite3.Connection:
        if not self.db_path.is_file():
            raise sqlite3.OperationalError(f"database file not found: {self.db_path}")
        return sqlite3.connect(
            f"file:{self.db_path}?mode=ro", uri=True, check_same_thread=False,
        )

    def is_available(self) -> bool:
        """Check the index can be opened and has the expected table."""
        try:
            with self._pool.connection() as conn:
                conn.execute("SELECT 1 FROM exact LIMIT 1").fetchall()
            return True
        except (LookupServiceError, LookupTimeout, sqlite3.Error):
            return False

    def query(self, fingerprint: str, sequence: str) -> list[Hit]:
        try:
            with self._pool.connection() as conn:
                row = conn.execute(
                    "SELECT source_id, product, gene, dbxrefs FROM exact WHERE fingerprint = ?",
                    (fingerprint,),
                ).fetchone()
        except sqlite3.Error as e:
            raise LookupServiceError(self.name, str(e)) from e

        if row is None:
            return []
        source_id, product, gene, dbxrefs = row
        return [Hit(
            source_id=source_id,
            product=product or "",
            gene=gene or "",
            identity=100.0,
            query_coverage=1.0,
            subject_coverage=1.0,
            cross_refs=_split_dbxrefs(dbxrefs),
        )]

    def close(self):
        self._pool.close()


def _split_dbxrefs(raw: Optional[str]) -> tuple[str, ...]:
    if not raw:
        return ()
    return tuple(x.strip() for x in raw.split(",") if x.strip())


def create_index(db_path: str | Path, rows: list[tuple[str, str, str, str, str]]):
    """Create (or extend) an exact-match index from (fingerprint, source_id, product, gene, dbxrefs) rows."""
    conn = sqlite3.connect(str(db_path))
    try:
        conn.execute(SCHEMA)
        conn.executemany("INSERT OR REPLACE INTO exact VALUES (?, ?, ?, ?, ?)", rows)
        conn.commit()
    finally:
        conn.close()
