"""
mudpuppy SQLite store — entries, vector index and keyword index in one file.

Three structures live in a single SQLite database:

    memory_entries     canonical rows, UNIQUE content_hash
    memory_vec         sqlite-vec vec0 table, rowid = entry id
    memory_fts         FTS5 external-content index over content/context/tags,
                       maintained by triggers on memory_entries

Every mutation runs inside one ``BEGIN IMMEDIATE`` transaction so a reader
(in this process or another) never observes a row without its index traces
or the reverse.

Usage:
    store = MemoryStore("memory.db")
    result = store.add_entry(MemoryInput("Alice likes coffee"), embedding)
    hits = store.keyword_search("coffee", limit=5)
"""

import contextlib
import hashlib
import json
import logging
import os
import re
import sqlite3
import stat
import struct
import threading
import time as _time
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Sequence, Tuple

import sqlite_vec

from mudpuppy.models import (
    AccessLogEntry,
    AddResult,
    MemoryEntry,
    MemoryInput,
    MemoryStats,
    now_ms,
)

logger = logging.getLogger("mudpuppy.sqlite_store")

SCHEMA_VERSION = 1
DEFAULT_DIMENSION = 384

# sqlite-vec refuses KNN queries with k above this
_VEC_MAX_K = 4096

_FTS_TOKEN_RE = re.compile(r"\w+", re.UNICODE)

# ---------------------------------------------------------------------------
# SQLite retry for multi-process write contention on a shared database.
# WAL mode + busy_timeout handle most cases; under heavy contention the
# timeout can still expire, so retry with exponential backoff before
# surfacing the error.
# ---------------------------------------------------------------------------
_DB_RETRY_ATTEMPTS = 3
_DB_RETRY_BASE_DELAY = 0.5  # seconds


def _retry_on_locked(fn, *args, **kwargs):
    """Call fn with retry on 'database is locked' OperationalError."""
    for attempt in range(_DB_RETRY_ATTEMPTS):
        try:
            return fn(*args, **kwargs)
        except sqlite3.OperationalError as e:
            if "database is locked" in str(e) and attempt < _DB_RETRY_ATTEMPTS - 1:
                delay = _DB_RETRY_BASE_DELAY * (2 ** attempt)
                logger.warning("database is locked (attempt %d/%d), retrying in %.1fs",
                               attempt + 1, _DB_RETRY_ATTEMPTS, delay)
                _time.sleep(delay)
            else:
                raise


def content_hash(content: str) -> str:
    """SHA-256 hex digest used as the deduplication key."""
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def _serialize_f32(vector: Sequence[float]) -> bytes:
    """Serialize a float32 vector to bytes for sqlite-vec."""
    return struct.pack(f"{len(vector)}f", *vector)


def _fts_query(text: str) -> Optional[str]:
    """Reduce free text to an FTS5 MATCH expression of quoted terms (implicit AND)."""
    tokens = _FTS_TOKEN_RE.findall(text or "")
    if not tokens:
        return None
    return " ".join(f'"{t}"' for t in tokens)


def secure_connect(db_path: Path, **kwargs) -> sqlite3.Connection:
    """Open a SQLite connection, creating the file with 0600 permissions."""
    db_path_str = str(db_path)
    path_obj = Path(db_path_str)

    if not path_obj.exists():
        # Pre-create with restricted permissions (no TOCTOU window)
        fd = os.open(db_path_str, os.O_CREAT | os.O_WRONLY, 0o600)
        os.close(fd)
    else:
        current_mode = path_obj.stat().st_mode
        if current_mode & (stat.S_IRWXG | stat.S_IRWXO):
            os.chmod(db_path_str, 0o600)

    return sqlite3.connect(db_path_str, **kwargs)


class MemoryStore:
    """Entry store with coupled vector (sqlite-vec) and keyword (FTS5) indices."""

    def __init__(self, db_path, dimension: int = DEFAULT_DIMENSION, repair: bool = True):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
        self.dimension = dimension

        self._lock = threading.RLock()
        self._closed = False
        self._conn = self._connect()
        self._init_schema()
        if repair:
            self.repair_orphans()

    def _connect(self) -> sqlite3.Connection:
        # isolation_level=None: transactions are opened explicitly in _transaction()
        conn = secure_connect(
            self.db_path,
            timeout=30,
            check_same_thread=False,
            isolation_level=None,
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        conn.execute("PRAGMA busy_timeout=30000")

        conn.enable_load_extension(True)
        sqlite_vec.load(conn)
        conn.enable_load_extension(False)
        return conn

    def _init_schema(self) -> None:
        """Create tables, indices and FTS triggers if they don't exist."""
        with self._transaction() as c:
            c.execute("""
                CREATE TABLE IF NOT EXISTS schema_meta (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                )
            """)
            c.execute("""
                CREATE TABLE IF NOT EXISTS memory_entries (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    content TEXT NOT NULL,
                    content_hash TEXT UNIQUE NOT NULL,
                    entry_type TEXT NOT NULL DEFAULT 'fact',
                    source TEXT DEFAULT 'manual',
                    context TEXT,
                    confidence REAL DEFAULT 1.0,
                    importance INTEGER DEFAULT 5,
                    tags TEXT,
                    created_at INTEGER NOT NULL,
                    updated_at INTEGER NOT NULL,
                    expires_at INTEGER,
                    access_count INTEGER DEFAULT 0,
                    last_accessed_at INTEGER
                )
            """)
            c.execute("CREATE INDEX IF NOT EXISTS idx_memory_type ON memory_entries(entry_type)")
            c.execute("CREATE INDEX IF NOT EXISTS idx_memory_importance ON memory_entries(importance DESC)")
            c.execute("CREATE INDEX IF NOT EXISTS idx_memory_expires ON memory_entries(expires_at)")

            c.execute("""
                CREATE TABLE IF NOT EXISTS memory_access_log (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    memory_id INTEGER NOT NULL,
                    accessed_at INTEGER NOT NULL,
                    access_type TEXT NOT NULL,
                    relevance_score REAL,
                    query_text TEXT
                )
            """)
            c.execute("CREATE INDEX IF NOT EXISTS idx_access_memory ON memory_access_log(memory_id)")

            c.execute("""
                CREATE VIRTUAL TABLE IF NOT EXISTS memory_fts USING fts5(
                    content, context, tags,
                    content='memory_entries', content_rowid='id'
                )
            """)
            c.execute("""
                CREATE TRIGGER IF NOT EXISTS memory_ai AFTER INSERT ON memory_entries BEGIN
                    INSERT INTO memory_fts(rowid, content, context, tags)
                    VALUES (new.id, new.content, new.context, new.tags);
                END
            """)
            c.execute("""
                CREATE TRIGGER IF NOT EXISTS memory_ad AFTER DELETE ON memory_entries BEGIN
                    INSERT INTO memory_fts(memory_fts, rowid, content, context, tags)
                    VALUES ('delete', old.id, old.content, old.context, old.tags);
                END
            """)
            # Counter updates from access logging must not churn the FTS index
            c.execute("""
                CREATE TRIGGER IF NOT EXISTS memory_au AFTER UPDATE OF content, context, tags
                ON memory_entries BEGIN
                    INSERT INTO memory_fts(memory_fts, rowid, content, context, tags)
                    VALUES ('delete', old.id, old.content, old.context, old.tags);
                    INSERT INTO memory_fts(rowid, content, context, tags)
                    VALUES (new.id, new.content, new.context, new.tags);
                END
            """)

            c.execute(f"""
                CREATE VIRTUAL TABLE IF NOT EXISTS memory_vec
                USING vec0(embedding float[{self.dimension}] distance_metric=cosine)
            """)

            row = c.execute("SELECT value FROM schema_meta WHERE key = 'dimension'").fetchone()
            if row is None:
                c.execute("INSERT INTO schema_meta (key, value) VALUES ('dimension', ?)", (str(self.dimension),))
                c.execute("INSERT INTO schema_meta (key, value) VALUES ('version', ?)", (str(SCHEMA_VERSION),))
            elif int(row[0]) != self.dimension:
                raise ValueError(
                    f"{self.db_path} was created for {row[0]}-dim embeddings, "
                    f"provider produces {self.dimension}"
                )

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    @contextlib.contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Run the body in one write transaction; roll back on any error.

        BEGIN IMMEDIATE takes the database write lock up front, so checks
        made inside the body hold until COMMIT across processes too.
        """
        with self._lock:
            _retry_on_locked(self._conn.execute, "BEGIN IMMEDIATE")
            try:
                yield self._conn
                _retry_on_locked(self._conn.execute, "COMMIT")
            except BaseException:
                if self._conn.in_transaction:
                    self._conn.execute("ROLLBACK")
                raise

    def _fetchone(self, sql: str, params: tuple = ()) -> Optional[sqlite3.Row]:
        with self._lock:
            return _retry_on_locked(self._conn.execute, sql, params).fetchone()

    def _fetchall(self, sql: str, params: tuple = ()) -> List[sqlite3.Row]:
        with self._lock:
            return _retry_on_locked(self._conn.execute, sql, params).fetchall()

    # ------------------------------------------------------------------
    # Core CRUD
    # ------------------------------------------------------------------

    def add_entry(self, entry: MemoryInput, embedding: Sequence[float]) -> AddResult:
        """Insert *entry* with its embedding unless identical content exists.

        Returns ``AddResult(duplicate=True)`` with the existing id when the
        content hash is already stored; the embedding is then not written.
        """
        if not entry.content:
            raise ValueError("content must be a non-empty string")
        if len(embedding) != self.dimension:
            raise ValueError(f"embedding has {len(embedding)} dimensions, store expects {self.dimension}")

        digest = content_hash(entry.content)
        now = now_ms()
        tags_json = json.dumps(list(entry.tags)) if entry.tags else None

        try:
            with self._transaction() as c:
                existing = c.execute(
                    "SELECT id FROM memory_entries WHERE content_hash = ?", (digest,)
                ).fetchone()
                if existing:
                    return AddResult(id=existing[0], created=False, duplicate=True)

                cur = c.execute(
                    """INSERT INTO memory_entries
                       (content, content_hash, entry_type, source, context,
                        confidence, importance, tags, created_at, updated_at, expires_at)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                    (
                        entry.content,
                        digest,
                        entry.entry_type.value,
                        entry.source,
                        entry.context,
                        entry.confidence,
                        entry.importance,
                        tags_json,
                        now,
                        now,
                        entry.expires_at,
                    ),
                )
                entry_id = cur.lastrowid
                c.execute(
                    "INSERT INTO memory_vec (rowid, embedding) VALUES (?, ?)",
                    (entry_id, _serialize_f32(embedding)),
                )
        except sqlite3.IntegrityError:
            # Another writer committed the same content first
            row = self._fetchone("SELECT id FROM memory_entries WHERE content_hash = ?", (digest,))
            if row is None:
                raise
            logger.debug("add_entry lost a dedup race, returning existing id %d", row[0])
            return AddResult(id=row[0], created=False, duplicate=True)

        return AddResult(id=entry_id, created=True, duplicate=False)

    def get_entry(self, entry_id: int) -> Optional[MemoryEntry]:
        row = self._fetchone("SELECT * FROM memory_entries WHERE id = ?", (entry_id,))
        if row is None:
            return None
        return MemoryEntry.from_row(row)

    def get_entries(self, entry_ids: Sequence[int]) -> Dict[int, MemoryEntry]:
        """Load several entries at once, keyed by id. Missing ids are absent."""
        if not entry_ids:
            return {}
        placeholders = ",".join("?" * len(entry_ids))
        rows = self._fetchall(
            f"SELECT * FROM memory_entries WHERE id IN ({placeholders})", tuple(entry_ids)
        )
        return {row["id"]: MemoryEntry.from_row(row) for row in rows}

    def find_by_hash(self, digest: str) -> Optional[int]:
        row = self._fetchone("SELECT id FROM memory_entries WHERE content_hash = ?", (digest,))
        return row[0] if row else None

    def delete_entry(self, entry_id: int) -> bool:
        """Remove an entry, its vector and (via trigger) its FTS postings."""
        with self._transaction() as c:
            c.execute("DELETE FROM memory_vec WHERE rowid = ?", (entry_id,))
            cur = c.execute("DELETE FROM memory_entries WHERE id = ?", (entry_id,))
            return cur.rowcount > 0

    def count(self) -> int:
        return self._fetchone("SELECT COUNT(*) FROM memory_entries")[0]

    # ------------------------------------------------------------------
    # Access log
    # ------------------------------------------------------------------

    def log_access(
        self,
        entry_id: int,
        access_type: str,
        relevance_score: Optional[float] = None,
        query_text: Optional[str] = None,
    ) -> bool:
        """Record a retrieval and bump the entry's counters.

        Best-effort: storage errors are logged, never raised. Returns whether
        a log row was written.
        """
        now = now_ms()
        try:
            with self._transaction() as c:
                cur = c.execute(
                    "UPDATE memory_entries SET access_count = access_count + 1, last_accessed_at = ? WHERE id = ?",
                    (now, entry_id),
                )
                if cur.rowcount == 0:
                    return False
                c.execute(
                    """INSERT INTO memory_access_log
                       (memory_id, accessed_at, access_type, relevance_score, query_text)
                       VALUES (?, ?, ?, ?, ?)""",
                    (entry_id, now, access_type, relevance_score, query_text),
                )
            return True
        except sqlite3.Error as e:
            logger.warning("Failed to log %s access for memory %s: %s", access_type, entry_id, e)
            return False

    def get_access_log(self, entry_id: int) -> List[AccessLogEntry]:
        rows = self._fetchall(
            """SELECT memory_id, accessed_at, access_type, relevance_score, query_text
               FROM memory_access_log WHERE memory_id = ? ORDER BY id""",
            (entry_id,),
        )
        return [AccessLogEntry(*tuple(row)) for row in rows]

    # ------------------------------------------------------------------
    # Index queries
    # ------------------------------------------------------------------

    def vector_search(self, embedding: Sequence[float], limit: int) -> List[Tuple[int, float]]:
        """Nearest entries by cosine distance. Returns [(entry_id, distance), ...]."""
        if limit <= 0:
            return []
        rows = self._fetchall(
            """SELECT rowid, distance FROM memory_vec
               WHERE embedding MATCH ? AND k = ?
               ORDER BY distance""",
            (_serialize_f32(embedding), min(limit, _VEC_MAX_K)),
        )
        return [(row[0], row[1]) for row in rows]

    def keyword_search(self, query: str, limit: int) -> List[Tuple[int, float]]:
        """FTS5 BM25 search. Returns [(entry_id, rank), ...], more negative = better."""
        match = _fts_query(query)
        if match is None or limit <= 0:
            return []
        rows = self._fetchall(
            """SELECT rowid, rank FROM memory_fts
               WHERE memory_fts MATCH ?
               ORDER BY rank LIMIT ?""",
            (match, limit),
        )
        return [(row[0], row[1]) for row in rows]

    # ------------------------------------------------------------------
    # Stats and maintenance
    # ------------------------------------------------------------------

    def get_stats(self) -> MemoryStats:
        """Aggregate counters. Each figure is read independently."""
        total = self._fetchone("SELECT COUNT(*) FROM memory_entries")[0]
        by_type = {
            row[0]: row[1]
            for row in self._fetchall(
                "SELECT entry_type, COUNT(*) FROM memory_entries GROUP BY entry_type"
            )
        }
        avg_importance = self._fetchone("SELECT AVG(importance) FROM memory_entries")[0]
        avg_confidence = self._fetchone("SELECT AVG(confidence) FROM memory_entries")[0]
        total_accesses = self._fetchone("SELECT SUM(access_count) FROM memory_entries")[0]
        oldest = self._fetchone("SELECT MIN(created_at) FROM memory_entries")[0]
        newest = self._fetchone("SELECT MAX(created_at) FROM memory_entries")[0]
        return MemoryStats(
            total_entries=total,
            by_type=by_type,
            avg_importance=avg_importance or 0.0,
            avg_confidence=avg_confidence or 0.0,
            total_accesses=total_accesses or 0,
            oldest_entry=oldest,
            newest_entry=newest,
        )

    def entries_missing_vectors(self) -> List[int]:
        rows = self._fetchall(
            """SELECT m.id FROM memory_entries m
               LEFT JOIN memory_vec v ON v.rowid = m.id
               WHERE v.rowid IS NULL"""
        )
        return [row[0] for row in rows]

    def set_embedding(self, entry_id: int, embedding: Sequence[float]) -> bool:
        """Write the vector row for an existing entry that lacks one."""
        if len(embedding) != self.dimension:
            raise ValueError(f"embedding has {len(embedding)} dimensions, store expects {self.dimension}")
        with self._transaction() as c:
            if c.execute("SELECT 1 FROM memory_entries WHERE id = ?", (entry_id,)).fetchone() is None:
                return False
            c.execute("DELETE FROM memory_vec WHERE rowid = ?", (entry_id,))
            c.execute(
                "INSERT INTO memory_vec (rowid, embedding) VALUES (?, ?)",
                (entry_id, _serialize_f32(embedding)),
            )
        return True

    def repair_orphans(self) -> int:
        """Drop vector rows whose entry no longer exists. Returns count removed.

        Entries left without a vector are reported, not deleted; the service
        layer re-embeds them.
        """
        with self._transaction() as c:
            orphaned = c.execute(
                """SELECT v.rowid FROM memory_vec v
                   LEFT JOIN memory_entries m ON v.rowid = m.id
                   WHERE m.id IS NULL"""
            ).fetchall()
            for row in orphaned:
                c.execute("DELETE FROM memory_vec WHERE rowid = ?", (row[0],))
        if orphaned:
            logger.info("Pruned %d orphaned vector rows", len(orphaned))
        missing = self.entries_missing_vectors()
        if missing:
            logger.warning("%d entries have no vector row: %s", len(missing), missing[:10])
        return len(orphaned)

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            try:
                # Flush WAL before closing so other processes can checkpoint
                self._conn.execute("PRAGMA wal_checkpoint(PASSIVE)")
            except sqlite3.Error as e:
                logger.debug("WAL checkpoint on close failed: %s", e)
            self._conn.close()

    def __enter__(self) -> "MemoryStore":
        return self

    def __exit__(self, *exc) -> None:
        self.close()
