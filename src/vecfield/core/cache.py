"""Persistent, content-addressed embedding cache shared by all applications.

Cache keys depend only on the model and the input, never on the application
that asked, so identical text embedded by two unrelated applications with the
same model resolves to the same entry.

Architecture (two tiers):
- Hot cache: In-memory OrderedDict with LRU eviction (bounded)
- Cold storage: SQLite database (WAL mode), unbounded and durable

Lookup flow:
    (model_id, input) → SHA-256 key → Hot cache?
                                      ↓ No
                                      Cold storage (SQLite)?
                                      ↓ No
                                      Miss (caller computes and puts)

Every SQLite operation opens its own short-lived connection, so there is no
process-wide lock and lookups for different keys never wait on each other.
Storage failures surface as CacheError; callers treat them as a miss.

Example:
    cache = EmbeddingCache(Path("./embedding_cache.db"))
    cache.put("BAAI/bge-small-en-v1.5", "hello world", vector)
    cache.get("BAAI/bge-small-en-v1.5", "hello world")  # -> vector
"""

import hashlib
import logging
import sqlite3
import threading
import time
from collections import OrderedDict
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

import numpy as np

from vecfield.core.exceptions import CacheError
from vecfield.core.models import CacheEntry

logger = logging.getLogger(__name__)


def cache_key(model_id: str, data: str | bytes) -> str:
    """Compute the content address of an embedding.

    Args:
        model_id: Model identifier exactly as configured.
        data: Raw input value (text, or the base64 string of an image).

    Returns:
        Hex SHA-256 of model_id + NUL + input bytes.
    """
    if isinstance(data, str):
        data = data.encode("utf-8")
    hasher = hashlib.sha256()
    hasher.update(model_id.encode("utf-8"))
    hasher.update(b"\x00")
    hasher.update(data)
    return hasher.hexdigest()


class EmbeddingCache:
    """Durable embedding cache with an in-memory LRU in front of SQLite.

    Entries are immutable in meaning: a changed input or model yields a new
    key. `put` of an identical vector is a no-op; `put` of a different vector
    under the same key overwrites it (last writer wins). Nothing is evicted
    from disk automatically; use `delete`, `delete_model` or `clear`.

    Args:
        db_path: SQLite database file (parent directories are created).
        memory_cache_size: Maximum number of vectors kept in the hot tier.
        timeout: Seconds SQLite waits on a locked database before failing.
    """

    def __init__(self, db_path: Path, memory_cache_size: int = 10_000, timeout: float = 5.0):
        self.db_path = Path(db_path)
        self.memory_cache_size = memory_cache_size
        self.timeout = timeout

        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

        self._hot_cache: OrderedDict[str, np.ndarray] = OrderedDict()
        self._hot_lock = threading.Lock()
        self._stats = {
            "hits_hot": 0,
            "hits_cold": 0,
            "misses": 0,
        }

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = sqlite3.connect(self.db_path, timeout=self.timeout)
        except sqlite3.Error as exc:
            raise CacheError(f"Cannot open embedding cache at {self.db_path}: {exc}") from exc
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as exc:
            conn.rollback()
            raise CacheError(f"Embedding cache operation failed: {exc}") from exc
        finally:
            conn.close()

    def _init_db(self) -> None:
        """Create the embedding_cache table.

        Columns:
        - id (PRIMARY KEY): hex SHA-256 content address
        - model (TEXT): model identifier
        - embedding (BLOB): float32 vector bytes
        - dim (INTEGER): vector length
        - created_at (INTEGER): seconds since epoch
        """
        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("""
                CREATE TABLE IF NOT EXISTS embedding_cache (
                    id TEXT PRIMARY KEY,
                    model TEXT NOT NULL,
                    embedding BLOB NOT NULL,
                    dim INTEGER NOT NULL,
                    created_at INTEGER NOT NULL
                )
            """)
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_embedding_cache_model ON embedding_cache(model)"
            )
        logger.debug("Initialized embedding cache at %s", self.db_path)

    def _serialize(self, vector: np.ndarray) -> bytes:
        return np.asarray(vector, dtype=np.float32).tobytes()

    def _deserialize(self, blob: bytes) -> np.ndarray:
        # Copy so callers get a writable array not tied to the blob buffer
        return np.frombuffer(blob, dtype=np.float32).copy()

    def _promote_to_hot(self, key: str, vector: np.ndarray) -> None:
        # Private read-only copy: callers never share the hot tier's arrays
        vector = np.array(vector, dtype=np.float32)
        vector.setflags(write=False)
        with self._hot_lock:
            if key in self._hot_cache:
                self._hot_cache.move_to_end(key)
            self._hot_cache[key] = vector
            if len(self._hot_cache) > self.memory_cache_size:
                self._hot_cache.popitem(last=False)

    def get(self, model_id: str, data: str | bytes) -> np.ndarray | None:
        """Look up the vector for (model_id, input).

        Returns:
            The cached vector, or None on a miss.

        Raises:
            CacheError: If the database cannot be read.
        """
        return self.get_by_key(cache_key(model_id, data))

    def get_by_key(self, key: str) -> np.ndarray | None:
        with self._hot_lock:
            vector = self._hot_cache.get(key)
            if vector is not None:
                self._hot_cache.move_to_end(key)
                self._stats["hits_hot"] += 1
                return vector.copy()

        with self._connect() as conn:
            row = conn.execute(
                "SELECT embedding FROM embedding_cache WHERE id = ?", (key,)
            ).fetchone()

        if row is None:
            with self._hot_lock:
                self._stats["misses"] += 1
            return None

        vector = self._deserialize(row[0])
        with self._hot_lock:
            self._stats["hits_cold"] += 1
        self._promote_to_hot(key, vector)
        return vector

    def put(self, model_id: str, data: str | bytes, vector: np.ndarray) -> str:
        """Store a vector for (model_id, input).

        Returns:
            The cache key the vector was stored under.

        Raises:
            CacheError: If the database cannot be written.
        """
        key = cache_key(model_id, data)
        self.put_by_key(key, model_id, vector)
        return key

    def put_by_key(self, key: str, model_id: str, vector: np.ndarray) -> None:
        vector = np.asarray(vector, dtype=np.float32).reshape(-1)
        blob = self._serialize(vector)

        # Identical rewrites keep the original created_at
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO embedding_cache (id, model, embedding, dim, created_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    model = excluded.model,
                    embedding = excluded.embedding,
                    dim = excluded.dim,
                    created_at = excluded.created_at
                WHERE embedding_cache.embedding != excluded.embedding
                """,
                (key, model_id, blob, int(vector.shape[0]), int(time.time())),
            )

        self._promote_to_hot(key, vector)

    def delete(self, key: str) -> bool:
        """Delete one entry by key.

        Returns:
            True if an entry was removed.
        """
        with self._hot_lock:
            self._hot_cache.pop(key, None)
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM embedding_cache WHERE id = ?", (key,))
            deleted = cursor.rowcount > 0
        if deleted:
            logger.debug("Deleted cache entry %s", key)
        return deleted

    def delete_model(self, model_id: str) -> int:
        """Delete every entry produced by `model_id`.

        Used after a model is upgraded in place, when its old vectors are stale.

        Returns:
            Number of entries removed.
        """
        with self._connect() as conn:
            keys = [
                row[0]
                for row in conn.execute(
                    "SELECT id FROM embedding_cache WHERE model = ?", (model_id,)
                )
            ]
            conn.execute("DELETE FROM embedding_cache WHERE model = ?", (model_id,))
        with self._hot_lock:
            for key in keys:
                self._hot_cache.pop(key, None)
        logger.info("Invalidated %d cache entries for model %s", len(keys), model_id)
        return len(keys)

    def list(self, model: str | None = None) -> list[CacheEntry]:
        """Return persisted entries, oldest first, optionally for one model."""
        query = "SELECT id, model, embedding, created_at FROM embedding_cache"
        params: tuple[str, ...] = ()
        if model is not None:
            query += " WHERE model = ?"
            params = (model,)
        query += " ORDER BY created_at, id"

        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()

        return [
            CacheEntry(
                id=row[0],
                model=row[1],
                embedding=self._deserialize(row[2]).tolist(),
                created_at=row[3],
            )
            for row in rows
        ]

    def cache_info(self) -> dict[str, int | float]:
        """Return cache statistics: hits_hot, hits_cold, misses, hot_size, cold_size, hit_rate."""
        with self._connect() as conn:
            cold_size = conn.execute("SELECT COUNT(*) FROM embedding_cache").fetchone()[0]

        with self._hot_lock:
            stats = dict(self._stats)
            hot_size = len(self._hot_cache)

        total_requests = stats["hits_hot"] + stats["hits_cold"] + stats["misses"]
        if total_requests == 0:
            hit_rate = 0.0
        else:
            hit_rate = (stats["hits_hot"] + stats["hits_cold"]) / total_requests

        return {
            "hits_hot": stats["hits_hot"],
            "hits_cold": stats["hits_cold"],
            "misses": stats["misses"],
            "hot_size": hot_size,
            "cold_size": cold_size,
            "hit_rate": hit_rate,
        }

    def clear(self) -> None:
        """Remove all entries and reset statistics."""
        with self._connect() as conn:
            conn.execute("DELETE FROM embedding_cache")
        with self._hot_lock:
            self._hot_cache.clear()
            self._stats = {
                "hits_hot": 0,
                "hits_cold": 0,
                "misses": 0,
            }
        logger.debug("Cleared embedding cache at %s", self.db_path)
