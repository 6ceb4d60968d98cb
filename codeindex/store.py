"""
Store - SQLite persistence for chunks and vectors.

One database (index.sqlite) in the cache directory holds:
- meta: the IndexMetadata stamp
- chunks: chunk records by chunk id, indexed by path
- vectors: float32 little-endian embedding blobs by chunk id

All rows of one file are replaced in a single transaction, so a crash
leaves each file either fully old or fully new.
"""

import json
import logging
import sqlite3
import time
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Tuple

import numpy as np

from .errors import CacheCorruption, PersistenceError
from .models import Chunk, IndexMetadata


logger = logging.getLogger(__name__)

INDEX_SCHEMA_VERSION = 1
VECTOR_DTYPE = np.dtype("<f4")


def serialize_embedding(vector: np.ndarray) -> bytes:
    """Convert embedding to little-endian float32 bytes for storage."""
    return np.asarray(vector, dtype=VECTOR_DTYPE).tobytes()


def deserialize_embedding(data: bytes) -> np.ndarray:
    return np.frombuffer(data, dtype=VECTOR_DTYPE).astype(np.float32)


class IndexStore:
    """Chunk cache and vector index tables stamped with IndexMetadata."""

    def __init__(self, db_path: Path):
        self.db_path = db_path
        self._conn: Optional[sqlite3.Connection] = None

    def _get_connection(self) -> sqlite3.Connection:
        """Get or create database connection."""
        if self._conn is None:
            try:
                self._conn = sqlite3.connect(str(self.db_path))
                self._conn.row_factory = sqlite3.Row
                self._conn.execute("PRAGMA journal_mode = WAL")
                self._conn.execute("PRAGMA synchronous = NORMAL")
                self._init_tables()
            except sqlite3.DatabaseError as e:
                self._conn = None
                raise CacheCorruption(self.db_path, str(e)) from e
        return self._conn

    def _init_tables(self):
        self._conn.executescript("""
            CREATE TABLE IF NOT EXISTS meta (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS chunks (
                chunk_id TEXT PRIMARY KEY,
                path TEXT NOT NULL,
                start_byte INTEGER NOT NULL,
                end_byte INTEGER NOT NULL,
                start_line INTEGER NOT NULL,
                end_line INTEGER NOT NULL,
                content_hash TEXT NOT NULL,
                symbols TEXT NOT NULL,
                text TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_chunks_path ON chunks(path);

            CREATE TABLE IF NOT EXISTS vectors (
                chunk_id TEXT PRIMARY KEY,
                model_id TEXT NOT NULL,
                dimension INTEGER NOT NULL,
                embedding BLOB,
                created_at REAL NOT NULL,
                degraded INTEGER NOT NULL DEFAULT 0,
                reason TEXT
            );
        """)
        self._conn.commit()

    def read_metadata(self) -> Optional[IndexMetadata]:
        """Stored metadata, or None for a fresh database."""
        conn = self._get_connection()
        try:
            row = conn.execute("SELECT value FROM meta WHERE key = 'metadata'").fetchone()
        except sqlite3.DatabaseError as e:
            raise CacheCorruption(self.db_path, str(e)) from e
        if row is None:
            return None
        try:
            return IndexMetadata.from_dict(json.loads(row["value"]))
        except (ValueError, KeyError, TypeError) as e:
            raise CacheCorruption(self.db_path, f"unreadable metadata: {e}") from e

    def write_metadata(self, metadata: IndexMetadata):
        self._write(
            "INSERT INTO meta (key, value) VALUES ('metadata', ?) "
            "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
            (json.dumps(metadata.to_dict(), sort_keys=True),),
        )

    def load_chunks(self) -> Dict[str, List[Chunk]]:
        """All chunks grouped by path, in file order."""
        conn = self._get_connection()
        by_path: Dict[str, List[Chunk]] = {}
        try:
            rows = conn.execute("SELECT * FROM chunks ORDER BY path, start_byte").fetchall()
        except sqlite3.DatabaseError as e:
            raise CacheCorruption(self.db_path, str(e)) from e
        for row in rows:
            by_path.setdefault(row["path"], []).append(Chunk(
                chunk_id=row["chunk_id"],
                path=row["path"],
                start_byte=row["start_byte"],
                end_byte=row["end_byte"],
                start_line=row["start_line"],
                end_line=row["end_line"],
                content_hash=row["content_hash"],
                symbols=tuple(json.loads(row["symbols"])),
                text=row["text"],
            ))
        return by_path

    def load_vectors(self) -> Tuple[Dict[str, np.ndarray], Dict[str, str]]:
        """
        Stored vectors and degraded markers.

        Returns:
            (chunk_id -> vector, chunk_id -> degraded reason)
        """
        conn = self._get_connection()
        vectors: Dict[str, np.ndarray] = {}
        degraded: Dict[str, str] = {}
        try:
            rows = conn.execute("SELECT chunk_id, embedding, degraded, reason FROM vectors").fetchall()
        except sqlite3.DatabaseError as e:
            raise CacheCorruption(self.db_path, str(e)) from e
        for row in rows:
            if row["degraded"] or row["embedding"] is None:
                degraded[row["chunk_id"]] = row["reason"] or "degraded"
            else:
                vectors[row["chunk_id"]] = deserialize_embedding(row["embedding"])
        return vectors, degraded

    def replace_file_chunks(
        self,
        path: str,
        chunks: List[Chunk],
        vectors: Mapping[str, np.ndarray],
        degraded: Mapping[str, str],
        model_id: str,
    ):
        """Replace every chunk and vector of one file in one transaction."""
        conn = self._get_connection()
        now = time.time()
        try:
            with conn:
                conn.execute(
                    "DELETE FROM vectors WHERE chunk_id IN (SELECT chunk_id FROM chunks WHERE path = ?)",
                    (path,),
                )
                conn.execute("DELETE FROM chunks WHERE path = ?", (path,))
                conn.executemany(
                    """
                    INSERT OR REPLACE INTO chunks
                        (chunk_id, path, start_byte, end_byte, start_line, end_line, content_hash, symbols, text)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    [
                        (c.chunk_id, c.path, c.start_byte, c.end_byte, c.start_line, c.end_line,
                         c.content_hash, json.dumps(list(c.symbols)), c.text)
                        for c in chunks
                    ],
                )
                rows = []
                for c in chunks:
                    if c.chunk_id in vectors:
                        vector = vectors[c.chunk_id]
                        rows.append((c.chunk_id, model_id, int(vector.shape[0]),
                                     serialize_embedding(vector), now, 0, None))
                    elif c.chunk_id in degraded:
                        rows.append((c.chunk_id, model_id, 0, None, now, 1, degraded[c.chunk_id]))
                conn.executemany(
                    """
                    INSERT OR REPLACE INTO vectors
                        (chunk_id, model_id, dimension, embedding, created_at, degraded, reason)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    rows,
                )
        except sqlite3.DatabaseError as e:
            raise PersistenceError(f"Cannot write chunks for {path}: {e}") from e

    def remove_file(self, path: str):
        conn = self._get_connection()
        try:
            with conn:
                conn.execute(
                    "DELETE FROM vectors WHERE chunk_id IN (SELECT chunk_id FROM chunks WHERE path = ?)",
                    (path,),
                )
                conn.execute("DELETE FROM chunks WHERE path = ?", (path,))
        except sqlite3.DatabaseError as e:
            raise PersistenceError(f"Cannot remove chunks for {path}: {e}") from e

    def reset(self):
        """Drop every chunk, vector and the metadata stamp."""
        conn = self._get_connection()
        try:
            with conn:
                conn.execute("DELETE FROM vectors")
                conn.execute("DELETE FROM chunks")
                conn.execute("DELETE FROM meta")
        except sqlite3.DatabaseError as e:
            raise PersistenceError(f"Cannot reset {self.db_path}: {e}") from e
        logger.info(f"Cleared index store {self.db_path}")

    def counts(self) -> Tuple[int, int]:
        """(chunk rows, vector rows)."""
        conn = self._get_connection()
        chunks = conn.execute("SELECT COUNT(*) FROM chunks").fetchone()[0]
        vectors = conn.execute("SELECT COUNT(*) FROM vectors WHERE degraded = 0").fetchone()[0]
        return chunks, vectors

    def _write(self, sql: str, params: tuple):
        conn = self._get_connection()
        try:
            with conn:
                conn.execute(sql, params)
        except sqlite3.DatabaseError as e:
            raise PersistenceError(f"Cannot write {self.db_path}: {e}") from e

    def close(self):
        if self._conn:
            self._conn.close()
            self._conn = None
