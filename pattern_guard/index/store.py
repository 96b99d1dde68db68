"""
SQLite-backed persistent state for warm restarts.

Tables:

  - ``files``       one FileRecord per indexed path
  - ``chunks``      chunk metadata + content, keyed by chunk id
  - ``embeddings``  float32 vectors keyed by content hash (shared by chunks)
  - ``patterns``    the pattern knowledge base
  - ``meta``        key/value (embedder signature, schema version)

Every public operation opens its own WAL-mode connection so that worker
threads can write concurrently; SQLite serialises the writes.

Storage: ``.pattern_guard/state.db``
"""

from __future__ import annotations

import json
import logging
import os
import sqlite3
from contextlib import contextmanager
from typing import Iterable, Optional

import numpy as np

from ..errors import StoreFailure, StoreUnavailableError
from .models import Chunk, FileRecord

logger = logging.getLogger(__name__)

SCHEMA_VERSION = "1"

_SCHEMA = """
CREATE TABLE IF NOT EXISTS files (
    path           TEXT    PRIMARY KEY,
    hash           TEXT    NOT NULL,
    language       TEXT    NOT NULL DEFAULT '',
    chunk_ids      TEXT    NOT NULL DEFAULT '[]',
    indexed_at     REAL    NOT NULL DEFAULT 0.0,
    needs_reindex  INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS chunks (
    chunk_id       TEXT    PRIMARY KEY,
    file_path      TEXT    NOT NULL,
    symbol         TEXT    NOT NULL,
    ordinal        INTEGER NOT NULL DEFAULT 0,
    kind           TEXT    NOT NULL,
    language       TEXT    NOT NULL,
    line_start     INTEGER NOT NULL,
    line_end       INTEGER NOT NULL,
    byte_start     INTEGER NOT NULL,
    byte_end       INTEGER NOT NULL,
    content        TEXT    NOT NULL,
    content_hash   TEXT    NOT NULL,
    last_modified  REAL    NOT NULL DEFAULT 0.0,
    degraded       INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS embeddings (
    content_hash   TEXT    PRIMARY KEY,
    vector         BLOB    NOT NULL,
    degraded       INTEGER NOT NULL DEFAULT 0,
    computed_at    REAL    NOT NULL DEFAULT 0.0
);

CREATE TABLE IF NOT EXISTS patterns (
    pattern_id     TEXT    PRIMARY KEY,
    payload        TEXT    NOT NULL
);

CREATE TABLE IF NOT EXISTS meta (
    key            TEXT    PRIMARY KEY,
    value          TEXT    NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_chunks_file ON chunks(file_path);
CREATE INDEX IF NOT EXISTS idx_chunks_hash ON chunks(content_hash);
"""

_CHUNK_COLUMNS = (
    "chunk_id, file_path, symbol, ordinal, kind, language, line_start, line_end, "
    "byte_start, byte_end, content, content_hash, last_modified, degraded"
)


def _vec_to_bytes(vec) -> bytes:
    return np.asarray(vec, dtype=np.float32).tobytes()


def _bytes_to_vec(buf: bytes) -> np.ndarray:
    return np.frombuffer(buf, dtype=np.float32).copy()


class StateStore:
    """
    Persistent store for files, chunks, embeddings and patterns.

    Parameters
    ----------
    db_path:
        Path to the SQLite database file.  Created if absent.

    Raises
    ------
    StoreUnavailableError
        If the database cannot be created or opened.
    """

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path
        try:
            os.makedirs(os.path.dirname(os.path.abspath(db_path)), exist_ok=True)
            self._init_db()
        except (OSError, sqlite3.Error) as exc:
            raise StoreUnavailableError(f"Cannot open state store {db_path}: {exc}") from exc

    @property
    def path(self) -> str:
        return self._db_path

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @contextmanager
    def _connect(self):
        """Yield a connected SQLite connection with WAL mode for concurrency."""
        try:
            conn = sqlite3.connect(self._db_path, timeout=10)
        except sqlite3.Error as exc:
            raise StoreFailure(f"cannot connect to {self._db_path}: {exc}") from exc
        try:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.row_factory = sqlite3.Row
            yield conn
            conn.commit()
        except sqlite3.Error as exc:
            conn.rollback()
            raise StoreFailure(str(exc)) from exc
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_db(self) -> None:
        conn = sqlite3.connect(self._db_path, timeout=10)
        try:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript(_SCHEMA)
            conn.execute(
                "INSERT OR IGNORE INTO meta (key, value) VALUES ('schema_version', ?)",
                (SCHEMA_VERSION,),
            )
            conn.commit()
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Files + chunks
    # ------------------------------------------------------------------

    def write_file(
        self,
        record: FileRecord,
        chunks: list[Chunk],
        removed_ids: Iterable[str] = (),
        embedded_hashes: Optional[Iterable[str]] = None,
    ) -> None:
        """
        Persist one file update in a single transaction.

        Upserts *record* and *chunks* and deletes *removed_ids*.  Embedding
        rows are shared by content hash, so only the hashes in
        *embedded_hashes* (those embedded by this update) are written; when
        None, every chunk that carries a vector is written.
        """
        wanted = None if embedded_hashes is None else set(embedded_hashes)
        with self._connect() as conn:
            conn.executemany(
                "DELETE FROM chunks WHERE chunk_id = ?",
                [(cid,) for cid in removed_ids],
            )
            conn.executemany(
                f"INSERT OR REPLACE INTO chunks ({_CHUNK_COLUMNS}) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                [_chunk_row(c) for c in chunks],
            )
            conn.executemany(
                "INSERT OR REPLACE INTO embeddings (content_hash, vector, degraded, computed_at) "
                "VALUES (?, ?, ?, ?)",
                [
                    (c.content_hash, _vec_to_bytes(c.vector), int(c.degraded), c.last_modified)
                    for c in chunks
                    if c.vector is not None and (wanted is None or c.content_hash in wanted)
                ],
            )
            _upsert_file(conn, record)

    def rename_file(self, old_path: str, record: FileRecord, chunks: list[Chunk]) -> None:
        """Move a file's record and chunks to ``record.path`` in one transaction."""
        with self._connect() as conn:
            for path in (old_path, record.path):
                conn.execute("DELETE FROM chunks WHERE file_path = ?", (path,))
                conn.execute("DELETE FROM files WHERE path = ?", (path,))
            conn.executemany(
                f"INSERT OR REPLACE INTO chunks ({_CHUNK_COLUMNS}) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                [_chunk_row(c) for c in chunks],
            )
            _upsert_file(conn, record)

    def delete_file(self, path: str) -> None:
        """Remove the FileRecord and all chunks of *path*."""
        with self._connect() as conn:
            conn.execute("DELETE FROM chunks WHERE file_path = ?", (path,))
            conn.execute("DELETE FROM files WHERE path = ?", (path,))

    def mark_needs_reindex(self, path: str, flag: bool = True) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE files SET needs_reindex = ? WHERE path = ?", (int(flag), path)
            )

    def load_files(self) -> dict[str, FileRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT path, hash, language, chunk_ids, indexed_at, needs_reindex FROM files"
            ).fetchall()
        return {
            row["path"]: FileRecord(
                path=row["path"],
                content_hash=row["hash"],
                language=row["language"],
                chunk_ids=json.loads(row["chunk_ids"]),
                indexed_at=row["indexed_at"],
                needs_reindex=bool(row["needs_reindex"]),
            )
            for row in rows
        }

    def load_chunks(self, path: Optional[str] = None) -> list[Chunk]:
        """Load chunk metadata (with vectors where an embedding is stored)."""
        sql = (
            "SELECT c.*, e.vector AS vector FROM chunks c "
            "LEFT JOIN embeddings e ON e.content_hash = c.content_hash"
        )
        params: tuple = ()
        if path is not None:
            sql += " WHERE c.file_path = ?"
            params = (path,)
        with self._connect() as conn:
            rows = conn.execute(sql + " ORDER BY c.file_path, c.byte_start", params).fetchall()
        return [_row_chunk(row) for row in rows]

    # ------------------------------------------------------------------
    # Embeddings
    # ------------------------------------------------------------------

    def save_embeddings(self, entries: dict) -> None:
        """Persist ``{content_hash: CachedVector}`` entries."""
        with self._connect() as conn:
            conn.executemany(
                "INSERT OR REPLACE INTO embeddings (content_hash, vector, degraded, computed_at) "
                "VALUES (?, ?, ?, ?)",
                [
                    (h, _vec_to_bytes(e.vector), int(e.degraded), e.computed_at)
                    for h, e in entries.items()
                ],
            )

    def load_embeddings(self) -> dict[str, tuple[np.ndarray, bool, float]]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT content_hash, vector, degraded, computed_at FROM embeddings"
            ).fetchall()
        return {
            row["content_hash"]: (
                _bytes_to_vec(row["vector"]), bool(row["degraded"]), row["computed_at"]
            )
            for row in rows
        }

    def prune_embeddings(self) -> int:
        """Delete embeddings no chunk references; return the number removed."""
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM embeddings WHERE content_hash NOT IN "
                "(SELECT DISTINCT content_hash FROM chunks)"
            )
            return cur.rowcount

    # ------------------------------------------------------------------
    # Patterns
    # ------------------------------------------------------------------

    def save_patterns(self, payloads: dict[str, dict]) -> None:
        """Upsert ``{pattern_id: json-serialisable dict}``."""
        with self._connect() as conn:
            conn.executemany(
                "INSERT OR REPLACE INTO patterns (pattern_id, payload) VALUES (?, ?)",
                [(pid, json.dumps(data, sort_keys=True)) for pid, data in payloads.items()],
            )

    def load_patterns(self) -> dict[str, dict]:
        with self._connect() as conn:
            rows = conn.execute("SELECT pattern_id, payload FROM patterns").fetchall()
        return {row["pattern_id"]: json.loads(row["payload"]) for row in rows}

    # ------------------------------------------------------------------
    # Meta
    # ------------------------------------------------------------------

    def get_meta(self, key: str) -> Optional[str]:
        with self._connect() as conn:
            row = conn.execute("SELECT value FROM meta WHERE key = ?", (key,)).fetchone()
        return row["value"] if row else None

    def set_meta(self, key: str, value: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO meta (key, value) VALUES (?, ?)", (key, value)
            )

    def clear_index(self) -> None:
        """Drop files, chunks and embeddings (patterns are kept)."""
        with self._connect() as conn:
            conn.execute("DELETE FROM chunks")
            conn.execute("DELETE FROM files")
            conn.execute("DELETE FROM embeddings")

    def stats(self) -> dict:
        with self._connect() as conn:
            return {
                "files": conn.execute("SELECT COUNT(*) FROM files").fetchone()[0],
                "chunks": conn.execute("SELECT COUNT(*) FROM chunks").fetchone()[0],
                "embeddings": conn.execute("SELECT COUNT(*) FROM embeddings").fetchone()[0],
                "patterns": conn.execute("SELECT COUNT(*) FROM patterns").fetchone()[0],
                "needs_reindex": conn.execute(
                    "SELECT COUNT(*) FROM files WHERE needs_reindex = 1"
                ).fetchone()[0],
            }


def _upsert_file(conn, record: FileRecord) -> None:
    conn.execute(
        """
        INSERT INTO files (path, hash, language, chunk_ids, indexed_at, needs_reindex)
        VALUES (?, ?, ?, ?, ?, ?)
        ON CONFLICT(path) DO UPDATE SET
            hash          = excluded.hash,
            language      = excluded.language,
            chunk_ids     = excluded.chunk_ids,
            indexed_at    = excluded.indexed_at,
            needs_reindex = excluded.needs_reindex
        """,
        (
            record.path,
            record.content_hash,
            record.language,
            json.dumps(record.chunk_ids),
            record.indexed_at,
            int(record.needs_reindex),
        ),
    )


def _chunk_row(chunk: Chunk) -> tuple:
    return (
        chunk.chunk_id, chunk.file_path, chunk.symbol, chunk.ordinal, chunk.kind,
        chunk.language, chunk.line_start, chunk.line_end, chunk.byte_start,
        chunk.byte_end, chunk.content, chunk.content_hash, chunk.last_modified,
        int(chunk.degraded),
    )


def _row_chunk(row) -> Chunk:
    vector = row["vector"]
    return Chunk(
        chunk_id=row["chunk_id"],
        file_path=row["file_path"],
        symbol=row["symbol"],
        ordinal=row["ordinal"],
        kind=row["kind"],
        language=row["language"],
        line_start=row["line_start"],
        line_end=row["line_end"],
        byte_start=row["byte_start"],
        byte_end=row["byte_end"],
        content=row["content"],
        content_hash=row["content_hash"],
        last_modified=row["last_modified"],
        vector=_bytes_to_vec(vector) if vector is not None else None,
        degraded=bool(row["degraded"]),
    )
