"""
Fragment store: a single SQLite file holding content, embeddings and a
full-text index.

Each fragment is keyed by the SHA-256 of its normalized content.  The
``content_hash`` column is UNIQUE, so the insert statement itself is the
deduplication check: two writers can never both store the same content.
"""

from __future__ import annotations

import logging
import os
import sqlite3
from collections.abc import Iterator, Sequence
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import numpy as np

from .embeddings import DEFAULT_DIMENSION
from .intelligence import content_hash, normalize_content

logger = logging.getLogger(__name__)

#: SQLite expression producing the current UTC time in the stored format.
_NOW_SQL = "strftime('%Y-%m-%d %H:%M:%f', 'now')"

_SCHEMA = f"""
CREATE TABLE IF NOT EXISTS fragments (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    content TEXT NOT NULL,
    content_hash TEXT NOT NULL UNIQUE,
    embedding BLOB NOT NULL,
    project_id TEXT,
    source_session TEXT,
    timestamp TEXT NOT NULL DEFAULT ({_NOW_SQL})
);

CREATE INDEX IF NOT EXISTS idx_fragments_project ON fragments(project_id);
CREATE INDEX IF NOT EXISTS idx_fragments_timestamp ON fragments(timestamp);

CREATE VIRTUAL TABLE IF NOT EXISTS fragments_fts USING fts5(
    content, content='fragments', content_rowid='id'
);

CREATE TRIGGER IF NOT EXISTS fragments_ai AFTER INSERT ON fragments BEGIN
    INSERT INTO fragments_fts(rowid, content) VALUES (new.id, new.content);
END;

CREATE TRIGGER IF NOT EXISTS fragments_ad AFTER DELETE ON fragments BEGIN
    INSERT INTO fragments_fts(fragments_fts, rowid, content)
    VALUES ('delete', old.id, old.content);
END;

CREATE TRIGGER IF NOT EXISTS fragments_au AFTER UPDATE ON fragments BEGIN
    INSERT INTO fragments_fts(fragments_fts, rowid, content)
    VALUES ('delete', old.id, old.content);
    INSERT INTO fragments_fts(rowid, content) VALUES (new.id, new.content);
END;
"""


class StoreError(RuntimeError):
    """Raised when the fragment database cannot be opened or initialised."""


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Fragment:
    id: int
    content: str
    content_hash: str
    embedding: np.ndarray
    project_id: str | None
    source_session: str | None
    timestamp: datetime


@dataclass(frozen=True)
class InsertResult:
    id: int
    is_duplicate: bool


@dataclass(frozen=True)
class StoreStats:
    fragment_count: int
    project_count: int
    session_count: int
    db_size_bytes: int
    oldest_timestamp: datetime | None
    newest_timestamp: datetime | None


@dataclass(frozen=True)
class ProjectStats:
    fragment_count: int
    session_count: int
    last_archive: datetime | None


@dataclass(frozen=True)
class SearchScope:
    """
    Which fragments a search may see.

    With a ``project_id`` (and ``include_all_projects`` off) only that
    project's fragments and global (``project_id IS NULL``) fragments are
    eligible.  Otherwise every fragment is.
    """

    project_id: str | None = None
    include_all_projects: bool = False

    def where_clause(self, alias: str = "f") -> tuple[str, tuple[Any, ...]]:
        if self.include_all_projects or self.project_id is None:
            return "1 = 1", ()
        return f"({alias}.project_id = ? OR {alias}.project_id IS NULL)", (self.project_id,)


# ---------------------------------------------------------------------------
# Timestamp helpers
# ---------------------------------------------------------------------------


def format_timestamp(value: datetime) -> str:
    """Render *value* in the UTC text form stored in the database."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%d %H:%M:%S.%f")


def parse_stored_timestamp(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _optional_timestamp(value: str | None) -> datetime | None:
    return parse_stored_timestamp(value) if value else None


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class MemoryStore:
    """
    Persistent fragment store backed by one SQLite database file.

    Parameters
    ----------
    path:
        Database file path, or ``":memory:"`` for a throwaway store.
        Parent directories are created as needed.
    dimension:
        Length every stored embedding must have.
    """

    def __init__(self, path: str | Path = ":memory:", dimension: int = DEFAULT_DIMENSION) -> None:
        self.path = str(path)
        self.dimension = dimension
        try:
            if self.path != ":memory:":
                Path(self.path).parent.mkdir(parents=True, exist_ok=True)
            self.conn = sqlite3.connect(self.path, check_same_thread=False)
            self.conn.row_factory = sqlite3.Row
            self.conn.executescript(_SCHEMA)
            self.conn.commit()
        except (OSError, sqlite3.Error) as exc:
            raise StoreError(f"cannot open memory store at {self.path}: {exc}") from exc
        logger.debug("Opened memory store %s", self.path)

    def __enter__(self) -> MemoryStore:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Write operations
    # ------------------------------------------------------------------

    def insert(
        self,
        content: str,
        embedding: Sequence[float] | np.ndarray,
        project_id: str | None = None,
        source_session: str | None = None,
        timestamp: datetime | None = None,
    ) -> InsertResult:
        """
        Store a fragment unless identical content already exists.

        The uniqueness check and the write are one statement, so the
        ``content_hash`` invariant holds even if another connection is
        inserting the same content at the same time.
        """
        normalized = normalize_content(content)
        if not normalized:
            raise ValueError("fragment content must not be empty")
        vector = np.asarray(embedding, dtype=np.float32).reshape(-1)
        if vector.shape[0] != self.dimension:
            raise ValueError(
                f"embedding has dimension {vector.shape[0]}, store expects {self.dimension}"
            )

        digest = content_hash(normalized)
        cursor = self.conn.execute(
            f"""
            INSERT INTO fragments
                (content, content_hash, embedding, project_id, source_session, timestamp)
            VALUES (?, ?, ?, ?, ?, COALESCE(?, {_NOW_SQL}))
            ON CONFLICT(content_hash) DO NOTHING
            """,
            (
                normalized,
                digest,
                vector.tobytes(),
                project_id,
                source_session,
                format_timestamp(timestamp) if timestamp is not None else None,
            ),
        )
        if cursor.rowcount == 1:
            return InsertResult(id=int(cursor.lastrowid), is_duplicate=False)

        row = self.conn.execute(
            "SELECT id FROM fragments WHERE content_hash = ?", (digest,)
        ).fetchone()
        return InsertResult(id=int(row["id"]), is_duplicate=True)

    def commit(self) -> None:
        """Flush pending writes to disk."""
        self.conn.commit()

    def rollback(self) -> None:
        """Discard writes made since the last commit."""
        self.conn.rollback()

    def close(self) -> None:
        """Commit and close the connection."""
        try:
            self.conn.commit()
        finally:
            self.conn.close()

    # ------------------------------------------------------------------
    # Read operations
    # ------------------------------------------------------------------

    def content_exists(self, content: str) -> bool:
        """Return ``True`` if a fragment with the same normalized content exists."""
        return self.find_id(content) is not None

    def find_id(self, content: str) -> int | None:
        """Return the id of the fragment holding *content*, if any."""
        row = self.conn.execute(
            "SELECT id FROM fragments WHERE content_hash = ?",
            (content_hash(content),),
        ).fetchone()
        return int(row["id"]) if row else None

    def get(self, fragment_id: int) -> Fragment | None:
        row = self.conn.execute(
            "SELECT * FROM fragments WHERE id = ?", (fragment_id,)
        ).fetchone()
        return self._to_fragment(row) if row else None

    def get_many(self, ids: Sequence[int]) -> dict[int, Fragment]:
        """Fetch fragments by id; missing ids are absent from the result."""
        if not ids:
            return {}
        placeholders = ", ".join("?" for _ in ids)
        rows = self.conn.execute(
            f"SELECT * FROM fragments WHERE id IN ({placeholders})", tuple(ids)
        ).fetchall()
        return {int(row["id"]): self._to_fragment(row) for row in rows}

    def count(self) -> int:
        """Return the total number of stored fragments."""
        return int(self.conn.execute("SELECT COUNT(*) FROM fragments").fetchone()[0])

    def iter_embeddings(self, scope: SearchScope) -> Iterator[tuple[int, datetime, np.ndarray]]:
        """Yield ``(id, timestamp, embedding)`` for every fragment in *scope*."""
        clause, params = scope.where_clause()
        rows = self.conn.execute(
            f"SELECT f.id, f.timestamp, f.embedding FROM fragments f WHERE {clause}",
            params,
        )
        for row in rows:
            yield (
                int(row["id"]),
                parse_stored_timestamp(row["timestamp"]),
                np.frombuffer(row["embedding"], dtype=np.float32),
            )

    def full_text_matches(
        self, match_expression: str, scope: SearchScope, limit: int
    ) -> list[tuple[int, float, datetime]]:
        """
        Run an FTS5 MATCH over fragment content.

        Returns ``(id, bm25, timestamp)`` rows, best match first.  Lower
        ``bm25`` values are better matches.
        """
        clause, params = scope.where_clause()
        rows = self.conn.execute(
            f"""
            SELECT f.id, bm25(fragments_fts) AS relevance, f.timestamp
            FROM fragments_fts
            JOIN fragments f ON f.id = fragments_fts.rowid
            WHERE fragments_fts MATCH ? AND {clause}
            ORDER BY relevance ASC, f.timestamp DESC, f.id ASC
            LIMIT ?
            """,
            (match_expression, *params, limit),
        ).fetchall()
        return [
            (int(row["id"]), float(row["relevance"]), parse_stored_timestamp(row["timestamp"]))
            for row in rows
        ]

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    def get_stats(self) -> StoreStats:
        row = self.conn.execute(
            """
            SELECT COUNT(*) AS fragments,
                   COUNT(DISTINCT project_id) AS projects,
                   COUNT(DISTINCT source_session) AS sessions,
                   MIN(timestamp) AS oldest,
                   MAX(timestamp) AS newest
            FROM fragments
            """
        ).fetchone()
        return StoreStats(
            fragment_count=int(row["fragments"]),
            project_count=int(row["projects"]),
            session_count=int(row["sessions"]),
            db_size_bytes=self.size_bytes(),
            oldest_timestamp=_optional_timestamp(row["oldest"]),
            newest_timestamp=_optional_timestamp(row["newest"]),
        )

    def get_project_stats(self, project_id: str) -> ProjectStats:
        row = self.conn.execute(
            """
            SELECT COUNT(*) AS fragments,
                   COUNT(DISTINCT source_session) AS sessions,
                   MAX(timestamp) AS newest
            FROM fragments
            WHERE project_id = ?
            """,
            (project_id,),
        ).fetchone()
        return ProjectStats(
            fragment_count=int(row["fragments"]),
            session_count=int(row["sessions"]),
            last_archive=_optional_timestamp(row["newest"]),
        )

    def size_bytes(self) -> int:
        """Return the storage footprint of the database."""
        if self.path != ":memory:" and os.path.exists(self.path):
            return os.path.getsize(self.path)
        page_count = self.conn.execute("PRAGMA page_count").fetchone()[0]
        page_size = self.conn.execute("PRAGMA page_size").fetchone()[0]
        return int(page_count) * int(page_size)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _to_fragment(self, row: sqlite3.Row) -> Fragment:
        return Fragment(
            id=int(row["id"]),
            content=row["content"],
            content_hash=row["content_hash"],
            embedding=np.frombuffer(row["embedding"], dtype=np.float32),
            project_id=row["project_id"],
            source_session=row["source_session"],
            timestamp=parse_stored_timestamp(row["timestamp"]),
        )
