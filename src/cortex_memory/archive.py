"""
Archive pipeline: turn a session transcript into stored, embedded fragments.

One run walks the stages::

    PARSING -> EXTRACTING -> FILTERING -> DEDUPING -> EMBEDDING -> PERSISTING -> DONE

Embedding is done in batches; each batch is inserted and committed before
the next one starts, so a failure part-way through keeps everything already
written.
"""

from __future__ import annotations

import enum
import logging
import sqlite3
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from .embeddings import EmbeddingProvider, ProviderUnavailable
from .extractor import parse_transcript, session_id_from_path
from .intelligence import MIN_CONTENT_LENGTH, classify_chunk, content_hash, extract_chunks
from .store import InsertResult, MemoryStore

logger = logging.getLogger(__name__)

#: ``source_session`` recorded for content entered by hand.
MANUAL_SESSION: str = "manual"

DEFAULT_BATCH_SIZE: int = 32

ProgressCallback = Callable[[int, int], None]


class ArchiveStage(enum.Enum):
    PARSING = "parsing"
    EXTRACTING = "extracting"
    FILTERING = "filtering"
    DEDUPING = "deduping"
    EMBEDDING = "embedding"
    PERSISTING = "persisting"
    DONE = "done"


@dataclass
class ArchiveResult:
    archived: int = 0
    skipped: int = 0
    duplicates: int = 0

    @property
    def total(self) -> int:
        return self.archived + self.skipped + self.duplicates


class ArchiveAborted(RuntimeError):
    """
    Raised when a run cannot finish.

    ``result`` holds the counts of the chunks fully processed before the
    failure; ``stage`` is where the run stopped.
    """

    def __init__(self, stage: ArchiveStage, result: ArchiveResult, message: str) -> None:
        super().__init__(f"archive aborted while {stage.value}: {message}")
        self.stage = stage
        self.result = result


@dataclass(frozen=True)
class _Candidate:
    content: str
    timestamp: datetime


class ArchivePipeline:
    """
    Extract, filter, deduplicate, embed and store one transcript at a time.

    Parameters
    ----------
    store:
        Destination fragment store.
    provider:
        Embedding provider used in passage mode.
    min_content_length:
        Shortest chunk that may be archived.
    batch_size:
        Number of chunks embedded (and committed) per batch.
    """

    def __init__(
        self,
        store: MemoryStore,
        provider: EmbeddingProvider,
        min_content_length: int = MIN_CONTENT_LENGTH,
        batch_size: int = DEFAULT_BATCH_SIZE,
    ) -> None:
        self._store = store
        self._provider = provider
        self.min_content_length = min_content_length
        self.batch_size = max(1, batch_size)
        self.stage = ArchiveStage.DONE

    def _enter(self, stage: ArchiveStage) -> None:
        self.stage = stage
        logger.debug("Archive stage: %s", stage.value)

    def archive_session(
        self,
        transcript_path: str | Path,
        project_id: str | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> ArchiveResult:
        """
        Archive every worthwhile assistant chunk of *transcript_path*.

        A missing or unreadable transcript archives nothing and returns zero
        counts.  Malformed lines are skipped.

        Raises
        ------
        ArchiveAborted
            If embedding fails or the store rejects a read or write.
            Batches committed before the failure stay in the store; the
            failing batch is rolled back and left out of the counts.
        """
        result = ArchiveResult()
        archive_time = datetime.now(timezone.utc)

        self._enter(ArchiveStage.PARSING)
        messages = parse_transcript(transcript_path)
        if not messages:
            self._enter(ArchiveStage.DONE)
            return result

        self._enter(ArchiveStage.EXTRACTING)
        chunked: list[tuple[list[str], datetime]] = []
        for message in messages:
            if message.role != "assistant":
                continue
            chunks = extract_chunks(message.content, self.min_content_length)
            if not chunks and message.content.strip():
                # The whole reply was considered and rejected as too short.
                # Short paragraphs dropped from a reply that has other
                # chunks are not counted.
                result.skipped += 1
                continue
            chunked.append((chunks, message.timestamp or archive_time))

        self._enter(ArchiveStage.FILTERING)
        kept: list[_Candidate] = []
        for chunks, timestamp in chunked:
            for chunk in chunks:
                if classify_chunk(chunk, self.min_content_length).kept:
                    kept.append(_Candidate(chunk.strip(), timestamp))
                else:
                    result.skipped += 1

        self._enter(ArchiveStage.DEDUPING)
        pending: list[_Candidate] = []
        seen: set[str] = set()
        try:
            for candidate in kept:
                digest = content_hash(candidate.content)
                if digest in seen or self._store.content_exists(candidate.content):
                    result.duplicates += 1
                    continue
                seen.add(digest)
                pending.append(candidate)
        except sqlite3.Error as exc:
            raise ArchiveAborted(self.stage, result, str(exc)) from exc

        if pending:
            self._embed_and_store(
                pending,
                project_id=project_id,
                session_id=session_id_from_path(transcript_path),
                result=result,
                on_progress=on_progress,
            )

        self._enter(ArchiveStage.DONE)
        logger.info(
            "Archived %s: %d new, %d skipped, %d duplicates",
            transcript_path,
            result.archived,
            result.skipped,
            result.duplicates,
        )
        return result

    def _embed_and_store(
        self,
        pending: list[_Candidate],
        project_id: str | None,
        session_id: str,
        result: ArchiveResult,
        on_progress: ProgressCallback | None,
    ) -> None:
        total = len(pending)
        for start in range(0, total, self.batch_size):
            batch = pending[start : start + self.batch_size]

            self._enter(ArchiveStage.EMBEDDING)
            try:
                embeddings = self._provider.embed_passages([c.content for c in batch])
            except ProviderUnavailable as exc:
                raise ArchiveAborted(self.stage, result, str(exc)) from exc
            if len(embeddings) != len(batch):
                raise ArchiveAborted(
                    self.stage,
                    result,
                    f"provider returned {len(embeddings)} vectors for {len(batch)} chunks",
                )

            self._enter(ArchiveStage.PERSISTING)
            archived = duplicates = 0
            try:
                for candidate, embedding in zip(batch, embeddings):
                    inserted = self._store.insert(
                        candidate.content,
                        embedding,
                        project_id=project_id,
                        source_session=session_id,
                        timestamp=candidate.timestamp,
                    )
                    if inserted.is_duplicate:
                        duplicates += 1
                    else:
                        archived += 1
                self._store.commit()
            except sqlite3.Error as exc:
                self._store.rollback()
                raise ArchiveAborted(self.stage, result, str(exc)) from exc
            # Counts only cover committed batches.
            result.archived += archived
            result.duplicates += duplicates

            if on_progress is not None:
                on_progress(min(start + self.batch_size, total), total)


def archive_content(
    store: MemoryStore,
    provider: EmbeddingProvider,
    content: str,
    project_id: str | None = None,
) -> InsertResult | None:
    """
    Store one piece of hand-entered text.

    Returns ``None`` for blank input.  Existing content is reported as a
    duplicate without spending an embedding call.
    """
    text = content.strip()
    if not text:
        return None
    existing = store.find_id(text)
    if existing is not None:
        return InsertResult(id=existing, is_duplicate=True)

    embedding = provider.embed_passages([text])[0]
    inserted = store.insert(
        text,
        embedding,
        project_id=project_id,
        source_session=MANUAL_SESSION,
        timestamp=datetime.now(timezone.utc),
    )
    store.commit()
    return inserted
