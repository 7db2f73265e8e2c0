"""
MemoryManager: high-level API for archiving sessions and recalling memories.

This is the main entry-point for the CLI and the MCP server.

Usage example::

    from cortex_memory import MemoryManager

    memory = MemoryManager()

    # Archive what the assistant said during a session
    result = memory.archive_session("~/.claude/projects/app/3f2a.jsonl", project_id="app")

    # Later, recall relevant context for a new prompt
    for r in memory.search("how are refresh tokens revoked?", project_id="app"):
        print(r.score, r.content)
"""

from __future__ import annotations

import logging
from pathlib import Path

from .archive import ArchivePipeline, ArchiveResult, ProgressCallback, archive_content
from .config import CortexConfig, Settings, load_config
from .embeddings import EmbeddingProvider, ModelStatus, get_provider, verify_model
from .search import SearchResult, SearchService
from .store import InsertResult, MemoryStore, ProjectStats, StoreStats

logger = logging.getLogger(__name__)


class MemoryManager:
    """
    Memory manager backed by a local SQLite fragment store.

    Responsibilities
    ----------------
    * **Archive** – Parses a transcript, keeps the assistant chunks worth
      remembering, skips content already stored and embeds the rest.
    * **Search** – Fuses keyword and vector rankings with Reciprocal Rank
      Fusion and favours recent fragments.
    * **Report** – Store-wide and per-project statistics.

    Parameters
    ----------
    settings:
        Paths and model name.  Read from the environment when omitted.
    config:
        Behaviour config.  Loaded from ``settings.config_path`` when omitted.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        config: CortexConfig | None = None,
        _store: MemoryStore | None = None,
        _provider: EmbeddingProvider | None = None,
    ) -> None:
        self.settings = settings or Settings()
        self.config = config or load_config(self.settings.config_path)
        self._provider = _provider or get_provider(
            self.settings.model_name, self.settings.embedding_dimension
        )
        self._store = _store or MemoryStore(
            self.settings.db_path, dimension=self._provider.dimension
        )
        self._search = SearchService(
            self._store,
            self._provider,
            k=self.config.search.rrf_k,
            half_life_days=self.config.search.half_life_days,
            candidate_limit=self.config.search.candidate_limit,
        )

    @property
    def store(self) -> MemoryStore:
        return self._store

    @property
    def provider(self) -> EmbeddingProvider:
        return self._provider

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def archive_session(
        self,
        transcript_path: str | Path,
        project_id: str | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> ArchiveResult:
        """Archive one transcript; see :meth:`ArchivePipeline.archive_session`."""
        pipeline = ArchivePipeline(
            self._store,
            self._provider,
            min_content_length=self.config.archive.min_content_length,
            batch_size=self.config.embedding.batch_size,
        )
        return pipeline.archive_session(
            Path(transcript_path).expanduser(),
            project_id=project_id,
            on_progress=on_progress,
        )

    def add(self, content: str, project_id: str | None = None) -> InsertResult | None:
        """Store hand-entered *content* as a single fragment."""
        return archive_content(self._store, self._provider, content, project_id=project_id)

    def search(
        self,
        query: str,
        project_id: str | None = None,
        include_all_projects: bool = False,
        limit: int | None = None,
    ) -> list[SearchResult]:
        """Return the most relevant fragments for *query*, best first."""
        return self._search.search(
            query,
            project_id=project_id,
            include_all_projects=include_all_projects,
            limit=self.config.search.limit if limit is None else limit,
        )

    def stats(self) -> StoreStats:
        return self._store.get_stats()

    def project_stats(self, project_id: str) -> ProjectStats:
        return self._store.get_project_stats(project_id)

    def verify(self, sample: str = "test") -> ModelStatus:
        """Check that the embedding model loads and produces vectors."""
        return verify_model(self._provider, sample)

    def count(self) -> int:
        """Return the total number of stored fragments."""
        return self._store.count()

    def close(self) -> None:
        self._store.close()
