"""
Hybrid retrieval: full-text and vector rankings fused with Reciprocal Rank
Fusion, then weighted by recency.

RRF only looks at rank positions, so the very different numeric ranges of
BM25 relevance and cosine similarity never have to be reconciled::

    score(f) = sum over lists L containing f of 1 / (k + rank_L(f))
    final(f) = score(f) * 2 ** (-age_days(f) / half_life_days)
"""

from __future__ import annotations

import logging
import re
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Literal

import numpy as np

from .embeddings import EmbeddingProvider
from .store import MemoryStore, SearchScope

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

RRF_K: int = 60
HALF_LIFE_DAYS: float = 7.0
DEFAULT_LIMIT: int = 5

#: How many hits each ranker contributes to fusion.
CANDIDATE_LIMIT: int = 50

#: Longest keyword query handed to FTS5.
MAX_QUERY_TOKENS: int = 20

Source = Literal["vector", "keyword", "hybrid"]


@dataclass(frozen=True)
class RankedHit:
    """One entry of a single ranker's output.  ``rank`` is 1-indexed."""

    fragment_id: int
    rank: int
    timestamp: datetime
    similarity: float | None = None


@dataclass(frozen=True)
class SearchResult:
    id: int
    score: float
    content: str
    source: Source
    timestamp: datetime
    project_id: str | None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "score": self.score,
            "content": self.content,
            "source": self.source,
            "timestamp": self.timestamp.isoformat(),
            "project_id": self.project_id,
        }


def _tie_key(score: float, timestamp: datetime, fragment_id: int) -> tuple[float, float, int]:
    """Sort key: higher score, then newer, then lower id."""
    return (-score, -timestamp.timestamp(), fragment_id)


# ---------------------------------------------------------------------------
# Rankers
# ---------------------------------------------------------------------------


class KeywordIndex:
    """BM25 ranking over fragment content via the store's FTS5 index."""

    def __init__(self, store: MemoryStore) -> None:
        self._store = store

    @staticmethod
    def build_match_expression(query: str) -> str:
        """
        Turn free text into an FTS5 query: each word quoted, OR-joined.

        Quoting keeps FTS5 operators and punctuation in user input from
        being parsed as query syntax.  Returns ``""`` when *query* has no
        word characters.
        """
        seen: set[str] = set()
        tokens: list[str] = []
        for token in re.findall(r"\w+", query.lower()):
            if token not in seen:
                seen.add(token)
                tokens.append(f'"{token}"')
        return " OR ".join(tokens[:MAX_QUERY_TOKENS])

    def search(
        self,
        query: str,
        scope: SearchScope,
        limit: int = CANDIDATE_LIMIT,
    ) -> list[RankedHit]:
        expression = self.build_match_expression(query)
        if not expression or limit <= 0:
            return []
        rows = self._store.full_text_matches(expression, scope, limit)
        return [
            RankedHit(fragment_id=fid, rank=rank, timestamp=ts)
            for rank, (fid, _relevance, ts) in enumerate(rows, 1)
        ]


class VectorRanker:
    """Cosine-similarity ranking over every stored embedding in scope."""

    def __init__(self, store: MemoryStore) -> None:
        self._store = store

    def search(
        self,
        query_embedding: Sequence[float] | np.ndarray,
        scope: SearchScope,
        limit: int = CANDIDATE_LIMIT,
    ) -> list[RankedHit]:
        if limit <= 0:
            return []
        query = np.asarray(query_embedding, dtype=np.float32).reshape(-1)
        query_norm = float(np.linalg.norm(query))
        if query_norm <= 0.0:
            return []

        ids: list[int] = []
        stamps: list[datetime] = []
        vectors: list[np.ndarray] = []
        for fid, ts, vector in self._store.iter_embeddings(scope):
            if vector.shape[0] != query.shape[0]:
                continue
            ids.append(fid)
            stamps.append(ts)
            vectors.append(vector)
        if not ids:
            return []

        matrix = np.vstack(vectors)
        norms = np.linalg.norm(matrix, axis=1)
        norms[norms == 0.0] = 1.0
        similarities = (matrix @ query) / (norms * query_norm)

        order = sorted(
            range(len(ids)),
            key=lambda i: _tie_key(float(similarities[i]), stamps[i], ids[i]),
        )[:limit]
        return [
            RankedHit(
                fragment_id=ids[i],
                rank=rank,
                timestamp=stamps[i],
                similarity=float(similarities[i]),
            )
            for rank, i in enumerate(order, 1)
        ]


# ---------------------------------------------------------------------------
# Fusion
# ---------------------------------------------------------------------------


def recency_decay(
    timestamp: datetime,
    now: datetime,
    half_life_days: float = HALF_LIFE_DAYS,
) -> float:
    """
    Exponential decay factor in ``(0, 1]`` halving every *half_life_days*.

    Timestamps in the future count as age zero.
    """
    age_days = max((now - timestamp).total_seconds() / 86400.0, 0.0)
    return 2.0 ** (-age_days / half_life_days)


@dataclass(frozen=True)
class FusedHit:
    fragment_id: int
    score: float
    source: Source
    timestamp: datetime


def fuse_rankings(
    keyword_hits: Sequence[RankedHit],
    vector_hits: Sequence[RankedHit],
    now: datetime,
    k: int = RRF_K,
    half_life_days: float = HALF_LIFE_DAYS,
    limit: int = DEFAULT_LIMIT,
) -> list[FusedHit]:
    """Combine two rankings with RRF and recency decay; best first."""
    base: dict[int, float] = {}
    stamps: dict[int, datetime] = {}
    in_keyword: set[int] = set()
    in_vector: set[int] = set()

    for hits, seen in ((keyword_hits, in_keyword), (vector_hits, in_vector)):
        for hit in hits:
            base[hit.fragment_id] = base.get(hit.fragment_id, 0.0) + 1.0 / (k + hit.rank)
            stamps[hit.fragment_id] = hit.timestamp
            seen.add(hit.fragment_id)

    fused: list[FusedHit] = []
    for fid, score in base.items():
        if fid in in_keyword and fid in in_vector:
            source: Source = "hybrid"
        elif fid in in_vector:
            source = "vector"
        else:
            source = "keyword"
        fused.append(
            FusedHit(
                fragment_id=fid,
                score=score * recency_decay(stamps[fid], now, half_life_days),
                source=source,
                timestamp=stamps[fid],
            )
        )

    fused.sort(key=lambda hit: _tie_key(hit.score, hit.timestamp, hit.fragment_id))
    return fused[:limit]


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class SearchService:
    """
    Answer one query against a :class:`MemoryStore`.

    Parameters
    ----------
    store:
        The fragment store to search.
    provider:
        Embedding provider used in query mode.
    k:
        RRF smoothing constant.
    half_life_days:
        Age at which a fragment's score is halved.
    candidate_limit:
        Number of hits taken from each ranker before fusion.
    """

    def __init__(
        self,
        store: MemoryStore,
        provider: EmbeddingProvider,
        k: int = RRF_K,
        half_life_days: float = HALF_LIFE_DAYS,
        candidate_limit: int = CANDIDATE_LIMIT,
    ) -> None:
        self._store = store
        self._provider = provider
        self.keyword_index = KeywordIndex(store)
        self.vector_ranker = VectorRanker(store)
        self.k = k
        self.half_life_days = half_life_days
        self.candidate_limit = candidate_limit

    def search(
        self,
        query: str,
        project_id: str | None = None,
        include_all_projects: bool = False,
        limit: int = DEFAULT_LIMIT,
        now: datetime | None = None,
    ) -> list[SearchResult]:
        if not query.strip() or limit <= 0 or self._store.count() == 0:
            return []

        now = now or datetime.now(timezone.utc)
        scope = SearchScope(project_id=project_id, include_all_projects=include_all_projects)
        candidates = max(self.candidate_limit, limit)

        query_embedding = self._provider.embed_query(query)
        keyword_hits = self.keyword_index.search(query, scope, candidates)
        vector_hits = self.vector_ranker.search(query_embedding, scope, candidates)
        logger.debug(
            "Query %r: %d keyword hits, %d vector hits",
            query,
            len(keyword_hits),
            len(vector_hits),
        )

        fused = fuse_rankings(
            keyword_hits,
            vector_hits,
            now=now,
            k=self.k,
            half_life_days=self.half_life_days,
            limit=limit,
        )
        fragments = self._store.get_many([hit.fragment_id for hit in fused])
        return [
            SearchResult(
                id=hit.fragment_id,
                score=hit.score,
                content=fragments[hit.fragment_id].content,
                source=hit.source,
                timestamp=hit.timestamp,
                project_id=fragments[hit.fragment_id].project_id,
            )
            for hit in fused
            if hit.fragment_id in fragments
        ]
