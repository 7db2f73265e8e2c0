"""Tests for keyword/vector ranking, rank fusion and the search service."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import numpy as np
import pytest

from cortex_memory.search import (
    HALF_LIFE_DAYS,
    RRF_K,
    KeywordIndex,
    RankedHit,
    SearchService,
    VectorRanker,
    fuse_rankings,
    recency_decay,
)
from cortex_memory.store import MemoryStore, SearchScope
from conftest import DIM, FakeEmbeddingProvider

NOW = datetime(2025, 6, 15, 12, 0, tzinfo=timezone.utc)


def _hit(fid: int, rank: int, ts: datetime = NOW) -> RankedHit:
    return RankedHit(fragment_id=fid, rank=rank, timestamp=ts)


def _add(store: MemoryStore, provider: FakeEmbeddingProvider, text: str, *, project=None, ts=NOW) -> int:
    vector = provider.embed_passages([text])[0]
    return store.insert(text, vector, project_id=project, source_session="s", timestamp=ts).id


# ---------------------------------------------------------------------------
# Recency decay
# ---------------------------------------------------------------------------


class TestRecencyDecay:
    def test_fresh_fragment_is_undecayed(self):
        assert recency_decay(NOW, NOW) == 1.0

    def test_half_life(self):
        week_old = NOW - timedelta(days=HALF_LIFE_DAYS)
        assert recency_decay(week_old, NOW) == pytest.approx(0.5)
        assert recency_decay(NOW - timedelta(days=14), NOW) == pytest.approx(0.25)

    def test_old_fragments_never_reach_zero(self):
        assert recency_decay(NOW - timedelta(days=365), NOW) > 0.0

    def test_future_timestamps_count_as_now(self):
        assert recency_decay(NOW + timedelta(days=3), NOW) == 1.0


# ---------------------------------------------------------------------------
# Fusion
# ---------------------------------------------------------------------------


class TestFuseRankings:
    def test_rrf_contributions_are_summed(self):
        fused = fuse_rankings([_hit(1, 1)], [_hit(1, 3)], now=NOW)
        assert fused[0].score == pytest.approx(1 / (RRF_K + 1) + 1 / (RRF_K + 3))

    def test_source_tags(self):
        fused = fuse_rankings([_hit(1, 1), _hit(2, 2)], [_hit(1, 2), _hit(3, 1)], now=NOW)
        sources = {hit.fragment_id: hit.source for hit in fused}
        assert sources == {1: "hybrid", 2: "keyword", 3: "vector"}

    def test_better_ranked_in_both_lists_scores_at_least_as_high(self):
        fused = fuse_rankings([_hit(1, 1), _hit(2, 2)], [_hit(1, 1), _hit(2, 2)], now=NOW)
        scores = {hit.fragment_id: hit.score for hit in fused}
        assert scores[1] >= scores[2]

    def test_appearing_in_more_lists_wins(self):
        fused = fuse_rankings([_hit(1, 2), _hit(2, 1)], [_hit(1, 2)], now=NOW)
        assert [hit.fragment_id for hit in fused] == [1, 2]

    def test_recency_breaks_equal_base_scores(self):
        older = NOW - timedelta(days=2)
        fused = fuse_rankings([_hit(1, 1, older)], [_hit(2, 1, NOW)], now=NOW)
        scores = {hit.fragment_id: hit.score for hit in fused}
        assert scores[2] > scores[1]
        assert [hit.fragment_id for hit in fused] == [2, 1]

    def test_decayed_score(self):
        week_old = NOW - timedelta(days=7)
        fused = fuse_rankings([_hit(1, 1, week_old)], [], now=NOW)
        assert fused[0].score == pytest.approx(0.5 / (RRF_K + 1))

    def test_exact_ties_prefer_lower_id(self):
        fused = fuse_rankings([_hit(9, 1)], [_hit(4, 1)], now=NOW)
        assert [hit.fragment_id for hit in fused] == [4, 9]

    def test_limit(self):
        hits = [_hit(i, i) for i in range(1, 11)]
        assert len(fuse_rankings(hits, [], now=NOW, limit=3)) == 3
        assert len(fuse_rankings(hits, [], now=NOW)) == 5

    def test_empty_inputs(self):
        assert fuse_rankings([], [], now=NOW) == []


# ---------------------------------------------------------------------------
# KeywordIndex
# ---------------------------------------------------------------------------


class TestKeywordIndex:
    def test_match_expression_quotes_and_dedupes(self):
        expr = KeywordIndex.build_match_expression('Redis AND "redis" (tokens) -x')
        assert expr == '"redis" OR "and" OR "tokens" OR "x"'

    def test_match_expression_without_words(self):
        assert KeywordIndex.build_match_expression("?! -- ()") == ""

    def test_ranks_are_one_indexed_and_ordered(self, store, provider):
        strong = _add(store, provider, "cache cache cache invalidation")
        weak = _add(store, provider, "cache warming for the landing page and other pages")
        _add(store, provider, "completely unrelated text")

        hits = KeywordIndex(store).search("cache", SearchScope())
        assert [h.fragment_id for h in hits] == [strong, weak]
        assert [h.rank for h in hits] == [1, 2]

    def test_equal_relevance_prefers_newer(self, store, provider):
        older = _add(store, provider, "alpha one two three", ts=NOW - timedelta(days=1))
        newer = _add(store, provider, "alpha four five six", ts=NOW)
        hits = KeywordIndex(store).search("alpha", SearchScope())
        assert [h.fragment_id for h in hits] == [newer, older]

    def test_query_syntax_is_not_interpreted(self, store, provider):
        _add(store, provider, "parser handles quotes")
        hits = KeywordIndex(store).search('parser "unbalanced AND (', SearchScope())
        assert len(hits) == 1

    def test_no_words_no_hits(self, store, provider):
        _add(store, provider, "anything at all")
        assert KeywordIndex(store).search("...", SearchScope()) == []


# ---------------------------------------------------------------------------
# VectorRanker
# ---------------------------------------------------------------------------


class TestVectorRanker:
    def test_orders_by_cosine_similarity(self, store, provider):
        near = _add(store, provider, "database connection pool exhausted")
        far = _add(store, provider, "button colour on the settings screen")

        query = provider.embed_query("database connection pool")
        hits = VectorRanker(store).search(query, SearchScope())

        assert [h.fragment_id for h in hits] == [near, far]
        assert hits[0].similarity > hits[1].similarity
        assert hits[0].rank == 1

    def test_similarity_is_cosine(self, store):
        store_vec = np.zeros(DIM, dtype=np.float32)
        store_vec[0] = 1.0
        fid = store.insert("axis aligned", store_vec).id
        query = np.zeros(DIM, dtype=np.float32)
        query[0] = 3.0
        query[1] = 4.0
        [hit] = VectorRanker(store).search(query, SearchScope())
        assert hit.fragment_id == fid
        assert hit.similarity == pytest.approx(0.6)

    def test_equal_similarity_prefers_newer(self, store):
        vector = np.ones(DIM, dtype=np.float32) / np.sqrt(DIM)
        older = store.insert("first copy", vector, timestamp=NOW - timedelta(hours=1)).id
        newer = store.insert("second copy", vector, timestamp=NOW).id
        hits = VectorRanker(store).search(vector, SearchScope())
        assert [h.fragment_id for h in hits] == [newer, older]

    def test_limit(self, store, provider):
        for i in range(5):
            _add(store, provider, f"fragment number {i}")
        assert len(VectorRanker(store).search(provider.embed_query("fragment"), SearchScope(), 2)) == 2

    def test_zero_query_vector(self, store, provider):
        _add(store, provider, "something")
        assert VectorRanker(store).search(np.zeros(DIM), SearchScope()) == []

    def test_empty_store(self, store, provider):
        assert VectorRanker(store).search(provider.embed_query("x"), SearchScope()) == []


# ---------------------------------------------------------------------------
# SearchService
# ---------------------------------------------------------------------------


class TestSearchService:
    def test_empty_store_returns_empty_without_embedding(self, store, provider):
        service = SearchService(store, provider)
        assert service.search("anything") == []
        assert provider.calls == 0

    def test_blank_query(self, store, provider):
        _add(store, provider, "stored text")
        calls = provider.calls
        assert SearchService(store, provider).search("   ") == []
        assert provider.calls == calls

    def test_results_carry_fragment_fields(self, store, provider):
        fid = _add(store, provider, "retry budget for the payment webhook", project="shop")
        [result] = SearchService(store, provider).search(
            "payment webhook", project_id="shop", now=NOW
        )
        assert result.id == fid
        assert result.content == "retry budget for the payment webhook"
        assert result.project_id == "shop"
        assert result.timestamp == NOW
        assert result.source == "hybrid"
        assert result.score == pytest.approx(2 / (RRF_K + 1))

    def test_vector_only_match(self, store, provider):
        _add(store, provider, "nothing lexical in common here")
        [result] = SearchService(store, provider).search("zzz", now=NOW)
        assert result.source == "vector"

    def test_project_scope_excludes_other_projects(self, store, provider):
        mine = _add(store, provider, "deploy pipeline for mine", project="mine")
        shared = _add(store, provider, "deploy pipeline shared notes")
        theirs = _add(store, provider, "deploy pipeline for theirs", project="theirs")
        service = SearchService(store, provider)

        results = service.search("deploy pipeline", project_id="mine", limit=10, now=NOW)
        ids = {r.id for r in results}
        assert ids == {mine, shared}
        assert all(r.project_id in ("mine", None) for r in results)

        everything = service.search(
            "deploy pipeline", project_id="mine", include_all_projects=True, limit=10, now=NOW
        )
        assert {r.id for r in everything} == {mine, shared, theirs}

    def test_recent_fragment_outranks_stale_equal_match(self, store, provider):
        stale = _add(store, provider, "rotate the signing keys monthly", ts=NOW - timedelta(days=30))
        fresh = _add(store, provider, "rotate the signing keys weekly", ts=NOW - timedelta(hours=1))
        results = SearchService(store, provider).search("rotate signing keys", now=NOW)
        assert results[0].id == fresh
        assert results[-1].id == stale

    def test_default_limit_is_five(self, store, provider):
        for i in range(8):
            _add(store, provider, f"logging note {i}")
        assert len(SearchService(store, provider).search("logging", now=NOW)) == 5
