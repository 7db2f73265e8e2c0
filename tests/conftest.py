"""
Shared pytest fixtures for cortex-memory tests.

Uses an in-memory SQLite store and a deterministic bag-of-words embedding
provider so that tests run fast without downloading any ML models.
"""

from __future__ import annotations

import hashlib
import json
import re
from pathlib import Path

import numpy as np
import pytest

from cortex_memory.config import CortexConfig, Settings
from cortex_memory.embeddings import EmbeddingProvider, ProviderUnavailable, normalize_vector
from cortex_memory.memory import MemoryManager
from cortex_memory.store import MemoryStore

DIM = 32


class FakeEmbeddingProvider(EmbeddingProvider):
    """
    Deterministic provider hashing each word (MD5) into one of ``DIM``
    buckets.  Texts sharing words get similar vectors.

    ``fail_on_call`` makes the N-th embedding call (1-based) and every
    later one raise :class:`ProviderUnavailable`.
    """

    model_name = "fake-bow-embedding"

    def __init__(self, dimension: int = DIM, fail_on_call: int | None = None) -> None:
        self.dimension = dimension
        self.fail_on_call = fail_on_call
        self.calls = 0
        self.embedded: list[str] = []

    def _embed(self, text: str) -> np.ndarray:
        vec = np.zeros(self.dimension, dtype=np.float32)
        tokens = re.findall(r"\w+", text.lower())
        if not tokens:
            vec[0] = 1.0
        for token in tokens:
            digest = hashlib.md5(token.encode()).digest()
            index = int.from_bytes(digest[:4], "big") % self.dimension
            vec[index] += 1.0 if digest[4] % 2 == 0 else -1.0
        return normalize_vector(vec)

    def _tick(self) -> None:
        self.calls += 1
        if self.fail_on_call is not None and self.calls >= self.fail_on_call:
            raise ProviderUnavailable(self.model_name, "simulated failure")

    def embed_passages(self, texts):
        self._tick()
        self.embedded.extend(texts)
        return [self._embed(t) for t in texts]

    def embed_query(self, text):
        self._tick()
        return self._embed(text)


def write_transcript(path: Path, records: list) -> Path:
    """Write *records* as JSONL; ``str`` entries are written verbatim."""
    lines = [r if isinstance(r, str) else json.dumps(r) for r in records]
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    return path


def assistant(text, timestamp: str | None = None) -> dict:
    record = {"type": "assistant", "message": {"role": "assistant", "content": text}}
    if timestamp:
        record["timestamp"] = timestamp
    return record


def user(text) -> dict:
    return {"type": "user", "message": {"role": "user", "content": text}}


JWT_TEXT = (
    "We implemented JWT authentication with refresh tokens stored in Redis, "
    "because stateless tokens alone could not be revoked."
)


@pytest.fixture()
def provider() -> FakeEmbeddingProvider:
    return FakeEmbeddingProvider()


@pytest.fixture()
def store():
    s = MemoryStore(":memory:", dimension=DIM)
    yield s
    s.conn.close()


@pytest.fixture()
def memory_manager(tmp_path: Path, store: MemoryStore, provider: FakeEmbeddingProvider) -> MemoryManager:
    """MemoryManager wired to the in-memory store and fake provider."""
    return MemoryManager(
        settings=Settings(data_dir=tmp_path),
        config=CortexConfig(),
        _store=store,
        _provider=provider,
    )
