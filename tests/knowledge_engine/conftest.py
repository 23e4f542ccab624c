"""Shared fixtures for knowledge engine tests.

Provides an in-memory VectorIndexProvider and a mocked EmbeddingClient that
returns deterministic vectors, so sync and retrieval run without Qdrant or
an embedding service.
"""

from __future__ import annotations

import math
from unittest.mock import AsyncMock, MagicMock

import pytest

from src.knowledge_engine.config import KnowledgeEngineConfig
from src.knowledge_engine.embeddings import EmbeddingClient
from src.knowledge_engine.errors import IndexNotFoundError
from src.knowledge_engine.vector_index import (
    IndexDescription,
    IndexSpec,
    VectorMatch,
    VectorRecord,
)

DIMS = 8


# ── Helpers ─────────────────────────────────────────────────────────────────


def make_vector(text: str, dims: int = DIMS) -> list[float]:
    """Deterministic vector derived from the text's characters."""
    seed = (sum(ord(c) for c in text) % 997) / 997.0 + 0.01
    return [math.sin(seed * (i + 1)) for i in range(dims)]


def _cosine(a: list[float], b: list[float]) -> float:
    dot = sum(x * y for x, y in zip(a, b))
    norm = math.sqrt(sum(x * x for x in a)) * math.sqrt(sum(y * y for y in b))
    return dot / norm if norm else 0.0


class InMemoryVectorIndex:
    """VectorIndexProvider double keeping vectors in dicts.

    Indexes become ready after ``ready_after`` describe calls following
    creation. Every call is recorded in ``calls``.
    """

    def __init__(self, ready_after: int = 0) -> None:
        self.indexes: dict[str, int] = {}
        self.specs: dict[str, IndexSpec] = {}
        self.namespaces: dict[tuple[str, str], dict[str, VectorRecord]] = {}
        self.calls: list[tuple] = []
        self.ready_after = ready_after
        self._describes_since_create: dict[str, int] = {}

    async def describe_index(self, name: str) -> IndexDescription:
        self.calls.append(("describe_index", name))
        if name not in self.indexes:
            raise IndexNotFoundError(name)
        seen = self._describes_since_create.get(name, self.ready_after)
        self._describes_since_create[name] = seen + 1
        ready = seen >= self.ready_after
        return IndexDescription(
            name=name,
            dimension=self.indexes[name],
            ready=ready,
            state="green" if ready else "yellow",
        )

    async def create_index(self, name: str, dimension: int, metric: str, spec: IndexSpec) -> None:
        self.calls.append(("create_index", name, dimension, metric))
        self.indexes[name] = dimension
        self.specs[name] = spec
        self._describes_since_create[name] = 0

    async def upsert(self, index_name: str, namespace: str, vectors: list[VectorRecord]) -> None:
        self.calls.append(("upsert", index_name, namespace, len(vectors)))
        if index_name not in self.indexes:
            raise IndexNotFoundError(index_name)
        store = self.namespaces.setdefault((index_name, namespace), {})
        for record in vectors:
            store[record.id] = record

    async def delete_all(self, index_name: str, namespace: str) -> None:
        self.calls.append(("delete_all", index_name, namespace))
        if index_name not in self.indexes or (index_name, namespace) not in self.namespaces:
            raise IndexNotFoundError(index_name, namespace)
        self.namespaces[(index_name, namespace)] = {}

    async def query(
        self, index_name: str, namespace: str, vector: list[float], top_k: int
    ) -> list[VectorMatch]:
        self.calls.append(("query", index_name, namespace, top_k))
        if index_name not in self.indexes:
            raise IndexNotFoundError(index_name)
        records = self.namespaces.get((index_name, namespace), {}).values()
        matches = [
            VectorMatch(id=r.id, score=_cosine(vector, r.values), metadata=dict(r.metadata))
            for r in records
        ]
        matches.sort(key=lambda m: m.score, reverse=True)
        return matches[:top_k]

    def call_names(self) -> list[str]:
        return [call[0] for call in self.calls]


# ── Fixtures ────────────────────────────────────────────────────────────────


@pytest.fixture
def config(tmp_path) -> KnowledgeEngineConfig:
    """Config with fast polling and a temporary Qdrant path."""
    return KnowledgeEngineConfig(
        qdrant_path=str(tmp_path / "qdrant_test"),
        qdrant_url=None,
        index_ready_timeout=0.5,
        index_poll_interval=0.01,
        target_query_timeout=0.5,
        upsert_batch_size=2,
    )


@pytest.fixture
def vector_index() -> InMemoryVectorIndex:
    return InMemoryVectorIndex()


@pytest.fixture
def mock_embeddings() -> EmbeddingClient:
    """EmbeddingClient mock returning deterministic vectors per text."""
    client = MagicMock(spec=EmbeddingClient)

    async def embed(texts: list[str]) -> list[list[float]]:
        return [make_vector(text) for text in texts]

    async def embed_one(text: str) -> list[float]:
        return make_vector(text)

    client.embed = AsyncMock(side_effect=embed)
    client.embed_one = AsyncMock(side_effect=embed_one)
    client.aclose = AsyncMock()
    return client


@pytest.fixture
def index_factory():
    """Build InMemoryVectorIndex instances with a chosen readiness delay."""
    return InMemoryVectorIndex


@pytest.fixture
def vector_for():
    """The deterministic text-to-vector function used by mock_embeddings."""
    return make_vector
