"""Tests for QdrantVectorIndex.

Uses Qdrant local mode with tmp_path for isolated test instances.
"""

from __future__ import annotations

import pytest
from qdrant_client import AsyncQdrantClient

from src.knowledge_engine.errors import ConfigurationError, IndexNotFoundError
from src.knowledge_engine.models import Chunk, KnowledgeBase
from src.knowledge_engine.sync import KnowledgeSynchronizer, hash_chunk_id
from src.knowledge_engine.tenant_index import TenantIndexManager
from src.knowledge_engine.vector_index import (
    PodSpec,
    QdrantVectorIndex,
    ServerlessSpec,
    VectorRecord,
)

SPEC = ServerlessSpec(cloud="aws", region="us-west-2")


# ── Fixtures ────────────────────────────────────────────────────────────────


@pytest.fixture
async def index(tmp_path):
    """QdrantVectorIndex on a fresh local-mode client."""
    client = AsyncQdrantClient(path=str(tmp_path / "qdrant_index"))
    store = QdrantVectorIndex(client)
    yield store
    await store.close()


def _record(chunk_id: str, values: list[float], **metadata) -> VectorRecord:
    return VectorRecord(id=hash_chunk_id(chunk_id), values=values, metadata={"chunk_id": chunk_id, **metadata})


# ── Index Lifecycle ─────────────────────────────────────────────────────────


class TestIndexLifecycle:
    """Tests for describe and create."""

    async def test_describe_missing_index(self, index) -> None:
        with pytest.raises(IndexNotFoundError):
            await index.describe_index("tenant-missing")

    async def test_create_then_describe(self, index) -> None:
        await index.create_index("tenant-acme", 8, "cosine", SPEC)

        description = await index.describe_index("tenant-acme")
        assert description.name == "tenant-acme"
        assert description.dimension == 8
        assert description.ready is True

    async def test_pod_spec_is_accepted(self, index) -> None:
        await index.create_index("tenant-pods", 4, "dotproduct", PodSpec(environment="us-west-2", pod_type="p1.x1"))
        assert (await index.describe_index("tenant-pods")).dimension == 4

    async def test_unsupported_metric(self, index) -> None:
        with pytest.raises(ConfigurationError, match="manhattan"):
            await index.create_index("tenant-acme", 8, "manhattan", SPEC)


# ── Namespaced Data ─────────────────────────────────────────────────────────


class TestNamespaces:
    """Tests for upsert, query and delete_all within namespaces."""

    async def test_query_is_scoped_to_namespace(self, index, vector_for) -> None:
        await index.create_index("tenant-acme", 8, "cosine", SPEC)
        await index.upsert(
            "tenant-acme",
            "floppy-kb-1",
            [
                _record("kb-1:manual:1", vector_for("refunds"), text="Refund policy"),
                _record("kb-1:manual:2", vector_for("passwords"), text="Password resets"),
            ],
        )
        await index.upsert("tenant-acme", "floppy-kb-2", [_record("kb-2:manual:1", vector_for("refunds"))])

        matches = await index.query("tenant-acme", "floppy-kb-1", vector_for("refunds"), top_k=5)

        assert {m.metadata["chunk_id"] for m in matches} == {"kb-1:manual:1", "kb-1:manual:2"}
        assert matches[0].metadata["chunk_id"] == "kb-1:manual:1"
        assert matches[0].metadata["namespace"] == "floppy-kb-1"
        assert matches[0].score == pytest.approx(1.0, abs=1e-4)

    async def test_top_k_limits_matches(self, index, vector_for) -> None:
        await index.create_index("tenant-acme", 8, "cosine", SPEC)
        records = [_record(f"kb-1:manual:{n}", vector_for(f"text {n}")) for n in range(5)]
        await index.upsert("tenant-acme", "floppy-kb-1", records)

        assert len(await index.query("tenant-acme", "floppy-kb-1", vector_for("text 1"), top_k=2)) == 2

    async def test_delete_all_only_clears_one_namespace(self, index, vector_for) -> None:
        await index.create_index("tenant-acme", 8, "cosine", SPEC)
        await index.upsert("tenant-acme", "floppy-kb-1", [_record("kb-1:manual:1", vector_for("a"))])
        await index.upsert("tenant-acme", "floppy-kb-2", [_record("kb-2:manual:1", vector_for("a"))])

        await index.delete_all("tenant-acme", "floppy-kb-1")

        assert await index.query("tenant-acme", "floppy-kb-1", vector_for("a"), top_k=5) == []
        assert len(await index.query("tenant-acme", "floppy-kb-2", vector_for("a"), top_k=5)) == 1

    async def test_operations_on_missing_index(self, index, vector_for) -> None:
        with pytest.raises(IndexNotFoundError):
            await index.upsert("tenant-missing", "ns", [_record("x", vector_for("x"))])
        with pytest.raises(IndexNotFoundError):
            await index.delete_all("tenant-missing", "ns")
        with pytest.raises(IndexNotFoundError):
            await index.query("tenant-missing", "ns", vector_for("x"), top_k=1)

    async def test_empty_upsert_is_noop(self, index) -> None:
        await index.upsert("tenant-missing", "ns", [])

    async def test_same_record_id_in_two_namespaces(self, index, vector_for) -> None:
        await index.create_index("shared", 8, "cosine", SPEC)
        record = _record("kb-1:manual:1", vector_for("refunds"))
        await index.upsert("shared", "faq", [record])
        await index.upsert("shared", "support", [record])

        faq = await index.query("shared", "faq", vector_for("refunds"), top_k=5)
        support = await index.query("shared", "support", vector_for("refunds"), top_k=5)

        assert [m.id for m in faq] == [record.id]
        assert [m.id for m in support] == [record.id]
        assert "record_id" not in faq[0].metadata

        await index.delete_all("shared", "faq")
        assert await index.query("shared", "faq", vector_for("refunds"), top_k=5) == []
        assert len(await index.query("shared", "support", vector_for("refunds"), top_k=5)) == 1


# ── Sync Against Qdrant ─────────────────────────────────────────────────────


async def test_sync_to_two_namespaces_of_one_index(index, config, mock_embeddings, vector_for) -> None:
    synchronizer = KnowledgeSynchronizer(index, mock_embeddings, TenantIndexManager(index, config), config)
    chunk = Chunk(
        id="kb-1:manual:1",
        text="Refunds take five business days.",
        source_id="kb-1:manual",
        source_type="manual",
    )
    kb = KnowledgeBase(
        id="kb-1",
        tenant_id="acme",
        manual_chunks=(chunk,),
        routing={"targets": [{"index": "shared", "ns": "faq"}, {"index": "shared", "ns": "support"}]},
    )

    report = await synchronizer.sync("acme", kb)

    assert report.status == "synced"
    assert [t.key for t in report.targets] == ["shared::faq", "shared::support"]
    for namespace in ("faq", "support"):
        matches = await index.query("shared", namespace, vector_for(chunk.text), top_k=5)
        assert [m.metadata["chunk_id"] for m in matches] == ["kb-1:manual:1"]
