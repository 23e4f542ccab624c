"""Vector index provider contract and its Qdrant implementation.

The engine talks to vector storage through ``VectorIndexProvider``: named
indexes of fixed dimension, each partitioned into namespaces. The shipped
``QdrantVectorIndex`` maps this onto qdrant-client:

- index      -> collection with a single named "dense" vector
- namespace  -> "namespace" payload field with an is_tenant keyword index
- record id  -> point id hashed with the namespace, so one record id can
                live in several namespaces of the same collection
- ready      -> collection status green
- pod spec   -> shard_number / replication_factor on creation

Every operation on a missing collection raises IndexNotFoundError.
"""

from __future__ import annotations

import hashlib
import uuid
from typing import Any, Literal, Protocol

import structlog
from pydantic import BaseModel, Field
from qdrant_client import AsyncQdrantClient
from qdrant_client.http.models.models import KeywordIndexParams
from qdrant_client.models import (
    CollectionStatus,
    Distance,
    FieldCondition,
    Filter,
    FilterSelector,
    MatchValue,
    PointStruct,
    VectorParams,
)

from src.knowledge_engine.config import KnowledgeEngineConfig
from src.knowledge_engine.errors import ConfigurationError, IndexNotFoundError

logger = structlog.get_logger(__name__)

DENSE_VECTOR = "dense"
NAMESPACE_FIELD = "namespace"
RECORD_ID_FIELD = "record_id"

_DISTANCES: dict[str, Distance] = {
    "cosine": Distance.COSINE,
    "euclidean": Distance.EUCLID,
    "dotproduct": Distance.DOT,
}


# ── Provider Types ──────────────────────────────────────────────────────────


class ServerlessSpec(BaseModel):
    """Server-managed capacity in a cloud region."""

    kind: Literal["serverless"] = "serverless"
    cloud: str
    region: str


class PodSpec(BaseModel):
    """Fixed capacity: pod type, pod count, replicas and shards."""

    kind: Literal["pod"] = "pod"
    environment: str
    pod_type: str
    pods: int = 1
    replicas: int = 1
    shards: int = 1


IndexSpec = ServerlessSpec | PodSpec


class IndexDescription(BaseModel):
    name: str
    dimension: int | None = None
    ready: bool = False
    state: str = "unknown"


class VectorRecord(BaseModel):
    """One vector to upsert; metadata values are JSON scalars or lists."""

    id: str
    values: list[float]
    metadata: dict[str, Any] = Field(default_factory=dict)


class VectorMatch(BaseModel):
    id: str
    score: float
    metadata: dict[str, Any] = Field(default_factory=dict)


class VectorIndexProvider(Protocol):
    """Operations the engine needs from a vector index service.

    Implementations raise IndexNotFoundError for a missing index (and may
    for a missing namespace); every other exception is a dependency failure.
    """

    async def describe_index(self, name: str) -> IndexDescription: ...
    async def create_index(self, name: str, dimension: int, metric: str, spec: IndexSpec) -> None: ...
    async def upsert(self, index_name: str, namespace: str, vectors: list[VectorRecord]) -> None: ...
    async def delete_all(self, index_name: str, namespace: str) -> None: ...
    async def query(
        self, index_name: str, namespace: str, vector: list[float], top_k: int
    ) -> list[VectorMatch]: ...


# ── Qdrant ──────────────────────────────────────────────────────────────────


class QdrantVectorIndex:
    """VectorIndexProvider backed by Qdrant collections.

    Args:
        client: Async Qdrant client (remote or local mode).

    Usage:
        index = QdrantVectorIndex.from_config(config)
        await index.create_index("tenant-acme", 768, "cosine", ServerlessSpec(cloud="aws", region="us-west-2"))
    """

    def __init__(self, client: AsyncQdrantClient) -> None:
        self._client = client

    @classmethod
    def from_config(cls, config: KnowledgeEngineConfig) -> QdrantVectorIndex:
        # Remote if URL provided, local otherwise
        if config.qdrant_url:
            client = AsyncQdrantClient(url=config.qdrant_url, api_key=config.qdrant_api_key)
        else:
            client = AsyncQdrantClient(path=config.qdrant_path)
        return cls(client)

    @property
    def client(self) -> AsyncQdrantClient:
        return self._client

    async def _require(self, name: str) -> None:
        if not await self._client.collection_exists(name):
            raise IndexNotFoundError(name)

    @staticmethod
    def _point_id(namespace: str, record_id: str) -> str:
        digest = hashlib.sha256(f"{namespace}\x00{record_id}".encode("utf-8")).hexdigest()
        return str(uuid.UUID(digest[:32]))

    @staticmethod
    def _namespace_filter(namespace: str) -> Filter:
        return Filter(must=[FieldCondition(key=NAMESPACE_FIELD, match=MatchValue(value=namespace))])

    async def describe_index(self, name: str) -> IndexDescription:
        await self._require(name)
        info = await self._client.get_collection(name)

        vectors = info.config.params.vectors
        dimension = None
        if isinstance(vectors, dict) and DENSE_VECTOR in vectors:
            dimension = vectors[DENSE_VECTOR].size
        elif isinstance(vectors, VectorParams):
            dimension = vectors.size

        status = info.status.value if isinstance(info.status, CollectionStatus) else str(info.status)
        return IndexDescription(
            name=name,
            dimension=dimension,
            ready=info.status == CollectionStatus.GREEN,
            state=status,
        )

    async def create_index(self, name: str, dimension: int, metric: str, spec: IndexSpec) -> None:
        distance = _DISTANCES.get(metric.lower())
        if distance is None:
            raise ConfigurationError(f"Unsupported index metric: {metric}")

        options: dict[str, Any] = {}
        if isinstance(spec, PodSpec):
            options = {"shard_number": spec.shards, "replication_factor": spec.replicas}

        await self._client.create_collection(
            collection_name=name,
            vectors_config={DENSE_VECTOR: VectorParams(size=dimension, distance=distance)},
            **options,
        )

        # namespace with is_tenant=True for per-namespace HNSW indexes
        await self._client.create_payload_index(
            collection_name=name,
            field_name=NAMESPACE_FIELD,
            field_schema=KeywordIndexParams(type="keyword", is_tenant=True),
        )
        logger.info(
            "vector_index.created",
            index_name=name,
            dimension=dimension,
            metric=metric,
            spec=spec.kind,
        )

    async def upsert(self, index_name: str, namespace: str, vectors: list[VectorRecord]) -> None:
        if not vectors:
            return
        await self._require(index_name)
        points = [
            PointStruct(
                id=self._point_id(namespace, record.id),
                vector={DENSE_VECTOR: record.values},
                payload={**record.metadata, NAMESPACE_FIELD: namespace, RECORD_ID_FIELD: record.id},
            )
            for record in vectors
        ]
        await self._client.upsert(collection_name=index_name, points=points)
        logger.debug("vector_index.upserted", index_name=index_name, namespace=namespace, count=len(points))

    async def delete_all(self, index_name: str, namespace: str) -> None:
        await self._require(index_name)
        await self._client.delete(
            collection_name=index_name,
            points_selector=FilterSelector(filter=self._namespace_filter(namespace)),
        )
        logger.info("vector_index.namespace_cleared", index_name=index_name, namespace=namespace)

    async def query(
        self, index_name: str, namespace: str, vector: list[float], top_k: int
    ) -> list[VectorMatch]:
        await self._require(index_name)
        response = await self._client.query_points(
            collection_name=index_name,
            query=vector,
            using=DENSE_VECTOR,
            query_filter=self._namespace_filter(namespace),
            limit=top_k,
            with_payload=True,
        )
        matches = []
        for point in response.points:
            metadata = dict(point.payload or {})
            record_id = metadata.pop(RECORD_ID_FIELD, None) or str(point.id)
            matches.append(VectorMatch(id=record_id, score=point.score, metadata=metadata))
        return matches

    async def close(self) -> None:
        """Close the Qdrant client connection."""
        await self._client.close()
