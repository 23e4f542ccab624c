"""Per-tenant vector index provisioning.

Maps a tenant id to a sanitized index name and makes sure that index
exists and is ready before vectors are written:

    unknown -> checking -> ready | mismatched
                        -> absent -> creating -> provisioning -> ready

A dimension mismatch is logged and the existing index is kept. After
creation the index is polled until ready; if it never reports ready
within the timeout a warning is logged and the caller proceeds anyway.

Confirmed ``(index_name, dimension)`` pairs are remembered in an
IndexReadinessCache for the life of the process so steady-state writes
skip the describe call. Concurrent ensure calls for one index name are
serialized, so an index is created at most once per process.
"""

from __future__ import annotations

import asyncio
import re
import threading
import weakref
from enum import Enum

import structlog

from src.knowledge_engine.config import KnowledgeEngineConfig
from src.knowledge_engine.errors import IndexNotFoundError, InvalidRequestError
from src.knowledge_engine.vector_index import IndexSpec, PodSpec, ServerlessSpec, VectorIndexProvider

logger = structlog.get_logger(__name__)

INDEX_NAME_MAX_LENGTH = 40
NAMESPACE_MAX_LENGTH = 63

_INDEX_INVALID = re.compile(r"[^a-z0-9-]+")
_NAMESPACE_INVALID = re.compile(r"[^a-z0-9_-]+")
_DASH_RUNS = re.compile(r"-+")


def _sanitize(raw: object, invalid: re.Pattern[str], limit: int) -> str:
    value = invalid.sub("-", str(raw or "").lower())
    value = _DASH_RUNS.sub("-", value).strip("-")
    return (value or "default")[:limit]


def sanitize_index_name(raw: object, prefix: str = "tenant") -> str:
    """Derive a provider-safe index name: ``"{prefix}-{cleaned[:40]}"``."""
    return f"{prefix}-{_sanitize(raw, _INDEX_INVALID, INDEX_NAME_MAX_LENGTH)}"


def sanitize_namespace(raw: object) -> str:
    """Derive a provider-safe namespace (underscores allowed, max 63 chars)."""
    return _sanitize(raw, _NAMESPACE_INVALID, NAMESPACE_MAX_LENGTH)


def is_not_found(error: BaseException) -> bool:
    """True when a provider error means "index or namespace absent"."""
    if isinstance(error, IndexNotFoundError):
        return True
    status = getattr(error, "status_code", None) or getattr(error, "status", None)
    if status == 404:
        return True
    message = str(error).lower()
    return "404" in message or "not found" in message


class IndexState(str, Enum):
    unknown = "unknown"
    checking = "checking"
    absent = "absent"
    creating = "creating"
    provisioning = "provisioning"
    ready = "ready"
    mismatched = "exists-mismatched"


class IndexReadinessCache:
    """Thread-safe record of index names confirmed for a dimension."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._confirmed: dict[str, int] = {}

    def is_confirmed(self, index_name: str, dimension: int) -> bool:
        with self._lock:
            return self._confirmed.get(index_name) == dimension

    def confirm(self, index_name: str, dimension: int) -> None:
        with self._lock:
            self._confirmed[index_name] = dimension

    def forget(self, index_name: str) -> None:
        with self._lock:
            self._confirmed.pop(index_name, None)

    def clear(self) -> None:
        with self._lock:
            self._confirmed.clear()


class TenantIndexManager:
    """Ensures per-tenant indexes exist with the right dimension.

    Args:
        provider: Vector index service.
        config: Index naming, metric, spec and polling settings.
        cache: Readiness cache; a private one is created if omitted.
    """

    def __init__(
        self,
        provider: VectorIndexProvider,
        config: KnowledgeEngineConfig,
        cache: IndexReadinessCache | None = None,
    ) -> None:
        self._provider = provider
        self._config = config
        self._cache = cache or IndexReadinessCache()
        self._states: dict[str, IndexState] = {}
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    @property
    def cache(self) -> IndexReadinessCache:
        return self._cache

    def index_name_for(self, tenant_id: str) -> str:
        return sanitize_index_name(tenant_id, prefix=self._config.index_prefix)

    def state(self, index_name: str) -> IndexState:
        return self._states.get(index_name, IndexState.unknown)

    def _set_state(self, index_name: str, state: IndexState) -> None:
        self._states[index_name] = state

    def _index_spec(self) -> IndexSpec:
        if self._config.index_pod_type:
            return PodSpec(
                environment=self._config.index_region,
                pod_type=self._config.index_pod_type,
                pods=self._config.index_pods,
                replicas=self._config.index_replicas,
                shards=self._config.index_shards,
            )
        return ServerlessSpec(cloud=self._config.index_cloud, region=self._config.index_region)

    async def ensure_index(self, tenant_id: str, dimension: int) -> str:
        """Ensure the tenant's default index exists; return its name.

        Raises:
            InvalidRequestError: If tenant_id is empty or dimension is not positive.
        """
        if not tenant_id:
            raise InvalidRequestError("tenant_id is required")
        return await self.ensure_named_index(self.index_name_for(tenant_id), dimension)

    async def ensure_named_index(self, index_name: str, dimension: int) -> str:
        """Ensure an explicitly named index exists with the given dimension.

        Raises:
            InvalidRequestError: If dimension is not positive.
            Exception: Provider errors other than not-found propagate.
        """
        if dimension <= 0:
            raise InvalidRequestError("dimension must be positive")
        if self._cache.is_confirmed(index_name, dimension):
            return index_name

        lock = self._locks.get(index_name)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[index_name] = lock
        async with lock:
            # Another caller may have finished while we waited
            if self._cache.is_confirmed(index_name, dimension):
                return index_name
            await self._provision(index_name, dimension)
        return index_name

    async def _provision(self, index_name: str, dimension: int) -> None:
        self._set_state(index_name, IndexState.checking)
        try:
            description = await self._provider.describe_index(index_name)
        except Exception as e:
            if not is_not_found(e):
                self._set_state(index_name, IndexState.unknown)
                logger.error("tenant_index.describe_failed", index_name=index_name, error=str(e))
                raise
            description = None

        if description is not None:
            if description.dimension is not None and description.dimension != dimension:
                logger.warning(
                    "tenant_index.dimension_mismatch",
                    index_name=index_name,
                    index_dimension=description.dimension,
                    embedding_dimension=dimension,
                )
                self._set_state(index_name, IndexState.mismatched)
            else:
                self._set_state(index_name, IndexState.ready)
            self._cache.confirm(index_name, dimension)
            return

        self._set_state(index_name, IndexState.absent)
        spec = self._index_spec()
        logger.info(
            "tenant_index.creating",
            index_name=index_name,
            dimension=dimension,
            metric=self._config.index_metric,
            spec=spec.kind,
        )
        self._set_state(index_name, IndexState.creating)
        try:
            await self._provider.create_index(index_name, dimension, self._config.index_metric, spec)
        except Exception:
            self._set_state(index_name, IndexState.unknown)
            raise

        self._set_state(index_name, IndexState.provisioning)
        await self._wait_until_ready(index_name)
        self._set_state(index_name, IndexState.ready)
        self._cache.confirm(index_name, dimension)

    async def _wait_until_ready(self, index_name: str) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._config.index_ready_timeout

        while loop.time() < deadline:
            try:
                description = await self._provider.describe_index(index_name)
                if description.ready:
                    logger.info("tenant_index.ready", index_name=index_name)
                    return
            except Exception as e:
                if not is_not_found(e):
                    raise
            await asyncio.sleep(self._config.index_poll_interval)

        logger.warning(
            "tenant_index.ready_timeout",
            index_name=index_name,
            timeout=self._config.index_ready_timeout,
        )
