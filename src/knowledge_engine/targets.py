"""Resolve where a knowledge base's vectors live.

A knowledge base may carry routing metadata naming one or more vector
indexes (optionally with namespaces); its groups may name more. Without
any routing the knowledge base maps to the tenant's default index and the
namespace ``floppy-{kb_id}``.

Accepted routing shapes (``KnowledgeBase.routing``)::

    {"namespace": "support"}
    {"indexes": "idx-a, idx-b"}
    {"targets": [{"index": "idx-a", "ns": "faq"}, "idx-b"]}
    {"index_names": [{"namespace": "x", "indexes": ["idx-c"]}]}

Index names are used as given (trimmed); namespaces are sanitized.
Duplicate (index, namespace) pairs are dropped, first occurrence wins.
"""

from __future__ import annotations

from typing import Any

from src.knowledge_engine.models import IndexTarget, KnowledgeBase
from src.knowledge_engine.tenant_index import sanitize_index_name, sanitize_namespace

_INDEX_KEYS = ("index", "index_name", "indexName")
_INDEX_LIST_KEYS = ("indexes", "index_names", "indexNames")
_NAMESPACE_KEYS = ("namespace", "ns")


def default_namespace(kb: KnowledgeBase) -> str:
    """Namespace for a knowledge base, honouring a routing override."""
    routing = kb.routing or {}
    raw = routing.get("namespace")
    if not raw and isinstance(routing.get("namespaces"), list) and routing["namespaces"]:
        raw = routing["namespaces"][0]
    return sanitize_namespace(raw or f"floppy-{kb.id}")


def default_target(kb: KnowledgeBase, tenant_id: str | None = None, prefix: str = "tenant") -> IndexTarget:
    """The tenant's default index with the knowledge base's namespace."""
    return IndexTarget(
        index_name=sanitize_index_name(kb.tenant_id or tenant_id or "default", prefix=prefix),
        namespace=default_namespace(kb),
    )


def _split_names(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


class _TargetCollector:
    def __init__(self, fallback_namespace: str) -> None:
        self.fallback_namespace = fallback_namespace
        self.targets: dict[str, IndexTarget] = {}

    def add(self, index_name: Any, namespace: str | None) -> None:
        name = index_name.strip() if isinstance(index_name, str) else ""
        if not name:
            return
        target = IndexTarget(
            index_name=name,
            namespace=sanitize_namespace(namespace) if namespace else self.fallback_namespace,
        )
        self.targets.setdefault(target.key, target)

    def collect(self, source: Any, namespace: str | None) -> None:
        if not source:
            return
        if isinstance(source, (list, tuple)):
            for item in source:
                self.collect(item, namespace)
            return
        if isinstance(source, str):
            for name in _split_names(source):
                self.add(name, namespace)
            return
        if not isinstance(source, dict):
            return

        scoped = next((source[k] for k in _NAMESPACE_KEYS if source.get(k)), None) or namespace

        for key in _INDEX_KEYS:
            if isinstance(source.get(key), str):
                self.add(source[key], scoped)
        for key in _INDEX_LIST_KEYS:
            if source.get(key) is not None:
                self.collect(source[key], scoped)
        if source.get("targets"):
            self.collect(source["targets"], scoped)


def resolve_index_targets(
    kb: KnowledgeBase,
    tenant_id: str | None = None,
    prefix: str = "tenant",
) -> list[IndexTarget]:
    """List the (index, namespace) targets for a knowledge base.

    Routing metadata is read first, then group-level index hints. If
    neither names an index, the single default target is returned.
    """
    fallback = default_namespace(kb)
    collector = _TargetCollector(fallback)
    routing = kb.routing or {}

    for key in ("targets", *_INDEX_LIST_KEYS):
        collector.collect(routing.get(key), fallback)

    for group in kb.groups:
        if group.index_name:
            collector.add(group.index_name, group.namespace)

    if not collector.targets:
        return [default_target(kb, tenant_id, prefix)]
    return list(collector.targets.values())
