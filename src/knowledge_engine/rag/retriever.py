"""Hybrid retriever: vector search plus local lexical and exact-id matching.

For one query the retriever builds a single candidate pool from three
strategies and ranks it:

1. Vector search against every (index, namespace) target of the given
   knowledge bases, concurrently, each under its own timeout.
2. Exact-identifier matches over the locally held chunks (score 0.999).
3. Lexical token overlap over the same chunks (score 0.6 to 0.98).

The pool is ordered vector, exact-id, lexical before a stable descending
sort by score, so ties keep that order. The first ``top_k`` distinct chunk
ids with non-empty text become RetrievalResults with citations.

A failing embedding call disables the vector leg; a failing or slow target
contributes nothing. Retrieval never raises dependency failures.
"""

from __future__ import annotations

import asyncio
import re
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Protocol

import structlog

from src.knowledge_engine.config import KnowledgeEngineConfig
from src.knowledge_engine.embeddings import EmbeddingClient
from src.knowledge_engine.models import (
    Chunk,
    ChunkMetadata,
    Citation,
    IndexTarget,
    KnowledgeBase,
    RetrievalOrigin,
    RetrievalResult,
)
from src.knowledge_engine.rag.lexical import (
    EXACT_ID_SCORE,
    extract_identifiers,
    extract_keywords,
    lexical_score,
    tokenize_query,
)
from src.knowledge_engine.sync import metadata_from_payload
from src.knowledge_engine.targets import resolve_index_targets
from src.knowledge_engine.vector_index import VectorIndexProvider

logger = structlog.get_logger(__name__)


class KnowledgeProvider(Protocol):
    """Anything that can answer a query with ranked knowledge snippets."""

    async def retrieve(self, query: str, top_k: int | None = None) -> list[RetrievalResult]: ...


@dataclass
class _Candidate:
    chunk_id: str
    score: float
    origin: RetrievalOrigin
    text: str
    source_name: str
    metadata: ChunkMetadata
    target: IndexTarget | None = None
    matched_identifiers: list[str] = field(default_factory=list)
    matched_terms: list[str] = field(default_factory=list)


def citation_label(source_name: str | None, metadata: ChunkMetadata, chunk_id: str) -> str:
    """Most specific available label for a snippet's source."""
    for candidate in (
        source_name,
        metadata.title,
        metadata.filename,
        metadata.document_title,
        metadata.source,
        metadata.group_name,
    ):
        if candidate and str(candidate).strip():
            return str(candidate).strip()
    return chunk_id


def rank_and_dedupe(results: Sequence[RetrievalResult], top_k: int) -> list[RetrievalResult]:
    """Stable sort by score descending, keep the first ``top_k`` unique chunk ids."""
    seen: set[str] = set()
    ranked: list[RetrievalResult] = []
    for result in sorted(results, key=lambda r: r.score, reverse=True):
        if len(ranked) >= top_k:
            break
        if result.chunk_id in seen:
            continue
        seen.add(result.chunk_id)
        ranked.append(result)
    return ranked


class HybridRetriever:
    """Answers a query with ranked, deduplicated, cited snippets.

    Args:
        provider: Vector index service.
        embeddings: Embedding client for the query vector.
        config: top_k bounds, per-target timeout, stop words, identifier
            pattern and index prefix.
    """

    def __init__(
        self,
        provider: VectorIndexProvider,
        embeddings: EmbeddingClient,
        config: KnowledgeEngineConfig,
    ) -> None:
        self._provider = provider
        self._embeddings = embeddings
        self._config = config
        self._stop_words = frozenset(word.lower() for word in config.stop_words)
        self._exact_id = re.compile(config.exact_id_pattern)

    def clamp_top_k(self, top_k: int | None) -> int:
        requested = top_k or self._config.default_top_k
        return max(1, min(self._config.max_top_k, requested))

    async def retrieve(
        self,
        query: str,
        knowledge_bases: Sequence[KnowledgeBase],
        top_k: int | None = None,
        *,
        tenant_id: str | None = None,
    ) -> list[RetrievalResult]:
        """Run hybrid retrieval over the given knowledge bases.

        Args:
            query: Free-text query.
            knowledge_bases: Knowledge bases whose chunks and vector targets
                are searched.
            top_k: Maximum results; defaults to default_top_k, clamped to
                [1, max_top_k].
            tenant_id: Tenant used for default index naming when a knowledge
                base does not carry one.

        Returns:
            Results ordered by descending score with unique chunk ids.
        """
        text = query.strip() if isinstance(query, str) else ""
        if not text or not knowledge_bases:
            return []

        limit = self.clamp_top_k(top_k)
        targets = self._resolve_targets(knowledge_bases, tenant_id)
        local_chunks = [chunk for kb in knowledge_bases for chunk in kb.chunks]

        vector_candidates = await self._vector_leg(text, targets, limit)

        identifiers = extract_identifiers(text, self._exact_id)
        exact_candidates = self._exact_id_leg(identifiers, local_chunks)
        lexical_candidates = self._lexical_leg(text, identifiers, local_chunks)

        pool = [*vector_candidates, *exact_candidates, *lexical_candidates]
        pool.sort(key=lambda c: c.score, reverse=True)

        results: list[RetrievalResult] = []
        seen: set[str] = set()
        for candidate in pool:
            if len(results) >= limit:
                break
            snippet = candidate.text.strip()
            if not snippet or candidate.chunk_id in seen:
                continue
            seen.add(candidate.chunk_id)
            results.append(self._to_result(candidate, snippet))

        logger.info(
            "retriever.completed",
            knowledge_bases=len(knowledge_bases),
            targets=len(targets),
            vector=len(vector_candidates),
            exact_id=len(exact_candidates),
            lexical=len(lexical_candidates),
            returned=len(results),
        )
        return results

    def provider_for(
        self,
        knowledge_bases: Sequence[KnowledgeBase],
        tenant_id: str | None = None,
    ) -> KnowledgeProvider:
        """Bind knowledge bases to this retriever as a KnowledgeProvider."""
        return _BoundKnowledgeProvider(self, tuple(knowledge_bases), tenant_id)

    # ── Legs ────────────────────────────────────────────────────────────────

    def _resolve_targets(
        self,
        knowledge_bases: Sequence[KnowledgeBase],
        tenant_id: str | None,
    ) -> list[IndexTarget]:
        unique: dict[str, IndexTarget] = {}
        for kb in knowledge_bases:
            for target in resolve_index_targets(kb, tenant_id, prefix=self._config.index_prefix):
                unique.setdefault(target.key, target)
        return list(unique.values())

    async def _vector_leg(self, query: str, targets: list[IndexTarget], limit: int) -> list[_Candidate]:
        if not targets:
            return []
        try:
            vector = await self._embeddings.embed_one(query)
        except Exception as e:
            logger.warning("retriever.query_embedding_failed", error=str(e))
            return []

        per_target = await asyncio.gather(
            *(self._query_target(target, vector, limit) for target in targets)
        )
        return [candidate for candidates in per_target for candidate in candidates]

    async def _query_target(self, target: IndexTarget, vector: list[float], limit: int) -> list[_Candidate]:
        try:
            matches = await asyncio.wait_for(
                self._provider.query(target.index_name, target.namespace, vector, limit),
                timeout=self._config.target_query_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("retriever.target_timeout", index_name=target.index_name, namespace=target.namespace)
            return []
        except Exception as e:
            logger.warning(
                "retriever.target_failed",
                index_name=target.index_name,
                namespace=target.namespace,
                error=str(e),
            )
            return []

        candidates = []
        for match in matches:
            payload = match.metadata or {}
            text = payload.get("text")
            candidates.append(
                _Candidate(
                    chunk_id=str(payload.get("chunk_id") or match.id),
                    score=min(1.0, max(0.0, float(match.score))),
                    origin=RetrievalOrigin.vector,
                    text=text if isinstance(text, str) else "",
                    source_name=str(payload.get("source_name") or ""),
                    metadata=metadata_from_payload(payload),
                    target=target,
                )
            )
        return candidates

    def _exact_id_leg(self, identifiers: list[str], chunks: list[Chunk]) -> list[_Candidate]:
        if not identifiers:
            return []
        lowered = [identifier.lower() for identifier in identifiers]
        candidates = []
        for chunk in chunks:
            text = chunk.text.lower()
            matched = [identifier for identifier in lowered if identifier in text]
            if not matched:
                continue
            candidates.append(
                _Candidate(
                    chunk_id=chunk.id,
                    score=EXACT_ID_SCORE,
                    origin=RetrievalOrigin.exact_id,
                    text=chunk.text,
                    source_name=chunk.source_name,
                    metadata=chunk.metadata,
                    matched_identifiers=[identifier.upper() for identifier in matched],
                    matched_terms=matched,
                )
            )
        if candidates:
            logger.debug("retriever.exact_id_matches", identifiers=identifiers, matches=len(candidates))
        return candidates

    def _lexical_leg(self, query: str, identifiers: list[str], chunks: list[Chunk]) -> list[_Candidate]:
        tokens = tokenize_query(query, self._stop_words)
        if not tokens:
            return []
        lowered_ids = [identifier.lower() for identifier in identifiers]

        candidates = []
        for chunk in chunks:
            text = chunk.text.lower()
            # An identifier in the query restricts lexical hits to chunks that mention it
            if lowered_ids and not any(identifier in text for identifier in lowered_ids):
                continue
            hits = [token for token in tokens if token in text]
            if not hits:
                continue
            matched_ids = [identifier for identifier in lowered_ids if identifier in text]
            candidates.append(
                _Candidate(
                    chunk_id=chunk.id,
                    score=lexical_score(len(hits), len(tokens)),
                    origin=RetrievalOrigin.lexical,
                    text=chunk.text,
                    source_name=chunk.source_name,
                    metadata=chunk.metadata,
                    matched_identifiers=[identifier.upper() for identifier in matched_ids],
                    matched_terms=[*hits, *matched_ids],
                )
            )
        return candidates

    def _to_result(self, candidate: _Candidate, snippet: str) -> RetrievalResult:
        keywords = extract_keywords(
            snippet,
            existing=[*candidate.metadata.keywords, *candidate.matched_terms],
            stop_words=self._stop_words,
        )
        target = candidate.target
        return RetrievalResult(
            chunk_id=candidate.chunk_id,
            score=candidate.score,
            origin=candidate.origin,
            text=snippet,
            metadata=candidate.metadata,
            citation=Citation(
                label=citation_label(candidate.source_name, candidate.metadata, candidate.chunk_id),
                url=candidate.metadata.url,
                index_name=target.index_name if target else None,
                namespace=target.namespace if target else None,
                keywords=keywords,
            ),
            matched_identifiers=candidate.matched_identifiers,
        )


class _BoundKnowledgeProvider:
    def __init__(
        self,
        retriever: HybridRetriever,
        knowledge_bases: tuple[KnowledgeBase, ...],
        tenant_id: str | None,
    ) -> None:
        self._retriever = retriever
        self._knowledge_bases = knowledge_bases
        self._tenant_id = tenant_id

    async def retrieve(self, query: str, top_k: int | None = None) -> list[RetrievalResult]:
        return await self._retriever.retrieve(
            query, self._knowledge_bases, top_k, tenant_id=self._tenant_id
        )


class CompositeKnowledgeProvider:
    """Merges several providers under the same rank and dedup rule.

    Providers are queried concurrently; one that fails contributes nothing.
    Ties keep provider order.

    Args:
        providers: Providers in priority order.
        default_top_k: Used when the caller passes no top_k.
        max_top_k: Upper clamp for top_k.
    """

    def __init__(
        self,
        providers: Sequence[KnowledgeProvider],
        default_top_k: int = 6,
        max_top_k: int = 20,
    ) -> None:
        self._providers = list(providers)
        self._default_top_k = default_top_k
        self._max_top_k = max_top_k

    async def _safe_retrieve(self, provider: KnowledgeProvider, query: str, top_k: int) -> list[RetrievalResult]:
        try:
            return await provider.retrieve(query, top_k)
        except Exception as e:
            logger.warning("retriever.provider_failed", provider=type(provider).__name__, error=str(e))
            return []

    async def retrieve(self, query: str, top_k: int | None = None) -> list[RetrievalResult]:
        limit = max(1, min(self._max_top_k, top_k or self._default_top_k))
        batches = await asyncio.gather(
            *(self._safe_retrieve(provider, query, limit) for provider in self._providers)
        )
        return rank_and_dedupe([result for batch in batches for result in batch], limit)
