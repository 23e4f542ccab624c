#!/usr/bin/env python3
"""Build a knowledge base from local files and run a retrieval query against it.

Reads supported documents (.txt, .md, .csv, .pdf, .docx) from a directory,
chunks them into an in-memory knowledge base, optionally syncs it to the
tenant's vector index, and prints the ranked, cited results for a query.

Usage:
    uv run python scripts/query_knowledge.py --query "refund policy"
    uv run python scripts/query_knowledge.py --tenant-id acme --data-dir docs --sync --query "CS12345"
    uv run python scripts/query_knowledge.py --dry-run
"""

from __future__ import annotations

import argparse
import asyncio
import mimetypes
import os
import sys
from pathlib import Path

# Ensure project root is on sys.path so we can import src modules
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from dotenv import load_dotenv  # noqa: E402

# Load .env from project root
load_dotenv(os.path.join(os.path.dirname(__file__), "..", ".env"))

SUPPORTED_SUFFIXES = {".txt", ".md", ".markdown", ".csv", ".pdf", ".docx"}


async def run(
    tenant_id: str,
    kb_id: str,
    data_dir: str,
    query: str,
    top_k: int | None,
    sync: bool,
    dry_run: bool,
) -> None:
    """Load documents, optionally sync, then query and print results.

    Args:
        tenant_id: Tenant owning the knowledge base.
        kb_id: Knowledge base id (also names the vector namespace).
        data_dir: Directory with documents to load.
        query: Query text; skipped when empty.
        top_k: Maximum results (defaults to configuration).
        sync: Sync vectors to the index before querying.
        dry_run: Only report chunking; no embedding or index calls.
    """
    from src.knowledge_engine.config import get_config
    from src.knowledge_engine.engine import KnowledgeEngine
    from src.knowledge_engine.log_config import configure_structlog
    from src.knowledge_engine.models import KnowledgeBase, UploadedFile

    data_path = Path(data_dir)
    if not data_path.is_dir():
        print(f"Error: data directory does not exist: {data_path}")
        sys.exit(1)

    files = sorted(p for p in data_path.iterdir() if p.suffix.lower() in SUPPORTED_SUFFIXES)
    if not files:
        print(f"No supported documents found in {data_path}")
        sys.exit(1)

    config = get_config()
    configure_structlog(config)
    engine = KnowledgeEngine.from_config(config)

    try:
        uploads = [
            UploadedFile(
                filename=path.name,
                mimetype=mimetypes.guess_type(path.name)[0] or "",
                content=path.read_bytes(),
            )
            for path in files
        ]
        kb = KnowledgeBase(id=kb_id, tenant_id=tenant_id, title=data_path.name)
        kb, outcomes = engine.ingestion.append_files(kb, uploads)

        print(f"Loaded {len(files)} file(s) from {data_path}")
        for outcome in outcomes:
            if outcome.ok:
                print(f"  [OK]    {outcome.name}: {outcome.chunk_count} chunks")
            elif outcome.skipped:
                print(f"  [SKIP]  {outcome.name}: {outcome.skipped}")
            else:
                print(f"  [FAIL]  {outcome.name}: {outcome.error}")

        if dry_run:
            print(f"\n[DRY RUN] {kb.chunk_count} chunks built; nothing was embedded or queried.")
            return

        if sync:
            report = await engine.sync(kb)
            print(f"\nSync: {report.status}, {report.vector_count} vectors")
            for target in report.targets:
                print(f"  -> {target.index_name} / {target.namespace}")
            for err in report.errors:
                print(f"  Error: {err}")

        if not query:
            return

        results = await engine.retrieve(query, [kb], top_k, tenant_id=tenant_id)
        print(f"\n{'=' * 50}")
        print(f"Results for: {query}")
        print(f"{'=' * 50}")
        if not results:
            print("  (no matches)")
        for rank, result in enumerate(results, start=1):
            preview = result.text[:160].replace("\n", " ")
            print(f"{rank:>2}. [{result.origin.value}] {result.score:.3f}  {result.citation.label}")
            print(f"    {preview}")
            if result.citation.keywords:
                print(f"    keywords: {', '.join(result.citation.keywords)}")
    finally:
        await engine.aclose()


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Build a knowledge base from local files and run a retrieval query.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "Examples:\n"
            "  uv run python scripts/query_knowledge.py --query 'refund policy'\n"
            "  uv run python scripts/query_knowledge.py --sync --query CS12345\n"
            "  uv run python scripts/query_knowledge.py --dry-run\n"
        ),
    )
    parser.add_argument("--tenant-id", default="default", help="Tenant ID (default: default)")
    parser.add_argument("--kb-id", default="local", help="Knowledge base ID (default: local)")
    parser.add_argument(
        "--data-dir",
        default="data/knowledge",
        help="Directory containing documents to load (default: data/knowledge)",
    )
    parser.add_argument("--query", default="", help="Query text to retrieve for")
    parser.add_argument("--top-k", type=int, default=None, help="Maximum number of results")
    parser.add_argument(
        "--sync",
        action="store_true",
        help="Embed and upsert the chunks into the tenant index before querying",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Only report chunking without calling the embedding service or Qdrant",
    )
    args = parser.parse_args()

    asyncio.run(
        run(args.tenant_id, args.kb_id, args.data_dir, args.query, args.top_k, args.sync, args.dry_run)
    )


if __name__ == "__main__":
    main()
