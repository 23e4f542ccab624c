"""Tests for EmbeddingClient with a patched httpx transport."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from src.knowledge_engine.embeddings import EmbeddingClient
from src.knowledge_engine.errors import EmbeddingError

BASE_URL = "http://embed.test"
URL = f"{BASE_URL}/api/embeddings"


# ── Helpers ─────────────────────────────────────────────────────────────────


def _response(status: int = 200, json: object | None = None, text: str | None = None) -> httpx.Response:
    request = httpx.Request("POST", URL)
    if text is not None:
        return httpx.Response(status, text=text, request=request)
    return httpx.Response(status, json=json, request=request)


def _client(**kwargs) -> EmbeddingClient:
    options = {"max_retries": 3, "backoff_min": 0, "backoff_max": 0}
    options.update(kwargs)
    return EmbeddingClient(BASE_URL, "nomic-embed-text:latest", **options)


# ── Tests ───────────────────────────────────────────────────────────────────


async def test_embed_preserves_order_and_sends_prompt() -> None:
    async def fake_post(url, json=None, **kwargs):
        return _response(json={"embedding": [float(len(json["prompt"])), 1.0]})

    client = _client()
    with patch("httpx.AsyncClient.post", new_callable=AsyncMock, side_effect=fake_post) as mock_post:
        vectors = await client.embed(["a", "bbb", "cc"])

    assert vectors == [[1.0, 1.0], [3.0, 1.0], [2.0, 1.0]]
    assert mock_post.await_count == 3
    url = mock_post.call_args.args[0]
    body = mock_post.call_args.kwargs["json"]
    assert url == URL
    assert body["model"] == "nomic-embed-text:latest"
    await client.aclose()


async def test_embed_empty_list_makes_no_requests() -> None:
    client = _client()
    with patch("httpx.AsyncClient.post", new_callable=AsyncMock) as mock_post:
        assert await client.embed([]) == []
    mock_post.assert_not_awaited()
    await client.aclose()


async def test_embed_one_returns_single_vector() -> None:
    client = _client()
    with patch(
        "httpx.AsyncClient.post",
        new_callable=AsyncMock,
        return_value=_response(json={"embedding": [0.1, 0.2, 0.3]}),
    ):
        assert await client.embed_one("hello") == [0.1, 0.2, 0.3]
    await client.aclose()


async def test_error_status_fails_without_retry() -> None:
    client = _client()
    with patch(
        "httpx.AsyncClient.post",
        new_callable=AsyncMock,
        return_value=_response(500, text="model not loaded"),
    ) as mock_post:
        with pytest.raises(EmbeddingError, match="500") as exc_info:
            await client.embed_one("hello")

    assert exc_info.value.status_code == 500
    assert "model not loaded" in str(exc_info.value)
    assert mock_post.await_count == 1
    await client.aclose()


async def test_missing_embedding_array_fails() -> None:
    client = _client()
    with patch(
        "httpx.AsyncClient.post",
        new_callable=AsyncMock,
        return_value=_response(json={"error": "nope"}),
    ):
        with pytest.raises(EmbeddingError, match="missing embedding array"):
            await client.embed_one("hello")
    await client.aclose()


async def test_transport_error_is_retried() -> None:
    client = _client()
    with patch(
        "httpx.AsyncClient.post",
        new_callable=AsyncMock,
        side_effect=[httpx.ConnectError("refused"), _response(json={"embedding": [1.0]})],
    ) as mock_post:
        assert await client.embed_one("hello") == [1.0]
    assert mock_post.await_count == 2
    await client.aclose()


async def test_transport_retries_exhausted() -> None:
    client = _client(max_retries=2)
    with patch(
        "httpx.AsyncClient.post",
        new_callable=AsyncMock,
        side_effect=httpx.ReadTimeout("slow"),
    ) as mock_post:
        with pytest.raises(EmbeddingError):
            await client.embed_one("hello")
    assert mock_post.await_count == 2
    await client.aclose()


async def test_one_failure_fails_whole_batch() -> None:
    async def fake_post(url, json=None, **kwargs):
        if json["prompt"] == "bad":
            return _response(400, text="bad input")
        await asyncio.sleep(0.01)
        return _response(json={"embedding": [1.0]})

    client = _client()
    with patch("httpx.AsyncClient.post", new_callable=AsyncMock, side_effect=fake_post):
        with pytest.raises(EmbeddingError):
            await client.embed(["good", "bad", "good too"])
    await client.aclose()


async def test_concurrency_is_bounded() -> None:
    active = 0
    peak = 0

    async def fake_post(url, json=None, **kwargs):
        nonlocal active, peak
        active += 1
        peak = max(peak, active)
        await asyncio.sleep(0.01)
        active -= 1
        return _response(json={"embedding": [1.0]})

    client = _client(max_concurrency=2)
    with patch("httpx.AsyncClient.post", new_callable=AsyncMock, side_effect=fake_post):
        vectors = await client.embed([f"text {i}" for i in range(6)])

    assert len(vectors) == 6
    assert peak == 2
    await client.aclose()
