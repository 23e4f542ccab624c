"""Tests for structlog configuration."""

from __future__ import annotations

import pytest
import structlog

from src.knowledge_engine.log_config import configure_structlog


@pytest.fixture(autouse=True)
def _reset_structlog():
    yield
    structlog.reset_defaults()


@pytest.mark.parametrize(
    ("log_json", "renderer"),
    [(True, structlog.processors.JSONRenderer), (False, structlog.dev.ConsoleRenderer)],
)
def test_renderer_follows_log_json(config, log_json, renderer) -> None:
    configure_structlog(config.model_copy(update={"log_json": log_json}))

    processors = structlog.get_config()["processors"]
    assert isinstance(processors[-1], renderer)
    assert structlog.stdlib.add_logger_name in processors
