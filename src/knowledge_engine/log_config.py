"""structlog configuration for the knowledge engine.

JSON output when ``log_json`` is enabled (production), human-readable
console output otherwise.
"""

from __future__ import annotations

import logging

import structlog

from src.knowledge_engine.config import KnowledgeEngineConfig, get_config


def configure_structlog(config: KnowledgeEngineConfig | None = None) -> None:
    """Configure structlog processors and the stdlib root level."""
    settings = config or get_config()

    logging.basicConfig(format="%(message)s", level=settings.log_level.upper())

    shared_processors: list = [
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if settings.log_json:
        shared_processors.append(structlog.processors.JSONRenderer())
    else:
        shared_processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=shared_processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
