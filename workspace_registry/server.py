"""
Workspace Registry — API server entrypoint.

Configures structured logging, then serves ``workspace_registry.api.app``
with uvicorn. The app's lifespan connects to the store, creates missing
tables and seeds the system schemas.

Usage:
    python -m workspace_registry.server
"""

from __future__ import annotations

import logging

import structlog
import uvicorn

from workspace_registry.config import settings

logger = logging.getLogger(__name__)


def configure_logging() -> None:
    """Configure structured logging for structlog and stdlib loggers alike."""
    renderer = (
        structlog.dev.ConsoleRenderer()
        if settings.log_format != "json"
        else structlog.processors.JSONRenderer()
    )
    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
        structlog.processors.TimeStamper(fmt="iso"),
    ]
    structlog.configure(
        processors=[*shared_processors, renderer],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(settings.log_level)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # Module loggers use the stdlib; render their records through the same chain.
    handler = logging.StreamHandler()
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=[structlog.stdlib.add_logger_name, *shared_processors],
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        )
    )
    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(settings.log_level)


def main() -> None:
    configure_logging()
    log = structlog.get_logger()
    log.info(
        "workspace_registry.server.starting",
        host=settings.api_host,
        port=settings.api_port,
        seed_system_schemas=settings.seed_system_schemas,
    )
    uvicorn.run(
        "workspace_registry.api.app:app",
        host=settings.api_host,
        port=settings.api_port,
        log_config=None,
    )


if __name__ == "__main__":
    main()
