"""Structured logging configuration for cratedocs."""

import logging
import sys

import structlog

_HANDLER_NAME = "cratedocs"


def configure_logging(log_level: str = "INFO", json_logs: bool = False) -> None:
    """
    Send structlog events and stdlib ``logging`` records through one stderr handler.

    Library modules log with ``logging.getLogger(__name__)``; pipeline events
    go through structlog. Both end up rendered by the same formatter, so a
    run's output is either all console lines or all JSON lines.

    Args:
        log_level: Level name, e.g. "INFO" or "DEBUG"
        json_logs: Render JSON lines instead of the console format
    """
    numeric_level = getattr(logging, log_level.upper(), logging.INFO)

    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]
    if json_logs:
        renderers = [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        renderers = [structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())]

    handler = logging.StreamHandler(sys.stderr)
    handler.set_name(_HANDLER_NAME)
    handler.setFormatter(structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, *renderers],
    ))

    # Reconfiguring replaces our handler, never one installed by someone else.
    root = logging.getLogger()
    root.handlers = [h for h in root.handlers if h.get_name() != _HANDLER_NAME]
    root.addHandler(handler)
    root.setLevel(numeric_level)

    structlog.configure(
        processors=[*shared_processors, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def get_pipeline_logger(component: str) -> structlog.stdlib.BoundLogger:
    """Get a logger bound to a pipeline component."""
    return structlog.get_logger(component).bind(component=component)


def log_ingestion_event(
    logger: structlog.stdlib.BoundLogger,
    crate_name: str,
    crate_version: str,
    documents: int,
    embeddings: int,
    total_tokens: int,
    estimated_cost: float,
    timings: dict,
) -> None:
    """Log a completed crate ingestion."""
    logger.info(
        "crate_ingested",
        crate_name=crate_name,
        crate_version=crate_version,
        documents=documents,
        embeddings=embeddings,
        total_tokens=total_tokens,
        estimated_cost=estimated_cost,
        timings=timings,
        event_type="crate_ingestion",
    )
