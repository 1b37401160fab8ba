"""
Structured logging for the operator.

JSON lines in production, colored console output elsewhere. Every record
carries the operator identity and the namespace it watches; work items bind
``reconcile_key`` through structlog contextvars so nested gateway calls can be
traced back to the resource being reconciled.
"""
import logging
import sys
from typing import Any, Callable, List

import structlog
from structlog.types import EventDict, Processor

from kubedb_operator.config.settings import Settings

# Client libraries that log every request at INFO.
QUIET_LOGGERS = ("kubernetes_asyncio", "aiohttp", "urllib3")


def operator_context(settings: Settings) -> Callable[[Any, str, EventDict], EventDict]:
    """Processor stamping operator identity onto each event."""
    scope = settings.watch_namespace or "*"

    def add_operator_context(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
        event_dict.setdefault("operator", settings.app_name)
        event_dict.setdefault("version", settings.app_version)
        event_dict.setdefault("environment", settings.environment)
        event_dict.setdefault("watch_scope", scope)
        return event_dict

    return add_operator_context


def _renderer(settings: Settings) -> Processor:
    if settings.is_production:
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())


def configure_logging(settings: Settings) -> None:
    """Configure structlog and the stdlib root logger. Call once at startup."""
    processors: List[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        operator_context(settings),
        structlog.processors.format_exc_info,
        _renderer(settings),
    ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    level = getattr(logging, settings.log_level)
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level, force=True)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """
    Get a structlog logger.

    Args:
        name: Logger name (typically __name__ of the module)
    """
    return structlog.get_logger(name)
