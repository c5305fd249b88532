# src/migraflow/core/logging.py
"""Log setup shared by the CLI, the worker and the drain consumer.

Engine modules log through ``structlog.get_logger(__name__)`` with event
names such as ``stage_completed`` or ``job_claim_lost``. Libraries that log
through the standard ``logging`` module (SQLAlchemy, the worker thread pool)
are routed into the same processor chain, so a deployment sees one stream
in one format on stderr.
"""

import logging
import sys
from typing import Any

import structlog
from structlog.stdlib import ProcessorFormatter

# SQLAlchemy echoes every statement at INFO/DEBUG; a busy queue makes that unreadable.
_QUIET_LOGGERS = ("sqlalchemy", "sqlalchemy.engine", "sqlalchemy.pool", "sqlalchemy.dialects")


def _drop_formatter_keys(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Strip the keys ProcessorFormatter adds for its own use."""
    event_dict.pop("_record", None)
    event_dict.pop("_from_structlog", None)
    return event_dict


def _pre_chain() -> list[Any]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
    ]


def _render_chain(json_output: bool) -> list[Any]:
    if json_output:
        return [_drop_formatter_keys, structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    return [_drop_formatter_keys, structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())]


def configure_logging(*, json_output: bool = False, level: str = "INFO") -> None:
    """Install the migraflow log pipeline on the root logger.

    Safe to call again: the root handlers are replaced, not appended to.

    Args:
        json_output: One JSON object per line instead of console output
        level: Root level name (DEBUG, INFO, WARNING, ERROR)
    """
    root_level = getattr(logging, level.upper())
    pre_chain = _pre_chain()

    structlog.configure(
        processors=[*pre_chain, ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        # Tests reconfigure between cases.
        cache_logger_on_first_use=False,
    )

    # stderr only: stdout carries the CLI's --json documents.
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(ProcessorFormatter(processors=_render_chain(json_output), foreign_pre_chain=pre_chain))

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(root_level)

    quiet_level = max(root_level, logging.WARNING)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(quiet_level)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Typed shortcut for ``structlog.get_logger``."""
    logger: structlog.stdlib.BoundLogger = structlog.get_logger(name)
    return logger
