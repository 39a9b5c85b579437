"""
Structured logging for the ledger, built on structlog.

Log events carry ETH amounts as `Decimal`; `render_amounts` turns them into
plain decimal strings so JSON output never shows `Decimal('0.1')` or
scientific notation. `usage_context` binds the agent, wallet and event of a
ledger operation to every line logged inside it.
"""

import logging
import sys
from decimal import Decimal
from typing import Any, Optional

import structlog
from structlog.typing import EventDict, Processor, WrappedLogger


def render_amounts(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    """Render Decimal values in fixed-point notation."""
    for key, value in event_dict.items():
        if isinstance(value, Decimal):
            text = format(value, "f")
            if "." in text:
                text = text.rstrip("0").rstrip(".")
            event_dict[key] = text
    return event_dict


def setup_logging(log_level: str = "INFO") -> None:
    """Configure console output on a TTY and JSON lines elsewhere."""
    level = getattr(logging, log_level.upper(), logging.INFO)

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        render_amounts,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
    ]

    if sys.stderr.isatty():
        processors.append(structlog.dev.ConsoleRenderer(colors=True))
    else:
        processors += [structlog.processors.dict_tracebacks, structlog.processors.JSONRenderer()]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: Optional[str] = None) -> structlog.BoundLogger:
    """Logger bound to a component name."""
    logger = structlog.get_logger()
    if name:
        logger = logger.bind(component=name)
    return logger


class LoggerMixin:
    """Gives a class a `log` bound to its name."""

    @property
    def log(self) -> structlog.BoundLogger:
        if not hasattr(self, "_logger"):
            self._logger = get_logger(self.__class__.__name__)
        return self._logger


def log_context(**kwargs: Any):
    """Bind fields to every log line in scope."""
    return structlog.contextvars.bound_contextvars(**kwargs)


def usage_context(
    agent_id: Optional[str] = None,
    wallet: Optional[str] = None,
    event_id: Optional[str] = None,
):
    """Bind the identifiers of a ledger operation; unset ones are left out."""
    fields = {"agent_id": agent_id, "wallet": wallet, "event_id": event_id}
    return log_context(**{k: v for k, v in fields.items() if v is not None})
