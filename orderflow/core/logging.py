"""
Structured logging for the order engine.

Every log event carries the code of the order being processed when one is
bound, so the lines written for a single operation (load, reprice, transition,
payment) can be correlated. Pricing passes are timed with log_performance.
"""

import logging
import sys
import time
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any, Iterator, Optional

import structlog
from structlog.types import EventDict, Processor

from orderflow.core.config import Settings, get_settings

order_code_ctx: ContextVar[Optional[str]] = ContextVar("order_code", default=None)


def add_order_code(
    logger: logging.Logger, method_name: str, event_dict: EventDict
) -> EventDict:
    """
    Add the bound order code to a log event.

    An explicit ``order_code`` passed to the log call wins over the bound one.
    """
    order_code = order_code_ctx.get()
    if order_code:
        event_dict.setdefault("order_code", order_code)
    return event_dict


def configure_logging(settings: Optional[Settings] = None) -> None:
    """
    Configure structlog and the stdlib root logger.

    Development gets the console renderer; every other environment gets JSON
    lines on stdout.

    Args:
        settings: Engine settings, defaults to the cached settings
    """
    settings = settings or get_settings()

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        add_order_code,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if settings.is_development:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))
    else:
        processors.append(structlog.processors.JSONRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, settings.log_level),
    )

    # Driver chatter stays out of order logs.
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)
    logging.getLogger("celery").setLevel(logging.INFO)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def bind_order_code(order_code: Optional[str]) -> None:
    """Bind the current order code to subsequent log events; None unbinds."""
    order_code_ctx.set(order_code)


class PerformanceLogger:
    """
    Logs the duration of a timed block against a slow-operation threshold.

    Failed blocks log at error level with the exception type; blocks over
    SLOW_OPERATION_MS log at warning level.
    """

    SLOW_OPERATION_MS = 500

    def __init__(self, logger: structlog.stdlib.BoundLogger, operation: str, **context: Any):
        self.log = logger
        self.fields = {"operation": operation, **context}

    def record(self, elapsed: float, error: Optional[BaseException] = None) -> None:
        duration_ms = round(elapsed * 1000, 2)
        if error is not None:
            self.log.error(
                "Operation failed",
                duration_ms=duration_ms,
                error_type=type(error).__name__,
                **self.fields,
            )
        elif duration_ms > self.SLOW_OPERATION_MS:
            self.log.warning("Slow operation", duration_ms=duration_ms, **self.fields)
        else:
            self.log.debug("Operation completed", duration_ms=duration_ms, **self.fields)


@contextmanager
def log_performance(
    logger: structlog.stdlib.BoundLogger, operation: str, **context: Any
) -> Iterator[PerformanceLogger]:
    """
    Time the enclosed block.

    Example:
        >>> with log_performance(logger, "apply_price_adjustments", order_id=order.id):
        ...     await engine.apply_price_adjustments(order)
    """
    perf = PerformanceLogger(logger, operation, **context)
    started = time.perf_counter()
    try:
        yield perf
    except Exception as exc:
        perf.record(time.perf_counter() - started, exc)
        raise
    perf.record(time.perf_counter() - started)
