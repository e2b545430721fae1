"""
Logging setup for the service.

Console logging with ISO timestamps, plus a correlation id taken from a
context variable so that every record emitted while a job runs can be traced
back to its operation.
"""

import logging
import os
import sys
from contextvars import ContextVar

correlation_id_ctx: ContextVar[str] = ContextVar("correlation_id", default="-")


def set_correlation_id(correlation_id: str | None) -> None:
    correlation_id_ctx.set(correlation_id or "-")


def get_correlation_id() -> str:
    return correlation_id_ctx.get()


class CorrelationIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = correlation_id_ctx.get()
        return True


def configure_logging(level: str | None = None) -> None:
    """Install a single stdout handler on the root logger."""
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(CorrelationIdFilter())
    handler.setFormatter(
        logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - [%(correlation_id)s] %(message)s",
            datefmt="%Y-%m-%dT%H:%M:%S",
        )
    )
    root_logger.setLevel((level or os.getenv("LOG_LEVEL", "INFO")).upper())
    root_logger.addHandler(handler)

    # Reduce noise from verbose third-party libraries
    for name in ("urllib3", "docling", "multipart", "PIL"):
        logging.getLogger(name).setLevel(logging.WARNING)
