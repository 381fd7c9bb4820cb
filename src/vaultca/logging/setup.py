"""Structured logging configuration for the CA toolkit.

Provides JSON and text formatters, an operation-context filter that
injects the current operation and certificate name into every log
record, and a one-call ``configure_logging`` function driven by
config settings.
"""

from __future__ import annotations

import contextlib
import json
import logging
import sys
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterator

    from vaultca.config.settings import LoggingSettings

# Attributes that are part of the standard LogRecord -- everything
# else is considered "extra" and gets included in structured output.
_STANDARD_ATTRS = frozenset(
    {
        "args",
        "created",
        "exc_info",
        "exc_text",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "message",
        "module",
        "msecs",
        "msg",
        "name",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "taskName",
        "thread",
        "threadName",
        # Our own well-known context attributes (handled explicitly):
        "operation",
        "certificate",
    }
)

_operation: ContextVar[str | None] = ContextVar("vaultca_operation", default=None)
_certificate: ContextVar[str | None] = ContextVar("vaultca_certificate", default=None)


@contextlib.contextmanager
def bind_operation(operation: str, certificate: str | None = None) -> Iterator[None]:
    """Tag log records emitted inside the block with *operation*/*certificate*.

    Backed by :mod:`contextvars`, so concurrent tasks keep separate
    values.
    """
    op_token = _operation.set(operation)
    cert_token = _certificate.set(certificate)
    try:
        yield
    finally:
        _certificate.reset(cert_token)
        _operation.reset(op_token)


# ---------------------------------------------------------------------------
# Formatters
# ---------------------------------------------------------------------------


class StructuredFormatter(logging.Formatter):
    """JSON-lines formatter for production logging.

    Every record becomes a single JSON object on one line containing
    the standard fields plus any *extra* attributes passed by the
    caller or injected by filters.
    """

    def format(self, record: logging.LogRecord) -> str:
        record.message = record.getMessage()

        data: dict = {
            "timestamp": datetime.fromtimestamp(
                record.created,
                tz=UTC,
            ).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.message,
        }

        operation = getattr(record, "operation", None)
        if operation is not None:
            data["operation"] = operation

        certificate = getattr(record, "certificate", None)
        if certificate is not None:
            data["certificate"] = certificate

        # Caller-supplied extra fields
        for key, value in record.__dict__.items():
            if key not in _STANDARD_ATTRS and not key.startswith("_"):
                data.setdefault(key, value)

        if record.exc_info and record.exc_info[0] is not None:
            data["exception"] = self.formatException(record.exc_info)

        if record.stack_info:
            data["stack_info"] = self.formatStack(record.stack_info)

        return json.dumps(data, default=str)


class TextFormatter(logging.Formatter):
    """Human-readable formatter for development / console use."""

    _FMT = "%(asctime)s %(levelname)-8s [%(operation)s %(certificate)s] %(name)s: %(message)s"

    def __init__(self) -> None:
        super().__init__(fmt=self._FMT, datefmt="%Y-%m-%d %H:%M:%S")


# ---------------------------------------------------------------------------
# Filter
# ---------------------------------------------------------------------------


class OperationContextFilter(logging.Filter):
    """Inject the bound operation context into every log record.

    Adds ``operation`` and ``certificate`` from :func:`bind_operation`,
    falling back to ``"-"`` outside any bound block.
    """

    CONTEXT_ATTRS = frozenset({"operation", "certificate"})

    def filter(self, record: logging.LogRecord) -> bool:  # type: ignore[override]
        if not hasattr(record, "operation"):
            record.operation = _operation.get() or "-"  # type: ignore[attr-defined]
        if not hasattr(record, "certificate"):
            record.certificate = _certificate.get() or "-"  # type: ignore[attr-defined]
        return True


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def configure_logging(settings: LoggingSettings) -> logging.Logger:
    """Configure the ``vaultca`` logger hierarchy from settings.

    Replaces any previously installed handlers with properly
    formatted output on stderr.

    Returns the root ``vaultca`` logger.
    """
    level = getattr(logging, settings.level.upper(), logging.INFO)

    root = logging.getLogger("vaultca")
    root.setLevel(level)
    root.handlers.clear()
    root.propagate = False

    formatter: logging.Formatter
    formatter = StructuredFormatter() if settings.format == "json" else TextFormatter()

    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(formatter)
    console.addFilter(OperationContextFilter())
    root.addHandler(console)

    # asyncio debug output is noisy at DEBUG
    logging.getLogger("asyncio").setLevel(logging.WARNING)

    return root
