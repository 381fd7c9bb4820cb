"""Tests for the vaultca.logging module: sanitize and setup."""

from __future__ import annotations

import asyncio
import json
import logging
import sys

import pytest

from vaultca.config.settings import LoggingSettings
from vaultca.logging.sanitize import sanitize_base64, sanitize_for_logs, sanitize_pem
from vaultca.logging.setup import (
    OperationContextFilter,
    StructuredFormatter,
    TextFormatter,
    bind_operation,
    configure_logging,
)


def _record(msg: str = "hello", **extra) -> logging.LogRecord:
    record = logging.LogRecord(
        name="vaultca.test",
        level=logging.INFO,
        pathname=__file__,
        lineno=1,
        msg=msg,
        args=(),
        exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


@pytest.fixture()
def restore_vaultca_logger():
    """configure_logging detaches the logger from root; put it back for caplog."""
    logger = logging.getLogger("vaultca")
    level = logger.level
    yield logger
    logger.handlers.clear()
    logger.propagate = True
    logger.setLevel(level)


# ===========================================================================
# sanitize.py
# ===========================================================================


class TestSanitizePem:
    """Tests for sanitize_pem."""

    def test_body_redacted_markers_kept(self):
        """The base64 body is replaced; BEGIN/END lines survive."""
        pem = "-----BEGIN CERTIFICATE REQUEST-----\nMIIBsecret\n-----END CERTIFICATE REQUEST-----"
        result = sanitize_pem(pem)

        assert "MIIBsecret" not in result
        assert "-----BEGIN CERTIFICATE REQUEST-----" in result
        assert "[REDACTED]" in result

    def test_plain_text_unchanged(self):
        assert sanitize_pem("nothing to see") == "nothing to see"


class TestSanitizeForLogs:
    """Tests for sanitize_for_logs."""

    def test_bytes_replaced_by_size(self):
        assert sanitize_for_logs(b"\x30\x82\x01\x00") == "[REDACTED 4 bytes]"

    def test_long_base64_redacted(self):
        blob = "A" * 200
        assert sanitize_base64(f"csr={blob}") == "csr=[REDACTED 200 chars]"

    def test_short_strings_kept(self):
        assert sanitize_for_logs("root-ca") == "root-ca"

    def test_nested_structures(self):
        """Dicts, lists and tuples are walked recursively."""
        data = {"name": "web", "csr": b"\x00" * 10, "chain": (b"\x01", "ok")}
        result = sanitize_for_logs(data)

        assert result == {
            "name": "web",
            "csr": "[REDACTED 10 bytes]",
            "chain": ("[REDACTED 1 bytes]", "ok"),
        }

    def test_other_types_pass_through(self):
        assert sanitize_for_logs(42) == 42
        assert sanitize_for_logs(None) is None


# ===========================================================================
# setup.py
# ===========================================================================


class TestOperationContext:
    """Tests for bind_operation and OperationContextFilter."""

    def test_defaults_outside_block(self):
        record = _record()
        OperationContextFilter().filter(record)
        assert record.operation == "-"
        assert record.certificate == "-"

    def test_bound_values_injected(self):
        record = _record()
        with bind_operation("issue", "web01"):
            OperationContextFilter().filter(record)
        assert record.operation == "issue"
        assert record.certificate == "web01"

    def test_block_resets_on_exit(self):
        with bind_operation("issue", "web01"):
            pass
        record = _record()
        OperationContextFilter().filter(record)
        assert record.operation == "-"

    def test_explicit_attribute_wins(self):
        record = _record(operation="renew")
        with bind_operation("issue"):
            OperationContextFilter().filter(record)
        assert record.operation == "renew"

    async def test_concurrent_tasks_isolated(self):
        """Each task sees only its own bound operation."""
        seen = {}

        async def work(name):
            with bind_operation("issue", name):
                await asyncio.sleep(0)
                record = _record()
                OperationContextFilter().filter(record)
                seen[name] = record.certificate

        await asyncio.gather(work("a"), work("b"))
        assert seen == {"a": "a", "b": "b"}


class TestStructuredFormatter:
    """Tests for the JSON formatter."""

    def test_fields(self):
        record = _record("Issued %s", operation="issue", certificate="web01")
        record.args = ("web01",)
        data = json.loads(StructuredFormatter().format(record))

        assert data["message"] == "Issued web01"
        assert data["level"] == "INFO"
        assert data["logger"] == "vaultca.test"
        assert data["operation"] == "issue"
        assert data["certificate"] == "web01"
        assert "timestamp" in data

    def test_extra_fields_included(self):
        data = json.loads(StructuredFormatter().format(_record(serial="0A1B")))
        assert data["serial"] == "0A1B"

    def test_exception_included(self):
        try:
            msg = "boom"
            raise RuntimeError(msg)
        except RuntimeError:
            record = _record()
            record.exc_info = sys.exc_info()
        data = json.loads(StructuredFormatter().format(record))
        assert "RuntimeError: boom" in data["exception"]


class TestTextFormatter:
    def test_includes_context(self):
        record = _record(operation="create_root", certificate="root-ca")
        line = TextFormatter().format(record)
        assert "[create_root root-ca]" in line
        assert "vaultca.test: hello" in line


class TestConfigureLogging:
    """Tests for configure_logging."""

    def test_json_handler(self, restore_vaultca_logger):
        logger = configure_logging(LoggingSettings(level="DEBUG", format="json"))

        assert logger is restore_vaultca_logger
        assert logger.level == logging.DEBUG
        assert logger.propagate is False
        (handler,) = logger.handlers
        assert isinstance(handler.formatter, StructuredFormatter)
        assert any(isinstance(f, OperationContextFilter) for f in handler.filters)

    def test_text_handler_replaces_previous(self, restore_vaultca_logger):
        configure_logging(LoggingSettings(level="INFO", format="json"))
        logger = configure_logging(LoggingSettings(level="warning", format="text"))

        assert logger.level == logging.WARNING
        (handler,) = logger.handlers
        assert isinstance(handler.formatter, TextFormatter)

    def test_unknown_level_falls_back_to_info(self, restore_vaultca_logger):
        logger = configure_logging(LoggingSettings(level="chatty", format="text"))
        assert logger.level == logging.INFO

    def test_only_asyncio_quietened(self, restore_vaultca_logger):
        """Only loggers of libraries in use are touched."""
        logging.getLogger("urllib3").setLevel(logging.NOTSET)
        configure_logging(LoggingSettings(level="DEBUG", format="json"))

        assert logging.getLogger("asyncio").level == logging.WARNING
        assert logging.getLogger("urllib3").level == logging.NOTSET
