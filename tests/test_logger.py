"""Tests for the logging setup module."""

import logging

import pytest

from docsense.utils.logger import (
    DocumentLoggerAdapter,
    document_logger,
    get_logger,
    setup_logging,
)


class TestSetupLogging:
    """Tests for the setup_logging function."""

    def test_setup_creates_handler(self) -> None:
        root = logging.getLogger()
        saved = root.handlers[:]
        root.handlers.clear()

        setup_logging("DEBUG")
        assert len(root.handlers) >= 1
        assert root.level == logging.DEBUG

        root.handlers[:] = saved

    def test_setup_idempotent(self) -> None:
        root = logging.getLogger()
        saved = root.handlers[:]
        root.handlers.clear()

        setup_logging("INFO")
        count = len(root.handlers)
        setup_logging("INFO")
        assert len(root.handlers) == count

        root.handlers[:] = saved

    def test_setup_invalid_level_defaults_to_info(self) -> None:
        root = logging.getLogger()
        saved = root.handlers[:]
        root.handlers.clear()

        setup_logging("NONEXISTENT")
        assert root.level == logging.INFO

        root.handlers[:] = saved


class TestGetLogger:
    """Tests for the get_logger function."""

    def test_returns_named_logger(self) -> None:
        logger = get_logger("test.module")
        assert logger.name == "test.module"
        assert isinstance(logger, logging.Logger)

    def test_same_name_returns_same_logger(self) -> None:
        assert get_logger("test.same") is get_logger("test.same")


class TestDocumentLogger:
    """Tests for the per-document adapter."""

    def test_prefixes_document_id(self, caplog: pytest.LogCaptureFixture) -> None:
        log = document_logger("test.document", "doc-42")
        assert isinstance(log, DocumentLoggerAdapter)
        with caplog.at_level(logging.INFO, logger="test.document"):
            log.info("Route %s", "ocr")
        assert "[doc=doc-42] Route ocr" in caplog.text
