"""Centralized logging setup for the extraction pipeline.

Provides a structured logging configuration with consistent formatting
across all modules, plus a per-document adapter so that output from
concurrent workers stays attributable.
"""

import logging
import sys
from collections.abc import MutableMapping
from typing import Any


def setup_logging(level: str = "INFO") -> None:
    """Configure the root logger with a standard format.

    Args:
        level: Logging level string (DEBUG, INFO, WARNING, ERROR, CRITICAL).
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    root = logging.getLogger()

    if root.handlers:
        return

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(threadName)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    root.addHandler(handler)
    root.setLevel(numeric_level)


def get_logger(name: str) -> logging.Logger:
    """Get a named logger instance.

    Args:
        name: Logger name, typically ``__name__`` of the calling module.

    Returns:
        Configured logger instance.
    """
    return logging.getLogger(name)


class DocumentLoggerAdapter(logging.LoggerAdapter):
    """Prefixes every message with the document being processed."""

    def process(
        self, msg: Any, kwargs: MutableMapping[str, Any]
    ) -> tuple[Any, MutableMapping[str, Any]]:
        return f"[doc={self.extra['document_id']}] {msg}", kwargs


def document_logger(name: str, document_id: str) -> DocumentLoggerAdapter:
    """Get a logger adapter bound to a single document.

    Args:
        name: Logger name, typically ``__name__`` of the calling module.
        document_id: Identifier of the document being processed.

    Returns:
        Adapter that tags each record with the document id.
    """
    return DocumentLoggerAdapter(get_logger(name), {"document_id": document_id})
