"""Shared test fixtures for the docsense test suite."""

import uuid
from collections.abc import Callable
from pathlib import Path

import numpy as np
import pytest

from docsense.notifications import LoggingNotifier
from docsense.records import Document, DocumentStatus
from docsense.services import Services, build_services
from docsense.store.memory import InMemoryDocumentStore
from docsense.utils.config import AppConfig

INVOICE_TEXT = """ACME SUPPLIES AB
Invoice number: INV-1001
Invoice date: 2024-03-15
Due date: 2024-04-14
Vendor: Acme Supplies AB
Total: 1250.00
VAT: 250.00
Currency: SEK
"""


@pytest.fixture
def sample_image() -> np.ndarray:
    """Create a simple synthetic grayscale test image."""
    image = np.zeros((200, 300), dtype=np.uint8)
    image[50:150, 50:250] = 255
    return image


@pytest.fixture
def sample_color_image() -> np.ndarray:
    """Create a simple synthetic RGB test image."""
    image = np.zeros((200, 300, 3), dtype=np.uint8)
    image[50:150, 50:250] = (255, 255, 255)
    return image


@pytest.fixture
def project_root() -> Path:
    """Return the project root directory."""
    return Path(__file__).parent.parent


@pytest.fixture
def config_dir(project_root: Path) -> Path:
    """Return the configs directory path."""
    return project_root / "configs"


@pytest.fixture
def invoice_text() -> str:
    """A clean invoice that the rule-based client extracts completely."""
    return INVOICE_TEXT


@pytest.fixture
def store() -> InMemoryDocumentStore:
    return InMemoryDocumentStore()


@pytest.fixture
def notifier() -> LoggingNotifier:
    return LoggingNotifier()


@pytest.fixture
def services(store: InMemoryDocumentStore, notifier: LoggingNotifier) -> Services:
    """Fully wired services on the in-memory store with offline model clients."""
    return build_services(AppConfig(), store=store, notifier=notifier)


@pytest.fixture
def make_document(store: InMemoryDocumentStore) -> Callable[..., Document]:
    """Factory that stores a document and returns it."""

    def _make(
        filename: str = "invoice.txt",
        content: bytes | None = INVOICE_TEXT.encode(),
        user_id: str = "alice",
        doc_type: str | None = "invoice",
        status: DocumentStatus = DocumentStatus.PENDING,
    ) -> Document:
        return store.add_document(
            Document(
                id=uuid.uuid4().hex,
                user_id=user_id,
                filename=filename,
                doc_type=doc_type,
                content=content,
                status=status,
            )
        )

    return _make
