"""Assembles the pipeline components from configuration.

The API and the CLI both go through ``build_services`` so they run the same
pipeline. Roles with a configured endpoint call it over HTTP; the others use
the offline rule-based client.
"""

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from functools import lru_cache
from pathlib import Path

from docsense.classification import DocumentClassifier
from docsense.extraction.base import ExtractionEngine
from docsense.extraction.general_engine import GeneralExtractionEngine
from docsense.extraction.ocr_engine import OcrExtractionEngine
from docsense.notifications import Notifier, build_notifier
from docsense.ocr.layout_analyzer import LayoutAnalyzer
from docsense.ocr.tesseract_engine import TesseractEngine
from docsense.pipeline.orchestrator import PipelineOrchestrator
from docsense.pipeline.session import SessionManager
from docsense.providers.base import ModelClient
from docsense.providers.http_client import HttpModelClient
from docsense.providers.layout import LayoutModelClient
from docsense.providers.rules import RuleModelClient
from docsense.quality.assessor import QualityAssessor, Route
from docsense.reconciliation.reconciler import Reconciler
from docsense.records import utcnow
from docsense.review.sla import SlaEngine
from docsense.review.workflow import ReviewWorkflow
from docsense.schema import SchemaRegistry
from docsense.store.base import DocumentStore
from docsense.store.memory import InMemoryDocumentStore
from docsense.store.sql import SqlDocumentStore
from docsense.utils.config import AppConfig, ModelEndpointConfig, load_config
from docsense.utils.logger import get_logger, setup_logging
from docsense.verification.verifier import Verifier

logger = get_logger(__name__)


@dataclass
class Services:
    """Wired pipeline components sharing one store and notifier."""

    config: AppConfig
    store: DocumentStore
    notifier: Notifier
    schemas: SchemaRegistry
    classifier: DocumentClassifier
    sessions: SessionManager
    sla: SlaEngine
    review: ReviewWorkflow
    orchestrator: PipelineOrchestrator


def build_client(role: str, endpoint: ModelEndpointConfig) -> ModelClient:
    """HTTP client when the role has a URL, rule-based client otherwise."""
    if endpoint.url:
        logger.info("Role %s uses endpoint %s (%s)", role, endpoint.url, endpoint.model)
        return HttpModelClient(role, endpoint)
    return RuleModelClient(role)


def build_store(url: str) -> DocumentStore:
    if url == "memory":
        return InMemoryDocumentStore()
    return SqlDocumentStore(url)


def build_engines(config: AppConfig) -> dict[Route, ExtractionEngine]:
    reader = TesseractEngine(config.ocr)
    extraction = build_client("extraction", config.models.extraction)
    structuring = build_client("structuring", config.models.structuring)
    layout_client = (
        LayoutModelClient(config.extraction.layout_model_name)
        if config.extraction.use_layout_model
        else None
    )
    return {
        Route.GENERAL: GeneralExtractionEngine(
            extraction,
            config.extraction,
            reader=reader,
            page_dpi=config.ocr.pdf_dpi,
            structuring_client=structuring,
        ),
        Route.OCR: OcrExtractionEngine(
            extraction,
            config.extraction,
            reader=reader,
            layout=LayoutAnalyzer(),
            layout_client=layout_client,
            page_dpi=config.ocr.pdf_dpi,
            structuring_client=structuring,
        ),
    }


def build_services(
    config: AppConfig,
    store: DocumentStore | None = None,
    notifier: Notifier | None = None,
    clock: Callable[[], datetime] = utcnow,
) -> Services:
    """Wire every component from ``config``.

    Args:
        config: Application configuration.
        store: Store to use instead of the configured one.
        notifier: Notifier to use instead of the configured one.
        clock: Time source for review and SLA bookkeeping.
    """
    store = store or build_store(config.storage.url)
    notifier = notifier or build_notifier(config.notifications)
    schemas = SchemaRegistry(Path(config.schemas_path))
    classifier = DocumentClassifier(Path(config.templates_path))

    sessions = SessionManager(store, notifier)
    sla = SlaEngine(store, config.sla, notifier, clock=clock)
    review = ReviewWorkflow(store, notifier, sla=sla, clock=clock)

    reconciler = Reconciler(
        build_client("reconciliation", config.models.reconciliation),
        config.reconciliation,
        config.extraction,
    )
    verification_client = (
        HttpModelClient("verification", config.models.verification)
        if config.models.verification.url
        else None
    )
    verifier = Verifier(config.verification, verification_client, config.extraction)

    orchestrator = PipelineOrchestrator(
        store=store,
        assessor=QualityAssessor(config.quality),
        engines=build_engines(config),
        verifier=verifier,
        schemas=schemas,
        config=config,
        notifier=notifier,
        reconciler=reconciler,
        classifier=classifier,
        review=review,
        sessions=sessions,
    )
    return Services(
        config=config,
        store=store,
        notifier=notifier,
        schemas=schemas,
        classifier=classifier,
        sessions=sessions,
        sla=sla,
        review=review,
        orchestrator=orchestrator,
    )


@lru_cache(maxsize=1)
def get_services() -> Services:
    """Process-wide services built from ``configs/config.yaml``."""
    config = load_config()
    setup_logging(config.log_level)
    return build_services(config)
