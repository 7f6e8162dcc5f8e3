"""Pipeline orchestrator.

Runs one document through quality assessment, the routed extraction engine,
optional reconciliation and mandatory verification, persisting every
stage's artifact as it completes. Status changes are compare-and-set
against the Document Store, which is the only state shared between
workers:

    pending -> processing -> approved | needs_review | failed

A run whose document was rolled back to ``pending`` while it was in flight
(session cancellation) loses the final compare-and-set and its result is
discarded.
"""

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any

from docsense.classification import DocumentClassifier
from docsense.errors import (
    ConflictError,
    DocsenseError,
    ProviderError,
    StageError,
    StorageError,
    ValidationError,
)
from docsense.extraction.base import ExtractionEngine
from docsense.extraction.confidence import to_percent
from docsense.extraction.result import ExtractionResult
from docsense.ingest.loader import content_hash, load_source
from docsense.notifications import Notifier
from docsense.providers.base import UsageRecord
from docsense.quality.assessor import QualityAssessor, Route
from docsense.reconciliation.reconciler import Reconciler
from docsense.records import Document, DocumentStatus
from docsense.review.workflow import ReviewWorkflow
from docsense.schema import DocumentSchema, SchemaRegistry
from docsense.store.base import DocumentStore
from docsense.utils.config import AppConfig
from docsense.utils.logger import document_logger, get_logger
from docsense.verification.duplicates import DuplicateDetector
from docsense.verification.rules import Severity, VerificationIssue
from docsense.verification.verifier import Verifier

from .session import CancellationToken, RollbackReport, SessionManager

logger = get_logger(__name__)


def decide_status(
    confidence_pct: float,
    threshold: float,
    issues: list[VerificationIssue],
    forced_reasons: list[str] | None = None,
) -> tuple[DocumentStatus, str | None]:
    """Final status of a processed document and the reason if not approved.

    Auto-approval needs confidence at or above ``threshold`` and no
    error-severity issue; any forced reason (a failed stage) also sends the
    document to review.

    Args:
        confidence_pct: Overall confidence on the 0-100 scale.
        threshold: Auto-approve threshold on the 0-100 scale.
        issues: Verification issues.
        forced_reasons: Diagnostics from degraded stages.

    Returns:
        ``(APPROVED, None)`` or ``(NEEDS_REVIEW, reason)``.
    """
    reasons = list(forced_reasons or [])
    errors = [i for i in issues if i.severity == Severity.ERROR]
    if errors:
        keys = sorted(
            {
                i.field if i.item_index is None else f"line_items[{i.item_index}].{i.field}"
                for i in errors
            }
        )
        reasons.append(f"{len(errors)} verification error(s): {', '.join(keys)}")
    if confidence_pct < threshold:
        reasons.append(f"confidence {confidence_pct:.2f}% below threshold {threshold:.2f}%")
    if reasons:
        return DocumentStatus.NEEDS_REVIEW, "; ".join(reasons)
    return DocumentStatus.APPROVED, None


def summarize_usage(records: list[UsageRecord]) -> dict[str, Any]:
    """Per-document token and cost totals."""
    return {
        "calls": len(records),
        "input_tokens": sum(r.input_tokens for r in records),
        "output_tokens": sum(r.output_tokens for r in records),
        "cost_usd": round(sum(r.cost_usd for r in records), 6),
        "records": [r.to_dict() for r in records],
    }


@dataclass
class BatchReport:
    """Outcome of ``process_batch``."""

    processed: list[Document] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    conflicts: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)
    cancelled: bool = False
    rollback: RollbackReport | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "processed": {d.id: str(d.status) for d in self.processed},
            "skipped": list(self.skipped),
            "conflicts": list(self.conflicts),
            "failed": dict(self.failed),
            "cancelled": self.cancelled,
            "rollback": self.rollback.to_dict() if self.rollback else None,
        }


class PipelineOrchestrator:
    """Sequences the pipeline stages for one document or a batch.

    Args:
        store: Document Store.
        assessor: Quality assessor choosing the extraction route.
        engines: Extraction engine per route.
        verifier: Always-on verifier.
        schemas: Schema registry.
        config: Application configuration (thresholds, worker count).
        notifier: Receives terminal document events.
        reconciler: Optional low-confidence reconciler.
        classifier: Picks a doc type for documents that arrive without one.
        review: Opens review tasks for documents ending in ``needs_review``.
        sessions: Session manager used to complete and cancel batch runs.
        duplicates: Flags documents that repeat one of the user's earlier ones.
    """

    def __init__(
        self,
        store: DocumentStore,
        assessor: QualityAssessor,
        engines: dict[Route, ExtractionEngine],
        verifier: Verifier,
        schemas: SchemaRegistry,
        config: AppConfig,
        notifier: Notifier,
        reconciler: Reconciler | None = None,
        classifier: DocumentClassifier | None = None,
        review: ReviewWorkflow | None = None,
        sessions: SessionManager | None = None,
        duplicates: DuplicateDetector | None = None,
    ) -> None:
        self.store = store
        self.assessor = assessor
        self.engines = engines
        self.verifier = verifier
        self.schemas = schemas
        self.config = config
        self.notifier = notifier
        self.reconciler = reconciler
        self.classifier = classifier or DocumentClassifier()
        self.review = review
        self.sessions = sessions
        self.duplicates = duplicates or DuplicateDetector(store)

    def claim(self, document_id: str, session_id: str | None = None) -> Document:
        """Atomically move a document from ``pending`` to ``processing``.

        Raises:
            ConflictError: If the document is not ``pending``.
        """
        changes: dict[str, Any] = {"review_reason": None}
        if session_id is not None:
            changes["session_id"] = session_id
        document = self.store.compare_and_set_status(
            document_id, DocumentStatus.PENDING, DocumentStatus.PROCESSING, **changes
        )
        logger.debug("Claimed document %s", document_id)
        return document

    def process_document(self, document_id: str, route: Route | None = None) -> Document:
        """Claim and run one document.

        Args:
            document_id: Document to process; must be ``pending``.
            route: Explicit engine choice overriding the assessor.

        Returns:
            The document in its final status.

        Raises:
            ConflictError: If the document could not be claimed.
            StorageError: If state could not be persisted.
        """
        return self.run_claimed(self.claim(document_id), route)

    def run_claimed(self, document: Document, route: Route | None = None) -> Document:
        """Run the stages on a document already in ``processing``."""
        log = document_logger(__name__, document.id)
        try:
            status, reason, data, confidence_pct, doc_type = self._run_stages(document, route, log)
        except ValidationError as exc:
            log.warning("Rejected as invalid input: %s", exc)
            return self._finish(document, DocumentStatus.FAILED, str(exc), log)
        except StorageError:
            log.exception("Storage failure, document left in processing")
            raise
        except Exception as exc:
            log.exception("Pipeline error")
            return self._finish(
                document, DocumentStatus.NEEDS_REVIEW, f"pipeline error: {exc}", log
            )

        return self._finish(
            document,
            status,
            reason,
            log,
            extracted_data=data,
            confidence_score=confidence_pct,
            doc_type=doc_type,
        )

    def _run_stages(
        self, document: Document, route: Route | None, log: Any
    ) -> tuple[DocumentStatus, str | None, dict[str, Any], float | None, str]:
        threshold, reconcile_enabled, reconcile_threshold = self._thresholds(document.user_id)
        source = load_source(document)
        if document.content_hash is None and document.content is not None:
            document = self.store.update_document(
                document.id, content_hash=content_hash(document.content)
            )
        schema = self._schema_for(document, source.text, log)

        assessment = self.assessor.assess(source)
        self.store.save_artifact(document.id, "quality", assessment.to_dict())
        chosen = route or assessment.route
        log.info(
            "Route %s (%s%s)",
            chosen,
            assessment.rationale,
            ", overridden" if route and route != assessment.route else "",
        )

        engine = self.engines[chosen]
        try:
            result = engine.extract(source, schema)
        except ProviderError as exc:
            reason = f"extraction failed: {exc}"
            log.warning(reason)
            self.store.save_artifact(
                document.id, "extraction", {"engine": engine.name, "error": str(exc)}
            )
            return DocumentStatus.NEEDS_REVIEW, reason, {}, None, schema.doc_type
        self.store.save_artifact(document.id, "extraction", result.to_dict())

        forced: list[str] = []
        if (
            reconcile_enabled
            and self.reconciler is not None
            and self.reconciler.should_reconcile(result, reconcile_threshold)
        ):
            result = self._reconcile(document, result, schema, forced, log)

        usage = list(result.usage)
        issues: list[VerificationIssue] = []
        try:
            report = self.verifier.verify(result, schema)
            issues = report.issues
            usage.extend(report.usage)
            verification = report.to_dict()
        except StageError as exc:
            log.warning("Verification degraded: %s", exc)
            forced.append(str(exc))
            verification = {"error": str(exc)}
        duplicate = self.duplicates.check(document, result.fields)
        if duplicate is not None:
            verification["duplicate"] = duplicate.to_dict()
        self.store.save_artifact(document.id, "verification", verification)

        usage_summary = summarize_usage(usage)
        self.store.save_artifact(document.id, "usage", usage_summary)
        log.info(
            "Usage: %d call(s), %d in / %d out tokens, $%.4f",
            usage_summary["calls"],
            usage_summary["input_tokens"],
            usage_summary["output_tokens"],
            usage_summary["cost_usd"],
        )

        confidence_pct = to_percent(result.overall_confidence)
        status, reason = decide_status(confidence_pct, threshold, issues, forced)
        data = result.to_dict()
        data["issues"] = [i.to_dict() for i in issues]
        if duplicate is not None:
            data["duplicate"] = duplicate.to_dict()
        return status, reason, data, confidence_pct, schema.doc_type

    def _reconcile(
        self,
        document: Document,
        result: ExtractionResult,
        schema: DocumentSchema,
        forced: list[str],
        log: Any,
    ) -> ExtractionResult:
        try:
            reconciled = self.reconciler.reconcile(result, schema)
        except Exception as exc:
            # the reconciler never writes, so any failure leaves the first pass intact
            reason = f"reconciliation failed: {exc}"
            log.warning("%s, keeping first-pass result", reason)
            forced.append(reason)
            self.store.save_artifact(document.id, "reconciliation", {"error": str(exc)})
            return result
        self.store.save_artifact(document.id, "reconciliation", reconciled.to_dict())
        return reconciled.result

    def _thresholds(self, user_id: str) -> tuple[float, bool, float]:
        threshold = self.config.pipeline.auto_approve_threshold
        reconcile_enabled = self.config.reconciliation.enabled
        reconcile_threshold = self.config.reconciliation.threshold
        settings = self.store.get_settings(user_id)
        if settings is not None:
            if settings.auto_approve_threshold is not None:
                threshold = settings.auto_approve_threshold
            if settings.enable_reconciliation is not None:
                reconcile_enabled = settings.enable_reconciliation
            if settings.reconciliation_threshold is not None:
                reconcile_threshold = settings.reconciliation_threshold
        return threshold, reconcile_enabled, reconcile_threshold

    def _schema_for(self, document: Document, text: str, log: Any) -> DocumentSchema:
        doc_type = document.doc_type
        if not doc_type:
            classification = self.classifier.classify(document.filename, text)
            doc_type = classification.doc_type
            log.info(
                "Classified as %s (confidence %.2f)", doc_type, classification.confidence
            )
        schema = self.schemas.get(doc_type)
        schema.validate()
        return schema

    def _finish(
        self,
        document: Document,
        status: DocumentStatus,
        reason: str | None,
        log: Any,
        **changes: Any,
    ) -> Document:
        try:
            final = self.store.compare_and_set_status(
                document.id,
                DocumentStatus.PROCESSING,
                status,
                review_reason=reason,
                **changes,
            )
        except ConflictError:
            log.warning("Document left processing during the run, discarding result")
            return self.store.get_document(document.id)

        log.info(
            "Finished as %s (confidence %s)%s",
            status,
            final.confidence_score,
            f": {reason}" if reason else "",
        )
        self.notifier.notify(
            f"document.{status}",
            {
                "document_id": final.id,
                "user_id": final.user_id,
                "doc_type": final.doc_type,
                "confidence_score": final.confidence_score,
                "reason": reason,
            },
        )
        if status == DocumentStatus.NEEDS_REVIEW and self.review is not None:
            self.review.open_task(final)
        if final.session_id is not None and self.sessions is not None:
            try:
                self.sessions.complete_if_finished(final.session_id)
            except DocsenseError as exc:
                log.warning("Could not complete session %s: %s", final.session_id, exc)
        return final

    def process_batch(
        self,
        document_ids: list[str],
        session_id: str | None = None,
        token: CancellationToken | None = None,
        route: Route | None = None,
    ) -> BatchReport:
        """Process documents on a bounded worker pool.

        The cancellation token is checked before each claim and again right
        after it, so a stop that lands between the two never leaves a freshly
        claimed document behind. Once a stop is observed the remaining
        in-flight documents are rolled back and no new ones are started.

        Args:
            document_ids: Documents to process, in submission order.
            session_id: Session the run belongs to, completed when all finish.
            token: Cancellation token; defaults to the session's token.
            route: Explicit engine choice for every document.
        """
        if token is None and session_id is not None and self.sessions is not None:
            token = self.sessions.token(session_id)
        report = BatchReport()
        outcomes: dict[str, tuple[str, Any]] = {}

        def work(document_id: str) -> tuple[str, Any]:
            if token is not None and token.cancelled:
                return "skipped", None
            try:
                document = self.claim(document_id, session_id)
            except ConflictError as exc:
                return "conflict", str(exc)
            except DocsenseError as exc:
                return "failed", str(exc)
            if token is not None and token.cancelled:
                self._release(document_id)
                return "skipped", None
            try:
                return "processed", self.run_claimed(document, route)
            except DocsenseError as exc:
                return "failed", str(exc)

        with ThreadPoolExecutor(
            max_workers=self.config.pipeline.max_workers, thread_name_prefix="pipeline"
        ) as pool:
            for document_id, outcome in zip(document_ids, pool.map(work, document_ids)):
                outcomes[document_id] = outcome

        for document_id in document_ids:
            kind, value = outcomes[document_id]
            if kind == "processed":
                report.processed.append(value)
            elif kind == "skipped":
                report.skipped.append(document_id)
            elif kind == "conflict":
                report.conflicts.append(document_id)
            else:
                report.failed[document_id] = value

        report.cancelled = token is not None and token.cancelled
        if report.cancelled and self.sessions is not None:
            report.rollback = self.sessions.cancel_batch(document_ids)
        elif session_id is not None and self.sessions is not None:
            self.sessions.complete_if_finished(session_id)

        logger.info(
            "Batch of %d: %d processed, %d skipped, %d conflict(s), %d failed%s",
            len(document_ids),
            len(report.processed),
            len(report.skipped),
            len(report.conflicts),
            len(report.failed),
            " (cancelled)" if report.cancelled else "",
        )
        return report

    def _release(self, document_id: str) -> None:
        try:
            self.store.compare_and_set_status(
                document_id, DocumentStatus.PROCESSING, DocumentStatus.PENDING
            )
        except ConflictError:
            # already rolled back by the stop
            pass
