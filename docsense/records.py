"""Persisted records shared by the pipeline, session and review subsystems.

The Document Store is the single source of truth for these records; every
component works on copies returned by the store and writes changes back
through it.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import StrEnum
from typing import Any

from docsense.errors import InvalidTransitionError


def utcnow() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


class DocumentStatus(StrEnum):
    """Lifecycle status of a document."""

    PENDING = "pending"
    PROCESSING = "processing"
    NEEDS_REVIEW = "needs_review"
    APPROVED = "approved"
    REJECTED = "rejected"
    FAILED = "failed"


# processing -> pending is the rollback edge, used only by session cancellation.
ALLOWED_TRANSITIONS: dict[DocumentStatus, frozenset[DocumentStatus]] = {
    DocumentStatus.PENDING: frozenset({DocumentStatus.PROCESSING}),
    DocumentStatus.PROCESSING: frozenset(
        {
            DocumentStatus.APPROVED,
            DocumentStatus.NEEDS_REVIEW,
            DocumentStatus.FAILED,
            DocumentStatus.PENDING,
        }
    ),
    DocumentStatus.NEEDS_REVIEW: frozenset(
        {DocumentStatus.APPROVED, DocumentStatus.REJECTED}
    ),
    DocumentStatus.REJECTED: frozenset({DocumentStatus.NEEDS_REVIEW}),
    DocumentStatus.FAILED: frozenset({DocumentStatus.PENDING}),
    DocumentStatus.APPROVED: frozenset(),
}

TERMINAL_STATUSES = frozenset(
    {
        DocumentStatus.NEEDS_REVIEW,
        DocumentStatus.APPROVED,
        DocumentStatus.REJECTED,
        DocumentStatus.FAILED,
    }
)


def ensure_transition(current: DocumentStatus, target: DocumentStatus) -> None:
    """Raise ``InvalidTransitionError`` unless ``current -> target`` is an edge.

    Args:
        current: Status the document is in.
        target: Requested status.
    """
    if target not in ALLOWED_TRANSITIONS[current]:
        raise InvalidTransitionError(
            f"document status cannot move from {current} to {target}"
        )


@dataclass
class Document:
    """A document and its extraction payload."""

    id: str
    user_id: str
    filename: str
    status: DocumentStatus = DocumentStatus.PENDING
    doc_type: str | None = None
    domain: str | None = None
    extracted_data: dict[str, Any] = field(default_factory=dict)
    confidence_score: float | None = None
    artifacts: dict[str, Any] = field(default_factory=dict)
    review_reason: str | None = None
    session_id: str | None = None
    content: bytes | None = None
    storage_path: str | None = None
    content_hash: str | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


class SessionStatus(StrEnum):
    """Status of a processing session."""

    ACTIVE = "active"
    STOPPED = "stopped"
    COMPLETED = "completed"


@dataclass
class ProcessingSession:
    """A batch run over a fixed set of documents for one user."""

    id: str
    user_id: str
    document_ids: frozenset[str]
    status: SessionStatus = SessionStatus.ACTIVE
    started_at: datetime = field(default_factory=utcnow)
    stopped_at: datetime | None = None
    completed_at: datetime | None = None


class ReviewStatus(StrEnum):
    """Status of a human review task."""

    ASSIGNED = "assigned"
    APPROVED = "approved"
    REJECTED = "rejected"
    CHANGES_REQUESTED = "changes_requested"


REVIEW_TRANSITIONS: dict[ReviewStatus, frozenset[ReviewStatus]] = {
    ReviewStatus.ASSIGNED: frozenset(
        {
            ReviewStatus.APPROVED,
            ReviewStatus.REJECTED,
            ReviewStatus.CHANGES_REQUESTED,
        }
    ),
    ReviewStatus.REJECTED: frozenset({ReviewStatus.ASSIGNED}),
    ReviewStatus.CHANGES_REQUESTED: frozenset({ReviewStatus.ASSIGNED}),
    ReviewStatus.APPROVED: frozenset(),
}

OPEN_REVIEW_STATUSES = frozenset({ReviewStatus.ASSIGNED, ReviewStatus.CHANGES_REQUESTED})


@dataclass
class ReviewTask:
    """Human review task for one document.

    ``owner_id`` is the document owner; ``assigned_to`` is the reviewer, if any.
    """

    id: str
    document_id: str
    owner_id: str
    doc_type: str | None = None
    assigned_to: str | None = None
    status: ReviewStatus = ReviewStatus.ASSIGNED
    due_at: datetime | None = None
    notes: str | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class ReviewEvent:
    """One entry in a review task's transition log."""

    task_id: str
    from_status: ReviewStatus | None
    to_status: ReviewStatus
    actor: str
    at: datetime = field(default_factory=utcnow)
    note: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass
class SlaRule:
    """Review deadline rule for a ``(user_id, doc_type)`` pair."""

    user_id: str
    doc_type: str
    warning_minutes: int
    breach_minutes: int
    enabled: bool = True


class RiskLevel(StrEnum):
    """SLA risk classification of an open review task."""

    OK = "ok"
    WARNING = "warning"
    BREACH = "breach"


@dataclass
class SlaEvaluation:
    """Point-in-time SLA risk of one open review task."""

    task_id: str
    document_id: str
    doc_type: str | None
    elapsed_minutes: int
    risk_level: RiskLevel
    warning_minutes: int | None = None
    breach_minutes: int | None = None
