"""Pydantic request/response schemas for the FastAPI endpoints."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from docsense.pipeline.session import RollbackReport
from docsense.records import (
    Document,
    DocumentStatus,
    ProcessingSession,
    ReviewEvent,
    ReviewStatus,
    ReviewTask,
    RiskLevel,
    SessionStatus,
    SlaEvaluation,
    SlaRule,
)


class HealthResponse(BaseModel):
    """Response schema for the health check endpoint."""

    status: str
    version: str
    tesseract_available: bool
    gpu_available: bool


class DocumentResponse(BaseModel):
    """A document and its extraction payload."""

    id: str
    user_id: str
    filename: str
    status: DocumentStatus
    doc_type: str | None = None
    domain: str | None = None
    confidence_score: float | None = None
    review_reason: str | None = None
    session_id: str | None = None
    content_hash: str | None = None
    extracted_data: dict[str, Any] = Field(default_factory=dict)
    artifacts: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_document(cls, document: Document) -> "DocumentResponse":
        return cls(
            id=document.id,
            user_id=document.user_id,
            filename=document.filename,
            status=document.status,
            doc_type=document.doc_type,
            domain=document.domain,
            confidence_score=document.confidence_score,
            review_reason=document.review_reason,
            session_id=document.session_id,
            content_hash=document.content_hash,
            extracted_data=document.extracted_data,
            artifacts=document.artifacts,
            created_at=document.created_at,
            updated_at=document.updated_at,
        )


class SessionRequest(BaseModel):
    """Start a batch run over a user's documents."""

    user_id: str
    document_ids: list[str] = Field(min_length=1)
    run: bool = True


class SessionResponse(BaseModel):
    """A processing session."""

    id: str
    user_id: str
    document_ids: list[str]
    status: SessionStatus
    started_at: datetime
    stopped_at: datetime | None = None
    completed_at: datetime | None = None

    @classmethod
    def from_session(cls, session: ProcessingSession) -> "SessionResponse":
        return cls(
            id=session.id,
            user_id=session.user_id,
            document_ids=sorted(session.document_ids),
            status=session.status,
            started_at=session.started_at,
            stopped_at=session.stopped_at,
            completed_at=session.completed_at,
        )


class CancelBatchRequest(BaseModel):
    """Administrative cancel over an explicit document set."""

    document_ids: list[str] = Field(min_length=1)


class RollbackResponse(BaseModel):
    """How many in-flight documents went back to pending."""

    rolled_back: int
    rolled_back_ids: list[str]
    not_rolled_back: list[str]
    error: str | None = None

    @classmethod
    def from_report(cls, report: RollbackReport) -> "RollbackResponse":
        return cls(**report.to_dict())


class TransitionRequest(BaseModel):
    """Move a review task to a new status."""

    next_status: ReviewStatus
    actor: str
    note: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)


class ReviewTaskResponse(BaseModel):
    """A review task."""

    id: str
    document_id: str
    owner_id: str
    doc_type: str | None = None
    assigned_to: str | None = None
    status: ReviewStatus
    due_at: datetime | None = None
    notes: str | None = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_task(cls, task: ReviewTask) -> "ReviewTaskResponse":
        return cls(
            id=task.id,
            document_id=task.document_id,
            owner_id=task.owner_id,
            doc_type=task.doc_type,
            assigned_to=task.assigned_to,
            status=task.status,
            due_at=task.due_at,
            notes=task.notes,
            created_at=task.created_at,
            updated_at=task.updated_at,
        )


class ReviewEventResponse(BaseModel):
    """One entry of a review task's transition log."""

    from_status: ReviewStatus | None = None
    to_status: ReviewStatus
    actor: str
    at: datetime
    note: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_event(cls, event: ReviewEvent) -> "ReviewEventResponse":
        return cls(
            from_status=event.from_status,
            to_status=event.to_status,
            actor=event.actor,
            at=event.at,
            note=event.note,
            payload=event.payload,
        )


class SlaEvaluationResponse(BaseModel):
    """Point-in-time SLA risk of one open review task."""

    task_id: str
    document_id: str
    doc_type: str | None = None
    elapsed_minutes: int
    risk_level: RiskLevel
    warning_minutes: int | None = None
    breach_minutes: int | None = None

    @classmethod
    def from_evaluation(cls, evaluation: SlaEvaluation) -> "SlaEvaluationResponse":
        return cls(
            task_id=evaluation.task_id,
            document_id=evaluation.document_id,
            doc_type=evaluation.doc_type,
            elapsed_minutes=evaluation.elapsed_minutes,
            risk_level=evaluation.risk_level,
            warning_minutes=evaluation.warning_minutes,
            breach_minutes=evaluation.breach_minutes,
        )


class SlaRuleRequest(BaseModel):
    """Create or replace an SLA rule."""

    user_id: str
    doc_type: str
    warning_minutes: int
    breach_minutes: int
    enabled: bool = True


class SlaRuleResponse(SlaRuleRequest):
    """A stored SLA rule."""

    @classmethod
    def from_rule(cls, rule: SlaRule) -> "SlaRuleResponse":
        return cls(
            user_id=rule.user_id,
            doc_type=rule.doc_type,
            warning_minutes=rule.warning_minutes,
            breach_minutes=rule.breach_minutes,
            enabled=rule.enabled,
        )
