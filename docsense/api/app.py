"""FastAPI application for the adaptive extraction pipeline.

Thin HTTP surface over the core operations: document upload and
processing, batch sessions with cancellation, review task transitions and
SLA evaluation. Domain errors map to HTTP status codes in one place.
"""

import shutil
import uuid
from typing import Annotated

import torch
from fastapi import BackgroundTasks, Depends, FastAPI, File, Form, Query, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from docsense import __version__
from docsense.errors import (
    AuthorizationError,
    ConflictError,
    DocsenseError,
    NotFoundError,
    ValidationError,
)
from docsense.ingest.loader import content_hash, detect_kind
from docsense.quality.assessor import Route
from docsense.records import Document
from docsense.services import Services, get_services
from docsense.utils.config import UserSettings
from docsense.utils.logger import get_logger

from .schemas import (
    CancelBatchRequest,
    DocumentResponse,
    HealthResponse,
    ReviewEventResponse,
    ReviewTaskResponse,
    RollbackResponse,
    SessionRequest,
    SessionResponse,
    SlaEvaluationResponse,
    SlaRuleRequest,
    SlaRuleResponse,
    TransitionRequest,
)

logger = get_logger(__name__)

app = FastAPI(
    title="Docsense Extraction API",
    description="Adaptive extraction of delivery notes, invoices and spreadsheets",
    version=__version__,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

ServicesDep = Annotated[Services, Depends(get_services)]

_ERROR_STATUS: list[tuple[type[DocsenseError], int]] = [
    (ValidationError, 422),
    (NotFoundError, 404),
    (ConflictError, 409),
    (AuthorizationError, 403),
]


@app.exception_handler(DocsenseError)
async def handle_domain_error(request: Request, exc: DocsenseError) -> JSONResponse:
    """Map domain errors to HTTP status codes."""
    status_code = 500
    for error_type, code in _ERROR_STATUS:
        if isinstance(exc, error_type):
            status_code = code
            break
    if status_code == 500:
        logger.error("Unhandled domain error on %s: %s", request.url.path, exc)
    return JSONResponse(
        status_code=status_code,
        content={"error": type(exc).__name__, "detail": str(exc)},
    )


@app.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """Return system health status."""
    return HealthResponse(
        status="healthy",
        version=__version__,
        tesseract_available=shutil.which("tesseract") is not None,
        gpu_available=torch.cuda.is_available(),
    )


@app.post("/documents", response_model=DocumentResponse, status_code=201)
def upload_document(
    services: ServicesDep,
    file: Annotated[UploadFile, File(...)],
    user_id: Annotated[str, Form()],
    doc_type: Annotated[str | None, Form()] = None,
    domain: Annotated[str | None, Form()] = None,
) -> DocumentResponse:
    """Store an uploaded file as a ``pending`` document.

    Args:
        file: Uploaded PDF, image, spreadsheet or text file.
        user_id: Owner of the document.
        doc_type: Target schema; classified at processing time if omitted.
        domain: Business vertical, kept for reporting.
    """
    filename = file.filename or "upload"
    content = file.file.read()
    if not content:
        raise ValidationError("uploaded file is empty")
    detect_kind(filename, content)

    document = services.store.add_document(
        Document(
            id=uuid.uuid4().hex,
            user_id=user_id,
            filename=filename,
            doc_type=doc_type,
            domain=domain,
            content=content,
            content_hash=content_hash(content),
        )
    )
    logger.info("Stored %s as document %s for %s", filename, document.id, user_id)
    return DocumentResponse.from_document(document)


@app.get("/documents/{document_id}", response_model=DocumentResponse)
def get_document(document_id: str, services: ServicesDep) -> DocumentResponse:
    """Return a document with its extraction payload and artifacts."""
    return DocumentResponse.from_document(services.store.get_document(document_id))


@app.post("/documents/{document_id}/process", response_model=DocumentResponse)
def process_document(
    document_id: str,
    services: ServicesDep,
    route: Annotated[Route | None, Query()] = None,
) -> DocumentResponse:
    """Run the pipeline on one pending document.

    Args:
        document_id: Document to process.
        route: Explicit engine choice overriding the quality assessor.
    """
    document = services.orchestrator.process_document(document_id, route)
    return DocumentResponse.from_document(document)


@app.post("/sessions", response_model=SessionResponse, status_code=201)
def start_session(
    body: SessionRequest,
    services: ServicesDep,
    background_tasks: BackgroundTasks,
) -> SessionResponse:
    """Start a batch session and, unless ``run`` is false, process it in the background."""
    session = services.sessions.start(body.user_id, body.document_ids)
    if body.run:
        background_tasks.add_task(
            services.orchestrator.process_batch, sorted(session.document_ids), session.id
        )
    return SessionResponse.from_session(session)


@app.get("/sessions/{session_id}", response_model=SessionResponse)
def get_session(session_id: str, services: ServicesDep) -> SessionResponse:
    """Return a session's current status."""
    return SessionResponse.from_session(services.sessions.get(session_id))


@app.post("/sessions/{session_id}/stop", response_model=RollbackResponse)
def stop_session(session_id: str, services: ServicesDep) -> RollbackResponse:
    """Stop a session and roll its in-flight documents back to pending."""
    return RollbackResponse.from_report(services.sessions.stop(session_id))


@app.post("/batches/cancel", response_model=RollbackResponse)
def cancel_batch(body: CancelBatchRequest, services: ServicesDep) -> RollbackResponse:
    """Roll back an explicit set of in-flight documents."""
    return RollbackResponse.from_report(services.sessions.cancel_batch(body.document_ids))


@app.post("/review/tasks/{task_id}/transition", response_model=ReviewTaskResponse)
def transition_review_task(
    task_id: str, body: TransitionRequest, services: ServicesDep
) -> ReviewTaskResponse:
    """Approve, reject, request changes on or re-assign a review task."""
    task = services.review.transition(
        task_id, body.next_status, body.actor, note=body.note, payload=body.payload
    )
    return ReviewTaskResponse.from_task(task)


@app.get("/review/tasks/{task_id}/history", response_model=list[ReviewEventResponse])
def review_history(task_id: str, services: ServicesDep) -> list[ReviewEventResponse]:
    """Return a review task's transition log."""
    return [ReviewEventResponse.from_event(e) for e in services.review.history(task_id)]


@app.get("/sla/{user_id}", response_model=list[SlaEvaluationResponse])
def evaluate_sla(user_id: str, services: ServicesDep) -> list[SlaEvaluationResponse]:
    """Evaluate SLA risk for a user's open review tasks."""
    return [SlaEvaluationResponse.from_evaluation(e) for e in services.sla.evaluate(user_id)]


@app.put("/sla/rules", response_model=SlaRuleResponse)
def put_sla_rule(body: SlaRuleRequest, services: ServicesDep) -> SlaRuleResponse:
    """Create or replace the SLA rule for a user and document type."""
    rule = services.sla.set_rule(
        body.user_id, body.doc_type, body.warning_minutes, body.breach_minutes, body.enabled
    )
    return SlaRuleResponse.from_rule(rule)


@app.put("/users/{user_id}/settings", response_model=UserSettings)
def put_settings(user_id: str, body: UserSettings, services: ServicesDep) -> UserSettings:
    """Save a user's auto-approve and reconciliation overrides."""
    if body.user_id != user_id:
        raise ValidationError("user_id in the body does not match the path")
    return services.store.save_settings(body)
