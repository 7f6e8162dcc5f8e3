"""Processing sessions and the batch circuit breaker.

A session groups one user's batch run. Stopping it flips the persisted
status first and then rolls every document still ``processing`` back to
``pending``. Workers poll the status at document boundaries through a
``CancellationToken``, so a stop issued from another process is honoured
as soon as the next document would be claimed.
"""

import threading
import uuid
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from docsense.errors import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    PartialRollbackError,
    StorageError,
    ValidationError,
)
from docsense.notifications import Notifier
from docsense.records import (
    TERMINAL_STATUSES,
    DocumentStatus,
    ProcessingSession,
    SessionStatus,
    utcnow,
)
from docsense.store.base import DocumentStore
from docsense.utils.logger import get_logger

logger = get_logger(__name__)


@dataclass
class RollbackReport:
    """Outcome of a cancellation: which documents went back to ``pending``."""

    rolled_back: list[str] = field(default_factory=list)
    not_rolled_back: list[str] = field(default_factory=list)
    partial_error: PartialRollbackError | None = None

    @property
    def count(self) -> int:
        return len(self.rolled_back)

    def to_dict(self) -> dict[str, Any]:
        return {
            "rolled_back": self.count,
            "rolled_back_ids": list(self.rolled_back),
            "not_rolled_back": list(self.not_rolled_back),
            "error": str(self.partial_error) if self.partial_error else None,
        }


class CancellationToken:
    """Cooperative cancellation flag, checked at document boundaries.

    Args:
        store: Store to poll for the session status.
        session_id: Session to watch; ``None`` for a local-only token.
    """

    def __init__(self, store: DocumentStore | None = None, session_id: str | None = None) -> None:
        self._store = store
        self._session_id = session_id
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        if self._store is not None and self._session_id is not None:
            if self._store.get_session(self._session_id).status == SessionStatus.STOPPED:
                self._event.set()
                return True
        return False


class SessionManager:
    """Starts, stops and completes processing sessions.

    Args:
        store: Document Store holding sessions and documents.
        notifier: Receives ``session.stopped`` and ``session.completed``.
    """

    def __init__(self, store: DocumentStore, notifier: Notifier) -> None:
        self.store = store
        self.notifier = notifier
        self._tokens: dict[str, CancellationToken] = {}
        self._lock = threading.Lock()

    def start(self, user_id: str, document_ids: Iterable[str]) -> ProcessingSession:
        """Open a session over ``document_ids``.

        Raises:
            ValidationError: If no documents are given.
            NotFoundError: If a document does not exist.
            AuthorizationError: If a document belongs to another user.
            ConflictError: If the user already has an active session.
        """
        ids = frozenset(document_ids)
        if not ids:
            raise ValidationError("a session needs at least one document")
        documents = self.store.list_documents(ids=ids)
        missing = ids - {d.id for d in documents}
        if missing:
            raise NotFoundError(f"unknown document(s): {', '.join(sorted(missing))}")
        for document in documents:
            if document.user_id != user_id:
                raise AuthorizationError(f"document {document.id} belongs to another user")

        session = self.store.create_session(
            ProcessingSession(id=uuid.uuid4().hex, user_id=user_id, document_ids=ids)
        )
        for document_id in sorted(ids):
            self.store.update_document(document_id, session_id=session.id)
        logger.info("Started session %s for %s with %d document(s)", session.id, user_id, len(ids))
        return session

    def get(self, session_id: str) -> ProcessingSession:
        return self.store.get_session(session_id)

    def token(self, session_id: str) -> CancellationToken:
        """The shared cancellation token for a session."""
        with self._lock:
            token = self._tokens.get(session_id)
            if token is None:
                token = CancellationToken(self.store, session_id)
                self._tokens[session_id] = token
            return token

    def stop(self, session_id: str) -> RollbackReport:
        """Stop a session and roll its in-flight documents back to ``pending``.

        Stopping an already stopped session repeats the rollback.

        Raises:
            NotFoundError: If the session does not exist.
            ConflictError: If the session already completed.
        """
        session = self.store.get_session(session_id)
        if session.status == SessionStatus.ACTIVE:
            try:
                session = self.store.update_session(
                    session_id,
                    SessionStatus.ACTIVE,
                    status=SessionStatus.STOPPED,
                    stopped_at=utcnow(),
                )
            except ConflictError:
                session = self.store.get_session(session_id)
        if session.status == SessionStatus.COMPLETED:
            raise ConflictError(f"session {session_id} already completed")

        with self._lock:
            token = self._tokens.get(session_id)
        if token is not None:
            token.cancel()

        report = self.cancel_batch(session.document_ids)
        self.notifier.notify(
            "session.stopped",
            {"session_id": session_id, "user_id": session.user_id, **report.to_dict()},
        )
        return report

    def cancel_batch(self, document_ids: Iterable[str]) -> RollbackReport:
        """Roll every listed document that is ``processing`` back to ``pending``.

        Documents that fail to roll back are reported, not raised.
        """
        report = RollbackReport()
        in_flight = self.store.list_documents(status=DocumentStatus.PROCESSING, ids=document_ids)
        for document in in_flight:
            try:
                self.store.compare_and_set_status(
                    document.id,
                    DocumentStatus.PROCESSING,
                    DocumentStatus.PENDING,
                    review_reason=None,
                )
            except ConflictError:
                logger.debug("Document %s finished before rollback", document.id)
                continue
            except (StorageError, NotFoundError) as exc:
                logger.warning("Could not roll back document %s: %s", document.id, exc)
                report.not_rolled_back.append(document.id)
                continue
            report.rolled_back.append(document.id)

        if report.not_rolled_back:
            report.partial_error = PartialRollbackError(report)
            logger.warning(str(report.partial_error))
        logger.info("Rolled back %d document(s) to pending", report.count)
        return report

    def complete_if_finished(self, session_id: str) -> ProcessingSession:
        """Mark an active session completed once all its documents are terminal."""
        session = self.store.get_session(session_id)
        if session.status != SessionStatus.ACTIVE:
            return session
        documents = self.store.list_documents(ids=session.document_ids)
        if any(d.status not in TERMINAL_STATUSES for d in documents):
            return session
        try:
            session = self.store.update_session(
                session_id,
                SessionStatus.ACTIVE,
                status=SessionStatus.COMPLETED,
                completed_at=utcnow(),
            )
        except ConflictError:
            return self.store.get_session(session_id)
        with self._lock:
            self._tokens.pop(session_id, None)
        logger.info("Session %s completed", session_id)
        self.notifier.notify(
            "session.completed", {"session_id": session_id, "user_id": session.user_id}
        )
        return session
