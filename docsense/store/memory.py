"""In-process Document Store guarded by a single lock."""

import copy
import threading
from collections.abc import Iterable
from dataclasses import replace
from typing import Any

from docsense.errors import ConflictError, NotFoundError
from docsense.records import (
    Document,
    DocumentStatus,
    ProcessingSession,
    ReviewEvent,
    ReviewStatus,
    ReviewTask,
    SessionStatus,
    SlaRule,
    ensure_transition,
    utcnow,
)
from docsense.utils.config import UserSettings
from docsense.utils.logger import get_logger

from .base import DocumentStore, check_document_changes

logger = get_logger(__name__)


class InMemoryDocumentStore(DocumentStore):
    """Dictionary-backed store for tests and single-process runs."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._documents: dict[str, Document] = {}
        self._sessions: dict[str, ProcessingSession] = {}
        self._tasks: dict[str, ReviewTask] = {}
        self._events: dict[str, list[ReviewEvent]] = {}
        self._sla_rules: dict[tuple[str, str], SlaRule] = {}
        self._settings: dict[str, UserSettings] = {}

    def add_document(self, document: Document) -> Document:
        with self._lock:
            if document.id in self._documents:
                raise ConflictError(f"document {document.id} already exists")
            self._documents[document.id] = copy.deepcopy(document)
            return copy.deepcopy(document)

    def get_document(self, document_id: str) -> Document:
        with self._lock:
            return copy.deepcopy(self._document(document_id))

    def list_documents(
        self,
        status: DocumentStatus | None = None,
        user_id: str | None = None,
        ids: Iterable[str] | None = None,
    ) -> list[Document]:
        wanted = set(ids) if ids is not None else None
        with self._lock:
            found = [
                doc
                for doc in self._documents.values()
                if (status is None or doc.status == status)
                and (user_id is None or doc.user_id == user_id)
                and (wanted is None or doc.id in wanted)
            ]
            found.sort(key=lambda d: d.created_at)
            return copy.deepcopy(found)

    def find_by_content_hash(self, user_id: str, content_hash: str) -> list[Document]:
        with self._lock:
            found = [
                doc
                for doc in self._documents.values()
                if doc.user_id == user_id and doc.content_hash == content_hash
            ]
            found.sort(key=lambda d: d.created_at)
            return copy.deepcopy(found)

    def compare_and_set_status(
        self,
        document_id: str,
        expected: DocumentStatus,
        target: DocumentStatus,
        **changes: Any,
    ) -> Document:
        ensure_transition(expected, target)
        check_document_changes(changes)
        with self._lock:
            current = self._document(document_id)
            if current.status != expected:
                raise ConflictError(
                    f"document {document_id} is {current.status}, expected {expected}"
                )
            updated = replace(
                current,
                status=target,
                updated_at=utcnow(),
                **copy.deepcopy(changes),
            )
            self._documents[document_id] = updated
            return copy.deepcopy(updated)

    def update_document(self, document_id: str, **changes: Any) -> Document:
        check_document_changes(changes)
        with self._lock:
            updated = replace(
                self._document(document_id), updated_at=utcnow(), **copy.deepcopy(changes)
            )
            self._documents[document_id] = updated
            return copy.deepcopy(updated)

    def save_artifact(self, document_id: str, stage: str, payload: Any) -> None:
        with self._lock:
            document = self._document(document_id)
            document.artifacts[stage] = copy.deepcopy(payload)
            document.updated_at = utcnow()

    def delete_document(self, document_id: str) -> None:
        with self._lock:
            self._document(document_id)
            del self._documents[document_id]
            for task_id in [t.id for t in self._tasks.values() if t.document_id == document_id]:
                del self._tasks[task_id]
                self._events.pop(task_id, None)

    def _document(self, document_id: str) -> Document:
        try:
            return self._documents[document_id]
        except KeyError:
            raise NotFoundError(f"document {document_id} not found") from None

    def create_session(self, session: ProcessingSession) -> ProcessingSession:
        with self._lock:
            if session.status == SessionStatus.ACTIVE and self._active(session.user_id):
                raise ConflictError(f"user {session.user_id} already has an active session")
            self._sessions[session.id] = copy.deepcopy(session)
            return copy.deepcopy(session)

    def get_session(self, session_id: str) -> ProcessingSession:
        with self._lock:
            return copy.deepcopy(self._session(session_id))

    def active_session(self, user_id: str) -> ProcessingSession | None:
        with self._lock:
            return copy.deepcopy(self._active(user_id))

    def update_session(
        self, session_id: str, expected: SessionStatus, **changes: Any
    ) -> ProcessingSession:
        with self._lock:
            current = self._session(session_id)
            if current.status != expected:
                raise ConflictError(
                    f"session {session_id} is {current.status}, expected {expected}"
                )
            updated = replace(current, **changes)
            self._sessions[session_id] = updated
            return copy.deepcopy(updated)

    def _session(self, session_id: str) -> ProcessingSession:
        try:
            return self._sessions[session_id]
        except KeyError:
            raise NotFoundError(f"session {session_id} not found") from None

    def _active(self, user_id: str) -> ProcessingSession | None:
        for session in self._sessions.values():
            if session.user_id == user_id and session.status == SessionStatus.ACTIVE:
                return session
        return None

    def add_task(self, task: ReviewTask) -> ReviewTask:
        with self._lock:
            if task.id in self._tasks:
                raise ConflictError(f"review task {task.id} already exists")
            self._tasks[task.id] = copy.deepcopy(task)
            return copy.deepcopy(task)

    def get_task(self, task_id: str) -> ReviewTask:
        with self._lock:
            return copy.deepcopy(self._task(task_id))

    def task_for_document(self, document_id: str) -> ReviewTask | None:
        with self._lock:
            tasks = [t for t in self._tasks.values() if t.document_id == document_id]
            if not tasks:
                return None
            return copy.deepcopy(max(tasks, key=lambda t: t.created_at))

    def list_tasks(
        self,
        owner_id: str | None = None,
        statuses: Iterable[ReviewStatus] | None = None,
    ) -> list[ReviewTask]:
        wanted = set(statuses) if statuses is not None else None
        with self._lock:
            found = [
                task
                for task in self._tasks.values()
                if (owner_id is None or task.owner_id == owner_id)
                and (wanted is None or task.status in wanted)
            ]
            found.sort(key=lambda t: t.created_at)
            return copy.deepcopy(found)

    def update_task(
        self, task_id: str, expected: ReviewStatus, **changes: Any
    ) -> ReviewTask:
        with self._lock:
            current = self._task(task_id)
            if current.status != expected:
                raise ConflictError(f"review task {task_id} is {current.status}, expected {expected}")
            updated = replace(current, updated_at=utcnow(), **changes)
            self._tasks[task_id] = updated
            return copy.deepcopy(updated)

    def _task(self, task_id: str) -> ReviewTask:
        try:
            return self._tasks[task_id]
        except KeyError:
            raise NotFoundError(f"review task {task_id} not found") from None

    def add_event(self, event: ReviewEvent) -> None:
        with self._lock:
            self._events.setdefault(event.task_id, []).append(copy.deepcopy(event))

    def list_events(self, task_id: str) -> list[ReviewEvent]:
        with self._lock:
            return copy.deepcopy(self._events.get(task_id, []))

    def upsert_sla_rule(self, rule: SlaRule) -> SlaRule:
        with self._lock:
            self._sla_rules[(rule.user_id, rule.doc_type)] = copy.deepcopy(rule)
            return copy.deepcopy(rule)

    def get_sla_rule(self, user_id: str, doc_type: str) -> SlaRule | None:
        with self._lock:
            return copy.deepcopy(self._sla_rules.get((user_id, doc_type)))

    def list_sla_rules(self, user_id: str) -> list[SlaRule]:
        with self._lock:
            return copy.deepcopy([r for (uid, _), r in self._sla_rules.items() if uid == user_id])

    def get_settings(self, user_id: str) -> UserSettings | None:
        with self._lock:
            settings = self._settings.get(user_id)
            return settings.model_copy() if settings is not None else None

    def save_settings(self, settings: UserSettings) -> UserSettings:
        with self._lock:
            self._settings[settings.user_id] = settings.model_copy()
            return settings.model_copy()
