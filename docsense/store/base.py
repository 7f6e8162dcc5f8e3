"""Document Store interface.

The store is the only state shared between pipeline workers, sessions and
the review workflow. Every status change goes through a compare-and-set on
the current status, which is what makes claims and cancellation safe across
threads and processes.
"""

from abc import ABC, abstractmethod
from collections.abc import Iterable
from typing import Any

from docsense.records import (
    Document,
    DocumentStatus,
    ProcessingSession,
    ReviewEvent,
    ReviewStatus,
    ReviewTask,
    SessionStatus,
    SlaRule,
)
from docsense.utils.config import UserSettings

# Fields that may only change through compare_and_set_status.
GUARDED_DOCUMENT_FIELDS = frozenset({"id", "status", "user_id", "created_at"})


class DocumentStore(ABC):
    """Persistence for documents, sessions, review tasks and settings.

    All getters return copies; mutating a returned record has no effect until
    it is written back through one of the update methods.
    """

    # -- documents ---------------------------------------------------------

    @abstractmethod
    def add_document(self, document: Document) -> Document:
        """Insert a new document. Raises ``ConflictError`` if the id exists."""

    @abstractmethod
    def get_document(self, document_id: str) -> Document:
        """Raises ``NotFoundError`` if the document does not exist."""

    @abstractmethod
    def list_documents(
        self,
        status: DocumentStatus | None = None,
        user_id: str | None = None,
        ids: Iterable[str] | None = None,
    ) -> list[Document]:
        """Documents matching every given filter, oldest first."""

    @abstractmethod
    def find_by_content_hash(self, user_id: str, content_hash: str) -> list[Document]:
        """The user's documents with identical content, oldest first."""

    @abstractmethod
    def compare_and_set_status(
        self,
        document_id: str,
        expected: DocumentStatus,
        target: DocumentStatus,
        **changes: Any,
    ) -> Document:
        """Move a document from ``expected`` to ``target`` atomically.

        Args:
            document_id: Document to update.
            expected: Status the caller believes the document is in.
            target: New status; must be an allowed edge from ``expected``.
            **changes: Other document fields written in the same update.

        Raises:
            InvalidTransitionError: If ``expected -> target`` is not an edge.
            ConflictError: If the stored status is not ``expected``.
            NotFoundError: If the document does not exist.
        """

    @abstractmethod
    def update_document(self, document_id: str, **changes: Any) -> Document:
        """Write non-status fields."""

    @abstractmethod
    def save_artifact(self, document_id: str, stage: str, payload: Any) -> None:
        """Persist one stage's artifact under ``artifacts[stage]``."""

    @abstractmethod
    def delete_document(self, document_id: str) -> None:
        """Remove a document and its review tasks."""

    # -- sessions ----------------------------------------------------------

    @abstractmethod
    def create_session(self, session: ProcessingSession) -> ProcessingSession:
        """Insert a session. Raises ``ConflictError`` if the user has an active one."""

    @abstractmethod
    def get_session(self, session_id: str) -> ProcessingSession:
        """Raises ``NotFoundError`` if the session does not exist."""

    @abstractmethod
    def active_session(self, user_id: str) -> ProcessingSession | None:
        """The user's active session, if any."""

    @abstractmethod
    def update_session(
        self, session_id: str, expected: SessionStatus, **changes: Any
    ) -> ProcessingSession:
        """Update a session whose status is still ``expected``.

        Raises:
            ConflictError: If the stored status differs.
        """

    # -- review tasks ------------------------------------------------------

    @abstractmethod
    def add_task(self, task: ReviewTask) -> ReviewTask:
        """Insert a review task."""

    @abstractmethod
    def get_task(self, task_id: str) -> ReviewTask:
        """Raises ``NotFoundError`` if the task does not exist."""

    @abstractmethod
    def task_for_document(self, document_id: str) -> ReviewTask | None:
        """The most recent task for a document, if any."""

    @abstractmethod
    def list_tasks(
        self,
        owner_id: str | None = None,
        statuses: Iterable[ReviewStatus] | None = None,
    ) -> list[ReviewTask]:
        """Tasks matching every given filter, oldest first."""

    @abstractmethod
    def update_task(
        self, task_id: str, expected: ReviewStatus, **changes: Any
    ) -> ReviewTask:
        """Update a task whose status is still ``expected``.

        Raises:
            ConflictError: If the stored status differs.
        """

    @abstractmethod
    def add_event(self, event: ReviewEvent) -> None:
        """Append to a task's transition log."""

    @abstractmethod
    def list_events(self, task_id: str) -> list[ReviewEvent]:
        """A task's transition log, oldest first."""

    # -- SLA rules and settings ---------------------------------------------

    @abstractmethod
    def upsert_sla_rule(self, rule: SlaRule) -> SlaRule:
        """Insert or replace the rule for ``(rule.user_id, rule.doc_type)``."""

    @abstractmethod
    def get_sla_rule(self, user_id: str, doc_type: str) -> SlaRule | None:
        """The user's rule for a doc type, if configured."""

    @abstractmethod
    def list_sla_rules(self, user_id: str) -> list[SlaRule]:
        """All of a user's rules."""

    @abstractmethod
    def get_settings(self, user_id: str) -> UserSettings | None:
        """A user's threshold overrides, if saved."""

    @abstractmethod
    def save_settings(self, settings: UserSettings) -> UserSettings:
        """Insert or replace a user's threshold overrides."""


def check_document_changes(changes: dict[str, Any]) -> None:
    """Reject writes to fields that only change through a status CAS."""
    guarded = GUARDED_DOCUMENT_FIELDS & changes.keys()
    if guarded:
        raise ValueError(f"cannot update guarded field(s): {', '.join(sorted(guarded))}")
