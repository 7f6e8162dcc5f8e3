"""Human review workflow.

One task per document review cycle. ``rejected`` and ``changes_requested``
loop back to ``assigned`` on re-submission, on the same task id, so the
whole cycle shows up in one transition log. Every transition is checked
against the acting user and recorded with its payload.
"""

import uuid
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

from docsense.errors import (
    AuthorizationError,
    DocsenseError,
    InvalidTransitionError,
    ValidationError,
)
from docsense.notifications import Notifier
from docsense.records import (
    REVIEW_TRANSITIONS,
    Document,
    DocumentStatus,
    ReviewEvent,
    ReviewStatus,
    ReviewTask,
    utcnow,
)
from docsense.store.base import DocumentStore
from docsense.utils.logger import get_logger

from .sla import SlaEngine

logger = get_logger(__name__)

SYSTEM_ACTOR = "system"


class ReviewWorkflow:
    """Opens review tasks and moves them through the review state machine.

    Args:
        store: Document Store holding documents, tasks and the transition log.
        notifier: Receives ``review.<status>`` and terminal document events.
        sla: Used to set a task's due date from the matching SLA rule.
        clock: Returns the current aware UTC time.
    """

    def __init__(
        self,
        store: DocumentStore,
        notifier: Notifier,
        sla: SlaEngine | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.notifier = notifier
        self.sla = sla
        self.clock = clock

    def open_task(
        self,
        document: Document,
        assigned_to: str | None = None,
        note: str | None = None,
    ) -> ReviewTask:
        """Open (or reuse) the review task for a document in ``needs_review``.

        An open task is returned as is; a rejected or changes-requested task
        is re-assigned in place. A new task is only created when the document
        has none or its last one was approved.
        """
        existing = self.store.task_for_document(document.id)
        if existing is not None and existing.status != ReviewStatus.APPROVED:
            if existing.status == ReviewStatus.ASSIGNED:
                return existing
            return self._apply(
                existing,
                ReviewStatus.ASSIGNED,
                SYSTEM_ACTOR,
                note or document.review_reason,
                {"assigned_to": assigned_to} if assigned_to else {},
            )

        now = self.clock()
        task = ReviewTask(
            id=uuid.uuid4().hex,
            document_id=document.id,
            owner_id=document.user_id,
            doc_type=document.doc_type,
            assigned_to=assigned_to,
            due_at=self._due_at(document, now),
            notes=note or document.review_reason,
            created_at=now,
            updated_at=now,
        )
        task = self.store.add_task(task)
        self.store.add_event(
            ReviewEvent(task.id, None, ReviewStatus.ASSIGNED, SYSTEM_ACTOR, at=now, note=task.notes)
        )
        logger.info("Opened review task %s for document %s", task.id, document.id)
        self.notifier.notify(
            "review.assigned",
            {"task_id": task.id, "document_id": document.id, "reason": task.notes},
        )
        return task

    def _due_at(self, document: Document, now: datetime) -> datetime | None:
        if self.sla is None:
            return None
        rule = self.sla.rule_for(document.user_id, document.doc_type)
        if rule is None:
            return None
        return now + timedelta(minutes=rule.breach_minutes)

    def transition(
        self,
        task_id: str,
        next_status: ReviewStatus | str,
        actor: str,
        note: str | None = None,
        payload: dict[str, Any] | None = None,
    ) -> ReviewTask:
        """Move a task to ``next_status`` on behalf of ``actor``.

        Payload by action: ``edited_fields`` (approve), ``reason`` (reject),
        ``changes`` (request changes, non-empty list), ``assigned_to``
        (re-assign).

        Raises:
            NotFoundError: If the task does not exist.
            AuthorizationError: If ``actor`` is neither owner nor assignee.
            InvalidTransitionError: If the edge does not exist.
            ValidationError: If the payload is malformed.
            ConflictError: If the task or document changed concurrently.
        """
        try:
            target = ReviewStatus(next_status)
        except ValueError:
            raise ValidationError(f"unknown review status: {next_status}") from None
        task = self.store.get_task(task_id)
        if actor not in (task.owner_id, task.assigned_to):
            raise AuthorizationError(f"{actor} may not review document {task.document_id}")
        return self._apply(task, target, actor, note, payload or {})

    def history(self, task_id: str) -> list[ReviewEvent]:
        """The task's transition log, oldest first."""
        self.store.get_task(task_id)
        return self.store.list_events(task_id)

    def _apply(
        self,
        task: ReviewTask,
        target: ReviewStatus,
        actor: str,
        note: str | None,
        payload: dict[str, Any],
    ) -> ReviewTask:
        if target not in REVIEW_TRANSITIONS[task.status]:
            raise InvalidTransitionError(f"review task cannot move from {task.status} to {target}")

        recorded: dict[str, Any] = {}
        task_changes: dict[str, Any] = {"status": target}
        edited: dict[str, Any] = {}
        match target:
            case ReviewStatus.APPROVED:
                edited = payload.get("edited_fields") or {}
                if not isinstance(edited, dict):
                    raise ValidationError("edited_fields must be a mapping of field key to value")
                recorded["edited_field_keys"] = sorted(edited)
            case ReviewStatus.REJECTED:
                recorded["reason"] = payload.get("reason") or note
            case ReviewStatus.CHANGES_REQUESTED:
                changes = payload.get("changes")
                if not isinstance(changes, list) or not changes:
                    raise ValidationError("changes_requested needs a non-empty 'changes' list")
                recorded["changes"] = [str(c) for c in changes]
            case ReviewStatus.ASSIGNED:
                assigned_to = payload.get("assigned_to")
                if assigned_to:
                    task_changes["assigned_to"] = assigned_to
                    recorded["assigned_to"] = assigned_to
        if note:
            task_changes["notes"] = note

        # The task moves first: a concurrent reviewer loses here, before any
        # document write. A failed document write puts the task back.
        updated = self.store.update_task(task.id, task.status, **task_changes)
        try:
            document_event = self._move_document(task, target, edited, recorded.get("reason"))
        except DocsenseError:
            self._restore(task, target)
            raise

        self.store.add_event(
            ReviewEvent(
                task.id, task.status, target, actor, at=self.clock(), note=note, payload=recorded
            )
        )
        logger.info("Review task %s: %s -> %s by %s", task.id, task.status, target, actor)
        if document_event is not None:
            self.notifier.notify(*document_event)
        self.notifier.notify(
            f"review.{target}",
            {"task_id": task.id, "document_id": task.document_id, "actor": actor, **recorded},
        )
        return updated

    def _move_document(
        self,
        task: ReviewTask,
        target: ReviewStatus,
        edited: dict[str, Any],
        reason: str | None,
    ) -> tuple[str, dict[str, Any]] | None:
        """Apply the document side of a review transition.

        Returns the document event to announce once the transition is logged.
        """
        match target:
            case ReviewStatus.APPROVED:
                document = self.store.get_document(task.document_id)
                data = dict(document.extracted_data)
                fields = dict(data.get("fields") or {})
                for key, value in edited.items():
                    fields[key] = {"value": value, "confidence": 1.0}
                data["fields"] = fields
                if edited:
                    data["edited_field_keys"] = sorted(
                        set(data.get("edited_field_keys", [])) | set(edited)
                    )
                self.store.compare_and_set_status(
                    document.id,
                    DocumentStatus.NEEDS_REVIEW,
                    DocumentStatus.APPROVED,
                    extracted_data=data,
                    review_reason=None,
                )
                return "document.approved", {
                    "document_id": document.id,
                    "edited_field_keys": sorted(edited),
                }
            case ReviewStatus.REJECTED:
                self.store.compare_and_set_status(
                    task.document_id,
                    DocumentStatus.NEEDS_REVIEW,
                    DocumentStatus.REJECTED,
                    review_reason=reason,
                )
                return "document.rejected", {"document_id": task.document_id, "reason": reason}
            case ReviewStatus.ASSIGNED:
                document = self.store.get_document(task.document_id)
                if document.status == DocumentStatus.REJECTED:
                    self.store.compare_and_set_status(
                        document.id, DocumentStatus.REJECTED, DocumentStatus.NEEDS_REVIEW
                    )
        return None

    def _restore(self, task: ReviewTask, target: ReviewStatus) -> None:
        try:
            self.store.update_task(
                task.id,
                target,
                status=task.status,
                assigned_to=task.assigned_to,
                notes=task.notes,
            )
        except DocsenseError as exc:
            logger.error("Could not restore review task %s to %s: %s", task.id, task.status, exc)
