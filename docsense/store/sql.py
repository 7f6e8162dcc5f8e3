"""SQLAlchemy-backed Document Store.

Claims and rollbacks are single conditional ``UPDATE ... WHERE status = ?``
statements, so two workers (or two processes) racing on the same document
see exactly one success. The one-active-session-per-user rule is a partial
unique index, enforced by the database rather than by in-process locking.
"""

from collections.abc import Iterable
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import (
    JSON,
    DateTime,
    Float,
    Index,
    Integer,
    LargeBinary,
    String,
    Text,
    create_engine,
    select,
    text,
    update,
)
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

from docsense.errors import ConflictError, NotFoundError, StorageError
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


class Base(DeclarativeBase):
    pass


class DocumentRow(Base):
    __tablename__ = "documents"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(128), index=True)
    filename: Mapped[str] = mapped_column(Text)
    status: Mapped[str] = mapped_column(String(32), index=True)
    doc_type: Mapped[str | None] = mapped_column(String(64), nullable=True)
    domain: Mapped[str | None] = mapped_column(String(64), nullable=True)
    extracted_data: Mapped[dict] = mapped_column(JSON, default=dict)
    confidence_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    artifacts: Mapped[dict] = mapped_column(JSON, default=dict)
    review_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    session_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    content: Mapped[bytes | None] = mapped_column(LargeBinary, nullable=True)
    storage_path: Mapped[str | None] = mapped_column(Text, nullable=True)
    content_hash: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class SessionRow(Base):
    __tablename__ = "processing_sessions"
    __table_args__ = (
        Index(
            "uq_processing_sessions_active_user",
            "user_id",
            unique=True,
            sqlite_where=text("status = 'active'"),
            postgresql_where=text("status = 'active'"),
        ),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(128))
    document_ids: Mapped[list] = mapped_column(JSON, default=list)
    status: Mapped[str] = mapped_column(String(32))
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    stopped_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class TaskRow(Base):
    __tablename__ = "review_tasks"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    document_id: Mapped[str] = mapped_column(String(64), index=True)
    owner_id: Mapped[str] = mapped_column(String(128), index=True)
    doc_type: Mapped[str | None] = mapped_column(String(64), nullable=True)
    assigned_to: Mapped[str | None] = mapped_column(String(128), nullable=True)
    status: Mapped[str] = mapped_column(String(32))
    due_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class EventRow(Base):
    __tablename__ = "review_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    task_id: Mapped[str] = mapped_column(String(64), index=True)
    from_status: Mapped[str | None] = mapped_column(String(32), nullable=True)
    to_status: Mapped[str] = mapped_column(String(32))
    actor: Mapped[str] = mapped_column(String(128))
    at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    note: Mapped[str | None] = mapped_column(Text, nullable=True)
    payload: Mapped[dict] = mapped_column(JSON, default=dict)


class SlaRuleRow(Base):
    __tablename__ = "sla_rules"

    user_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    doc_type: Mapped[str] = mapped_column(String(64), primary_key=True)
    warning_minutes: Mapped[int] = mapped_column(Integer)
    breach_minutes: Mapped[int] = mapped_column(Integer)
    enabled: Mapped[bool] = mapped_column(default=True)


class SettingsRow(Base):
    __tablename__ = "user_settings"

    user_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    data: Mapped[dict] = mapped_column(JSON, default=dict)


def _aware(value: datetime | None) -> datetime | None:
    # SQLite drops tzinfo on the way back.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _to_document(row: DocumentRow) -> Document:
    return Document(
        id=row.id,
        user_id=row.user_id,
        filename=row.filename,
        status=DocumentStatus(row.status),
        doc_type=row.doc_type,
        domain=row.domain,
        extracted_data=dict(row.extracted_data or {}),
        confidence_score=row.confidence_score,
        artifacts=dict(row.artifacts or {}),
        review_reason=row.review_reason,
        session_id=row.session_id,
        content=row.content,
        storage_path=row.storage_path,
        content_hash=row.content_hash,
        created_at=_aware(row.created_at),
        updated_at=_aware(row.updated_at),
    )


def _to_session(row: SessionRow) -> ProcessingSession:
    return ProcessingSession(
        id=row.id,
        user_id=row.user_id,
        document_ids=frozenset(row.document_ids or []),
        status=SessionStatus(row.status),
        started_at=_aware(row.started_at),
        stopped_at=_aware(row.stopped_at),
        completed_at=_aware(row.completed_at),
    )


def _to_task(row: TaskRow) -> ReviewTask:
    return ReviewTask(
        id=row.id,
        document_id=row.document_id,
        owner_id=row.owner_id,
        doc_type=row.doc_type,
        assigned_to=row.assigned_to,
        status=ReviewStatus(row.status),
        due_at=_aware(row.due_at),
        notes=row.notes,
        created_at=_aware(row.created_at),
        updated_at=_aware(row.updated_at),
    )


def _column_values(changes: dict[str, Any]) -> dict[str, Any]:
    values = {}
    for key, value in changes.items():
        if isinstance(value, (DocumentStatus, SessionStatus, ReviewStatus)):
            value = str(value)
        elif isinstance(value, frozenset):
            value = sorted(value)
        values[key] = value
    return values


class SqlDocumentStore(DocumentStore):
    """Document Store on any SQLAlchemy-supported database.

    Args:
        url: SQLAlchemy database URL, e.g. ``sqlite:///docsense.db``.
        echo: Log emitted SQL.
    """

    def __init__(self, url: str, echo: bool = False) -> None:
        if url in ("sqlite://", "sqlite:///:memory:"):
            # One shared connection, or every thread would see its own empty database.
            self.engine = create_engine(
                url,
                echo=echo,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )
        else:
            self.engine = create_engine(url, echo=echo)
        self._sessions = sessionmaker(self.engine, expire_on_commit=False)
        Base.metadata.create_all(self.engine)
        logger.info("SQL document store ready at %s", self.engine.url.render_as_string())

    def close(self) -> None:
        self.engine.dispose()

    def _begin(self):
        return self._sessions.begin()

    # -- documents ---------------------------------------------------------

    def add_document(self, document: Document) -> Document:
        row = DocumentRow(
            id=document.id,
            user_id=document.user_id,
            filename=document.filename,
            status=str(document.status),
            doc_type=document.doc_type,
            domain=document.domain,
            extracted_data=document.extracted_data,
            confidence_score=document.confidence_score,
            artifacts=document.artifacts,
            review_reason=document.review_reason,
            session_id=document.session_id,
            content=document.content,
            storage_path=document.storage_path,
            content_hash=document.content_hash,
            created_at=document.created_at,
            updated_at=document.updated_at,
        )
        try:
            with self._begin() as db:
                db.add(row)
        except IntegrityError as exc:
            raise ConflictError(f"document {document.id} already exists") from exc
        except SQLAlchemyError as exc:
            raise StorageError(f"could not insert document {document.id}: {exc}") from exc
        return self.get_document(document.id)

    def get_document(self, document_id: str) -> Document:
        with self._begin() as db:
            row = db.get(DocumentRow, document_id)
            if row is None:
                raise NotFoundError(f"document {document_id} not found")
            return _to_document(row)

    def list_documents(
        self,
        status: DocumentStatus | None = None,
        user_id: str | None = None,
        ids: Iterable[str] | None = None,
    ) -> list[Document]:
        query = select(DocumentRow).order_by(DocumentRow.created_at)
        if status is not None:
            query = query.where(DocumentRow.status == str(status))
        if user_id is not None:
            query = query.where(DocumentRow.user_id == user_id)
        if ids is not None:
            query = query.where(DocumentRow.id.in_(list(ids)))
        with self._begin() as db:
            return [_to_document(row) for row in db.scalars(query)]

    def find_by_content_hash(self, user_id: str, content_hash: str) -> list[Document]:
        query = (
            select(DocumentRow)
            .where(DocumentRow.user_id == user_id, DocumentRow.content_hash == content_hash)
            .order_by(DocumentRow.created_at)
        )
        with self._begin() as db:
            return [_to_document(row) for row in db.scalars(query)]

    def compare_and_set_status(
        self,
        document_id: str,
        expected: DocumentStatus,
        target: DocumentStatus,
        **changes: Any,
    ) -> Document:
        ensure_transition(expected, target)
        check_document_changes(changes)
        statement = (
            update(DocumentRow)
            .where(DocumentRow.id == document_id, DocumentRow.status == str(expected))
            .values(status=str(target), updated_at=utcnow(), **_column_values(changes))
            .execution_options(synchronize_session=False)
        )
        try:
            with self._begin() as db:
                result = db.execute(statement)
                row = db.get(DocumentRow, document_id, populate_existing=True)
                if row is None:
                    raise NotFoundError(f"document {document_id} not found")
                if result.rowcount == 0:
                    raise ConflictError(
                        f"document {document_id} is {row.status}, expected {expected}"
                    )
                return _to_document(row)
        except SQLAlchemyError as exc:
            raise StorageError(f"status update failed for {document_id}: {exc}") from exc

    def update_document(self, document_id: str, **changes: Any) -> Document:
        check_document_changes(changes)
        try:
            with self._begin() as db:
                row = db.get(DocumentRow, document_id)
                if row is None:
                    raise NotFoundError(f"document {document_id} not found")
                for key, value in _column_values(changes).items():
                    setattr(row, key, value)
                row.updated_at = utcnow()
                db.flush()
                return _to_document(row)
        except SQLAlchemyError as exc:
            raise StorageError(f"update failed for {document_id}: {exc}") from exc

    def save_artifact(self, document_id: str, stage: str, payload: Any) -> None:
        try:
            with self._begin() as db:
                row = db.get(DocumentRow, document_id, with_for_update=True)
                if row is None:
                    raise NotFoundError(f"document {document_id} not found")
                # reassign so the JSON column is flagged dirty
                row.artifacts = {**(row.artifacts or {}), stage: payload}
                row.updated_at = utcnow()
        except SQLAlchemyError as exc:
            raise StorageError(f"could not save {stage} artifact for {document_id}: {exc}") from exc

    def delete_document(self, document_id: str) -> None:
        with self._begin() as db:
            row = db.get(DocumentRow, document_id)
            if row is None:
                raise NotFoundError(f"document {document_id} not found")
            task_ids = list(db.scalars(select(TaskRow.id).where(TaskRow.document_id == document_id)))
            for task_id in task_ids:
                for event in db.scalars(select(EventRow).where(EventRow.task_id == task_id)):
                    db.delete(event)
                db.delete(db.get(TaskRow, task_id))
            db.delete(row)

    # -- sessions ----------------------------------------------------------

    def create_session(self, session: ProcessingSession) -> ProcessingSession:
        row = SessionRow(
            id=session.id,
            user_id=session.user_id,
            document_ids=sorted(session.document_ids),
            status=str(session.status),
            started_at=session.started_at,
            stopped_at=session.stopped_at,
            completed_at=session.completed_at,
        )
        try:
            with self._begin() as db:
                db.add(row)
        except IntegrityError as exc:
            raise ConflictError(
                f"user {session.user_id} already has an active session"
            ) from exc
        return self.get_session(session.id)

    def get_session(self, session_id: str) -> ProcessingSession:
        with self._begin() as db:
            row = db.get(SessionRow, session_id)
            if row is None:
                raise NotFoundError(f"session {session_id} not found")
            return _to_session(row)

    def active_session(self, user_id: str) -> ProcessingSession | None:
        query = select(SessionRow).where(
            SessionRow.user_id == user_id, SessionRow.status == str(SessionStatus.ACTIVE)
        )
        with self._begin() as db:
            row = db.scalars(query).first()
            return _to_session(row) if row is not None else None

    def update_session(
        self, session_id: str, expected: SessionStatus, **changes: Any
    ) -> ProcessingSession:
        statement = (
            update(SessionRow)
            .where(SessionRow.id == session_id, SessionRow.status == str(expected))
            .values(**_column_values(changes))
            .execution_options(synchronize_session=False)
        )
        with self._begin() as db:
            result = db.execute(statement)
            row = db.get(SessionRow, session_id, populate_existing=True)
            if row is None:
                raise NotFoundError(f"session {session_id} not found")
            if result.rowcount == 0:
                raise ConflictError(f"session {session_id} is {row.status}, expected {expected}")
            return _to_session(row)

    # -- review tasks ------------------------------------------------------

    def add_task(self, task: ReviewTask) -> ReviewTask:
        row = TaskRow(
            id=task.id,
            document_id=task.document_id,
            owner_id=task.owner_id,
            doc_type=task.doc_type,
            assigned_to=task.assigned_to,
            status=str(task.status),
            due_at=task.due_at,
            notes=task.notes,
            created_at=task.created_at,
            updated_at=task.updated_at,
        )
        try:
            with self._begin() as db:
                db.add(row)
        except IntegrityError as exc:
            raise ConflictError(f"review task {task.id} already exists") from exc
        return self.get_task(task.id)

    def get_task(self, task_id: str) -> ReviewTask:
        with self._begin() as db:
            row = db.get(TaskRow, task_id)
            if row is None:
                raise NotFoundError(f"review task {task_id} not found")
            return _to_task(row)

    def task_for_document(self, document_id: str) -> ReviewTask | None:
        query = (
            select(TaskRow)
            .where(TaskRow.document_id == document_id)
            .order_by(TaskRow.created_at.desc())
        )
        with self._begin() as db:
            row = db.scalars(query).first()
            return _to_task(row) if row is not None else None

    def list_tasks(
        self,
        owner_id: str | None = None,
        statuses: Iterable[ReviewStatus] | None = None,
    ) -> list[ReviewTask]:
        query = select(TaskRow).order_by(TaskRow.created_at)
        if owner_id is not None:
            query = query.where(TaskRow.owner_id == owner_id)
        if statuses is not None:
            query = query.where(TaskRow.status.in_([str(s) for s in statuses]))
        with self._begin() as db:
            return [_to_task(row) for row in db.scalars(query)]

    def update_task(
        self, task_id: str, expected: ReviewStatus, **changes: Any
    ) -> ReviewTask:
        statement = (
            update(TaskRow)
            .where(TaskRow.id == task_id, TaskRow.status == str(expected))
            .values(updated_at=utcnow(), **_column_values(changes))
            .execution_options(synchronize_session=False)
        )
        with self._begin() as db:
            result = db.execute(statement)
            row = db.get(TaskRow, task_id, populate_existing=True)
            if row is None:
                raise NotFoundError(f"review task {task_id} not found")
            if result.rowcount == 0:
                raise ConflictError(f"review task {task_id} is {row.status}, expected {expected}")
            return _to_task(row)

    def add_event(self, event: ReviewEvent) -> None:
        with self._begin() as db:
            db.add(
                EventRow(
                    task_id=event.task_id,
                    from_status=str(event.from_status) if event.from_status else None,
                    to_status=str(event.to_status),
                    actor=event.actor,
                    at=event.at,
                    note=event.note,
                    payload=event.payload,
                )
            )

    def list_events(self, task_id: str) -> list[ReviewEvent]:
        query = select(EventRow).where(EventRow.task_id == task_id).order_by(EventRow.id)
        with self._begin() as db:
            return [
                ReviewEvent(
                    task_id=row.task_id,
                    from_status=ReviewStatus(row.from_status) if row.from_status else None,
                    to_status=ReviewStatus(row.to_status),
                    actor=row.actor,
                    at=_aware(row.at),
                    note=row.note,
                    payload=dict(row.payload or {}),
                )
                for row in db.scalars(query)
            ]

    # -- SLA rules and settings ---------------------------------------------

    def upsert_sla_rule(self, rule: SlaRule) -> SlaRule:
        with self._begin() as db:
            db.merge(
                SlaRuleRow(
                    user_id=rule.user_id,
                    doc_type=rule.doc_type,
                    warning_minutes=rule.warning_minutes,
                    breach_minutes=rule.breach_minutes,
                    enabled=rule.enabled,
                )
            )
        return rule

    def get_sla_rule(self, user_id: str, doc_type: str) -> SlaRule | None:
        with self._begin() as db:
            row = db.get(SlaRuleRow, (user_id, doc_type))
            if row is None:
                return None
            return SlaRule(
                row.user_id, row.doc_type, row.warning_minutes, row.breach_minutes, row.enabled
            )

    def list_sla_rules(self, user_id: str) -> list[SlaRule]:
        query = select(SlaRuleRow).where(SlaRuleRow.user_id == user_id)
        with self._begin() as db:
            return [
                SlaRule(r.user_id, r.doc_type, r.warning_minutes, r.breach_minutes, r.enabled)
                for r in db.scalars(query)
            ]

    def get_settings(self, user_id: str) -> UserSettings | None:
        with self._begin() as db:
            row = db.get(SettingsRow, user_id)
            return UserSettings(**row.data) if row is not None else None

    def save_settings(self, settings: UserSettings) -> UserSettings:
        with self._begin() as db:
            db.merge(SettingsRow(user_id=settings.user_id, data=settings.model_dump()))
        return settings
