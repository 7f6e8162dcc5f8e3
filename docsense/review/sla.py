"""SLA risk evaluation for open review tasks.

Risk is recomputed from the task's age on every call; nothing is cached,
because elapsed time only grows.
"""

from collections.abc import Callable
from datetime import datetime

from docsense.errors import ValidationError
from docsense.notifications import Notifier
from docsense.records import (
    OPEN_REVIEW_STATUSES,
    ReviewTask,
    RiskLevel,
    SlaEvaluation,
    SlaRule,
    utcnow,
)
from docsense.store.base import DocumentStore
from docsense.utils.config import SlaConfig
from docsense.utils.logger import get_logger

logger = get_logger(__name__)

DEFAULT_RULE_USER = "*"


def classify_risk(elapsed_minutes: float, warning_minutes: int, breach_minutes: int) -> RiskLevel:
    """``ok`` below the warning mark, ``breach`` at or past the breach mark."""
    if elapsed_minutes >= breach_minutes:
        return RiskLevel.BREACH
    if elapsed_minutes >= warning_minutes:
        return RiskLevel.WARNING
    return RiskLevel.OK


def elapsed_minutes(since: datetime, now: datetime) -> int:
    """Whole minutes between two instants, never negative."""
    return max(0, int((now - since).total_seconds() // 60))


class SlaEngine:
    """Evaluates open review tasks against per-document-type deadlines.

    Args:
        store: Document Store holding tasks and SLA rules.
        config: System default rule, used when a user has none for a doc type.
        notifier: Receives ``sla.warning`` and ``sla.breach``.
        clock: Returns the current aware UTC time.
    """

    def __init__(
        self,
        store: DocumentStore,
        config: SlaConfig,
        notifier: Notifier,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.config = config
        self.notifier = notifier
        self.clock = clock

    def rule_for(self, user_id: str, doc_type: str | None) -> SlaRule | None:
        """The user's rule for ``doc_type``, else the system default.

        Returns ``None`` when SLA tracking is off for the pair.
        """
        if doc_type:
            rule = self.store.get_sla_rule(user_id, doc_type)
            if rule is not None:
                return rule if rule.enabled else None
        if not self.config.enabled:
            return None
        return SlaRule(
            user_id=DEFAULT_RULE_USER,
            doc_type=doc_type or "",
            warning_minutes=self.config.warning_minutes,
            breach_minutes=self.config.breach_minutes,
        )

    def evaluate_task(self, task: ReviewTask, now: datetime | None = None) -> SlaEvaluation:
        now = now or self.clock()
        elapsed = elapsed_minutes(task.created_at, now)
        rule = self.rule_for(task.owner_id, task.doc_type)
        if rule is None:
            return SlaEvaluation(task.id, task.document_id, task.doc_type, elapsed, RiskLevel.OK)
        return SlaEvaluation(
            task_id=task.id,
            document_id=task.document_id,
            doc_type=task.doc_type,
            elapsed_minutes=elapsed,
            risk_level=classify_risk(elapsed, rule.warning_minutes, rule.breach_minutes),
            warning_minutes=rule.warning_minutes,
            breach_minutes=rule.breach_minutes,
        )

    def evaluate(self, user_id: str, notify: bool = True) -> list[SlaEvaluation]:
        """Evaluate every open review task owned by ``user_id``.

        Args:
            user_id: Task owner.
            notify: Emit ``sla.warning``/``sla.breach`` for at-risk tasks.

        Returns:
            One evaluation per open task, oldest task first.
        """
        now = self.clock()
        tasks = self.store.list_tasks(owner_id=user_id, statuses=OPEN_REVIEW_STATUSES)
        evaluations = [self.evaluate_task(task, now) for task in tasks]

        at_risk = [e for e in evaluations if e.risk_level != RiskLevel.OK]
        if notify:
            for evaluation in at_risk:
                self.notifier.notify(
                    f"sla.{evaluation.risk_level}",
                    {
                        "user_id": user_id,
                        "task_id": evaluation.task_id,
                        "document_id": evaluation.document_id,
                        "doc_type": evaluation.doc_type,
                        "elapsed_minutes": evaluation.elapsed_minutes,
                    },
                )
        logger.info(
            "SLA evaluation for %s: %d open task(s), %d at risk",
            user_id,
            len(evaluations),
            len(at_risk),
        )
        return evaluations

    def set_rule(
        self,
        user_id: str,
        doc_type: str,
        warning_minutes: int,
        breach_minutes: int,
        enabled: bool = True,
    ) -> SlaRule:
        """Create or replace the rule for ``(user_id, doc_type)``.

        Raises:
            ValidationError: Unless ``0 <= warning_minutes < breach_minutes``.
        """
        if not doc_type:
            raise ValidationError("doc_type is required")
        if warning_minutes < 0 or warning_minutes >= breach_minutes:
            raise ValidationError("SLA rule needs 0 <= warning_minutes < breach_minutes")
        rule = SlaRule(user_id, doc_type, warning_minutes, breach_minutes, enabled)
        return self.store.upsert_sla_rule(rule)
