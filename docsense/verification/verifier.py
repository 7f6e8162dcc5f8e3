"""Always-on verification of extraction results.

Header fields are checked first, then line items in fixed-size batches so
each model call stays bounded. A batch always holds whole line items. The
rule checks run offline; when a verification model is configured its issues
are appended after the rule issues of the same batch.
"""

import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from docsense.errors import ProviderError, StageError
from docsense.extraction.confidence import iter_batches
from docsense.extraction.result import ExtractionResult, LineItem
from docsense.providers.base import ModelClient, ModelRequest, ModelResponse, UsageRecord
from docsense.schema import DocumentSchema
from docsense.utils.config import ExtractionConfig, VerificationConfig
from docsense.utils.logger import get_logger
from docsense.utils.retry import call_with_retry

from .rules import FieldRules, Severity, SourceIndex, VerificationIssue

logger = get_logger(__name__)


@dataclass
class VerificationReport:
    """Ordered issues from one verification pass.

    An empty ``issues`` list means the pass ran and found nothing.
    """

    issues: list[VerificationIssue] = field(default_factory=list)
    batches: int = 0
    usage: list[UsageRecord] = field(default_factory=list)

    @property
    def errors(self) -> list[VerificationIssue]:
        return [i for i in self.issues if i.severity == Severity.ERROR]

    def to_dict(self) -> dict[str, Any]:
        return {
            "issues": [i.to_dict() for i in self.issues],
            "batches": self.batches,
            "usage": [u.to_dict() for u in self.usage],
        }


class Verifier:
    """Cross-checks a result against its schema and source text.

    Args:
        config: Batch size and grounding switch.
        client: Optional model client for the verification role.
        retry: Retry policy for model calls.
        sleep: Sleep function used between retries.
    """

    def __init__(
        self,
        config: VerificationConfig,
        client: ModelClient | None = None,
        retry: ExtractionConfig | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config
        self.client = client
        self.retry = retry or ExtractionConfig()
        self.rules = FieldRules(grounding_check=config.grounding_check)
        self._sleep = sleep

    def verify(self, result: ExtractionResult, schema: DocumentSchema) -> VerificationReport:
        """Check ``result`` and return the ordered issues.

        Raises:
            StageError: If the verification model fails after retries.
        """
        report = VerificationReport()
        source = SourceIndex(result.source_text) if result.source_text else None

        report.issues.extend(self.rules.check_header(result.fields, schema, source))
        report.issues.extend(self.rules.check_totals(result.fields, result.line_items, schema))

        batches = list(iter_batches(list(result.line_items), self.config.batch_size))
        if not batches:
            batches = [(0, [])]
        for offset, batch in batches:
            report.batches += 1
            report.issues.extend(self.rules.check_items(batch, schema, source))
            if self.client is not None:
                report.issues.extend(self._model_issues(result, schema, offset, batch, report))

        logger.info(
            "Verification: %d issue(s) (%d error) over %d batch(es)",
            len(report.issues),
            len(report.errors),
            report.batches,
        )
        return report

    def _model_issues(
        self,
        result: ExtractionResult,
        schema: DocumentSchema,
        offset: int,
        batch: list[LineItem],
        report: VerificationReport,
    ) -> list[VerificationIssue]:
        request = ModelRequest(
            role="verification",
            schema=schema,
            text=result.source_text,
            fields={k: v.value for k, v in result.fields.items()} if offset == 0 else {},
            items=[{**item.values, "_index": item.index} for item in batch],
        )
        try:
            response: ModelResponse = call_with_retry(
                lambda: self.client.invoke(request),
                max_retries=self.retry.max_retries,
                backoff_base=self.retry.retry_backoff_s,
                description="verification call",
                sleep=self._sleep,
            )
        except ProviderError as exc:
            raise StageError("verification", str(exc)) from exc

        if response.usage is not None:
            report.usage.append(response.usage)
        allowed = {item.index for item in batch}
        issues: list[VerificationIssue] = []
        for raw in response.issues:
            issue = parse_issue(raw)
            if issue is None:
                logger.warning("Dropping malformed verification issue: %r", raw)
                continue
            if issue.item_index is not None and issue.item_index not in allowed:
                logger.warning(
                    "Dropping issue for item %s outside batch at offset %d",
                    issue.item_index,
                    offset,
                )
                continue
            issues.append(issue)
        return issues


def parse_issue(raw: Any) -> VerificationIssue | None:
    """Build an issue from a model payload; ``None`` if it is unusable."""
    if not isinstance(raw, dict):
        return None
    field_key = raw.get("field")
    description = raw.get("issue") or raw.get("description")
    if not field_key or not description:
        return None
    index = raw.get("item_index", raw.get("itemIndex"))
    if index is not None and not isinstance(index, int):
        return None
    try:
        severity = Severity(str(raw.get("severity", "warning")).lower())
    except ValueError:
        severity = Severity.WARNING
    return VerificationIssue(
        item_index=index,
        field=str(field_key),
        description=str(description),
        severity=severity,
        suggestion=raw.get("suggestion"),
        current_value=raw.get("current_value", raw.get("currentValue")),
        source="model",
    )
