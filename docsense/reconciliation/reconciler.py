"""Low-confidence reconciliation.

When a result's overall confidence falls below the threshold, the fields
and line items under the per-field floor are sent to a higher-capability
model and merged back. Only re-examined entries can change; everything else
passes through untouched, and nothing present before is ever dropped.
"""

import time
from collections.abc import Callable
from dataclasses import dataclass, replace
from typing import Any

from docsense.extraction.confidence import (
    aggregate_confidence,
    iter_batches,
    normalize_confidence,
    to_percent,
)
from docsense.extraction.result import ExtractionResult, FieldValue, LineItem
from docsense.providers.base import ModelClient, ModelRequest, ModelResponse, UsageRecord
from docsense.schema import DocumentSchema
from docsense.utils.config import ExtractionConfig, ReconciliationConfig
from docsense.utils.logger import get_logger
from docsense.utils.retry import call_with_retry

logger = get_logger(__name__)


@dataclass(frozen=True)
class ReconciliationResult:
    """Merged result plus the audit trail of what changed."""

    result: ExtractionResult
    changed_field_keys: tuple[str, ...]
    reexamined_keys: tuple[str, ...]
    original_confidence: float
    new_confidence: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "changed_field_keys": list(self.changed_field_keys),
            "reexamined_keys": list(self.reexamined_keys),
            "original_confidence": self.original_confidence,
            "new_confidence": self.new_confidence,
            "result": self.result.to_dict(),
        }


class Reconciler:
    """Re-extracts weak fields with a stronger model and merges the answers.

    Args:
        client: Model client for the reconciliation role.
        config: Trigger threshold and per-field floor, both in percent.
        retry: Retry policy and item batch size, shared with extraction.
        sleep: Sleep function used between retries.
    """

    def __init__(
        self,
        client: ModelClient,
        config: ReconciliationConfig,
        retry: ExtractionConfig,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.client = client
        self.config = config
        self.retry = retry
        self._sleep = sleep

    def should_reconcile(self, result: ExtractionResult, threshold: float | None = None) -> bool:
        """True when the overall confidence is strictly below the threshold (percent)."""
        limit = self.config.threshold if threshold is None else threshold
        return to_percent(result.overall_confidence) < limit

    def weak_entries(
        self, result: ExtractionResult, schema: DocumentSchema
    ) -> tuple[list[str], list[LineItem]]:
        """Header keys and line items below the floor, plus missing required fields."""
        floor = self.config.field_floor / 100.0
        keys = [k for k, v in result.fields.items() if v.confidence < floor]
        keys.extend(k for k in schema.required_keys if k not in result.fields)
        items = [item for item in result.line_items if item.confidence < floor]
        return keys, items

    def reconcile(
        self, result: ExtractionResult, schema: DocumentSchema
    ) -> ReconciliationResult:
        """Re-examine weak entries and merge.

        Args:
            result: First-pass extraction result.
            schema: Target schema.

        Returns:
            The merged result and the keys that changed.

        Raises:
            TransientProviderError: If the model keeps failing after retries.
            ProviderError: If the model fails permanently.
        """
        weak_keys, weak_items = self.weak_entries(result, schema)
        usage: list[UsageRecord] = []
        responses: list[ModelResponse] = []

        if weak_keys:
            responses.append(
                self._invoke(
                    ModelRequest(
                        role="reconciliation",
                        schema=schema,
                        text=result.source_text,
                        fields={k: v.value for k, v in result.fields.items()},
                        field_keys=weak_keys,
                    )
                )
            )
        for _, batch in iter_batches(weak_items, self.retry.batch_size):
            responses.append(
                self._invoke(
                    ModelRequest(
                        role="reconciliation",
                        schema=schema,
                        items=[{**item.values, "_index": item.index} for item in batch],
                    )
                )
            )

        fields = dict(result.fields)
        items = list(result.line_items)
        positions: dict[int, int] = {}
        for position, item in enumerate(items):
            positions.setdefault(item.index, position)
        requested_indices = {item.index for item in weak_items}
        changed: list[str] = []

        for response in responses:
            if response.usage is not None:
                usage.append(response.usage)
            for key in weak_keys:
                raw = response.fields.get(key)
                if raw is None or raw.get("value") is None:
                    continue
                confidence = normalize_confidence(raw.get("confidence"), response.confidence_scale)
                merged, did_change = _merge_field(fields.get(key), raw["value"], confidence)
                fields[key] = merged
                if did_change:
                    changed.append(key)
            for raw in response.line_items:
                index = raw.get("index")
                if index not in requested_indices:
                    logger.warning("Ignoring reconciled item with unrequested index %s", index)
                    continue
                confidence = normalize_confidence(raw.get("confidence"), response.confidence_scale)
                position = positions[index]
                items[position], item_changes = _merge_item(
                    items[position], raw.get("values") or {}, confidence
                )
                changed.extend(f"line_items[{index}].{key}" for key in item_changes)

        line_items = tuple(items)
        new_confidence = aggregate_confidence(fields, line_items, schema)
        merged_result = replace(
            result,
            fields=fields,
            line_items=line_items,
            engine_used=f"{result.engine_used}+reconciled",
            overall_confidence=new_confidence,
            usage=result.usage + tuple(usage),
        )
        reexamined = tuple(weak_keys) + tuple(f"line_items[{i.index}]" for i in weak_items)
        logger.info(
            "Reconciled %d entr(ies), %d change(s), confidence %.2f -> %.2f",
            len(reexamined),
            len(changed),
            result.overall_confidence,
            new_confidence,
        )
        return ReconciliationResult(
            result=merged_result,
            changed_field_keys=tuple(changed),
            reexamined_keys=reexamined,
            original_confidence=result.overall_confidence,
            new_confidence=new_confidence,
        )

    def _invoke(self, request: ModelRequest) -> ModelResponse:
        return call_with_retry(
            lambda: self.client.invoke(request),
            max_retries=self.retry.max_retries,
            backoff_base=self.retry.retry_backoff_s,
            description="reconciliation call",
            sleep=self._sleep,
        )


def _merge_field(
    current: FieldValue | None, value: Any, confidence: float
) -> tuple[FieldValue, bool]:
    """A changed value takes the new confidence; a confirmed one keeps the higher."""
    if current is None or current.value != value:
        return FieldValue(value, confidence), True
    return FieldValue(current.value, max(current.confidence, confidence)), False


def _merge_item(
    current: LineItem, values: dict[str, Any], confidence: float
) -> tuple[LineItem, list[str]]:
    changes = [
        key
        for key, value in values.items()
        if value is not None and current.values.get(key) != value
    ]
    merged_values = {
        **current.values,
        **{k: v for k, v in values.items() if v is not None},
    }
    new_confidence = confidence if changes else max(current.confidence, confidence)
    return LineItem(current.index, merged_values, new_confidence), changes
