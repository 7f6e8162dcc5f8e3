"""Confidence normalization, aggregation and batching helpers.

Aggregation is an unweighted arithmetic mean over one score per schema
header field, one per extension field and one per line item. A required
header field that is missing counts as 0; a missing optional field is left
out. The same function is used for extraction and for reconciliation, so
the two overall scores are always comparable.
"""

from collections.abc import Iterator, Mapping, Sequence
from typing import Any, TypeVar

from docsense.schema import DocumentSchema

from .result import FieldValue, LineItem

T = TypeVar("T")

# Confidence assumed for a value the model returned without a score.
UNSCORED_CONFIDENCE = 0.5


def normalize_confidence(value: Any, scale: float = 1.0) -> float:
    """Bring a raw confidence onto the [0, 1] scale.

    Args:
        value: Raw confidence as returned by an engine, or ``None``.
        scale: 1 when the engine reports in [0, 1], 100 for percentages.
            A value above 1 is always read as a percentage.

    Returns:
        Confidence clamped to [0, 1].
    """
    if value is None or isinstance(value, bool):
        return UNSCORED_CONFIDENCE
    try:
        number = float(value)
    except (TypeError, ValueError):
        return UNSCORED_CONFIDENCE
    if scale != 1.0 or number > 1.0:
        number = number / 100.0
    return round(max(0.0, min(1.0, number)), 4)


def aggregate_confidence(
    fields: Mapping[str, FieldValue],
    line_items: Sequence[LineItem],
    schema: DocumentSchema,
) -> float:
    """Reduce per-field and per-item confidences to one score in [0, 1].

    Args:
        fields: Extracted header fields.
        line_items: Extracted line items.
        schema: Schema declaring which header fields are required.

    Returns:
        Arithmetic mean rounded to 4 decimals, or 0.0 if nothing was scored.
    """
    scores: list[float] = []
    declared = set()
    for definition in schema.fields:
        declared.add(definition.key)
        if definition.key in fields:
            scores.append(fields[definition.key].confidence)
        elif definition.required:
            scores.append(0.0)
    scores.extend(v.confidence for k, v in fields.items() if k not in declared)
    scores.extend(item.confidence for item in line_items)

    if not scores:
        return 0.0
    return round(sum(scores) / len(scores), 4)


def to_percent(confidence: float) -> float:
    """Convert a [0, 1] confidence to the 0-100 document score."""
    return round(confidence * 100.0, 2)


def iter_batches(items: Sequence[T], size: int) -> Iterator[tuple[int, list[T]]]:
    """Yield ``(offset, batch)`` chunks of at most ``size`` items, in order.

    Args:
        items: Items to chunk.
        size: Maximum batch size (at least 1).

    Yields:
        Offset of the first item of each batch and the batch itself.
    """
    if size < 1:
        raise ValueError("batch size must be at least 1")
    for offset in range(0, len(items), size):
        yield offset, list(items[offset : offset + size])
