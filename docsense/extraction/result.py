"""Immutable extraction results.

A result is never edited in place: reconciliation produces a new result that
supersedes the old one.
"""

from dataclasses import dataclass
from typing import Any

from docsense.providers.base import UsageRecord


@dataclass(frozen=True)
class FieldValue:
    """An extracted value with its confidence in [0, 1]."""

    value: Any
    confidence: float

    def to_dict(self) -> dict[str, Any]:
        return {"value": self.value, "confidence": self.confidence}


@dataclass(frozen=True)
class LineItem:
    """One extracted table row, addressed by its position in the source."""

    index: int
    values: dict[str, Any]
    confidence: float

    def to_dict(self) -> dict[str, Any]:
        return {"index": self.index, "values": dict(self.values), "confidence": self.confidence}


@dataclass(frozen=True)
class ExtractionResult:
    """Structured output of an extraction engine."""

    fields: dict[str, FieldValue]
    line_items: tuple[LineItem, ...]
    engine_used: str
    overall_confidence: float
    source_text: str = ""
    usage: tuple[UsageRecord, ...] = ()
    batches: int = 0
    warnings: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the ``extracted_data`` shape stored on a document."""
        return {
            "fields": {k: v.to_dict() for k, v in self.fields.items()},
            "line_items": [item.to_dict() for item in self.line_items],
            "engine_used": self.engine_used,
            "overall_confidence": self.overall_confidence,
            "batches": self.batches,
            "warnings": list(self.warnings),
        }
