"""Offline rule-based model client.

Extracts header fields from text with labelled and type-driven regex
patterns, maps spreadsheet columns to line-item fields by header aliases,
and splits OCR table lines into typed cells. Used for every role that has
no remote endpoint configured.
"""

import re
import time
from typing import Any

from docsense.schema import DocumentSchema, FieldDefinition, FieldType
from docsense.utils.logger import get_logger
from docsense.values import (
    format_amount,
    is_empty,
    is_valid_email,
    is_valid_iban,
    is_valid_org_number,
    is_valid_phone,
    parse_amount,
    parse_bool,
    parse_date,
)

from .base import ModelClient, ModelRequest, ModelResponse, UsageRecord

logger = get_logger(__name__)


# Value patterns per type: (regex, base_confidence, flags)
_VALUE_PATTERNS: dict[FieldType, list[tuple[str, float, int]]] = {
    FieldType.DATE: [
        (r"\b(\d{4}[/\-]\d{1,2}[/\-]\d{1,2})\b", 0.9, 0),
        (r"\b(\d{1,2}[/\-.]\d{1,2}[/\-.]\d{2,4})\b", 0.85, 0),
        (
            r"\b(\d{1,2}\s+(?:Jan|Feb|Mar|Apr|May|Jun|Jul|Aug|Sep|Oct|Nov|Dec)"
            r"[a-z]*\s+\d{4})\b",
            0.85,
            re.IGNORECASE,
        ),
        (
            r"\b((?:Jan|Feb|Mar|Apr|May|Jun|Jul|Aug|Sep|Oct|Nov|Dec)"
            r"[a-z]*\s+\d{1,2},?\s+\d{4})\b",
            0.85,
            re.IGNORECASE,
        ),
    ],
    FieldType.AMOUNT: [
        (r"(-?\d{1,3}(?:[  .,]\d{3})+[.,]\d{2})\b", 0.9, 0),
        (r"(-?\d+[.,]\d{2})\b", 0.9, 0),
        (r"(-?\d+)(?:\s*(?:kr|sek|eur|usd|:-))?\b", 0.7, re.IGNORECASE),
    ],
    FieldType.NUMBER: [
        (r"(-?\d{1,3}(?:[  ]\d{3})+(?:[.,]\d+)?)", 0.85, 0),
        (r"(-?\d+(?:[.,]\d+)?)", 0.85, 0),
    ],
    FieldType.EMAIL: [
        (r"\b([A-Za-z0-9._%+\-]+@[A-Za-z0-9.\-]+\.[A-Za-z]{2,})\b", 0.95, 0),
    ],
    FieldType.PHONE: [
        (r"(\+?\d[\d\s\-()]{6,}\d)", 0.85, 0),
    ],
    FieldType.ORG_NUMBER: [
        (r"\b((?:\d{2})?\d{6}-\d{4})\b", 0.95, 0),
        (r"\b(\d{10})\b", 0.7, 0),
    ],
    FieldType.IBAN: [
        (r"\b([A-Z]{2}\d{2}(?:\s?[A-Z0-9]{4}){2,7}(?:\s?[A-Z0-9]{1,4})?)\b", 0.9, 0),
    ],
}

# Unlabelled matches are weaker evidence than "Label: value".
_UNLABELLED_FACTOR = 0.75

_TOTAL_PATTERNS: list[tuple[str, float]] = [
    (
        r"(?:Grand\s*Total|Total\s*Due|Amount\s*Due|Balance\s*Due|Att\s*betala)"
        r"[:\s]*(?:\$|SEK|EUR)?\s*([\d\s.,]+\d)",
        0.9,
    ),
    (r"(?:Total|Summa)[:\s]*(?:\$|SEK|EUR)?\s*([\d\s.,]+\d)", 0.8),
]


def normalize_value(definition: FieldDefinition, raw: Any) -> tuple[Any, bool]:
    """Normalize a raw value for its field type.

    Args:
        definition: Target field definition.
        raw: Raw value as found in the source.

    Returns:
        Tuple of (normalized_value, parsed_ok). Values that do not parse are
        returned stripped but unchanged.
    """
    if is_empty(raw):
        return None, False
    text = str(raw).strip()

    match definition.type:
        case FieldType.DATE:
            parsed = parse_date(text)
            return (parsed.isoformat(), True) if parsed else (text, False)
        case FieldType.AMOUNT:
            amount = parse_amount(text)
            return (format_amount(amount), True) if amount is not None else (text, False)
        case FieldType.NUMBER:
            amount = parse_amount(text)
            if amount is None:
                return text, False
            if amount == amount.to_integral_value():
                return str(int(amount)), True
            return str(amount.normalize()), True
        case FieldType.BOOLEAN:
            flag = parse_bool(text)
            return (flag, True) if flag is not None else (text, False)
        case FieldType.EMAIL:
            return text, is_valid_email(text)
        case FieldType.PHONE:
            return text, is_valid_phone(text)
        case FieldType.ORG_NUMBER:
            return text, is_valid_org_number(text)
        case FieldType.IBAN:
            compact = re.sub(r"\s", "", text).upper()
            return compact, is_valid_iban(compact)
        case FieldType.ENUM:
            for option in definition.enum_values:
                if option.lower() == text.lower():
                    return option, True
            return text, False
        case _:
            if definition.pattern and not re.fullmatch(definition.pattern, text):
                return text, False
            return text, True


class RuleModelClient(ModelClient):
    """Regex and heuristics behind the ``ModelClient`` contract.

    Args:
        role: Pipeline role served by this client.
    """

    model = "rules"

    def __init__(self, role: str = "extraction") -> None:
        self.role = role

    def invoke(self, request: ModelRequest) -> ModelResponse:
        started = time.perf_counter()
        response = ModelResponse()

        if request.role != "verification":
            if request.text:
                response.fields = self.extract_fields(
                    request.text, request.schema, request.field_keys or None
                )
            if request.rows:
                response.line_items = self.map_rows(
                    request.header, request.rows, request.schema, request.row_offset
                )
            elif request.lines:
                response.line_items = self.parse_lines(
                    request.lines, request.schema, request.row_offset
                )
            elif request.items:
                response.line_items = self.reexamine_items(request.items, request.schema)

        response.usage = UsageRecord(
            role=self.role,
            model=self.model,
            duration_ms=round((time.perf_counter() - started) * 1000, 2),
        )
        return response

    def extract_fields(
        self,
        text: str,
        schema: DocumentSchema,
        keys: list[str] | None = None,
    ) -> dict[str, dict[str, Any]]:
        """Extract header fields from free text.

        A ``Label: value`` match wins over a bare type-pattern match.

        Args:
            text: OCR or decoded document text.
            schema: Target schema.
            keys: Restrict extraction to these field keys.

        Returns:
            Mapping of field key to ``{"value", "confidence"}``.
        """
        found: dict[str, dict[str, Any]] = {}
        for definition in schema.fields:
            if keys is not None and definition.key not in keys:
                continue
            hit = self._labelled(text, definition) or self._unlabelled(text, definition)
            if hit is not None:
                found[definition.key] = {"value": hit[0], "confidence": hit[1]}

        logger.debug("Rule extraction found %d of %d fields", len(found), len(schema.fields))
        return found

    def _labelled(
        self, text: str, definition: FieldDefinition
    ) -> tuple[Any, float] | None:
        for name in definition.names:
            pattern = rf"(?<![\w]){re.escape(name)}\s*(?:no\.?|nr\.?)?\s*[:#]\s*([^\n]+)"
            match = re.search(pattern, text, re.IGNORECASE)
            if not match:
                continue
            remainder = match.group(1).strip().lstrip(":#").strip()
            candidate = self._first_typed(remainder, definition)
            if candidate is not None:
                value, ok = normalize_value(definition, candidate[0])
                return value, round(candidate[1] if ok else 0.5, 4)
            if definition.type in (FieldType.TEXT, FieldType.ENUM):
                value, ok = normalize_value(definition, remainder[:120])
                return value, 0.85 if ok else 0.5
        return None

    def _unlabelled(
        self, text: str, definition: FieldDefinition
    ) -> tuple[Any, float] | None:
        if definition.type == FieldType.ENUM:
            for option in definition.enum_values:
                if re.search(rf"\b{re.escape(option)}\b", text, re.IGNORECASE):
                    return option, 0.6
            return None
        if definition.type == FieldType.AMOUNT and "total" in definition.key:
            for pattern, confidence in _TOTAL_PATTERNS:
                match = re.search(pattern, text, re.IGNORECASE)
                if match:
                    value, ok = normalize_value(definition, match.group(1))
                    if ok:
                        return value, confidence
        if definition.type not in (
            FieldType.DATE,
            FieldType.EMAIL,
            FieldType.ORG_NUMBER,
            FieldType.IBAN,
        ):
            return None
        candidate = self._first_typed(text, definition)
        if candidate is None:
            return None
        value, ok = normalize_value(definition, candidate[0])
        if not ok:
            return None
        return value, round(candidate[1] * _UNLABELLED_FACTOR, 4)

    def _first_typed(
        self, text: str, definition: FieldDefinition
    ) -> tuple[str, float] | None:
        if definition.pattern:
            match = re.search(definition.pattern, text)
            return (match.group(0), 0.9) if match else None
        for pattern, confidence, flags in _VALUE_PATTERNS.get(definition.type, []):
            match = re.search(pattern, text, flags)
            if match:
                return match.group(1), confidence
        return None

    def map_rows(
        self,
        header: list[str],
        rows: list[list[str]],
        schema: DocumentSchema,
        row_offset: int = 0,
    ) -> list[dict[str, Any]]:
        """Map spreadsheet rows onto the schema's line-item columns.

        Columns are matched by header aliases; unmatched columns are kept as
        extension fields under a slug of their header text.

        Args:
            header: Header row of the sheet.
            rows: Data rows of this chunk.
            schema: Target schema.
            row_offset: Index of the first row in the full sheet.

        Returns:
            Line items with ``values``, ``confidence`` and absolute ``index``.
        """
        mapping = self.column_mapping(header, schema)
        items: list[dict[str, Any]] = []
        for i, row in enumerate(rows):
            values: dict[str, Any] = {}
            scores: list[float] = []
            for col, cell in enumerate(row):
                if col >= len(header) or is_empty(cell):
                    continue
                definition = mapping.get(col)
                if definition is None:
                    values[_slug(header[col]) or f"column_{col}"] = cell
                    continue
                value, ok = normalize_value(definition, cell)
                values[definition.key] = value
                scores.append(0.95 if ok else 0.5)
            if schema.table is not None:
                for definition in schema.table.columns:
                    if definition.required and definition.key not in values:
                        scores.append(0.0)
            items.append(
                {
                    "values": values,
                    "confidence": round(sum(scores) / len(scores), 4) if scores else 0.0,
                    "index": row_offset + i,
                }
            )
        return items

    def column_mapping(
        self, header: list[str], schema: DocumentSchema
    ) -> dict[int, FieldDefinition]:
        """Match header cells to table columns; exact alias matches first."""
        if schema.table is None:
            return {}
        mapping: dict[int, FieldDefinition] = {}
        taken: set[str] = set()
        cells = [h.strip().lower() for h in header]

        for exact in (True, False):
            for col, cell in enumerate(cells):
                if col in mapping or not cell:
                    continue
                for definition in schema.table.columns:
                    if definition.key in taken:
                        continue
                    names = definition.names
                    hit = cell in names if exact else any(n in cell for n in names if len(n) > 2)
                    if hit:
                        mapping[col] = definition
                        taken.add(definition.key)
                        break
        return mapping

    def parse_lines(
        self,
        lines: list[str],
        schema: DocumentSchema,
        row_offset: int = 0,
    ) -> list[dict[str, Any]]:
        """Turn OCR table lines into line items by cell type.

        Each cell goes to the first unfilled column whose type it parses as;
        free text goes to text columns in order.
        """
        if schema.table is None:
            return []
        items: list[dict[str, Any]] = []
        for i, line in enumerate(lines):
            cells = [c.strip() for c in re.split(r"\s*\|\s*|\s{2,}", line) if c.strip()]
            values: dict[str, Any] = {}
            scores: list[float] = []
            for cell in cells:
                for definition in schema.table.columns:
                    if definition.key in values:
                        continue
                    value, ok = normalize_value(definition, cell)
                    if ok and (definition.type != FieldType.TEXT or not _looks_numeric(cell)):
                        values[definition.key] = value
                        scores.append(0.8 if definition.type != FieldType.TEXT else 0.7)
                        break
            for definition in schema.table.columns:
                if definition.required and definition.key not in values:
                    scores.append(0.0)
            if values:
                items.append(
                    {
                        "values": values,
                        "confidence": round(sum(scores) / len(scores), 4) if scores else 0.0,
                        "index": row_offset + i,
                    }
                )
        return items

    def reexamine_items(
        self, items: list[dict[str, Any]], schema: DocumentSchema
    ) -> list[dict[str, Any]]:
        """Re-normalize and re-score line items sent back for a second look."""
        results: list[dict[str, Any]] = []
        for item in items:
            values: dict[str, Any] = {}
            scores: list[float] = []
            for key, raw in item.items():
                if key.startswith("_"):
                    continue
                definition = schema.column(key)
                if definition is None:
                    values[key] = raw
                    continue
                value, ok = normalize_value(definition, raw)
                values[key] = value
                scores.append(0.95 if ok else 0.4)
            results.append(
                {
                    "values": values,
                    "confidence": round(sum(scores) / len(scores), 4) if scores else 0.0,
                    "index": item.get("_index"),
                }
            )
        return results


def _slug(text: str) -> str:
    return re.sub(r"[^a-z0-9]+", "_", text.strip().lower()).strip("_")


def _looks_numeric(text: str) -> bool:
    return bool(re.fullmatch(r"[\d\s.,\-/:%]+(?:kg|kr|st|pcs|t)?", text.strip().lower()))
