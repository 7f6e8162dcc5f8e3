"""Rule checks run by the verifier on every extraction result.

Values are checked against their schema type, looked up in the source text
to catch fabricated values, and cross-checked (line items against the
document total, due date against issue date). A failed check on a required
field is an ``error``; everything else is a ``warning``.
"""

import re
from dataclasses import dataclass
from decimal import Decimal
from enum import StrEnum
from typing import Any

from docsense.extraction.result import FieldValue, LineItem
from docsense.schema import DocumentSchema, FieldDefinition, FieldType
from docsense.values import (
    is_empty,
    is_valid_email,
    is_valid_iban,
    is_valid_org_number,
    is_valid_phone,
    parse_amount,
    parse_bool,
    parse_date,
)

_GROUNDING_DATE_FORMATS = (
    "%Y%m%d",
    "%d%m%Y",
    "%m%d%Y",
    "%d%m%y",
    "%y%m%d",
)


class Severity(StrEnum):
    """Severity of a verification issue."""

    WARNING = "warning"
    ERROR = "error"


@dataclass(frozen=True)
class VerificationIssue:
    """A discrepancy found by verification.

    ``item_index`` is ``None`` for header fields.
    """

    item_index: int | None
    field: str
    description: str
    severity: Severity
    suggestion: str | None = None
    current_value: Any = None
    source: str = "rules"

    def to_dict(self) -> dict[str, Any]:
        return {
            "item_index": self.item_index,
            "field": self.field,
            "description": self.description,
            "severity": str(self.severity),
            "suggestion": self.suggestion,
            "current_value": self.current_value,
            "source": self.source,
        }


def _severity(definition: FieldDefinition) -> Severity:
    return Severity.ERROR if definition.required else Severity.WARNING


def check_type(definition: FieldDefinition, value: Any) -> str | None:
    """Return a description of why ``value`` is not a valid ``definition.type``."""
    match definition.type:
        case FieldType.DATE:
            if parse_date(value) is None:
                return f"'{value}' is not a recognizable date"
        case FieldType.AMOUNT | FieldType.NUMBER:
            if parse_amount(value) is None:
                return f"'{value}' is not a number"
        case FieldType.EMAIL:
            if not is_valid_email(value):
                return f"'{value}' is not a valid e-mail address"
        case FieldType.PHONE:
            if not is_valid_phone(value):
                return f"'{value}' is not a valid phone number"
        case FieldType.ORG_NUMBER:
            if not is_valid_org_number(value):
                return f"'{value}' is not a valid organisation number"
        case FieldType.IBAN:
            if not is_valid_iban(value):
                return f"'{value}' fails the IBAN checksum"
        case FieldType.ENUM:
            if str(value).lower() not in {v.lower() for v in definition.enum_values}:
                allowed = ", ".join(definition.enum_values)
                return f"'{value}' is not one of: {allowed}"
        case FieldType.BOOLEAN:
            if parse_bool(value) is None:
                return f"'{value}' is not a yes/no value"
        case _:
            if definition.pattern and not re.fullmatch(definition.pattern, str(value)):
                return f"'{value}' does not match the expected format"
    return None


class SourceIndex:
    """Normalized views of the source text for grounding lookups."""

    def __init__(self, text: str) -> None:
        self.words = re.sub(r"[^0-9a-zåäöéü]+", " ", text.lower())
        self.compact = self.words.replace(" ", "")
        self.digits = re.sub(r"\D", "", text)

    def __bool__(self) -> bool:
        return bool(self.compact)

    def contains(self, definition: FieldDefinition, value: Any) -> bool:
        if definition.type == FieldType.BOOLEAN or is_empty(value):
            return True
        if definition.type == FieldType.DATE:
            parsed = parse_date(value)
            if parsed is None:
                return self._contains_text(value)
            return any(parsed.strftime(fmt) in self.digits for fmt in _GROUNDING_DATE_FORMATS)
        if definition.type in (FieldType.AMOUNT, FieldType.NUMBER):
            amount = parse_amount(value)
            if amount is None:
                return self._contains_text(value)
            forms = {re.sub(r"\D", "", f"{abs(amount):.2f}")}
            if amount == amount.to_integral_value():
                forms.add(str(abs(int(amount))))
            else:
                forms.add(re.sub(r"\D", "", str(abs(amount.normalize()))))
            return any(form in self.digits for form in forms)
        if definition.type in (FieldType.PHONE, FieldType.ORG_NUMBER):
            return re.sub(r"\D", "", str(value)) in self.digits
        return self._contains_text(value)

    def _contains_text(self, value: Any) -> bool:
        needle = re.sub(r"[^0-9a-zåäöéü]+", "", str(value).lower())
        return not needle or needle in self.compact


class FieldRules:
    """Schema-driven checks over header fields and line items.

    Args:
        grounding_check: Whether to look values up in the source text.
    """

    def __init__(self, grounding_check: bool = True) -> None:
        self.grounding_check = grounding_check

    def check_header(
        self,
        fields: dict[str, FieldValue],
        schema: DocumentSchema,
        source: SourceIndex | None = None,
    ) -> list[VerificationIssue]:
        issues: list[VerificationIssue] = []
        for definition in schema.fields:
            current = fields.get(definition.key)
            value = current.value if current is not None else None
            issues.extend(self._check_value(None, definition, value, source))
        return issues

    def check_items(
        self,
        items: list[LineItem],
        schema: DocumentSchema,
        source: SourceIndex | None = None,
    ) -> list[VerificationIssue]:
        if schema.table is None:
            return []
        issues: list[VerificationIssue] = []
        for item in items:
            for definition in schema.table.columns:
                issues.extend(
                    self._check_value(
                        item.index, definition, item.values.get(definition.key), source
                    )
                )
        return issues

    def _check_value(
        self,
        item_index: int | None,
        definition: FieldDefinition,
        value: Any,
        source: SourceIndex | None,
    ) -> list[VerificationIssue]:
        if is_empty(value):
            if definition.required:
                return [
                    VerificationIssue(
                        item_index,
                        definition.key,
                        "required field is missing",
                        Severity.ERROR,
                    )
                ]
            return []

        problem = check_type(definition, value)
        if problem is not None:
            return [
                VerificationIssue(
                    item_index, definition.key, problem, _severity(definition), current_value=value
                )
            ]
        if self.grounding_check and source and not source.contains(definition, value):
            return [
                VerificationIssue(
                    item_index,
                    definition.key,
                    "value not found in the source document",
                    Severity.WARNING,
                    current_value=value,
                )
            ]
        return []

    def check_totals(
        self,
        fields: dict[str, FieldValue],
        items: tuple[LineItem, ...],
        schema: DocumentSchema,
    ) -> list[VerificationIssue]:
        """Cross-field consistency: item sum against total, due date after issue date."""
        issues: list[VerificationIssue] = []
        table = schema.table
        if table is not None and table.sum_field and table.total_field and items:
            total_field = fields.get(table.total_field)
            total = parse_amount(total_field.value) if total_field is not None else None
            amounts = [parse_amount(item.values.get(table.sum_field)) for item in items]
            if total is not None and amounts and all(a is not None for a in amounts):
                item_sum = sum(amounts, Decimal("0"))
                candidates = {total}
                vat_field = fields.get("vat_amount")
                vat = parse_amount(vat_field.value) if vat_field is not None else None
                if vat is not None:
                    candidates.add(total - vat)
                tolerance = Decimal("0.01") * max(len(items), 1)
                if all(abs(item_sum - c) > tolerance for c in candidates):
                    issues.append(
                        VerificationIssue(
                            None,
                            table.total_field,
                            f"line items sum to {item_sum}, total is {total}",
                            Severity.WARNING,
                            suggestion=str(item_sum),
                            current_value=total_field.value,
                        )
                    )

        issue_date = fields.get("invoice_date")
        due_date = fields.get("due_date")
        if issue_date is not None and due_date is not None:
            start, end = parse_date(issue_date.value), parse_date(due_date.value)
            if start is not None and end is not None and end < start:
                issues.append(
                    VerificationIssue(
                        None,
                        "due_date",
                        "due date is before the invoice date",
                        Severity.WARNING,
                        current_value=due_date.value,
                    )
                )
        return issues
