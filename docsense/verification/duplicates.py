"""Duplicate detection against a user's earlier documents.

A document is compared with the user's other documents, newest first:

- identical bytes (content hash) is an ``exact`` duplicate;
- the same invoice number from the same vendor is ``high``;
- the same date, supplier and total weight on a delivery note is ``high``;
- the same vendor and total amount is ``medium``;
- the same filename is ``medium``.

A match never blocks approval. It is recorded with the verification artifact
so a reviewer can see it.
"""

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from enum import StrEnum
from typing import Any

from docsense.extraction.result import FieldValue
from docsense.records import Document
from docsense.store.base import DocumentStore
from docsense.utils.logger import get_logger
from docsense.values import is_empty, parse_amount, parse_date

logger = get_logger(__name__)

PARTY_KEYS = ("vendor_name", "supplier", "merchant")

AMOUNT_TOLERANCE = Decimal("0.01")
WEIGHT_TOLERANCE = Decimal("0.1")


class DuplicateLevel(StrEnum):
    """How sure a duplicate match is."""

    EXACT = "exact"
    HIGH = "high"
    MEDIUM = "medium"


_RANK = {DuplicateLevel.EXACT: 3, DuplicateLevel.HIGH: 2, DuplicateLevel.MEDIUM: 1}


@dataclass(frozen=True)
class DuplicateMatch:
    """An earlier document the checked one appears to duplicate."""

    document_id: str
    filename: str
    level: DuplicateLevel
    reason: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "document_id": self.document_id,
            "filename": self.filename,
            "level": str(self.level),
            "reason": self.reason,
        }


@dataclass(frozen=True)
class _Identity:
    """The fields a duplicate check compares, parsed once."""

    number: str | None
    party: str | None
    total: Decimal | None
    day: date | None
    weight: Decimal | None

    @classmethod
    def from_values(cls, values: dict[str, Any]) -> "_Identity":
        parties = [str(values[k]).strip() for k in PARTY_KEYS if not is_empty(values.get(k))]
        party = parties[0] if parties else None
        number = values.get("invoice_number")
        return cls(
            number=None if is_empty(number) else str(number).strip(),
            party=party.casefold() if party else None,
            total=parse_amount(values.get("total_amount")),
            day=parse_date(values.get("document_date") or values.get("invoice_date")),
            weight=parse_amount(values.get("total_weight_kg")),
        )


def _stored_values(document: Document) -> dict[str, Any]:
    fields = (document.extracted_data or {}).get("fields") or {}
    values: dict[str, Any] = {}
    for key, raw in fields.items():
        values[key] = raw.get("value") if isinstance(raw, dict) else raw
    return values


class DuplicateDetector:
    """Finds the strongest earlier match for a document.

    Args:
        store: Document Store holding the user's documents.
        max_candidates: How many of the user's most recent documents are
            compared field by field.
    """

    def __init__(self, store: DocumentStore, max_candidates: int = 50) -> None:
        self.store = store
        self.max_candidates = max_candidates

    def check(
        self, document: Document, fields: dict[str, FieldValue] | None = None
    ) -> DuplicateMatch | None:
        """Return the strongest match for ``document``, or ``None``.

        Args:
            document: The document being checked; never matches itself.
            fields: Its freshly extracted fields, if any.
        """
        if document.content_hash:
            same_bytes = [
                d
                for d in self.store.find_by_content_hash(document.user_id, document.content_hash)
                if d.id != document.id
            ]
            if same_bytes:
                other = same_bytes[-1]
                return self._found(
                    document,
                    DuplicateMatch(
                        other.id,
                        other.filename,
                        DuplicateLevel.EXACT,
                        "identical file already uploaded",
                    ),
                )

        candidates = [
            d for d in self.store.list_documents(user_id=document.user_id) if d.id != document.id
        ]
        candidates.reverse()
        candidates = candidates[: self.max_candidates]

        best: DuplicateMatch | None = None
        if fields:
            mine = _Identity.from_values({k: v.value for k, v in fields.items()})
            for other in candidates:
                match = self._compare(mine, other)
                if match is not None and (best is None or _RANK[match.level] > _RANK[best.level]):
                    best = match
        if best is None:
            for other in candidates:
                if other.filename == document.filename:
                    best = DuplicateMatch(
                        other.id,
                        other.filename,
                        DuplicateLevel.MEDIUM,
                        "a file with the same name was already uploaded",
                    )
                    break
        return self._found(document, best) if best is not None else None

    def _compare(self, mine: _Identity, other: Document) -> DuplicateMatch | None:
        theirs = _Identity.from_values(_stored_values(other))
        if mine.party is None or mine.party != theirs.party:
            return None
        if mine.number is not None and mine.number == theirs.number:
            return DuplicateMatch(
                other.id,
                other.filename,
                DuplicateLevel.HIGH,
                f"invoice {mine.number} from the same vendor already exists",
            )
        if (
            mine.day is not None
            and mine.day == theirs.day
            and mine.weight is not None
            and theirs.weight is not None
            and abs(mine.weight - theirs.weight) < WEIGHT_TOLERANCE
        ):
            return DuplicateMatch(
                other.id,
                other.filename,
                DuplicateLevel.HIGH,
                "same date, supplier and weight",
            )
        if (
            mine.total is not None
            and theirs.total is not None
            and abs(mine.total - theirs.total) < AMOUNT_TOLERANCE
        ):
            return DuplicateMatch(
                other.id,
                other.filename,
                DuplicateLevel.MEDIUM,
                f"same vendor and total amount ({mine.total})",
            )
        return None

    def _found(self, document: Document, match: DuplicateMatch) -> DuplicateMatch:
        logger.warning(
            "Document %s looks like a %s duplicate of %s: %s",
            document.id,
            match.level,
            match.document_id,
            match.reason,
        )
        return match
