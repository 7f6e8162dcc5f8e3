"""Target schemas for extraction.

A schema lists the typed header fields of a document type plus an optional
line-item table. Extracted payloads may carry extra keys that the schema
does not name; those are kept as open extension fields.
"""

import re
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import Any

import yaml

from docsense.errors import ValidationError
from docsense.utils.logger import get_logger

logger = get_logger(__name__)


class FieldType(StrEnum):
    """Value type of a schema field, used by extraction and verification."""

    TEXT = "text"
    DATE = "date"
    AMOUNT = "amount"
    NUMBER = "number"
    EMAIL = "email"
    PHONE = "phone"
    ORG_NUMBER = "org_number"
    IBAN = "iban"
    ENUM = "enum"
    BOOLEAN = "boolean"


@dataclass(frozen=True)
class FieldDefinition:
    """A single typed field of a document schema."""

    key: str
    type: FieldType = FieldType.TEXT
    label: str | None = None
    required: bool = False
    aliases: tuple[str, ...] = ()
    enum_values: tuple[str, ...] = ()
    pattern: str | None = None

    @property
    def names(self) -> tuple[str, ...]:
        """Key, label and aliases, used to match labels and column headers."""
        names = [self.key, self.key.replace("_", " ")]
        if self.label:
            names.append(self.label)
        names.extend(self.aliases)
        return tuple(n.lower() for n in names)


@dataclass(frozen=True)
class TableDefinition:
    """Line-item table of a schema.

    ``sum_field`` and ``total_field`` drive the cross-field check that the
    line items add up to the document total.
    """

    columns: tuple[FieldDefinition, ...]
    sum_field: str | None = None
    total_field: str | None = None


@dataclass(frozen=True)
class DocumentSchema:
    """Versioned target schema for one document type."""

    doc_type: str
    version: int = 1
    fields: tuple[FieldDefinition, ...] = ()
    table: TableDefinition | None = None

    @property
    def required_keys(self) -> tuple[str, ...]:
        return tuple(f.key for f in self.fields if f.required)

    def field(self, key: str) -> FieldDefinition | None:
        """Return the header field definition for ``key``, if declared."""
        for definition in self.fields:
            if definition.key == key:
                return definition
        return None

    def column(self, key: str) -> FieldDefinition | None:
        """Return the line-item column definition for ``key``, if declared."""
        if self.table is None:
            return None
        for definition in self.table.columns:
            if definition.key == key:
                return definition
        return None

    def validate(self) -> None:
        """Check the schema is well-formed.

        Raises:
            ValidationError: On empty or duplicate keys, enum fields without
                values, invalid regex patterns, or table totals that name
                undeclared fields.
        """
        if not self.doc_type:
            raise ValidationError("schema doc_type must not be empty")
        _validate_definitions(self.doc_type, self.fields)
        if self.table is not None:
            if not self.table.columns:
                raise ValidationError(f"{self.doc_type}: table has no columns")
            _validate_definitions(self.doc_type, self.table.columns)
            if self.table.sum_field and self.column(self.table.sum_field) is None:
                raise ValidationError(
                    f"{self.doc_type}: sum_field '{self.table.sum_field}' "
                    "is not a table column"
                )
            if self.table.total_field and self.field(self.table.total_field) is None:
                raise ValidationError(
                    f"{self.doc_type}: total_field '{self.table.total_field}' "
                    "is not a header field"
                )

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the plain structure accepted by ``schema_from_dict``."""
        data: dict[str, Any] = {
            "doc_type": self.doc_type,
            "version": self.version,
            "fields": [_definition_to_dict(f) for f in self.fields],
        }
        if self.table is not None:
            data["table"] = {
                "columns": [_definition_to_dict(c) for c in self.table.columns],
                "sum_field": self.table.sum_field,
                "total_field": self.table.total_field,
            }
        return data


def _validate_definitions(
    doc_type: str, definitions: tuple[FieldDefinition, ...]
) -> None:
    seen: set[str] = set()
    for definition in definitions:
        if not definition.key or not definition.key.strip():
            raise ValidationError(f"{doc_type}: field key must not be empty")
        if definition.key in seen:
            raise ValidationError(f"{doc_type}: duplicate field key '{definition.key}'")
        seen.add(definition.key)
        if definition.type == FieldType.ENUM and not definition.enum_values:
            raise ValidationError(
                f"{doc_type}: enum field '{definition.key}' has no values"
            )
        if definition.pattern is not None:
            try:
                re.compile(definition.pattern)
            except re.error as exc:
                raise ValidationError(
                    f"{doc_type}: invalid pattern for '{definition.key}': {exc}"
                ) from exc


def _definition_to_dict(definition: FieldDefinition) -> dict[str, Any]:
    data: dict[str, Any] = {"key": definition.key, "type": str(definition.type)}
    if definition.label:
        data["label"] = definition.label
    if definition.required:
        data["required"] = True
    if definition.aliases:
        data["aliases"] = list(definition.aliases)
    if definition.enum_values:
        data["enum_values"] = list(definition.enum_values)
    if definition.pattern:
        data["pattern"] = definition.pattern
    return data


def _definition_from_dict(doc_type: str, raw: Any) -> FieldDefinition:
    if isinstance(raw, str):
        return FieldDefinition(key=raw)
    if not isinstance(raw, dict):
        raise ValidationError(f"{doc_type}: field entries must be mappings")
    try:
        field_type = FieldType(raw.get("type", "text"))
    except ValueError as exc:
        raise ValidationError(
            f"{doc_type}: unknown field type '{raw.get('type')}'"
        ) from exc
    return FieldDefinition(
        key=str(raw.get("key", "")),
        type=field_type,
        label=raw.get("label"),
        required=bool(raw.get("required", False)),
        aliases=tuple(raw.get("aliases", ())),
        enum_values=tuple(str(v) for v in raw.get("enum_values", ())),
        pattern=raw.get("pattern"),
    )


def schema_from_dict(raw: dict[str, Any]) -> DocumentSchema:
    """Build and validate a schema from its plain (YAML/JSON) form.

    Args:
        raw: Mapping with ``doc_type``, ``version``, ``fields`` and an
            optional ``table`` with ``columns``, ``sum_field``, ``total_field``.

    Returns:
        A validated schema.

    Raises:
        ValidationError: If the mapping does not describe a valid schema.
    """
    if not isinstance(raw, dict):
        raise ValidationError("schema must be a mapping")
    doc_type = str(raw.get("doc_type", ""))
    fields = tuple(_definition_from_dict(doc_type, f) for f in raw.get("fields", ()))

    table = None
    raw_table = raw.get("table")
    if raw_table is not None:
        if not isinstance(raw_table, dict):
            raise ValidationError(f"{doc_type}: table must be a mapping")
        table = TableDefinition(
            columns=tuple(
                _definition_from_dict(doc_type, c) for c in raw_table.get("columns", ())
            ),
            sum_field=raw_table.get("sum_field"),
            total_field=raw_table.get("total_field"),
        )

    schema = DocumentSchema(
        doc_type=doc_type,
        version=int(raw.get("version", 1)),
        fields=fields,
        table=table,
    )
    schema.validate()
    return schema


DELIVERY_NOTE = DocumentSchema(
    doc_type="delivery_note",
    fields=(
        FieldDefinition(
            "supplier", label="Supplier", required=True, aliases=("leverantör", "company")
        ),
        FieldDefinition(
            "document_date",
            FieldType.DATE,
            label="Date",
            required=True,
            aliases=("datum", "delivery date"),
        ),
        FieldDefinition(
            "delivery_number", label="Delivery number", aliases=("följesedelsnr", "note no")
        ),
        FieldDefinition(
            "org_number", FieldType.ORG_NUMBER, label="Org nr", aliases=("org.nr",)
        ),
        FieldDefinition("total_weight_kg", FieldType.NUMBER, label="Total weight"),
    ),
    table=TableDefinition(
        columns=(
            FieldDefinition("date", FieldType.DATE, aliases=("datum",)),
            FieldDefinition("location", aliases=("address", "adress", "site", "plats")),
            FieldDefinition(
                "material", required=True, aliases=("fraction", "fraktion", "avfallstyp")
            ),
            FieldDefinition(
                "weight_kg",
                FieldType.NUMBER,
                required=True,
                aliases=("weight", "vikt", "kg", "quantity", "mängd"),
            ),
            FieldDefinition("unit", aliases=("enhet",)),
            FieldDefinition("receiver", aliases=("mottagare", "recipient")),
            FieldDefinition(
                "is_hazardous",
                FieldType.BOOLEAN,
                aliases=("hazardous", "farligt avfall", "fa"),
            ),
        ),
        sum_field="weight_kg",
        total_field="total_weight_kg",
    ),
)

INVOICE = DocumentSchema(
    doc_type="invoice",
    fields=(
        FieldDefinition(
            "invoice_number",
            label="Invoice number",
            required=True,
            aliases=("fakturanummer", "invoice no", "invoice", "faktura"),
        ),
        FieldDefinition(
            "invoice_date",
            FieldType.DATE,
            label="Invoice date",
            required=True,
            aliases=("fakturadatum", "date"),
        ),
        FieldDefinition(
            "due_date", FieldType.DATE, label="Due date", aliases=("förfallodatum",)
        ),
        FieldDefinition(
            "vendor_name", label="Vendor", required=True, aliases=("supplier", "leverantör")
        ),
        FieldDefinition(
            "vendor_org_number",
            FieldType.ORG_NUMBER,
            label="Org nr",
            aliases=("organisationsnummer", "org.nr"),
        ),
        FieldDefinition(
            "total_amount",
            FieldType.AMOUNT,
            label="Total",
            required=True,
            aliases=("att betala", "amount due", "total due"),
        ),
        FieldDefinition("vat_amount", FieldType.AMOUNT, label="VAT", aliases=("moms",)),
        FieldDefinition(
            "currency",
            FieldType.ENUM,
            enum_values=("SEK", "EUR", "USD", "NOK", "DKK", "GBP"),
        ),
        FieldDefinition("iban", FieldType.IBAN, label="IBAN"),
        FieldDefinition("email", FieldType.EMAIL, label="E-mail"),
        FieldDefinition("phone", FieldType.PHONE, label="Phone", aliases=("telefon",)),
    ),
    table=TableDefinition(
        columns=(
            FieldDefinition(
                "description",
                required=True,
                aliases=("beskrivning", "item", "artikel", "benämning"),
            ),
            FieldDefinition("quantity", FieldType.NUMBER, aliases=("antal", "qty")),
            FieldDefinition(
                "unit_price", FieldType.AMOUNT, aliases=("á-pris", "enhetspris", "price")
            ),
            FieldDefinition("amount", FieldType.AMOUNT, aliases=("belopp", "sum", "total")),
        ),
        sum_field="amount",
        total_field="total_amount",
    ),
)

RECEIPT = DocumentSchema(
    doc_type="receipt",
    fields=(
        FieldDefinition("merchant", label="Merchant", required=True, aliases=("store",)),
        FieldDefinition(
            "purchase_date", FieldType.DATE, label="Date", required=True, aliases=("datum",)
        ),
        FieldDefinition(
            "total_amount", FieldType.AMOUNT, label="Total", required=True, aliases=("summa",)
        ),
        FieldDefinition("vat_amount", FieldType.AMOUNT, label="VAT", aliases=("moms",)),
        FieldDefinition(
            "payment_method",
            FieldType.ENUM,
            enum_values=("card", "cash", "swish", "invoice", "other"),
        ),
    ),
    table=TableDefinition(
        columns=(
            FieldDefinition("description", required=True, aliases=("item", "artikel")),
            FieldDefinition("amount", FieldType.AMOUNT, aliases=("belopp", "price")),
        ),
        sum_field="amount",
        total_field="total_amount",
    ),
)

GENERIC = DocumentSchema(
    doc_type="generic",
    fields=(
        FieldDefinition("document_date", FieldType.DATE, label="Date"),
        FieldDefinition("reference", label="Reference"),
        FieldDefinition("total_amount", FieldType.AMOUNT, label="Total"),
    ),
)

BUILTIN_SCHEMAS: tuple[DocumentSchema, ...] = (DELIVERY_NOTE, INVOICE, RECEIPT, GENERIC)


class SchemaRegistry:
    """Lookup of the active schema per document type.

    Built-in schemas are always available; a YAML file may add new document
    types or override built-ins with a newer version.

    Args:
        schemas_path: Optional path to a YAML file with a ``schemas`` list.
    """

    def __init__(self, schemas_path: Path | None = None) -> None:
        self._schemas: dict[str, DocumentSchema] = {s.doc_type: s for s in BUILTIN_SCHEMAS}
        if schemas_path is not None:
            self._load(schemas_path)

    def _load(self, path: Path) -> None:
        if not path.exists():
            logger.debug("No schemas file at %s, using built-in schemas", path)
            return
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        for raw in data.get("schemas", []):
            self.register(schema_from_dict(raw))
        logger.info("Loaded %d schema(s) from %s", len(data.get("schemas", [])), path)

    def register(self, schema: DocumentSchema) -> None:
        """Validate and register ``schema``, replacing an older version."""
        schema.validate()
        existing = self._schemas.get(schema.doc_type)
        if existing is not None and existing.version > schema.version:
            logger.warning(
                "Ignoring schema %s v%d, v%d already registered",
                schema.doc_type,
                schema.version,
                existing.version,
            )
            return
        self._schemas[schema.doc_type] = schema

    def get(self, doc_type: str | None) -> DocumentSchema:
        """Return the schema for ``doc_type``, or the generic schema."""
        if doc_type and doc_type in self._schemas:
            return self._schemas[doc_type]
        return self._schemas["generic"]

    def doc_types(self) -> list[str]:
        return sorted(self._schemas)

