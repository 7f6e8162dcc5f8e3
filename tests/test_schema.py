"""Tests for document schemas and the schema registry."""

from pathlib import Path

import pytest
import yaml

from docsense.errors import ValidationError
from docsense.schema import (
    DELIVERY_NOTE,
    INVOICE,
    DocumentSchema,
    FieldDefinition,
    FieldType,
    SchemaRegistry,
    schema_from_dict,
)


def _raw_schema(**overrides: object) -> dict:
    raw = {
        "doc_type": "work_order",
        "version": 1,
        "fields": [
            {"key": "order_id", "required": True},
            {"key": "issued", "type": "date"},
        ],
        "table": {
            "columns": [
                {"key": "task", "required": True},
                {"key": "hours", "type": "number"},
            ],
            "sum_field": "hours",
        },
    }
    raw.update(overrides)
    return raw


class TestBuiltinSchemas:
    """Tests for the shipped schemas."""

    def test_builtins_are_valid(self) -> None:
        registry = SchemaRegistry()
        for doc_type in registry.doc_types():
            registry.get(doc_type).validate()

    def test_delivery_note_line_items(self) -> None:
        keys = [c.key for c in DELIVERY_NOTE.table.columns]
        assert keys == [
            "date",
            "location",
            "material",
            "weight_kg",
            "unit",
            "receiver",
            "is_hazardous",
        ]

    def test_required_keys(self) -> None:
        assert INVOICE.required_keys == (
            "invoice_number",
            "invoice_date",
            "vendor_name",
            "total_amount",
        )

    def test_field_names_include_aliases(self) -> None:
        definition = INVOICE.field("vat_amount")
        assert "moms" in definition.names
        assert "vat amount" in definition.names


class TestSchemaFromDict:
    """Tests for building schemas from YAML/JSON structures."""

    def test_valid_schema(self) -> None:
        schema = schema_from_dict(_raw_schema())
        assert schema.doc_type == "work_order"
        assert schema.field("issued").type == FieldType.DATE
        assert schema.column("hours").type == FieldType.NUMBER
        assert schema.table.sum_field == "hours"

    def test_bare_string_field(self) -> None:
        schema = schema_from_dict(_raw_schema(fields=["order_id"]))
        assert schema.fields == (FieldDefinition("order_id"),)

    def test_round_trip_through_to_dict(self) -> None:
        schema = schema_from_dict(_raw_schema())
        assert schema_from_dict(schema.to_dict()) == schema

    def test_duplicate_key_rejected(self) -> None:
        with pytest.raises(ValidationError, match="duplicate"):
            schema_from_dict(_raw_schema(fields=[{"key": "a"}, {"key": "a"}]))

    def test_unknown_type_rejected(self) -> None:
        with pytest.raises(ValidationError, match="unknown field type"):
            schema_from_dict(_raw_schema(fields=[{"key": "a", "type": "money"}]))

    def test_enum_without_values_rejected(self) -> None:
        with pytest.raises(ValidationError, match="no values"):
            schema_from_dict(_raw_schema(fields=[{"key": "a", "type": "enum"}]))

    def test_invalid_pattern_rejected(self) -> None:
        with pytest.raises(ValidationError, match="invalid pattern"):
            schema_from_dict(_raw_schema(fields=[{"key": "a", "pattern": "([a-z"}]))

    def test_sum_field_must_be_column(self) -> None:
        raw = _raw_schema()
        raw["table"]["sum_field"] = "minutes"
        with pytest.raises(ValidationError, match="sum_field"):
            schema_from_dict(raw)

    def test_empty_doc_type_rejected(self) -> None:
        with pytest.raises(ValidationError):
            schema_from_dict(_raw_schema(doc_type=""))

    def test_non_mapping_rejected(self) -> None:
        with pytest.raises(ValidationError):
            schema_from_dict(["not", "a", "mapping"])  # type: ignore[arg-type]


class TestSchemaRegistry:
    """Tests for schema lookup and YAML loading."""

    def test_unknown_type_falls_back_to_generic(self) -> None:
        registry = SchemaRegistry()
        assert registry.get("parking_ticket").doc_type == "generic"
        assert registry.get(None).doc_type == "generic"

    def test_loads_shipped_yaml(self, config_dir: Path) -> None:
        registry = SchemaRegistry(config_dir / "schemas.yaml")
        assert "purchase_order" in registry.doc_types()
        assert registry.get("purchase_order").table.total_field == "total_amount"

    def test_missing_file_keeps_builtins(self, tmp_path: Path) -> None:
        registry = SchemaRegistry(tmp_path / "missing.yaml")
        assert registry.doc_types() == ["delivery_note", "generic", "invoice", "receipt"]

    def test_newer_version_overrides_builtin(self, tmp_path: Path) -> None:
        path = tmp_path / "schemas.yaml"
        path.write_text(
            yaml.dump(
                {"schemas": [{"doc_type": "receipt", "version": 2, "fields": ["shop"]}]}
            )
        )
        registry = SchemaRegistry(path)
        assert registry.get("receipt").version == 2
        assert registry.get("receipt").fields[0].key == "shop"

    def test_older_version_ignored(self) -> None:
        registry = SchemaRegistry()
        registry.register(DocumentSchema("invoice", version=3, fields=(FieldDefinition("x"),)))
        registry.register(DocumentSchema("invoice", version=2, fields=(FieldDefinition("y"),)))
        assert registry.get("invoice").version == 3
