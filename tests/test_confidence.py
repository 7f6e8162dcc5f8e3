"""Tests for confidence normalization, aggregation and batching."""

import pytest

from docsense.extraction.confidence import (
    UNSCORED_CONFIDENCE,
    aggregate_confidence,
    iter_batches,
    normalize_confidence,
    to_percent,
)
from docsense.extraction.result import FieldValue, LineItem
from docsense.schema import DocumentSchema, FieldDefinition


@pytest.fixture
def schema() -> DocumentSchema:
    return DocumentSchema(
        "work_order",
        fields=(
            FieldDefinition("order_id", required=True),
            FieldDefinition("issued_on", required=True),
            FieldDefinition("notes"),
        ),
    )


class TestNormalizeConfidence:
    """Tests for normalize_confidence."""

    def test_unit_scale(self) -> None:
        assert normalize_confidence(0.83) == 0.83

    def test_percent_scale(self) -> None:
        assert normalize_confidence(83, scale=100) == 0.83

    def test_value_above_one_read_as_percent(self) -> None:
        assert normalize_confidence(91.5) == 0.915

    def test_clamped(self) -> None:
        assert normalize_confidence(-0.2) == 0.0
        assert normalize_confidence(250) == 1.0

    @pytest.mark.parametrize("raw", [None, "high", True])
    def test_unscored(self, raw: object) -> None:
        assert normalize_confidence(raw) == UNSCORED_CONFIDENCE


class TestAggregateConfidence:
    """Tests for aggregate_confidence."""

    def test_mean_of_fields_and_items(self, schema: DocumentSchema) -> None:
        fields = {
            "order_id": FieldValue("WO-1", 0.9),
            "issued_on": FieldValue("2024-01-01", 0.7),
        }
        items = [LineItem(0, {"task": "paint"}, 0.8)]
        assert aggregate_confidence(fields, items, schema) == 0.8

    def test_missing_required_counts_as_zero(self, schema: DocumentSchema) -> None:
        fields = {"order_id": FieldValue("WO-1", 0.9)}
        assert aggregate_confidence(fields, [], schema) == 0.45

    def test_missing_optional_excluded(self, schema: DocumentSchema) -> None:
        fields = {
            "order_id": FieldValue("WO-1", 0.9),
            "issued_on": FieldValue("2024-01-01", 0.9),
        }
        assert aggregate_confidence(fields, [], schema) == 0.9

    def test_extension_fields_included(self, schema: DocumentSchema) -> None:
        fields = {
            "order_id": FieldValue("WO-1", 1.0),
            "issued_on": FieldValue("2024-01-01", 1.0),
            "site_code": FieldValue("S7", 0.4),
        }
        assert aggregate_confidence(fields, [], schema) == 0.8

    def test_nothing_scored(self) -> None:
        assert aggregate_confidence({}, [], DocumentSchema("empty")) == 0.0

    def test_rounded_to_four_decimals(self, schema: DocumentSchema) -> None:
        fields = {
            "order_id": FieldValue("WO-1", 1.0),
            "issued_on": FieldValue("2024-01-01", 1.0),
            "notes": FieldValue("n/a", 0.0),
        }
        assert aggregate_confidence(fields, [], schema) == 0.6667


class TestToPercent:
    """Tests for to_percent."""

    def test_two_decimals(self) -> None:
        assert to_percent(0.87857) == 87.86
        assert to_percent(0.8) == 80.0


class TestIterBatches:
    """Tests for iter_batches."""

    def test_uneven_split(self) -> None:
        batches = list(iter_batches(list(range(53)), 25))
        assert [offset for offset, _ in batches] == [0, 25, 50]
        assert [len(batch) for _, batch in batches] == [25, 25, 3]
        assert [x for _, batch in batches for x in batch] == list(range(53))

    def test_empty(self) -> None:
        assert list(iter_batches([], 25)) == []

    def test_invalid_size(self) -> None:
        with pytest.raises(ValueError):
            list(iter_batches([1, 2], 0))
