"""Tests for the LayoutLM model client (mocked model)."""

from unittest.mock import MagicMock, patch

import numpy as np
import torch

from docsense.providers.base import ModelRequest
from docsense.providers.layout import (
    LABEL_MAP,
    LayoutModelClient,
    aggregate_entities,
    label_targets,
)
from docsense.schema import INVOICE, RECEIPT


class TestLabelMap:
    """Tests for the BIO label mapping."""

    def test_contains_outside_label(self) -> None:
        assert LABEL_MAP[0] == "O"

    def test_all_begin_have_inside(self) -> None:
        begin_fields = {v[2:] for v in LABEL_MAP.values() if v.startswith("B-")}
        inside_fields = {v[2:] for v in LABEL_MAP.values() if v.startswith("I-")}
        assert begin_fields == inside_fields


class TestLabelTargets:
    def test_invoice(self) -> None:
        assert label_targets(INVOICE) == {
            "DATE": "invoice_date",
            "VENDOR": "vendor_name",
            "TOTAL": "total_amount",
            "TAX": "vat_amount",
        }

    def test_receipt(self) -> None:
        targets = label_targets(RECEIPT)
        assert targets["VENDOR"] == "merchant"
        assert targets["DATE"] == "purchase_date"


class TestAggregateEntities:
    """Tests for BIO aggregation."""

    def test_multi_token_entity(self) -> None:
        entities = aggregate_entities(
            ["Acme", "Supplies", "2024-03-15"], [3, 4, 1], [0.9, 0.7, 0.95]
        )
        assert entities[0][:2] == ("VENDOR", "Acme Supplies")
        assert abs(entities[0][2] - 0.8) < 1e-9
        assert entities[1] == ("DATE", "2024-03-15", 0.95)

    def test_outside_tokens_break_entities(self) -> None:
        entities = aggregate_entities(["Total", "1250.00", "SEK"], [0, 5, 0], [0.99, 0.8, 0.99])
        assert entities == [("TOTAL", "1250.00", 0.8)]

    def test_orphan_inside_ignored(self) -> None:
        assert aggregate_entities(["x"], [2], [0.9]) == []


class TestLayoutModelClient:
    """Tests for LayoutModelClient.invoke."""

    def _request(self, words: list[str]) -> ModelRequest:
        return ModelRequest(
            role="extraction",
            schema=INVOICE,
            attachment={
                "image": np.full((100, 200, 3), 255, dtype=np.uint8),
                "words": words,
                "boxes": [(0, 0, 10, 10)] * len(words),
            },
        )

    def test_no_words_skips_model(self) -> None:
        client = LayoutModelClient(device="cpu")
        with patch.object(client, "_predict") as predict:
            response = client.invoke(self._request([]))
        predict.assert_not_called()
        assert response.fields == {}
        assert response.usage.input_tokens == 0

    def test_best_entity_per_field(self) -> None:
        client = LayoutModelClient(device="cpu")
        entities = [
            ("TOTAL", "250.00", 0.6),
            ("TOTAL", "1250.00", 0.9),
            ("ITEM", "Consulting", 0.8),
        ]
        with patch.object(client, "_predict", return_value=entities):
            response = client.invoke(self._request(["Total", "1250.00"]))
        assert response.fields == {"total_amount": {"value": "1250.00", "confidence": 0.9}}
        assert response.usage.model == "microsoft/layoutlm-base-uncased"

    @patch("docsense.providers.layout.AutoModelForTokenClassification")
    @patch("docsense.providers.layout.AutoProcessor")
    def test_model_loaded_once(self, mock_proc_cls: MagicMock, mock_model_cls: MagicMock) -> None:
        logits = torch.zeros((1, 2, len(LABEL_MAP)))
        logits[0, 0, 5] = 5.0
        logits[0, 1, 6] = 5.0
        mock_model = MagicMock()
        mock_model.to.return_value = mock_model
        mock_model.return_value = MagicMock(logits=logits)
        mock_model_cls.from_pretrained.return_value = mock_model
        mock_proc_cls.from_pretrained.return_value = MagicMock(
            return_value={"input_ids": torch.zeros((1, 2), dtype=torch.long)}
        )

        client = LayoutModelClient(model_name="mock-model", device="cpu")
        request = self._request(["1250.00", "SEK"])
        first = client.invoke(request)
        client.invoke(request)

        mock_model_cls.from_pretrained.assert_called_once_with("mock-model")
        mock_proc_cls.from_pretrained.assert_called_once_with("mock-model", apply_ocr=False)
        assert first.fields["total_amount"]["value"] == "1250.00 SEK"
        assert first.fields["total_amount"]["confidence"] > 0.9
