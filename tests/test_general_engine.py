"""Tests for the general extraction engine."""

from docsense.errors import TransientProviderError
from docsense.extraction.general_engine import GeneralExtractionEngine, tabular_lines
from docsense.ingest.loader import SourceDocument, SourceKind
from docsense.providers.base import ModelClient, ModelRequest, ModelResponse
from docsense.providers.rules import RuleModelClient
from docsense.schema import DELIVERY_NOTE, INVOICE
from docsense.utils.config import ExtractionConfig


class RecordingClient(ModelClient):
    """Delegates to the rule client and records every request."""

    def __init__(self, fail_first: int = 0) -> None:
        self.requests: list[ModelRequest] = []
        self.fail_first = fail_first
        self._inner = RuleModelClient()

    def invoke(self, request: ModelRequest) -> ModelResponse:
        self.requests.append(request)
        if len(self.requests) <= self.fail_first:
            raise TransientProviderError("rate limited")
        return self._inner.invoke(request)


def _delivery_sheet(rows: int) -> SourceDocument:
    header = ["Datum", "Adress", "Fraktion", "Vikt", "Enhet"]
    data = [
        [f"2024-01-{(i % 28) + 1:02d}", f"Storgatan {i}", "Wood", str(100 + i), "kg"]
        for i in range(rows)
    ]
    return SourceDocument(
        filename="weights.xlsx",
        kind=SourceKind.SPREADSHEET,
        content=b"",
        header=header,
        rows=data,
        text="\n".join(" | ".join(r) for r in [header, *data]),
    )


def _text_source(text: str) -> SourceDocument:
    return SourceDocument(
        filename="invoice.txt", kind=SourceKind.TEXT, content=text.encode(), text=text
    )


class TestTabularLines:
    """Tests for table line detection in plain text."""

    def test_detects_pipes_tabs_and_gaps(self) -> None:
        text = "Header line\nA | B | C\nx\ty\nitem    12.00\nplain words here"
        assert tabular_lines(text) == ["A | B | C", "x\ty", "item    12.00"]


class TestSpreadsheetExtraction:
    """Tests for batched spreadsheet structuring."""

    def test_rows_batched_in_order(self) -> None:
        client = RecordingClient()
        engine = GeneralExtractionEngine(client, ExtractionConfig(batch_size=25))
        result = engine.extract(_delivery_sheet(53), DELIVERY_NOTE)

        roles = [r.role for r in client.requests]
        assert roles == ["extraction", "structuring", "structuring", "structuring"]
        structuring = client.requests[1:]
        assert [len(r.rows) for r in structuring] == [25, 25, 3]
        assert [r.row_offset for r in structuring] == [0, 25, 50]
        assert all(r.header == _delivery_sheet(0).header for r in structuring)

        assert [item.index for item in result.line_items] == list(range(53))
        assert result.line_items[52].values["location"] == "Storgatan 52"
        assert result.line_items[0].values["weight_kg"] == "100"
        assert result.batches == 4
        assert result.engine_used == "general"

    def test_preamble_excludes_line_items(self) -> None:
        client = RecordingClient()
        engine = GeneralExtractionEngine(client, ExtractionConfig(header_rows=2))
        engine.extract(_delivery_sheet(5), DELIVERY_NOTE)
        preamble = client.requests[0].text
        assert preamble.splitlines()[0] == "Datum | Adress | Fraktion | Vikt | Enhet"
        assert len(preamble.splitlines()) == 3

    def test_structuring_client_used_for_batches(self) -> None:
        extraction, structuring = RecordingClient(), RecordingClient()
        engine = GeneralExtractionEngine(
            extraction, ExtractionConfig(), structuring_client=structuring
        )
        engine.extract(_delivery_sheet(30), DELIVERY_NOTE)
        assert [r.role for r in extraction.requests] == ["extraction"]
        assert [r.role for r in structuring.requests] == ["structuring", "structuring"]


class TestTextExtraction:
    """Tests for text documents."""

    def test_invoice_fields(self, invoice_text: str) -> None:
        engine = GeneralExtractionEngine(RuleModelClient(), ExtractionConfig())
        result = engine.extract(_text_source(invoice_text), INVOICE)
        assert result.fields["invoice_number"].value == "INV-1001"
        assert result.fields["total_amount"].value == "1250.00"
        assert result.line_items == ()
        assert result.overall_confidence == 0.8786
        assert result.source_text == invoice_text

    def test_table_lines_structured(self, invoice_text: str) -> None:
        text = invoice_text + "Consulting hours | 10 | 95.00 | 950.00\nTravel | 1 | 300.00 | 300.00\n"
        client = RecordingClient()
        engine = GeneralExtractionEngine(client, ExtractionConfig(batch_size=1))
        result = engine.extract(_text_source(text), INVOICE)
        assert [r.role for r in client.requests] == ["extraction", "structuring", "structuring"]
        assert [item.index for item in result.line_items] == [0, 1]
        assert result.line_items[1].values["description"] == "Travel"

    def test_transient_failure_retried(self, invoice_text: str) -> None:
        delays: list[float] = []
        client = RecordingClient(fail_first=1)
        engine = GeneralExtractionEngine(
            client, ExtractionConfig(max_retries=1), sleep=delays.append
        )
        result = engine.extract(_text_source(invoice_text), INVOICE)
        assert len(client.requests) == 2
        assert len(delays) == 1
        assert "invoice_number" in result.fields
