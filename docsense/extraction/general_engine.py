"""General-purpose extraction for spreadsheets, text and clean scans.

Spreadsheets are sent in fixed-size row batches, each carrying the header
row and the batch's offset so the model can return absolute row indices.
Clean scans are read with plain Tesseract (no binarization or layout pass)
and handed to the model as text.
"""

import re
import time
from collections.abc import Callable

from docsense.ingest.loader import SourceDocument, SourceKind
from docsense.ocr.tesseract_engine import TesseractEngine
from docsense.providers.base import ModelClient, ModelRequest
from docsense.schema import DocumentSchema
from docsense.utils.config import ExtractionConfig
from docsense.utils.logger import get_logger

from .base import ExtractionEngine, ResponseCollector
from .result import ExtractionResult

logger = get_logger(__name__)

_TABULAR_LINE = re.compile(r"\t|\s\|\s|\S\s{2,}\S")


def tabular_lines(text: str) -> list[str]:
    """Lines of ``text`` that look like table rows (tab, pipe or wide gaps)."""
    return [line.strip() for line in text.splitlines() if _TABULAR_LINE.search(line)]


class GeneralExtractionEngine(ExtractionEngine):
    """Vision/text extraction strategy.

    Args:
        client: Model client for header fields and line items.
        config: Batch size and retry policy.
        reader: Tesseract engine used to read page images to text.
        page_dpi: Resolution for rendering PDF pages.
        sleep: Sleep function used between retries.
        structuring_client: Client for line-item batches; defaults to ``client``.
    """

    name = "general"

    def __init__(
        self,
        client: ModelClient,
        config: ExtractionConfig,
        reader: TesseractEngine | None = None,
        page_dpi: int = 300,
        sleep: Callable[[float], None] = time.sleep,
        structuring_client: ModelClient | None = None,
    ) -> None:
        super().__init__(client, config, sleep, structuring_client)
        self.reader = reader
        self.page_dpi = page_dpi

    def extract(self, source: SourceDocument, schema: DocumentSchema) -> ExtractionResult:
        collector = ResponseCollector()

        if source.kind == SourceKind.SPREADSHEET:
            text = self._extract_sheet(source, schema, collector)
        else:
            text = source.text if source.kind == SourceKind.TEXT else self._read_pages(source)
            self._extract_text(text, schema, collector)

        result = collector.build(schema, self.name, text)
        logger.info(
            "General extraction of %s: %d field(s), %d line item(s) in %d call(s)",
            source.filename,
            len(result.fields),
            len(result.line_items),
            result.batches,
        )
        return result

    def _extract_sheet(
        self,
        source: SourceDocument,
        schema: DocumentSchema,
        collector: ResponseCollector,
    ) -> str:
        preamble_rows = [source.header, *source.rows[: self.config.header_rows]]
        preamble = "\n".join(" | ".join(row) for row in preamble_rows)
        if schema.fields:
            response = self.invoke(
                ModelRequest(role="extraction", schema=schema, text=preamble)
            )
            # rows are itemized by the batched calls below
            response.line_items = []
            collector.add(response)

        if schema.table is not None and source.rows:
            self.extract_line_batches(
                lambda offset, batch: ModelRequest(
                    role="structuring",
                    schema=schema,
                    header=list(source.header),
                    rows=batch,
                    row_offset=offset,
                ),
                source.rows,
                collector,
            )
        return source.text

    def _extract_text(
        self, text: str, schema: DocumentSchema, collector: ResponseCollector
    ) -> None:
        response = self.invoke(ModelRequest(role="extraction", schema=schema, text=text))
        lines = tabular_lines(text) if schema.table is not None else []
        if lines:
            response.line_items = []
        collector.add(response)
        if lines:
            self.extract_line_batches(
                lambda offset, batch: ModelRequest(
                    role="structuring",
                    schema=schema,
                    lines=batch,
                    row_offset=offset,
                ),
                lines,
                collector,
            )

    def _read_pages(self, source: SourceDocument) -> str:
        if self.reader is None:
            raise ValueError("general engine needs a text reader for scanned documents")
        pages = source.render_pages(dpi=self.page_dpi)
        return "\n\n".join(self.reader.extract_text(page).text for page in pages)
