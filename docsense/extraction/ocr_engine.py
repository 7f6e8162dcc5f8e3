"""OCR-specialized extraction for poor scans and complex layouts.

Each page is binarized, read with Tesseract at word level and split into
layout blocks. Header fields come from the text model, optionally merged
with LayoutLM predictions; table rows found by the layout analyzer are sent
in fixed-size batches. Every confidence is scaled by the OCR confidence of
the page text it was read from.
"""

import time
from collections.abc import Callable
from typing import Any

import numpy as np

from docsense.ingest.loader import SourceDocument, SourceKind
from docsense.ocr.layout_analyzer import LayoutAnalyzer
from docsense.ocr.tesseract_engine import OCRResult, OCRWord, TesseractEngine
from docsense.providers.base import ModelClient, ModelRequest, ModelResponse
from docsense.quality.assessor import prepare_for_ocr
from docsense.schema import DocumentSchema
from docsense.utils.config import ExtractionConfig
from docsense.utils.logger import get_logger

from .base import ExtractionEngine, ResponseCollector
from .confidence import normalize_confidence
from .general_engine import tabular_lines
from .result import ExtractionResult

logger = get_logger(__name__)


class OcrExtractionEngine(ExtractionEngine):
    """OCR-specialized extraction strategy.

    Args:
        client: Model client for header fields and table rows.
        config: Batch size, retry policy and hybrid merge weights.
        reader: Tesseract engine.
        layout: Layout analyzer used to find table rows.
        layout_client: Optional LayoutLM client merged with the text model.
        page_dpi: Resolution for rendering PDF pages.
        sleep: Sleep function used between retries.
        structuring_client: Client for line-item batches; defaults to ``client``.
    """

    name = "ocr"

    def __init__(
        self,
        client: ModelClient,
        config: ExtractionConfig,
        reader: TesseractEngine,
        layout: LayoutAnalyzer | None = None,
        layout_client: ModelClient | None = None,
        page_dpi: int = 300,
        sleep: Callable[[float], None] = time.sleep,
        structuring_client: ModelClient | None = None,
    ) -> None:
        super().__init__(client, config, sleep, structuring_client)
        self.reader = reader
        self.layout = layout or LayoutAnalyzer()
        self.layout_client = layout_client
        self.page_dpi = page_dpi

    def extract(self, source: SourceDocument, schema: DocumentSchema) -> ExtractionResult:
        collector = ResponseCollector()

        if source.kind in (SourceKind.PDF, SourceKind.IMAGE):
            pages = source.render_pages(dpi=self.page_dpi)
            ocr_results = [self.reader.extract_text(prepare_for_ocr(p)) for p in pages]
            text = "\n\n".join(r.text for r in ocr_results)
            lines = self._table_lines(ocr_results)
            ocr_confidence = (
                sum(r.confidence for r in ocr_results) / len(ocr_results)
                if ocr_results
                else 0.0
            )
        else:
            # Caller forced the OCR route on a document that has no scan.
            pages, ocr_results = [], []
            text = source.text
            lines = tabular_lines(text)
            ocr_confidence = 1.0
            collector.warnings.append(f"OCR route forced on {source.kind} document")

        response = self.invoke(ModelRequest(role="extraction", schema=schema, text=text))
        if lines:
            response.line_items = []
        if self.layout_client is not None and pages and ocr_results:
            layout_response = self._layout_fields(schema, pages[0], ocr_results[0])
            if layout_response is not None:
                if layout_response.usage is not None:
                    collector.usage.append(layout_response.usage)
                response = self._merge_layout(response, layout_response)
        collector.add(response, weight=ocr_confidence)

        if schema.table is not None and lines:
            self.extract_line_batches(
                lambda offset, batch: ModelRequest(
                    role="structuring",
                    schema=schema,
                    lines=batch,
                    row_offset=offset,
                ),
                lines,
                collector,
                weight=ocr_confidence,
            )

        result = collector.build(schema, self.name, text)
        logger.info(
            "OCR extraction of %s: %d page(s), ocr_confidence=%.2f, "
            "%d field(s), %d line item(s)",
            source.filename,
            len(ocr_results),
            ocr_confidence,
            len(result.fields),
            len(result.line_items),
        )
        return result

    def _table_lines(self, ocr_results: list[OCRResult]) -> list[str]:
        lines: list[str] = []
        for result in ocr_results:
            blocks = self.layout.analyze(result.words, result.height)
            lines.extend(line.text for line in self.layout.table_lines(blocks))
        return lines

    def _layout_fields(
        self, schema: DocumentSchema, page: np.ndarray, ocr: OCRResult
    ) -> ModelResponse | None:
        try:
            return self.invoke(
                ModelRequest(
                    role="extraction",
                    schema=schema,
                    attachment={
                        "image": page,
                        "words": [w.text for w in ocr.words],
                        "boxes": normalize_boxes(ocr.words, page.shape),
                    },
                ),
                client=self.layout_client,
            )
        except Exception as exc:
            logger.warning("Layout model failed, using text model only: %s", exc)
            return None

    def _merge_layout(
        self, response: ModelResponse, layout_response: ModelResponse
    ) -> ModelResponse:
        """Weighted merge of text-model and LayoutLM header fields."""
        rule_w, layout_w = self.config.rule_weight, self.config.layout_weight
        merged: dict[str, dict[str, Any]] = {}
        for key in set(response.fields) | set(layout_response.fields):
            text_field = response.fields.get(key)
            layout_field = layout_response.fields.get(key)
            if text_field is None or layout_field is None:
                chosen = text_field or layout_field
                scale = response.confidence_scale if text_field else 1.0
                merged[key] = {
                    "value": chosen["value"],
                    "confidence": normalize_confidence(chosen.get("confidence"), scale),
                }
                continue
            text_conf = normalize_confidence(
                text_field.get("confidence"), response.confidence_scale
            )
            layout_conf = normalize_confidence(layout_field.get("confidence"))
            text_score, layout_score = text_conf * rule_w, layout_conf * layout_w
            merged[key] = {
                "value": (
                    layout_field["value"] if layout_score > text_score else text_field["value"]
                ),
                "confidence": round((text_score + layout_score) / (rule_w + layout_w), 4),
            }

        return ModelResponse(
            fields=merged,
            line_items=response.line_items,
            confidence_scale=1.0,
            usage=response.usage,
        )


def normalize_boxes(
    words: list[OCRWord], image_shape: tuple[int, ...]
) -> list[tuple[int, int, int, int]]:
    """Normalize OCR bounding boxes to the 0-1000 range LayoutLM expects.

    Args:
        words: OCR words with pixel bounding boxes.
        image_shape: ``(height, width, ...)`` of the page image.

    Returns:
        ``(x1, y1, x2, y2)`` boxes.
    """
    h, w = image_shape[:2]
    boxes: list[tuple[int, int, int, int]] = []
    for word in words:
        x1 = int(word.bbox.x * 1000 / w) if w else 0
        y1 = int(word.bbox.y * 1000 / h) if h else 0
        x2 = int((word.bbox.x + word.bbox.width) * 1000 / w) if w else 0
        y2 = int((word.bbox.y + word.bbox.height) * 1000 / h) if h else 0
        boxes.append((x1, y1, x2, y2))
    return boxes
