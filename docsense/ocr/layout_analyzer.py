"""Layout analysis for scanned pages.

Groups OCR words into blocks, classifies each block as header, table or
paragraph, and splits table rows into cells on wide horizontal gaps so the
OCR engine can batch line items.
"""

from dataclasses import dataclass

from docsense.utils.logger import get_logger

from .tesseract_engine import BoundingBox, OCRWord

logger = get_logger(__name__)


@dataclass
class TextBlock:
    """A classified region of text on a page."""

    block_type: str
    bbox: BoundingBox
    words: list[OCRWord]
    confidence: float


@dataclass
class TableLine:
    """One row of a table block, split into cells."""

    cells: list[str]
    confidence: float

    @property
    def text(self) -> str:
        return " | ".join(self.cells)


class LayoutAnalyzer:
    """Analyzes OCR word positions to identify document structure.

    Args:
        header_ratio: Fraction of page height considered the header region.
        cell_gap_ratio: A horizontal gap wider than this multiple of the
            median word height starts a new table cell.
    """

    def __init__(self, header_ratio: float = 0.15, cell_gap_ratio: float = 1.5) -> None:
        self.header_ratio = header_ratio
        self.cell_gap_ratio = cell_gap_ratio

    def analyze(self, words: list[OCRWord], image_height: int) -> list[TextBlock]:
        """Group OCR words into classified text blocks.

        Args:
            words: OCR word detections.
            image_height: Height of the source page in pixels.

        Returns:
            Classified text blocks in reading order.
        """
        if not words:
            return []

        block_groups: dict[int, list[OCRWord]] = {}
        for word in words:
            block_groups.setdefault(word.block_num, []).append(word)

        text_blocks: list[TextBlock] = []
        for block_words in block_groups.values():
            bbox = self._calculate_block_bbox(block_words)
            text_blocks.append(
                TextBlock(
                    block_type=self._classify_block(block_words, bbox, image_height),
                    bbox=bbox,
                    words=block_words,
                    confidence=sum(w.confidence for w in block_words) / len(block_words),
                )
            )

        logger.debug("Detected %d text blocks", len(text_blocks))
        return text_blocks

    def table_lines(self, blocks: list[TextBlock]) -> list[TableLine]:
        """Return the rows of every table block, in page order."""
        lines: list[TableLine] = []
        for block in blocks:
            if block.block_type != "table":
                continue
            rows: dict[int, list[OCRWord]] = {}
            for word in block.words:
                rows.setdefault(word.line_num, []).append(word)
            for line_num in sorted(rows):
                row_words = sorted(rows[line_num], key=lambda w: w.bbox.x)
                lines.append(
                    TableLine(
                        cells=self._split_cells(row_words),
                        confidence=sum(w.confidence for w in row_words) / len(row_words),
                    )
                )
        return lines

    def _split_cells(self, words: list[OCRWord]) -> list[str]:
        heights = sorted(w.bbox.height for w in words)
        gap_limit = heights[len(heights) // 2] * self.cell_gap_ratio
        cells: list[list[str]] = [[words[0].text]]
        for prev, word in zip(words, words[1:], strict=False):
            gap = word.bbox.x - (prev.bbox.x + prev.bbox.width)
            if gap > gap_limit:
                cells.append([word.text])
            else:
                cells[-1].append(word.text)
        return [" ".join(c) for c in cells]

    def _calculate_block_bbox(self, words: list[OCRWord]) -> BoundingBox:
        x_min = min(w.bbox.x for w in words)
        y_min = min(w.bbox.y for w in words)
        x_max = max(w.bbox.x + w.bbox.width for w in words)
        y_max = max(w.bbox.y + w.bbox.height for w in words)
        return BoundingBox(x_min, y_min, x_max - x_min, y_max - y_min)

    def _classify_block(
        self,
        words: list[OCRWord],
        bbox: BoundingBox,
        image_height: int,
    ) -> str:
        """Classify a block as ``header``, ``table`` or ``paragraph``."""
        if bbox.y < image_height * self.header_ratio:
            return "header"
        if self._is_table_like(words):
            return "table"
        return "paragraph"

    def _is_table_like(self, words: list[OCRWord]) -> bool:
        """Heuristic: several lines whose words start at recurring x positions."""
        if len(words) < 4:
            return False
        lines = {w.line_num for w in words}
        if len(lines) < 2:
            return False

        # Columns recur across lines; bucket x positions to tolerate jitter.
        buckets: dict[int, set[int]] = {}
        for word in words:
            buckets.setdefault(word.bbox.x // 20, set()).add(word.line_num)
        recurring = [b for b, line_set in buckets.items() if len(line_set) >= 2]
        return len(recurring) >= 2
