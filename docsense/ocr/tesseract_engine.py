"""Tesseract OCR wrapper with word-level output.

Every call is bounded by a timeout; a Tesseract run that exceeds it is
reported as a transient provider failure so the caller's retry policy
applies.
"""

from dataclasses import dataclass

import numpy as np
import pytesseract
from PIL import Image

from docsense.errors import ProviderError, TransientProviderError
from docsense.utils.config import OCRConfig
from docsense.utils.logger import get_logger

logger = get_logger(__name__)


@dataclass
class BoundingBox:
    """Axis-aligned bounding box for a detected element."""

    x: int
    y: int
    width: int
    height: int


@dataclass
class OCRWord:
    """A single word extracted by OCR with position and confidence."""

    text: str
    bbox: BoundingBox
    confidence: float
    block_num: int
    line_num: int
    word_num: int


@dataclass
class OCRResult:
    """OCR output for one page."""

    text: str
    words: list[OCRWord]
    confidence: float
    width: int = 0
    height: int = 0


class TesseractEngine:
    """Wrapper around Tesseract OCR.

    Args:
        config: OCR configuration (binary path, language, PSM, timeout).
    """

    def __init__(self, config: OCRConfig) -> None:
        if config.tesseract_cmd:
            pytesseract.pytesseract.tesseract_cmd = config.tesseract_cmd
        self.config = config

    def extract_text(self, image: np.ndarray) -> OCRResult:
        """Extract text from an image with word-level bounding boxes.

        Args:
            image: Page image as a numpy array.

        Returns:
            OCRResult with full text, words and mean word confidence in [0, 1].

        Raises:
            TransientProviderError: If Tesseract exceeds the configured timeout.
            ProviderError: If Tesseract fails for any other reason.
        """
        options = f"--psm {self.config.psm}"
        pil_image = Image.fromarray(image)

        try:
            data = pytesseract.image_to_data(
                pil_image,
                lang=self.config.default_lang,
                config=options,
                output_type=pytesseract.Output.DICT,
                timeout=self.config.timeout_s,
            )
        except RuntimeError as exc:
            # pytesseract signals a killed run with RuntimeError("Tesseract process timeout")
            if "timeout" in str(exc).lower():
                raise TransientProviderError(f"tesseract timed out: {exc}") from exc
            raise ProviderError(f"tesseract failed: {exc}") from exc
        except pytesseract.TesseractError as exc:
            raise ProviderError(f"tesseract failed: {exc}") from exc

        words: list[OCRWord] = []
        for i in range(len(data["text"])):
            conf = float(data["conf"][i])
            word_text = str(data["text"][i]).strip()
            if conf > 0 and word_text:
                words.append(
                    OCRWord(
                        text=word_text,
                        bbox=BoundingBox(
                            x=data["left"][i],
                            y=data["top"][i],
                            width=data["width"][i],
                            height=data["height"][i],
                        ),
                        confidence=conf / 100.0,
                        block_num=data["block_num"][i],
                        line_num=data["line_num"][i],
                        word_num=data["word_num"][i],
                    )
                )

        avg_conf = sum(w.confidence for w in words) / len(words) if words else 0.0
        text = _words_to_text(words)
        logger.info(
            "OCR extracted %d words with average confidence %.2f", len(words), avg_conf
        )
        return OCRResult(
            text=text,
            words=words,
            confidence=avg_conf,
            width=image.shape[1],
            height=image.shape[0],
        )


def _words_to_text(words: list[OCRWord]) -> str:
    lines: dict[tuple[int, int], list[str]] = {}
    for word in words:
        lines.setdefault((word.block_num, word.line_num), []).append(word.text)
    return "\n".join(" ".join(parts) for parts in lines.values())
