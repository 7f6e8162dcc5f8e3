"""Scan quality assessment, extraction routing and page cleanup.

Scores sharpness, contrast and ruled-table density on a low-resolution
preview of the first page and proposes which extraction engine to use.
The assessment only optimizes routing: any failure falls back to the
general-purpose engine instead of failing the document. Pages sent to OCR
are denoised, deskewed and binarized first.
"""

from dataclasses import asdict, dataclass
from enum import StrEnum
from typing import Any

import cv2
import numpy as np

from docsense.ingest.loader import SourceDocument, SourceKind
from docsense.utils.config import QualityConfig
from docsense.utils.logger import get_logger

logger = get_logger(__name__)


class Route(StrEnum):
    """Extraction engine chosen for a document."""

    OCR = "ocr"
    GENERAL = "general"


@dataclass(frozen=True)
class QualityAssessment:
    """Routing decision for one document, with the scores behind it."""

    scan_quality: float
    structural_complexity: float
    route: Route
    rationale: str
    document_kind: str
    has_tabular_data: bool = False
    is_fallback: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _to_gray(image: np.ndarray) -> np.ndarray:
    if len(image.shape) == 3:
        return cv2.cvtColor(image, cv2.COLOR_RGB2GRAY)
    return image


def calculate_sharpness(image: np.ndarray) -> float:
    """Image sharpness as the variance of the Laplacian."""
    return float(cv2.Laplacian(_to_gray(image), cv2.CV_64F).var())


def calculate_contrast(image: np.ndarray) -> float:
    """Image contrast as the standard deviation of pixel intensities."""
    return float(_to_gray(image).std())


def ruling_density(image: np.ndarray) -> float:
    """Fraction of ink pixels that belong to long horizontal or vertical rules.

    Args:
        image: Page image (RGB or grayscale).

    Returns:
        Ratio in [0, 1]; high values indicate ruled tables or forms.
    """
    gray = _to_gray(image)
    _, inverted = cv2.threshold(gray, 0, 255, cv2.THRESH_BINARY_INV + cv2.THRESH_OTSU)
    ink = int(np.count_nonzero(inverted))
    if ink == 0:
        return 0.0

    h, w = inverted.shape[:2]
    horizontal = cv2.morphologyEx(
        inverted,
        cv2.MORPH_OPEN,
        cv2.getStructuringElement(cv2.MORPH_RECT, (max(w // 30, 1), 1)),
    )
    vertical = cv2.morphologyEx(
        inverted,
        cv2.MORPH_OPEN,
        cv2.getStructuringElement(cv2.MORPH_RECT, (1, max(h // 30, 1))),
    )
    rules = int(np.count_nonzero(cv2.bitwise_or(horizontal, vertical)))
    return min(rules / ink, 1.0)


def detect_skew_angle(image: np.ndarray) -> float:
    """Estimate the skew of a page from its near-horizontal lines.

    Uses the probabilistic Hough transform on the Canny edges and returns
    the median angle of segments within 45 degrees of horizontal.

    Args:
        image: Page image (RGB or grayscale).

    Returns:
        Skew angle in degrees, ``0.0`` when no lines are found.
    """
    edges = cv2.Canny(_to_gray(image), 50, 150, apertureSize=3)
    lines = cv2.HoughLinesP(edges, 1, np.pi / 180, 100, minLineLength=100, maxLineGap=10)
    if lines is None:
        logger.debug("No lines detected for skew estimation")
        return 0.0

    angles = []
    for x1, y1, x2, y2 in lines[:, 0]:
        angle = float(np.degrees(np.arctan2(y2 - y1, x2 - x1)))
        if angle > 90:
            angle -= 180
        elif angle <= -90:
            angle += 180
        if abs(angle) < 45:
            angles.append(angle)
    if not angles:
        return 0.0
    median_angle = float(np.median(angles))
    logger.debug("Detected skew angle: %.2f degrees", median_angle)
    return median_angle


def deskew(image: np.ndarray, angle_threshold: float = 0.5) -> np.ndarray:
    """Rotate a page so its text lines are horizontal.

    Pages skewed by less than ``angle_threshold`` degrees are returned as is.
    """
    angle = detect_skew_angle(image)
    if abs(angle) < angle_threshold:
        return image

    h, w = image.shape[:2]
    rotation_matrix = cv2.getRotationMatrix2D((w // 2, h // 2), angle, 1.0)
    result = cv2.warpAffine(
        image,
        rotation_matrix,
        (w, h),
        flags=cv2.INTER_CUBIC,
        borderMode=cv2.BORDER_REPLICATE,
    )
    logger.info("Applied deskew correction: %.2f degrees", angle)
    return result


def denoise(
    image: np.ndarray, d: int = 9, sigma_color: int = 75, sigma_space: int = 75
) -> np.ndarray:
    """Bilateral filter: smooths scanner noise while keeping glyph edges."""
    return cv2.bilateralFilter(image, d, sigma_color, sigma_space)


def prepare_for_ocr(image: np.ndarray, angle_threshold: float = 0.5) -> np.ndarray:
    """Clean a page before OCR.

    The page is converted to grayscale, denoised, deskewed and finally
    Otsu-binarized.

    Args:
        image: Page image (RGB or grayscale).
        angle_threshold: Smallest skew in degrees that is corrected.

    Returns:
        A binary (0/255) grayscale image of the same height and width.
    """
    gray = deskew(denoise(_to_gray(image)), angle_threshold)
    _, binary = cv2.threshold(gray, 0, 255, cv2.THRESH_BINARY + cv2.THRESH_OTSU)
    return binary


class QualityAssessor:
    """Classifies scan quality and structural complexity to pick a route.

    Args:
        config: Quality thresholds and preview resolution.
    """

    def __init__(self, config: QualityConfig) -> None:
        self.config = config

    def assess(self, source: SourceDocument) -> QualityAssessment:
        """Assess a document and propose an extraction route.

        Never raises: on any failure the conservative general-purpose route is
        returned with ``is_fallback`` set.
        """
        try:
            assessment = self._assess(source)
        except Exception as exc:
            logger.warning("Quality assessment failed for %s: %s", source.filename, exc)
            return QualityAssessment(
                scan_quality=0.0,
                structural_complexity=0.0,
                route=Route.GENERAL,
                rationale=f"assessment failed ({exc}); using general-purpose engine",
                document_kind=str(source.kind),
                is_fallback=True,
            )
        logger.info(
            "Assessed %s: quality=%.2f complexity=%.2f route=%s",
            source.filename,
            assessment.scan_quality,
            assessment.structural_complexity,
            assessment.route,
        )
        return assessment

    def _assess(self, source: SourceDocument) -> QualityAssessment:
        if source.kind == SourceKind.SPREADSHEET:
            columns = len(source.header)
            rationale = f"structured spreadsheet with {source.row_count} rows"
            if source.row_count > self.config.large_sheet_rows:
                rationale += ", processed in batches"
            return QualityAssessment(
                scan_quality=1.0,
                structural_complexity=round(min(columns / 20.0, 1.0), 4),
                route=Route.GENERAL,
                rationale=rationale,
                document_kind=str(source.kind),
                has_tabular_data=source.row_count > 0,
            )

        if source.kind == SourceKind.TEXT:
            return QualityAssessment(
                scan_quality=1.0,
                structural_complexity=0.0,
                route=Route.GENERAL,
                rationale="plain text, no scan to correct",
                document_kind=str(source.kind),
            )

        pages = source.render_pages(dpi=self.config.preview_dpi, first_page_only=True)
        if not pages:
            raise ValueError("no pages rendered")
        preview = pages[0]

        sharpness = min(calculate_sharpness(preview) / self.config.sharpness_reference, 1.0)
        contrast = min(calculate_contrast(preview) / self.config.contrast_reference, 1.0)
        scan_quality = round(0.6 * sharpness + 0.4 * contrast, 4)
        complexity = round(min(ruling_density(preview) * 3.0, 1.0), 4)

        reasons: list[str] = []
        if scan_quality < self.config.min_scan_quality:
            reasons.append(f"scan quality {scan_quality:.2f} is low")
        if complexity > self.config.max_general_complexity:
            reasons.append(f"layout complexity {complexity:.2f} is high")

        route = Route.OCR if reasons else Route.GENERAL
        rationale = (
            "; ".join(reasons) + ", using OCR-specialized engine"
            if reasons
            else "clean scan with simple layout"
        )
        return QualityAssessment(
            scan_quality=scan_quality,
            structural_complexity=complexity,
            route=route,
            rationale=rationale,
            document_kind=str(source.kind),
            has_tabular_data=complexity >= 0.3,
        )
