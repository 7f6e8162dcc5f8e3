"""Tests for scan quality assessment and routing."""

import io

import cv2
import numpy as np
import pytest
from PIL import Image

from docsense.ingest.loader import SourceDocument, SourceKind
from docsense.quality.assessor import (
    QualityAssessor,
    Route,
    calculate_contrast,
    calculate_sharpness,
    denoise,
    deskew,
    detect_skew_angle,
    prepare_for_ocr,
    ruling_density,
)
from docsense.utils.config import QualityConfig


def _png_source(image: np.ndarray) -> SourceDocument:
    buf = io.BytesIO()
    Image.fromarray(image).save(buf, format="PNG")
    return SourceDocument(filename="scan.png", kind=SourceKind.IMAGE, content=buf.getvalue())


def _grid_image() -> np.ndarray:
    image = np.full((300, 300, 3), 255, dtype=np.uint8)
    for pos in range(20, 300, 40):
        image[pos : pos + 2, :] = 0
        image[:, pos : pos + 2] = 0
    return image


@pytest.fixture
def assessor() -> QualityAssessor:
    return QualityAssessor(QualityConfig())


class TestImageMetrics:
    """Tests for the image metric helpers."""

    def test_flat_image_has_no_sharpness_or_contrast(self) -> None:
        flat = np.full((100, 100), 128, dtype=np.uint8)
        assert calculate_sharpness(flat) == 0.0
        assert calculate_contrast(flat) == 0.0

    def test_ruling_density_of_grid(self) -> None:
        assert ruling_density(_grid_image()) > 0.9

    def test_ruling_density_of_text_like_noise(self) -> None:
        rng = np.random.default_rng(3)
        speckle = (rng.integers(0, 2, size=(300, 300)) * 255).astype(np.uint8)
        assert ruling_density(speckle) < 0.2

    def test_prepare_for_ocr_binarizes(self, sample_color_image: np.ndarray) -> None:
        binary = prepare_for_ocr(sample_color_image)
        assert binary.ndim == 2
        assert set(np.unique(binary)) <= {0, 255}

    def test_prepare_for_ocr_keeps_page_size(self, sample_image: np.ndarray) -> None:
        binary = prepare_for_ocr(sample_image)
        assert binary.shape == sample_image.shape
        assert set(np.unique(binary)) <= {0, 255}


def _ruled_page(tilt: float = 0.0) -> np.ndarray:
    page = np.full((400, 600), 255, dtype=np.uint8)
    for y in range(80, 340, 40):
        cv2.line(page, (50, y), (550, y), 0, 3)
    if tilt:
        matrix = cv2.getRotationMatrix2D((300, 200), tilt, 1.0)
        page = cv2.warpAffine(page, matrix, (600, 400), borderValue=255)
    return page


class TestDeskew:
    """Tests for skew detection and correction."""

    def test_straight_page_has_no_skew(self) -> None:
        assert abs(detect_skew_angle(_ruled_page())) < 0.5

    def test_detects_clockwise_tilt(self) -> None:
        assert detect_skew_angle(_ruled_page(tilt=-6.0)) == pytest.approx(6.0, abs=1.0)

    def test_deskew_straightens_page(self) -> None:
        straightened = deskew(_ruled_page(tilt=-6.0))
        assert straightened.shape == (400, 600)
        assert abs(detect_skew_angle(straightened)) < 1.0

    def test_small_skew_left_alone(self) -> None:
        page = _ruled_page()
        assert deskew(page, angle_threshold=0.5) is page

    def test_blank_page_has_no_skew(self) -> None:
        assert detect_skew_angle(np.full((200, 200), 255, dtype=np.uint8)) == 0.0


class TestDenoise:
    def test_removes_isolated_speckles(self) -> None:
        rng = np.random.default_rng(7)
        page = np.full((200, 200), 200, dtype=np.uint8)
        noisy = page.copy()
        noisy[rng.integers(0, 200, 300), rng.integers(0, 200, 300)] = 0

        cleaned = denoise(noisy)

        assert cleaned.shape == noisy.shape
        assert np.abs(cleaned.astype(int) - page).mean() < np.abs(noisy.astype(int) - page).mean()


class TestQualityAssessor:
    """Tests for QualityAssessor.assess."""

    def test_spreadsheet_routes_general(self, assessor: QualityAssessor) -> None:
        source = SourceDocument(
            filename="weights.xlsx",
            kind=SourceKind.SPREADSHEET,
            content=b"",
            header=["Datum", "Vikt"],
            rows=[["2024-01-01", "10"]] * 600,
        )
        assessment = assessor.assess(source)
        assert assessment.route == Route.GENERAL
        assert assessment.has_tabular_data
        assert "processed in batches" in assessment.rationale
        assert assessment.structural_complexity == 0.1

    def test_text_routes_general(self, assessor: QualityAssessor) -> None:
        source = SourceDocument(filename="a.txt", kind=SourceKind.TEXT, content=b"x", text="x")
        assessment = assessor.assess(source)
        assert assessment.route == Route.GENERAL
        assert assessment.scan_quality == 1.0

    def test_blurry_scan_routes_ocr(self, assessor: QualityAssessor) -> None:
        gray = np.full((200, 200, 3), 128, dtype=np.uint8)
        assessment = assessor.assess(_png_source(gray))
        assert assessment.route == Route.OCR
        assert assessment.scan_quality < 0.45
        assert "scan quality" in assessment.rationale

    def test_crisp_scan_routes_general(self, assessor: QualityAssessor) -> None:
        rng = np.random.default_rng(7)
        noise = (rng.integers(0, 2, size=(300, 300, 3)) * 255).astype(np.uint8)
        assessment = assessor.assess(_png_source(noise))
        assert assessment.route == Route.GENERAL
        assert assessment.scan_quality == 1.0
        assert not assessment.is_fallback

    def test_ruled_form_routes_ocr(self, assessor: QualityAssessor) -> None:
        assessment = assessor.assess(_png_source(_grid_image()))
        assert assessment.route == Route.OCR
        assert "complexity" in assessment.rationale
        assert assessment.has_tabular_data

    def test_unreadable_image_falls_back(self, assessor: QualityAssessor) -> None:
        source = SourceDocument(filename="scan.png", kind=SourceKind.IMAGE, content=b"junk")
        assessment = assessor.assess(source)
        assert assessment.route == Route.GENERAL
        assert assessment.is_fallback
        assert "assessment failed" in assessment.rationale
