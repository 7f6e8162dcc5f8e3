"""Tests for configuration loading and validation."""

from pathlib import Path

import pytest
import yaml
from pydantic import ValidationError

from docsense.utils.config import (
    AppConfig,
    ExtractionConfig,
    OCRConfig,
    PipelineConfig,
    ReconciliationConfig,
    SlaConfig,
    UserSettings,
    load_config,
)


class TestOCRConfig:
    """Tests for OCRConfig defaults and overrides."""

    def test_defaults(self) -> None:
        cfg = OCRConfig()
        assert cfg.default_lang == "eng"
        assert cfg.psm == 6
        assert cfg.pdf_dpi == 300
        assert cfg.tesseract_cmd is None
        assert cfg.timeout_s == 60.0

    def test_custom_lang(self) -> None:
        cfg = OCRConfig(default_lang="swe", psm=4)
        assert cfg.default_lang == "swe"
        assert cfg.psm == 4


class TestExtractionConfig:
    """Tests for ExtractionConfig defaults and bounds."""

    def test_defaults(self) -> None:
        cfg = ExtractionConfig()
        assert cfg.batch_size == 25
        assert cfg.max_retries == 1
        assert cfg.use_layout_model is False
        assert cfg.layout_weight == 0.6
        assert cfg.rule_weight == 0.4

    def test_batch_size_must_be_positive(self) -> None:
        with pytest.raises(ValidationError):
            ExtractionConfig(batch_size=0)


class TestPipelineConfig:
    """Tests for the auto-approve threshold bounds."""

    def test_default_threshold(self) -> None:
        assert PipelineConfig().auto_approve_threshold == 80.0

    @pytest.mark.parametrize("threshold", [59.9, 99.5])
    def test_threshold_out_of_range(self, threshold: float) -> None:
        with pytest.raises(ValidationError):
            PipelineConfig(auto_approve_threshold=threshold)


class TestSlaConfig:
    """Tests for the system default SLA rule."""

    def test_defaults(self) -> None:
        cfg = SlaConfig()
        assert cfg.enabled is True
        assert cfg.warning_minutes == 60
        assert cfg.breach_minutes == 240

    def test_warning_must_precede_breach(self) -> None:
        with pytest.raises(ValidationError):
            SlaConfig(warning_minutes=240, breach_minutes=240)


class TestUserSettings:
    """Tests for per-user overrides."""

    def test_all_overrides_optional(self) -> None:
        settings = UserSettings(user_id="alice")
        assert settings.auto_approve_threshold is None
        assert settings.enable_reconciliation is None

    def test_threshold_bounds(self) -> None:
        with pytest.raises(ValidationError):
            UserSettings(user_id="alice", auto_approve_threshold=50.0)


class TestAppConfig:
    """Tests for the top-level AppConfig."""

    def test_defaults(self) -> None:
        cfg = AppConfig()
        assert isinstance(cfg.ocr, OCRConfig)
        assert isinstance(cfg.reconciliation, ReconciliationConfig)
        assert cfg.storage.url == "memory"
        assert cfg.notifications.webhook_url is None
        assert cfg.models.verification.url is None
        assert cfg.log_level == "INFO"

    def test_nested_override(self) -> None:
        cfg = AppConfig(
            reconciliation=ReconciliationConfig(enabled=False),
            log_level="DEBUG",
        )
        assert cfg.reconciliation.enabled is False
        assert cfg.log_level == "DEBUG"


class TestLoadConfig:
    """Tests for the load_config function."""

    def test_load_default_config(self, config_dir: Path) -> None:
        cfg = load_config(config_dir / "config.yaml")
        assert isinstance(cfg, AppConfig)
        assert cfg.pipeline.auto_approve_threshold == 80.0
        assert cfg.models.verification.api_key_env == "DOCSENSE_VERIFICATION_KEY"

    def test_load_missing_file_returns_defaults(self) -> None:
        cfg = load_config(Path("/nonexistent/path/config.yaml"))
        assert isinstance(cfg, AppConfig)
        assert cfg.ocr.default_lang == "eng"

    def test_load_custom_yaml(self, tmp_path: Path) -> None:
        config_data = {
            "pipeline": {"auto_approve_threshold": 90, "max_workers": 2},
            "models": {"extraction": {"url": "http://model.test/extract", "model": "big"}},
            "log_level": "DEBUG",
        }
        config_file = tmp_path / "config.yaml"
        with open(config_file, "w") as f:
            yaml.dump(config_data, f)

        cfg = load_config(config_file)
        assert cfg.pipeline.auto_approve_threshold == 90.0
        assert cfg.pipeline.max_workers == 2
        assert cfg.models.extraction.url == "http://model.test/extract"
        assert cfg.models.structuring.url is None
        assert cfg.log_level == "DEBUG"

    def test_load_empty_yaml(self, tmp_path: Path) -> None:
        config_file = tmp_path / "empty.yaml"
        config_file.write_text("")
        cfg = load_config(config_file)
        assert isinstance(cfg, AppConfig)

    def test_invalid_value_rejected(self, tmp_path: Path) -> None:
        config_file = tmp_path / "bad.yaml"
        config_file.write_text("pipeline:\n  auto_approve_threshold: 20\n")
        with pytest.raises(ValidationError):
            load_config(config_file)
