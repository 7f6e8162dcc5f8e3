"""Configuration management for the extraction pipeline.

Loads and validates YAML configuration with sensible defaults for OCR,
quality assessment, extraction, reconciliation, verification, review SLAs
and the model endpoints behind each pipeline role.
"""

import logging
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, model_validator

logger = logging.getLogger(__name__)


class OCRConfig(BaseModel):
    """Configuration for the Tesseract OCR engine."""

    tesseract_cmd: str | None = None
    default_lang: str = "eng"
    psm: int = 6
    pdf_dpi: int = 300
    timeout_s: float = 60.0


class QualityConfig(BaseModel):
    """Configuration for scan quality assessment and routing."""

    sharpness_reference: float = 400.0
    contrast_reference: float = 60.0
    min_scan_quality: float = 0.45
    max_general_complexity: float = 0.7
    preview_dpi: int = 72
    large_sheet_rows: int = 500


class ExtractionConfig(BaseModel):
    """Configuration for the extraction engines."""

    batch_size: int = Field(default=25, ge=1)
    max_retries: int = Field(default=1, ge=0)
    retry_backoff_s: float = 0.5
    header_rows: int = 10
    use_layout_model: bool = False
    layout_model_name: str = "microsoft/layoutlm-base-uncased"
    layout_weight: float = 0.6
    rule_weight: float = 0.4


class ReconciliationConfig(BaseModel):
    """Configuration for low-confidence reconciliation (percent scale)."""

    enabled: bool = True
    threshold: float = Field(default=80.0, ge=0.0, le=100.0)
    field_floor: float = Field(default=80.0, ge=0.0, le=100.0)


class VerificationConfig(BaseModel):
    """Configuration for the always-on verification pass."""

    batch_size: int = Field(default=25, ge=1)
    grounding_check: bool = True


class PipelineConfig(BaseModel):
    """Configuration for the pipeline orchestrator."""

    auto_approve_threshold: float = Field(default=80.0, ge=60.0, le=99.0)
    max_workers: int = Field(default=4, ge=1)


class SlaConfig(BaseModel):
    """System default SLA rule, used when a user has none for a doc type."""

    enabled: bool = True
    warning_minutes: int = Field(default=60, ge=0)
    breach_minutes: int = Field(default=240, ge=0)

    @model_validator(mode="after")
    def _check_order(self) -> "SlaConfig":
        if self.warning_minutes >= self.breach_minutes:
            raise ValueError("warning_minutes must be lower than breach_minutes")
        return self


class ModelEndpointConfig(BaseModel):
    """A JSON model endpoint serving one pipeline role."""

    url: str | None = None
    model: str = "default"
    api_key_env: str | None = None
    timeout_s: float = Field(default=60.0, gt=0.0)


class ModelsConfig(BaseModel):
    """Model endpoints per role. Roles without a URL run offline."""

    extraction: ModelEndpointConfig = Field(default_factory=ModelEndpointConfig)
    structuring: ModelEndpointConfig = Field(default_factory=ModelEndpointConfig)
    reconciliation: ModelEndpointConfig = Field(default_factory=ModelEndpointConfig)
    verification: ModelEndpointConfig = Field(default_factory=ModelEndpointConfig)


class StorageConfig(BaseModel):
    """Document Store backend: ``memory`` or an SQLAlchemy database URL."""

    url: str = "memory"


class NotificationConfig(BaseModel):
    """Outbound event delivery."""

    webhook_url: str | None = None
    timeout_s: float = 5.0


class AppConfig(BaseModel):
    """Top-level application configuration."""

    ocr: OCRConfig = Field(default_factory=OCRConfig)
    quality: QualityConfig = Field(default_factory=QualityConfig)
    extraction: ExtractionConfig = Field(default_factory=ExtractionConfig)
    reconciliation: ReconciliationConfig = Field(default_factory=ReconciliationConfig)
    verification: VerificationConfig = Field(default_factory=VerificationConfig)
    pipeline: PipelineConfig = Field(default_factory=PipelineConfig)
    sla: SlaConfig = Field(default_factory=SlaConfig)
    models: ModelsConfig = Field(default_factory=ModelsConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    notifications: NotificationConfig = Field(default_factory=NotificationConfig)
    schemas_path: str = "configs/schemas.yaml"
    templates_path: str = "configs/templates.yaml"
    log_level: str = "INFO"


class UserSettings(BaseModel):
    """Per-user overrides of pipeline thresholds."""

    user_id: str
    auto_approve_threshold: float | None = Field(default=None, ge=60.0, le=99.0)
    enable_reconciliation: bool | None = None
    reconciliation_threshold: float | None = Field(default=None, ge=0.0, le=100.0)


def load_config(path: Path | None = None) -> AppConfig:
    """Load configuration from a YAML file.

    Args:
        path: Path to the YAML configuration file.
            Defaults to configs/config.yaml.

    Returns:
        Validated application configuration.
    """
    if path is None:
        path = Path("configs/config.yaml")

    if path.exists():
        logger.info("Loading configuration from %s", path)
        with open(path) as f:
            raw = yaml.safe_load(f) or {}
        return AppConfig(**raw)

    logger.info("No config file found at %s, using defaults", path)
    return AppConfig()
