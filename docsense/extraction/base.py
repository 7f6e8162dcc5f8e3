"""Shared contract and plumbing for the extraction engines."""

import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import Any

from docsense.ingest.loader import SourceDocument
from docsense.providers.base import ModelClient, ModelRequest, ModelResponse, UsageRecord
from docsense.schema import DocumentSchema
from docsense.utils.config import ExtractionConfig
from docsense.utils.logger import get_logger
from docsense.utils.retry import call_with_retry

from .confidence import aggregate_confidence, iter_batches, normalize_confidence
from .result import ExtractionResult, FieldValue, LineItem

logger = get_logger(__name__)


class ExtractionEngine(ABC):
    """Turns a loaded source into an ``ExtractionResult`` for a schema.

    Args:
        client: Model client for the extraction role.
        config: Batch size and retry policy.
        sleep: Sleep function used between retries.
        structuring_client: Client for line-item batches; defaults to ``client``.
    """

    name = "base"

    def __init__(
        self,
        client: ModelClient,
        config: ExtractionConfig,
        sleep: Callable[[float], None] = time.sleep,
        structuring_client: ModelClient | None = None,
    ) -> None:
        self.client = client
        self.config = config
        self._sleep = sleep
        self.structuring_client = structuring_client

    @abstractmethod
    def extract(self, source: SourceDocument, schema: DocumentSchema) -> ExtractionResult:
        """Extract header fields and line items from ``source``.

        Raises:
            TransientProviderError: If a model call still fails after retries.
            ProviderError: If a model call fails permanently.
        """

    def invoke(self, request: ModelRequest, client: ModelClient | None = None) -> ModelResponse:
        """Invoke a model with the configured bounded retry."""
        if client is None and request.role == "structuring":
            client = self.structuring_client
        target = client or self.client
        return call_with_retry(
            lambda: target.invoke(request),
            max_retries=self.config.max_retries,
            backoff_base=self.config.retry_backoff_s,
            description=f"{self.name} {request.role} call",
            sleep=self._sleep,
        )

    def extract_line_batches(
        self,
        make_request: Callable[[int, list[Any]], ModelRequest],
        items: list[Any],
        collector: "ResponseCollector",
        weight: float = 1.0,
    ) -> None:
        """Run one model call per fixed-size batch and collect in source order."""
        for offset, batch in iter_batches(items, self.config.batch_size):
            response = self.invoke(make_request(offset, batch))
            collector.add(response, offset, weight=weight)
            logger.debug(
                "%s batch at offset %d: %d item(s) in, %d out",
                self.name,
                offset,
                len(batch),
                len(response.line_items),
            )


class ResponseCollector:
    """Accumulates model responses into a single result.

    Header fields keep the highest-confidence value seen; line items are
    appended in the order their batches complete, which is source order
    because batches run sequentially.
    """

    def __init__(self) -> None:
        self.fields: dict[str, FieldValue] = {}
        self.line_items: list[LineItem] = []
        self.usage: list[UsageRecord] = []
        self.warnings: list[str] = []
        self.batches = 0

    def add(self, response: ModelResponse, offset: int = 0, weight: float = 1.0) -> None:
        self.batches += 1
        if response.usage is not None:
            self.usage.append(response.usage)

        for key, raw in response.fields.items():
            if raw.get("value") is None:
                continue
            confidence = normalize_confidence(raw.get("confidence"), response.confidence_scale)
            candidate = FieldValue(raw["value"], round(confidence * weight, 4))
            current = self.fields.get(key)
            if current is None or candidate.confidence > current.confidence:
                self.fields[key] = candidate

        for position, raw in enumerate(response.line_items):
            index = raw.get("index")
            if not isinstance(index, int):
                index = offset + position
            self.line_items.append(
                LineItem(
                    index=index,
                    values=dict(raw.get("values") or {}),
                    confidence=round(
                        normalize_confidence(raw.get("confidence"), response.confidence_scale)
                        * weight,
                        4,
                    ),
                )
            )

    def build(
        self, schema: DocumentSchema, engine: str, source_text: str
    ) -> ExtractionResult:
        return ExtractionResult(
            fields=dict(self.fields),
            line_items=tuple(self.line_items),
            engine_used=engine,
            overall_confidence=aggregate_confidence(self.fields, self.line_items, schema),
            source_text=source_text,
            usage=tuple(self.usage),
            batches=self.batches,
            warnings=tuple(self.warnings),
        )
