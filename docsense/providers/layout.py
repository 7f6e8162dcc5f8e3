"""LayoutLM token classification over OCR words and boxes.

Used by the OCR engine when ``extraction.use_layout_model`` is enabled. The
model is loaded on the first call, not at construction.
"""

import threading
import time
from typing import Any

import numpy as np
import torch
from PIL import Image
from transformers import AutoModelForTokenClassification, AutoProcessor

from docsense.schema import DocumentSchema, FieldType
from docsense.utils.logger import get_logger

from .base import ModelClient, ModelRequest, ModelResponse, UsageRecord

logger = get_logger(__name__)


LABEL_MAP: dict[int, str] = {
    0: "O",
    1: "B-DATE",
    2: "I-DATE",
    3: "B-VENDOR",
    4: "I-VENDOR",
    5: "B-TOTAL",
    6: "I-TOTAL",
    7: "B-ITEM",
    8: "I-ITEM",
    9: "B-TAX",
    10: "I-TAX",
}


def label_targets(schema: DocumentSchema) -> dict[str, str]:
    """Map model entity labels onto the schema's header field keys."""
    targets: dict[str, str] = {}
    for definition in schema.fields:
        if definition.type == FieldType.DATE and "DATE" not in targets:
            targets["DATE"] = definition.key
        elif definition.type == FieldType.AMOUNT:
            if "total" in definition.key and "TOTAL" not in targets:
                targets["TOTAL"] = definition.key
            elif "vat" in definition.key and "TAX" not in targets:
                targets["TAX"] = definition.key
        elif (
            definition.type == FieldType.TEXT
            and definition.required
            and "VENDOR" not in targets
            and any(n in definition.key for n in ("vendor", "supplier", "merchant"))
        ):
            targets["VENDOR"] = definition.key
    return targets


class LayoutModelClient(ModelClient):
    """LayoutLM-based field extraction behind the ``ModelClient`` contract.

    Expects ``request.attachment`` to carry ``image`` (numpy array),
    ``words`` (list of str) and ``boxes`` (0-1000 normalized
    ``(x1, y1, x2, y2)`` tuples).

    Args:
        model_name: Hugging Face model identifier.
        device: Torch device. Auto-detected if ``None``.
    """

    role = "extraction"

    def __init__(
        self,
        model_name: str = "microsoft/layoutlm-base-uncased",
        device: str | None = None,
    ) -> None:
        self.model = model_name
        self.device = device or ("cuda" if torch.cuda.is_available() else "cpu")
        self._processor: Any = None
        self._model: Any = None
        self._load_lock = threading.Lock()

    def _load(self) -> None:
        with self._load_lock:
            if self._model is not None:
                return
            logger.info("Loading LayoutLM model: %s on %s", self.model, self.device)
            self._processor = AutoProcessor.from_pretrained(self.model, apply_ocr=False)
            model = AutoModelForTokenClassification.from_pretrained(self.model).to(self.device)
            model.eval()
            self._model = model

    def invoke(self, request: ModelRequest) -> ModelResponse:
        started = time.perf_counter()
        attachment = request.attachment or {}
        words: list[str] = attachment.get("words") or []
        image = attachment.get("image")

        fields: dict[str, dict[str, Any]] = {}
        if words and image is not None:
            entities = self._predict(image, words, attachment.get("boxes") or [])
            targets = label_targets(request.schema)
            for label, value, confidence in entities:
                key = targets.get(label)
                if key is None:
                    continue
                if key not in fields or confidence > fields[key]["confidence"]:
                    fields[key] = {"value": value, "confidence": confidence}

        return ModelResponse(
            fields=fields,
            usage=UsageRecord(
                role=self.role,
                model=self.model,
                input_tokens=len(words),
                duration_ms=round((time.perf_counter() - started) * 1000, 2),
            ),
        )

    def _predict(
        self,
        image: np.ndarray,
        words: list[str],
        boxes: list[tuple[int, int, int, int]],
    ) -> list[tuple[str, str, float]]:
        self._load()
        encoding = self._processor(
            Image.fromarray(image),
            words,
            boxes=boxes,
            return_tensors="pt",
            truncation=True,
            max_length=512,
        )
        encoding = {k: v.to(self.device) for k, v in encoding.items()}

        with torch.no_grad():
            outputs = self._model(**encoding)

        predictions = outputs.logits.argmax(-1).squeeze().tolist()
        confidences = torch.softmax(outputs.logits, dim=-1).max(-1).values.squeeze().tolist()
        if isinstance(predictions, int):
            predictions = [predictions]
            confidences = [confidences]
        return aggregate_entities(words, predictions, confidences)


def aggregate_entities(
    words: list[str],
    predictions: list[int],
    confidences: list[float],
) -> list[tuple[str, str, float]]:
    """Aggregate BIO-tagged tokens into ``(label, text, mean_confidence)``.

    Args:
        words: OCR words.
        predictions: Predicted label indices per token.
        confidences: Confidence per token.

    Returns:
        One entry per contiguous entity.
    """
    entities: list[tuple[str, str, float]] = []
    current: str | None = None
    parts: list[str] = []
    scores: list[float] = []

    def flush() -> None:
        if current and parts:
            entities.append((current, " ".join(parts), sum(scores) / len(scores)))

    for word, pred, conf in zip(words, predictions, confidences, strict=False):
        label = LABEL_MAP.get(pred, "O")
        if label.startswith("B-"):
            flush()
            current, parts, scores = label[2:], [word], [conf]
        elif label.startswith("I-") and current == label[2:]:
            parts.append(word)
            scores.append(conf)
        else:
            flush()
            current, parts, scores = None, [], []
    flush()
    return entities
