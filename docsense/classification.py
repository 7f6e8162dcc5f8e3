"""Document type classification.

Scores filename and text against keyword lists per document type. Extra
templates with regex identifiers can be loaded from YAML and take part in
the same scoring.
"""

import re
from dataclasses import dataclass
from pathlib import Path

import yaml

from docsense.utils.logger import get_logger

logger = get_logger(__name__)

DEFAULT_KEYWORDS: dict[str, tuple[str, ...]] = {
    "invoice": (
        "invoice",
        "faktura",
        "fakturanummer",
        "fakturadatum",
        "förfallodatum",
        "att betala",
        "bankgiro",
        "iban",
        "moms",
        "vat",
    ),
    "delivery_note": (
        "delivery note",
        "följesedel",
        "delivery",
        "avfall",
        "waste",
        "vikt",
        "fraktion",
        "farligt avfall",
    ),
    "receipt": ("receipt", "kvitto", "kassa", "card payment", "kortbetalning"),
}


@dataclass
class Classification:
    """Outcome of classifying a document."""

    doc_type: str
    confidence: float
    matched_terms: list[str]


class DocumentClassifier:
    """Keyword and template scoring to pick a document type.

    Args:
        templates_path: YAML file mapping template names to an
            ``identifiers`` list of regexes and an optional ``min_confidence``.
        keywords: Keyword lists per document type.
        fallback: Type returned when nothing matches.
    """

    def __init__(
        self,
        templates_path: Path | None = None,
        keywords: dict[str, tuple[str, ...]] | None = None,
        fallback: str = "generic",
    ) -> None:
        self.keywords = keywords if keywords is not None else DEFAULT_KEYWORDS
        self.fallback = fallback
        self.templates = self._load_templates(templates_path) if templates_path else {}

    def _load_templates(self, path: Path) -> dict:
        if path.exists():
            with open(path) as f:
                data = yaml.safe_load(f)
                return data or {}
        logger.debug("No templates file at %s, using keywords only", path)
        return {}

    def classify(self, filename: str, text: str = "") -> Classification:
        """Classify a document by its filename and extracted text.

        Args:
            filename: Original filename; strong hints like ``faktura`` count.
            text: Text content (OCR output, sheet cells) to score.

        Returns:
            Best matching type with a confidence in [0.35, 0.95].
        """
        haystack = f"{filename} {text}".lower()
        best = Classification(self.fallback, 0.35, [])
        best_score = 0.0

        for doc_type, terms in self.keywords.items():
            matched = [t for t in terms if t in haystack]
            if len(matched) > best_score:
                best_score = len(matched)
                best = Classification(
                    doc_type, min(0.5 + len(matched) * 0.1, 0.95), matched
                )

        template = self._match_template(haystack)
        if template is not None and template.confidence > best.confidence:
            best = template

        logger.info(
            "Classified %s as %s (confidence=%.2f)",
            filename,
            best.doc_type,
            best.confidence,
        )
        return best

    def _match_template(self, text: str) -> Classification | None:
        best: Classification | None = None
        for name, template in self.templates.items():
            identifiers = template.get("identifiers", [])
            if not identifiers:
                continue
            matched = [i for i in identifiers if re.search(i, text, re.IGNORECASE)]
            score = len(matched) / len(identifiers)
            if score > template.get("min_confidence", 0.5) and (
                best is None or score > best.confidence
            ):
                best = Classification(
                    template.get("doc_type", name), min(score, 0.95), matched
                )
        return best
