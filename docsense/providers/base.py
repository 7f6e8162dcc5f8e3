"""Contract for the model-calling collaborators behind each pipeline role.

Every role (extraction, structuring, reconciliation, verification) talks to
a ``ModelClient``. Requests and responses are plain JSON-shaped data so the
same contract serves a remote endpoint and the offline rule-based client.
"""

from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from typing import Any

from docsense.errors import ProviderError
from docsense.schema import DocumentSchema


@dataclass(frozen=True)
class UsageRecord:
    """Token and cost accounting for one model call."""

    role: str
    model: str
    input_tokens: int = 0
    output_tokens: int = 0
    cost_usd: float = 0.0
    duration_ms: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class ModelRequest:
    """Input to a model call.

    Only the parts relevant to the role are filled in: ``text`` for free
    text, ``header``/``rows``/``row_offset`` for a spreadsheet chunk,
    ``lines`` for OCR table rows, ``field_keys``/``items`` for re-examination
    and verification. ``attachment`` carries in-process data such as page
    images and OCR words; it is never serialized.
    """

    role: str
    schema: DocumentSchema
    text: str = ""
    header: list[str] = field(default_factory=list)
    rows: list[list[str]] = field(default_factory=list)
    row_offset: int = 0
    lines: list[str] = field(default_factory=list)
    fields: dict[str, Any] = field(default_factory=dict)
    field_keys: list[str] = field(default_factory=list)
    items: list[dict[str, Any]] = field(default_factory=list)
    attachment: dict[str, Any] | None = None

    def to_payload(self) -> dict[str, Any]:
        """Serialize to the JSON body sent to remote endpoints."""
        payload: dict[str, Any] = {
            "role": self.role,
            "schema": self.schema.to_dict(),
        }
        for key in ("text", "header", "rows", "lines", "fields", "field_keys", "items"):
            value = getattr(self, key)
            if value:
                payload[key] = value
        if self.rows:
            payload["row_offset"] = self.row_offset
        return payload


@dataclass
class ModelResponse:
    """Output of a model call.

    ``fields`` maps keys to ``{"value", "confidence"}``; ``line_items`` is a
    list of ``{"values", "confidence", "index"}``; ``issues`` is used by the
    verification role. ``confidence_scale`` is 1 or 100.
    """

    fields: dict[str, dict[str, Any]] = field(default_factory=dict)
    line_items: list[dict[str, Any]] = field(default_factory=list)
    issues: list[dict[str, Any]] = field(default_factory=list)
    confidence_scale: float = 1.0
    usage: UsageRecord | None = None

    @classmethod
    def from_payload(
        cls, data: dict[str, Any], usage: UsageRecord | None = None
    ) -> "ModelResponse":
        """Build a response from a decoded JSON body.

        Field values may be bare (``{"total": "10"}``) or wrapped
        (``{"total": {"value": "10", "confidence": 0.9}}``).

        Raises:
            ProviderError: If a section of the body has the wrong shape.
        """
        raw_fields = _section(data, "fields", dict)
        raw_items = _section(data, "line_items", list)
        raw_issues = _section(data, "issues", list)

        fields: dict[str, dict[str, Any]] = {}
        for key, raw in raw_fields.items():
            if isinstance(raw, dict) and "value" in raw:
                fields[key] = {"value": raw["value"], "confidence": raw.get("confidence")}
            else:
                fields[key] = {"value": raw, "confidence": None}

        items: list[dict[str, Any]] = []
        for raw in raw_items:
            if not isinstance(raw, dict):
                continue
            if "values" in raw:
                if not isinstance(raw["values"], dict):
                    raise ProviderError("line item values must be an object")
                items.append(
                    {
                        "values": dict(raw["values"]),
                        "confidence": raw.get("confidence"),
                        "index": raw.get("index", raw.get("_index")),
                    }
                )
            else:
                values = {k: v for k, v in raw.items() if k not in ("confidence", "_index")}
                items.append(
                    {
                        "values": values,
                        "confidence": raw.get("confidence"),
                        "index": raw.get("_index"),
                    }
                )

        return cls(
            fields=fields,
            line_items=items,
            issues=[i for i in raw_issues if isinstance(i, dict)],
            confidence_scale=_scale(data.get("confidence_scale", 1.0)),
            usage=usage,
        )


def _section(data: dict[str, Any], key: str, kind: type) -> Any:
    value = data.get(key)
    if value is None:
        return kind()
    if not isinstance(value, kind):
        expected = "an object" if kind is dict else "a list"
        raise ProviderError(f"model reply '{key}' must be {expected}")
    return value


def _scale(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ProviderError(f"invalid confidence_scale: {value!r}") from exc


class ModelClient(ABC):
    """A model serving one pipeline role.

    Implementations must bound every call with a timeout and raise
    ``TransientProviderError`` for timeouts and rate limits.
    """

    role: str = "extraction"
    model: str = "unknown"

    @abstractmethod
    def invoke(self, request: ModelRequest) -> ModelResponse:
        """Run the model on ``request``."""
