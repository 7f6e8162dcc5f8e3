"""Vendor-neutral JSON model endpoint client.

POSTs the request payload to the configured URL and decodes the JSON reply.
Timeouts, transport failures, rate limits and server errors are transient;
other client errors and unparseable bodies are not.
"""

import os
import time

import httpx

from docsense.errors import ProviderError, TransientProviderError
from docsense.utils.config import ModelEndpointConfig
from docsense.utils.logger import get_logger

from .base import ModelClient, ModelRequest, ModelResponse, UsageRecord

logger = get_logger(__name__)


class HttpModelClient(ModelClient):
    """Model client for a remote JSON endpoint.

    Args:
        role: Pipeline role served by this endpoint.
        config: Endpoint URL, model name, API key variable and timeout.
        client: Optional pre-built ``httpx.Client`` (tests pass a mock transport).
    """

    def __init__(
        self,
        role: str,
        config: ModelEndpointConfig,
        client: httpx.Client | None = None,
    ) -> None:
        if not config.url:
            raise ValueError(f"model endpoint for role '{role}' has no url")
        self.role = role
        self.model = config.model
        self.config = config
        self._client = client or httpx.Client(timeout=httpx.Timeout(config.timeout_s))

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.config.api_key_env:
            api_key = os.environ.get(self.config.api_key_env)
            if api_key:
                headers["Authorization"] = f"Bearer {api_key}"
        return headers

    def invoke(self, request: ModelRequest) -> ModelResponse:
        """POST the request and decode the model's reply.

        Raises:
            TransientProviderError: On timeout, transport error, 429 or 5xx.
            ProviderError: On other 4xx responses, an invalid JSON body or a
                body whose sections have the wrong shape.
        """
        body = {"model": self.model, **request.to_payload()}
        started = time.perf_counter()
        try:
            response = self._client.post(
                self.config.url,
                json=body,
                headers=self._headers(),
                timeout=self.config.timeout_s,
            )
        except httpx.TimeoutException as exc:
            raise TransientProviderError(f"{self.role} call timed out: {exc}") from exc
        except httpx.TransportError as exc:
            raise TransientProviderError(f"{self.role} call failed: {exc}") from exc

        duration_ms = (time.perf_counter() - started) * 1000
        if response.status_code == 429 or response.status_code >= 500:
            raise TransientProviderError(
                f"{self.role} endpoint returned {response.status_code}"
            )
        if response.status_code >= 400:
            raise ProviderError(
                f"{self.role} endpoint returned {response.status_code}: "
                f"{response.text[:200]}"
            )

        try:
            data = response.json()
        except ValueError as exc:
            raise ProviderError(f"{self.role} endpoint returned invalid JSON") from exc
        if not isinstance(data, dict):
            raise ProviderError(f"{self.role} endpoint returned a non-object body")

        raw_usage = data.get("usage") or {}
        if not isinstance(raw_usage, dict):
            raise ProviderError(f"{self.role} endpoint returned a malformed usage block")
        try:
            usage = UsageRecord(
                role=self.role,
                model=str(data.get("model", self.model)),
                input_tokens=int(raw_usage.get("input_tokens", 0)),
                output_tokens=int(raw_usage.get("output_tokens", 0)),
                cost_usd=float(raw_usage.get("cost_usd", 0.0)),
                duration_ms=round(duration_ms, 2),
            )
        except (TypeError, ValueError) as exc:
            raise ProviderError(f"{self.role} endpoint returned a malformed usage block") from exc
        logger.info(
            "Model call role=%s model=%s tokens=%d/%d cost=$%.4f in %.0fms",
            usage.role,
            usage.model,
            usage.input_tokens,
            usage.output_tokens,
            usage.cost_usd,
            usage.duration_ms,
        )
        return ModelResponse.from_payload(data, usage)

    def close(self) -> None:
        self._client.close()
