"""Tests for the JSON model endpoint client."""

import json

import httpx
import pytest

from docsense.errors import ProviderError, TransientProviderError
from docsense.providers.base import ModelRequest
from docsense.providers.http_client import HttpModelClient
from docsense.schema import INVOICE
from docsense.utils.config import ModelEndpointConfig

URL = "https://models.example.test/v1/extract"


def _client(handler, **config) -> HttpModelClient:
    endpoint = ModelEndpointConfig(url=URL, model="extractor-large", **config)
    transport = httpx.MockTransport(handler)
    return HttpModelClient("extraction", endpoint, client=httpx.Client(transport=transport))


def _request() -> ModelRequest:
    return ModelRequest(role="extraction", schema=INVOICE, text="Total: 1250.00")


class TestHttpModelClient:
    """Tests for HttpModelClient.invoke."""

    def test_posts_payload_and_decodes_reply(self, monkeypatch) -> None:
        monkeypatch.setenv("DOCSENSE_TEST_KEY", "secret")
        seen: dict = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["body"] = json.loads(request.content)
            seen["auth"] = request.headers.get("Authorization")
            return httpx.Response(
                200,
                json={
                    "fields": {
                        "total_amount": {"value": "1250.00", "confidence": 92},
                        "currency": "SEK",
                    },
                    "line_items": [{"description": "Oak", "amount": "10", "_index": 3}],
                    "confidence_scale": 100,
                    "usage": {"input_tokens": 120, "output_tokens": 30, "cost_usd": 0.002},
                },
            )

        response = _client(handler, api_key_env="DOCSENSE_TEST_KEY").invoke(_request())

        assert seen["body"]["model"] == "extractor-large"
        assert seen["body"]["role"] == "extraction"
        assert seen["body"]["text"] == "Total: 1250.00"
        assert seen["body"]["schema"]["doc_type"] == "invoice"
        assert "rows" not in seen["body"]
        assert seen["auth"] == "Bearer secret"

        assert response.fields["total_amount"] == {"value": "1250.00", "confidence": 92}
        assert response.fields["currency"] == {"value": "SEK", "confidence": None}
        assert response.line_items == [
            {"values": {"description": "Oak", "amount": "10"}, "confidence": None, "index": 3}
        ]
        assert response.confidence_scale == 100.0
        assert response.usage.input_tokens == 120
        assert response.usage.cost_usd == 0.002
        assert response.usage.role == "extraction"

    def test_no_key_no_auth_header(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            assert "Authorization" not in request.headers
            return httpx.Response(200, json={})

        response = _client(handler, api_key_env="DOCSENSE_UNSET_KEY").invoke(_request())
        assert response.fields == {}

    @pytest.mark.parametrize("status", [429, 500, 503])
    def test_retryable_statuses_are_transient(self, status: int) -> None:
        client = _client(lambda request: httpx.Response(status))
        with pytest.raises(TransientProviderError):
            client.invoke(_request())

    def test_client_error_is_permanent(self) -> None:
        client = _client(lambda request: httpx.Response(400, text="bad schema"))
        with pytest.raises(ProviderError, match="bad schema") as exc_info:
            client.invoke(_request())
        assert not isinstance(exc_info.value, TransientProviderError)

    def test_timeout_is_transient(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        with pytest.raises(TransientProviderError, match="timed out"):
            _client(handler).invoke(_request())

    def test_connection_error_is_transient(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(TransientProviderError):
            _client(handler).invoke(_request())

    @pytest.mark.parametrize("body", [b"not json", b"[1, 2]"])
    def test_bad_body_is_permanent(self, body: bytes) -> None:
        client = _client(lambda request: httpx.Response(200, content=body))
        with pytest.raises(ProviderError):
            client.invoke(_request())

    @pytest.mark.parametrize(
        "body",
        [
            {"fields": ["oops"]},
            {"line_items": {"description": "Oak"}},
            {"line_items": [{"values": ["Oak", "10"]}]},
            {"issues": "none"},
            {"confidence_scale": "percent"},
            {"usage": [120, 30]},
            {"usage": {"input_tokens": "many"}},
        ],
    )
    def test_wrong_shaped_sections_are_permanent(self, body: dict) -> None:
        client = _client(lambda request: httpx.Response(200, json=body))
        with pytest.raises(ProviderError) as exc_info:
            client.invoke(_request())
        assert not isinstance(exc_info.value, TransientProviderError)

    def test_url_required(self) -> None:
        with pytest.raises(ValueError):
            HttpModelClient("extraction", ModelEndpointConfig())
