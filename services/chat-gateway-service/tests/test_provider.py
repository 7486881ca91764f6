import asyncio
from datetime import datetime, timezone

import httpx
import pytest

from app.core import provider
from app.core.errors import FailureKind, UpstreamCallError


def _fake_client(status_code=200, payload=None, raises=None, captured=None):
    class FakeResponse:
        def __init__(self):
            self.status_code = status_code

        def json(self):
            if isinstance(payload, Exception):
                raise payload
            return payload

    class FakeAsyncClient:
        def __init__(self, *args, **kwargs):
            self.timeout = kwargs.get("timeout")

        async def __aenter__(self):
            return self

        async def __aexit__(self, exc_type, exc, tb):
            return False

        async def post(self, url, json=None, headers=None):
            if captured is not None:
                captured.append({"url": url, "json": json, "headers": headers, "timeout": self.timeout})
            if raises is not None:
                raise raises
            return FakeResponse()

    return FakeAsyncClient


def _client(structured_output=True):
    return provider.GeminiClient("secret-key", "https://gemini.test/v1beta/", structured_output=structured_output)


def _generate(client, cached_content=None):
    return asyncio.run(
        client.generate_content(
            model="gemini-test",
            contents=[{"role": "user", "parts": [{"text": "hi"}]}],
            cached_content=cached_content,
            max_output_tokens=320,
            timeout_ms=2500,
        )
    )


def _ok_body(text='{"emotion":"happy","inner_heart":"x","response":"y"}'):
    return {"candidates": [{"content": {"parts": [{"text": text}]}, "finishReason": "STOP"}]}


def test_generate_content_posts_request_and_joins_text(monkeypatch):
    captured = []
    body = {
        "candidates": [
            {
                "content": {"parts": [{"text": "thinking...", "thought": True}, {"text": '{"emotion":'}, {"text": '"happy"}'}]},
                "finishReason": "STOP",
            }
        ]
    }
    monkeypatch.setattr(provider.httpx, "AsyncClient", _fake_client(payload=body, captured=captured))

    result = _generate(_client(), cached_content="cachedContents/abc")

    assert result.text == '{"emotion":"happy"}'
    assert result.finish_reason == "STOP"
    call = captured[0]
    assert call["url"] == "https://gemini.test/v1beta/models/gemini-test:generateContent"
    assert call["headers"]["x-goog-api-key"] == "secret-key"
    assert call["timeout"] == 2.5
    assert call["json"]["cachedContent"] == "cachedContents/abc"
    config = call["json"]["generationConfig"]
    assert config["responseMimeType"] == "application/json"
    assert config["maxOutputTokens"] == 320
    assert config["responseSchema"]["properties"]["emotion"]["enum"] == ["normal", "happy", "confused", "angry"]


def test_unstructured_mode_omits_schema_and_cache_field(monkeypatch):
    captured = []
    monkeypatch.setattr(provider.httpx, "AsyncClient", _fake_client(payload=_ok_body(), captured=captured))

    _generate(_client(structured_output=False))

    assert "responseSchema" not in captured[0]["json"]["generationConfig"]
    assert "cachedContent" not in captured[0]["json"]


def test_timeout_maps_to_timeout_failure(monkeypatch):
    monkeypatch.setattr(provider.httpx, "AsyncClient", _fake_client(raises=httpx.ReadTimeout("slow")))

    with pytest.raises(UpstreamCallError) as exc_info:
        _generate(_client())

    assert exc_info.value.kind == FailureKind.TIMEOUT
    assert exc_info.value.degradable is True
    assert exc_info.value.http_status() == 504


def test_transport_error_maps_to_connection_failure(monkeypatch):
    monkeypatch.setattr(provider.httpx, "AsyncClient", _fake_client(raises=httpx.ConnectError("refused")))

    with pytest.raises(UpstreamCallError) as exc_info:
        _generate(_client())

    assert exc_info.value.kind == FailureKind.CONNECTION
    assert exc_info.value.error_code == "UPSTREAM_CONNECTION_FAILED"


def test_non_json_body_is_invalid_response(monkeypatch):
    monkeypatch.setattr(provider.httpx, "AsyncClient", _fake_client(payload=ValueError("not json")))

    with pytest.raises(UpstreamCallError) as exc_info:
        _generate(_client())

    assert exc_info.value.kind == FailureKind.INVALID_RESPONSE
    assert exc_info.value.degradable is False
    assert exc_info.value.http_status() == 502


def test_empty_candidates_are_empty_failure(monkeypatch):
    body = {"candidates": [], "promptFeedback": {"blockReason": "SAFETY"}}
    monkeypatch.setattr(provider.httpx, "AsyncClient", _fake_client(payload=body))

    with pytest.raises(UpstreamCallError) as exc_info:
        _generate(_client())

    assert exc_info.value.kind == FailureKind.EMPTY
    assert "SAFETY" in exc_info.value.message


def test_stale_cache_error_is_cache_lookup_only_when_handle_used(monkeypatch):
    body = {"error": {"code": 404, "message": "CachedContent not found (or permission denied)"}}
    monkeypatch.setattr(provider.httpx, "AsyncClient", _fake_client(status_code=404, payload=body))

    with pytest.raises(UpstreamCallError) as exc_info:
        _generate(_client(), cached_content="cachedContents/gone")
    assert exc_info.value.kind == FailureKind.CACHE_LOOKUP

    with pytest.raises(UpstreamCallError) as exc_info:
        _generate(_client())
    assert exc_info.value.kind == FailureKind.MODEL_NOT_FOUND


@pytest.mark.parametrize(
    "status_code,message,kind,code",
    [
        (400, "API key not valid. Please pass a valid API key.", FailureKind.AUTH, "UPSTREAM_AUTH_ERROR"),
        (429, "You exceeded your current quota", FailureKind.QUOTA, "UPSTREAM_QUOTA_EXCEEDED"),
        (400, "User location is not supported for the API use.", FailureKind.LOCATION, "UPSTREAM_LOCATION_UNSUPPORTED"),
        (404, "models/gemini-x is not found for API version v1beta", FailureKind.MODEL_NOT_FOUND, "UPSTREAM_MODEL_ERROR"),
        (500, "Internal error encountered.", FailureKind.MODEL_ERROR, "UPSTREAM_MODEL_ERROR"),
    ],
)
def test_provider_errors_are_classified(monkeypatch, status_code, message, kind, code):
    body = {"error": {"code": status_code, "message": message}}
    monkeypatch.setattr(provider.httpx, "AsyncClient", _fake_client(status_code=status_code, payload=body))

    with pytest.raises(UpstreamCallError) as exc_info:
        _generate(_client())

    assert exc_info.value.kind == kind
    assert exc_info.value.error_code == code
    assert exc_info.value.http_status() == status_code
    assert exc_info.value.degradable is False


def test_auth_error_message_points_at_key_configuration():
    error = provider.classify_model_error(403, "API_KEY_INVALID", used_cache=False)
    assert error.kind == FailureKind.AUTH
    assert "GOOGLE_API_KEY" in error.message


def test_create_cached_content_returns_name_and_expiry(monkeypatch):
    captured = []
    body = {"name": "cachedContents/xyz", "expireTime": "2026-01-01T00:00:00.123456789Z"}
    monkeypatch.setattr(provider.httpx, "AsyncClient", _fake_client(payload=body, captured=captured))

    name, expire_at = asyncio.run(
        _client().create_cached_content(
            model="gemini-test",
            display_name="vmate-mika-abcdef12",
            system_prompt="You are Mika.",
            ttl_seconds=21600,
            timeout_ms=1800,
        )
    )

    assert name == "cachedContents/xyz"
    expected = datetime(2026, 1, 1, 0, 0, 0, 123456, tzinfo=timezone.utc).timestamp()
    assert expire_at == pytest.approx(expected)
    sent = captured[0]["json"]
    assert captured[0]["url"] == "https://gemini.test/v1beta/cachedContents"
    assert sent["model"] == "models/gemini-test"
    assert sent["ttl"] == "21600s"
    assert sent["systemInstruction"]["parts"][0]["text"] == "You are Mika."


def test_create_cached_content_without_name_is_invalid(monkeypatch):
    monkeypatch.setattr(provider.httpx, "AsyncClient", _fake_client(payload={"expireTime": "bad"}))

    with pytest.raises(UpstreamCallError) as exc_info:
        asyncio.run(
            _client().create_cached_content(
                model="gemini-test",
                display_name="x",
                system_prompt="p",
                ttl_seconds=300,
                timeout_ms=1800,
            )
        )
    assert exc_info.value.kind == FailureKind.INVALID_RESPONSE


def test_parse_expire_time_handles_garbage():
    assert provider.parse_expire_time(None) is None
    assert provider.parse_expire_time("not a date") is None
    assert provider.parse_expire_time("2026-01-01T00:00:00Z") == datetime(2026, 1, 1, tzinfo=timezone.utc).timestamp()
