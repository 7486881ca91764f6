from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

import httpx

from app.core.errors import FailureKind, UpstreamCallError
from app.core.payload import ALLOWED_EMOTIONS

logger = logging.getLogger(__name__)

_CACHE_LOOKUP_MARKERS = ("cachedcontent", "cached content", "not found", "expired")
_MODEL_MISSING_MARKERS = ("is not found", "is not supported", "is not available")
_FRACTION_RE = re.compile(r"\.(\d{6})\d+")


@dataclass(frozen=True)
class GenerateResult:
    text: str
    finish_reason: Optional[str]
    raw: dict


def response_schema() -> dict:
    return {
        "type": "OBJECT",
        "properties": {
            "emotion": {"type": "STRING", "enum": list(ALLOWED_EMOTIONS)},
            "inner_heart": {"type": "STRING"},
            "response": {"type": "STRING"},
            "narration": {"type": "STRING"},
        },
        "required": ["emotion", "inner_heart", "response"],
    }


def classify_model_error(status_code: int, message: str, used_cache: bool) -> UpstreamCallError:
    lowered = message.lower()
    if used_cache and any(marker in lowered for marker in _CACHE_LOOKUP_MARKERS):
        return UpstreamCallError(FailureKind.CACHE_LOOKUP, message, status_code)
    if "api_key" in lowered or "api key" in lowered:
        return UpstreamCallError(
            FailureKind.AUTH,
            "Invalid or expired API key. Please check GOOGLE_API_KEY in the runtime secrets.",
            status_code,
        )
    if "quota" in lowered:
        return UpstreamCallError(
            FailureKind.QUOTA,
            "API quota exceeded. Please check your Google Cloud billing.",
            status_code,
        )
    if "location is not supported" in lowered:
        return UpstreamCallError(
            FailureKind.LOCATION,
            "Gemini API is not available in this server region. Deploy in a supported region or switch provider.",
            status_code,
        )
    if status_code == 404 or any(marker in lowered for marker in _MODEL_MISSING_MARKERS):
        return UpstreamCallError(FailureKind.MODEL_NOT_FOUND, message, status_code)
    return UpstreamCallError(FailureKind.MODEL_ERROR, message, status_code)


def extract_text(data: dict) -> tuple[str, Optional[str]]:
    candidates = data.get("candidates")
    if not isinstance(candidates, list) or not candidates or not isinstance(candidates[0], dict):
        feedback = data.get("promptFeedback")
        block_reason = feedback.get("blockReason") if isinstance(feedback, dict) else None
        return "", str(block_reason) if block_reason else None
    candidate = candidates[0]
    finish_reason = candidate.get("finishReason")
    content = candidate.get("content")
    parts = content.get("parts") if isinstance(content, dict) else None
    texts: list[str] = []
    if isinstance(parts, list):
        for part in parts:
            if not isinstance(part, dict) or part.get("thought"):
                continue
            text = part.get("text")
            if isinstance(text, str):
                texts.append(text)
    return "".join(texts), str(finish_reason) if finish_reason else None


def parse_expire_time(value: Any) -> Optional[float]:
    if not isinstance(value, str) or not value.strip():
        return None
    text = _FRACTION_RE.sub(r".\1", value.strip())
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(text).timestamp()
    except ValueError:
        return None


def _error_message(data: Any, fallback: str) -> str:
    if isinstance(data, dict):
        error = data.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if isinstance(error, str) and error:
            return error
    return fallback


class GeminiClient:
    def __init__(self, api_key: str, base_url: str, structured_output: bool = True) -> None:
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.structured_output = structured_output

    def _headers(self) -> dict[str, str]:
        return {"content-type": "application/json", "x-goog-api-key": self.api_key}

    async def _post(self, url: str, body: dict, timeout_ms: int) -> tuple[int, Any]:
        timeout_sec = max(timeout_ms, 1) / 1000.0
        try:
            async with httpx.AsyncClient(timeout=timeout_sec) as client:
                response = await asyncio.wait_for(
                    client.post(url, json=body, headers=self._headers()),
                    timeout=timeout_sec,
                )
        except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
            raise UpstreamCallError(FailureKind.TIMEOUT, f"Request timeout on upstream ({timeout_ms}ms).", 504) from exc
        except httpx.HTTPError as exc:
            raise UpstreamCallError(
                FailureKind.CONNECTION,
                "Failed to connect to Gemini API. Please try again later.",
                503,
            ) from exc
        try:
            data = response.json()
        except ValueError as exc:
            raise UpstreamCallError(FailureKind.INVALID_RESPONSE, "Invalid response from Gemini API.", 502) from exc
        return response.status_code, data

    async def generate_content(
        self,
        *,
        model: str,
        contents: list[dict],
        cached_content: Optional[str],
        max_output_tokens: int,
        timeout_ms: int,
    ) -> GenerateResult:
        generation_config: dict[str, Any] = {
            "responseMimeType": "application/json",
            "maxOutputTokens": max_output_tokens,
        }
        if self.structured_output:
            generation_config["responseSchema"] = response_schema()
        body: dict[str, Any] = {"contents": contents, "generationConfig": generation_config}
        if cached_content:
            body["cachedContent"] = cached_content

        logger.debug("generateContent model=%s cached=%s timeout_ms=%s", model, bool(cached_content), timeout_ms)
        status_code, data = await self._post(f"{self.base_url}/models/{model}:generateContent", body, timeout_ms)
        if not isinstance(data, dict):
            raise UpstreamCallError(FailureKind.INVALID_RESPONSE, "Invalid response format from Gemini API.", 502)
        if status_code >= 400 or data.get("error"):
            message = _error_message(data, "Model call failed")
            raise classify_model_error(status_code, message, used_cache=bool(cached_content))

        text, finish_reason = extract_text(data)
        if not text.strip():
            raise UpstreamCallError(
                FailureKind.EMPTY,
                f"Gemini API returned no text (finish_reason={finish_reason or 'unknown'}).",
                502,
            )
        return GenerateResult(text=text, finish_reason=finish_reason, raw=data)

    async def create_cached_content(
        self,
        *,
        model: str,
        display_name: str,
        system_prompt: str,
        ttl_seconds: int,
        timeout_ms: int,
    ) -> tuple[str, Optional[float]]:
        body = {
            "model": f"models/{model}",
            "displayName": display_name,
            "ttl": f"{ttl_seconds}s",
            "systemInstruction": {"role": "system", "parts": [{"text": system_prompt}]},
        }
        status_code, data = await self._post(f"{self.base_url}/cachedContents", body, timeout_ms)
        if not isinstance(data, dict):
            raise UpstreamCallError(FailureKind.INVALID_RESPONSE, "Invalid cachedContents response.", 502)
        if status_code >= 400 or data.get("error"):
            raise classify_model_error(status_code, _error_message(data, "cachedContents create failed"), used_cache=False)
        name = data.get("name")
        if not isinstance(name, str) or not name:
            raise UpstreamCallError(FailureKind.INVALID_RESPONSE, "cachedContents response has no name.", 502)
        return name, parse_expire_time(data.get("expireTime"))
