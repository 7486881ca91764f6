from __future__ import annotations

import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Optional

from pydantic import ValidationError

from app.api.schemas import ChatRequest, ChatResponse, ErrorResponse
from app.core import errors
from app.core.admission import AdmissionFilter, AdmissionVerdict, cors_headers
from app.core.audit import append_audit
from app.core.budget import AttemptBudget
from app.core.conversation import build_turn
from app.core.metrics import metrics
from app.core.normalizer import normalize_assistant_payload
from app.core.orchestrator import ModelOrchestrator, RetryPolicy
from app.core.personas import build_degradation_payload, normalize_persona_id
from app.core.prompt_cache import CacheResolution, ContextCacheManager
from app.core.settings import Settings

logger = logging.getLogger(__name__)

TRACE_HEADER = "x-trace-id"
ELAPSED_HEADER = "x-gateway-elapsed-ms"


@dataclass
class GatewayResponse:
    status_code: int
    body: Optional[dict]
    headers: dict[str, str]


@dataclass
class RequestContext:
    trace_id: str
    started: float
    persona_id: str = ""
    outcome: str = "ok"
    error_code: Optional[str] = None
    model: Optional[str] = None
    cache_source: Optional[str] = None
    attempts: list[str] = field(default_factory=list)


def _header(headers: Mapping[str, str], name: str) -> str:
    return str(headers.get(name) or headers.get(name.title()) or "").strip()


class ChatGateway:
    """admission -> cache lookup/create -> budgeted invocation -> normalization."""

    def __init__(
        self,
        settings: Settings,
        admission: AdmissionFilter,
        cache_manager: ContextCacheManager,
        provider: Any,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.settings = settings
        self.admission = admission
        self.cache_manager = cache_manager
        self.provider = provider
        self.orchestrator = ModelOrchestrator(provider, cache_manager, RetryPolicy.from_settings(settings))
        self._clock = clock

    def _elapsed_ms(self, ctx: RequestContext) -> int:
        return max(0, int((self._clock() - ctx.started) * 1000))

    async def handle(self, method: str, headers: Mapping[str, str], body: bytes) -> GatewayResponse:
        ctx = RequestContext(trace_id=_header(headers, TRACE_HEADER) or str(uuid.uuid4()), started=self._clock())
        origin = _header(headers, "origin") or None
        decision = self.admission.evaluate(method, headers)
        base_headers = cors_headers(origin, decision.origin_allowed)
        base_headers[TRACE_HEADER] = ctx.trace_id

        if decision.verdict == AdmissionVerdict.PREFLIGHT:
            return self._respond(ctx, 200, None, base_headers, record=False)
        if decision.verdict == AdmissionVerdict.ORIGIN_REJECTED:
            return self._reject(ctx, 403, "Origin is not allowed.", errors.ORIGIN_NOT_ALLOWED, base_headers)
        if decision.verdict == AdmissionVerdict.METHOD_REJECTED:
            base_headers["allow"] = "POST, OPTIONS"
            return self._reject(ctx, 405, "Method not allowed", errors.METHOD_NOT_ALLOWED, base_headers)
        if decision.verdict == AdmissionVerdict.RATE_LIMITED:
            base_headers["retry-after"] = str(decision.retry_after_sec)
            return self._reject(
                ctx, 429, "Too many requests. Please try again later.", errors.RATE_LIMITED, base_headers
            )

        if not self.settings.api_key:
            logger.error("GOOGLE_API_KEY is not configured")
            return self._reject(
                ctx,
                500,
                "API key not configured. Please set GOOGLE_API_KEY in runtime secrets.",
                errors.MISSING_API_KEY,
                base_headers,
            )

        try:
            request = ChatRequest.model_validate(json.loads(body or b""))
        except (ValueError, ValidationError) as exc:
            # json.JSONDecodeError is a ValueError
            return self._reject(
                ctx,
                400,
                "Invalid request body. Expected JSON format.",
                errors.INVALID_REQUEST_BODY,
                base_headers,
                details=str(exc) if self.settings.debug_errors else None,
            )

        if not isinstance(request.user_message, str) or not request.user_message.strip():
            return self._reject(
                ctx,
                400,
                "userMessage is required and must be a non-empty string.",
                errors.INVALID_REQUEST_BODY,
                base_headers,
            )

        try:
            status_code, payload = await self._converse(ctx, request)
        except Exception as exc:
            logger.exception("chat pipeline failed trace_id=%s", ctx.trace_id)
            return self._reject(
                ctx,
                500,
                "Internal server error. Please try again later.",
                errors.INTERNAL_ERROR,
                base_headers,
                details=str(exc) if self.settings.debug_errors else None,
            )
        return self._respond(ctx, status_code, payload, base_headers)

    async def _converse(self, ctx: RequestContext, request: ChatRequest) -> tuple[int, dict]:
        settings = self.settings
        budget = AttemptBudget(
            total_ms=settings.total_timeout_ms,
            guard_ms=settings.timeout_guard_ms,
            clock=self._clock,
            started_at=ctx.started,
        )
        persona_id = normalize_persona_id(request.character_id)
        ctx.persona_id = persona_id
        turn = build_turn(
            request.system_prompt or "",
            request.user_message,
            request.message_history,
            max_history=settings.history_messages,
            max_part_chars=settings.max_part_chars,
            max_system_prompt_chars=settings.max_system_prompt_chars,
        )

        cache = self.cache_manager.lookup(persona_id, turn.system_prompt, request.cached_content)
        if self.cache_manager.should_create(cache, turn.system_prompt, turn.first_turn, budget):
            created = await self.cache_manager.create(
                self.provider,
                model=settings.model_name,
                persona_id=persona_id,
                key=cache.key,
                system_prompt=turn.clamped_system_prompt(),
            )
            if created:
                cache = CacheResolution(key=cache.key, name=created, source="created")
        ctx.cache_source = cache.source

        result = await self.orchestrator.invoke(turn, budget, cache)
        ctx.attempts = [f"{record.kind}:{record.outcome}" for record in result.attempts]
        ctx.model = result.model

        if result.ok:
            payload = normalize_assistant_payload(result.text, persona_id)
            if cache.key and result.cached_content:
                self.cache_manager.remember(cache.key, result.cached_content)
            return 200, ChatResponse(text=payload.to_json(), cached_content=result.cached_content).to_body()

        error = result.error
        ctx.error_code = error.error_code
        if error.degradable:
            ctx.outcome = "degraded"
            fallback = build_degradation_payload(persona_id)
            handle = None if result.cache_evicted else cache.name
            return 200, ChatResponse(
                text=fallback.to_json(),
                cached_content=handle,
                error_code=error.error_code,
            ).to_body()

        ctx.outcome = "upstream_error"
        return error.http_status(), ErrorResponse(error=error.message, error_code=error.error_code).to_body()

    def _reject(
        self,
        ctx: RequestContext,
        status_code: int,
        message: str,
        error_code: str,
        headers: dict[str, str],
        details: Optional[str] = None,
    ) -> GatewayResponse:
        ctx.outcome = "rejected"
        ctx.error_code = error_code
        if status_code in (403, 405, 429):
            metrics.inc("gateway_admission_rejected_total", {"reason": error_code})
        body = ErrorResponse(error=message, error_code=error_code, details=details).to_body()
        return self._respond(ctx, status_code, body, headers)

    def _respond(
        self,
        ctx: RequestContext,
        status_code: int,
        body: Optional[dict],
        headers: dict[str, str],
        record: bool = True,
    ) -> GatewayResponse:
        elapsed_ms = self._elapsed_ms(ctx)
        final_headers = dict(headers)
        final_headers[ELAPSED_HEADER] = str(elapsed_ms)
        if record:
            self._record(ctx, status_code, elapsed_ms)
        return GatewayResponse(status_code=status_code, body=body, headers=final_headers)

    def _record(self, ctx: RequestContext, status_code: int, elapsed_ms: int) -> None:
        metrics.inc("gateway_requests_total", {"outcome": ctx.outcome})
        logger.info(
            "chat request trace_id=%s persona=%s status=%s outcome=%s error_code=%s attempts=%s elapsed_ms=%s",
            ctx.trace_id,
            ctx.persona_id or "-",
            status_code,
            ctx.outcome,
            ctx.error_code or "-",
            ",".join(ctx.attempts) or "-",
            elapsed_ms,
        )
        try:
            append_audit(
                self.settings.audit_log_path,
                {
                    "trace_id": ctx.trace_id,
                    "persona": ctx.persona_id,
                    "model": ctx.model,
                    "status_code": status_code,
                    "outcome": ctx.outcome,
                    "error_code": ctx.error_code,
                    "attempts": ctx.attempts,
                    "cache_source": ctx.cache_source,
                    "elapsed_ms": elapsed_ms,
                },
            )
        except Exception as exc:
            logger.warning("Failed to append chat audit log: %s", exc)
