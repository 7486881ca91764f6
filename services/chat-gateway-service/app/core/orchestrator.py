from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field, replace
from typing import Any, Optional

from app.core.budget import AttemptBudget
from app.core.conversation import ConversationTurn
from app.core.errors import FailureKind, UpstreamCallError
from app.core.metrics import metrics
from app.core.prompt_cache import NO_CACHE, CacheResolution, ContextCacheManager

logger = logging.getLogger(__name__)

PRIMARY = "primary"
CACHE_RETRY = "cache_retry"
RECOVERY = "recovery"
EMPTY_RETRY = "empty_retry"
MODEL_FALLBACK = "model_fallback"

_NETWORK_KINDS = frozenset({FailureKind.TIMEOUT, FailureKind.CONNECTION})


@dataclass(frozen=True)
class RetryPolicy:
    model: str
    max_output_tokens: int = 320
    attempt_cap_ms: int = 10000
    fallback_model: str = ""
    cache_retry_enabled: bool = True
    recovery_retry_enabled: bool = True
    recovery_timeout_ms: int = 4000
    recovery_system_prompt_chars: int = 600
    empty_retry_enabled: bool = True
    empty_retry_max_output_tokens: int = 200

    @classmethod
    def from_settings(cls, settings: Any) -> "RetryPolicy":
        return cls(
            model=settings.model_name,
            max_output_tokens=settings.max_output_tokens,
            attempt_cap_ms=settings.model_timeout_ms,
            fallback_model=settings.fallback_model,
            cache_retry_enabled=settings.cache_retry_enabled,
            recovery_retry_enabled=settings.recovery_retry_enabled,
            recovery_timeout_ms=settings.recovery_timeout_ms,
            recovery_system_prompt_chars=settings.recovery_system_prompt_chars,
            empty_retry_enabled=settings.empty_retry_enabled,
            empty_retry_max_output_tokens=settings.empty_retry_max_output_tokens,
        )


@dataclass(frozen=True)
class AttemptPlan:
    kind: str
    model: str
    contents: list
    cached_content: Optional[str]
    cap_ms: int
    max_output_tokens: int


@dataclass(frozen=True)
class AttemptRecord:
    kind: str
    model: str
    timeout_ms: int
    outcome: str
    elapsed_ms: int


@dataclass
class InvocationResult:
    text: Optional[str] = None
    error: Optional[UpstreamCallError] = None
    cached_content: Optional[str] = None
    model: Optional[str] = None
    attempts: list[AttemptRecord] = field(default_factory=list)
    cache_evicted: bool = False

    @property
    def ok(self) -> bool:
        return self.text is not None


class ModelOrchestrator:
    """Runs the attempt loop: attempt, classify the failure, pick the next plan.

    Every retry kind is taken at most once, and no attempt starts unless the
    budget leaves a positive timeout after the guard.
    """

    def __init__(self, provider: Any, cache_manager: ContextCacheManager, policy: RetryPolicy) -> None:
        self.provider = provider
        self.cache_manager = cache_manager
        self.policy = policy

    def _primary_plan(self, turn: ConversationTurn, cache: CacheResolution) -> AttemptPlan:
        contents = turn.primed_contents() if cache.name else turn.inline_contents()
        return AttemptPlan(
            kind=PRIMARY,
            model=self.policy.model,
            contents=contents,
            cached_content=cache.name,
            cap_ms=self.policy.attempt_cap_ms,
            max_output_tokens=self.policy.max_output_tokens,
        )

    def _next_plan(
        self,
        error: UpstreamCallError,
        plan: AttemptPlan,
        turn: ConversationTurn,
        cache: CacheResolution,
        used: set[str],
    ) -> Optional[AttemptPlan]:
        policy = self.policy
        if error.kind == FailureKind.CACHE_LOOKUP and plan.cached_content:
            self.cache_manager.invalidate(cache.key)
            if policy.cache_retry_enabled and CACHE_RETRY not in used:
                return replace(plan, kind=CACHE_RETRY, contents=turn.inline_contents(), cached_content=None)
            return None
        if error.kind in _NETWORK_KINDS and policy.recovery_retry_enabled and RECOVERY not in used:
            return AttemptPlan(
                kind=RECOVERY,
                model=plan.model,
                contents=turn.minimized_contents(policy.recovery_system_prompt_chars),
                cached_content=None,
                cap_ms=min(policy.recovery_timeout_ms, policy.attempt_cap_ms),
                max_output_tokens=plan.max_output_tokens,
            )
        if error.kind == FailureKind.EMPTY and policy.empty_retry_enabled and EMPTY_RETRY not in used:
            return AttemptPlan(
                kind=EMPTY_RETRY,
                model=plan.model,
                contents=turn.minimized_contents(policy.recovery_system_prompt_chars),
                cached_content=None,
                cap_ms=plan.cap_ms,
                max_output_tokens=min(plan.max_output_tokens, policy.empty_retry_max_output_tokens),
            )
        if (
            error.kind == FailureKind.MODEL_NOT_FOUND
            and policy.fallback_model
            and policy.fallback_model != plan.model
            and MODEL_FALLBACK not in used
        ):
            return replace(plan, kind=MODEL_FALLBACK, model=policy.fallback_model)
        return None

    async def invoke(
        self,
        turn: ConversationTurn,
        budget: AttemptBudget,
        cache: CacheResolution = NO_CACHE,
    ) -> InvocationResult:
        result = InvocationResult()
        used: set[str] = set()
        plan: Optional[AttemptPlan] = self._primary_plan(turn, cache)

        while plan is not None:
            timeout_ms = budget.attempt_timeout_ms(plan.cap_ms)
            if timeout_ms <= 0:
                if result.error is None:
                    result.error = UpstreamCallError(
                        FailureKind.BUDGET,
                        "Function timeout budget exceeded before model response.",
                        504,
                    )
                logger.info("upstream attempt skipped kind=%s remaining_ms=%s", plan.kind, budget.remaining_ms())
                metrics.inc("gateway_upstream_attempts_total", {"kind": plan.kind, "outcome": "skipped_budget"})
                break

            used.add(plan.kind)
            started = time.monotonic()
            try:
                response = await self.provider.generate_content(
                    model=plan.model,
                    contents=plan.contents,
                    cached_content=plan.cached_content,
                    max_output_tokens=plan.max_output_tokens,
                    timeout_ms=timeout_ms,
                )
            except UpstreamCallError as exc:
                elapsed = int((time.monotonic() - started) * 1000)
                result.attempts.append(AttemptRecord(plan.kind, plan.model, timeout_ms, exc.kind.value, elapsed))
                metrics.inc("gateway_upstream_attempts_total", {"kind": plan.kind, "outcome": exc.kind.value})
                logger.warning(
                    "upstream attempt failed kind=%s model=%s failure=%s status=%s: %s",
                    plan.kind,
                    plan.model,
                    exc.kind.value,
                    exc.status_code,
                    exc.message,
                )
                result.error = exc
                if exc.kind == FailureKind.CACHE_LOOKUP and plan.cached_content:
                    result.cache_evicted = True
                plan = self._next_plan(exc, plan, turn, cache, used)
                continue

            elapsed = int((time.monotonic() - started) * 1000)
            result.attempts.append(AttemptRecord(plan.kind, plan.model, timeout_ms, "ok", elapsed))
            metrics.inc("gateway_upstream_attempts_total", {"kind": plan.kind, "outcome": "ok"})
            result.text = response.text
            result.error = None
            result.model = plan.model
            result.cached_content = plan.cached_content
            return result

        return result
