from dataclasses import replace

import pytest

from app.core.admission import AdmissionFilter
from app.core.gateway import ChatGateway
from app.core.limiter import RateLimiter
from app.core.metrics import metrics
from app.core.prompt_cache import ContextCacheManager
from app.core.provider import GenerateResult
from app.core.settings import load_settings
from app.core.store import MemoryStore


class FakeClock:
    def __init__(self, now: float = 1_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeRedis:
    """Dict-backed stand-in for a redis client; TTLs are recorded, never applied."""

    def __init__(self):
        self.data = {}
        self.ttls = {}
        self.pttls = {}

    def get(self, key):
        return self.data.get(key)

    def set(self, key, value):
        self.data[key] = value

    def setex(self, key, ttl, value):
        self.data[key] = value
        self.ttls[key] = ttl

    def delete(self, key):
        self.data.pop(key, None)
        self.pttls.pop(key, None)

    def incr(self, key):
        value = int(self.data.get(key, 0)) + 1
        self.data[key] = str(value)
        return value

    def pexpire(self, key, ms):
        self.pttls[key] = ms
        return True

    def pttl(self, key):
        if key not in self.data:
            return -2
        return self.pttls.get(key, -1)


class FakeProvider:
    """Scripted stand-in for GeminiClient.

    `responses` items are either reply text or an exception to raise. Each
    generate call advances `clock` by `step` seconds when a clock is given.
    """

    def __init__(self, responses=(), clock=None, step=0.0, cache_result=("cachedContents/created-1", None)):
        self.responses = list(responses)
        self.clock = clock
        self.step = step
        self.cache_result = cache_result
        self.calls = []
        self.cache_calls = []

    async def generate_content(self, *, model, contents, cached_content, max_output_tokens, timeout_ms):
        self.calls.append(
            {
                "model": model,
                "contents": contents,
                "cached_content": cached_content,
                "max_output_tokens": max_output_tokens,
                "timeout_ms": timeout_ms,
            }
        )
        if self.clock is not None and self.step:
            self.clock.advance(self.step)
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return GenerateResult(text=item, finish_reason="STOP", raw={})

    async def create_cached_content(self, *, model, display_name, system_prompt, ttl_seconds, timeout_ms):
        self.cache_calls.append(
            {
                "model": model,
                "display_name": display_name,
                "system_prompt": system_prompt,
                "ttl_seconds": ttl_seconds,
                "timeout_ms": timeout_ms,
            }
        )
        if isinstance(self.cache_result, Exception):
            raise self.cache_result
        return self.cache_result


def make_settings(**overrides):
    base = replace(
        load_settings(),
        api_key="test-key",
        model_name="gemini-test",
        fallback_model="",
        audit_log_path="",
        redis_url="",
        allowed_origins=["http://localhost:5173"],
        allow_all_origins=False,
        rate_limit_window_ms=60000,
        rate_limit_max_requests=30,
        model_timeout_ms=10000,
        total_timeout_ms=13000,
        timeout_guard_ms=1200,
        recovery_timeout_ms=4000,
        cache_retry_enabled=True,
        recovery_retry_enabled=True,
        empty_retry_enabled=True,
        context_cache_enabled=True,
        context_cache_auto_create=False,
        context_cache_ttl_seconds=21600,
        context_cache_warmup_min_chars=1200,
        context_cache_create_reserve_ms=3000,
        context_cache_personas=["mika", "alice", "kael"],
        debug_errors=False,
    )
    return replace(base, **overrides)


def make_gateway(settings, provider, wall_clock=None, mono_clock=None):
    wall_clock = wall_clock or FakeClock(1_700_000_000.0)
    mono_clock = mono_clock or FakeClock(100.0)
    limiter = RateLimiter(
        MemoryStore(wall_clock),
        settings.rate_limit_max_requests,
        settings.rate_limit_window_ms,
    )
    admission = AdmissionFilter(settings.allowed_origins, settings.allow_all_origins, limiter)
    cache_manager = ContextCacheManager.from_settings(MemoryStore(wall_clock), settings, clock=wall_clock)
    return ChatGateway(settings, admission, cache_manager, provider, clock=mono_clock)


@pytest.fixture(autouse=True)
def _reset_metrics():
    metrics.reset()
    yield
    metrics.reset()
