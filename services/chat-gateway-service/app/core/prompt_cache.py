from __future__ import annotations

import hashlib
import logging
import re
import time
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Optional

from app.core.budget import AttemptBudget
from app.core.errors import UpstreamCallError
from app.core.metrics import metrics

logger = logging.getLogger(__name__)

CACHED_CONTENT_NAME_RE = re.compile(r"^cachedContents/[A-Za-z0-9/_\-.]+$")
EXPIRY_MARGIN_SEC = 15.0
MIN_TTL_SECONDS = 300


def stable_prompt_hash(prompt: str) -> str:
    return hashlib.sha256(str(prompt or "").encode("utf-8")).hexdigest()[:24]


def build_cache_key(persona_id: str, prompt: str) -> str:
    return f"{persona_id}:{stable_prompt_hash(prompt)}"


def parse_cached_content_name(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    text = value.strip()
    if not CACHED_CONTENT_NAME_RE.match(text):
        return None
    return text


@dataclass(frozen=True)
class PromptCacheEntry:
    name: str
    expire_at: float

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "expire_at": self.expire_at}

    @classmethod
    def from_dict(cls, raw: Any) -> Optional["PromptCacheEntry"]:
        if not isinstance(raw, dict):
            return None
        name = raw.get("name")
        expire_at = raw.get("expire_at")
        if not isinstance(name, str) or not isinstance(expire_at, (int, float)):
            return None
        return cls(name=name, expire_at=float(expire_at))


@dataclass(frozen=True)
class CacheResolution:
    """Outcome of a lookup. `name` None means call without priming."""

    key: Optional[str]
    name: Optional[str]
    source: Optional[str]

    @property
    def eligible(self) -> bool:
        return self.key is not None


NO_CACHE = CacheResolution(key=None, name=None, source=None)


class ContextCacheManager:
    def __init__(
        self,
        store: Any,
        *,
        enabled: bool,
        auto_create: bool,
        ttl_seconds: int,
        warmup_min_chars: int,
        create_timeout_ms: int,
        create_reserve_ms: int,
        personas: Iterable[str],
        clock: Callable[[], float] = time.time,
        key_prefix: str = "prompt-cache:",
    ) -> None:
        self.store = store
        self.enabled = enabled
        self.auto_create = auto_create
        self.ttl_seconds = max(MIN_TTL_SECONDS, ttl_seconds)
        self.warmup_min_chars = warmup_min_chars
        self.create_timeout_ms = create_timeout_ms
        self.create_reserve_ms = create_reserve_ms
        self.personas = {persona.strip().lower() for persona in personas if persona.strip()}
        self._clock = clock
        self._prefix = key_prefix

    @classmethod
    def from_settings(cls, store: Any, settings: Any, clock: Callable[[], float] = time.time) -> "ContextCacheManager":
        return cls(
            store,
            enabled=settings.context_cache_enabled,
            auto_create=settings.context_cache_auto_create,
            ttl_seconds=settings.context_cache_ttl_seconds,
            warmup_min_chars=settings.context_cache_warmup_min_chars,
            create_timeout_ms=settings.context_cache_create_timeout_ms,
            create_reserve_ms=settings.context_cache_create_reserve_ms,
            personas=settings.context_cache_personas,
            clock=clock,
        )

    def _store_key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    def can_cache(self, persona_id: str, system_prompt: str) -> bool:
        return self.enabled and bool(system_prompt) and persona_id in self.personas

    def get_entry(self, key: str) -> Optional[PromptCacheEntry]:
        entry = PromptCacheEntry.from_dict(self.store.get(self._store_key(key)))
        if entry is None:
            return None
        # Stop reusing just before the provider expires the handle itself.
        if self._clock() >= entry.expire_at - EXPIRY_MARGIN_SEC:
            self.store.delete(self._store_key(key))
            return None
        return entry

    def lookup(self, persona_id: str, system_prompt: str, requested: Any = None) -> CacheResolution:
        if not self.can_cache(persona_id, system_prompt):
            return NO_CACHE
        key = build_cache_key(persona_id, system_prompt)
        requested_name = parse_cached_content_name(requested)
        if requested_name:
            metrics.inc("gateway_prompt_cache_total", {"event": "request_handle"})
            return CacheResolution(key=key, name=requested_name, source="request")
        entry = self.get_entry(key)
        if entry is not None:
            metrics.inc("gateway_prompt_cache_total", {"event": "hit"})
            return CacheResolution(key=key, name=entry.name, source="store")
        metrics.inc("gateway_prompt_cache_total", {"event": "miss"})
        return CacheResolution(key=key, name=None, source=None)

    def should_create(
        self,
        resolution: CacheResolution,
        system_prompt: str,
        first_turn: bool,
        budget: AttemptBudget,
    ) -> bool:
        return (
            resolution.eligible
            and resolution.name is None
            and self.auto_create
            and first_turn
            and len(system_prompt) >= self.warmup_min_chars
            and budget.can_afford(self.create_reserve_ms)
        )

    async def create(
        self,
        provider: Any,
        *,
        model: str,
        persona_id: str,
        key: str,
        system_prompt: str,
    ) -> Optional[str]:
        """Best effort: any provider failure yields None."""
        display_name = f"vmate-{persona_id}-{key[-8:]}"
        try:
            name, expire_at = await provider.create_cached_content(
                model=model,
                display_name=display_name,
                system_prompt=system_prompt,
                ttl_seconds=self.ttl_seconds,
                timeout_ms=self.create_timeout_ms,
            )
        except UpstreamCallError as exc:
            logger.warning("prompt cache create failed persona=%s kind=%s: %s", persona_id, exc.kind.value, exc.message)
            metrics.inc("gateway_prompt_cache_total", {"event": "create_failed"})
            return None
        if expire_at is None:
            expire_at = self._clock() + self.ttl_seconds
        self._put(key, PromptCacheEntry(name=name, expire_at=expire_at))
        metrics.inc("gateway_prompt_cache_total", {"event": "created"})
        return name

    def remember(self, key: str, name: str) -> None:
        self._put(key, PromptCacheEntry(name=name, expire_at=self._clock() + self.ttl_seconds))

    def invalidate(self, key: Optional[str]) -> None:
        if not key:
            return
        self.store.delete(self._store_key(key))
        metrics.inc("gateway_prompt_cache_total", {"event": "evicted"})

    def _put(self, key: str, entry: PromptCacheEntry) -> None:
        ttl = max(1.0, entry.expire_at - self._clock())
        self.store.set(self._store_key(key), entry.to_dict(), ttl)
