from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Mapping

from app.core.limiter import RateLimiter
from app.core.settings import normalize_origin

ALLOWED_METHODS = ("POST", "OPTIONS")


class AdmissionVerdict(str, Enum):
    ALLOW = "allow"
    PREFLIGHT = "preflight"
    ORIGIN_REJECTED = "origin_rejected"
    METHOD_REJECTED = "method_rejected"
    RATE_LIMITED = "rate_limited"


@dataclass(frozen=True)
class AdmissionDecision:
    verdict: AdmissionVerdict
    origin_allowed: bool
    client_key: str
    retry_after_sec: int = 0

    @property
    def admitted(self) -> bool:
        return self.verdict == AdmissionVerdict.ALLOW


def _header(headers: Mapping[str, str], name: str) -> str:
    value = headers.get(name)
    if value is None:
        value = headers.get(name.title())
    return str(value or "").strip()


def client_key(headers: Mapping[str, str]) -> str:
    forwarded_for = _header(headers, "x-forwarded-for")
    ip = forwarded_for.split(",")[0].strip()
    if ip:
        return f"ip:{ip}"
    origin = normalize_origin(_header(headers, "origin"))
    if origin:
        return f"origin:{origin}"
    return "anonymous"


class AdmissionFilter:
    """Origin allowlist, method check and per-client quota, in that order.

    Preflight requests run the origin check and then stop; they never touch
    the quota.
    """

    def __init__(self, allowed_origins: Iterable[str], allow_all: bool, limiter: RateLimiter) -> None:
        self.allowed_origins = {normalize_origin(origin) for origin in allowed_origins if normalize_origin(origin)}
        self.allow_all = allow_all
        self.limiter = limiter

    def origin_allowed(self, origin: str | None) -> bool:
        if self.allow_all:
            return True
        if not origin:
            # server-to-server and health calls carry no Origin
            return True
        return normalize_origin(origin) in self.allowed_origins

    def evaluate(self, method: str, headers: Mapping[str, str]) -> AdmissionDecision:
        origin = _header(headers, "origin") or None
        allowed = self.origin_allowed(origin)
        key = client_key(headers)
        method = (method or "").upper()

        if method == "OPTIONS":
            verdict = AdmissionVerdict.PREFLIGHT if allowed else AdmissionVerdict.ORIGIN_REJECTED
            return AdmissionDecision(verdict, allowed, key)
        if method not in ALLOWED_METHODS:
            return AdmissionDecision(AdmissionVerdict.METHOD_REJECTED, allowed, key)
        if not allowed:
            return AdmissionDecision(AdmissionVerdict.ORIGIN_REJECTED, allowed, key)

        decision = self.limiter.check(key)
        if not decision.allowed:
            return AdmissionDecision(AdmissionVerdict.RATE_LIMITED, allowed, key, decision.retry_after_sec)
        return AdmissionDecision(AdmissionVerdict.ALLOW, allowed, key)


def cors_headers(origin: str | None, origin_allowed: bool) -> dict[str, str]:
    if origin_allowed:
        resolved = origin or "*"
    else:
        resolved = "null"
    return {
        "access-control-allow-origin": resolved,
        "access-control-allow-headers": "Content-Type",
        "access-control-allow-methods": "POST, OPTIONS",
        "access-control-expose-headers": "x-trace-id, x-gateway-elapsed-ms, retry-after",
        "vary": "Origin",
    }
