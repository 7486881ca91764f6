from __future__ import annotations

from enum import Enum

ORIGIN_NOT_ALLOWED = "ORIGIN_NOT_ALLOWED"
METHOD_NOT_ALLOWED = "METHOD_NOT_ALLOWED"
RATE_LIMITED = "RATE_LIMITED"
MISSING_API_KEY = "MISSING_API_KEY"
INVALID_REQUEST_BODY = "INVALID_REQUEST_BODY"
UPSTREAM_TIMEOUT = "UPSTREAM_TIMEOUT"
UPSTREAM_CONNECTION_FAILED = "UPSTREAM_CONNECTION_FAILED"
FUNCTION_BUDGET_TIMEOUT = "FUNCTION_BUDGET_TIMEOUT"
UPSTREAM_EMPTY_RESPONSE = "UPSTREAM_EMPTY_RESPONSE"
UPSTREAM_MODEL_ERROR = "UPSTREAM_MODEL_ERROR"
UPSTREAM_AUTH_ERROR = "UPSTREAM_AUTH_ERROR"
UPSTREAM_QUOTA_EXCEEDED = "UPSTREAM_QUOTA_EXCEEDED"
UPSTREAM_LOCATION_UNSUPPORTED = "UPSTREAM_LOCATION_UNSUPPORTED"
UPSTREAM_INVALID_RESPONSE = "UPSTREAM_INVALID_RESPONSE"
INTERNAL_ERROR = "INTERNAL_ERROR"


class FailureKind(str, Enum):
    TIMEOUT = "timeout"
    CONNECTION = "connection"
    BUDGET = "budget"
    EMPTY = "empty"
    CACHE_LOOKUP = "cache_lookup"
    MODEL_NOT_FOUND = "model_not_found"
    AUTH = "auth"
    QUOTA = "quota"
    LOCATION = "location"
    MODEL_ERROR = "model_error"
    INVALID_RESPONSE = "invalid_response"


# Failures the UI receives as an in-character 200 instead of an error body.
DEGRADABLE_KINDS = frozenset({FailureKind.TIMEOUT, FailureKind.CONNECTION, FailureKind.BUDGET, FailureKind.EMPTY})

_ERROR_CODES = {
    FailureKind.TIMEOUT: UPSTREAM_TIMEOUT,
    FailureKind.CONNECTION: UPSTREAM_CONNECTION_FAILED,
    FailureKind.BUDGET: FUNCTION_BUDGET_TIMEOUT,
    FailureKind.EMPTY: UPSTREAM_EMPTY_RESPONSE,
    FailureKind.CACHE_LOOKUP: UPSTREAM_MODEL_ERROR,
    FailureKind.MODEL_NOT_FOUND: UPSTREAM_MODEL_ERROR,
    FailureKind.AUTH: UPSTREAM_AUTH_ERROR,
    FailureKind.QUOTA: UPSTREAM_QUOTA_EXCEEDED,
    FailureKind.LOCATION: UPSTREAM_LOCATION_UNSUPPORTED,
    FailureKind.MODEL_ERROR: UPSTREAM_MODEL_ERROR,
    FailureKind.INVALID_RESPONSE: UPSTREAM_INVALID_RESPONSE,
}

_DEFAULT_STATUS = {
    FailureKind.TIMEOUT: 504,
    FailureKind.CONNECTION: 503,
    FailureKind.BUDGET: 504,
    FailureKind.EMPTY: 502,
    FailureKind.INVALID_RESPONSE: 502,
}


class UpstreamCallError(Exception):
    def __init__(self, kind: FailureKind, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.status_code = status_code

    @property
    def error_code(self) -> str:
        return _ERROR_CODES[self.kind]

    @property
    def degradable(self) -> bool:
        return self.kind in DEGRADABLE_KINDS

    def http_status(self) -> int:
        if self.status_code and self.status_code >= 400:
            return self.status_code
        return _DEFAULT_STATUS.get(self.kind, 500)

    def __repr__(self) -> str:
        return f"UpstreamCallError(kind={self.kind.value!r}, status_code={self.status_code!r}, message={self.message!r})"
