import os
from dataclasses import dataclass

DEFAULT_ALLOWED_ORIGINS = [
    "http://localhost:5173",
    "http://127.0.0.1:5173",
    "http://localhost:8888",
    "http://127.0.0.1:8888",
]


def _split_keys(raw: str) -> list[str]:
    return [item.strip() for item in raw.split(",") if item.strip()]


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


def normalize_origin(origin: str | None) -> str:
    return str(origin or "").strip().rstrip("/")


def _parse_origins(raw: str) -> list[str]:
    origins = [normalize_origin(item) for item in _split_keys(raw)]
    origins = [origin for origin in origins if origin]
    return origins or list(DEFAULT_ALLOWED_ORIGINS)


@dataclass
class Settings:
    api_key: str
    base_url: str
    model_name: str
    fallback_model: str
    max_output_tokens: int
    structured_output: bool
    history_messages: int
    max_part_chars: int
    max_system_prompt_chars: int
    model_timeout_ms: int
    total_timeout_ms: int
    timeout_guard_ms: int
    cache_retry_enabled: bool
    recovery_retry_enabled: bool
    recovery_timeout_ms: int
    recovery_system_prompt_chars: int
    empty_retry_enabled: bool
    empty_retry_max_output_tokens: int
    context_cache_enabled: bool
    context_cache_auto_create: bool
    context_cache_ttl_seconds: int
    context_cache_create_timeout_ms: int
    context_cache_warmup_min_chars: int
    context_cache_create_reserve_ms: int
    context_cache_personas: list[str]
    allowed_origins: list[str]
    allow_all_origins: bool
    rate_limit_window_ms: int
    rate_limit_max_requests: int
    redis_url: str
    audit_log_path: str
    debug_errors: bool


def load_settings() -> Settings:
    model_name = os.getenv("GEMINI_MODEL_NAME", "").strip() or "gemini-3-flash-preview"
    return Settings(
        api_key=os.getenv("GOOGLE_API_KEY", "").strip(),
        base_url=os.getenv("GEMINI_BASE_URL", "https://generativelanguage.googleapis.com/v1beta").rstrip("/"),
        model_name=model_name,
        fallback_model=os.getenv("GEMINI_FALLBACK_MODEL", "").strip(),
        max_output_tokens=int(os.getenv("GEMINI_MAX_OUTPUT_TOKENS", "320")),
        structured_output=_env_bool("GEMINI_STRUCTURED_OUTPUT", "true"),
        history_messages=int(os.getenv("GEMINI_HISTORY_MESSAGES", "8")),
        max_part_chars=int(os.getenv("GEMINI_MAX_PART_CHARS", "700")),
        max_system_prompt_chars=int(os.getenv("GEMINI_MAX_SYSTEM_PROMPT_CHARS", "1800")),
        model_timeout_ms=int(os.getenv("GEMINI_MODEL_TIMEOUT_MS", "10000")),
        total_timeout_ms=int(os.getenv("FUNCTION_TOTAL_TIMEOUT_MS", "13000")),
        timeout_guard_ms=int(os.getenv("FUNCTION_TIMEOUT_GUARD_MS", "1200")),
        cache_retry_enabled=_env_bool("GEMINI_CACHE_RETRY_ENABLED", "true"),
        recovery_retry_enabled=_env_bool("GEMINI_RECOVERY_RETRY_ENABLED", "true"),
        recovery_timeout_ms=int(os.getenv("GEMINI_RECOVERY_TIMEOUT_MS", "4000")),
        recovery_system_prompt_chars=int(os.getenv("GEMINI_RECOVERY_SYSTEM_PROMPT_CHARS", "600")),
        empty_retry_enabled=_env_bool("GEMINI_EMPTY_RETRY_ENABLED", "true"),
        empty_retry_max_output_tokens=int(os.getenv("GEMINI_EMPTY_RETRY_MAX_OUTPUT_TOKENS", "200")),
        context_cache_enabled=_env_bool("GEMINI_CONTEXT_CACHE_ENABLED", "true"),
        context_cache_auto_create=_env_bool("GEMINI_CONTEXT_CACHE_AUTO_CREATE", "false"),
        context_cache_ttl_seconds=int(os.getenv("GEMINI_CONTEXT_CACHE_TTL_SECONDS", "21600")),
        context_cache_create_timeout_ms=int(os.getenv("GEMINI_CONTEXT_CACHE_CREATE_TIMEOUT_MS", "1800")),
        context_cache_warmup_min_chars=int(os.getenv("GEMINI_CONTEXT_CACHE_WARMUP_MIN_CHARS", "1200")),
        context_cache_create_reserve_ms=int(os.getenv("GEMINI_CONTEXT_CACHE_CREATE_RESERVE_MS", "3000")),
        context_cache_personas=[
            item.lower() for item in _split_keys(os.getenv("GEMINI_CONTEXT_CACHE_PERSONAS", "mika,alice,kael"))
        ],
        allowed_origins=_parse_origins(os.getenv("ALLOWED_ORIGINS", "")),
        allow_all_origins=_env_bool("ALLOW_ALL_ORIGINS", "false"),
        rate_limit_window_ms=int(os.getenv("RATE_LIMIT_WINDOW_MS", "60000")),
        rate_limit_max_requests=int(os.getenv("RATE_LIMIT_MAX_REQUESTS", "30")),
        redis_url=os.getenv("GATEWAY_REDIS_URL", "").strip(),
        audit_log_path=os.getenv("GATEWAY_AUDIT_LOG_PATH", "var/chat_gateway/audit.log").strip(),
        debug_errors=_env_bool("GATEWAY_DEBUG_ERRORS", "false"),
    )


SETTINGS = load_settings()
