from app.core.admission import AdmissionFilter
from app.core.gateway import ChatGateway
from app.core.limiter import RateLimiter
from app.core.prompt_cache import ContextCacheManager
from app.core.provider import GeminiClient
from app.core.settings import SETTINGS, Settings
from app.core.store import build_store


def build_gateway(settings: Settings) -> ChatGateway:
    rate_limit_store = build_store(settings.redis_url)
    prompt_cache_store = build_store(settings.redis_url)
    limiter = RateLimiter(rate_limit_store, settings.rate_limit_max_requests, settings.rate_limit_window_ms)
    admission = AdmissionFilter(settings.allowed_origins, settings.allow_all_origins, limiter)
    cache_manager = ContextCacheManager.from_settings(prompt_cache_store, settings)
    provider = GeminiClient(settings.api_key, settings.base_url, settings.structured_output)
    return ChatGateway(settings, admission, cache_manager, provider)


gateway = build_gateway(SETTINGS)
