from ai.providers.base import AIProvider
from ai.providers.openai_provider import OpenAIProvider, ProviderError

from config import settings


def get_provider(api_key: str | None = None, model: str | None = None) -> AIProvider | None:
    """Build the configured provider, or None when no API key is set."""
    key = (api_key or settings.OPENAI_API_KEY or "").strip()
    if not key:
        return None
    return OpenAIProvider(
        api_key=key,
        reasoning_model=model or settings.OPENAI_MODEL,
        timeout_seconds=settings.AI_REQUEST_TIMEOUT_SECONDS,
    )


__all__ = ["AIProvider", "OpenAIProvider", "ProviderError", "get_provider"]
