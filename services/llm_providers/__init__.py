"""LLM provider abstraction layer.

Both supported backends expose OpenAI-compatible chat completions:
- Google Gemini (default, via its OpenAI compatibility endpoint)
- NVIDIA NIM API

Usage:
    from services.llm_providers import get_llm_provider

    provider = get_llm_provider()  # Returns provider based on settings.llm_provider
"""

from config import get_settings
from services.llm_providers.base import BaseLLMProvider
from services.llm_providers.openai_compatible import OpenAICompatibleLLMProvider


def get_llm_provider(model: str | None = None) -> BaseLLMProvider:
    """Factory: return the configured LLM provider, optionally for another model."""
    settings = get_settings()
    provider_name = getattr(settings, "llm_provider", "gemini")

    if provider_name == "nvidia":
        return OpenAICompatibleLLMProvider(
            base_url=settings.nvidia_base_url,
            api_key=settings.get_nvidia_api_key(),
            model=model or settings.nvidia_model,
        )

    if provider_name != "gemini":
        raise ValueError(f"Unknown LLM provider: {provider_name!r}")

    return OpenAICompatibleLLMProvider(
        base_url=settings.gemini_base_url,
        api_key=settings.get_gemini_api_key(),
        model=model or settings.gemini_model,
    )


__all__ = [
    "BaseLLMProvider",
    "OpenAICompatibleLLMProvider",
    "get_llm_provider",
]
