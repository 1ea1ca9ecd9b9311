"""LLM provider factory."""

from streamchat.core.config import Settings, settings as default_settings
from streamchat.services.llm.base import BaseLLMProvider


def get_llm_provider(config: Settings | None = None) -> BaseLLMProvider:
    """Factory function that returns the configured LLM provider."""
    config = config or default_settings
    if config.llm_provider == "openai":
        from streamchat.services.llm.openai_compat import OpenAICompatibleProvider

        return OpenAICompatibleProvider(
            base_url=config.openai_base_url,
            api_key=config.openai_api_key,
            model_id=config.model_id,
            timeout=config.model_request_timeout,
            max_retries=config.model_max_retries,
        )
    elif config.llm_provider == "gemini":
        from streamchat.services.llm.gemini import GeminiProvider

        return GeminiProvider(
            api_key=config.gemini_api_key,
            model_id=config.model_id,
            max_retries=config.model_max_retries,
        )
    else:
        raise ValueError(f"Unknown LLM provider: {config.llm_provider}")
