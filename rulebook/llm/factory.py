"""Factory for creating LLM clients from configuration."""

from rulebook.core.config import LLMConfig
from rulebook.llm.client import LLMClient, MockLLMClient, OpenRouterClient

SUPPORTED_PROVIDERS = ("mock", "openrouter")


def create_llm_client(config: LLMConfig) -> LLMClient:
    """Create an LLM client for the configured provider.

    Raises:
        ValueError: If the provider is not supported, or credentials are missing.
    """
    provider = config.provider.lower()

    if provider == "mock":
        return MockLLMClient()
    if provider == "openrouter":
        return OpenRouterClient(
            model=config.model,
            default_temperature=config.temperature,
            default_max_tokens=config.max_tokens,
        )
    raise ValueError(
        f"Unsupported LLM provider: {config.provider}. "
        f"Supported providers: {', '.join(SUPPORTED_PROVIDERS)}"
    )
