# tests/test_llm_factory.py
from unittest.mock import patch

import pytest

from rulebook.core.config import LLMConfig
from rulebook.llm import MockLLMClient, OpenRouterClient, create_llm_client


class TestCreateLLMClient:
    """Tests for create_llm_client factory function."""

    def test_creates_mock_client(self):
        """Test factory creates MockLLMClient for 'mock' provider."""
        config = LLMConfig(provider="mock", model="test-model", temperature=0.5, max_tokens=100)

        client = create_llm_client(config)

        assert isinstance(client, MockLLMClient)

    def test_creates_mock_client_case_insensitive(self):
        """Test factory handles provider name case-insensitively."""
        config = LLMConfig(provider="MOCK")

        assert isinstance(create_llm_client(config), MockLLMClient)

    @patch.dict("os.environ", {"OPENROUTER_API_KEY": "test-key"})
    def test_creates_openrouter_client(self):
        """Test factory creates OpenRouterClient for 'openrouter' provider."""
        config = LLMConfig(
            provider="openrouter",
            model="openai/gpt-4",
            temperature=0.7,
            max_tokens=2000,
        )

        client = create_llm_client(config)

        assert isinstance(client, OpenRouterClient)
        assert client.model == "openai/gpt-4"
        assert client.default_temperature == 0.7
        assert client.default_max_tokens == 2000

    def test_raises_for_unsupported_provider(self):
        """Test factory raises ValueError for unsupported provider."""
        config = LLMConfig(provider="unsupported-provider")

        with pytest.raises(ValueError, match="Unsupported LLM provider"):
            create_llm_client(config)

    def test_openrouter_without_key_fails(self, monkeypatch):
        monkeypatch.delenv("OPENROUTER_API_KEY", raising=False)

        with pytest.raises(ValueError, match="OPENROUTER_API_KEY"):
            create_llm_client(LLMConfig(provider="openrouter"))
