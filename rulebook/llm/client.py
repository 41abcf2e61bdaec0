import logging
import os
from abc import ABC, abstractmethod
from collections import deque
from collections.abc import Iterable

import requests

from rulebook.llm.schemas import CompletionResponse, Message

logger = logging.getLogger(__name__)


class LLMClient(ABC):
    """
    Abstract base class for LLM clients.

    Provides a common interface for different LLM providers.
    """

    @abstractmethod
    def complete(self, messages: list[Message], **kwargs) -> CompletionResponse:
        """
        Generate a completion based on the input messages.

        Args:
            messages: List of conversation messages
            **kwargs: Additional provider-specific parameters

        Returns:
            CompletionResponse with generated text
        """
        pass

    def close(self) -> None:
        pass


class MockLLMClient(LLMClient):
    """
    Offline LLM client for tests and development.

    Scripted responses are returned in order. Once they run out, the client
    answers with an empty delta list for reflection prompts and an ACCEPT
    verdict for validation prompts.
    """

    def __init__(self, responses: Iterable[str] | None = None):
        self.responses: deque[str] = deque(responses or [])
        self.calls: list[list[Message]] = []
        logger.info("Initialized MockLLMClient")

    def complete(self, messages: list[Message], **kwargs) -> CompletionResponse:
        self.calls.append(list(messages))
        if self.responses:
            text = self.responses.popleft()
        elif messages and "verdict" in messages[-1].content.lower():
            text = '{"verdict": "ACCEPT", "confidence": 0.5, "reason": "mock"}'
        else:
            text = '{"deltas": []}'
        logger.debug(f"MockLLMClient generated response of length {len(text)}")
        return CompletionResponse(text=text, model="mock")


class OpenRouterClient(LLMClient):
    """
    OpenRouter LLM client for accessing multiple model providers.

    Provides access to various LLM providers through OpenRouter's unified API.
    """

    BASE_URL = "https://openrouter.ai/api/v1/chat/completions"

    def __init__(
        self,
        api_key: str | None = None,
        model: str = "anthropic/claude-3.5-sonnet",
        app_name: str | None = "rulebook",
        default_max_tokens: int | None = None,
        default_temperature: float = 0.3,
        timeout: float = 60.0,
    ):
        """
        Initialize the OpenRouter client.

        Args:
            api_key: OpenRouter API key (defaults to OPENROUTER_API_KEY env var)
            model: Model to use (e.g., 'anthropic/claude-3.5-sonnet')
            app_name: Optional app name sent as X-Title
            default_max_tokens: Default maximum tokens to generate
            default_temperature: Default temperature for generation
            timeout: Request timeout in seconds
        """
        self.api_key = api_key or os.getenv("OPENROUTER_API_KEY")
        if not self.api_key:
            raise ValueError(
                "OpenRouter API key must be provided via api_key parameter "
                "or OPENROUTER_API_KEY environment variable"
            )

        self.model = model
        self.app_name = app_name
        self.default_max_tokens = default_max_tokens
        self.default_temperature = default_temperature
        self.timeout = timeout
        self._session = requests.Session()

        logger.info(f"Initialized OpenRouterClient with model: {model}")

    def complete(self, messages: list[Message], **kwargs) -> CompletionResponse:
        """
        Generate a completion using OpenRouter API.

        Raises:
            requests.exceptions.RequestException: If the API request fails
            ValueError: If the response carries no choices
        """
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        if self.app_name:
            headers["X-Title"] = self.app_name

        payload = {
            "model": self.model,
            "messages": [{"role": msg.role, "content": msg.content} for msg in messages],
            "temperature": kwargs.get("temperature", self.default_temperature),
        }
        max_tokens = kwargs.get("max_tokens", self.default_max_tokens)
        if max_tokens:
            payload["max_tokens"] = max_tokens

        logger.debug(f"Making OpenRouter API request to {self.model}")

        try:
            response = self._session.post(
                self.BASE_URL,
                headers=headers,
                json=payload,
                timeout=kwargs.get("timeout", self.timeout),
            )
            response.raise_for_status()
            data = response.json()
            if not data.get("choices"):
                raise ValueError("No choices returned in OpenRouter response")
            content = data["choices"][0]["message"]["content"]
        except requests.exceptions.RequestException as e:
            logger.error(f"OpenRouter API request failed: {e}")
            raise
        except (KeyError, ValueError) as e:
            logger.error(f"Failed to parse OpenRouter response: {e}")
            raise

        total_tokens = data.get("usage", {}).get("total_tokens")
        logger.info(f"OpenRouter request successful. Tokens: {total_tokens or 'unknown'}")
        return CompletionResponse(text=content, model=data.get("model"), total_tokens=total_tokens)

    def close(self) -> None:
        self._session.close()
