from rulebook.llm.client import LLMClient, MockLLMClient, OpenRouterClient
from rulebook.llm.factory import create_llm_client
from rulebook.llm.schemas import CompletionResponse, Message

__all__ = [
    "LLMClient",
    "MockLLMClient",
    "OpenRouterClient",
    "Message",
    "CompletionResponse",
    "create_llm_client",
]
