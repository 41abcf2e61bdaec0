from typing import Literal

from pydantic import BaseModel, Field


class Message(BaseModel):
    """A single chat message sent to an LLM."""

    role: Literal["system", "user", "assistant"] = Field(..., description="Role of the sender")
    content: str = Field(..., description="Content of the message")


class CompletionResponse(BaseModel):
    """Response from an LLM completion request."""

    text: str = Field(..., description="The generated text")
    model: str | None = Field(default=None, description="Model that produced the text")
    total_tokens: int | None = Field(default=None, description="Tokens billed, when reported")
