"""External reasoning step for rules the evidence gate cannot decide."""

import logging
from abc import ABC, abstractmethod
from typing import Literal

from pydantic import BaseModel, Field, ValidationError

from rulebook.core.errors import DeltaParseError
from rulebook.history import HistoryHit
from rulebook.llm import LLMClient, Message
from rulebook.reflector.parser import parse_json_object
from rulebook.reflector.prompts import format_validator_prompt

logger = logging.getLogger(__name__)


class ReasonerVerdict(BaseModel):
    verdict: Literal["ACCEPT", "REJECT", "REFINE"]
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    reason: str = ""
    refined_rule: str | None = None


class RuleReasoner(ABC):
    @abstractmethod
    def judge(self, rule_text: str, hits: list[HistoryHit]) -> ReasonerVerdict:
        pass


class LLMRuleReasoner(RuleReasoner):
    """Asks an LLM to ACCEPT, REJECT or REFINE a rule given historical snippets."""

    def __init__(self, llm_client: LLMClient, max_retries: int = 2, temperature: float = 0.2):
        self.client = llm_client
        self.max_retries = max(1, max_retries)
        self.temperature = temperature

    def judge(self, rule_text: str, hits: list[HistoryHit]) -> ReasonerVerdict:
        """
        Raises:
            DeltaParseError: If no attempt produced a valid verdict
        """
        system_prompt, user_prompt = format_validator_prompt(
            rule_text, [(h.source_path, h.snippet) for h in hits]
        )
        messages = [
            Message(role="system", content=system_prompt),
            Message(role="user", content=user_prompt),
        ]
        last_error: Exception | None = None
        for attempt in range(self.max_retries):
            response = self.client.complete(messages, temperature=self.temperature)
            try:
                data = parse_json_object(response.text)
                if isinstance(data.get("verdict"), str):
                    data["verdict"] = data["verdict"].strip().upper()
                return ReasonerVerdict.model_validate(data)
            except (DeltaParseError, ValidationError) as e:
                last_error = e
                logger.warning(f"Verdict parse failed (attempt {attempt + 1}/{self.max_retries}): {e}")
                messages = messages + [
                    Message(role="assistant", content=response.text),
                    Message(
                        role="user",
                        content=f"Previous attempt failed: {e}. "
                        "Please output ONLY valid JSON without markdown fencing.",
                    ),
                ]
        raise DeltaParseError(f"No valid verdict after {self.max_retries} attempts: {last_error}")
