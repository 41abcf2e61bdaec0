# rulebook/reflector/parser.py
import json
import logging
from typing import Any

from pydantic import ValidationError

from rulebook.core.errors import DeltaParseError
from rulebook.core.schema import PlaybookDelta, delta_adapter

logger = logging.getLogger(__name__)


def strip_fences(text: str) -> str:
    """Remove a surrounding markdown code fence, if any."""
    cleaned = text.strip()
    if not cleaned.startswith("```"):
        return cleaned
    lines = cleaned.split("\n")
    end_idx = len(lines)
    for i in range(len(lines) - 1, 0, -1):
        if lines[i].strip() == "```":
            end_idx = i
            break
    return "\n".join(lines[1:end_idx])


def parse_json_object(text: str) -> dict[str, Any]:
    """Parse LLM output into a JSON object.

    Raises:
        DeltaParseError: If the text is not JSON or not an object
    """
    try:
        data = json.loads(strip_fences(text))
    except json.JSONDecodeError as e:
        raise DeltaParseError(f"Invalid JSON: {e}") from None
    if isinstance(data, list):
        data = {"deltas": data}
    if not isinstance(data, dict):
        raise DeltaParseError("JSON must be an object")
    return data


def parse_deltas(text: str) -> list[PlaybookDelta]:
    """Parse generator output into typed deltas.

    Accepts ``{"deltas": [...]}`` or a bare list. Individual deltas that fail
    validation are dropped with a warning; a malformed envelope raises.

    Raises:
        DeltaParseError: If the envelope is not valid JSON or ``deltas`` is not a list
    """
    data = parse_json_object(text)
    raw = data.get("deltas", [])
    if not isinstance(raw, list):
        raise DeltaParseError("deltas must be a list")

    deltas: list[PlaybookDelta] = []
    for i, item in enumerate(raw):
        try:
            deltas.append(delta_adapter.validate_python(item))
        except ValidationError as e:
            logger.warning(f"Dropping malformed delta #{i}: {e.error_count()} validation error(s)")
    return deltas
