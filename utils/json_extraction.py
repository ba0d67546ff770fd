"""JSON extraction from LLM responses.

Handles the output shapes the analysis prompts produce in practice:
- Pure JSON
- Markdown code blocks (```json...``` or ```...```)
- A JSON object embedded in surrounding prose
"""

import json
import re
from typing import Any

from utils.logging import get_logger

logger = get_logger(__name__)

_FENCE_PATTERN = re.compile(r"```(?:json)?", re.IGNORECASE)
# Greedy: spans from the first "{" to the last "}" in the text
_OBJECT_PATTERN = re.compile(r"\{[\s\S]*\}")


def strip_code_fences(response: str) -> str:
    """Remove markdown code fences, keeping their content."""
    return _FENCE_PATTERN.sub("", response).strip()


def extract_json_object(response: str | None, context: str = "extraction") -> dict | None:
    """Extract the first top-level JSON object from an LLM response.

    Fences are stripped first, then the span from the first "{" to the
    last "}" is parsed.

    Args:
        response: The raw LLM response text
        context: Context identifier for logging (e.g., "batch_analysis")

    Returns:
        Parsed dict, or None if no object could be parsed
    """
    if not response:
        return None

    text = strip_code_fences(response)

    match = _OBJECT_PATTERN.search(text)
    if not match:
        logger.warning(
            f"No JSON object found in {context} response",
            extra={"context": context, "response_length": len(response)},
        )
        return None

    try:
        result = json.loads(match.group(0))
    except json.JSONDecodeError as e:
        logger.warning(
            f"Failed to parse JSON in {context} response: {e}",
            extra={"context": context, "response_preview": response[:200]},
        )
        return None

    if not isinstance(result, dict):
        return None
    return result


def extract_json_or_default(
    response: str | None,
    default: Any,
    context: str = "extraction",
) -> Any:
    """Extract a JSON object, returning default on failure."""
    result = extract_json_object(response, context=context)
    return result if result is not None else default
