"""
JSON utilities for free-form LLM responses.

The web search model answers in prose-wrapped JSON that is sometimes
malformed (single quotes, trailing commas, truncated arrays). Standard
json.loads() is tried first; json-repair handles the rest.
"""

import json
import re
from typing import Any, Union

from json_repair import repair_json


def parse_llm_json(text: str) -> Union[dict, list]:
    """
    Parse a JSON object or array from LLM response text.

    Handles markdown code fences, JSON embedded in surrounding text
    and the usual malformations repaired by json-repair.

    Raises:
        ValueError: If no JSON value can be extracted or repaired

    Example:
        >>> parse_llm_json('```json\\n{"companies": []}\\n```')
        {'companies': []}
        >>> parse_llm_json("[{'name': 'Acme',}]")
        [{'name': 'Acme'}]
    """
    if not text or not text.strip():
        raise ValueError("Empty input: no JSON content to parse")

    json_str = _extract_json_value(_strip_markdown_blocks(text.strip()))

    try:
        return json.loads(json_str)
    except json.JSONDecodeError:
        pass

    repaired = repair_json(json_str, return_objects=True)
    if isinstance(repaired, (dict, list)):
        return repaired
    raise ValueError(
        f"Failed to parse or repair JSON. "
        f"Original text (first 500 chars): {text[:500]}"
    )


def _strip_markdown_blocks(text: str) -> str:
    result = text
    if result.startswith("```json"):
        result = result[7:]
    elif result.startswith("```"):
        result = result[3:]
    if result.endswith("```"):
        result = result[:-3]
    return result.strip()


def _extract_json_value(text: str) -> str:
    """Cut the outermost object or array out of surrounding prose."""
    if text.startswith("{") or text.startswith("["):
        return text

    match = re.search(r"[\[{].*[\]}]", text, re.DOTALL)
    if match:
        return match.group(0)

    raise ValueError(f"No JSON value found in text: {text[:200]}")
