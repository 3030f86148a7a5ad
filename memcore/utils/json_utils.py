"""
JSON utilities for pulling structured payloads out of LLM responses.
"""

import json
import re
from typing import Any

from .errors import ParseError

_FENCED_BLOCK = re.compile(r'```(?:json)?\s*(.*?)```', re.DOTALL | re.IGNORECASE)


def clean_json_response(response: str) -> str:
    """Clean LLM response by removing code block markers.

    Args:
        response: Raw LLM response

    Returns:
        Cleaned JSON string
    """
    response = response.strip()

    if response.startswith('```json'):
        response = response[7:]
    elif response.startswith('```'):
        response = response[3:]

    if response.endswith('```'):
        response = response[:-3]

    return response.strip()


def _first_top_level_value(text: str) -> str:
    """Return the first balanced top-level JSON array or object in text."""
    start = None
    depth = 0
    in_string = False
    escaped = False
    for i, ch in enumerate(text):
        if start is None:
            if ch in '[{':
                start = i
                depth = 1
            continue
        if in_string:
            if escaped:
                escaped = False
            elif ch == '\\':
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch in '[{':
            depth += 1
        elif ch in ']}':
            depth -= 1
            if depth == 0:
                return text[start:i + 1]
    raise ParseError('No JSON array or object found in response')


def extract_json(response: str) -> Any:
    """Extract a JSON payload from free-form LLM output.

    Tries, in order: the whole response after stripping fences, the first
    fenced block, then the first balanced top-level array/object.

    Args:
        response: Raw LLM response

    Returns:
        Parsed JSON value

    Raises:
        ParseError: If no parseable payload is present
    """
    if not response or not response.strip():
        raise ParseError('Empty response')

    candidates = [clean_json_response(response)]
    match = _FENCED_BLOCK.search(response)
    if match:
        candidates.append(match.group(1).strip())

    for candidate in candidates:
        try:
            return json.loads(candidate)
        except json.JSONDecodeError:
            continue

    try:
        return json.loads(_first_top_level_value(response))
    except json.JSONDecodeError as e:
        raise ParseError(f'Malformed JSON payload: {e}')
