from __future__ import annotations

import json
from typing import Any


class JSONExtractionError(ValueError):
    pass


def extract_first_json_object(text: str) -> dict[str, Any]:
    """Parse the outermost JSON object in an LLM response.

    Tolerates prose or markdown fences around the object, nothing else.
    """
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end == -1 or end <= start:
        raise JSONExtractionError("No JSON object found in response.")

    try:
        obj = json.loads(text[start : end + 1])
    except json.JSONDecodeError as e:
        raise JSONExtractionError(f"Invalid JSON: {e}") from e
    if not isinstance(obj, dict):
        raise JSONExtractionError("Top-level JSON value is not an object.")
    return obj


def extract_json_list(text: str, key: str) -> list[Any]:
    """Return `obj[key]` from the first JSON object in `text`; it must be a list."""
    obj = extract_first_json_object(text)
    value = obj.get(key)
    if not isinstance(value, list):
        raise JSONExtractionError(f"Expected a list under {key!r}, got {type(value).__name__}.")
    return value
