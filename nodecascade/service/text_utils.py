"""Text helpers for model output: fence stripping, path extraction, key shaping."""

from __future__ import annotations

import json
import re
from typing import Any, Tuple

# Returned by get_value_by_path when nothing lives at the path.
MISSING = object()

_FULL_FENCE = re.compile(r"^```(?:\w+)?\s*([\s\S]*?)```$")
_JSON_FULL_FENCE = re.compile(r"^```(?:json)?\s*([\s\S]*?)```$")
_LEADING_FENCE = re.compile(r"^```(?:\w+)?\s*")
_JSON_LEADING_FENCE = re.compile(r"^```(?:json)?\s*")
_TRAILING_FENCE = re.compile(r"\s*```\s*$")
_EMBEDDED_JSON_FENCE = re.compile(r"```(?:json)?\s*([\s\S]*?)```")
_INDEXED_PART = re.compile(r"^(.+)\[(\d+)\]$")


def strip_code_fences(text: Any) -> Any:
    """Remove markdown code-fence wrapping; non-strings pass through untouched."""
    if not isinstance(text, str):
        return text
    s = text.strip()
    full = _FULL_FENCE.match(s)
    if full:
        return full.group(1).strip()
    s = _LEADING_FENCE.sub("", s, count=1)
    s = _TRAILING_FENCE.sub("", s, count=1)
    return s.strip()


def extract_fenced_json(text: str) -> str:
    """Return the body of the first ```json fence in ``text``, or the trimmed text."""
    match = _EMBEDDED_JSON_FENCE.search(text)
    return match.group(1).strip() if match else text.strip()


def _parse_top_level(data: str) -> Any:
    json_str = data.strip()
    full = _JSON_FULL_FENCE.match(json_str)
    if full:
        json_str = full.group(1).strip()
    else:
        json_str = _TRAILING_FENCE.sub("", json_str).strip()
        json_str = _JSON_LEADING_FENCE.sub("", json_str).strip()
    return json.loads(json_str)


def _step(current: Any, part: str) -> Any:
    indexed = _INDEXED_PART.match(part)
    if indexed:
        key, index = indexed.group(1), int(indexed.group(2))
        container = _step(current, key)
        if isinstance(container, list) and index < len(container):
            return container[index]
        return MISSING
    if isinstance(current, dict):
        return current.get(part, MISSING)
    if isinstance(current, list) and part.isdigit():
        index = int(part)
        return current[index] if index < len(current) else MISSING
    return MISSING


def get_value_by_path(data: Any, path: str) -> Any:
    """Walk a dotted/indexed path (``a.b[0].c``) through structured output.

    String inputs are parsed as JSON after fence stripping. If the top-level
    string is not JSON, the raw string is returned for an ``output`` path and
    ``MISSING`` otherwise. String values met along the way are
    re-parsed when they hold an object or array, optionally fenced.
    """
    if not path or data is None:
        return MISSING

    current = data
    if isinstance(data, str):
        try:
            current = _parse_top_level(data)
        except ValueError:
            if path in ("output", ""):
                return data
            return MISSING

    for part in path.split("."):
        if current is None or current is MISSING:
            return MISSING
        current = _step(current, part)
        if isinstance(current, str):
            candidate = extract_fenced_json(current)
            if candidate.startswith("{") or candidate.startswith("["):
                try:
                    current = json.loads(candidate)
                except ValueError:
                    pass
    return current


def snake_key(label: str) -> str:
    """Lowercase, collapse whitespace runs to ``_`` (dataset and cache keys)."""
    return re.sub(r"\s+", "_", (label or "").lower())


def bracket_balance(text: str) -> Tuple[int, int]:
    """Count unclosed ``{`` and ``[`` in ``text``; negative means extra closers."""
    return (
        text.count("{") - text.count("}"),
        text.count("[") - text.count("]"),
    )


def to_text(value: Any, *, pretty: bool = True) -> str:
    """Stringify a node output for prompt assembly."""
    if isinstance(value, str):
        return value
    if pretty:
        return json.dumps(value, indent=2, ensure_ascii=False)
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"))
