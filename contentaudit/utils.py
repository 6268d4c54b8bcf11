"""Shared utility functions used across contentaudit modules."""
from __future__ import annotations

import json
import re
from typing import Any

_MISSING = object()
_INVALID = object()

_FENCED_JSON_RE = re.compile(r"```(?:json)?\s*([\[{].*[\]}])\s*```", re.DOTALL)
_BARE_JSON_RE = re.compile(r"\{.*\}", re.DOTALL)


def json_parse(value: str | None, default: Any = _MISSING) -> Any:
    """Safely parse a JSON string, returning *default* on failure.

    If no default is given, returns ``{}`` on parse error.
    """
    try:
        return json.loads(value or "")
    except (json.JSONDecodeError, TypeError):
        return {} if default is _MISSING else default


def decode_json_object(text: str | None) -> dict[str, Any] | None:
    """Locate and decode the JSON object in a model reply.

    Accepts a bare object, a fenced ```json block, or an object embedded in
    prose. A reply (or fenced block) that is valid JSON of another shape,
    such as an array of objects, yields ``None``; only text that is not JSON
    at all is searched for an embedded object.
    """
    if not text:
        return None
    text = text.strip()
    m = _FENCED_JSON_RE.search(text)
    for candidate in ([m.group(1)] if m else []) + [text]:
        decoded = json_parse(candidate, _INVALID)
        if decoded is not _INVALID:
            return decoded if isinstance(decoded, dict) else None
    m = _BARE_JSON_RE.search(text)
    if m:
        decoded = json_parse(m.group(0), None)
        if isinstance(decoded, dict):
            return decoded
    return None
