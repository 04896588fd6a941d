from __future__ import annotations

import json
import re
from typing import Any, Collection, Mapping

from .errors import ParseError

_FENCE_RE = re.compile(r"```(?:json)?\s*(.*?)```", re.IGNORECASE | re.DOTALL)


def decode_json_object(text: str) -> dict[str, Any]:
    """Decode the JSON object embedded in model output.

    Accepts a bare object, a fenced ```json block, or prose around a single
    object. Anything else raises ParseError.
    """
    if not text or not text.strip():
        raise ParseError("empty model output")

    fenced = _FENCE_RE.search(text)
    candidate = fenced.group(1) if fenced else text
    start = candidate.find("{")
    end = candidate.rfind("}")
    if start == -1 or end <= start:
        raise ParseError("model output contains no JSON object")

    try:
        decoded = json.loads(candidate[start : end + 1])
    except json.JSONDecodeError as exc:
        raise ParseError(f"model output is not valid JSON: {exc.msg}") from exc
    if not isinstance(decoded, dict):
        raise ParseError("model output is not a JSON object")
    return decoded


def read_choice(payload: Mapping[str, Any], key: str, choices: Collection[str], default: str) -> str:
    value = payload.get(key)
    if isinstance(value, str) and value.strip().lower() in choices:
        return value.strip().lower()
    return default


def read_text(payload: Mapping[str, Any], key: str, default: str, *, max_length: int = 64) -> str:
    value = payload.get(key)
    if isinstance(value, str) and value.strip():
        return value.strip().lower()[:max_length]
    return default


def read_probability(payload: Mapping[str, Any], key: str, default: float) -> float:
    value = payload.get(key)
    if isinstance(value, bool):
        return default
    if isinstance(value, str):
        try:
            value = float(value)
        except ValueError:
            return default
    if isinstance(value, (int, float)) and 0.0 <= float(value) <= 1.0:
        return float(value)
    return default


def read_bool(payload: Mapping[str, Any], key: str, default: bool) -> bool:
    value = payload.get(key)
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in {"true", "false"}:
        return value.strip().lower() == "true"
    return default


def read_string_list(payload: Mapping[str, Any], key: str) -> list[str]:
    value = payload.get(key)
    if not isinstance(value, list):
        raise ParseError(f"expected a list under {key!r}")
    return [item.strip() for item in value if isinstance(item, str) and item.strip()]
