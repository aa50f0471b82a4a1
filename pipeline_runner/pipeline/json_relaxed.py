"""Lenient JSON decoding for model output wrapped in fences or prose."""

from __future__ import annotations

import json
import re
from typing import Any, Iterator

_FENCE_OPEN_RE = re.compile(r"^```(?:json)?\s*", re.IGNORECASE)
_FENCE_CLOSE_RE = re.compile(r"\s*```$")

_CLOSERS = {"{": "}", "[": "]"}


class RelaxedJSONError(ValueError):
    """Raised when no JSON value can be recovered from a model reply."""


def strip_code_fences(text: str) -> str:
    cleaned = text.strip()
    cleaned = _FENCE_OPEN_RE.sub("", cleaned)
    cleaned = _FENCE_CLOSE_RE.sub("", cleaned)
    return cleaned.strip()


def extract_first_balanced(text: str) -> str | None:
    """Return the first balanced ``{...}`` or ``[...]`` block in *text*.

    Brackets inside JSON strings (including escaped quotes) are ignored.
    """
    return next(iter_balanced(text), None)


def iter_balanced(text: str) -> Iterator[str]:
    """Yield the balanced block opening at each ``{`` / ``[`` in turn.

    An opener that never closes is skipped, so prose such as
    ``"see [page 2"`` does not hide a later object.
    """
    for start, ch in enumerate(text):
        if ch in _CLOSERS:
            block = _balanced_from(text, start)
            if block is not None:
                yield block


def _balanced_from(text: str, start: int) -> str | None:
    stack: list[str] = []
    in_str = False
    esc = False

    for i in range(start, len(text)):
        ch = text[i]
        if in_str:
            if esc:
                esc = False
            elif ch == "\\":
                esc = True
            elif ch == '"':
                in_str = False
            continue

        if ch == '"':
            in_str = True
        elif ch in _CLOSERS:
            stack.append(_CLOSERS[ch])
        elif stack and ch == stack[-1]:
            stack.pop()
            if not stack:
                return text[start : i + 1]
    return None


def parse_json_relaxed(text: str) -> Any:
    """Decode *text* directly, after fence stripping, or from the first
    balanced block that is valid JSON."""
    if text is None:
        raise RelaxedJSONError("empty reply")
    cleaned = strip_code_fences(text)
    if not cleaned:
        raise RelaxedJSONError("empty reply")

    try:
        return json.loads(cleaned)
    except json.JSONDecodeError:
        pass

    last_error: json.JSONDecodeError | None = None
    for block in iter_balanced(cleaned):
        try:
            return json.loads(block)
        except json.JSONDecodeError as exc:
            last_error = exc
    if last_error is None:
        raise RelaxedJSONError("no balanced JSON object found")
    raise RelaxedJSONError(f"invalid JSON after balance: {last_error}") from last_error
