"""
Value normalisers shared by the consolidators.

Each helper is a pure function returning ``None`` when the input cannot be
interpreted, never raising on model noise.
"""

from __future__ import annotations

import math
import re
from typing import Any

_CURRENCY_TOKENS = ("CHF", "EUR", "USD", "€", "$", "£")
_WS_RE = re.compile(r"\s+")

TRUE_WORDS = frozenset({"true", "yes", "y", "ja", "1"})
FALSE_WORDS = frozenset({"false", "no", "n", "nein", "0"})


def normalize_str(text: str) -> str:
    """Lowercase, collapse whitespace (incl. NBSP) and trim ``.``/``,``/``;``."""
    text = _WS_RE.sub(" ", text.replace("\u00a0", " ")).strip().lower()
    return text.strip(".,;").strip()


def parse_number_str(raw: str) -> float | None:
    """Parse a human-formatted number (``"1.234,56 €"`` → ``1234.56``).

    Both ``,`` and ``.`` present → European convention (``.`` thousands,
    ``,`` decimal) unless the dot comes last (``"1,234.56"``), which makes
    the comma the thousands separator. Only ``,`` → decimal comma. Only ``.`` → the last dot is
    the decimal point, earlier ones are thousands separators.
    """
    s = raw.strip().replace("\u00a0", "")
    for sym in _CURRENCY_TOKENS:
        s = s.replace(sym, "")
    s = s.replace("'", "").replace(" ", "")

    has_comma = "," in s
    has_dot = "." in s
    if has_comma and has_dot:
        if s.rfind(".") > s.rfind(","):
            s = s.replace(",", "")
        else:
            s = s.replace(".", "").replace(",", ".")
    elif has_comma:
        s = s.replace(",", ".")
    elif has_dot:
        last = s.rfind(".")
        s = s[:last].replace(".", "") + s[last:]

    negative = s.lstrip().startswith("-")
    digits = "".join(ch for ch in s if ch.isdigit() or ch == ".")
    if not digits:
        return None
    try:
        value = float(digits)
    except ValueError:
        return None
    if not math.isfinite(value):
        return None
    return -value if negative else value


def parse_number(value: Any) -> float | None:
    """Numeric view of a JSON scalar; booleans are not numbers."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) else None
    if isinstance(value, str):
        return parse_number_str(value)
    return None


def parse_bool(value: Any) -> bool | None:
    """Fuzzy boolean: ``ja``/``yes``/``1`` → True, ``nein``/``no``/``0`` → False."""
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        if value == 1:
            return True
        if value == 0:
            return False
        return None
    if isinstance(value, str):
        s = normalize_str(value)
        if s in TRUE_WORDS:
            return True
        if s in FALSE_WORDS:
            return False
    return None


def clamp01(x: float) -> float:
    if not math.isfinite(x):
        return 0.0
    return max(0.0, min(1.0, x))
