"""Map model-supplied quotes back to the page they actually occur on."""

from __future__ import annotations

import logging
import re
import unicodedata
from difflib import SequenceMatcher
from typing import Mapping

logger = logging.getLogger(__name__)

_HYPHEN_BREAK_RE = re.compile(r"(\w)-\s+(\w)")
_WS_RE = re.compile(r"\s+")

MIN_NEEDLE_LEN = 4
MATCH_THRESHOLD = 0.8


def normalize_evidence(text: str) -> str:
    text = text.replace("\u00ad", "")
    text = _HYPHEN_BREAK_RE.sub(r"\1\2", text)
    text = _WS_RE.sub(" ", text)
    return unicodedata.normalize("NFKC", text).lower().strip()


def _match_score(needle: str, haystack: str) -> float:
    if needle in haystack:
        return 1.0
    if not haystack:
        return 0.0
    m = SequenceMatcher(None, needle, haystack, autojunk=False).find_longest_match(
        0, len(needle), 0, len(haystack)
    )
    return m.size / len(needle)


def resolve_page(
    quote: str | None,
    value: str | None,
    pages: Mapping[int, str],
) -> tuple[int, float] | None:
    """Return ``(page, score)`` of the page that best contains the evidence.

    The quote is preferred over the value. Needles shorter than four
    characters are too ambiguous to place. Pages are scanned in ascending
    order, so the lowest page wins an exact tie.
    """
    raw = quote if quote and quote.strip() else value
    if not raw:
        return None
    needle = normalize_evidence(raw)
    if len(needle) < MIN_NEEDLE_LEN:
        return None

    best: tuple[int, float] | None = None
    for page in sorted(pages):
        score = _match_score(needle, normalize_evidence(pages[page]))
        if score > MATCH_THRESHOLD and (best is None or score > best[1]):
            best = (page, score)
            if score >= 1.0:
                break
    return best
