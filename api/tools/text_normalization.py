"""Question normalization for lexical and semantic matching."""

import re
from typing import Optional, Pattern, Tuple

_PUNCT_SYMBOL_RE = re.compile(r"[^\w\s]|_", re.UNICODE)
_WHITESPACE_RE = re.compile(r"\s+")
_POSSESSIVE_RE = re.compile(r"\b([a-z0-9]+)['’]s\b")

# Applied in order after punctuation is stripped
LEGAL_REWRITES: Tuple[Tuple[Pattern[str], str], ...] = (
    (re.compile(r"\bsec\b"), "section"),
    (re.compile(r"\broc\b"), "rules of court"),
    (re.compile(r"\bwarrantless arrest\b"), "rule 113 section 5"),
    (re.compile(r"\bbail\b"), "bail rule 114"),
    (re.compile(r"\bsheriff\s*s?\s*return\b"), "sheriff return"),
)


def normalize_question(raw: Optional[str]) -> str:
    """Lowercase, strip punctuation and expand common legal abbreviations.

    Example:
        >>> normalize_question("Sheriff's Return under ROC Sec. 6?")
        'sheriff return under rules of court section 6'
    """
    if not raw:
        return ""

    q = str(raw).lower()
    # Possessives first so the apostrophe is still there to anchor on
    q = _POSSESSIVE_RE.sub(r"\1", q)
    q = _PUNCT_SYMBOL_RE.sub(" ", q)
    q = _WHITESPACE_RE.sub(" ", q).strip()

    for pattern, replacement in LEGAL_REWRITES:
        q = pattern.sub(replacement, q)
    return q
