"""
Collector-number parsing.

parse(raw_text, confidence) turns OCR output such as "058/102", "TG13/TG30"
or "SWSH123" into a CollectorIdentifier with a classified shape. Shapes are
tried in priority order; the first full match wins:

  1. subset with lettered denominator   TG13/TG30
  2. subset with bare denominator       TG13/30
  3. standard fraction                  058/102
  4. promo / simple code                SWSH123, SVP-001
  5. opaque fallback (whole string)
"""

import re
from typing import Optional

from .types import CollectorIdentifier, IdShape

MIN_OCR_CONFIDENCE = 0.4

SUBSET_LETTERED_RE = re.compile(r"^([A-Z]{1,3})(\d+)/([A-Z]{0,3})(\d+)$")
SUBSET_BARE_RE = re.compile(r"^([A-Z]{1,3})(\d+)/(\d+)$")
STANDARD_FRACTION_RE = re.compile(r"^(\d+)/(\d+)([A-Z]*)$")
PROMO_RE = re.compile(r"^([A-Z]{2,5})-?(\d+)$")

# OCR engines routinely read these glyphs in place of digits
_CONFUSABLES = {"O": "0", "o": "0", "I": "1", "l": "1", "|": "1"}


def _correct_token(token: str) -> str:
    """
    Fix digit look-alikes in the trailing run of digits/look-alikes of a
    token, only when that token contains a real digit. Leading alphabetic
    prefixes (POP, SWSH, TG...) are never touched.
    """
    if not any(ch.isdigit() for ch in token):
        return token
    start = len(token)
    while start > 0 and (token[start - 1].isdigit() or token[start - 1] in _CONFUSABLES):
        start -= 1
    run = token[start:]
    if not any(ch.isdigit() for ch in run):
        return token
    return token[:start] + "".join(_CONFUSABLES.get(ch, ch) for ch in run)


def clean_text(raw_text: str) -> str:
    """Strip whitespace, correct look-alikes per '/'-separated token, upper-case."""
    compact = re.sub(r"\s+", "", raw_text or "")
    corrected = "/".join(_correct_token(part) for part in compact.split("/"))
    return corrected.upper()


def classify(cleaned: str, raw: str = "", confidence: float = 1.0) -> CollectorIdentifier:
    """Classify an already-cleaned string; always returns an identifier."""
    m = SUBSET_LETTERED_RE.match(cleaned)
    if m and m.group(3):
        prefix, number, den_prefix, den_number = m.groups()
        return CollectorIdentifier(
            token=f"{prefix}{number}", shape=IdShape.SUBSET_LETTERED,
            number=f"{prefix}{number}", raw=raw, cleaned=cleaned, confidence=confidence,
            denominator=f"{den_prefix}{den_number}", total=den_number, prefix=prefix,
        )

    m = SUBSET_BARE_RE.match(cleaned)
    if m:
        prefix, number, total = m.groups()
        return CollectorIdentifier(
            token=f"{prefix}{number}", shape=IdShape.SUBSET_BARE,
            number=f"{prefix}{number}", raw=raw, cleaned=cleaned, confidence=confidence,
            denominator=total, total=total, prefix=prefix,
        )

    m = STANDARD_FRACTION_RE.match(cleaned)
    if m:
        number, total, _suffix = m.groups()
        return CollectorIdentifier(
            token=number, shape=IdShape.STANDARD_FRACTION,
            number=number, raw=raw, cleaned=cleaned, confidence=confidence,
            denominator=total, total=total,
        )

    m = PROMO_RE.match(cleaned)
    if m:
        prefix, number = m.groups()
        return CollectorIdentifier(
            token=f"{prefix}{number}", shape=IdShape.PROMO,
            number=f"{prefix}{number}", raw=raw, cleaned=cleaned, confidence=confidence,
            prefix=prefix,
        )

    return CollectorIdentifier(
        token=cleaned, shape=IdShape.OPAQUE,
        number=cleaned, raw=raw, cleaned=cleaned, confidence=confidence,
    )


def parse(raw_text: Optional[str], confidence: float) -> Optional[CollectorIdentifier]:
    """
    Parse raw OCR text. Returns None unless the OCR confidence is above
    MIN_OCR_CONFIDENCE and the cleaned text contains at least one digit.
    """
    if not raw_text:
        return None
    try:
        confidence = float(confidence)
    except (TypeError, ValueError):
        return None
    if confidence <= MIN_OCR_CONFIDENCE:
        return None
    cleaned = clean_text(raw_text)
    if not re.search(r"\d", cleaned):
        return None
    return classify(cleaned, raw=raw_text, confidence=confidence)
