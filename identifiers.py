"""
Identifier helpers: ISRC / ISWC format checks, cleaning, and title normalization.
"""

import re
from typing import Optional

ISRC_RE = re.compile(r'^[A-Z]{2}-?[A-Z0-9]{3}-?\d{2}-?\d{5}$')
ISWC_RE = re.compile(r'^T-?\d{9}-?\d$')

_PARENS_RE = re.compile(r'\(.*?\)')
_PUNCT_RE = re.compile(r'[^\w\s]')
_SPACE_RE = re.compile(r'\s+')


def validate_isrc(value: Optional[str]) -> bool:
    """Two letters, three alphanumerics, two digits, five digits (hyphens optional)."""
    if not value:
        return False
    return bool(ISRC_RE.match(value.strip().upper()))


def validate_iswc(value: Optional[str]) -> bool:
    """'T', nine digits, check digit (hyphens optional)."""
    if not value:
        return False
    return bool(ISWC_RE.match(value.strip().upper()))


def clean_isrc(value: str) -> str:
    return value.strip().upper().replace('-', '')


def clean_iswc(value: str) -> str:
    return value.strip().upper().replace('-', '')


def normalize_identifier(value: Optional[str], kind: str) -> Optional[str]:
    """Clean a valid identifier; keep the raw trimmed string when it doesn't validate.

    Empty input gives None. kind is 'isrc' or 'iswc'.
    """
    if value is None:
        return None
    raw = str(value).strip()
    if not raw:
        return None
    if kind == 'isrc':
        return clean_isrc(raw) if validate_isrc(raw) else raw
    if kind == 'iswc':
        return clean_iswc(raw) if validate_iswc(raw) else raw
    raise ValueError(f"Unknown identifier kind: {kind}")


def normalize_title(title: Optional[str]) -> str:
    """Lowercase, drop (...) segments, drop punctuation, collapse whitespace, trim.

    The order matters: "Song (feat. X)!" -> "song".
    """
    if not title:
        return ''
    s = str(title).lower()
    s = _PARENS_RE.sub('', s)
    s = _PUNCT_RE.sub('', s)
    s = _SPACE_RE.sub(' ', s)
    return s.strip()
