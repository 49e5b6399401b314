"""
Sheet / Source Detector
Classifies a row set by originating system from its sheet or file name and
its column headers. Pure functions, no I/O.
"""

from typing import List, Tuple

from statement_mapper import AMOUNT_FIELD, STATEMENT_SOURCES, source_mapping

MUSICBRAINZ_WORKS = 'musicbrainz_works'
MUSICBRAINZ_RECORDINGS = 'musicbrainz_recordings'
ASCAP_BMI_SONGVIEW = 'ascap_bmi_songview'
MLC_CATALOG = 'mlc_catalog'
SYNC = 'sync'
UNKNOWN = 'unknown'

SHEET_TYPES = [MUSICBRAINZ_WORKS, MUSICBRAINZ_RECORDINGS, ASCAP_BMI_SONGVIEW, MLC_CATALOG, SYNC]

UNKNOWN_STATEMENT_SOURCE = 'Unknown'

# Checked in this order; first hit wins
SHEET_PATTERNS: List[Tuple[str, List[str]]] = [
    (MUSICBRAINZ_WORKS, ['musicbrainz', 'works', 'mb works']),
    (MUSICBRAINZ_RECORDINGS, ['recordings', 'mb recordings']),
    (ASCAP_BMI_SONGVIEW, ['ascap', 'bmi', 'songview']),
    (MLC_CATALOG, ['mlc', 'mechanical licensing']),
    (SYNC, ['sync', 'tv', 'movie', 'game', 'film']),
]

HEADER_SIGNATURES: List[Tuple[str, List[str]]] = [
    (MUSICBRAINZ_WORKS, ['mbid', 'work name', 'iswc', 'composer']),
    (MUSICBRAINZ_RECORDINGS, ['isrc', 'recording', 'artist', 'duration']),
    (ASCAP_BMI_SONGVIEW, ['work id', 'work title', 'writer', 'publisher', 'share']),
    (MLC_CATALOG, ['song code', 'song title', 'iswc', 'isrc']),
    (SYNC, ['sync type', 'media title', 'usage', 'year']),
]

MIN_SIGNATURE_MATCHES = 2
NAME_MATCH_CONFIDENCE = 0.9
MIN_STATEMENT_CONFIDENCE = 0.5


def _name_match(sheet_name: str) -> str:
    name = (sheet_name or '').lower()
    for sheet_type, patterns in SHEET_PATTERNS:
        if any(p in name for p in patterns):
            return sheet_type
    return UNKNOWN


def _header_match(headers: List[str]) -> Tuple[str, int]:
    lowered = [str(h).lower().strip() for h in headers]
    for sheet_type, signatures in HEADER_SIGNATURES:
        matches = sum(1 for sig in signatures if any(sig in h for h in lowered))
        if matches >= MIN_SIGNATURE_MATCHES:
            return sheet_type, matches
    return UNKNOWN, 0


def detect_sheet_type(sheet_name: str, headers: List[str]) -> str:
    """Name patterns first, then header signatures, else 'unknown'."""
    return detect_sheet_type_with_confidence(sheet_name, headers)[0]


def detect_sheet_type_with_confidence(sheet_name: str, headers: List[str]) -> Tuple[str, float]:
    by_name = _name_match(sheet_name)
    if by_name != UNKNOWN:
        return by_name, NAME_MATCH_CONFIDENCE

    by_header, matches = _header_match(headers)
    if by_header != UNKNOWN:
        signatures = dict(HEADER_SIGNATURES)[by_header]
        return by_header, round(matches / len(signatures), 2)
    return UNKNOWN, 0.0


def detect_statement_source(headers: List[str]) -> Tuple[str, float]:
    """Score each statement source by the share of its mapped fields whose header is present.

    The amount field must be present and the score at least 0.5; ties go to the
    earlier source in STATEMENT_SOURCES.
    """
    present = {str(h).strip().lower() for h in headers}
    best_source, best_score = UNKNOWN_STATEMENT_SOURCE, 0.0

    for source in STATEMENT_SOURCES:
        mapping = source_mapping(source)
        fields = {k: v for k, v in mapping.items() if v}
        if not fields:
            continue
        hits = {k for k, names in fields.items() if any(n.lower() in present for n in names)}
        if AMOUNT_FIELD not in hits:
            continue
        score = len(hits) / len(fields)
        if score >= MIN_STATEMENT_CONFIDENCE and score > best_score:
            best_source, best_score = source, score

    return best_source, round(best_score, 2)


def detect_source(name: str, headers: List[str]) -> Tuple[str, float]:
    """Statement sources first (they carry an amount column), then catalog sheet types."""
    source, confidence = detect_statement_source(headers)
    if source != UNKNOWN_STATEMENT_SOURCE:
        return source, confidence
    return detect_sheet_type_with_confidence(name, headers)


def is_known_source(source: str) -> bool:
    return source in SHEET_TYPES or source in STATEMENT_SOURCES
