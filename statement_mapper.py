"""
Royalty Statement Line Mapper
Maps PRO / DSP statement columns onto the canonical statement fields, normalises
amounts, shares, ISWCs and dates, and runs the statement checks from validator.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

import pandas as pd

import validator
from identifiers import normalize_identifier

log = logging.getLogger('royalty')

STATEMENT_SOURCES = ['BMI', 'ASCAP', 'SESAC', 'YouTube', 'SoundExchange', 'Generic PRO']
GENERIC_SOURCE = 'Generic PRO'

AMOUNT_FIELD = 'Gross Amount'
SHARE_FIELD = 'Share %'
ISWC_FIELD = 'ISWC'
DATE_FIELDS = ('Period Start', 'Period End', 'Payment Date')
TEXT_FIELDS = ('Song Title', 'Client Name')

MAPPING_VERSION = '1.0'

# Canonical field -> {source: header or [headers]}; '' means the source has no such column
DEFAULT_STATEMENT_MAPPING: Dict[str, Dict[str, Union[str, List[str]]]] = {
    'Work ID': {
        'BMI': 'Work ID',
        'ASCAP': 'Work Number',
        'SESAC': 'Title #',
        'YouTube': '',
        'SoundExchange': 'ISRC',
        'Generic PRO': ['Work ID', 'Title ID', 'Song ID'],
    },
    'Song Title': {
        'BMI': 'Work Title',
        'ASCAP': 'Title',
        'SESAC': 'Title Name',
        'YouTube': 'Asset Title',
        'SoundExchange': 'Sound Recording Title',
        'Generic PRO': ['Work Title', 'Title', 'Song Title', 'Title Name'],
    },
    'ISWC': {
        'BMI': 'ISWC',
        'ASCAP': 'ISWC',
        'SESAC': '',
        'YouTube': '',
        'SoundExchange': '',
        'Generic PRO': 'ISWC',
    },
    'Client Name': {
        'BMI': 'IP Name',
        'ASCAP': 'Writer Name',
        'SESAC': 'Participant Name',
        'YouTube': 'Channel Name',
        'SoundExchange': 'Featured Artist',
        'Generic PRO': ['Writer Name', 'Participant Name', 'IP Name', 'Client Name'],
    },
    'Client Role': {
        'BMI': 'IP Role',
        'ASCAP': 'Role',
        'SESAC': 'W OR P',
        'YouTube': 'Owner',
        'SoundExchange': 'Artist Type',
        'Generic PRO': ['Role', 'Type', 'W OR P'],
    },
    'Source': {
        'BMI': 'Source',
        'ASCAP': 'Source',
        'SESAC': 'Perf Source',
        'YouTube': 'Platform',
        'SoundExchange': 'Service',
        'Generic PRO': ['Source', 'Platform', 'Service'],
    },
    'Royalty Type': {
        'BMI': 'Performance Type',
        'ASCAP': 'Survey',
        'SESAC': 'Use Code',
        'YouTube': 'Revenue Type',
        'SoundExchange': 'Royalty Type',
        'Generic PRO': ['Performance Type', 'Use Code', 'Revenue Type'],
    },
    'Share %': {
        'BMI': 'Share %',
        'ASCAP': 'Writer Share',
        'SESAC': 'Participant %',
        'YouTube': 'Share',
        'SoundExchange': 'Share Percentage',
        'Generic PRO': ['Share %', 'Participant %', 'Writer Share', 'Share'],
    },
    'Gross Amount': {
        'BMI': ['Current Quarter Royalties', 'Amount', 'Royalty', 'Payment', 'Total Amount', 'Quarter Royalties'],
        'ASCAP': ['Amount Paid', 'Amount', 'Royalty', 'Payment', 'Total', 'Total Amount', 'Quarter Royalties'],
        'SESAC': ['Royalty Amount', 'Current Activity Amt'],
        'YouTube': 'Earnings',
        'SoundExchange': 'Royalty',
        'Generic PRO': ['Amount', 'Royalty', 'Payment', 'Total', 'Earnings'],
    },
    'Period Start': {
        'BMI': 'Period',
        'ASCAP': 'Start Date',
        'SESAC': 'Perf Period',
        'YouTube': 'Revenue Start',
        'SoundExchange': 'Usage Period Start',
        'Generic PRO': ['Period', 'Start Date', 'Period Start'],
    },
    'Period End': {
        'BMI': 'Period',
        'ASCAP': 'End Date',
        'SESAC': 'Perf Period',
        'YouTube': 'Revenue End',
        'SoundExchange': 'Usage Period End',
        'Generic PRO': ['Period', 'End Date', 'Period End'],
    },
    'Payment Date': {
        'BMI': 'Payment Date',
        'ASCAP': 'Payment Date',
        'SESAC': '',
        'YouTube': 'Payment Date',
        'SoundExchange': 'Distribution Date',
        'Generic PRO': ['Payment Date', 'Distribution Date'],
    },
}

STATEMENT_FIELDS = list(DEFAULT_STATEMENT_MAPPING.keys())

_CURRENCY_RE = re.compile(r'[$,€£¥]')
_DATE_SPLIT_RE = re.compile(r'[/\-.]')
_LEADING_NUMBER_RE = re.compile(r'[+-]?(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][+-]?\d+)?')


@dataclass
class StatementMappingResult:
    lines: List[Dict[str, Any]] = field(default_factory=list)
    unmapped_fields: List[str] = field(default_factory=list)
    issues: List[validator.ValidationIssue] = field(default_factory=list)

    @property
    def validation_errors(self) -> List[str]:
        return [i.message for i in self.issues]

    @property
    def has_errors(self) -> bool:
        return len(self.issues) > 0


# ---------------------------------------------------------------------------
# Mapping table helpers
# ---------------------------------------------------------------------------

def _as_list(value: Union[str, List[str], None]) -> List[str]:
    if not value:
        return []
    if isinstance(value, str):
        return [value]
    return [v for v in value if v]


def source_mapping(source: str, overrides: Optional[Dict[str, Any]] = None) -> Dict[str, List[str]]:
    """Header names per canonical field for one source; saved overrides replace defaults per field."""
    result = {}
    for canonical, per_source in DEFAULT_STATEMENT_MAPPING.items():
        result[canonical] = _as_list(per_source.get(source))
    for canonical, headers in (overrides or {}).items():
        if canonical in result:
            result[canonical] = _as_list(headers)
    return result


def is_statement_source(source: Optional[str]) -> bool:
    return source in STATEMENT_SOURCES


# ---------------------------------------------------------------------------
# Value normalisation
# ---------------------------------------------------------------------------

def normalize_date(value: str) -> Optional[str]:
    """ISO date string when parseable; MM/DD/YYYY as a second try; else the input unchanged."""
    if not value:
        return None
    parsed = pd.to_datetime(value, errors='coerce')
    if pd.isna(parsed):
        parts = _DATE_SPLIT_RE.split(value)
        if len(parts) == 3:
            parsed = pd.to_datetime(f"{parts[2]}-{parts[0]}-{parts[1]}", errors='coerce', format='%Y-%m-%d')
        if pd.isna(parsed):
            return value
    return parsed.strftime('%Y-%m-%d')


def _leading_number(s: str) -> float:
    """Number at the start of s ('12.50 USD' -> 12.5); 0.0 when there is none."""
    m = _LEADING_NUMBER_RE.match(s)
    return float(m.group()) if m else 0.0


def normalize_value(value: Any, canonical: str) -> Any:
    if value is None:
        return None
    s = str(value).strip()
    if not s or s.lower() == 'nan':
        return None

    if canonical == AMOUNT_FIELD:
        return _leading_number(_CURRENCY_RE.sub('', s).strip())
    if canonical == SHARE_FIELD:
        return _leading_number(s.replace('%', ''))
    if canonical == ISWC_FIELD:
        return normalize_identifier(s, 'iswc')
    if canonical in DATE_FIELDS:
        return normalize_date(s)
    if canonical in TEXT_FIELDS:
        return re.sub(r'\s+', ' ', s).strip()
    return s


# ---------------------------------------------------------------------------
# Mapping
# ---------------------------------------------------------------------------

def map_statement(rows: List[Dict[str, Any]], headers: List[str], source: str,
                  overrides: Optional[Dict[str, Any]] = None,
                  skipped_lines: int = 0,
                  duplicate_headers: Optional[List[str]] = None) -> StatementMappingResult:
    """Map parsed statement rows for a known source and run the statement checks.

    overrides: saved mapping rules {canonical field: header or [headers]}.
    """
    mapping = source_mapping(source, overrides)
    # Statement exports vary header case; match on trimmed lower-case names
    by_lower = {str(h).strip().lower(): h for h in headers}
    referenced = {name.strip().lower() for names in mapping.values() for name in names}
    unmapped = [h for h in headers if str(h).strip().lower() not in referenced]

    lines = []
    for index, row in enumerate(rows):
        line: Dict[str, Any] = {'Statement Source': source}
        for canonical, names in mapping.items():
            present = [by_lower[n.strip().lower()] for n in names if n.strip().lower() in by_lower]
            if len(names) > 1:
                for name in present:
                    raw = row.get(name)
                    if raw is not None and str(raw).strip() != '':
                        line[canonical] = normalize_value(raw, canonical)
                        break
            elif present and present[0] in row:
                line[canonical] = normalize_value(row[present[0]], canonical)
        line['_original_row_index'] = index
        lines.append(line)

    issues = validator.run_statement_checks(headers, lines, skipped_lines=skipped_lines,
                                            duplicate_headers=duplicate_headers)
    log.info("Mapped %d %s statement line(s): %d unmapped column(s), %d issue(s)",
             len(lines), source, len(unmapped), len(issues))
    return StatementMappingResult(lines=lines, unmapped_fields=unmapped, issues=issues)
