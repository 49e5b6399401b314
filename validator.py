"""
Validation & Conflict Engine
Row-level checks for staged catalog rows, cross-row ISWC conflict detection,
and structure / line / aggregate checks for mapped royalty statements.
"""

import re
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, List, Optional

import pandas as pd

from identifiers import validate_isrc, validate_iswc
from models import DUPLICATE, ERROR, VALID, IdentifierConflict, StagingRow


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------

@dataclass
class ValidationIssue:
    """A single validation issue found during checks."""
    check: str              # Check name (e.g. 'missing_required', 'outlier_amounts')
    severity: str           # 'error' or 'warning'
    message: str            # Human-readable description
    affected_rows: List[int] = field(default_factory=list)
    count: int = 0

    def to_dict(self) -> dict:
        return {
            'check': self.check,
            'severity': self.severity,
            'message': self.message,
            'affected_rows': list(self.affected_rows),
            'count': self.count,
        }


# ---------------------------------------------------------------------------
# Catalog rows
# ---------------------------------------------------------------------------

def validate_staging_row(row: StagingRow) -> StagingRow:
    """Attach row-level errors and set the status.

    A malformed identifier is reported but only a blank title with no ISRC and
    no ISWC makes the row an error.
    """
    errors = []
    has_title = bool((row.work_title or '').strip())

    if not has_title:
        errors.append('Missing work title')
    if row.isrc and not validate_isrc(row.isrc):
        errors.append(f'Invalid ISRC format: {row.isrc}')
    if row.iswc and not validate_iswc(row.iswc):
        errors.append(f'Invalid ISWC format: {row.iswc}')

    if not has_title and not row.isrc and not row.iswc:
        errors.append('Row must have at least a work title or valid identifier')
        row.validation_status = ERROR
    elif row.validation_status != ERROR:
        row.validation_status = VALID

    row.validation_errors.extend(errors)
    return row


def detect_conflicts(rows: List[StagingRow]) -> List[StagingRow]:
    """Flag ISWC disagreements within (normalized title, artist) groups.

    Every row of a disagreeing group gets the conflict record and is forced to
    'error'; nothing is auto-resolved. Exact repeats of an earlier row from the
    same source are marked 'duplicate'.
    """
    groups: Dict[str, List[StagingRow]] = {}
    for row in rows:
        key = f"{row.normalized_title}||{(row.artist_name or '').lower().strip()}"
        groups.setdefault(key, []).append(row)

    for group in groups.values():
        if len(group) < 2:
            continue

        iswc_values = [{'source': r.source_sheet, 'value': r.iswc} for r in group if r.iswc]
        if len({v['value'] for v in iswc_values}) > 1:
            for row in group:
                row.identifier_conflicts.append(IdentifierConflict(field='iswc', values=list(iswc_values)))
                row.validation_status = ERROR
                row.validation_errors.append('ISWC conflict across sources')
            continue

        seen: Dict[tuple, StagingRow] = {}
        for row in group:
            ident = (row.source_sheet, row.isrc, row.iswc)
            first = seen.get(ident)
            if first is None:
                seen[ident] = row
            elif row.validation_status == VALID and first.validation_status != ERROR:
                row.validation_status = DUPLICATE
                row.validation_errors.append(f'Duplicate of row {first.row_index + 1}')

    return rows


# ---------------------------------------------------------------------------
# Statement checks
# ---------------------------------------------------------------------------

REQUIRED_STATEMENT_FIELDS = ('Song Title', 'Client Name', 'Gross Amount')
HIGH_AMOUNT_THRESHOLD = 1_000_000
OUTLIER_FACTOR = 50
_UNUSUAL_CHARS_RE = re.compile(r"[^\w\s\-.,'&()]")
_ISO_DATE_RE = re.compile(r'^\d{4}-\d{2}-\d{2}$')


def _parse_iso(value: Any) -> Optional[date]:
    if not isinstance(value, str) or not _ISO_DATE_RE.match(value):
        return None
    ts = pd.to_datetime(value, errors='coerce', format='%Y-%m-%d')
    return None if pd.isna(ts) else ts.date()


def check_statement_structure(headers: List[str], lines: List[dict], skipped_lines: int = 0,
                              duplicate_headers: Optional[List[str]] = None) -> List[ValidationIssue]:
    issues = []
    if not lines:
        issues.append(ValidationIssue(
            check='no_rows', severity='error',
            message='No data rows found in the statement',
        ))
        return issues

    if duplicate_headers:
        issues.append(ValidationIssue(
            check='duplicate_headers', severity='error',
            message=f'Duplicate column headers detected in the data: {", ".join(duplicate_headers)}',
            count=len(duplicate_headers),
        ))

    empty = [h for h in headers if not h.strip() or h.startswith('Unnamed: ')]
    if empty:
        issues.append(ValidationIssue(
            check='empty_headers', severity='warning',
            message=f'{len(empty)} empty column headers found',
            count=len(empty),
        ))

    if skipped_lines:
        issues.append(ValidationIssue(
            check='inconsistent_columns', severity='error',
            message=f'Inconsistent column count: {skipped_lines} malformed line(s) skipped',
            count=skipped_lines,
        ))
    return issues


def check_statement_line(line: dict, index: int, today: Optional[date] = None) -> List[ValidationIssue]:
    """Per-line checks; index is 0-based, messages use 1-based row numbers."""
    today = today or date.today()
    row_num = index + 1
    issues = []

    def _add(check, severity, message):
        issues.append(ValidationIssue(check=check, severity=severity, message=f'Row {row_num}: {message}',
                                      affected_rows=[index], count=1))

    for name in REQUIRED_STATEMENT_FIELDS:
        if line.get(name) in (None, ''):
            _add('missing_required', 'error', f"Missing required field '{name}'")

    amount = line.get('Gross Amount')
    if isinstance(amount, (int, float)):
        if amount < 0:
            _add('negative_amount', 'warning', f'Negative amount detected ({amount})')
        if amount > HIGH_AMOUNT_THRESHOLD:
            _add('high_amount', 'warning', f'Unusually high amount detected ({amount}) - please verify')
    elif amount is not None:
        _add('invalid_amount', 'error', 'Gross Amount is not a valid number')

    share = line.get('Share %')
    if isinstance(share, (int, float)) and (share < 0 or share > 100):
        _add('share_out_of_range', 'warning', f'Share percentage ({share}%) outside valid range (0-100%)')

    for name in ('Period Start', 'Period End', 'Payment Date'):
        value = line.get(name)
        if not value:
            continue
        parsed = _parse_iso(value)
        if parsed is None:
            _add('invalid_date', 'error', f"Invalid date format in '{name}': {value}")
        elif name == 'Period End' and parsed > today:
            _add('future_period_end', 'warning', f'Period End date is in the future: {value}')

    for name in ('Song Title', 'Client Name'):
        value = line.get(name)
        if isinstance(value, str) and value:
            if len(value) < 2:
                _add('short_text', 'warning', f'{name} seems too short: "{value}"')
            if _UNUSUAL_CHARS_RE.search(value):
                _add('unusual_characters', 'warning', f'{name} contains unusual characters: "{value}"')

    has_data = any(v not in (None, '') for k, v in line.items()
                   if not k.startswith('_') and k != 'Statement Source')
    if not has_data:
        _add('empty_row', 'error', 'No valid data found in this row')

    return issues


def check_statement_aggregates(lines: List[dict]) -> List[ValidationIssue]:
    issues = []
    if not lines:
        return issues

    df = pd.DataFrame(lines)
    for col in ('Song Title', 'Client Name', 'Period Start', 'Period End', 'Gross Amount'):
        if col not in df.columns:
            df[col] = None

    # Duplicate title-client-period start
    keys = (df['Song Title'].astype(str) + '-' + df['Client Name'].astype(str)
            + '-' + df['Period Start'].astype(str))
    for key, idx in keys.groupby(keys).groups.items():
        if len(idx) > 1:
            rows = [int(i) + 1 for i in idx]
            title = df.loc[idx[0], 'Song Title']
            issues.append(ValidationIssue(
                check='duplicate_entries', severity='warning',
                message=f'Potential duplicate entries found for "{title}" in rows: {", ".join(map(str, rows))}',
                affected_rows=[r - 1 for r in rows], count=len(rows),
            ))

    amounts = pd.to_numeric(df['Gross Amount'], errors='coerce').dropna()
    if not amounts.empty:
        total = float(amounts.sum())
        avg = total / len(amounts)
        if total == 0:
            issues.append(ValidationIssue(
                check='zero_total', severity='warning',
                message='Total royalty amount is zero - please verify the data',
            ))
        outliers = amounts[amounts > avg * OUTLIER_FACTOR] if avg > 0 else amounts.iloc[:0]
        if len(outliers) > 0:
            issues.append(ValidationIssue(
                check='outlier_amounts', severity='warning',
                message=f'Found {len(outliers)} entries with amounts significantly higher than average - please verify',
                affected_rows=[int(i) for i in outliers.index], count=len(outliers),
            ))

    for i, line in enumerate(lines):
        start = _parse_iso(line.get('Period Start'))
        end = _parse_iso(line.get('Period End'))
        if start and end and start > end:
            issues.append(ValidationIssue(
                check='period_order', severity='error',
                message=f'Row {i + 1}: Period Start date is after Period End date',
                affected_rows=[i], count=1,
            ))

    complete = sum(1 for line in lines
                   if line.get('Song Title') and line.get('Client Name') and line.get('Gross Amount') is not None)
    if complete < len(lines) * 0.5:
        issues.append(ValidationIssue(
            check='incomplete_rows', severity='warning',
            message=f'Only {complete} out of {len(lines)} rows contain complete data - please review the mapping',
            count=len(lines) - complete,
        ))

    return issues


def run_statement_checks(headers: List[str], lines: List[dict], skipped_lines: int = 0,
                         duplicate_headers: Optional[List[str]] = None,
                         today: Optional[date] = None) -> List[ValidationIssue]:
    """Structure, line and aggregate checks over one mapped statement."""
    issues = check_statement_structure(headers, lines, skipped_lines, duplicate_headers)
    for i, line in enumerate(lines):
        issues.extend(check_statement_line(line, i, today=today))
    issues.extend(check_statement_aggregates(lines))
    return issues
