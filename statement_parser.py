"""
Statement Parser
Turns uploaded CSV / XLS / XLSX bytes into per-sheet header + row data and a
best-guess source with a confidence score. No side effects.
"""

import csv
import io
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import pandas as pd

import detector
from statement_mapper import DEFAULT_STATEMENT_MAPPING

log = logging.getLogger('royalty')

SUPPORTED_EXTENSIONS = {'.csv': 'csv', '.xls': 'xls', '.xlsx': 'xlsx'}

MIME_FORMATS = {
    'text/csv': 'csv',
    'application/csv': 'csv',
    'application/vnd.ms-excel': 'xls',
    'application/vnd.openxmlformats-officedocument.spreadsheetml.sheet': 'xlsx',
}

HEADER_SCAN_ROWS = 30
HEADER_KEYWORD_MIN = 2


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class StatementParseError(Exception):
    """Base class for files that cannot be turned into rows."""
    kind = 'parse_error'


class UnsupportedFormatError(StatementParseError):
    kind = 'unsupported_format'


class EmptyFileError(StatementParseError):
    kind = 'empty_file'


class UnreadableFileError(StatementParseError):
    kind = 'unreadable_file'


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

@dataclass
class SheetData:
    name: str
    headers: List[str] = field(default_factory=list)
    rows: List[Dict[str, str]] = field(default_factory=list)
    header_row: int = 0
    detected_source: str = detector.UNKNOWN
    confidence: float = 0.0
    skipped_lines: int = 0
    duplicate_headers: List[str] = field(default_factory=list)


@dataclass
class ParseResult:
    filename: str
    file_format: str
    sheets: List[SheetData] = field(default_factory=list)

    @property
    def primary(self) -> Optional[SheetData]:
        for sheet in self.sheets:
            if sheet.rows:
                return sheet
        return self.sheets[0] if self.sheets else None

    @property
    def data(self) -> List[Dict[str, str]]:
        return self.primary.rows if self.primary else []

    @property
    def headers(self) -> List[str]:
        return self.primary.headers if self.primary else []

    @property
    def detected_source(self) -> str:
        return self.primary.detected_source if self.primary else detector.UNKNOWN

    @property
    def confidence(self) -> float:
        return self.primary.confidence if self.primary else 0.0

    @property
    def row_count(self) -> int:
        return sum(len(s.rows) for s in self.sheets)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def resolve_format(filename: str, mime_type: Optional[str] = None) -> str:
    ext = os.path.splitext(filename or '')[1].lower()
    if ext in SUPPORTED_EXTENSIONS:
        return SUPPORTED_EXTENSIONS[ext]
    if mime_type:
        fmt = MIME_FORMATS.get(mime_type.split(';')[0].strip().lower())
        if fmt:
            return fmt
    raise UnsupportedFormatError(f"Unsupported file type: {filename or mime_type or 'unknown'}")


def _sniff_encoding(raw: bytes) -> str:
    for enc in ('utf-8-sig', 'utf-8'):
        try:
            raw.decode(enc)
            return enc
        except UnicodeDecodeError:
            continue
    # latin-1 never fails
    return 'latin-1'


def _is_numeric(s: str) -> bool:
    s = s.replace(',', '').replace(' ', '').replace('$', '')
    try:
        float(s)
        return True
    except ValueError:
        return False


def _header_vocabulary() -> set:
    """Lower-cased column names known from the statement table and the sheet signatures."""
    names = {h.lower() for per_source in DEFAULT_STATEMENT_MAPPING.values()
             for value in per_source.values() for h in ([value] if isinstance(value, str) else value) if h}
    names.update(sig for _, signatures in detector.HEADER_SIGNATURES for sig in signatures)
    return names


def _keyword_hits(row: List[Any], vocabulary: set) -> int:
    return sum(1 for c in row if str(c).strip().lower() in vocabulary)


def detect_header_row(raw_rows: List[List[Any]]) -> int:
    """Index of the header row among the first rows of a sheet.

    A row naming at least HEADER_KEYWORD_MIN known columns wins outright; the
    earliest such row with the most hits is taken. Otherwise the row with the
    highest ratio of non-empty text cells wins, with column count breaking ties
    so wide header rows beat single-cell titles.
    """
    vocabulary = _header_vocabulary()
    best_hits, hit_row = 0, 0
    for idx, row in enumerate(raw_rows):
        hits = _keyword_hits(row or [], vocabulary)
        if hits > best_hits:
            best_hits, hit_row = hits, idx
    if best_hits >= HEADER_KEYWORD_MIN:
        return hit_row

    best_row = 0
    best_score = (-1.0, -1)
    for idx, row in enumerate(raw_rows):
        if not row:
            continue
        total = len(row)
        non_empty_cells = sum(1 for c in row if str(c).strip())
        string_cells = sum(1 for c in row if str(c).strip() and not _is_numeric(str(c).strip()))
        score = (string_cells / max(total, 1)) * 0.7 + (non_empty_cells / max(total, 1)) * 0.3
        candidate = (score, non_empty_cells)
        if candidate > best_score:
            best_score = candidate
            best_row = idx
    return best_row


def _clean_headers(raw: List[Any]) -> Tuple[List[str], List[str]]:
    """Trim header cells, name blanks 'Unnamed: N', suffix repeats '.1', '.2'.

    Returns (headers, duplicate header names).
    """
    headers, duplicates = [], []
    seen: Dict[str, int] = {}
    for i, cell in enumerate(raw):
        name = '' if cell is None or (isinstance(cell, float) and pd.isna(cell)) else str(cell).strip()
        if not name:
            name = f'Unnamed: {i}'
        if name in seen:
            seen[name] += 1
            if name not in duplicates:
                duplicates.append(name)
            name = f'{name}.{seen[name]}'
        else:
            seen[name] = 0
        headers.append(name)
    return headers, duplicates


def _frame_to_sheet(name: str, df: pd.DataFrame, header_row: int, skipped_lines: int = 0) -> SheetData:
    """df holds the header row at position 0 and data below, all strings."""
    df = df.fillna('')
    if df.empty:
        return SheetData(name=name, header_row=header_row, skipped_lines=skipped_lines)

    headers, duplicates = _clean_headers(df.iloc[0].tolist())
    rows = []
    for values in df.iloc[1:].values.tolist():
        cells = [str(v).strip() for v in values]
        if not any(cells):
            continue
        cells += [''] * (len(headers) - len(cells))
        rows.append(dict(zip(headers, cells)))

    source, confidence = detector.detect_source(name, headers)
    return SheetData(name=name, headers=headers, rows=rows, header_row=header_row,
                     detected_source=source, confidence=confidence,
                     skipped_lines=skipped_lines, duplicate_headers=duplicates)


# ---------------------------------------------------------------------------
# Readers
# ---------------------------------------------------------------------------

def _read_csv(content: bytes, name: str) -> List[SheetData]:
    enc = _sniff_encoding(content)
    text = content.decode(enc)

    preview = []
    for i, row in enumerate(csv.reader(io.StringIO(text))):
        if i >= HEADER_SCAN_ROWS:
            break
        preview.append(row)
    if not any(any(c.strip() for c in row) for row in preview):
        raise EmptyFileError(f"{name}: no header row found")

    header_row = detect_header_row(preview)
    skip = header_row if header_row > 0 else None
    bad_lines: List[List[str]] = []

    try:
        df = pd.read_csv(io.StringIO(text), header=None, skiprows=skip, dtype=str,
                         keep_default_na=False, skip_blank_lines=True)
    except pd.errors.ParserError:
        # Rows wider than the header: keep the rest, count what was dropped
        df = pd.read_csv(io.StringIO(text), header=None, skiprows=skip, dtype=str,
                         keep_default_na=False, skip_blank_lines=True, engine='python',
                         on_bad_lines=lambda line: bad_lines.append(line))
    except pd.errors.EmptyDataError:
        raise EmptyFileError(f"{name}: no data")

    if bad_lines:
        log.warning("%s: skipped %d malformed line(s)", name, len(bad_lines))
    return [_frame_to_sheet(name, df, header_row, skipped_lines=len(bad_lines))]


def _read_excel(content: bytes, name: str, file_format: str) -> List[SheetData]:
    engine = 'xlrd' if file_format == 'xls' else 'openpyxl'
    try:
        xls = pd.ExcelFile(io.BytesIO(content), engine=engine)
    except Exception as e:
        raise UnreadableFileError(f"{name}: cannot open workbook ({e})") from e

    sheets = []
    for sheet_name in xls.sheet_names:
        df_raw = pd.read_excel(xls, sheet_name=sheet_name, header=None, dtype=str)
        if df_raw.empty:
            continue
        raw_rows = df_raw.head(HEADER_SCAN_ROWS).fillna('').values.tolist()
        header_row = detect_header_row(raw_rows)
        sheets.append(_frame_to_sheet(str(sheet_name), df_raw.iloc[header_row:].reset_index(drop=True),
                                      header_row))
    return sheets


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def parse_statement(content: bytes, filename: str, mime_type: Optional[str] = None) -> ParseResult:
    """Parse uploaded bytes into sheets of rows keyed by header name.

    Raises UnsupportedFormatError, EmptyFileError or UnreadableFileError.
    """
    file_format = resolve_format(filename, mime_type)
    if not content:
        raise EmptyFileError(f"{filename}: file is empty")

    stem = os.path.splitext(os.path.basename(filename or ''))[0] or 'statement'
    try:
        if file_format == 'csv':
            sheets = _read_csv(content, stem)
        else:
            sheets = _read_excel(content, stem, file_format)
    except StatementParseError:
        raise
    except Exception as e:
        raise UnreadableFileError(f"{filename}: {e}") from e

    if not any(s.rows for s in sheets):
        raise EmptyFileError(f"{filename}: no data rows found")

    result = ParseResult(filename=filename, file_format=file_format, sheets=sheets)
    log.info("Parsed %s: %d sheet(s), %d row(s), source=%s (%.0f%% confidence)",
             filename, len(sheets), result.row_count, result.detected_source, result.confidence * 100)
    return result
