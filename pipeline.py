"""
Import Pipeline
Orchestrates parse -> detect -> map -> validate -> stage for uploaded statement
and catalog files, and promotes approved staging records.

Nothing here raises for data problems: every file comes back as a
FileImportResult (success or failure) with a list of ImportIssue.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple

import detector
import mapper
import reconciliation
import statement_mapper
import validator
from models import ERROR, StagingRow
from statement_parser import SheetData, StatementParseError, parse_statement

log = logging.getLogger('royalty')

AUTO_DETECT = 'auto-detect'
NEEDS_REVIEW_TAG = 'Needs Review'

KIND_CATALOG = 'catalog'
KIND_STATEMENT = 'statement'

STATUS_PROCESSED = 'processed'
STATUS_NEEDS_REVIEW = 'needs_review'
STATUS_APPROVED = 'approved'

SUCCESS = 'success'
PARTIAL = 'partial'
FAILURE = 'failure'


def _db():
    """Lazy import of db module; returns None if unavailable."""
    try:
        import db as dbm
        if dbm.is_available():
            return dbm
    except Exception:
        pass
    return None


def _storage():
    try:
        import storage
        if storage.is_available():
            return storage
    except Exception:
        pass
    return None


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

@dataclass
class ImportIssue:
    stage: str              # 'parse', 'detect', 'map', 'validate', 'stage', 'archive'
    severity: str           # 'error' or 'warning'
    message: str
    sheet: str = ''

    def to_dict(self) -> dict:
        return {'stage': self.stage, 'severity': self.severity, 'message': self.message, 'sheet': self.sheet}


@dataclass
class SheetImport:
    sheet_name: str
    record_kind: str
    detected_source: str
    confidence: float
    processing_status: str
    import_tags: List[str] = field(default_factory=list)
    unmapped_fields: List[str] = field(default_factory=list)
    validation_errors: List[str] = field(default_factory=list)
    raw_data: List[dict] = field(default_factory=list)
    rows: List[StagingRow] = field(default_factory=list)
    lines: List[dict] = field(default_factory=list)
    staged_id: Optional[str] = None

    @property
    def mapped_data(self) -> List[dict]:
        if self.record_kind == KIND_CATALOG:
            return [r.to_dict() for r in self.rows]
        return list(self.lines)

    @property
    def row_count(self) -> int:
        return len(self.rows) if self.record_kind == KIND_CATALOG else len(self.lines)

    def to_dict(self, include_rows: bool = True) -> dict:
        out = {
            'sheet_name': self.sheet_name,
            'record_kind': self.record_kind,
            'detected_source': self.detected_source,
            'confidence': self.confidence,
            'processing_status': self.processing_status,
            'import_tags': list(self.import_tags),
            'unmapped_fields': list(self.unmapped_fields),
            'validation_errors': list(self.validation_errors),
            'row_count': self.row_count,
            'staged_id': self.staged_id,
        }
        if include_rows:
            out['mapped_data'] = self.mapped_data
        return out


@dataclass
class FileImportResult:
    filename: str
    status: str = SUCCESS
    sheets: List[SheetImport] = field(default_factory=list)
    issues: List[ImportIssue] = field(default_factory=list)
    gcs_path: Optional[str] = None

    @property
    def row_count(self) -> int:
        return sum(s.row_count for s in self.sheets)

    @property
    def needs_review(self) -> bool:
        return any(s.processing_status == STATUS_NEEDS_REVIEW for s in self.sheets)

    def to_dict(self, include_rows: bool = True) -> dict:
        return {
            'filename': self.filename,
            'status': self.status,
            'row_count': self.row_count,
            'needs_review': self.needs_review,
            'gcs_path': self.gcs_path,
            'sheets': [s.to_dict(include_rows) for s in self.sheets],
            'issues': [i.to_dict() for i in self.issues],
        }


@dataclass
class ImportResult:
    files: List[FileImportResult] = field(default_factory=list)

    @property
    def status(self) -> str:
        statuses = {f.status for f in self.files}
        if not statuses or statuses == {FAILURE}:
            return FAILURE
        if statuses == {SUCCESS}:
            return SUCCESS
        return PARTIAL

    @property
    def successful_files(self) -> int:
        return sum(1 for f in self.files if f.status != FAILURE)

    def to_dict(self, include_rows: bool = True) -> dict:
        return {
            'status': self.status,
            'total_files': len(self.files),
            'successful_files': self.successful_files,
            'files': [f.to_dict(include_rows) for f in self.files],
        }


# ---------------------------------------------------------------------------
# Per-sheet processing
# ---------------------------------------------------------------------------

def resolve_source(sheet: SheetData, manual_source: Optional[str]) -> Tuple[str, float]:
    """Manual selection beats detection; 'auto-detect' or blank means detect."""
    if manual_source and manual_source != AUTO_DETECT:
        return manual_source, 1.0
    return sheet.detected_source, sheet.confidence


def _review_tags(has_errors: bool, unmapped: List[str]) -> Tuple[str, List[str]]:
    if has_errors or unmapped:
        return STATUS_NEEDS_REVIEW, [NEEDS_REVIEW_TAG]
    return STATUS_PROCESSED, []


def _process_statement_sheet(sheet: SheetData, source: str, confidence: float,
                             user_id: Optional[str]) -> SheetImport:
    overrides = mapper.get_mapping_config(user_id, source)
    mapped = statement_mapper.map_statement(sheet.rows, sheet.headers, source, overrides=overrides,
                                            skipped_lines=sheet.skipped_lines,
                                            duplicate_headers=sheet.duplicate_headers)
    status, tags = _review_tags(mapped.has_errors, mapped.unmapped_fields)
    return SheetImport(
        sheet_name=sheet.name, record_kind=KIND_STATEMENT, detected_source=source,
        confidence=confidence, processing_status=status, import_tags=tags,
        unmapped_fields=mapped.unmapped_fields, validation_errors=mapped.validation_errors,
        raw_data=sheet.rows, lines=mapped.lines,
    )


def _process_catalog_sheet(sheet: SheetData, source: str, confidence: float,
                           user_id: Optional[str]) -> SheetImport:
    mapped = mapper.map_rows(sheet.rows, sheet.headers, source, user_id=user_id)
    return SheetImport(
        sheet_name=sheet.name, record_kind=KIND_CATALOG, detected_source=source,
        confidence=confidence, processing_status=STATUS_PROCESSED,
        unmapped_fields=mapped.unmapped_fields, validation_errors=mapped.validation_errors,
        raw_data=sheet.rows, rows=mapped.rows,
    )


def _finalize_catalog(sheets: List[SheetImport]):
    """Cross-sheet conflict detection, then review status per sheet."""
    catalog_rows = [r for s in sheets if s.record_kind == KIND_CATALOG for r in s.rows]
    if not catalog_rows:
        return
    validator.detect_conflicts(catalog_rows)
    for s in sheets:
        if s.record_kind != KIND_CATALOG:
            continue
        s.validation_errors = [f'Row {r.row_index + 1}: {e}' for r in s.rows for e in r.validation_errors]
        has_errors = any(r.validation_status == ERROR for r in s.rows)
        s.processing_status, s.import_tags = _review_tags(has_errors, s.unmapped_fields)


def _stage(dbm, conn, user_id: str, filename: str, sheet: SheetImport, batch_id: Optional[str],
           gcs_path: Optional[str]) -> str:
    record = {
        'batch_id': batch_id,
        'original_filename': filename,
        'sheet_name': sheet.sheet_name,
        'record_kind': sheet.record_kind,
        'detected_source': sheet.detected_source,
        'confidence': sheet.confidence,
        'mapping_version': mapper.CONFIG_VERSION if sheet.record_kind == KIND_CATALOG
        else statement_mapper.MAPPING_VERSION,
        'raw_data': sheet.raw_data,
        'mapped_data': sheet.mapped_data,
        'validation_status': {
            'errors': sheet.validation_errors,
            'has_errors': bool(sheet.validation_errors),
            'has_unmapped': bool(sheet.unmapped_fields),
        },
        'unmapped_fields': sheet.unmapped_fields,
        'processing_status': sheet.processing_status,
        'import_tags': sheet.import_tags,
        'gcs_path': gcs_path,
    }
    return dbm.insert_staging_record(conn, user_id, record)


# ---------------------------------------------------------------------------
# Entry points
# ---------------------------------------------------------------------------

def import_file(content: bytes, filename: str, user_id: Optional[str] = None,
                manual_source: Optional[str] = None, batch_id: Optional[str] = None,
                mime_type: Optional[str] = None) -> FileImportResult:
    """Run one uploaded file through the pipeline and stage every usable sheet."""
    result = FileImportResult(filename=filename)

    try:
        parsed = parse_statement(content, filename, mime_type=mime_type)
    except StatementParseError as e:
        log.warning("Parse failed for %s: %s", filename, e)
        result.status = FAILURE
        result.issues.append(ImportIssue('parse', 'error', str(e)))
        return result

    for sheet in parsed.sheets:
        if not sheet.rows:
            continue
        source, confidence = resolve_source(sheet, manual_source)
        if statement_mapper.is_statement_source(source):
            result.sheets.append(_process_statement_sheet(sheet, source, confidence, user_id))
        elif source in detector.SHEET_TYPES:
            result.sheets.append(_process_catalog_sheet(sheet, source, confidence, user_id))
        else:
            result.issues.append(ImportIssue(
                'detect', 'error',
                f"Could not detect the source of '{sheet.name}'; choose a source manually and retry",
                sheet=sheet.name))

    # An undetected sheet fails the whole file; the operator retries with a manual source
    if not result.sheets or any(i.stage == 'detect' for i in result.issues):
        result.status = FAILURE
        result.sheets = []
        return result

    _finalize_catalog(result.sheets)
    for s in result.sheets:
        if s.processing_status == STATUS_NEEDS_REVIEW:
            result.issues.append(ImportIssue(
                'validate', 'warning',
                f"{s.sheet_name}: {len(s.validation_errors)} issue(s), "
                f"{len(s.unmapped_fields)} unmapped field(s)", sheet=s.sheet_name))

    store = _storage()
    if store and user_id:
        try:
            result.gcs_path = store.upload_statement(user_id, filename, content)
        except Exception as e:
            log.warning("Statement archive failed for %s: %s", filename, e)
            result.issues.append(ImportIssue('archive', 'warning', f"File not archived: {e}"))

    dbm = _db()
    if dbm and user_id:
        current = ''
        try:
            # One transaction per file: every sheet is staged or none is
            with dbm.get_conn() as conn:
                for s in result.sheets:
                    current = s.sheet_name
                    s.staged_id = _stage(dbm, conn, user_id, filename, s, batch_id, result.gcs_path)
        except Exception as e:
            log.error("Staging failed for %s / %s: %s", filename, current, e)
            for s in result.sheets:
                s.staged_id = None
            result.status = FAILURE
            result.issues.append(ImportIssue('stage', 'error', f"Could not stage: {e}", sheet=current))
            if store and result.gcs_path:
                store.delete_blob(result.gcs_path)
                result.gcs_path = None

    log.info("Imported %s: %s, %d sheet(s), %d row(s)%s", filename, result.status, len(result.sheets),
             result.row_count, ' (needs review)' if result.needs_review else '')
    return result


def import_files(files: Iterable[Tuple[str, bytes]], user_id: Optional[str] = None,
                 manual_source: Optional[str] = None, batch_id: Optional[str] = None) -> ImportResult:
    """Import several (filename, content) pairs; one file failing never stops the others."""
    result = ImportResult()
    for filename, content in files:
        result.files.append(import_file(content, filename, user_id=user_id,
                                        manual_source=manual_source, batch_id=batch_id))
    return result


# ---------------------------------------------------------------------------
# Approval / promotion
# ---------------------------------------------------------------------------

def statement_line_to_allocation(line: dict, batch_id: Optional[str] = None,
                                 catalog: Optional[List[dict]] = None) -> dict:
    """Map a mapped statement line onto a royalty_allocations row, matched against catalog works."""
    controlled_status, comments = reconciliation.match_status(line, catalog or [])
    return {
        'batch_id': batch_id,
        'song_title': line.get('Song Title') or '',
        'artist': '',
        'work_writers': line.get('Client Name') or '',
        'gross_royalty_amount': line.get('Gross Amount') or 0.0,
        'source': line.get('Source') or line.get('Statement Source') or '',
        'controlled_status': controlled_status,
        'comments': comments,
        'statement_id': line.get('Work ID') or '',
        'iswc': line.get('ISWC'),
        'royalty_type': line.get('Royalty Type'),
        'share_pct': line.get('Share %'),
        'period_start': line.get('Period Start'),
        'period_end': line.get('Period End'),
    }


def approve_staging_record(user_id: str, staging_id: str,
                           selected_rows: Optional[List[int]] = None) -> Dict[str, int]:
    """Promote a staged record: statement lines become allocations, non-error catalog rows become works.

    selected_rows limits promotion to those 0-based positions of mapped_data.
    Raises LookupError for an unknown record, ValueError if already approved.
    """
    dbm = _db()
    if dbm is None:
        raise RuntimeError("Database not available")

    record = dbm.get_staging_record(user_id, staging_id)
    if record is None:
        raise LookupError(f"Staging record not found: {staging_id}")
    if record['processing_status'] == STATUS_APPROVED:
        raise ValueError("Staging record already approved")

    mapped = record.get('mapped_data') or []
    if selected_rows:
        wanted = set(selected_rows)
        mapped = [m for i, m in enumerate(mapped) if i in wanted]

    allocations, works = 0, 0
    with dbm.get_conn() as conn:
        if record['record_kind'] == KIND_STATEMENT:
            catalog = dbm.fetch_catalog_works(conn, user_id)
            rows = [statement_line_to_allocation(m, record.get('batch_id'), catalog) for m in mapped]
            matched = sum(1 for r in rows if r['controlled_status'] == reconciliation.CONTROLLED)
            log.info("Matched %d of %d statement line(s) to the catalog", matched, len(rows))
            allocations = dbm.insert_allocations(conn, user_id, staging_id, rows)
        else:
            keep = [m for m in mapped if m.get('validation_status') != ERROR]
            works = dbm.insert_catalog_works(conn, user_id, staging_id, keep)
        dbm.update_staging_status(conn, user_id, staging_id, STATUS_APPROVED)

    log.info("Approved staging record %s: %d allocation(s), %d work(s)", staging_id, allocations, works)
    return {'allocations_created': allocations, 'works_created': works}


def delete_staging_record(user_id: str, staging_id: str) -> bool:
    """Remove a staged record, anything promoted from it, and its archived file."""
    dbm = _db()
    if dbm is None:
        raise RuntimeError("Database not available")
    record = dbm.get_staging_record(user_id, staging_id)
    if record is None:
        return False
    deleted = dbm.delete_staging_record(user_id, staging_id)
    store = _storage()
    if deleted and store and record.get('gcs_path'):
        store.delete_blob(record['gcs_path'])
    return deleted
