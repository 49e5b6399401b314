"""
Catalog Field Mapper
Maps catalog / registration sheets (MusicBrainz, ASCAP/BMI Songview, MLC, sync)
onto StagingRows, and remembers per-tenant header overrides via PostgreSQL or SQLite.
"""

import json
import logging
import os
import re
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

import detector
import validator
from identifiers import normalize_identifier, normalize_title
from models import (
    CanonicalExtras, Contributor, MlcExtras, MusicBrainzExtras, ProRegistrationExtras,
    StagingRow, SyncExtras,
)

log = logging.getLogger('royalty')

# Lazy import to avoid circular dependency at module load time
_db_mod = None

def _db():
    """Lazy-load db module and check availability."""
    global _db_mod
    if _db_mod is None:
        try:
            import db as _d
            _db_mod = _d
        except ImportError:
            return None
    return _db_mod if _db_mod.is_available() else None


CONFIG_VERSION = '1.1'
DB_NAME = 'mappings.db'

_CONTRIBUTOR_SPLIT_RE = re.compile(r'[,;&]')

# Ordered header candidates per canonical field; first candidate with a matching header wins
DEFAULT_FIELD_CANDIDATES: Dict[str, Dict[str, List[str]]] = {
    detector.MUSICBRAINZ_WORKS: {
        'title': ['work name', 'title', 'work title'],
        'artist': ['artist', 'performer'],
        'iswc': ['iswc'],
        'composer': ['composer', 'writer', 'creator'],
        'musicbrainz_id': ['mbid', 'musicbrainz id'],
    },
    detector.MUSICBRAINZ_RECORDINGS: {
        'title': ['recording', 'title', 'track'],
        'artist': ['artist', 'performer'],
        'isrc': ['isrc'],
        'musicbrainz_id': ['mbid', 'musicbrainz id'],
    },
    detector.ASCAP_BMI_SONGVIEW: {
        'title': ['work title', 'title', 'song title'],
        'artist': ['artist', 'performer'],
        'work_id': ['work id', 'work #'],
        'writer': ['writer', 'writer name'],
        'publisher': ['publisher', 'publisher name'],
        'share': ['share', 'ownership', '%'],
        'pro': ['pro', 'society'],
        'ipi': ['ipi', 'cae'],
    },
    detector.MLC_CATALOG: {
        'title': ['song title', 'title', 'work title'],
        'artist': ['artist', 'performer'],
        'song_code': ['song code', 'mlc id'],
        'iswc': ['iswc'],
        'isrc': ['isrc'],
        'writer': ['writer', 'songwriter'],
        'publisher': ['publisher'],
    },
    detector.SYNC: {
        'title': ['work title', 'song title', 'title'],
        'artist': ['artist', 'performer'],
        'sync_type': ['sync type', 'type', 'usage type'],
        'media_title': ['media title', 'show', 'movie', 'game'],
        'year': ['year', 'air date', 'release year'],
    },
    detector.UNKNOWN: {
        'title': ['title', 'work title', 'song title', 'track'],
        'artist': ['artist', 'performer'],
        'isrc': ['isrc'],
        'iswc': ['iswc'],
    },
}


@dataclass
class MappingResult:
    rows: List[StagingRow] = field(default_factory=list)
    unmapped_fields: List[str] = field(default_factory=list)
    validation_errors: List[str] = field(default_factory=list)

    @property
    def error_rows(self) -> int:
        return sum(1 for r in self.rows if r.validation_status == 'error')

    @property
    def duplicate_rows(self) -> int:
        return sum(1 for r in self.rows if r.validation_status == 'duplicate')

    @property
    def valid_rows(self) -> int:
        return sum(1 for r in self.rows if r.validation_status == 'valid')


# ---------------------------------------------------------------------------
# SQLite fallback store for mapping configs
# ---------------------------------------------------------------------------

def _db_path():
    return os.path.join(os.path.dirname(os.path.abspath(__file__)), DB_NAME)


_sqlite_available = False


def _get_conn():
    if not _sqlite_available:
        raise RuntimeError("SQLite not available")
    conn = sqlite3.connect(_db_path())
    conn.row_factory = sqlite3.Row
    conn.execute('PRAGMA journal_mode=WAL')
    return conn


def init_db():
    """Create tables if they don't exist. Returns True on success."""
    global _sqlite_available
    try:
        conn = sqlite3.connect(_db_path())
        conn.execute('PRAGMA journal_mode=WAL')
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS mapping_configs (
                user_id TEXT NOT NULL DEFAULT '',
                source_name TEXT NOT NULL,
                mapping_rules TEXT NOT NULL,
                header_patterns TEXT NOT NULL DEFAULT '[]',
                version TEXT NOT NULL,
                is_active INTEGER NOT NULL DEFAULT 1,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                PRIMARY KEY (user_id, source_name)
            );
        """)
        conn.commit()
        conn.close()
        _sqlite_available = True
    except sqlite3.Error as e:
        log.warning("SQLite unavailable (read-only filesystem?): %s", e)
        _sqlite_available = False
    return _sqlite_available


init_db()


# ---------------------------------------------------------------------------
# Mapping configs
# ---------------------------------------------------------------------------

def get_mapping_config(user_id: Optional[str], source_name: str) -> Optional[Dict[str, List[str]]]:
    """Active saved mapping rules for a tenant + source, or None (PostgreSQL preferred)."""
    dbm = _db()
    if dbm:
        try:
            cfg = dbm.get_mapping_config_db(user_id, source_name)
            if cfg is not None:
                return cfg
        except Exception as e:
            log.debug("DB mapping config lookup failed: %s", e)

    if _sqlite_available:
        conn = _get_conn()
        try:
            row = conn.execute(
                'SELECT mapping_rules FROM mapping_configs '
                'WHERE user_id = ? AND source_name = ? AND is_active = 1',
                (user_id or '', source_name)
            ).fetchone()
        finally:
            conn.close()
        if row:
            return json.loads(row['mapping_rules'])
    return None


def save_mapping_config(user_id: Optional[str], source_name: str, mapping_rules: Dict[str, Any],
                        header_patterns: Optional[List[str]] = None, is_active: bool = True):
    """Upsert a tenant's mapping rules for one source (PostgreSQL + SQLite)."""
    rules = {k: ([v] if isinstance(v, str) else list(v)) for k, v in mapping_rules.items() if v}
    patterns = header_patterns or []

    dbm = _db()
    if dbm:
        try:
            dbm.save_mapping_config_db(user_id, source_name, rules, patterns, CONFIG_VERSION, is_active)
        except Exception as e:
            log.warning("DB save_mapping_config failed: %s", e)

    if _sqlite_available:
        now = datetime.now().isoformat()
        conn = _get_conn()
        try:
            conn.execute("""
                INSERT INTO mapping_configs (user_id, source_name, mapping_rules, header_patterns,
                                             version, is_active, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (user_id, source_name) DO UPDATE SET
                    mapping_rules = excluded.mapping_rules,
                    header_patterns = excluded.header_patterns,
                    version = excluded.version,
                    is_active = excluded.is_active,
                    updated_at = excluded.updated_at
            """, (user_id or '', source_name, json.dumps(rules), json.dumps(patterns),
                  CONFIG_VERSION, 1 if is_active else 0, now, now))
            conn.commit()
        finally:
            conn.close()
    log.info("Saved mapping config for %s (%d field override(s))", source_name, len(rules))
    return rules


def list_mapping_configs(user_id: Optional[str]) -> List[dict]:
    dbm = _db()
    if dbm:
        try:
            return dbm.list_mapping_configs_db(user_id)
        except Exception as e:
            log.debug("DB list_mapping_configs failed: %s", e)

    if not _sqlite_available:
        return []
    conn = _get_conn()
    try:
        rows = conn.execute(
            'SELECT source_name, mapping_rules, header_patterns, version, is_active, updated_at '
            'FROM mapping_configs WHERE user_id = ? ORDER BY source_name',
            (user_id or '',)
        ).fetchall()
    finally:
        conn.close()
    return [{
        'source_name': r['source_name'],
        'mapping_rules': json.loads(r['mapping_rules']),
        'header_patterns': json.loads(r['header_patterns']),
        'version': r['version'],
        'is_active': bool(r['is_active']),
        'updated_at': r['updated_at'],
    } for r in rows]


def field_candidates(source: str, overrides: Optional[Dict[str, List[str]]] = None) -> Dict[str, List[str]]:
    """Default candidates for a sheet type with saved overrides applied per field."""
    candidates = {k: list(v) for k, v in DEFAULT_FIELD_CANDIDATES.get(source, DEFAULT_FIELD_CANDIDATES[detector.UNKNOWN]).items()}
    for canonical, names in (overrides or {}).items():
        if canonical in candidates and names:
            candidates[canonical] = [names] if isinstance(names, str) else list(names)
    return candidates


# ---------------------------------------------------------------------------
# Header lookup
# ---------------------------------------------------------------------------

def find_header(headers: List[str], candidates: List[str]) -> Optional[str]:
    """First header containing a candidate (case-insensitive), candidates tried in order."""
    lowered = [(h, str(h).lower().strip()) for h in headers]
    for cand in candidates:
        c = cand.lower()
        for original, low in lowered:
            if c in low:
                return original
    return None


def _split_contributors(value: str, role: str) -> List[Contributor]:
    if not value:
        return []
    names = [n.strip() for n in _CONTRIBUTOR_SPLIT_RE.split(value)]
    return [Contributor(name=n, role=role) for n in names if n]


def _parse_share(value: str) -> Optional[float]:
    if not value:
        return None
    try:
        return float(value.replace('%', '').strip())
    except ValueError:
        return None


# ---------------------------------------------------------------------------
# Per-source row mapping
# ---------------------------------------------------------------------------

def _map_musicbrainz_works(v: Callable[[str], str], row: StagingRow):
    row.iswc = normalize_identifier(v('iswc'), 'iswc')
    row.writers = _split_contributors(v('composer'), 'composer')
    row.canonical_row = MusicBrainzExtras(musicbrainz_id=v('musicbrainz_id') or None)


def _map_musicbrainz_recordings(v: Callable[[str], str], row: StagingRow):
    row.isrc = normalize_identifier(v('isrc'), 'isrc')
    row.canonical_row = MusicBrainzExtras(kind=detector.MUSICBRAINZ_RECORDINGS,
                                          musicbrainz_id=v('musicbrainz_id') or None)


def _map_ascap_bmi(v: Callable[[str], str], row: StagingRow):
    writer, publisher = v('writer'), v('publisher')
    pro, work_id = v('pro'), v('work_id')
    if writer:
        row.writers = [Contributor(name=writer, role='writer', ipi=v('ipi') or None,
                                   pro=pro or None, share=_parse_share(v('share')))]
    if publisher:
        row.publishers = [Contributor(name=publisher, role='publisher')]

    extras = ProRegistrationExtras()
    if 'ascap' in pro.lower():
        extras.ascap_work_id = work_id or None
    elif 'bmi' in pro.lower():
        extras.bmi_work_id = work_id or None
    if pro:
        extras.pro_registrations = [{'pro': pro, 'work_id': work_id, 'status': 'registered'}]
    row.canonical_row = extras


def _map_mlc(v: Callable[[str], str], row: StagingRow):
    row.isrc = normalize_identifier(v('isrc'), 'isrc')
    row.iswc = normalize_identifier(v('iswc'), 'iswc')
    row.writers = _split_contributors(v('writer'), 'writer')
    row.publishers = _split_contributors(v('publisher'), 'publisher')
    row.canonical_row = MlcExtras(mlc_work_id=v('song_code') or None)


def _map_sync(v: Callable[[str], str], row: StagingRow):
    entry = {'type': v('sync_type'), 'title': v('media_title')}
    if v('year'):
        entry['year'] = v('year')
    row.canonical_row = SyncExtras(sync_history=[entry])


def _map_generic(v: Callable[[str], str], row: StagingRow):
    row.isrc = normalize_identifier(v('isrc'), 'isrc')
    row.iswc = normalize_identifier(v('iswc'), 'iswc')
    row.canonical_row = CanonicalExtras()


_SOURCE_MAPPERS = {
    detector.MUSICBRAINZ_WORKS: _map_musicbrainz_works,
    detector.MUSICBRAINZ_RECORDINGS: _map_musicbrainz_recordings,
    detector.ASCAP_BMI_SONGVIEW: _map_ascap_bmi,
    detector.MLC_CATALOG: _map_mlc,
    detector.SYNC: _map_sync,
}


def map_row(raw: Dict[str, Any], columns: Dict[str, Optional[str]], source: str,
            row_index: int = 0) -> StagingRow:
    """Build one StagingRow. columns: {canonical field: resolved header or None}."""
    def v(canonical: str) -> str:
        header = columns.get(canonical)
        if not header:
            return ''
        val = raw.get(header)
        return str(val).strip() if val is not None else ''

    title = v('title')
    row = StagingRow(
        source_sheet=source if source in _SOURCE_MAPPERS else detector.UNKNOWN,
        work_title=title,
        artist_name=v('artist'),
        normalized_title=normalize_title(title),
        raw_row_data=dict(raw),
        row_index=row_index,
    )
    _SOURCE_MAPPERS.get(source, _map_generic)(v, row)

    mapped_headers = {h for h in columns.values() if h}
    unknown_keys = {k: val for k, val in raw.items() if k not in mapped_headers and val not in (None, '')}
    if unknown_keys:
        row.canonical_row.extra = unknown_keys
    return row


def map_rows(rows: List[Dict[str, Any]], headers: List[str], source: str,
             user_id: Optional[str] = None,
             overrides: Optional[Dict[str, List[str]]] = None) -> MappingResult:
    """Map a sheet's rows for the given sheet type and validate each row.

    Saved tenant overrides are looked up when none are passed in. Conflict
    detection runs across the whole import (see pipeline).
    """
    if overrides is None:
        overrides = get_mapping_config(user_id, source)
    candidates = field_candidates(source, overrides)
    columns = {canonical: find_header(headers, names) for canonical, names in candidates.items()}
    unmapped = [canonical for canonical, header in columns.items() if header is None]

    result = MappingResult(unmapped_fields=unmapped)
    for index, raw in enumerate(rows):
        if not any(str(val).strip() for val in raw.values() if val is not None):
            continue
        row = validator.validate_staging_row(map_row(raw, columns, source, row_index=index))
        for err in row.validation_errors:
            result.validation_errors.append(f'Row {index + 1}: {err}')
        result.rows.append(row)

    log.info("Mapped %d %s row(s): %d unmapped field(s), %d row error(s)",
             len(result.rows), source, len(unmapped), result.error_rows)
    return result
