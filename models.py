"""
Canonical staged-record types shared by the mapper, validator and import pipeline.
"""

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional


# ---------------------------------------------------------------------------
# Contributors / conflicts
# ---------------------------------------------------------------------------

@dataclass
class Contributor:
    """A writer, composer or publisher credited on a work."""
    name: str
    role: str                   # 'writer', 'composer' or 'publisher'
    ipi: Optional[str] = None   # IPI / CAE number
    pro: Optional[str] = None
    share: Optional[float] = None

    def to_dict(self) -> dict:
        return {k: v for k, v in asdict(self).items() if v is not None}


@dataclass
class IdentifierConflict:
    field: str                                              # e.g. 'iswc'
    values: List[Dict[str, str]] = field(default_factory=list)  # [{source, value}]

    def to_dict(self) -> dict:
        return {'field': self.field, 'values': [dict(v) for v in self.values]}


# ---------------------------------------------------------------------------
# Per-source extras (tagged by kind)
# ---------------------------------------------------------------------------

@dataclass
class CanonicalExtras:
    """Fallback extras for sources without a dedicated shape."""
    kind: str = 'generic'
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        out = {k: v for k, v in asdict(self).items() if v not in (None, [], {})}
        out['kind'] = self.kind
        return out


@dataclass
class MusicBrainzExtras(CanonicalExtras):
    kind: str = 'musicbrainz_works'
    musicbrainz_id: Optional[str] = None


@dataclass
class ProRegistrationExtras(CanonicalExtras):
    kind: str = 'ascap_bmi_songview'
    ascap_work_id: Optional[str] = None
    bmi_work_id: Optional[str] = None
    pro_registrations: List[Dict[str, str]] = field(default_factory=list)


@dataclass
class MlcExtras(CanonicalExtras):
    kind: str = 'mlc_catalog'
    mlc_work_id: Optional[str] = None


@dataclass
class SyncExtras(CanonicalExtras):
    kind: str = 'sync'
    sync_history: List[Dict[str, str]] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Staging row
# ---------------------------------------------------------------------------

VALID = 'valid'
DUPLICATE = 'duplicate'
ERROR = 'error'


@dataclass
class StagingRow:
    """One mapped catalog row awaiting operator approval."""
    source_sheet: str
    work_title: str = ''
    artist_name: str = ''
    isrc: Optional[str] = None
    iswc: Optional[str] = None
    normalized_title: str = ''
    writers: List[Contributor] = field(default_factory=list)
    publishers: List[Contributor] = field(default_factory=list)
    canonical_row: CanonicalExtras = field(default_factory=CanonicalExtras)
    identifier_conflicts: List[IdentifierConflict] = field(default_factory=list)
    validation_status: str = VALID
    validation_errors: List[str] = field(default_factory=list)
    raw_row_data: Dict[str, Any] = field(default_factory=dict)
    row_index: int = 0

    def to_dict(self) -> dict:
        return {
            'source_sheet': self.source_sheet,
            'work_title': self.work_title,
            'artist_name': self.artist_name,
            'isrc': self.isrc,
            'iswc': self.iswc,
            'normalized_title': self.normalized_title,
            'writers': [w.to_dict() for w in self.writers],
            'publishers': [p.to_dict() for p in self.publishers],
            'canonical_row': self.canonical_row.to_dict(),
            'identifier_conflicts': [c.to_dict() for c in self.identifier_conflicts],
            'validation_status': self.validation_status,
            'validation_errors': list(self.validation_errors),
            'raw_row_data': dict(self.raw_row_data),
            'row_index': self.row_index,
        }
