"""
Reconciliation Engine
Batch allocation progress, dashboard health banding, statement-to-catalog song
matching, discrepancy classification, allocation linking helpers, and per-payee
quarterly running balances.
"""

import io
import logging
import math
import re
from collections import OrderedDict
from dataclasses import asdict, dataclass, field
from datetime import date, datetime
from difflib import SequenceMatcher
from typing import Callable, Dict, Iterable, List, Optional, Tuple

import pandas as pd

from identifiers import normalize_identifier, normalize_title

log = logging.getLogger('royalty')

# Lazy DB module reference
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


FULLY_RECONCILED_THRESHOLD = 95.0
LOW_CONFIDENCE_THRESHOLD = 80

BUCKET_FULLY_RECONCILED = 'fully_reconciled'
BUCKET_NEEDS_ATTENTION = 'needs_attention'

_CONFIDENCE_RE = re.compile(r'(\d+)% confidence')


class ReconciliationError(Exception):
    """Raised when a reconciliation run cannot proceed (e.g. no payouts)."""


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------

@dataclass
class ReconciliationBatch:
    id: str
    batch_id: str = ''                  # human label
    source: str = ''
    total_gross_amount: float = 0.0
    date_received: Optional[str] = None
    status: str = 'Imported'


@dataclass
class RoyaltyAllocation:
    id: str
    song_title: str = ''
    artist: str = ''
    work_writers: str = ''
    gross_royalty_amount: float = 0.0
    source: str = ''
    batch_id: Optional[str] = None
    controlled_status: str = ''
    comments: str = ''
    statement_id: str = ''
    created_at: Optional[str] = None


@dataclass
class Payee:
    id: str
    payee_name: str = ''
    beginning_balance: float = 0.0


@dataclass
class Payout:
    id: str = ''
    payee_id: Optional[str] = None
    payee_name: str = ''
    gross_royalties: float = 0.0
    total_expenses: float = 0.0
    amount_due: float = 0.0
    net_payable: float = 0.0
    status: str = ''
    workflow_stage: str = ''
    period_start: Optional[str] = None
    created_at: Optional[str] = None

    @property
    def is_paid(self) -> bool:
        return (self.status or '').lower() == 'paid' or (self.workflow_stage or '').lower() == 'paid'


@dataclass
class QuarterlyBalanceReport:
    payee_id: str
    year: int
    quarter: int
    opening_balance: float = 0.0
    royalties_amount: float = 0.0
    expenses_amount: float = 0.0
    payments_amount: float = 0.0
    closing_balance: float = 0.0
    is_calculated: bool = True
    calculation_date: Optional[str] = None


@dataclass
class BatchProgress:
    batch: ReconciliationBatch
    allocated_amount: float
    progress: float
    bucket: str

    def to_dict(self) -> dict:
        out = asdict(self.batch)
        out.update(allocated_amount=self.allocated_amount, progress=self.progress, bucket=self.bucket)
        return out


@dataclass
class DashboardMetrics:
    total_received: float = 0.0
    total_allocated: float = 0.0
    total_paid_out: float = 0.0
    reconciliation_rate: float = 0.0
    pending_amount: float = 0.0
    health: str = 'critical'
    batches: List[BatchProgress] = field(default_factory=list)

    @property
    def batches_needing_attention(self) -> int:
        return sum(1 for b in self.batches if b.bucket == BUCKET_NEEDS_ATTENTION)

    def to_dict(self) -> dict:
        return {
            'total_received': self.total_received,
            'total_allocated': self.total_allocated,
            'total_paid_out': self.total_paid_out,
            'reconciliation_rate': self.reconciliation_rate,
            'pending_amount': self.pending_amount,
            'health': self.health,
            'batches_needing_attention': self.batches_needing_attention,
            'batches': [b.to_dict() for b in self.batches],
        }


@dataclass
class Discrepancy:
    kind: str                       # 'unmatched', 'low_confidence' or 'duplicate'
    allocation: RoyaltyAllocation
    detail: str = ''
    confidence: Optional[int] = None

    def to_dict(self) -> dict:
        return {'kind': self.kind, 'detail': self.detail, 'confidence': self.confidence,
                'allocation': asdict(self.allocation)}


# ---------------------------------------------------------------------------
# Batch progress
# ---------------------------------------------------------------------------

def batch_allocated_amount(batch: ReconciliationBatch, allocations: Iterable[RoyaltyAllocation]) -> float:
    return sum(a.gross_royalty_amount or 0.0 for a in allocations if a.batch_id == batch.id)


def reconciliation_progress(batch: ReconciliationBatch, allocations: Iterable[RoyaltyAllocation]) -> float:
    """Allocated / received * 100; 0 when the batch total is 0."""
    if not batch.total_gross_amount:
        return 0.0
    return batch_allocated_amount(batch, allocations) / batch.total_gross_amount * 100


def batch_bucket(progress: float) -> str:
    return BUCKET_FULLY_RECONCILED if progress >= FULLY_RECONCILED_THRESHOLD else BUCKET_NEEDS_ATTENTION


def health_band(rate: float) -> str:
    if rate >= 95:
        return 'excellent'
    if rate >= 80:
        return 'good'
    if rate >= 60:
        return 'needs_attention'
    return 'critical'


def summarize_batches(batches: List[ReconciliationBatch],
                      allocations: List[RoyaltyAllocation]) -> List[BatchProgress]:
    out = []
    for batch in batches:
        allocated = batch_allocated_amount(batch, allocations)
        progress = reconciliation_progress(batch, allocations)
        out.append(BatchProgress(batch=batch, allocated_amount=round(allocated, 2),
                                 progress=round(progress, 2), bucket=batch_bucket(progress)))
    return out


def dashboard_metrics(batches: List[ReconciliationBatch], allocations: List[RoyaltyAllocation],
                      payouts: List[Payout]) -> DashboardMetrics:
    """Totals across all batches; allocated counts every allocation, linked or not."""
    received = sum(b.total_gross_amount or 0.0 for b in batches)
    allocated = sum(a.gross_royalty_amount or 0.0 for a in allocations)
    paid_out = sum(p.net_payable or 0.0 for p in payouts)
    rate = allocated / received * 100 if received > 0 else 0.0
    return DashboardMetrics(
        total_received=round(received, 2),
        total_allocated=round(allocated, 2),
        total_paid_out=round(paid_out, 2),
        reconciliation_rate=round(rate, 2),
        pending_amount=round(received - allocated, 2),
        health=health_band(rate),
        batches=summarize_batches(batches, allocations),
    )


# ---------------------------------------------------------------------------
# Song matching (statement lines -> catalog works, at approval time)
# ---------------------------------------------------------------------------

CONTROLLED = 'Controlled'
NON_CONTROLLED = 'Non-Controlled'
UNMATCHED_COMMENT = 'Unmatched - requires manual review'

MIN_MATCH_CONFIDENCE = 60
IDENTIFIER_MATCH_CONFIDENCE = 95


def match_confidence(line: dict, work: dict) -> int:
    """0-100 title similarity; a shared ISWC or work id lifts it to at least 95."""
    title = normalize_title(line.get('Song Title'))
    candidate = work.get('normalized_title') or normalize_title(work.get('work_title'))
    score = 0
    if title and candidate:
        score = int(round(SequenceMatcher(None, title, candidate).ratio() * 100))

    iswc = normalize_identifier(line.get('ISWC'), 'iswc')
    if iswc and iswc == normalize_identifier(work.get('iswc'), 'iswc'):
        score = max(score, IDENTIFIER_MATCH_CONFIDENCE)
    work_id = str(line.get('Work ID') or '').strip()
    if work_id and work_id == str(work.get('work_id') or '').strip():
        score = max(score, IDENTIFIER_MATCH_CONFIDENCE)
    return score


def match_song(line: dict, works: List[dict]) -> Tuple[Optional[dict], int]:
    """Best catalog work for a statement line, or (None, 0) below MIN_MATCH_CONFIDENCE.

    Ties keep the earlier work.
    """
    best, best_conf = None, 0
    for work in works:
        conf = match_confidence(line, work)
        if conf >= MIN_MATCH_CONFIDENCE and conf > best_conf:
            best, best_conf = work, conf
    return best, best_conf


def match_status(line: dict, works: List[dict]) -> Tuple[str, str]:
    """(controlled_status, comments) for an allocation promoted from a statement line."""
    work, conf = match_song(line, works)
    if work is None:
        return NON_CONTROLLED, UNMATCHED_COMMENT
    return CONTROLLED, f'Auto-matched from import ({conf}% confidence)'


# ---------------------------------------------------------------------------
# Discrepancies
# ---------------------------------------------------------------------------

def _confidence_of(comments: str) -> int:
    m = _CONFIDENCE_RE.search(comments or '')
    return int(m.group(1)) if m else 0


def find_discrepancies(allocations: List[RoyaltyAllocation]) -> List[Discrepancy]:
    """Unmatched, low-confidence auto-matches, and title-only duplicates.

    Duplicate grouping uses the trimmed, case-folded song title alone, so
    same-titled songs by different artists are flagged together.
    """
    found = []
    for a in allocations:
        comments = a.comments or ''
        if a.controlled_status == NON_CONTROLLED and 'Unmatched' in comments:
            found.append(Discrepancy(kind='unmatched', allocation=a, detail='Unmatched non-controlled line'))
        if 'confidence' in comments and 'Auto-matched' in comments:
            conf = _confidence_of(comments)
            if conf < LOW_CONFIDENCE_THRESHOLD:
                found.append(Discrepancy(kind='low_confidence', allocation=a, confidence=conf,
                                         detail=f'Auto-matched at {conf}% confidence'))

    groups: Dict[str, List[RoyaltyAllocation]] = OrderedDict()
    for a in allocations:
        groups.setdefault((a.song_title or '').lower().strip(), []).append(a)
    for title, members in groups.items():
        if len(members) > 1:
            for a in members:
                found.append(Discrepancy(kind='duplicate', allocation=a,
                                         detail=f'{len(members)} allocations titled "{a.song_title}"'))
    return found


DISCREPANCY_CSV_COLUMNS = ['STATEMENT ID', 'WORK TITLE', 'SOURCE', 'WRITERS', 'GROSS',
                           'TYPE', 'COMMENTS', 'DATE']


def discrepancies_to_csv(discrepancies: List[Discrepancy]) -> str:
    records = []
    for d in discrepancies:
        a = d.allocation
        records.append([
            a.statement_id or '',
            a.song_title or '',
            a.source or '',
            a.work_writers or a.artist or 'Unknown',
            f"{a.gross_royalty_amount or 0:.2f}",
            d.kind,
            a.comments or '',
            (a.created_at or '')[:10],
        ])
    buf = io.StringIO()
    pd.DataFrame(records, columns=DISCREPANCY_CSV_COLUMNS).to_csv(buf, index=False)
    return buf.getvalue()


# ---------------------------------------------------------------------------
# Allocation linking
# ---------------------------------------------------------------------------

def unlinked_allocations(allocations: List[RoyaltyAllocation], search: str = '',
                         source: Optional[str] = None) -> List[RoyaltyAllocation]:
    """Allocations without a batch, filtered by title/artist search and source."""
    term = (search or '').lower().strip()
    out = []
    for a in allocations:
        if a.batch_id:
            continue
        if term and term not in (a.song_title or '').lower() and term not in (a.artist or '').lower():
            continue
        if source and source != 'all' and a.source != source:
            continue
        out.append(a)
    return out


def selection_total(allocations: List[RoyaltyAllocation], selected_ids: Iterable[str]) -> float:
    ids = set(selected_ids)
    return round(sum(a.gross_royalty_amount or 0.0 for a in allocations if a.id in ids), 2)


# ---------------------------------------------------------------------------
# Quarterly balances
# ---------------------------------------------------------------------------

def _to_date(value) -> Optional[date]:
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    ts = pd.to_datetime(str(value), errors='coerce')
    return None if pd.isna(ts) else ts.date()


def quarter_of(value) -> Tuple[int, int]:
    d = _to_date(value)
    if d is None:
        raise ValueError(f"Invalid period date: {value!r}")
    return d.year, math.ceil(d.month / 3)


def resolve_payee(name: str, payees: List[Payee]) -> Optional[Payee]:
    """Exact (case-insensitive) name match first, then substring in either direction."""
    needle = (name or '').lower().strip()
    if not needle:
        return None
    for p in payees:
        if (p.payee_name or '').lower().strip() == needle:
            return p
    for p in payees:
        candidate = (p.payee_name or '').lower().strip()
        if candidate and (needle in candidate or candidate in needle):
            return p
    return None


def assign_payees(payouts: List[Payout], payees: List[Payee],
                  create_payee: Callable[[str], Payee]) -> List[Payee]:
    """Point every payout at a payee, creating payees for unresolved counterparty names.

    Returns the payees that were created.
    """
    known = {p.id for p in payees}
    created = []
    for payout in payouts:
        if payout.payee_id and payout.payee_id in known:
            continue
        match = resolve_payee(payout.payee_name, payees)
        if match is None:
            if not (payout.payee_name or '').strip():
                continue
            match = create_payee(payout.payee_name.strip())
            payees.append(match)
            known.add(match.id)
            created.append(match)
            log.info("Created payee '%s' for payout %s", match.payee_name, payout.id)
        payout.payee_id = match.id
    return created


def build_quarterly_reports(payouts: List[Payout], payees: List[Payee],
                            calculation_date: Optional[str] = None) -> List[QuarterlyBalanceReport]:
    """Bucket payouts by payee and calendar quarter, then fold balances forward.

    Each payee starts from its beginning balance; quarters are processed in
    (year, quarter) order and each opening balance is the previous closing.
    """
    calc_date = calculation_date or datetime.now().isoformat()
    beginning = {p.id: float(p.beginning_balance or 0.0) for p in payees}

    buckets: Dict[str, Dict[Tuple[int, int], Dict[str, float]]] = {}
    for payout in payouts:
        if not payout.payee_id:
            log.warning("Skipping payout %s: no payee", payout.id)
            continue
        period = payout.period_start or payout.created_at
        try:
            key = quarter_of(period)
        except ValueError:
            log.warning("Skipping payout %s: invalid period %r", payout.id, period)
            continue
        totals = buckets.setdefault(payout.payee_id, {}).setdefault(
            key, {'royalties': 0.0, 'expenses': 0.0, 'payments': 0.0})
        totals['royalties'] += float(payout.gross_royalties or 0.0)
        totals['expenses'] += float(payout.total_expenses or 0.0)
        if payout.is_paid:
            totals['payments'] += float(payout.amount_due or 0.0)

    reports = []
    for payee_id, quarters in buckets.items():
        running = beginning.get(payee_id, 0.0)
        for (year, quarter) in sorted(quarters):
            t = quarters[(year, quarter)]
            opening = round(running, 2)
            royalties = round(t['royalties'], 2)
            expenses = round(t['expenses'], 2)
            payments = round(t['payments'], 2)
            closing = round(opening + royalties - expenses - payments, 2)
            reports.append(QuarterlyBalanceReport(
                payee_id=payee_id, year=year, quarter=quarter,
                opening_balance=opening, royalties_amount=royalties,
                expenses_amount=expenses, payments_amount=payments,
                closing_balance=closing, is_calculated=True, calculation_date=calc_date,
            ))
            running = closing
    return reports


def regenerate_quarterly_reports(user_id: str) -> dict:
    """Rebuild a tenant's calculated quarterly reports from payout history in one transaction."""
    dbm = _db()
    if dbm is None:
        raise ReconciliationError("Database not available")

    with dbm.get_conn() as conn:
        payouts = [Payout(**p) for p in dbm.fetch_payouts(conn, user_id)]
        if not payouts:
            raise ReconciliationError("No payouts found to generate reports from")
        payees = [Payee(**p) for p in dbm.fetch_payees(conn, user_id)]

        created = assign_payees(payouts, payees,
                                lambda name: Payee(**dbm.insert_payee(conn, user_id, name)))
        reports = build_quarterly_reports(payouts, payees)
        deleted = dbm.replace_quarterly_reports(conn, user_id, [asdict(r) for r in reports])

    log.info("Regenerated %d quarterly report(s) for %s (%d replaced, %d payee(s) created)",
             len(reports), user_id, deleted, len(created))
    return {
        'reports_generated': len(reports),
        'reports_replaced': deleted,
        'payees_created': len(created),
        'payouts_processed': len(payouts),
        'reports': [asdict(r) for r in reports],
    }


# ---------------------------------------------------------------------------
# Tenant loaders
# ---------------------------------------------------------------------------

def _require_db():
    dbm = _db()
    if dbm is None:
        raise ReconciliationError("Database not available")
    return dbm


def load_allocations(user_id: str) -> List[RoyaltyAllocation]:
    return [RoyaltyAllocation(**a) for a in _require_db().list_allocations(user_id)]


def load_dashboard(user_id: str) -> DashboardMetrics:
    dbm = _require_db()
    batches = [ReconciliationBatch(**b) for b in dbm.list_batches(user_id)]
    payouts = [Payout(**p) for p in dbm.list_payouts(user_id)]
    return dashboard_metrics(batches, load_allocations(user_id), payouts)


def link_to_batch(user_id: str, allocation_ids: List[str], batch_id: str) -> dict:
    """Persist batch_id on the selected allocations and report the linked total."""
    if not allocation_ids:
        raise ReconciliationError("No allocations selected")
    allocations = load_allocations(user_id)
    total = selection_total(allocations, allocation_ids)
    linked = _require_db().link_allocations(user_id, allocation_ids, batch_id)
    log.info("Linked %d allocation(s) (%.2f) to batch %s", linked, total, batch_id)
    return {'linked': linked, 'total_amount': total, 'batch_id': batch_id}
