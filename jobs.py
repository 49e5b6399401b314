"""
Research Job Queue
Pending-job pattern for bulk MusicBrainz identifier lookups:
create job row -> claim next pending job -> process in throttled batches -> complete / fail.

Single consumer per invocation; there is no distributed locking.
"""

import json
import logging
import os
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional
from urllib.error import HTTPError, URLError
from urllib.parse import quote
from urllib.request import Request, urlopen

from identifiers import clean_isrc, clean_iswc, validate_isrc, validate_iswc

log = logging.getLogger('royalty')

ISRC_LOOKUP = 'isrc_lookup'
ISWC_LOOKUP = 'iswc_lookup'

# job_type -> (default batch size, seconds between batches)
JOB_THROTTLE = {
    ISRC_LOOKUP: (5, 2),
    ISWC_LOOKUP: (3, 3),
}

PENDING = 'pending'
PROCESSING = 'processing'
COMPLETED = 'completed'
FAILED = 'failed'

DEFAULT_USER_AGENT = 'RoyaltyReconciliation/1.0 (contact@example.com)'


def _db():
    try:
        import db as dbm
        if dbm.is_available():
            return dbm
    except Exception:
        pass
    return None


def _require_db():
    dbm = _db()
    if dbm is None:
        raise RuntimeError("Database not available")
    return dbm


@dataclass
class Job:
    id: str
    user_id: str
    job_type: str
    job_data: dict = field(default_factory=dict)
    status: str = PENDING
    progress_percentage: int = 0
    results: Optional[dict] = None
    error_message: Optional[str] = None
    priority: int = 5
    search_id: Optional[str] = None
    created_at: Optional[str] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None

    @classmethod
    def from_row(cls, row: dict) -> 'Job':
        return cls(**{k: row.get(k) for k in cls.__dataclass_fields__ if k in row})

    def to_dict(self) -> dict:
        return {k: getattr(self, k) for k in self.__dataclass_fields__}


# ---------------------------------------------------------------------------
# MusicBrainz lookups
# ---------------------------------------------------------------------------

def _user_agent() -> str:
    return os.getenv('MUSICBRAINZ_USER_AGENT', DEFAULT_USER_AGENT)


def _get_json(url: str, label: str, _retries: int = 3) -> Optional[dict]:
    """GET a MusicBrainz JSON document. Retries on 503 rate-limit; None on any other failure."""
    for attempt in range(_retries):
        req = Request(url, headers={"User-Agent": _user_agent()})
        try:
            with urlopen(req, timeout=10) as resp:
                return json.loads(resp.read())
        except (HTTPError, URLError) as e:
            if hasattr(e, 'code') and e.code == 503:
                time.sleep(1 + attempt)  # backoff: 1s, 2s, 3s
                continue
            log.debug("MB HTTP error for %s: %s", label, e)
            return None
        except Exception as e:
            log.debug("MB lookup error for %s: %s", label, e)
            return None
    return None


def lookup_isrc(isrc: str) -> dict:
    """Earliest-released MusicBrainz recording for an ISRC."""
    url = f"https://musicbrainz.org/ws/2/recording?query=isrc:{quote(isrc)}&fmt=json"
    data = _get_json(url, isrc)
    recordings = (data or {}).get('recordings', [])
    if not recordings:
        return {}

    best = recordings[0]
    best_date = best.get('first-release-date') or None
    for rec in recordings:
        frd = rec.get('first-release-date', '')
        if frd and (best_date is None or frd < best_date):
            best_date, best = frd, rec

    credit = best.get('artist-credit', [{}])
    return {
        'musicbrainz_id': best.get('id', ''),
        'title': best.get('title', ''),
        'artist': credit[0].get('name', '') if credit else '',
        'release_date': best_date or '',
    }


def lookup_iswc(iswc: str) -> dict:
    """MusicBrainz work(s) registered under an ISWC."""
    url = f"https://musicbrainz.org/ws/2/iswc/{quote(iswc)}?fmt=json"
    data = _get_json(url, iswc)
    works = (data or {}).get('works', [])
    if not works:
        return {}
    work = works[0]
    return {
        'musicbrainz_id': work.get('id', ''),
        'title': work.get('title', ''),
        'iswcs': work.get('iswcs', []),
        'work_count': len(works),
    }


# ---------------------------------------------------------------------------
# Batch processing
# ---------------------------------------------------------------------------

def _lookup_song(song: dict, kind: str) -> dict:
    raw = str(song.get(kind) or '').strip()
    out = {'title': song.get('title', ''), kind: raw, 'success': False}
    if kind == 'isrc':
        if not validate_isrc(raw):
            out['error'] = f'Invalid ISRC: {raw}' if raw else 'Missing ISRC'
            return out
        found = lookup_isrc(clean_isrc(raw))
    else:
        if not validate_iswc(raw):
            out['error'] = f'Invalid ISWC: {raw}' if raw else 'Missing ISWC'
            return out
        found = lookup_iswc(clean_iswc(raw))

    if found:
        out.update(success=True, match=found)
    else:
        out['error'] = 'No match found'
    return out


def run_lookup_job(job: Job, progress: Optional[Callable[[int], None]] = None,
                   sleep: Callable[[float], None] = time.sleep) -> dict:
    """Process job.job_data['songs'] in throttled batches.

    isrc_lookup runs each batch sequentially; iswc_lookup runs a batch concurrently.
    """
    if job.job_type not in JOB_THROTTLE:
        raise ValueError(f"Unknown job type: {job.job_type}")

    default_size, delay = JOB_THROTTLE[job.job_type]
    songs: List[dict] = job.job_data.get('songs') or []
    batch_size = int(job.job_data.get('batch_size') or default_size)
    kind = 'isrc' if job.job_type == ISRC_LOOKUP else 'iswc'

    results: List[dict] = []
    processed = 0
    for start in range(0, len(songs), batch_size):
        if start:
            sleep(delay)
        batch = songs[start:start + batch_size]
        if job.job_type == ISWC_LOOKUP:
            with ThreadPoolExecutor(max_workers=len(batch)) as pool:
                results.extend(pool.map(lambda s: _lookup_song(s, kind), batch))
        else:
            results.extend(_lookup_song(s, kind) for s in batch)

        processed += len(batch)
        if progress:
            progress(round(processed / len(songs) * 100))

    success_count = sum(1 for r in results if r['success'])
    log.info("%s job %s: %d/%d successful", job.job_type, job.id, success_count, processed)
    return {'total_processed': processed, 'success_count': success_count, 'results': results}


# ---------------------------------------------------------------------------
# Queue operations
# ---------------------------------------------------------------------------

def create_job(user_id: str, job_type: str, job_data: dict, priority: int = 5,
               search_id: Optional[str] = None) -> Job:
    if job_type not in JOB_THROTTLE:
        raise ValueError(f"Unknown job type: {job_type}")
    if not isinstance(job_data.get('songs'), list):
        raise ValueError("job_data.songs must be a list")
    row = _require_db().create_job_db(user_id, job_type, job_data, priority=priority, search_id=search_id)
    log.info("Queued %s job %s (%d song(s), priority %d)", job_type, row['id'], len(job_data['songs']), priority)
    return Job.from_row(row)


def get_job(user_id: str, job_id: str) -> Optional[Job]:
    row = _require_db().get_job_db(user_id, job_id)
    return Job.from_row(row) if row else None


def claim_next_job(user_id: str) -> Optional[Job]:
    """The tenant's highest-priority, then oldest, pending job; the claimed job is marked processing."""
    row = _require_db().claim_next_job_db(user_id)
    return Job.from_row(row) if row else None


def process_next_job(user_id: str, sleep: Callable[[float], None] = time.sleep) -> Optional[Job]:
    """Claim and run one of the tenant's pending jobs. Returns the finished job, or None if none are pending."""
    dbm = _require_db()
    job = claim_next_job(user_id)
    if job is None:
        return None

    def _progress(pct: int):
        dbm.update_job_progress_db(job.id, pct)
        job.progress_percentage = pct

    try:
        results = run_lookup_job(job, progress=_progress, sleep=sleep)
    except Exception as e:
        log.error("Job %s failed: %s", job.id, e)
        dbm.fail_job_db(job.id, str(e))
        job.status, job.error_message = FAILED, str(e)
        return job

    dbm.complete_job_db(job.id, results)
    job.status, job.results, job.progress_percentage = COMPLETED, results, 100
    return job


def process_jobs(user_id: str, max_jobs: int = 10,
                 sleep: Callable[[float], None] = time.sleep) -> Dict[str, int]:
    """Drain up to max_jobs of the tenant's pending jobs, one at a time."""
    summary = {'processed': 0, 'completed': 0, 'failed': 0}
    for _ in range(max_jobs):
        job = process_next_job(user_id, sleep=sleep)
        if job is None:
            break
        summary['processed'] += 1
        summary['completed' if job.status == COMPLETED else 'failed'] += 1
    return summary
