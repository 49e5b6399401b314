"""
Tests for jobs.py: MusicBrainz response shaping, throttled batch processing,
and the claim / complete / fail queue cycle (database mocked).
"""

import os
import sys

import pytest

sys.path.insert(0, os.path.dirname(__file__))

import jobs
from jobs import Job


def _songs(kind, values):
    return [{'title': f'Song {i}', kind: v} for i, v in enumerate(values)]


@pytest.fixture
def lookups(monkeypatch):
    """Record every MusicBrainz lookup instead of calling the network."""
    calls = {'isrc': [], 'iswc': []}

    def fake_isrc(isrc):
        calls['isrc'].append(isrc)
        return {} if isrc.endswith('00') else {'musicbrainz_id': f'mb-{isrc}', 'title': 'Hold On'}

    def fake_iswc(iswc):
        calls['iswc'].append(iswc)
        return {'musicbrainz_id': f'mb-{iswc}', 'title': 'Hold On', 'iswcs': [iswc], 'work_count': 1}

    monkeypatch.setattr(jobs, 'lookup_isrc', fake_isrc)
    monkeypatch.setattr(jobs, 'lookup_iswc', fake_iswc)
    return calls


# ---------------------------------------------------------------------------
# Response shaping
# ---------------------------------------------------------------------------

class TestLookups:

    def test_isrc_prefers_earliest_release(self, monkeypatch):
        payload = {'recordings': [
            {'id': 'r2', 'title': 'Hold On (Remix)', 'first-release-date': '2019-05-01',
             'artist-credit': [{'name': 'Jane'}]},
            {'id': 'r1', 'title': 'Hold On', 'first-release-date': '2011-02-14',
             'artist-credit': [{'name': 'Jane Doe'}]},
            {'id': 'r3', 'title': 'Hold On (Live)'},
        ]}
        seen = []
        monkeypatch.setattr(jobs, '_get_json', lambda url, label: seen.append(url) or payload)
        assert jobs.lookup_isrc('USRC17607839') == {
            'musicbrainz_id': 'r1', 'title': 'Hold On', 'artist': 'Jane Doe', 'release_date': '2011-02-14'}
        assert 'query=isrc:USRC17607839' in seen[0]

    def test_isrc_no_match(self, monkeypatch):
        monkeypatch.setattr(jobs, '_get_json', lambda url, label: None)
        assert jobs.lookup_isrc('USRC17607839') == {}

    def test_iswc(self, monkeypatch):
        payload = {'works': [{'id': 'w1', 'title': 'Hold On', 'iswcs': ['T-345.246.800-1']}, {'id': 'w2'}]}
        monkeypatch.setattr(jobs, '_get_json', lambda url, label: payload)
        assert jobs.lookup_iswc('T3452468001') == {
            'musicbrainz_id': 'w1', 'title': 'Hold On', 'iswcs': ['T-345.246.800-1'], 'work_count': 2}


# ---------------------------------------------------------------------------
# Batch processing
# ---------------------------------------------------------------------------

class TestRunLookupJob:

    def test_isrc_batches_of_five(self, lookups):
        sleeps, progress = [], []
        job = Job(id='j1', user_id='t', job_type=jobs.ISRC_LOOKUP,
                  job_data={'songs': _songs('isrc', ['USRC176078%02d' % i for i in range(12)])})
        out = jobs.run_lookup_job(job, progress=progress.append, sleep=sleeps.append)

        assert sleeps == [2, 2]
        assert progress == [42, 83, 100]
        assert out['total_processed'] == 12
        # USRC17607800 has no match
        assert out['success_count'] == 11
        assert out['results'][0] == {'title': 'Song 0', 'isrc': 'USRC17607800', 'success': False,
                                     'error': 'No match found'}
        assert out['results'][1]['match']['musicbrainz_id'] == 'mb-USRC17607801'

    def test_iswc_batches_of_three(self, lookups):
        sleeps = []
        job = Job(id='j2', user_id='t', job_type=jobs.ISWC_LOOKUP,
                  job_data={'songs': _songs('iswc', ['T-345246800-1'] * 7)})
        out = jobs.run_lookup_job(job, sleep=sleeps.append)
        assert sleeps == [3, 3]
        assert out['success_count'] == 7
        assert set(lookups['iswc']) == {'T3452468001'}
        assert [r['title'] for r in out['results']] == [f'Song {i}' for i in range(7)]

    def test_batch_size_override(self, lookups):
        sleeps = []
        job = Job(id='j3', user_id='t', job_type=jobs.ISRC_LOOKUP,
                  job_data={'songs': _songs('isrc', ['USRC17607839'] * 4), 'batch_size': 2})
        jobs.run_lookup_job(job, sleep=sleeps.append)
        assert sleeps == [2]

    def test_invalid_identifiers_skip_lookup(self, lookups):
        job = Job(id='j4', user_id='t', job_type=jobs.ISRC_LOOKUP,
                  job_data={'songs': [{'title': 'A', 'isrc': 'nope'}, {'title': 'B'}]})
        out = jobs.run_lookup_job(job, sleep=lambda s: None)
        assert [r['error'] for r in out['results']] == ['Invalid ISRC: nope', 'Missing ISRC']
        assert out['success_count'] == 0
        assert lookups['isrc'] == []

    def test_empty_job(self, lookups):
        job = Job(id='j5', user_id='t', job_type=jobs.ISWC_LOOKUP, job_data={'songs': []})
        assert jobs.run_lookup_job(job, sleep=lambda s: None) == {
            'total_processed': 0, 'success_count': 0, 'results': []}

    def test_unknown_type(self):
        with pytest.raises(ValueError, match='Unknown job type'):
            jobs.run_lookup_job(Job(id='j', user_id='t', job_type='lyrics'))


# ---------------------------------------------------------------------------
# Queue
# ---------------------------------------------------------------------------

class FakeQueue:
    """In-memory stand-in for the research_job_queue helpers in db.py."""

    def __init__(self, pending=None):
        self.pending = list(pending or [])
        self.created = []
        self.progress = []
        self.completed = {}
        self.failed = {}

    def create_job_db(self, user_id, job_type, job_data, priority=5, search_id=None):
        row = {'id': f'job-{len(self.created) + 1}', 'user_id': user_id, 'job_type': job_type,
               'job_data': job_data, 'status': 'pending', 'priority': priority, 'search_id': search_id}
        self.created.append(row)
        return row

    def get_job_db(self, user_id, job_id):
        return next((r for r in self.created if r['id'] == job_id and r['user_id'] == user_id), None)

    def claim_next_job_db(self, user_id):
        for i, row in enumerate(self.pending):
            if row['user_id'] == user_id:
                return dict(self.pending.pop(i), status='processing')
        return None

    def update_job_progress_db(self, job_id, pct):
        self.progress.append((job_id, pct))

    def complete_job_db(self, job_id, results):
        self.completed[job_id] = results

    def fail_job_db(self, job_id, message):
        self.failed[job_id] = message


class TestQueue:

    def test_create_validates(self, monkeypatch):
        queue = FakeQueue()
        monkeypatch.setattr(jobs, '_db', lambda: queue)
        with pytest.raises(ValueError, match='Unknown job type'):
            jobs.create_job('t', 'lyrics', {'songs': []})
        with pytest.raises(ValueError, match='must be a list'):
            jobs.create_job('t', jobs.ISRC_LOOKUP, {'songs': 'USRC17607839'})

        job = jobs.create_job('t', jobs.ISWC_LOOKUP, {'songs': []}, priority=9, search_id='s-1')
        assert (job.id, job.status, job.priority, job.search_id) == ('job-1', 'pending', 9, 's-1')
        assert jobs.get_job('t', 'job-1').job_type == jobs.ISWC_LOOKUP
        assert jobs.get_job('other', 'job-1') is None

    def test_no_database(self, monkeypatch):
        monkeypatch.setattr(jobs, '_db', lambda: None)
        with pytest.raises(RuntimeError, match='Database not available'):
            jobs.process_next_job('t')

    def test_process_completes(self, monkeypatch, lookups):
        queue = FakeQueue(pending=[{'id': 'job-7', 'user_id': 't', 'job_type': jobs.ISWC_LOOKUP,
                                    'job_data': {'songs': _songs('iswc', ['T3452468001'] * 4)}}])
        monkeypatch.setattr(jobs, '_db', lambda: queue)

        job = jobs.process_next_job('t', sleep=lambda s: None)
        assert job.status == jobs.COMPLETED
        assert job.progress_percentage == 100
        assert queue.progress == [('job-7', 75), ('job-7', 100)]
        assert queue.completed['job-7']['success_count'] == 4
        assert jobs.process_next_job('t', sleep=lambda s: None) is None

    def test_process_fails(self, monkeypatch):
        queue = FakeQueue(pending=[{'id': 'job-8', 'user_id': 't', 'job_type': 'lyrics', 'job_data': {}}])
        monkeypatch.setattr(jobs, '_db', lambda: queue)

        job = jobs.process_next_job('t', sleep=lambda s: None)
        assert job.status == jobs.FAILED
        assert queue.failed == {'job-8': 'Unknown job type: lyrics'}
        assert job.error_message == 'Unknown job type: lyrics'

    def test_process_jobs_drains(self, monkeypatch, lookups):
        queue = FakeQueue(pending=[
            {'id': 'a', 'user_id': 't', 'job_type': jobs.ISRC_LOOKUP,
             'job_data': {'songs': _songs('isrc', ['USRC17607839'])}},
            {'id': 'b', 'user_id': 't', 'job_type': 'lyrics', 'job_data': {}},
            {'id': 'c', 'user_id': 't', 'job_type': jobs.ISWC_LOOKUP, 'job_data': {'songs': []}},
        ])
        monkeypatch.setattr(jobs, '_db', lambda: queue)
        assert jobs.process_jobs('t', max_jobs=2, sleep=lambda s: None) == {'processed': 2, 'completed': 1, 'failed': 1}
        assert jobs.process_jobs('t', sleep=lambda s: None) == {'processed': 1, 'completed': 1, 'failed': 0}

    def test_other_tenants_jobs_untouched(self, monkeypatch, lookups):
        queue = FakeQueue(pending=[
            {'id': 'mine', 'user_id': 't', 'job_type': jobs.ISWC_LOOKUP, 'job_data': {'songs': []}},
            {'id': 'theirs', 'user_id': 'other', 'job_type': jobs.ISWC_LOOKUP, 'job_data': {'songs': []}},
        ])
        monkeypatch.setattr(jobs, '_db', lambda: queue)
        assert jobs.process_jobs('t', sleep=lambda s: None) == {'processed': 1, 'completed': 1, 'failed': 0}
        assert [r['id'] for r in queue.pending] == ['theirs']
        assert 'theirs' not in queue.completed
