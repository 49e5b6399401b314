"""
Tests for pipeline.py: end-to-end import of catalog and statement files,
per-file status, staging and archive hand-off, approval and deletion.
"""

import io
import os
import sys
from contextlib import contextmanager

import pytest

sys.path.insert(0, os.path.dirname(__file__))

import openpyxl

import detector
import mapper
import pipeline


ASCAP_CSV = b"Work Title,Writer,Publisher,Share,PRO\nHold On,Jane Doe,Acme Pub,50,ASCAP\n"

BMI_CSV = (b"Work ID,Work Title,ISWC,IP Name,IP Role,Source,Performance Type,Share %,"
           b"Current Quarter Royalties,Period,Payment Date\n"
           b"884512,Hold On,T-345246800-1,Jane Doe,W,Radio,Feature,50%,$100.00,2024-01-01,2024-06-30\n"
           b"884513,Let Go,,John Roe,W,TV,Theme,100%,$50.00,2024-01-01,2024-06-30\n")


def _xlsx_bytes(sheets):
    wb = openpyxl.Workbook()
    wb.remove(wb.active)
    for name, rows in sheets.items():
        ws = wb.create_sheet(name)
        for row in rows:
            ws.append(row)
    buf = io.BytesIO()
    wb.save(buf)
    wb.close()
    return buf.getvalue()


class FakeDb:
    """In-memory stand-in for the db module calls the pipeline makes.

    Staging inserts land in a pending list and move to `staged` only when the
    get_conn block exits cleanly.
    """

    def __init__(self, records=None, fail_on=None, catalog=None):
        self.records = dict(records or {})
        self.fail_on = fail_on
        self.catalog = list(catalog or [])
        self.staged = []
        self.allocations = []
        self.works = []
        self.status_updates = []
        self.deleted = []
        self._pending = []
        self._inserts = 0

    @contextmanager
    def get_conn(self):
        self._pending = []
        try:
            yield 'conn'
        except Exception:
            self._pending = []
            raise
        self.staged.extend(self._pending)
        self._pending = []

    def insert_staging_record(self, conn, user_id, record):
        self._inserts += 1
        if self.fail_on is not None and self._inserts >= self.fail_on:
            raise RuntimeError('connection refused')
        self._pending.append((user_id, record))
        return f'stg-{self._inserts}'

    def get_staging_record(self, user_id, staging_id):
        return self.records.get(staging_id)

    def fetch_catalog_works(self, conn, user_id):
        return list(self.catalog)

    def insert_allocations(self, conn, user_id, staging_id, rows):
        self.allocations.extend(rows)
        return len(rows)

    def insert_catalog_works(self, conn, user_id, staging_id, rows):
        self.works.extend(rows)
        return len(rows)

    def update_staging_status(self, conn, user_id, staging_id, status, tags=None):
        self.status_updates.append((staging_id, status))

    def delete_staging_record(self, user_id, staging_id):
        self.deleted.append(staging_id)
        return self.records.pop(staging_id, None) is not None


class FakeStorage:

    def __init__(self):
        self.uploads = []
        self.deleted = []

    def upload_statement(self, user_id, filename, content):
        self.uploads.append((user_id, filename, len(content)))
        return f'statements/{user_id}/20240601000000_{filename}'

    def delete_blob(self, path):
        self.deleted.append(path)
        return True


@pytest.fixture
def offline(tmp_path, monkeypatch):
    """No database, no bucket; mapping configs in a throwaway SQLite file."""
    monkeypatch.setattr(mapper, '_db_path', lambda: str(tmp_path / 'mappings.db'))
    assert mapper.init_db()
    monkeypatch.setattr(mapper, '_db', lambda: None)
    monkeypatch.setattr(pipeline, '_db', lambda: None)
    monkeypatch.setattr(pipeline, '_storage', lambda: None)
    yield tmp_path


@pytest.fixture
def online(offline, monkeypatch):
    fake_db, fake_store = FakeDb(), FakeStorage()
    monkeypatch.setattr(pipeline, '_db', lambda: fake_db)
    monkeypatch.setattr(pipeline, '_storage', lambda: fake_store)
    yield fake_db, fake_store


# ---------------------------------------------------------------------------
# Catalog imports
# ---------------------------------------------------------------------------

class TestCatalogImport:

    def test_ascap_songview_end_to_end(self, offline):
        result = pipeline.import_file(ASCAP_CSV, 'songs.csv', manual_source=detector.ASCAP_BMI_SONGVIEW)
        assert result.status == pipeline.SUCCESS
        sheet = result.sheets[0]
        assert sheet.record_kind == pipeline.KIND_CATALOG
        assert sheet.detected_source == detector.ASCAP_BMI_SONGVIEW
        assert sheet.confidence == 1.0

        row = sheet.mapped_data[0]
        assert row['work_title'] == 'Hold On'
        assert row['writers'] == [{'name': 'Jane Doe', 'share': 50.0, 'pro': 'ASCAP', 'role': 'writer'}]
        assert row['publishers'] == [{'name': 'Acme Pub', 'role': 'publisher'}]
        assert row['validation_status'] == 'valid'
        assert row['raw_row_data'] == {'Work Title': 'Hold On', 'Writer': 'Jane Doe', 'Publisher': 'Acme Pub',
                                       'Share': '50', 'PRO': 'ASCAP'}

        # artist / ipi / work_id columns are absent, so the sheet waits for review
        assert sorted(sheet.unmapped_fields) == ['artist', 'ipi', 'work_id']
        assert sheet.processing_status == pipeline.STATUS_NEEDS_REVIEW
        assert sheet.import_tags == [pipeline.NEEDS_REVIEW_TAG]

    def test_auto_detect(self, offline):
        result = pipeline.import_file(ASCAP_CSV, 'songs.csv', manual_source=pipeline.AUTO_DETECT)
        assert result.sheets[0].detected_source == detector.ASCAP_BMI_SONGVIEW
        assert result.sheets[0].confidence == 0.8

    def test_cross_sheet_iswc_conflict(self, offline):
        content = _xlsx_bytes({
            'MLC Export': [['Song Title', 'Song Code', 'ISWC', 'Artist'],
                           ['Hold On', 'H12345', 'T-345246800-1', 'Jane']],
            'MusicBrainz Works': [['Work Name', 'ISWC', 'Artist', 'MBID'],
                                  ['hold on', 'T-123456789-0', 'Jane', 'mb-1']],
        })
        result = pipeline.import_file(content, 'catalog.xlsx')
        assert [s.detected_source for s in result.sheets] == [detector.MLC_CATALOG, detector.MUSICBRAINZ_WORKS]
        for sheet in result.sheets:
            row = sheet.rows[0]
            assert row.validation_status == 'error'
            assert row.identifier_conflicts[0].field == 'iswc'
            assert sheet.processing_status == pipeline.STATUS_NEEDS_REVIEW
            assert 'Row 1: ISWC conflict across sources' in sheet.validation_errors

    def test_unknown_sheet_fails_file(self, online):
        fake_db, fake_store = online
        content = _xlsx_bytes({
            'Sync': [['Work Title', 'Sync Type', 'Media Title', 'Year'], ['Hold On', 'TV', 'Show', 2021]],
            'Notes': [['Comment', 'Owner'], ['check later', 'ops']],
        })
        result = pipeline.import_file(content, 'mixed.xlsx', user_id='tenant-1')
        assert result.status == pipeline.FAILURE
        assert result.sheets == []
        assert [i.sheet for i in result.issues if i.stage == 'detect'] == ['Notes']
        assert fake_db.staged == [] and fake_store.uploads == []

    def test_manual_source_covers_every_sheet(self, offline):
        content = _xlsx_bytes({
            'Sync': [['Work Title', 'Sync Type', 'Media Title', 'Year'], ['Hold On', 'TV', 'Show', 2021]],
            'Notes': [['Work Title', 'Owner'], ['Let Go', 'ops']],
        })
        result = pipeline.import_file(content, 'mixed.xlsx', manual_source=detector.SYNC)
        assert result.status == pipeline.SUCCESS
        assert [s.detected_source for s in result.sheets] == [detector.SYNC, detector.SYNC]


# ---------------------------------------------------------------------------
# Statement imports
# ---------------------------------------------------------------------------

class TestStatementImport:

    def test_bmi_statement(self, offline):
        result = pipeline.import_file(BMI_CSV, 'bmi_q1.csv')
        sheet = result.sheets[0]
        assert sheet.record_kind == pipeline.KIND_STATEMENT
        assert sheet.detected_source == 'BMI'
        assert sheet.confidence == 1.0
        assert sheet.processing_status == pipeline.STATUS_PROCESSED
        assert sheet.import_tags == []
        assert [line['Gross Amount'] for line in sheet.lines] == [100.0, 50.0]
        assert sheet.lines[0]['Period Start'] == sheet.lines[0]['Period End'] == '2024-01-01'
        assert result.row_count == 2

    def test_issues_flag_review(self, offline):
        content = b"Work Title,IP Name,Current Quarter Royalties\nHold On,,-10\n"
        result = pipeline.import_file(content, 'bmi.csv', manual_source='BMI')
        sheet = result.sheets[0]
        assert sheet.processing_status == pipeline.STATUS_NEEDS_REVIEW
        assert any('Missing required field' in e for e in sheet.validation_errors)
        assert result.needs_review
        assert result.status == pipeline.SUCCESS

    def test_saved_override_applied(self, offline):
        mapper.save_mapping_config('tenant-1', 'BMI', {'Gross Amount': ['Net Payable']})
        content = b"Work Title,IP Name,Net Payable\nHold On,Jane Doe,12.00\n"
        result = pipeline.import_file(content, 'bmi.csv', user_id='tenant-1', manual_source='BMI')
        assert result.sheets[0].lines[0]['Gross Amount'] == 12.0


# ---------------------------------------------------------------------------
# Failures and batches
# ---------------------------------------------------------------------------

class TestFailures:

    def test_parse_failure(self, offline):
        result = pipeline.import_file(b'', 'empty.csv')
        assert result.status == pipeline.FAILURE
        assert result.issues[0].stage == 'parse'
        assert result.sheets == []

    def test_unsupported_type(self, offline):
        result = pipeline.import_file(b'%PDF-1.4', 'contract.pdf')
        assert result.status == pipeline.FAILURE
        assert 'Unsupported file type' in result.issues[0].message

    def test_unknown_source_fails(self, offline):
        result = pipeline.import_file(b'Comment,Owner\ncheck later,ops\n', 'notes.csv')
        assert result.status == pipeline.FAILURE
        assert result.issues[0].stage == 'detect'

    def test_batch_keeps_going(self, offline):
        batch = pipeline.import_files([('empty.csv', b''), ('songs.csv', ASCAP_CSV)])
        assert [f.status for f in batch.files] == [pipeline.FAILURE, pipeline.SUCCESS]
        assert batch.status == pipeline.PARTIAL
        assert batch.successful_files == 1
        assert batch.to_dict(include_rows=False)['total_files'] == 2


# ---------------------------------------------------------------------------
# Staging / archive
# ---------------------------------------------------------------------------

class TestStaging:

    def test_staged_and_archived(self, online):
        fake_db, fake_store = online
        result = pipeline.import_file(BMI_CSV, 'bmi_q1.csv', user_id='tenant-1', batch_id='batch-9')
        assert result.gcs_path == 'statements/tenant-1/20240601000000_bmi_q1.csv'
        assert fake_store.uploads == [('tenant-1', 'bmi_q1.csv', len(BMI_CSV))]
        assert result.sheets[0].staged_id == 'stg-1'

        user_id, record = fake_db.staged[0]
        assert user_id == 'tenant-1'
        assert record['batch_id'] == 'batch-9'
        assert record['record_kind'] == 'statement'
        assert record['gcs_path'] == result.gcs_path
        assert record['validation_status'] == {'errors': [], 'has_errors': False, 'has_unmapped': False}
        assert len(record['raw_data']) == len(record['mapped_data']) == 2

    def test_anonymous_upload_not_staged(self, online):
        fake_db, fake_store = online
        result = pipeline.import_file(BMI_CSV, 'bmi_q1.csv')
        assert fake_db.staged == [] and fake_store.uploads == []
        assert result.status == pipeline.SUCCESS

    def test_staging_failure(self, offline, monkeypatch):
        monkeypatch.setattr(pipeline, '_db', lambda: FakeDb(fail_on=1))
        result = pipeline.import_file(BMI_CSV, 'bmi_q1.csv', user_id='tenant-1')
        assert result.status == pipeline.FAILURE
        assert result.issues[-1].stage == 'stage'

    def test_second_sheet_failure_rolls_back_file(self, online):
        fake_db, fake_store = online
        fake_db.fail_on = 2
        content = _xlsx_bytes({
            'Sync': [['Work Title', 'Sync Type', 'Media Title', 'Year'], ['Hold On', 'TV', 'Show', 2021]],
            'MLC Export': [['Song Title', 'Song Code', 'ISWC', 'Artist'], ['Let Go', 'L12345', '', 'Jane']],
        })
        result = pipeline.import_file(content, 'catalog.xlsx', user_id='tenant-1')
        assert result.status == pipeline.FAILURE
        assert fake_db.staged == []
        assert [s.staged_id for s in result.sheets] == [None, None]
        issue = result.issues[-1]
        assert (issue.stage, issue.sheet) == ('stage', 'MLC Export')
        assert fake_store.deleted == ['statements/tenant-1/20240601000000_catalog.xlsx']
        assert result.gcs_path is None


# ---------------------------------------------------------------------------
# Approval / deletion
# ---------------------------------------------------------------------------

def _statement_record(status=pipeline.STATUS_PROCESSED):
    return {
        'id': 'stg-1', 'record_kind': 'statement', 'processing_status': status, 'batch_id': 'batch-9',
        'gcs_path': 'statements/tenant-1/x.csv',
        'mapped_data': [
            {'Statement Source': 'BMI', 'Song Title': 'Hold On', 'Client Name': 'Jane Doe',
             'Gross Amount': 100.0, 'Work ID': '884512', 'Source': 'Radio', 'ISWC': 'T3452468001',
             'Share %': 50.0, 'Period Start': '2024-01-01', 'Period End': '2024-03-31'},
            {'Statement Source': 'BMI', 'Song Title': 'Let Go', 'Client Name': 'John Roe', 'Gross Amount': 50.0},
        ],
    }


class TestApprove:

    def test_statement_lines_become_allocations(self, offline, monkeypatch):
        fake = FakeDb(records={'stg-1': _statement_record()})
        monkeypatch.setattr(pipeline, '_db', lambda: fake)

        assert pipeline.approve_staging_record('tenant-1', 'stg-1') == {'allocations_created': 2, 'works_created': 0}
        first = fake.allocations[0]
        assert first['song_title'] == 'Hold On'
        assert first['work_writers'] == 'Jane Doe'
        assert first['gross_royalty_amount'] == 100.0
        assert first['source'] == 'Radio'
        assert first['statement_id'] == '884512'
        assert first['batch_id'] == 'batch-9'
        assert first['period_end'] == '2024-03-31'
        assert fake.allocations[1]['source'] == 'BMI'
        assert fake.status_updates == [('stg-1', pipeline.STATUS_APPROVED)]
        assert {a['controlled_status'] for a in fake.allocations} == {'Non-Controlled'}
        assert fake.allocations[0]['comments'] == 'Unmatched - requires manual review'

    def test_lines_matched_to_catalog(self, offline, monkeypatch):
        catalog = [
            {'id': 'w1', 'work_title': 'Hold On', 'normalized_title': 'hold on', 'iswc': None, 'work_id': None},
            {'id': 'w2', 'work_title': 'Other Song', 'normalized_title': 'other song',
             'iswc': 'T-345246800-1', 'work_id': None},
        ]
        fake = FakeDb(records={'stg-1': _statement_record()}, catalog=catalog)
        monkeypatch.setattr(pipeline, '_db', lambda: fake)
        pipeline.approve_staging_record('tenant-1', 'stg-1')

        hold_on, let_go = fake.allocations
        assert hold_on['controlled_status'] == 'Controlled'
        assert hold_on['comments'] == 'Auto-matched from import (100% confidence)'
        assert let_go['controlled_status'] == 'Non-Controlled'
        assert 'Unmatched' in let_go['comments']

    def test_selected_rows(self, offline, monkeypatch):
        fake = FakeDb(records={'stg-1': _statement_record()})
        monkeypatch.setattr(pipeline, '_db', lambda: fake)
        pipeline.approve_staging_record('tenant-1', 'stg-1', selected_rows=[1])
        assert [a['song_title'] for a in fake.allocations] == ['Let Go']

    def test_catalog_error_rows_skipped(self, offline, monkeypatch):
        record = {'id': 'stg-2', 'record_kind': 'catalog', 'processing_status': 'needs_review',
                  'mapped_data': [{'work_title': 'A', 'validation_status': 'valid'},
                                  {'work_title': 'B', 'validation_status': 'error'},
                                  {'work_title': 'C', 'validation_status': 'duplicate'}]}
        fake = FakeDb(records={'stg-2': record})
        monkeypatch.setattr(pipeline, '_db', lambda: fake)
        assert pipeline.approve_staging_record('t', 'stg-2') == {'allocations_created': 0, 'works_created': 2}
        assert [w['work_title'] for w in fake.works] == ['A', 'C']

    def test_errors(self, offline, monkeypatch):
        fake = FakeDb(records={'done': _statement_record(pipeline.STATUS_APPROVED)})
        monkeypatch.setattr(pipeline, '_db', lambda: fake)
        with pytest.raises(LookupError):
            pipeline.approve_staging_record('t', 'missing')
        with pytest.raises(ValueError, match='already approved'):
            pipeline.approve_staging_record('t', 'done')

    def test_no_database(self, offline):
        with pytest.raises(RuntimeError, match='Database not available'):
            pipeline.approve_staging_record('t', 'stg-1')


class TestDelete:

    def test_removes_record_and_archive(self, online):
        fake_db, fake_store = online
        fake_db.records['stg-1'] = _statement_record()
        assert pipeline.delete_staging_record('tenant-1', 'stg-1') is True
        assert fake_db.deleted == ['stg-1']
        assert fake_store.deleted == ['statements/tenant-1/x.csv']

    def test_missing(self, online):
        fake_db, fake_store = online
        assert pipeline.delete_staging_record('tenant-1', 'nope') is False
        assert fake_db.deleted == [] and fake_store.deleted == []
