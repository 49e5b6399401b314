"""
Royalty Import & Reconciliation - JSON API
Flask service over the import pipeline, mapping configs, reconciliation
dashboard, quarterly balance reports and the research job queue.
Tenant comes from the X-User-Id header.
"""

import logging
import os
from dataclasses import asdict

# ---------------------------------------------------------------------------
# Logging setup
# ---------------------------------------------------------------------------
_log_dir = os.path.dirname(os.path.abspath(__file__))
_log_handlers = [logging.StreamHandler()]
# Only add file handler when filesystem is writable (local dev, not Cloud Run)
if not os.getenv('DB_HOST'):
    try:
        _log_handlers.append(logging.FileHandler(os.path.join(_log_dir, 'app.log'), encoding='utf-8'))
    except OSError:
        pass
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S',
    handlers=_log_handlers,
)
log = logging.getLogger('royalty')

from dotenv import load_dotenv
load_dotenv()

from flask import Flask, Response, jsonify, request

import db
import detector
import jobs
import mapper
import pipeline
import reconciliation
import statement_mapper
import storage

app = Flask(__name__)
app.secret_key = os.getenv('FLASK_SECRET_KEY', os.urandom(24).hex())
app.config['MAX_CONTENT_LENGTH'] = int(os.getenv('MAX_UPLOAD_MB', '50')) * 1024 * 1024


@app.errorhandler(413)
def _request_too_large(e):
    log.error("413 Request Entity Too Large: %s %s (content-length: %s)",
              request.method, request.path, request.content_length)
    return jsonify(error='File too large', message='Upload exceeds the maximum allowed size.'), 413


@app.errorhandler(500)
def _internal_error(e):
    log.error("500 Internal Server Error: %s %s — %s", request.method, request.path, e)
    return jsonify(error='Internal server error', message=str(e)), 500


# Initialise PostgreSQL + GCS (optional, the API runs without them)
_db_ok = db.init_pool()
if _db_ok:
    _migrations_dir = os.path.join(os.path.dirname(os.path.abspath(__file__)), 'migrations')
    if os.path.isdir(_migrations_dir):
        db.run_migrations(_migrations_dir)
_gcs_ok = storage.init_gcs()


def _user_id():
    return (request.headers.get('X-User-Id') or '').strip()


def _guard(need_db: bool = True):
    """Return an error response tuple when the request can't be served, else None."""
    if not _user_id():
        return jsonify({'error': 'Missing X-User-Id header'}), 401
    if need_db and not db.is_available():
        return jsonify({'error': 'Database not configured'}), 503
    return None


# ---------------------------------------------------------------------------
# Imports
# ---------------------------------------------------------------------------

@app.route('/api/imports', methods=['POST'])
def api_import():
    """Upload one or more statement / catalog files.
    multipart: files (repeatable), manual_source (optional), batch_id (optional)
    """
    err = _guard(need_db=False)
    if err:
        return err
    uploads = [f for f in request.files.getlist('files') if f and f.filename]
    if not uploads:
        return jsonify({'error': 'No files uploaded'}), 400

    manual_source = request.form.get('manual_source') or None
    if manual_source and manual_source != pipeline.AUTO_DETECT and not detector.is_known_source(manual_source):
        return jsonify({'error': f'Unknown source: {manual_source}'}), 400

    result = pipeline.import_files(
        [(f.filename, f.read()) for f in uploads],
        user_id=_user_id(),
        manual_source=manual_source,
        batch_id=request.form.get('batch_id') or None,
    )
    status_code = 200 if result.status != pipeline.FAILURE else 422
    return jsonify(result.to_dict()), status_code


@app.route('/api/imports')
def api_list_imports():
    err = _guard()
    if err:
        return err
    limit = request.args.get('limit', 50, type=int)
    return jsonify({'imports': db.list_staging_records(_user_id(), limit=limit)})


@app.route('/api/imports/<staging_id>/approve', methods=['POST'])
def api_approve_import(staging_id):
    """POST JSON (optional): {selected_rows: [int, ...]}"""
    err = _guard()
    if err:
        return err
    data = request.get_json(silent=True) or {}
    try:
        summary = pipeline.approve_staging_record(_user_id(), staging_id, data.get('selected_rows'))
    except LookupError as e:
        return jsonify({'error': str(e)}), 404
    except ValueError as e:
        return jsonify({'error': str(e)}), 409
    return jsonify(summary)


@app.route('/api/imports/<staging_id>', methods=['DELETE'])
def api_delete_import(staging_id):
    err = _guard()
    if err:
        return err
    if not pipeline.delete_staging_record(_user_id(), staging_id):
        return jsonify({'error': 'Import not found'}), 404
    return jsonify({'deleted': True})


# ---------------------------------------------------------------------------
# Mapping configs
# ---------------------------------------------------------------------------

@app.route('/api/mapping-configs')
def api_list_mapping_configs():
    err = _guard(need_db=False)
    if err:
        return err
    return jsonify({'configs': mapper.list_mapping_configs(_user_id())})


@app.route('/api/mapping-configs/<source>', methods=['PUT'])
def api_save_mapping_config(source):
    """PUT JSON: {mapping_rules: {field: header | [headers]}, header_patterns: [...], is_active: bool}"""
    err = _guard(need_db=False)
    if err:
        return err
    if not detector.is_known_source(source):
        return jsonify({'error': f'Unknown source: {source}'}), 400
    data = request.get_json(silent=True) or {}
    rules = data.get('mapping_rules')
    if not isinstance(rules, dict) or not rules:
        return jsonify({'error': 'mapping_rules must be a non-empty object'}), 400

    if statement_mapper.is_statement_source(source):
        known_fields = set(statement_mapper.STATEMENT_FIELDS)
    else:
        known_fields = set(mapper.field_candidates(source))
    unknown = sorted(set(rules) - known_fields)
    if unknown:
        return jsonify({'error': f"Unknown field(s): {', '.join(unknown)}"}), 400

    saved = mapper.save_mapping_config(_user_id(), source, rules,
                                       header_patterns=data.get('header_patterns'),
                                       is_active=bool(data.get('is_active', True)))
    return jsonify({'source_name': source, 'mapping_rules': saved, 'version': mapper.CONFIG_VERSION})


# ---------------------------------------------------------------------------
# Reconciliation
# ---------------------------------------------------------------------------

@app.route('/api/reconciliation/dashboard')
def api_dashboard():
    err = _guard()
    if err:
        return err
    return jsonify(reconciliation.load_dashboard(_user_id()).to_dict())


@app.route('/api/reconciliation/discrepancies')
def api_discrepancies():
    """JSON list, or a CSV download with ?format=csv"""
    err = _guard()
    if err:
        return err
    found = reconciliation.find_discrepancies(reconciliation.load_allocations(_user_id()))
    if request.args.get('format') == 'csv':
        return Response(reconciliation.discrepancies_to_csv(found), mimetype='text/csv',
                        headers={'Content-Disposition': 'attachment; filename=discrepancies.csv'})
    return jsonify({'discrepancies': [d.to_dict() for d in found], 'count': len(found)})


@app.route('/api/allocations/unlinked')
def api_unlinked_allocations():
    err = _guard()
    if err:
        return err
    rows = reconciliation.unlinked_allocations(reconciliation.load_allocations(_user_id()),
                                               search=request.args.get('search', ''),
                                               source=request.args.get('source'))
    return jsonify({'allocations': [asdict(r) for r in rows], 'count': len(rows)})


@app.route('/api/allocations/link', methods=['POST'])
def api_link_allocations():
    """POST JSON: {allocation_ids: [str, ...], batch_id: str}"""
    err = _guard()
    if err:
        return err
    data = request.get_json(silent=True) or {}
    ids, batch_id = data.get('allocation_ids') or [], data.get('batch_id')
    if not batch_id:
        return jsonify({'error': 'batch_id is required'}), 400
    try:
        return jsonify(reconciliation.link_to_batch(_user_id(), ids, batch_id))
    except reconciliation.ReconciliationError as e:
        return jsonify({'error': str(e)}), 400
    except ValueError as e:
        return jsonify({'error': str(e)}), 404


@app.route('/api/quarterly-reports/generate', methods=['POST'])
def api_generate_quarterly_reports():
    err = _guard()
    if err:
        return err
    try:
        summary = reconciliation.regenerate_quarterly_reports(_user_id())
    except reconciliation.ReconciliationError as e:
        return jsonify({'error': str(e)}), 400
    return jsonify(summary)


@app.route('/api/quarterly-reports')
def api_quarterly_reports():
    err = _guard()
    if err:
        return err
    return jsonify({'reports': db.list_quarterly_reports(_user_id(), payee_id=request.args.get('payee_id'))})


# ---------------------------------------------------------------------------
# Research jobs
# ---------------------------------------------------------------------------

@app.route('/api/jobs', methods=['POST'])
def api_create_job():
    """POST JSON: {job_type, job_data: {songs: [...], batch_size?}, priority?, search_id?}"""
    err = _guard()
    if err:
        return err
    data = request.get_json(silent=True) or {}
    try:
        job = jobs.create_job(_user_id(), data.get('job_type', ''), data.get('job_data') or {},
                              priority=int(data.get('priority', 5)), search_id=data.get('search_id'))
    except ValueError as e:
        return jsonify({'error': str(e)}), 400
    return jsonify(job.to_dict()), 201


@app.route('/api/jobs/<job_id>')
def api_get_job(job_id):
    err = _guard()
    if err:
        return err
    job = jobs.get_job(_user_id(), job_id)
    if job is None:
        return jsonify({'error': 'Job not found'}), 404
    return jsonify(job.to_dict())


@app.route('/api/jobs/process', methods=['POST'])
def api_process_jobs():
    err = _guard()
    if err:
        return err
    data = request.get_json(silent=True) or {}
    return jsonify(jobs.process_jobs(_user_id(), max_jobs=int(data.get('max_jobs', 1))))


@app.route('/api/status')
def api_status():
    return jsonify({
        'database': db.is_available(),
        'storage': storage.is_available(),
        'sources': {
            'catalog': detector.SHEET_TYPES,
            'statement': statement_mapper.STATEMENT_SOURCES,
        },
    })


if __name__ == '__main__':
    port = int(os.environ.get('PORT', 8000))
    log.info(f"Royalty reconciliation API starting on http://localhost:{port}")
    app.run(host='0.0.0.0', port=port, debug=False)
