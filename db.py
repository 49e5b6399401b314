"""
PostgreSQL connection pool and all DB operations for royalty import & reconciliation.
Every query is scoped to the owning tenant (user_id).
Graceful degradation: callers check is_available() before touching the pool.
"""

import json
import logging
import os
from contextlib import contextmanager
from typing import Any, Dict, List, Optional

log = logging.getLogger('royalty')

_pool = None


# ---------------------------------------------------------------------------
# Connection pool
# ---------------------------------------------------------------------------

def init_pool() -> bool:
    """Initialise a threaded connection pool. Returns True on success."""
    global _pool
    try:
        from psycopg2 import pool as pg_pool

        host = os.getenv('DB_HOST', '')
        if not host:
            log.info("DB_HOST not set — PostgreSQL disabled")
            return False

        _pool = pg_pool.ThreadedConnectionPool(
            minconn=2,
            maxconn=int(os.getenv('DB_MAX_CONN', '10')),
            host=host,
            port=int(os.getenv('DB_PORT', '5432')),
            dbname=os.getenv('DB_NAME', 'royalty_reconciliation'),
            user=os.getenv('DB_USER', 'postgres'),
            password=os.getenv('DB_PASSWORD', ''),
            connect_timeout=5,
        )
        # Quick connectivity test
        conn = _pool.getconn()
        conn.cursor().execute('SELECT 1')
        conn.commit()
        _pool.putconn(conn)
        log.info("PostgreSQL pool initialised (%s:%s/%s)",
                 host, os.getenv('DB_PORT', '5432'), os.getenv('DB_NAME', 'royalty_reconciliation'))
        return True
    except Exception as e:
        log.warning("PostgreSQL unavailable: %s", e)
        _pool = None
        return False


def is_available() -> bool:
    """Check if PostgreSQL pool is ready."""
    return _pool is not None


@contextmanager
def get_conn():
    """Context manager: yields a connection, auto-commits on success, rollbacks on error."""
    if _pool is None:
        raise RuntimeError("PostgreSQL pool not initialised")
    conn = _pool.getconn()
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        _pool.putconn(conn)


# ---------------------------------------------------------------------------
# Migrations
# ---------------------------------------------------------------------------

def run_migrations(migrations_dir: str):
    """Apply numbered .sql files that haven't been applied yet."""
    if not is_available():
        return

    sql_files = sorted(f for f in os.listdir(migrations_dir) if f.endswith('.sql'))
    if not sql_files:
        return

    with get_conn() as conn:
        cur = conn.cursor()
        cur.execute("""
            CREATE TABLE IF NOT EXISTS schema_version (
                version     INTEGER PRIMARY KEY,
                applied_at  TIMESTAMPTZ NOT NULL DEFAULT now(),
                description TEXT
            )
        """)
        conn.commit()

        cur.execute("SELECT version FROM schema_version")
        applied = {row[0] for row in cur.fetchall()}

        for fname in sql_files:
            # "001_initial_schema.sql" -> 1
            try:
                version = int(fname.split('_')[0])
            except (ValueError, IndexError):
                continue
            if version in applied:
                continue

            log.info("Applying migration %s ...", fname)
            with open(os.path.join(migrations_dir, fname), 'r') as f:
                sql = f.read()
            cur.execute(sql)
            cur.execute("INSERT INTO schema_version (version, description) VALUES (%s, %s)",
                        (version, fname))
            conn.commit()
            log.info("Migration %s applied", fname)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _rows(cur) -> List[dict]:
    cols = [d[0] for d in cur.description]
    return [dict(zip(cols, r)) for r in cur.fetchall()]


def _one(cur) -> Optional[dict]:
    row = cur.fetchone()
    if row is None:
        return None
    cols = [d[0] for d in cur.description]
    return dict(zip(cols, row))


def _json(value):
    return value if not isinstance(value, str) else json.loads(value)


def _safe_float(val) -> float:
    if val is None:
        return 0.0
    try:
        return float(val)
    except (ValueError, TypeError):
        return 0.0


def _iso(val):
    return val.isoformat() if hasattr(val, 'isoformat') else val


# ---------------------------------------------------------------------------
# Staging records
# ---------------------------------------------------------------------------

def insert_staging_record(conn, user_id: str, record: Dict[str, Any]) -> str:
    """Insert a staged import (one sheet of one file) inside the caller's transaction. Returns the record id."""
    cur = conn.cursor()
    cur.execute("""
        INSERT INTO import_staging (user_id, batch_id, original_filename, sheet_name, record_kind,
                                    detected_source, confidence, mapping_version, raw_data,
                                    mapped_data, validation_status, unmapped_fields,
                                    processing_status, import_tags, gcs_path)
        VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
        RETURNING id
    """, (user_id, record.get('batch_id'), record['original_filename'], record.get('sheet_name', ''),
          record['record_kind'], record['detected_source'], record.get('confidence', 0.0),
          record.get('mapping_version', '1.0'), json.dumps(record.get('raw_data', [])),
          json.dumps(record.get('mapped_data', [])), json.dumps(record.get('validation_status', {})),
          json.dumps(record.get('unmapped_fields', [])), record.get('processing_status', 'processed'),
          json.dumps(record.get('import_tags', [])), record.get('gcs_path')))
    row = cur.fetchone()
    if row is None:
        raise RuntimeError("Staging insert returned no id")
    return str(row[0])


def get_staging_record(user_id: str, staging_id: str) -> Optional[dict]:
    with get_conn() as conn:
        cur = conn.cursor()
        cur.execute("SELECT * FROM import_staging WHERE user_id = %s AND id = %s", (user_id, staging_id))
        rec = _one(cur)
    if rec is None:
        return None
    for key in ('raw_data', 'mapped_data', 'validation_status', 'unmapped_fields', 'import_tags'):
        rec[key] = _json(rec.get(key))
    rec['id'] = str(rec['id'])
    if rec.get('batch_id') is not None:
        rec['batch_id'] = str(rec['batch_id'])
    return rec


def list_staging_records(user_id: str, limit: int = 50) -> List[dict]:
    with get_conn() as conn:
        cur = conn.cursor()
        cur.execute("""
            SELECT id, batch_id, original_filename, sheet_name, record_kind, detected_source, confidence,
                   processing_status, import_tags, unmapped_fields, jsonb_array_length(mapped_data) AS row_count,
                   created_at
            FROM import_staging WHERE user_id = %s
            ORDER BY created_at DESC LIMIT %s
        """, (user_id, limit))
        out = _rows(cur)
    for r in out:
        r['id'] = str(r['id'])
        r['batch_id'] = str(r['batch_id']) if r.get('batch_id') else None
        r['created_at'] = _iso(r.get('created_at'))
    return out


def update_staging_status(conn, user_id: str, staging_id: str, status: str, tags: Optional[list] = None):
    cur = conn.cursor()
    if tags is None:
        cur.execute("""
            UPDATE import_staging SET processing_status = %s, updated_at = now()
            WHERE user_id = %s AND id = %s
        """, (status, user_id, staging_id))
    else:
        cur.execute("""
            UPDATE import_staging SET processing_status = %s, import_tags = %s, updated_at = now()
            WHERE user_id = %s AND id = %s
        """, (status, json.dumps(tags), user_id, staging_id))


def delete_staging_record(user_id: str, staging_id: str) -> bool:
    """Delete a staged import and the allocations promoted from it."""
    with get_conn() as conn:
        cur = conn.cursor()
        cur.execute("DELETE FROM royalty_allocations WHERE user_id = %s AND staging_id = %s",
                    (user_id, staging_id))
        cur.execute("DELETE FROM catalog_works WHERE user_id = %s AND staging_id = %s",
                    (user_id, staging_id))
        cur.execute("DELETE FROM import_staging WHERE user_id = %s AND id = %s", (user_id, staging_id))
        return cur.rowcount > 0


# ---------------------------------------------------------------------------
# Mapping configs
# ---------------------------------------------------------------------------

def get_mapping_config_db(user_id: Optional[str], source_name: str) -> Optional[dict]:
    with get_conn() as conn:
        cur = conn.cursor()
        cur.execute("""
            SELECT mapping_rules FROM source_mapping_config
            WHERE user_id = %s AND source_name = %s AND is_active
        """, (user_id or '', source_name))
        row = cur.fetchone()
        return _json(row[0]) if row else None


def save_mapping_config_db(user_id: Optional[str], source_name: str, mapping_rules: dict,
                           header_patterns: list, version: str, is_active: bool = True):
    with get_conn() as conn:
        cur = conn.cursor()
        cur.execute("""
            INSERT INTO source_mapping_config (user_id, source_name, mapping_rules, header_patterns,
                                               version, is_active, created_at, updated_at)
            VALUES (%s, %s, %s, %s, %s, %s, now(), now())
            ON CONFLICT (user_id, source_name) DO UPDATE SET
                mapping_rules = EXCLUDED.mapping_rules,
                header_patterns = EXCLUDED.header_patterns,
                version = EXCLUDED.version,
                is_active = EXCLUDED.is_active,
                updated_at = now()
        """, (user_id or '', source_name, json.dumps(mapping_rules), json.dumps(header_patterns),
              version, is_active))


def list_mapping_configs_db(user_id: Optional[str]) -> List[dict]:
    with get_conn() as conn:
        cur = conn.cursor()
        cur.execute("""
            SELECT source_name, mapping_rules, header_patterns, version, is_active, updated_at
            FROM source_mapping_config WHERE user_id = %s ORDER BY source_name
        """, (user_id or '',))
        out = _rows(cur)
    for r in out:
        r['mapping_rules'] = _json(r['mapping_rules'])
        r['header_patterns'] = _json(r['header_patterns'])
        r['updated_at'] = _iso(r.get('updated_at'))
    return out


# ---------------------------------------------------------------------------
# Batches & allocations
# ---------------------------------------------------------------------------

def list_batches(user_id: str) -> List[dict]:
    with get_conn() as conn:
        cur = conn.cursor()
        cur.execute("""
            SELECT id, batch_id, source, total_gross_amount, date_received, status
            FROM reconciliation_batches WHERE user_id = %s ORDER BY date_received DESC NULLS LAST
        """, (user_id,))
        out = _rows(cur)
    for r in out:
        r['id'] = str(r['id'])
        r['total_gross_amount'] = _safe_float(r['total_gross_amount'])
        r['date_received'] = _iso(r.get('date_received'))
    return out


def list_allocations(user_id: str) -> List[dict]:
    with get_conn() as conn:
        cur = conn.cursor()
        cur.execute("""
            SELECT id, song_title, artist, work_writers, gross_royalty_amount, source, batch_id,
                   controlled_status, comments, statement_id, created_at
            FROM royalty_allocations WHERE user_id = %s ORDER BY created_at DESC
        """, (user_id,))
        out = _rows(cur)
    for r in out:
        r['id'] = str(r['id'])
        r['batch_id'] = str(r['batch_id']) if r.get('batch_id') else None
        r['gross_royalty_amount'] = _safe_float(r['gross_royalty_amount'])
        r['created_at'] = _iso(r.get('created_at'))
        for key in ('song_title', 'artist', 'work_writers', 'source', 'controlled_status', 'comments',
                    'statement_id'):
            r[key] = r.get(key) or ''
    return out


def insert_allocations(conn, user_id: str, staging_id: str, allocations: List[dict]) -> int:
    """Bulk insert promoted allocations inside the caller's transaction."""
    if not allocations:
        return 0
    from psycopg2.extras import execute_values

    rows = [(
        user_id, staging_id, a.get('batch_id'), a.get('song_title', ''), a.get('artist', ''),
        a.get('work_writers', ''), _safe_float(a.get('gross_royalty_amount')), a.get('source', ''),
        a.get('controlled_status', ''), a.get('comments', ''), a.get('statement_id', ''),
        a.get('iswc'), a.get('royalty_type'), a.get('share_pct'),
        a.get('period_start'), a.get('period_end'),
    ) for a in allocations]
    cur = conn.cursor()
    execute_values(cur, """
        INSERT INTO royalty_allocations (user_id, staging_id, batch_id, song_title, artist, work_writers,
                                         gross_royalty_amount, source, controlled_status, comments,
                                         statement_id, iswc, royalty_type, share_pct,
                                         period_start, period_end)
        VALUES %s
    """, rows)
    return len(rows)


def link_allocations(user_id: str, allocation_ids: List[str], batch_id: str) -> int:
    """Attach allocations to a batch. Returns the number of rows updated."""
    if not allocation_ids:
        return 0
    with get_conn() as conn:
        cur = conn.cursor()
        cur.execute("SELECT 1 FROM reconciliation_batches WHERE user_id = %s AND id = %s",
                    (user_id, batch_id))
        if cur.fetchone() is None:
            raise ValueError(f"Unknown batch: {batch_id}")
        cur.execute("""
            UPDATE royalty_allocations SET batch_id = %s, updated_at = now()
            WHERE user_id = %s AND id = ANY(%s::uuid[])
        """, (batch_id, user_id, list(allocation_ids)))
        return cur.rowcount


def insert_catalog_works(conn, user_id: str, staging_id: str, rows: List[dict]) -> int:
    if not rows:
        return 0
    from psycopg2.extras import execute_values

    values = [(
        user_id, staging_id, r.get('source_sheet'), r.get('work_title', ''), r.get('artist_name', ''),
        r.get('isrc'), r.get('iswc'), r.get('normalized_title', ''),
        json.dumps(r.get('writers', [])), json.dumps(r.get('publishers', [])),
        json.dumps(r.get('canonical_row', {})),
    ) for r in rows]
    cur = conn.cursor()
    execute_values(cur, """
        INSERT INTO catalog_works (user_id, staging_id, source_sheet, work_title, artist_name, isrc, iswc,
                                   normalized_title, writers, publishers, canonical_row)
        VALUES %s
    """, values)
    return len(values)


def fetch_catalog_works(conn, user_id: str) -> List[dict]:
    """Catalog works a tenant has approved, for matching statement lines at promotion time."""
    cur = conn.cursor()
    cur.execute("""
        SELECT id, work_title, normalized_title, iswc,
               COALESCE(canonical_row->>'bmi_work_id', canonical_row->>'ascap_work_id') AS work_id
        FROM catalog_works
        WHERE user_id = %s ORDER BY created_at
    """, (user_id,))
    out = _rows(cur)
    for r in out:
        r['id'] = str(r['id'])
    return out


# ---------------------------------------------------------------------------
# Payouts, payees, quarterly reports (called inside one transaction)
# ---------------------------------------------------------------------------

def list_payouts(user_id: str) -> List[dict]:
    with get_conn() as conn:
        return fetch_payouts(conn, user_id)


def fetch_payouts(conn, user_id: str) -> List[dict]:
    cur = conn.cursor()
    cur.execute("""
        SELECT p.id, p.payee_id, COALESCE(p.payee_name, '') AS payee_name, p.gross_royalties,
               p.total_expenses, p.amount_due, p.net_payable, COALESCE(p.status, '') AS status,
               COALESCE(p.workflow_stage, '') AS workflow_stage, p.period_start, p.created_at
        FROM payouts p WHERE p.user_id = %s ORDER BY p.created_at ASC
    """, (user_id,))
    out = _rows(cur)
    for r in out:
        r['id'] = str(r['id'])
        r['payee_id'] = str(r['payee_id']) if r.get('payee_id') else None
        for key in ('gross_royalties', 'total_expenses', 'amount_due', 'net_payable'):
            r[key] = _safe_float(r[key])
        r['period_start'] = _iso(r.get('period_start'))
        r['created_at'] = _iso(r.get('created_at'))
    return out


def fetch_payees(conn, user_id: str) -> List[dict]:
    cur = conn.cursor()
    cur.execute("""
        SELECT id, payee_name, beginning_balance FROM payees WHERE user_id = %s ORDER BY created_at
    """, (user_id,))
    out = _rows(cur)
    for r in out:
        r['id'] = str(r['id'])
        r['payee_name'] = r.get('payee_name') or ''
        r['beginning_balance'] = _safe_float(r.get('beginning_balance'))
    return out


def insert_payee(conn, user_id: str, payee_name: str) -> dict:
    cur = conn.cursor()
    cur.execute("""
        INSERT INTO payees (user_id, payee_name, beginning_balance) VALUES (%s, %s, 0)
        RETURNING id, payee_name, beginning_balance
    """, (user_id, payee_name))
    row = _one(cur)
    row['id'] = str(row['id'])
    row['beginning_balance'] = _safe_float(row['beginning_balance'])
    return row


def replace_quarterly_reports(conn, user_id: str, reports: List[dict]) -> int:
    """Delete the tenant's calculated reports and insert the new set. Returns rows deleted."""
    from psycopg2.extras import execute_values

    cur = conn.cursor()
    cur.execute("DELETE FROM quarterly_balance_reports WHERE user_id = %s AND is_calculated", (user_id,))
    deleted = cur.rowcount
    if reports:
        execute_values(cur, """
            INSERT INTO quarterly_balance_reports (user_id, payee_id, year, quarter, opening_balance,
                                                   royalties_amount, expenses_amount, payments_amount,
                                                   closing_balance, is_calculated, calculation_date)
            VALUES %s
        """, [(user_id, r['payee_id'], r['year'], r['quarter'], r['opening_balance'],
               r['royalties_amount'], r['expenses_amount'], r['payments_amount'],
               r['closing_balance'], r['is_calculated'], r['calculation_date']) for r in reports])
    return deleted


def list_quarterly_reports(user_id: str, payee_id: Optional[str] = None) -> List[dict]:
    with get_conn() as conn:
        cur = conn.cursor()
        sql = """
            SELECT r.payee_id, p.payee_name, r.year, r.quarter, r.opening_balance, r.royalties_amount,
                   r.expenses_amount, r.payments_amount, r.closing_balance, r.is_calculated,
                   r.calculation_date
            FROM quarterly_balance_reports r LEFT JOIN payees p ON p.id = r.payee_id
            WHERE r.user_id = %s
        """
        params: list = [user_id]
        if payee_id:
            sql += " AND r.payee_id = %s"
            params.append(payee_id)
        cur.execute(sql + " ORDER BY p.payee_name, r.year, r.quarter", params)
        out = _rows(cur)
    for r in out:
        r['payee_id'] = str(r['payee_id'])
        for key in ('opening_balance', 'royalties_amount', 'expenses_amount', 'payments_amount',
                    'closing_balance'):
            r[key] = _safe_float(r[key])
        r['calculation_date'] = _iso(r.get('calculation_date'))
    return out


# ---------------------------------------------------------------------------
# Research job queue
# ---------------------------------------------------------------------------

_JOB_COLUMNS = """id, user_id, search_id, job_type, job_data, status, progress_percentage, results,
                  error_message, priority, created_at, started_at, completed_at"""


def _job_row(rec: Optional[dict]) -> Optional[dict]:
    if rec is None:
        return None
    rec['id'] = str(rec['id'])
    rec['job_data'] = _json(rec.get('job_data')) or {}
    rec['results'] = _json(rec.get('results'))
    for key in ('created_at', 'started_at', 'completed_at'):
        rec[key] = _iso(rec.get(key))
    return rec


def create_job_db(user_id: str, job_type: str, job_data: dict, priority: int = 5,
                  search_id: Optional[str] = None) -> dict:
    with get_conn() as conn:
        cur = conn.cursor()
        cur.execute(f"""
            INSERT INTO research_job_queue (user_id, search_id, job_type, job_data, status, priority)
            VALUES (%s, %s, %s, %s, 'pending', %s)
            RETURNING {_JOB_COLUMNS}
        """, (user_id, search_id, job_type, json.dumps(job_data), priority))
        return _job_row(_one(cur))


def get_job_db(user_id: str, job_id: str) -> Optional[dict]:
    with get_conn() as conn:
        cur = conn.cursor()
        cur.execute(f"SELECT {_JOB_COLUMNS} FROM research_job_queue WHERE user_id = %s AND id = %s",
                    (user_id, job_id))
        return _job_row(_one(cur))


def claim_next_job_db(user_id: str) -> Optional[dict]:
    """Take the tenant's highest-priority, oldest pending job and mark it processing."""
    with get_conn() as conn:
        cur = conn.cursor()
        cur.execute(f"""
            SELECT {_JOB_COLUMNS} FROM research_job_queue
            WHERE user_id = %s AND status = 'pending'
            ORDER BY priority DESC, created_at ASC
            LIMIT 1
            FOR UPDATE SKIP LOCKED
        """, (user_id,))
        job = _job_row(_one(cur))
        if job is None:
            return None
        cur.execute("""
            UPDATE research_job_queue SET status = 'processing', started_at = now(), updated_at = now()
            WHERE id = %s
        """, (job['id'],))
        job['status'] = 'processing'
        return job


def update_job_progress_db(job_id: str, progress: int):
    with get_conn() as conn:
        cur = conn.cursor()
        cur.execute("""
            UPDATE research_job_queue SET progress_percentage = %s, updated_at = now() WHERE id = %s
        """, (progress, job_id))


def complete_job_db(job_id: str, results: dict):
    with get_conn() as conn:
        cur = conn.cursor()
        cur.execute("""
            UPDATE research_job_queue
            SET status = 'completed', progress_percentage = 100, results = %s,
                completed_at = now(), updated_at = now()
            WHERE id = %s
        """, (json.dumps(results), job_id))


def fail_job_db(job_id: str, error_message: str):
    with get_conn() as conn:
        cur = conn.cursor()
        cur.execute("""
            UPDATE research_job_queue
            SET status = 'failed', error_message = %s, completed_at = now(), updated_at = now()
            WHERE id = %s
        """, (error_message, job_id))
