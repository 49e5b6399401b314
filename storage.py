"""
Google Cloud Storage archive for uploaded royalty statements.
Graceful degradation: callers check is_available() and skip archiving when GCS is off.
"""

import logging
import os
import re
from datetime import datetime
from typing import Optional

log = logging.getLogger('royalty')

_client = None
_bucket = None
_bucket_name = ''

_UNSAFE_CHARS_RE = re.compile(r'[^A-Za-z0-9._-]+')


# ---------------------------------------------------------------------------
# Initialisation
# ---------------------------------------------------------------------------

def init_gcs() -> bool:
    """Initialise GCS client and bucket. Returns True on success."""
    global _client, _bucket, _bucket_name

    bucket_name = os.getenv('GCS_BUCKET', '')
    if not bucket_name:
        log.info("GCS_BUCKET not set: statement archive disabled")
        return False

    try:
        from google.cloud import storage as gcs_storage

        creds_path = os.getenv('GOOGLE_APPLICATION_CREDENTIALS', '')
        if creds_path and os.path.isfile(creds_path):
            _client = gcs_storage.Client.from_service_account_json(creds_path)
        else:
            _client = gcs_storage.Client()

        _bucket = _client.bucket(bucket_name)
        _bucket.reload()
        _bucket_name = bucket_name
        log.info("GCS initialised: bucket=%s", bucket_name)
        return True
    except Exception as e:
        log.warning("GCS unavailable: %s", e)
        _client = None
        _bucket = None
        return False


def is_available() -> bool:
    return _bucket is not None


# ---------------------------------------------------------------------------
# Upload / delete
# ---------------------------------------------------------------------------

def _upload(gcs_path: str, data: bytes, content_type: str = 'application/octet-stream') -> str:
    if _bucket is None:
        raise RuntimeError("GCS not initialised")

    blob = _bucket.blob(gcs_path)
    blob.upload_from_string(data, content_type=content_type)
    log.info("GCS upload: %s (%d bytes)", gcs_path, blob.size or 0)
    return gcs_path


def statement_path(user_id: str, filename: str, when: Optional[datetime] = None) -> str:
    """statements/<user>/<YYYYMMDDHHMMSS>_<safe filename>"""
    stamp = (when or datetime.utcnow()).strftime('%Y%m%d%H%M%S')
    safe_user = _UNSAFE_CHARS_RE.sub('_', user_id or 'anonymous')
    safe_name = _UNSAFE_CHARS_RE.sub('_', os.path.basename(filename or 'statement'))
    return f"statements/{safe_user}/{stamp}_{safe_name}"


def upload_statement(user_id: str, filename: str, content: bytes) -> str:
    """Archive an uploaded statement file. Returns GCS path."""
    return _upload(statement_path(user_id, filename), content, content_type=_guess_content_type(filename))


def delete_blob(gcs_path: str) -> bool:
    """Delete a single GCS object. Returns True if deleted."""
    if _bucket is None or not gcs_path:
        return False
    try:
        _bucket.blob(gcs_path).delete()
        return True
    except Exception as e:
        log.warning("GCS delete failed for %s: %s", gcs_path, e)
        return False


def _guess_content_type(filename: str) -> str:
    ext = os.path.splitext(filename or '')[1].lower()
    return {
        '.xlsx': 'application/vnd.openxmlformats-officedocument.spreadsheetml.sheet',
        '.xls': 'application/vnd.ms-excel',
        '.csv': 'text/csv',
    }.get(ext, 'application/octet-stream')
