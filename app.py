"""
Settlement Sync - Message API
Flask JSON API in front of the record store, the sync controller and the
spreadsheet upload path. Every message of the extension's contract is
posted to /api/messages with a 'type' tag.
"""

import logging
import os

# ---------------------------------------------------------------------------
# Logging setup
# ---------------------------------------------------------------------------
_log_dir = os.path.dirname(os.path.abspath(__file__))
_log_handlers = [logging.StreamHandler()]
# Only add file handler when the code directory is writable
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
log = logging.getLogger('settlement')

from dotenv import load_dotenv
load_dotenv()

from flask import Flask, jsonify, request

from consolidator import SPREADSHEET_EXTS, compute_summary, rank_title_sums, summary_totals
from db import RecordStore, get_store, set_store
from errors import (AlreadySyncing, NoWorkToDo, SettlementError, StoreUnavailable,
                    ValidationError)
from mapper import extract_file, to_settlement_items
from models import Partition
from sessions import ExternalSessionManager, build_session_manager
from sync import PollingObserver, SyncController
from validator import check_period_gaps, normalize_period_key

app = Flask(__name__)
app.secret_key = os.getenv('FLASK_SECRET_KEY', os.urandom(24).hex())
app.config['MAX_CONTENT_LENGTH'] = 64 * 1024 * 1024  # 64 MB

# ---------------------------------------------------------------------------
# Services
# ---------------------------------------------------------------------------

_store = None
_sessions = None
_observer = None
_controller = None


def init_services(db_path=None, session_manager=None, observer=None, timeout=None, failure_delay=None):
    """(Re)build the store, session manager, observer and sync controller.

    Called once at import with the environment defaults; tests call it again
    with a temporary database and fake session managers.
    """
    global _store, _sessions, _observer, _controller
    if _controller is not None and _controller.is_syncing:
        _controller.cancel()

    if db_path:
        set_store(RecordStore(db_path))
    _store = get_store()
    _sessions = session_manager or build_session_manager()
    _observer = observer or PollingObserver()
    _controller = SyncController(_store, _sessions, observer=_observer,
                                 timeout=timeout, failure_delay=failure_delay)
    log.info("Services ready: store=%s sessions=%s", _store.db_path, type(_sessions).__name__)
    return _controller


init_services()


# ---------------------------------------------------------------------------
# Error envelope
# ---------------------------------------------------------------------------

_ERROR_STATUS = [
    (ValidationError, 400),
    (NoWorkToDo, 400),
    (AlreadySyncing, 409),
    (StoreUnavailable, 503),
]


@app.errorhandler(SettlementError)
def _settlement_error(e):
    code = next((c for cls, c in _ERROR_STATUS if isinstance(e, cls)), 500)
    if code >= 500:
        log.error("%s %s failed: %s", request.method, request.path, e)
    else:
        log.warning("%s %s rejected: %s", request.method, request.path, e)
    return jsonify(status='error', message=str(e)), code


@app.errorhandler(413)
def _request_too_large(e):
    log.error("413 Request Entity Too Large: %s %s (content-length: %s)",
              request.method, request.path, request.content_length)
    return jsonify(status='error', message='Upload exceeds the maximum allowed size.'), 413


@app.errorhandler(500)
def _internal_error(e):
    original = getattr(e, 'original_exception', None)
    log.error("500 Internal Server Error: %s %s: %s", request.method, request.path, original or e,
              exc_info=original)
    return jsonify(status='error', message='Internal server error'), 500


def _partition(data: dict, default: Partition) -> Partition:
    value = data.get('partition')
    if not value:
        return default
    try:
        return Partition.parse(value)
    except ValueError:
        raise ValidationError(f'Unknown partition: {value!r}')


# ---------------------------------------------------------------------------
# Message handlers (one per 'type')
# ---------------------------------------------------------------------------

def _start_full_sync(data):
    start = data.get('startDate') or {}
    if not isinstance(start, dict):
        raise ValidationError('startDate must be an object with year and month')
    return _controller.start(start.get('year'), start.get('month'))


def _cancel_sync(data):
    return _controller.cancel()


def _parsed_monthly_data(data):
    body = data.get('data') if isinstance(data.get('data'), dict) else data
    accepted = _controller.submit_report(
        data.get('sessionId') or body.get('sessionId'),
        body.get('settlementMonth'),
        body.get('novelData'),
        error=body.get('error'),
    )
    return {'status': 'accepted' if accepted else 'discarded'}


def _save_manual_upload_data(data):
    month = data.get('settlementMonth')
    items = data.get('dataToSave')
    if not isinstance(items, list):
        raise ValidationError('dataToSave must be a list')
    result = _store.replace_period(Partition.MANUAL, month, items)
    return {'status': 'success', 'savedCount': result['saved_count'],
            'deletedCount': result['deleted_count']}


def _sync_db_status(data):
    return {'status': 'success', **_store.status(Partition.SYNCED, include_title_sums=True)}


def _upload_db_status(data):
    return {'status': 'success', **_store.status(Partition.MANUAL, include_title_sums=True)}


def _total_sum(data):
    return {'status': 'success', 'totalSum': _store.sum_amount(_partition(data, Partition.SYNCED))}


def _sum_by_title(data):
    sums = _store.sum_amount_by_title(_partition(data, Partition.SYNCED))
    return {'status': 'success', 'sums': sums,
            'ranked': [t.to_dict() for t in rank_title_sums(sums)]}


def _record_count(data):
    return {'status': 'success', 'count': _store.count(_partition(data, Partition.SYNCED))}


def _load_data(data):
    records = _store.scan_all(_partition(data, Partition.SYNCED))
    return {'status': 'success', 'data': [r.to_dict() for r in records]}


def _manual_upload_data(data):
    records = _store.scan_all(Partition.MANUAL)
    return {'status': 'success', 'data': [r.to_dict() for r in records]}


def _external_monthly_sum(data):
    year = data.get('year')
    try:
        year = int(year)
    except (TypeError, ValueError):
        raise ValidationError(f'Invalid year: {year!r}')
    return {'status': 'success', 'sums': _store.monthly_sums(_partition(data, Partition.SYNCED), year)}


def _sync_status(data):
    return {'status': 'success', **_controller.status()}


def _period_gaps(data):
    partition = _partition(data, Partition.SYNCED)
    issues = check_period_gaps(_store.period_keys(partition), data.get('start'), data.get('end'),
                               label=partition.name.lower())
    return {'status': 'success', 'issues': [i.to_dict() for i in issues]}


MESSAGE_HANDLERS = {
    'startFullSync': _start_full_sync,
    'cancelSync': _cancel_sync,
    'parsedMonthlyData': _parsed_monthly_data,
    'saveManualUploadData': _save_manual_upload_data,
    'getSyncDbStatus': _sync_db_status,
    'getUploadDbStatus': _upload_db_status,
    'getTotalSum': _total_sum,
    'getSumByTitle': _sum_by_title,
    'getRecordCount': _record_count,
    'loadData': _load_data,
    'getManualUploadData': _manual_upload_data,
    'getExternalMonthlySum': _external_monthly_sum,
    'getSyncStatus': _sync_status,
    'getPeriodGaps': _period_gaps,
}


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------

@app.route('/api/messages', methods=['POST'])
def api_messages():
    data = request.get_json(silent=True) or {}
    msg_type = data.get('type')
    handler = MESSAGE_HANDLERS.get(msg_type)
    if handler is None:
        log.warning("Unhandled message type: %r", msg_type)
        return jsonify(status='error', message=f'Unknown message type: {msg_type!r}'), 400
    return jsonify(handler(data))


@app.route('/api/sync/events')
def api_sync_events():
    """Observer poll: drains buffered controller events."""
    events = _observer.drain() if isinstance(_observer, PollingObserver) else []
    return jsonify(status='success', events=events)


@app.route('/api/sync/session')
def api_sync_session():
    """The session an external scraper should fulfil next, if any."""
    pending = _sessions.pending() if isinstance(_sessions, ExternalSessionManager) else None
    return jsonify(status='success', session=pending)


@app.route('/api/upload', methods=['POST'])
def api_upload():
    """Manual upload: strict extraction of each file, then replace the month in the manual partition."""
    year = request.form.get('year', '').strip()
    month = request.form.get('month', '').strip()
    if not year or not month:
        raise ValidationError('year and month are required')
    period_key = normalize_period_key(f'{year}.{month}')

    files = [f for f in request.files.getlist('files') if f and f.filename]
    if not files:
        raise ValidationError('No files uploaded')

    rows, skipped = [], []
    for f in files:
        if not f.filename.lower().endswith(SPREADSHEET_EXTS):
            skipped.append({'filename': f.filename, 'reason': 'unsupported file type'})
            continue
        try:
            data = extract_file(f.read(), f.filename, strict=True)
        except Exception as e:
            log.error("Upload: could not read %s: %s", f.filename, e)
            skipped.append({'filename': f.filename, 'reason': str(e)})
            continue
        if not data:
            skipped.append({'filename': f.filename, 'reason': 'no data rows found'})
            continue
        log.info("Upload: %s -> %d row(s)", f.filename, len(data))
        rows.extend(data)

    if not rows:
        return jsonify(status='error', message='No data rows found in the uploaded files',
                       skippedFiles=skipped), 400

    result = _store.replace_period(Partition.MANUAL, period_key, to_settlement_items(rows))
    summaries = compute_summary(rows)
    return jsonify(
        status='success',
        periodKey=period_key,
        rowCount=len(rows),
        savedCount=result['saved_count'],
        deletedCount=result['deleted_count'],
        summary=[s.to_dict() for s in summaries],
        totals=summary_totals(summaries).to_dict(),
        skippedFiles=skipped,
    )


@app.route('/api/status')
def api_status():
    return jsonify(
        status='success',
        sync=_controller.status(),
        synced=_store.status(Partition.SYNCED),
        manual=_store.status(Partition.MANUAL),
        sessionMode='external' if isinstance(_sessions, ExternalSessionManager) else 'http',
    )


if __name__ == '__main__':
    port = int(os.environ.get('PORT', 8000))
    log.info(f"Settlement Sync starting on http://localhost:{port}")
    app.run(host='0.0.0.0', port=port, debug=False)
