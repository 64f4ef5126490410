"""
Escrow Indexer: Flask server
Projects escrow contract events into jobs/agents/events tables and serves them read-only.

Job statuses:  open -> claimed -> submitted -> verified
               claimed -> claim_expired | submitted -> verify_expired
               open|claimed -> cancelled | (non-terminal) -> emergency_released
"""

from flask import Flask, request, jsonify, g
from models import db
from config import Config
from services.auth_service import require_api_key, get_api_key
from services.rate_limiter import rate_limit, get_sync_limiter
import re

import atexit
import json
import logging
import threading
import datetime

# ---------------------------------------------------------------------------
# Structured logging setup
# ---------------------------------------------------------------------------


class _JsonFormatter(logging.Formatter):
    """Produce valid JSON log lines even when message contains quotes/newlines."""
    def format(self, record):
        from flask import has_request_context
        entry = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if has_request_context():
            rid = getattr(g, 'request_id', None)
            if rid:
                entry["request_id"] = rid
        if record.exc_info:
            entry["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(entry)


_log_handler = logging.StreamHandler()
_log_handler.setFormatter(_JsonFormatter())
logging.basicConfig(level=logging.INFO, handlers=[_log_handler])
logger = logging.getLogger('indexer')

SERVICE_NAME = 'Escrow Indexer API'
SERVICE_VERSION = '1.1.0'

# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------

app = Flask(__name__)
app.config.from_object(Config)
app.config['MAX_CONTENT_LENGTH'] = 10 * 1024  # request bodies are tiny; reject anything larger
db.init_app(app)

# Enable WAL mode for SQLite so API reads don't block the sync writer
from sqlalchemy import event as sa_event
from sqlalchemy.engine import Engine

@sa_event.listens_for(Engine, "connect")
def _set_sqlite_pragma(dbapi_conn, connection_record):
    import sqlite3
    if isinstance(dbapi_conn, sqlite3.Connection):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.close()

# ---------------------------------------------------------------------------
# Database bootstrap
# ---------------------------------------------------------------------------

logger.info("Starting %s v%s", SERVICE_NAME, SERVICE_VERSION)
Config.validate_production()
get_api_key()  # resolve (or generate) the sync key once at startup

from services.sync_cursor import SqlSyncCursor

_cursor = SqlSyncCursor(start_block=Config.START_BLOCK)

with app.app_context():
    try:
        db.create_all()
        logger.info("Database tables created / verified")
        last_block = _cursor.initialize()
        logger.info("Sync cursor at block %d", last_block)
    except Exception as e:
        logger.critical("Database init failed: %s", e)
        db.session.rollback()

# Correlation ID: attach unique request ID to every request
@app.before_request
def _attach_request_id():
    import uuid as _uuid
    rid = request.headers.get('X-Request-ID') or str(_uuid.uuid4())
    g.request_id = rid

@app.after_request
def _add_request_id_header(response):
    rid = getattr(g, 'request_id', None)
    if rid:
        response.headers['X-Request-ID'] = rid
    return response

# ---------------------------------------------------------------------------
# Sync engine (constructed lazily so tests can inject a fake chain source)
# ---------------------------------------------------------------------------

_engine = None
_engine_lock = threading.Lock()


def get_sync_engine():
    global _engine
    with _engine_lock:
        if _engine is None:
            from services.chain_source import get_chain_source
            from services.event_applier import EventApplier
            from services.sync_engine import SyncEngine
            _engine = SyncEngine(
                source=get_chain_source(),
                cursor=_cursor,
                applier=EventApplier(),
            )
        return _engine


def set_sync_engine(engine):
    global _engine
    with _engine_lock:
        _engine = engine


def run_sync() -> dict:
    """Run one sync pass inside an app context and refresh cached stats."""
    from services.dashboard_service import DashboardService
    result = get_sync_engine().run()
    # Any committed chunk moves last_synced_block, even with no events
    if result.get("chunks"):
        DashboardService.invalidate_caches()
    return result


# Graceful shutdown signal for background threads
_shutdown_event = threading.Event()

# ---------------------------------------------------------------------------
# Periodic sync (background loop)
# ---------------------------------------------------------------------------

def _sync_loop():
    """Background thread: initial sync at startup, then every SYNC_INTERVAL_SECONDS."""
    consecutive_errors = 0
    sleep_time = 0
    while not _shutdown_event.is_set():
        if _shutdown_event.wait(timeout=sleep_time):
            break  # Shutdown requested during sleep
        with app.app_context():
            try:
                result = run_sync()
                if result["status"] == "failed":
                    consecutive_errors += 1
                else:
                    consecutive_errors = 0
            except Exception as e:
                consecutive_errors += 1
                logger.error("Sync loop error (consecutive=%d): %s", consecutive_errors, e)
            finally:
                db.session.remove()
        # Exponential backoff on consecutive errors, capped at 10 minutes
        if consecutive_errors:
            sleep_time = min(Config.SYNC_INTERVAL_SECONDS * (2 ** (consecutive_errors - 1)), 600)
        else:
            sleep_time = Config.SYNC_INTERVAL_SECONDS


_sync_thread = None


def _start_background_threads():
    global _sync_thread
    if _sync_thread is not None and _sync_thread.is_alive():
        return
    _shutdown_event.clear()
    _sync_thread = threading.Thread(target=_sync_loop, daemon=True, name='escrow-sync')
    _sync_thread.start()
    logger.info("Background sync started (interval=%ds)", Config.SYNC_INTERVAL_SECONDS)


if Config.SYNC_ENABLED:
    _start_background_threads()


def _atexit_shutdown():
    """Graceful cleanup: signal the sync thread to stop."""
    _shutdown_event.set()

atexit.register(_atexit_shutdown)

# ---------------------------------------------------------------------------
# Input validation helpers
# ---------------------------------------------------------------------------

_HEX_RE = re.compile(r'^0x[0-9a-fA-F]+$')


def _is_valid_hex(value, exact_length=None) -> bool:
    if not isinstance(value, str):
        return False
    if not value.startswith('0x'):
        value = '0x' + value
    if not _HEX_RE.match(value):
        return False
    return exact_length is None or len(value) == exact_length


def _is_valid_address(value) -> bool:
    return _is_valid_hex(value, 42)  # 0x + 40 chars


def _is_valid_bytes32(value) -> bool:
    return _is_valid_hex(value, 66)  # 0x + 64 chars


def _sanitize(value, max_len=100) -> str:
    if not isinstance(value, str):
        return ''
    return re.sub(r'[<>\'"]', '', value[:max_len])


def _int_arg(name, default, lo, hi):
    try:
        value = int(request.args.get(name, default))
    except (ValueError, TypeError):
        value = default
    return min(max(value, lo), hi)


# ===================================================================
# GET /: service descriptor
# ===================================================================


@app.route('/', methods=['GET'])
@rate_limit()
def index():
    return jsonify({
        "name": SERVICE_NAME,
        "version": SERVICE_VERSION,
        "contract": Config.ESCROW_ADDRESS,
        "chain": Config.CHAIN_NAME,
        "endpoints": {
            "GET /jobs": "List all escrow jobs",
            "GET /jobs/:jobId": "Get job details + event history",
            "GET /agents/:address/jobs": "Get jobs by agent wallet",
            "GET /stats": "Aggregate statistics",
            "GET /events": "Recent events",
            "GET /events/gaps": "Job events with no matching job",
            "GET /agents": "List registered agents",
            "GET /sync/status": "Sync cursor and last run",
            "POST /sync": "Trigger manual sync (requires X-API-Key)",
            "GET /health": "Health check",
        },
    }), 200


@app.route('/health', methods=['GET'])
@rate_limit()
def health():
    return jsonify({
        "status": "ok",
        "timestamp": datetime.datetime.now(datetime.timezone.utc).isoformat(),
    }), 200


# ===================================================================
# Jobs
# ===================================================================


@app.route('/jobs', methods=['GET'])
@rate_limit()
def list_jobs():
    from services.job_service import JobService

    limit = _int_arg('limit', 100, 1, 500)
    offset = _int_arg('offset', 0, 0, 2 ** 31)
    status = _sanitize(request.args.get('status', ''), 20)

    jobs, total = JobService.list_jobs(status=status or None, limit=limit, offset=offset)
    return jsonify({
        "jobs": [j.to_dict() for j in jobs],
        "total": total,
        "limit": limit,
        "offset": offset,
    }), 200


@app.route('/jobs/<job_id>', methods=['GET'])
@rate_limit()
def get_job(job_id):
    from services.job_service import JobService

    if not job_id.startswith('0x'):
        job_id = '0x' + job_id
    if not _is_valid_bytes32(job_id):
        return jsonify({"error": "Invalid jobId format. Expected bytes32 hex string."}), 400

    job = JobService.get_job(job_id)
    if not job:
        return jsonify({"error": "Job not found", "jobId": job_id}), 404

    history = JobService.get_history(job.job_id)
    return jsonify(JobService.to_dict(job, history=history)), 200


# ===================================================================
# Agents
# ===================================================================


@app.route('/agents', methods=['GET'])
@rate_limit()
def list_agents():
    from services.agent_service import AgentService

    limit = _int_arg('limit', 100, 1, 500)
    agents, total = AgentService.list_agents(limit=limit)
    return jsonify({"agents": [a.to_dict() for a in agents], "total": total}), 200


@app.route('/agents/<address>/jobs', methods=['GET'])
@rate_limit()
def agent_jobs(address):
    from services.job_service import JobService

    if not _is_valid_address(address) or not address.startswith('0x'):
        return jsonify({"error": "Invalid address format. Expected 0x + 40 hex chars."}), 400
    return jsonify(JobService.jobs_for_wallet(address)), 200


# ===================================================================
# Stats & events
# ===================================================================


@app.route('/stats', methods=['GET'])
@rate_limit()
def stats():
    from services.dashboard_service import DashboardService, etag_response
    return etag_response(DashboardService.get_stats(_cursor), cache_max_age=30)


@app.route('/events', methods=['GET'])
@rate_limit()
def list_events():
    from services.event_service import EventService

    limit = _int_arg('limit', 100, 1, 200)
    event_type = _sanitize(request.args.get('type', ''), 30)
    events = EventService.recent(event_type=event_type or None, limit=limit)
    return jsonify({
        "events": [EventService.to_dict(e) for e in events],
        "count": len(events),
    }), 200


@app.route('/events/gaps', methods=['GET'])
@rate_limit()
def event_gaps():
    """Job events whose job has no row (e.g. JobPosted never indexed)."""
    from services.event_service import EventService

    limit = _int_arg('limit', 200, 1, 500)
    events = EventService.consistency_gaps(limit=limit)
    return jsonify({
        "events": [EventService.to_dict(e) for e in events],
        "count": len(events),
    }), 200


# ===================================================================
# Sync
# ===================================================================


@app.route('/sync/status', methods=['GET'])
@rate_limit()
def sync_status():
    engine = get_sync_engine()
    return jsonify({
        "last_block": _cursor.read(),
        "running": engine.is_running(),
        "last_result": engine.last_result,
    }), 200


@app.route('/sync', methods=['POST'])
@rate_limit()
@rate_limit(get_sync_limiter())
@require_api_key
def trigger_sync():
    try:
        result = run_sync()
    except Exception as e:
        logger.error("Sync error: %s", e)
        return jsonify({"error": "Sync failed"}), 500  # Don't leak internal errors

    if result["status"] == "busy":
        return jsonify({"error": "Sync already in progress", "last_block": result["last_block"]}), 409
    if result["status"] in ("failed", "partial"):
        return jsonify({"error": "Sync failed", "last_block": _cursor.read()}), 500

    return jsonify({
        "success": True,
        "last_block": _cursor.read(),
        "result": {k: result[k] for k in ("status", "chunks", "events_applied", "from_block", "to_block")},
    }), 200


# ---------------------------------------------------------------------------
# Entrypoint
# ---------------------------------------------------------------------------

if __name__ == '__main__':
    import os
    app.run(
        host=os.environ.get('HOST', '127.0.0.1'),
        port=int(os.environ.get('PORT', '3456')),
        debug=os.environ.get('FLASK_DEBUG', 'false').lower() in ('true', '1'),
    )
