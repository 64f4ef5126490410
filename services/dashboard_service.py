"""Aggregate statistics for the indexer's /stats endpoint."""

import hashlib
import logging
import threading
import time

from flask import request, make_response, jsonify
from sqlalchemy import func

from config import Config
from models import db, Agent, Job, EventRecord

logger = logging.getLogger('indexer.dashboard')


# ---------------------------------------------------------------------------
# TTLCache: thread-safe in-memory cache with configurable TTL
# ---------------------------------------------------------------------------

class TTLCache:
    """Thread-safe in-memory cache with per-key expiry."""

    def __init__(self, ttl_seconds):
        self._ttl = ttl_seconds
        self._store = {}          # key -> (value, expiry_ts)
        self._lock = threading.Lock()

    def get(self, key):
        with self._lock:
            entry = self._store.get(key)
            if entry is None:
                logger.debug("cache MISS key=%s (no entry)", key)
                return None
            value, expiry_ts = entry
            remaining = expiry_ts - time.time()
            if remaining <= 0:
                del self._store[key]
                logger.debug("cache MISS key=%s (expired %.1fs ago)", key, -remaining)
                return None
            logger.debug("cache HIT key=%s (%.1fs remaining)", key, remaining)
            return value

    def set(self, key, value):
        with self._lock:
            self._store[key] = (value, time.time() + self._ttl)

    def clear(self):
        with self._lock:
            self._store.clear()


_stats_cache = TTLCache(30)


def etag_response(data, cache_max_age=0):
    """Return a JSON response with ETag / 304 support."""
    resp = make_response(jsonify(data))
    etag = hashlib.md5(resp.get_data()).hexdigest()

    if etag in request.if_none_match:
        return ('', 304)

    resp.headers['ETag'] = etag
    resp.headers['Cache-Control'] = f'public, max-age={cache_max_age}' if cache_max_age else 'no-cache'
    return resp


class DashboardService:
    """Read-only aggregate queries over the projection."""

    @staticmethod
    def invalidate_caches():
        """Clear caches after a sync run changed the projection."""
        _stats_cache.clear()

    @staticmethod
    def get_stats(cursor):
        """Totals, breakdowns and sync progress (cached 30 s)."""
        cached = _stats_cache.get('stats')
        if cached is not None:
            return cached

        from services.job_service import JobService

        total_jobs = db.session.query(func.count(Job.job_id)).scalar() or 0
        total_agents = db.session.query(func.count(Agent.agent_id)).scalar() or 0
        total_events = db.session.query(func.count(EventRecord.id)).scalar() or 0

        status_rows = (
            db.session.query(Job.status, func.count(Job.job_id))
            .group_by(Job.status)
            .all()
        )
        count_col = func.count(EventRecord.id)
        type_rows = (
            db.session.query(EventRecord.event_type, count_col)
            .group_by(EventRecord.event_type)
            .order_by(count_col.desc())
            .all()
        )

        result = {
            'contract': Config.ESCROW_ADDRESS,
            'chain': Config.CHAIN_NAME,
            'total_jobs': total_jobs,
            'total_agents': total_agents,
            'total_events': total_events,
            'total_escrowed': str(JobService.total_escrowed()),
            'last_synced_block': cursor.read(),
            'job_status_breakdown': [{'status': s, 'count': c} for s, c in status_rows],
            'event_type_breakdown': [{'event_type': t, 'count': c} for t, c in type_rows],
        }
        logger.info("get_stats: jobs=%d agents=%d events=%d last_block=%s",
                    total_jobs, total_agents, total_events, result['last_synced_block'])

        _stats_cache.set('stats', result)
        return result
