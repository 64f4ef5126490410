"""
Tests for server.py API endpoints.
Covers: descriptor, health, jobs, job detail + history, agents, wallet lookup,
stats (ETag), events, sync status, manual sync (auth, busy, failures), rate limiting.
"""
import os

# Force DEV_MODE and test DB before importing app
os.environ['DEV_MODE'] = 'true'
os.environ['DATABASE_URL'] = 'sqlite://'  # in-memory
os.environ['SYNC_ENABLED'] = 'false'

import pytest
from unittest.mock import MagicMock

import server
from server import app
from config import Config
from models import db, Job, EventRecord
from services.event_applier import EventApplier
from services.sync_engine import SyncEngine
from tests.helpers.chain_helpers import (
    FakeChainSource, make_event, JOB_A, JOB_B, WALLET_1, WALLET_2, ESCROW,
)

API_KEY = 'test-api-key'
AUTH = {'X-API-Key': API_KEY}


def _fake_engine(source):
    return SyncEngine(
        source=source,
        cursor=server._cursor,
        applier=EventApplier(strict=False),
        address=ESCROW,
        retries=0,
        sleep=lambda s: None,
    )


@pytest.fixture
def client():
    """Test client with fresh in-memory DB, reset limiters and a fake chain."""
    app.config['TESTING'] = True
    from services.rate_limiter import _api_limiter, _sync_limiter
    from services.auth_service import set_api_key
    from services.dashboard_service import DashboardService
    _api_limiter.reset()
    _sync_limiter.reset()
    set_api_key(API_KEY)
    DashboardService.invalidate_caches()
    with app.app_context():
        db.create_all()
        server._cursor.initialize()
        server.set_sync_engine(_fake_engine(FakeChainSource(head=Config.START_BLOCK)))
        yield app.test_client()
        server.set_sync_engine(None)
        db.session.remove()
        db.drop_all()


def _seed(*events):
    applier = EventApplier(strict=False)
    for ev in events:
        applier.apply(ev)
    db.session.commit()


def _posted(block, job_id=JOB_A, **kw):
    args = dict(jobId=job_id, title='T', posterId='p1', reward=1000)
    args.update(kw)
    return make_event('JobPosted', block, **args)


# ===================================================================
# Descriptor & health
# ===================================================================

class TestDescriptor:

    def test_index(self, client):
        resp = client.get('/')
        assert resp.status_code == 200
        data = resp.get_json()
        assert data['name'] == server.SERVICE_NAME
        assert data['version'] == server.SERVICE_VERSION
        assert 'POST /sync' in data['endpoints']

    def test_health(self, client):
        resp = client.get('/health')
        assert resp.status_code == 200
        assert resp.get_json()['status'] == 'ok'

    def test_request_id_echoed(self, client):
        resp = client.get('/health', headers={'X-Request-ID': 'abc-123'})
        assert resp.headers['X-Request-ID'] == 'abc-123'


# ===================================================================
# Jobs
# ===================================================================

class TestJobs:

    def test_list_newest_first(self, client):
        _seed(_posted(500, JOB_A), _posted(600, JOB_B, reward=5))
        data = client.get('/jobs').get_json()
        assert data['total'] == 2
        assert [j['job_id'] for j in data['jobs']] == [JOB_B, JOB_A]
        assert data['limit'] == 100

    def test_list_filter_and_clamp(self, client):
        _seed(_posted(500, JOB_A), _posted(600, JOB_B),
              make_event('JobClaimed', 610, jobId=JOB_B, claimerId='p2'))
        data = client.get('/jobs?status=claimed&limit=9999').get_json()
        assert data['total'] == 1
        assert data['jobs'][0]['job_id'] == JOB_B
        assert data['limit'] == 500

    def test_list_bad_limit_falls_back(self, client):
        data = client.get('/jobs?limit=abc').get_json()
        assert data['limit'] == 100
        assert data['jobs'] == []

    def test_detail_with_history(self, client):
        _seed(_posted(500), make_event('JobClaimed', 510, jobId=JOB_A, claimerId='p2'))
        resp = client.get(f'/jobs/{JOB_A}')
        assert resp.status_code == 200
        data = resp.get_json()
        assert data['job']['status'] == 'claimed'
        assert [e['event_type'] for e in data['history']] == ['JobPosted', 'JobClaimed']
        assert data['history'][1]['data']['claimerId'] == 'p2'

    def test_detail_without_prefix_and_upper_case(self, client):
        _seed(_posted(500))
        assert client.get(f'/jobs/{JOB_A[2:]}').status_code == 200
        assert client.get('/jobs/0x' + 'AA' * 32).status_code == 200

    def test_detail_invalid_id(self, client):
        resp = client.get('/jobs/0x1234')
        assert resp.status_code == 400

    def test_detail_not_found(self, client):
        resp = client.get('/jobs/0x' + 'cc' * 32)
        assert resp.status_code == 404
        assert resp.get_json()['error'] == 'Job not found'


# ===================================================================
# Agents
# ===================================================================

class TestAgents:

    def test_list_agents(self, client):
        _seed(make_event('AgentRegistered', 100, agentId='a1', name='One', wallet=WALLET_1),
              make_event('AgentRegistered', 200, agentId='a2', name='Two', wallet=WALLET_2))
        data = client.get('/agents').get_json()
        assert data['total'] == 2
        assert [a['agent_id'] for a in data['agents']] == ['a2', 'a1']

    def test_wallet_jobs_via_registered_agent(self, client):
        _seed(make_event('AgentRegistered', 100, agentId='agent-1', name='One', wallet=WALLET_1),
              _posted(500, posterId='agent-1'),
              _posted(600, JOB_B, posterId='someone'),
              make_event('JobClaimed', 610, jobId=JOB_B, claimerId='agent-1'))
        data = client.get(f'/agents/{WALLET_1}/jobs').get_json()
        assert data['agent']['agent_id'] == 'agent-1'
        assert [j['job_id'] for j in data['posted']] == [JOB_A]
        assert [j['job_id'] for j in data['claimed']] == [JOB_B]

    def test_wallet_jobs_partial_match_fallback(self, client):
        _seed(_posted(500, posterId='p1'),
              make_event('JobClaimed', 510, jobId=JOB_A, claimerId=WALLET_2))
        data = client.get(f'/agents/{WALLET_2}/jobs').get_json()
        assert data['agent'] is None
        assert data['posted'] == []
        assert [j['job_id'] for j in data['claimed']] == [JOB_A]

    def test_wallet_jobs_invalid_address(self, client):
        assert client.get('/agents/0x1234/jobs').status_code == 400
        assert client.get('/agents/' + '12' * 20 + '/jobs').status_code == 400


# ===================================================================
# Stats & events
# ===================================================================

class TestStats:

    def test_stats_totals(self, client):
        _seed(_posted(500, reward=10 ** 30), _posted(600, JOB_B, reward=5),
              make_event('JobCancelled', 610, jobId=JOB_B))
        data = client.get('/stats').get_json()
        assert data['total_jobs'] == 2
        assert data['total_events'] == 3
        assert data['total_escrowed'] == str(10 ** 30 + 5)
        assert data['last_synced_block'] == Config.START_BLOCK
        statuses = {row['status']: row['count'] for row in data['job_status_breakdown']}
        assert statuses == {'open': 1, 'cancelled': 1}
        assert data['event_type_breakdown'][0] == {'event_type': 'JobPosted', 'count': 2}

    def test_stats_etag_not_modified(self, client):
        first = client.get('/stats')
        etag = first.headers['ETag']
        second = client.get('/stats', headers={'If-None-Match': etag})
        assert second.status_code == 304


class TestEvents:

    def test_recent_events_newest_first(self, client):
        _seed(_posted(500), make_event('JobClaimed', 510, jobId=JOB_A, claimerId='p2'))
        data = client.get('/events').get_json()
        assert data['count'] == 2
        assert [e['block_number'] for e in data['events']] == [510, 500]
        assert isinstance(data['events'][0]['data'], dict)

    def test_filter_by_type(self, client):
        _seed(_posted(500), make_event('JobClaimed', 510, jobId=JOB_A, claimerId='p2'))
        data = client.get('/events?type=JobPosted&limit=1').get_json()
        assert data['count'] == 1
        assert data['events'][0]['event_type'] == 'JobPosted'

    def test_gaps_lists_events_for_unknown_jobs(self, client):
        _seed(_posted(500, JOB_B),
              make_event('JobClaimed', 510, jobId=JOB_A, claimerId='p2'),
              make_event('AgentRegistered', 520, agentId='a1', name='A', wallet=WALLET_1))
        data = client.get('/events/gaps').get_json()
        assert data['count'] == 1
        assert data['events'][0]['job_id'] == JOB_A
        assert data['events'][0]['event_type'] == 'JobClaimed'
        assert data['events'][0]['data']['claimerId'] == 'p2'

    def test_gaps_empty_when_consistent(self, client):
        _seed(_posted(500), make_event('JobClaimed', 510, jobId=JOB_A, claimerId='p2'))
        assert client.get('/events/gaps').get_json() == {'events': [], 'count': 0}


# ===================================================================
# Sync
# ===================================================================

class TestSync:

    def test_status(self, client):
        data = client.get('/sync/status').get_json()
        assert data['last_block'] == Config.START_BLOCK
        assert data['running'] is False
        assert data['last_result'] is None

    def test_requires_api_key(self, client):
        assert client.post('/sync').status_code == 401
        assert client.post('/sync', headers={'X-API-Key': 'wrong'}).status_code == 401

    def test_manual_sync_success(self, client):
        head = Config.START_BLOCK + 10
        server.set_sync_engine(_fake_engine(FakeChainSource(head=head, events=[
            _posted(Config.START_BLOCK + 5),
        ])))
        resp = client.post('/sync', headers=AUTH)
        assert resp.status_code == 200
        data = resp.get_json()
        assert data['success'] is True
        assert data['last_block'] == head
        assert data['result']['events_applied'] == 1
        assert data['result']['chunks'] == 1
        assert db.session.get(Job, JOB_A) is not None

        status = client.get('/sync/status').get_json()
        assert status['last_block'] == head
        assert status['last_result']['status'] == 'synced'

    def test_manual_sync_refreshes_stats(self, client):
        assert client.get('/stats').get_json()['total_jobs'] == 0
        server.set_sync_engine(_fake_engine(FakeChainSource(head=Config.START_BLOCK + 10, events=[
            _posted(Config.START_BLOCK + 5),
        ])))
        client.post('/sync', headers=AUTH)
        assert client.get('/stats').get_json()['total_jobs'] == 1

    def test_manual_sync_up_to_date(self, client):
        resp = client.post('/sync', headers=AUTH)
        assert resp.status_code == 200
        assert resp.get_json()['result']['status'] == 'up_to_date'

    def test_busy_returns_409(self, client):
        engine = server.get_sync_engine()
        engine._run_lock.acquire()
        try:
            resp = client.post('/sync', headers=AUTH)
        finally:
            engine._run_lock.release()
        assert resp.status_code == 409
        assert resp.get_json()['last_block'] == Config.START_BLOCK

    def test_chain_failure_returns_500(self, client):
        source = FakeChainSource(head=Config.START_BLOCK + 10)
        source.height_error = True
        server.set_sync_engine(_fake_engine(source))
        resp = client.post('/sync', headers=AUTH)
        assert resp.status_code == 500
        data = resp.get_json()
        assert data['error'] == 'Sync failed'
        assert data['last_block'] == Config.START_BLOCK

    def test_unexpected_error_is_not_leaked(self, client):
        engine = MagicMock()
        engine.run.side_effect = RuntimeError("secret connection string")
        server.set_sync_engine(engine)
        resp = client.post('/sync', headers=AUTH)
        assert resp.status_code == 500
        assert resp.get_json() == {"error": "Sync failed"}

    def test_sync_rate_limited(self, client):
        for _ in range(Config.SYNC_RATE_LIMIT_PER_MINUTE):
            client.post('/sync')
        resp = client.post('/sync', headers=AUTH)
        assert resp.status_code == 429
        assert 'Retry-After' in resp.headers

    def test_no_duplicate_events_across_manual_runs(self, client):
        source = FakeChainSource(head=Config.START_BLOCK + 10, events=[
            _posted(Config.START_BLOCK + 5),
        ])
        server.set_sync_engine(_fake_engine(source))
        client.post('/sync', headers=AUTH)
        server._cursor.reset(Config.START_BLOCK)
        db.session.commit()
        client.post('/sync', headers=AUTH)
        assert EventRecord.query.count() == 1

    def test_stats_follow_cursor_when_no_events_applied(self, client):
        assert client.get('/stats').get_json()['last_synced_block'] == Config.START_BLOCK
        server.set_sync_engine(_fake_engine(FakeChainSource(head=Config.START_BLOCK + 100)))
        resp = client.post('/sync', headers=AUTH)
        assert resp.get_json()['result']['events_applied'] == 0
        assert client.get('/stats').get_json()['last_synced_block'] == Config.START_BLOCK + 100


# ===================================================================
# General rate limit
# ===================================================================

class TestGeneralRateLimit:

    def test_health_is_rate_limited(self, client, monkeypatch):
        from services.rate_limiter import _api_limiter
        monkeypatch.setattr(_api_limiter, 'max_requests', 2)
        assert client.get('/health').status_code == 200
        assert client.get('/health').status_code == 200
        assert client.get('/health').status_code == 429

    def test_sync_counts_against_general_limit(self, client, monkeypatch):
        from services.rate_limiter import _api_limiter
        monkeypatch.setattr(_api_limiter, 'max_requests', 1)
        assert client.post('/sync', headers=AUTH).status_code == 200
        resp = client.post('/sync', headers=AUTH)
        assert resp.status_code == 429
        assert resp.get_json()['error'] == _api_limiter.message
