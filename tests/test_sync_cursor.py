import os

# Force DEV_MODE and test DB before importing app
os.environ['DEV_MODE'] = 'true'
os.environ['DATABASE_URL'] = 'sqlite://'  # in-memory
os.environ['SYNC_ENABLED'] = 'false'

import pytest

from server import app
from models import db, SyncState
from services.sync_cursor import SqlSyncCursor, MemorySyncCursor


@pytest.fixture
def ctx():
    """Create an app context with a fresh in-memory DB."""
    app.config['TESTING'] = True
    with app.app_context():
        db.create_all()
        yield
        db.session.remove()
        db.drop_all()


class TestSqlSyncCursor:

    def test_read_before_init_returns_start_block(self, ctx):
        assert SqlSyncCursor(start_block=41_000_000).read() == 41_000_000

    def test_initialize_once(self, ctx):
        cursor = SqlSyncCursor(start_block=100)
        assert cursor.initialize() == 100
        cursor.advance(500)
        db.session.commit()

        # A restart with a different START_BLOCK must not clobber progress
        assert SqlSyncCursor(start_block=7).initialize() == 500
        assert SyncState.query.count() == 1

    def test_advance_persists_on_commit(self, ctx):
        cursor = SqlSyncCursor(start_block=100)
        cursor.initialize()
        cursor.advance(5100)
        db.session.commit()
        db.session.expire_all()
        assert db.session.get(SyncState, 1).last_block == 5100

    def test_advance_uncommitted_is_rolled_back(self, ctx):
        cursor = SqlSyncCursor(start_block=100)
        cursor.initialize()
        cursor.advance(5100)
        db.session.rollback()
        assert cursor.read() == 100

    def test_advance_refuses_to_go_backwards(self, ctx):
        cursor = SqlSyncCursor(start_block=100)
        cursor.initialize()
        cursor.advance(900)
        assert cursor.advance(800) == 900
        assert cursor.read() == 900

    def test_advance_same_value_is_allowed(self, ctx):
        cursor = SqlSyncCursor(start_block=100)
        cursor.initialize()
        assert cursor.advance(100) == 100

    def test_reset_can_rewind(self, ctx):
        cursor = SqlSyncCursor(start_block=100)
        cursor.initialize()
        cursor.advance(900)
        cursor.reset(50)
        db.session.commit()
        assert cursor.read() == 50


class TestMemorySyncCursor:

    def test_same_contract(self):
        cursor = MemorySyncCursor(100)
        assert cursor.initialize() == 100
        cursor.advance(200)
        assert cursor.advance(150) == 200
        assert cursor.history == [200]
        cursor.reset(10)
        assert cursor.read() == 10
