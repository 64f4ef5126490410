"""
Sync cursor: durable watermark of the last fully synced block (inclusive).
"""
import logging
import threading

from models import db, SyncState, SYNC_STATE_ID

logger = logging.getLogger('indexer.cursor')


class SqlSyncCursor:
    """Cursor backed by the single-row sync_state table.

    advance() and reset() write inside the caller's transaction; the
    sync engine commits them together with the chunk they cover.
    """

    def __init__(self, start_block: int, session=None):
        self.start_block = start_block
        self._session = session

    @property
    def session(self):
        return self._session or db.session

    def initialize(self) -> int:
        """Insert the singleton row on first boot. Returns the current value."""
        state = self.session.get(SyncState, SYNC_STATE_ID)
        if state is None:
            state = SyncState(id=SYNC_STATE_ID, last_block=self.start_block)
            self.session.add(state)
            self.session.commit()
            logger.info("Sync cursor initialized at block %d", self.start_block)
        return state.last_block

    def read(self) -> int:
        state = self.session.get(SyncState, SYNC_STATE_ID)
        if state is None:
            return self.start_block
        return state.last_block

    def advance(self, block_number: int) -> int:
        state = self.session.get(SyncState, SYNC_STATE_ID)
        if state is None:
            state = SyncState(id=SYNC_STATE_ID, last_block=self.start_block)
            self.session.add(state)
        if block_number < state.last_block:
            logger.warning("Refusing to move cursor backwards: %d -> %d", state.last_block, block_number)
            return state.last_block
        state.last_block = block_number
        self.session.flush()
        return block_number

    def reset(self, block_number: int) -> int:
        """Operator rewind: set the cursor to any value, including lower ones."""
        state = self.session.get(SyncState, SYNC_STATE_ID)
        if state is None:
            self.session.add(SyncState(id=SYNC_STATE_ID, last_block=block_number))
        else:
            state.last_block = block_number
        self.session.flush()
        logger.warning("Sync cursor reset to block %d", block_number)
        return block_number


class MemorySyncCursor:
    """In-process cursor with the same interface, for tests and dry runs."""

    def __init__(self, start_block: int = 0):
        self.start_block = start_block
        self._last_block = start_block
        self._lock = threading.Lock()
        self.history = []  # every accepted advance, in order

    def initialize(self) -> int:
        return self.read()

    def read(self) -> int:
        with self._lock:
            return self._last_block

    def advance(self, block_number: int) -> int:
        with self._lock:
            if block_number < self._last_block:
                logger.warning("Refusing to move cursor backwards: %d -> %d", self._last_block, block_number)
                return self._last_block
            self._last_block = block_number
            self.history.append(block_number)
            return block_number

    def reset(self, block_number: int) -> int:
        with self._lock:
            self._last_block = block_number
            return block_number
