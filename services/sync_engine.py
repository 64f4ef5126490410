"""
SyncEngine: fetch -> decode -> apply -> advance loop over bounded block chunks.

The cursor only ever moves to the end of a chunk whose logs were all fetched
and applied, in the same DB transaction as those writes. A chunk that keeps
failing stops the run, so the next run restarts from the same boundary and
no block range is ever skipped. Chunks after a failed one are not fetched
in that run.
"""
import logging
import threading
import time
from datetime import datetime, timezone

from sqlalchemy.exc import SQLAlchemyError

from config import Config
from models import db
from services.chain_source import ProviderError, DecodeError

logger = logging.getLogger('indexer.sync')


def plan_chunks(from_block: int, to_block: int, chunk_size: int) -> list:
    """Split [from_block, to_block] (inclusive) into consecutive chunks of chunk_size blocks."""
    if chunk_size < 1:
        raise ValueError("chunk_size must be >= 1")
    chunks = []
    start = from_block
    while start <= to_block:
        end = min(start + chunk_size - 1, to_block)
        chunks.append((start, end))
        start = end + 1
    return chunks


class SyncEngine:
    def __init__(self, source, cursor, applier, address=None, chunk_size=None,
                 retries=None, backoff=None, session=None, sleep=time.sleep):
        self.source = source
        self.cursor = cursor
        self.applier = applier
        self.address = address or Config.ESCROW_ADDRESS
        self.chunk_size = chunk_size or Config.SYNC_CHUNK_SIZE
        self.retries = Config.SYNC_CHUNK_RETRIES if retries is None else retries
        self.backoff = Config.SYNC_RETRY_BACKOFF if backoff is None else backoff
        self._session = session
        self._sleep = sleep
        # Single-flight guard: timer and on-demand runs never overlap
        self._run_lock = threading.Lock()
        self.last_result = None

    @property
    def session(self):
        return self._session or db.session

    def is_running(self) -> bool:
        return self._run_lock.locked()

    def run(self) -> dict:
        """Run one sync pass to the current chain head. Never raises for chain errors."""
        if not self._run_lock.acquire(blocking=False):
            logger.info("Sync already in progress, skipping this trigger")
            return {"status": "busy", "last_block": self.cursor.read()}
        try:
            result = self._run()
            result["finished_at"] = datetime.now(timezone.utc).isoformat()
            self.last_result = result
            return result
        finally:
            self._run_lock.release()

    def _run(self) -> dict:
        last_block = self.cursor.read()
        result = {
            "status": "up_to_date",
            "from_block": None,
            "to_block": None,
            "chunks": 0,
            "events_applied": 0,
            "duplicates": 0,
            "logs_skipped": 0,
            "last_block": last_block,
        }

        try:
            head = self.source.current_height()
        except ProviderError as e:
            logger.error("Failed to get block number: %s", e)
            result.update(status="failed", error="height check failed")
            return result

        if last_block >= head:
            logger.info("Already synced to block %d (head %d)", last_block, head)
            return result

        chunks = plan_chunks(last_block + 1, head, self.chunk_size)
        result.update(from_block=last_block + 1, to_block=head, status="synced")
        logger.info("Syncing blocks %d to %d in %d chunk(s)", last_block + 1, head, len(chunks))

        for chunk_from, chunk_to in chunks:
            error = self._process_chunk(chunk_from, chunk_to, result)
            if error:
                result["status"] = "partial" if result["chunks"] else "failed"
                result["error"] = error
                break
            result["chunks"] += 1
            result["last_block"] = chunk_to

        logger.info("Sync %s. Processed %d events. Last block: %d",
                    result["status"], result["events_applied"], result["last_block"])
        return result

    def _process_chunk(self, chunk_from, chunk_to, result):
        """Fetch, decode and apply one chunk, then advance the cursor. Returns an error string or None."""
        try:
            logs = self._fetch_with_retry(chunk_from, chunk_to)
        except ProviderError as e:
            logger.error("Error fetching %d-%d: %s", chunk_from, chunk_to, e)
            return f"fetch failed for {chunk_from}-{chunk_to}"

        decoded = []
        for log in logs:
            try:
                decoded.append(self.source.decode(log))
            except DecodeError as e:
                result["logs_skipped"] += 1
                logger.debug("Skipping undecodable log in %d-%d: %s", chunk_from, chunk_to, e)
        decoded.sort(key=lambda ev: (ev.block_number, ev.log_index))

        previous = self.cursor.read()
        applied = duplicates = 0
        try:
            for event in decoded:
                if self.applier.apply(event):
                    applied += 1
                else:
                    duplicates += 1
            self.cursor.advance(chunk_to)
            self.session.commit()
        except SQLAlchemyError as e:
            self.session.rollback()
            if self.cursor.read() != previous:
                self.cursor.reset(previous)
            logger.error("Error applying %d-%d: %s", chunk_from, chunk_to, e)
            return f"apply failed for {chunk_from}-{chunk_to}"

        result["events_applied"] += applied
        result["duplicates"] += duplicates
        logger.info("Chunk %d-%d: %d logs, %d applied, %d duplicate",
                    chunk_from, chunk_to, len(logs), applied, duplicates)
        return None

    def _fetch_with_retry(self, chunk_from, chunk_to):
        attempt = 0
        while True:
            try:
                return self.source.fetch_logs(self.address, chunk_from, chunk_to)
            except ProviderError as e:
                if attempt >= self.retries:
                    raise
                delay = self.backoff * (2 ** attempt)
                attempt += 1
                logger.warning("Fetch %d-%d failed (attempt %d/%d), retrying in %.1fs: %s",
                               chunk_from, chunk_to, attempt, self.retries + 1, delay, e)
                self._sleep(delay)
