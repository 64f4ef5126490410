"""Read-side queries over the events audit log."""
import json
import logging

from models import db, Job, EventRecord

logger = logging.getLogger('indexer.events')

EVENT_TYPES = (
    'AgentRegistered', 'JobPosted', 'JobClaimed', 'WorkSubmitted',
    'JobVerified', 'JobCancelled', 'ClaimExpired', 'VerifyExpired',
    'EmergencyRelease', 'OwnershipTransferred',
)


class EventService:
    @staticmethod
    def recent(event_type=None, limit=100) -> list:
        """Most recent events first. Unknown event types are ignored."""
        limit = min(max(1, limit), 200)
        query = EventRecord.query
        if event_type and event_type in EVENT_TYPES:
            query = query.filter(EventRecord.event_type == event_type)
        return (
            query.order_by(EventRecord.block_number.desc(), EventRecord.log_index.desc())
            .limit(limit)
            .all()
        )

    @staticmethod
    def consistency_gaps(limit=200) -> list:
        """Job events whose job has no row, e.g. because its JobPosted was never seen."""
        rows = (
            db.session.query(EventRecord)
            .outerjoin(Job, Job.job_id == EventRecord.job_id)
            .filter(EventRecord.job_id.isnot(None), Job.job_id.is_(None))
            .order_by(EventRecord.block_number.asc(), EventRecord.log_index.asc())
            .limit(limit)
            .all()
        )
        if rows:
            logger.info("consistency_gaps: %d orphaned job events", len(rows))
        return rows

    @staticmethod
    def to_dict(event: EventRecord) -> dict:
        result = event.to_dict()
        # The stored payload is opaque text; decode it for display when possible
        try:
            result["data"] = json.loads(event.data) if event.data else None
        except ValueError:
            pass
        return result
