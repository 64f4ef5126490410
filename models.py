from flask_sqlalchemy import SQLAlchemy
from datetime import datetime, timezone

db = SQLAlchemy()

# Job lifecycle statuses, in the order the contract normally moves through them
JOB_STATUSES = (
    'open', 'claimed', 'submitted', 'verified',
    'cancelled', 'claim_expired', 'verify_expired', 'emergency_released',
)

SYNC_STATE_ID = 1


def utc_iso(dt):
    """Render a naive-UTC or aware datetime as ISO-8601 with offset, or None."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.isoformat()


class Job(db.Model):
    __tablename__ = 'jobs'
    job_id = db.Column(db.String(66), primary_key=True)  # 0x + 32-byte hex, lower-cased
    title = db.Column(db.Text)
    poster_id = db.Column(db.String(200))
    claimer_id = db.Column(db.String(200), nullable=True)
    reward = db.Column(db.String(80))  # integer token amount as decimal string
    status = db.Column(db.String(20), default='open', nullable=False)
    submission_hash = db.Column(db.String(130), nullable=True)
    approved = db.Column(db.Boolean, nullable=True)
    # Block watermarks per lifecycle transition
    created_block = db.Column(db.BigInteger)
    claimed_block = db.Column(db.BigInteger)
    submitted_block = db.Column(db.BigInteger)
    verified_block = db.Column(db.BigInteger)
    cancelled_block = db.Column(db.BigInteger)
    # Wall-clock, display only
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow)

    __table_args__ = (
        db.CheckConstraint(
            "status IN ({})".format(', '.join(f"'{s}'" for s in JOB_STATUSES)),
            name='ck_jobs_status',
        ),
        db.Index('ix_jobs_poster_id', 'poster_id'),
        db.Index('ix_jobs_claimer_id', 'claimer_id'),
        db.Index('ix_jobs_status', 'status'),
    )

    def to_dict(self):
        return {
            "job_id": self.job_id,
            "title": self.title,
            "poster_id": self.poster_id,
            "claimer_id": self.claimer_id,
            "reward": self.reward,
            "status": self.status,
            "submission_hash": self.submission_hash,
            "approved": self.approved,
            "created_block": self.created_block,
            "claimed_block": self.claimed_block,
            "submitted_block": self.submitted_block,
            "verified_block": self.verified_block,
            "cancelled_block": self.cancelled_block,
            "created_at": utc_iso(self.created_at),
            "updated_at": utc_iso(self.updated_at),
        }


class Agent(db.Model):
    __tablename__ = 'agents'
    agent_id = db.Column(db.String(200), primary_key=True)
    name = db.Column(db.String(200))
    wallet = db.Column(db.String(42))
    registered_block = db.Column(db.BigInteger)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    __table_args__ = (
        db.Index('ix_agents_wallet', 'wallet'),
    )

    def to_dict(self):
        return {
            "agent_id": self.agent_id,
            "name": self.name,
            "wallet": self.wallet,
            "registered_block": self.registered_block,
            "created_at": utc_iso(self.created_at),
        }


class EventRecord(db.Model):
    """Append-only audit log: one row per applied chain log."""
    __tablename__ = 'events'
    id = db.Column(db.Integer, primary_key=True, autoincrement=True)
    event_type = db.Column(db.String(64), nullable=False)
    job_id = db.Column(db.String(66), nullable=True)
    agent_id = db.Column(db.String(200), nullable=True)
    tx_hash = db.Column(db.String(66), nullable=False)
    block_number = db.Column(db.BigInteger, nullable=False)
    log_index = db.Column(db.Integer, nullable=False)
    data = db.Column(db.Text)  # JSON copy of decoded args + eventName
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    __table_args__ = (
        db.UniqueConstraint('tx_hash', 'log_index', name='uq_events_tx_log'),
        db.Index('ix_events_job_id', 'job_id'),
        db.Index('ix_events_event_type', 'event_type'),
        db.Index('ix_events_block_log', 'block_number', 'log_index'),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "event_type": self.event_type,
            "job_id": self.job_id,
            "agent_id": self.agent_id,
            "tx_hash": self.tx_hash,
            "block_number": self.block_number,
            "log_index": self.log_index,
            "data": self.data,
            "created_at": utc_iso(self.created_at),
        }


class SyncState(db.Model):
    """Singleton row holding the last fully synced block (inclusive)."""
    __tablename__ = 'sync_state'
    id = db.Column(db.Integer, primary_key=True, default=SYNC_STATE_ID)
    last_block = db.Column(db.BigInteger, nullable=False)

    __table_args__ = (
        db.CheckConstraint(f'id = {SYNC_STATE_ID}', name='ck_sync_state_singleton'),
    )
