"""
EventApplier: projects decoded escrow events onto the jobs/agents tables.

Each applied event appends exactly one audit row (events table). Job status
changes go through transition(), which knows the legal lifecycle:

    open -> claimed -> submitted -> verified
    claimed -> claim_expired        submitted -> verify_expired
    open|claimed -> cancelled       open|claimed|submitted -> emergency_released

JobPosted always (re)creates the job as 'open'. Updates for a job that has no
row affect nothing; the audit row is still written so the gap can be found later.
"""
import json
import logging
from datetime import datetime

from config import Config
from models import db, Job, Agent, EventRecord, JOB_STATUSES

logger = logging.getLogger('indexer.applier')

NON_TERMINAL_STATUSES = ('open', 'claimed', 'submitted')

# event name -> (statuses it may legally follow, resulting status)
_TRANSITIONS = {
    'JobPosted': (JOB_STATUSES, 'open'),
    'JobClaimed': (('open',), 'claimed'),
    'WorkSubmitted': (('claimed',), 'submitted'),
    'JobVerified': (('submitted',), 'verified'),
    'JobCancelled': (('open', 'claimed'), 'cancelled'),
    'ClaimExpired': (('claimed',), 'claim_expired'),
    'VerifyExpired': (('submitted',), 'verify_expired'),
    'EmergencyRelease': (NON_TERMINAL_STATUSES, 'emergency_released'),
}


def transition(current_status, event_name) -> tuple:
    """Return (new_status, legal) for a lifecycle event applied to a job.

    current_status is None for a job that has no row yet.
    Raises ValueError for events that do not drive job status.
    """
    if event_name not in _TRANSITIONS:
        raise ValueError(f"{event_name} is not a job lifecycle event")
    allowed_from, new_status = _TRANSITIONS[event_name]
    if event_name == 'JobPosted':
        return new_status, True
    return new_status, current_status in allowed_from


def _serialize(decoded) -> str:
    payload = dict(decoded.args)
    payload['eventName'] = decoded.event_name
    return json.dumps(payload, default=str, sort_keys=True)


class EventApplier:
    def __init__(self, session=None, strict=None):
        self._session = session
        self.strict = Config.STRICT_TRANSITIONS if strict is None else strict
        self._handlers = {
            'AgentRegistered': self._agent_registered,
            'JobPosted': self._job_posted,
            'JobClaimed': self._job_claimed,
            'WorkSubmitted': self._work_submitted,
            'JobVerified': self._job_verified,
            'JobCancelled': self._job_cancelled,
            'ClaimExpired': self._status_only,
            'VerifyExpired': self._status_only,
            'EmergencyRelease': self._status_only,
        }

    @property
    def session(self):
        return self._session or db.session

    def is_applied(self, decoded) -> bool:
        return self.session.query(EventRecord.id).filter_by(
            tx_hash=decoded.tx_hash, log_index=decoded.log_index,
        ).first() is not None

    def apply(self, decoded) -> bool:
        """Apply one decoded event. Returns False if it was already applied."""
        if self.is_applied(decoded):
            logger.debug("Skipping already-applied %s tx=%s log=%d",
                         decoded.event_name, decoded.tx_hash, decoded.log_index)
            return False

        now = datetime.utcnow()
        args = decoded.args
        self.session.add(EventRecord(
            event_type=decoded.event_name,
            job_id=args.get('jobId'),
            agent_id=args.get('agentId'),
            tx_hash=decoded.tx_hash,
            block_number=decoded.block_number,
            log_index=decoded.log_index,
            data=_serialize(decoded),
            created_at=now,
        ))

        handler = self._handlers.get(decoded.event_name)
        if handler is not None:
            handler(decoded, now)
        self.session.flush()
        return True

    # --- Agents ---

    def _agent_registered(self, decoded, now):
        args = decoded.args
        agent = self.session.get(Agent, args['agentId'])
        if agent is None:
            agent = Agent(agent_id=args['agentId'])
            self.session.add(agent)
        agent.name = args.get('name')
        agent.wallet = args.get('wallet')
        agent.registered_block = decoded.block_number
        agent.created_at = now

    # --- Jobs ---

    def _job_posted(self, decoded, now):
        args = decoded.args
        job = self.session.get(Job, args['jobId'])
        if job is None:
            job = Job(job_id=args['jobId'])
            self.session.add(job)
        reward = args.get('reward')
        # Full replace: a re-post wipes every field of the stale row
        job.title = args.get('title')
        job.poster_id = args.get('posterId')
        job.claimer_id = None
        job.reward = str(reward) if reward is not None else None
        job.status = 'open'
        job.submission_hash = None
        job.approved = None
        job.created_block = decoded.block_number
        job.claimed_block = None
        job.submitted_block = None
        job.verified_block = None
        job.cancelled_block = None
        job.created_at = now
        job.updated_at = now

    def _load_for_transition(self, decoded):
        """Fetch the target job and move its status. Returns the job, or None to skip."""
        job_id = decoded.args.get('jobId')
        job = self.session.get(Job, job_id) if job_id else None
        if job is None:
            logger.warning("Consistency gap: %s for unknown job %s (block %d, tx %s)",
                           decoded.event_name, job_id, decoded.block_number, decoded.tx_hash)
            return None

        new_status, legal = transition(job.status, decoded.event_name)
        if not legal:
            if self.strict:
                logger.warning("Rejected illegal transition %s -> %s for job %s via %s",
                               job.status, new_status, job.job_id, decoded.event_name)
                return None
            logger.info("Illegal transition %s -> %s for job %s via %s (applied, trusting chain order)",
                        job.status, new_status, job.job_id, decoded.event_name)
        job.status = new_status
        return job

    def _job_claimed(self, decoded, now):
        job = self._load_for_transition(decoded)
        if job is None:
            return
        job.claimer_id = decoded.args.get('claimerId')
        job.claimed_block = decoded.block_number
        job.updated_at = now

    def _work_submitted(self, decoded, now):
        job = self._load_for_transition(decoded)
        if job is None:
            return
        job.submission_hash = decoded.args.get('submissionHash')
        job.submitted_block = decoded.block_number
        job.updated_at = now

    def _job_verified(self, decoded, now):
        job = self._load_for_transition(decoded)
        if job is None:
            return
        job.approved = bool(decoded.args.get('approved'))
        job.verified_block = decoded.block_number
        job.updated_at = now

    def _job_cancelled(self, decoded, now):
        job = self._load_for_transition(decoded)
        if job is None:
            return
        job.cancelled_block = decoded.block_number
        job.updated_at = now

    def _status_only(self, decoded, now):
        # ClaimExpired / VerifyExpired / EmergencyRelease carry no watermark
        job = self._load_for_transition(decoded)
        if job is None:
            return
        job.updated_at = now
