from sqlalchemy import func, or_

from models import db, Agent, Job, EventRecord, JOB_STATUSES


class JobService:
    @staticmethod
    def list_jobs(status=None, limit=100, offset=0):
        """Paginated job listing, newest first. Unknown statuses are ignored."""
        query = Job.query
        if status and status in JOB_STATUSES:
            query = query.filter(Job.status == status)

        total = query.count()

        # Clamp limit
        limit = min(max(1, limit), 500)
        offset = max(0, offset)

        jobs = (
            query.order_by(Job.created_block.desc(), Job.job_id)
            .limit(limit)
            .offset(offset)
            .all()
        )
        return jobs, total

    @staticmethod
    def get_job(job_id: str) -> Job:
        # job ids are stored lower-cased; accept either case from callers
        return (
            Job.query.filter(or_(Job.job_id == job_id, Job.job_id == job_id.lower())).first()
        )

    @staticmethod
    def get_history(job_id: str) -> list:
        return (
            EventRecord.query.filter_by(job_id=job_id)
            .order_by(EventRecord.block_number.asc(), EventRecord.log_index.asc())
            .all()
        )

    @staticmethod
    def jobs_for_wallet(address: str) -> dict:
        """Jobs posted/claimed by the agent registered with this wallet.

        Falls back to a partial match of the address (first 8 hex chars) on
        poster/claimer ids when no agent owns the wallet.
        """
        normalized = address.lower()
        agent = Agent.query.filter(func.lower(Agent.wallet) == normalized).first()

        if agent:
            posted = Job.query.filter_by(poster_id=agent.agent_id).all()
            claimed = Job.query.filter_by(claimer_id=agent.agent_id).all()
        else:
            partial = f"%{normalized[2:10]}%"
            posted = Job.query.filter(func.lower(Job.poster_id).like(partial)).all()
            claimed = Job.query.filter(func.lower(Job.claimer_id).like(partial)).all()

        return {
            "address": normalized,
            "agent": agent.to_dict() if agent else None,
            "posted": [j.to_dict() for j in posted],
            "claimed": [j.to_dict() for j in claimed],
        }

    @staticmethod
    def to_dict(job: Job, history=None) -> dict:
        result = {"job": job.to_dict()}
        if history is not None:
            from services.event_service import EventService
            result["history"] = [EventService.to_dict(e) for e in history]
        return result

    @staticmethod
    def total_escrowed() -> int:
        """Sum of all job rewards. Rewards are uint256 strings, so summed in Python."""
        total = 0
        for (reward,) in db.session.query(Job.reward).all():
            if reward:
                try:
                    total += int(reward)
                except ValueError:
                    continue
        return total
