from models import Agent


class AgentService:
    @staticmethod
    def list_agents(limit=100) -> tuple:
        """Registered agents, most recently (re)registered first."""
        limit = min(max(1, limit), 500)
        agents = (
            Agent.query.order_by(Agent.registered_block.desc(), Agent.agent_id)
            .limit(limit)
            .all()
        )
        return agents, Agent.query.count()
