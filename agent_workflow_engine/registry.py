"""Agent registry interface and an in-memory implementation."""

import logging
import uuid
from abc import ABC, abstractmethod

from .models import AgentHandle

logger = logging.getLogger(__name__)


class AgentRegistry(ABC):
    """Where worker agents are registered and looked up."""

    @abstractmethod
    async def create(
        self,
        slug: str,
        name: str,
        description: str,
        system_prompt: str,
        agent_type: str = "utility",
        capabilities: list[str] | None = None,
        user_id: str | None = None,
    ) -> AgentHandle:
        """Register a new agent and return its handle."""

    @abstractmethod
    async def list_agents(self, user_id: str) -> list[AgentHandle]:
        """Agents available to ``user_id``."""

    @abstractmethod
    async def get(self, slug: str, user_id: str | None = None) -> AgentHandle | None:
        """Look an agent up by slug; None when unknown."""


class InMemoryAgentRegistry(AgentRegistry):
    """
    Registry kept in a dict.

    Agents registered without a user are shared by everyone; agents created
    during a workflow belong to that workflow's user.
    """

    def __init__(self, agents: list[AgentHandle] | None = None):
        self._agents: dict[str, AgentHandle] = {}
        for agent in agents or []:
            self._agents[agent.slug] = agent

    async def create(
        self,
        slug: str,
        name: str,
        description: str,
        system_prompt: str,
        agent_type: str = "utility",
        capabilities: list[str] | None = None,
        user_id: str | None = None,
    ) -> AgentHandle:
        handle = AgentHandle(
            id=str(uuid.uuid4()),
            slug=slug,
            name=name,
            description=description,
            system_prompt=system_prompt,
            agent_type=agent_type,
            capabilities=capabilities or ["text"],
            user_id=user_id,
        )
        if slug in self._agents:
            logger.info(f"Replacing registered agent {slug}")
        self._agents[slug] = handle
        return handle

    async def list_agents(self, user_id: str) -> list[AgentHandle]:
        return [a for a in self._agents.values() if a.user_id in (None, user_id)]

    async def get(self, slug: str, user_id: str | None = None) -> AgentHandle | None:
        agent = self._agents.get(slug)
        if agent is None:
            return None
        if user_id is not None and agent.user_id not in (None, user_id):
            return None
        return agent
