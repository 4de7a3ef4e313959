"""Agent Registry: in-memory, concurrency-safe agent tracking.

The registry is the process-local source of truth for which agents exist.
Mutations (``register``, ``remove``, ``claim``) take a single asyncio lock;
reads never await and therefore always observe a fully applied mutation.

The container runtime remains the cross-process authority: a fresh process
rebuilds its registry from labelled containers (see
``AgentManager.adopt_existing``).
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from capsulate.errors import AgentAlreadyExistsError, AgentNotFoundError
from capsulate.models import Agent, AgentStatus

logger = logging.getLogger(__name__)


class AgentRegistry:
    """Tracks agents by id."""

    def __init__(self) -> None:
        self._agents: dict[str, Agent] = {}
        self._pending: set[str] = set()
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._agents)

    def __contains__(self, agent_id: object) -> bool:
        return agent_id in self._agents

    # ── Mutations ────────────────────────────────────────────────────────

    async def register(self, agent: Agent) -> None:
        """Add *agent*; raises ``AgentAlreadyExistsError`` on a duplicate id."""
        async with self._lock:
            if agent.agent_id in self._agents:
                raise AgentAlreadyExistsError(
                    "already registered", agent_id=agent.agent_id, operation="register"
                )
            self._agents[agent.agent_id] = agent
        logger.debug("Registered agent %s", agent.agent_id)

    async def remove(self, agent_id: str) -> Agent:
        """Drop *agent_id*; raises ``AgentNotFoundError`` if absent."""
        async with self._lock:
            agent = self._agents.pop(agent_id, None)
        if agent is None:
            raise AgentNotFoundError("not registered", agent_id=agent_id, operation="remove")
        agent.touch(AgentStatus.DESTROYED)
        logger.debug("Removed agent %s", agent_id)
        return agent

    @asynccontextmanager
    async def claim(self, agent_id: str) -> AsyncIterator[None]:
        """Reserve *agent_id* for the duration of a creation.

        The check for an existing or in-flight agent and the reservation
        happen under the registry lock, so two concurrent creations of the
        same id cannot both proceed.  The reservation is released on exit
        whether or not the creation succeeded; a successful creation must
        ``register`` the agent before leaving the block.
        """
        async with self._lock:
            if agent_id in self._agents or agent_id in self._pending:
                raise AgentAlreadyExistsError(
                    "already exists or is being created", agent_id=agent_id, operation="create"
                )
            self._pending.add(agent_id)
        try:
            yield
        finally:
            async with self._lock:
                self._pending.discard(agent_id)

    # ── Reads ────────────────────────────────────────────────────────────

    def get(self, agent_id: str) -> Agent | None:
        return self._agents.get(agent_id)

    def list(self) -> list[Agent]:
        """Snapshot of registered agents ordered by creation time."""
        return sorted(self._agents.values(), key=lambda a: a.created_at)

    def is_pending(self, agent_id: str) -> bool:
        return agent_id in self._pending
