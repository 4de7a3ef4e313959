"""Tests for the in-memory agent registry."""

import asyncio

import pytest

from capsulate.errors import AgentAlreadyExistsError, AgentNotFoundError
from capsulate.models import Agent, AgentStatus
from capsulate.registry import AgentRegistry


def _make_agent(agent_id: str = "a1", **kwargs) -> Agent:
    return Agent(
        agent_id=agent_id,
        container_name=f"capsulate-{agent_id}",
        host_workspace_path=f"/tmp/{agent_id}",
        **kwargs,
    )


class TestCRUD:
    @pytest.mark.asyncio
    async def test_register_and_get(self, registry: AgentRegistry):
        await registry.register(_make_agent())
        fetched = registry.get("a1")
        assert fetched is not None
        assert fetched.container_name == "capsulate-a1"
        assert "a1" in registry
        assert len(registry) == 1

    @pytest.mark.asyncio
    async def test_get_nonexistent(self, registry: AgentRegistry):
        assert registry.get("nope") is None

    @pytest.mark.asyncio
    async def test_duplicate_register_rejected(self, registry: AgentRegistry):
        await registry.register(_make_agent())
        with pytest.raises(AgentAlreadyExistsError):
            await registry.register(_make_agent())
        assert len(registry) == 1

    @pytest.mark.asyncio
    async def test_remove(self, registry: AgentRegistry):
        await registry.register(_make_agent())
        removed = await registry.remove("a1")
        assert removed.status is AgentStatus.DESTROYED
        assert registry.get("a1") is None

    @pytest.mark.asyncio
    async def test_remove_missing(self, registry: AgentRegistry):
        with pytest.raises(AgentNotFoundError):
            await registry.remove("ghost")

    @pytest.mark.asyncio
    async def test_list_is_snapshot_in_creation_order(self, registry: AgentRegistry):
        for agent_id in ("a1", "a2", "a3"):
            await registry.register(_make_agent(agent_id))
        listed = registry.list()
        assert [a.agent_id for a in listed] == ["a1", "a2", "a3"]
        await registry.remove("a2")
        assert len(listed) == 3


class TestClaim:
    @pytest.mark.asyncio
    async def test_claim_rejects_registered_id(self, registry: AgentRegistry):
        await registry.register(_make_agent())
        with pytest.raises(AgentAlreadyExistsError):
            async with registry.claim("a1"):
                pass

    @pytest.mark.asyncio
    async def test_claim_released_after_block(self, registry: AgentRegistry):
        async with registry.claim("a1"):
            assert registry.is_pending("a1")
        assert not registry.is_pending("a1")

    @pytest.mark.asyncio
    async def test_claim_released_on_error(self, registry: AgentRegistry):
        with pytest.raises(RuntimeError):
            async with registry.claim("a1"):
                raise RuntimeError("boom")
        async with registry.claim("a1"):
            pass

    @pytest.mark.asyncio
    async def test_concurrent_claims_single_winner(self, registry: AgentRegistry):
        entered = asyncio.Event()
        release = asyncio.Event()

        async def first():
            async with registry.claim("a1"):
                entered.set()
                await release.wait()
                await registry.register(_make_agent())

        task = asyncio.create_task(first())
        await entered.wait()
        with pytest.raises(AgentAlreadyExistsError):
            async with registry.claim("a1"):
                pass
        release.set()
        await task
        assert registry.get("a1") is not None

    @pytest.mark.asyncio
    async def test_many_concurrent_registers_one_succeeds(self, registry: AgentRegistry):
        results = await asyncio.gather(
            *(registry.register(_make_agent()) for _ in range(10)), return_exceptions=True
        )
        assert sum(1 for r in results if r is None) == 1
        assert all(isinstance(r, AgentAlreadyExistsError) for r in results if r is not None)
