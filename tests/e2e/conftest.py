"""Shared fixtures for E2E tests against a real docker daemon.

Opt-in: set ``CAPSULATE_E2E=1`` and have ``docker`` on PATH.  Git tests
additionally need ``CAPSULATE_E2E_REPO`` pointing at a clonable repository
reachable from inside a container.
"""

from __future__ import annotations

import os
import shutil
import uuid
from pathlib import Path

import pytest
import pytest_asyncio

from capsulate.agent_manager import AgentManager
from capsulate.config import CapsulateConfig, ContainerConfig, MonitorConfig
from capsulate.errors import CapsulateError
from capsulate.registry import AgentRegistry
from capsulate.runtime import DockerRuntime

E2E_ENABLED = os.environ.get("CAPSULATE_E2E") == "1" and shutil.which("docker") is not None


def pytest_collection_modifyitems(config, items):
    if E2E_ENABLED:
        return
    skip = pytest.mark.skip(reason="set CAPSULATE_E2E=1 with docker available to run")
    for item in items:
        if "e2e" in item.keywords:
            item.add_marker(skip)


@pytest.fixture
def e2e_config(tmp_path: Path) -> CapsulateConfig:
    # unique prefix so parallel runs and leftovers never collide
    prefix = f"capsulate-e2e-{uuid.uuid4().hex[:6]}-"
    return CapsulateConfig(
        root=tmp_path,
        container=ContainerConfig(name_prefix=prefix, share_ssh=False, stop_timeout=2),
        monitor=MonitorConfig(enabled=False),
    )


@pytest_asyncio.fixture
async def docker_manager(e2e_config: CapsulateConfig):
    registry = AgentRegistry()
    manager = AgentManager(e2e_config, DockerRuntime(), registry)
    yield manager
    for agent in registry.list():
        try:
            await manager.destroy(agent.agent_id)
        except CapsulateError as exc:
            print(f"cleanup of {agent.agent_id} failed: {exc}")
