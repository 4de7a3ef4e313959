"""Shared fixtures: an in-memory container runtime and a manager wired to it."""

from __future__ import annotations

import itertools
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import pytest

from capsulate.agent_manager import AgentManager
from capsulate.config import CapsulateConfig, ContainerConfig, MonitorConfig
from capsulate.errors import RuntimeClientError
from capsulate.metrics import CapsulateMetrics
from capsulate.models import ContainerInfo, ContainerSpec, ExecResult
from capsulate.registry import AgentRegistry


@dataclass
class FakeContainer:
    id: str
    spec: ContainerSpec
    state: str = "created"

    @property
    def name(self) -> str:
        return self.spec.name


@dataclass
class ExecRule:
    match: Callable[[list[str]], bool]
    result: ExecResult
    times: int | None = None  # None = unlimited


@dataclass
class FakeRuntime:
    """In-memory ``RuntimeClient``.

    ``on_exec(substring, ...)`` scripts the result of execs whose joined
    argv contains *substring*; unmatched execs succeed with empty output.
    ``fail_on[method]`` makes that method raise the given exception.
    """

    images: set[str] = field(default_factory=lambda: {"capsulate-base:latest"})
    containers: dict[str, FakeContainer] = field(default_factory=dict)
    execs: list[tuple[str, list[str], str | None]] = field(default_factory=list)
    calls: list[tuple[str, str]] = field(default_factory=list)
    fail_on: dict[str, Exception] = field(default_factory=dict)
    stats_data: dict[str, dict[str, Any]] = field(default_factory=dict)
    builds: int = 0
    _rules: list[ExecRule] = field(default_factory=list)
    _ids: Any = field(default_factory=lambda: itertools.count(1))

    # ── scripting helpers ────────────────────────────────────────────────

    def on_exec(
        self,
        contains: str,
        *,
        exit_code: int = 0,
        stdout: str = "",
        stderr: str = "",
        times: int | None = None,
    ) -> None:
        self._rules.insert(
            0,
            ExecRule(
                match=lambda argv: contains in " ".join(argv),
                result=ExecResult(exit_code=exit_code, stdout=stdout, stderr=stderr),
                times=times,
            ),
        )

    def by_name(self, name: str) -> FakeContainer | None:
        for c in self.containers.values():
            if c.name == name:
                return c
        return None

    def exec_commands(self) -> list[str]:
        """Joined argv of every exec, in order."""
        return [" ".join(argv) for _, argv, _ in self.execs]

    def _maybe_fail(self, method: str) -> None:
        exc = self.fail_on.get(method)
        if exc is not None:
            raise exc

    def _lookup(self, ref: str) -> FakeContainer:
        container = self.containers.get(ref) or self.by_name(ref)
        if container is None:
            raise RuntimeClientError(f"Error: No such container: {ref}")
        return container

    # ── RuntimeClient ────────────────────────────────────────────────────

    async def list_containers(self, *, name: str | None = None) -> list[ContainerInfo]:
        self.calls.append(("list_containers", name or ""))
        self._maybe_fail("list_containers")
        return [
            ContainerInfo(id=c.id, name=c.name, state=c.state, image=c.spec.image, labels=c.spec.labels)
            for c in self.containers.values()
            if name is None or c.name == name
        ]

    async def inspect_container(self, container_id: str) -> dict[str, Any] | None:
        self._maybe_fail("inspect_container")
        container = self.containers.get(container_id) or self.by_name(container_id)
        if container is None:
            return None
        return {
            "Id": container.id,
            "Name": "/" + container.name,
            "Config": {
                "Labels": dict(container.spec.labels),
                "Env": [f"{k}={v}" for k, v in container.spec.env.items()],
            },
        }

    async def create_container(self, spec: ContainerSpec) -> str:
        self.calls.append(("create_container", spec.name))
        self._maybe_fail("create_container")
        if self.by_name(spec.name):
            raise RuntimeClientError(f'Conflict. The container name "/{spec.name}" is already in use')
        container_id = f"c{next(self._ids):04d}"
        self.containers[container_id] = FakeContainer(id=container_id, spec=spec)
        return container_id

    async def start_container(self, container_id: str) -> None:
        self.calls.append(("start_container", container_id))
        self._maybe_fail("start_container")
        self._lookup(container_id).state = "running"

    async def stop_container(self, container_id: str, timeout: int) -> None:
        self.calls.append(("stop_container", container_id))
        self._maybe_fail("stop_container")
        self._lookup(container_id).state = "exited"

    async def remove_container(self, container_id: str) -> None:
        self.calls.append(("remove_container", container_id))
        self._maybe_fail("remove_container")
        container = self._lookup(container_id)
        del self.containers[container.id]

    async def exec(
        self,
        container_id: str,
        argv: list[str],
        *,
        workdir: str | None = None,
        timeout: float | None = None,
    ) -> ExecResult:
        self._maybe_fail("exec")
        container = self._lookup(container_id)
        if container.state != "running":
            raise RuntimeClientError(f"Error response from daemon: container {container_id} is not running")
        self.execs.append((container.id, list(argv), workdir))
        for rule in self._rules:
            if rule.match(argv):
                if rule.times is not None:
                    if rule.times == 0:
                        continue
                    rule.times -= 1
                return rule.result
        return ExecResult(exit_code=0)

    async def stats(self, container_id: str) -> dict[str, Any]:
        self._maybe_fail("stats")
        container = self._lookup(container_id)
        return self.stats_data.get(container.name, {"CPUPerc": "0.00%", "MemUsage": "0B / 0B"})

    async def image_exists(self, image: str) -> bool:
        return image in self.images

    async def build_image(self, image: str, dockerfile: str) -> None:
        self._maybe_fail("build_image")
        self.builds += 1
        self.images.add(image)


# ── Fixtures ─────────────────────────────────────────────────────────────────


@pytest.fixture
def config(tmp_path: Path) -> CapsulateConfig:
    return CapsulateConfig(
        root=tmp_path,
        container=ContainerConfig(share_ssh=False),
        monitor=MonitorConfig(enabled=False),
    )


@pytest.fixture
def runtime() -> FakeRuntime:
    return FakeRuntime()


@pytest.fixture
def registry() -> AgentRegistry:
    return AgentRegistry()


@pytest.fixture
def metrics() -> CapsulateMetrics:
    return CapsulateMetrics()


@pytest.fixture
def manager(config, runtime, registry, metrics) -> AgentManager:
    return AgentManager(config, runtime, registry, metrics)
