"""Resource monitoring for agent containers.

Polls the runtime's ``stats`` for every registered agent on a fixed
interval, keeps the latest ``ContainerStats`` per agent, records
``resource_usage`` gauges and logs warnings when a container runs hot.

Two stats shapes are understood:

- the raw engine API document (``cpu_stats`` / ``memory_stats`` / ...), from
  which CPU % is computed as cpu delta / system delta × online CPUs × 100
- the formatted ``docker stats --format '{{json .}}'`` row produced by
  ``DockerRuntime`` (``CPUPerc``, ``MemUsage``, ``NetIO``, ``BlockIO``)
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any

from capsulate.errors import CapsulateError
from capsulate.metrics import CapsulateMetrics, MetricCategory
from capsulate.registry import AgentRegistry
from capsulate.runtime import RuntimeClient

logger = logging.getLogger(__name__)

CPU_WARNING_PERCENT = 90
MEMORY_WARNING_PERCENT = 90

_UNITS = {
    "b": 1,
    "kb": 1000,
    "mb": 1000**2,
    "gb": 1000**3,
    "tb": 1000**4,
    "kib": 1024,
    "mib": 1024**2,
    "gib": 1024**3,
    "tib": 1024**4,
}
_SIZE_RE = re.compile(r"^\s*([0-9.]+)\s*([A-Za-z]*)\s*$")


@dataclass
class ContainerStats:
    """Point-in-time resource usage of one agent container."""

    agent_id: str
    container_name: str
    cpu_percent: float = 0
    memory_usage_bytes: int = 0
    memory_limit_bytes: int = 0
    memory_percent: float = 0
    network_rx_bytes: int = 0
    network_tx_bytes: int = 0
    block_read_bytes: int = 0
    block_write_bytes: int = 0
    pids: int = 0
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat()
        return data


# ── Parsing ──────────────────────────────────────────────────────────────────


def parse_size(value: str) -> int:
    """``"1.5MiB"`` → 1572864; unknown units are treated as bytes."""
    m = _SIZE_RE.match(value or "")
    if not m:
        return 0
    number, unit = float(m.group(1)), m.group(2).lower()
    return int(number * _UNITS.get(unit, 1))


def _parse_pair(value: str) -> tuple[int, int]:
    left, _, right = (value or "").partition("/")
    return parse_size(left), parse_size(right)


def _parse_percent(value: str) -> float:
    try:
        return float((value or "0").strip().rstrip("%") or 0)
    except ValueError:
        return 0


def compute_cpu_percent(raw: dict[str, Any]) -> float:
    """CPU usage from an engine API stats document; 0 on the first sample."""
    cpu = raw.get("cpu_stats") or {}
    pre = raw.get("precpu_stats") or {}
    cpu_delta = (cpu.get("cpu_usage") or {}).get("total_usage", 0) - (pre.get("cpu_usage") or {}).get(
        "total_usage", 0
    )
    system_delta = cpu.get("system_cpu_usage", 0) - pre.get("system_cpu_usage", 0)
    online = cpu.get("online_cpus") or len((cpu.get("cpu_usage") or {}).get("percpu_usage") or []) or 1
    if cpu_delta <= 0 or system_delta <= 0:
        return 0
    return cpu_delta / system_delta * online * 100


def stats_from_runtime(agent_id: str, container_name: str, raw: dict[str, Any]) -> ContainerStats:
    snap = ContainerStats(agent_id=agent_id, container_name=container_name)

    if "cpu_stats" in raw or "memory_stats" in raw:
        snap.cpu_percent = compute_cpu_percent(raw)
        mem = raw.get("memory_stats") or {}
        snap.memory_usage_bytes = int(mem.get("usage", 0))
        snap.memory_limit_bytes = int(mem.get("limit", 0))
        if snap.memory_limit_bytes:
            snap.memory_percent = snap.memory_usage_bytes / snap.memory_limit_bytes * 100
        for iface in (raw.get("networks") or {}).values():
            snap.network_rx_bytes += int(iface.get("rx_bytes", 0))
            snap.network_tx_bytes += int(iface.get("tx_bytes", 0))
        for entry in (raw.get("blkio_stats") or {}).get("io_service_bytes_recursive") or []:
            op = str(entry.get("op", "")).lower()
            if op == "read":
                snap.block_read_bytes += int(entry.get("value", 0))
            elif op == "write":
                snap.block_write_bytes += int(entry.get("value", 0))
        snap.pids = int((raw.get("pids_stats") or {}).get("current", 0))
        return snap

    snap.cpu_percent = _parse_percent(raw.get("CPUPerc", ""))
    snap.memory_usage_bytes, snap.memory_limit_bytes = _parse_pair(raw.get("MemUsage", ""))
    snap.memory_percent = _parse_percent(raw.get("MemPerc", ""))
    snap.network_rx_bytes, snap.network_tx_bytes = _parse_pair(raw.get("NetIO", ""))
    snap.block_read_bytes, snap.block_write_bytes = _parse_pair(raw.get("BlockIO", ""))
    try:
        snap.pids = int(raw.get("PIDs", 0) or 0)
    except ValueError:
        snap.pids = 0
    return snap


# ── Monitor ──────────────────────────────────────────────────────────────────


class ContainerMonitor:
    """Periodically samples resource usage of every registered agent."""

    def __init__(
        self,
        runtime: RuntimeClient,
        registry: AgentRegistry,
        metrics: CapsulateMetrics,
        interval: int = 5,
    ):
        self.runtime = runtime
        self.registry = registry
        self.metrics = metrics
        self.interval = interval
        self._task: asyncio.Task | None = None
        self._latest: dict[str, ContainerStats] = {}
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    @property
    def latest(self) -> dict[str, ContainerStats]:
        return dict(self._latest)

    def get(self, agent_id: str) -> ContainerStats | None:
        return self._latest.get(agent_id)

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._monitor_loop(), name="container-monitor")
        logger.info("Container monitor started (interval=%ds)", self.interval)

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Container monitor stopped")

    async def poll(self) -> dict[str, ContainerStats]:
        """Sample every registered agent once; agents that fail are skipped."""
        agents = self.registry.list()
        known = {a.agent_id for a in agents}
        for agent_id in list(self._latest):
            if agent_id not in known:
                del self._latest[agent_id]

        for agent in agents:
            try:
                raw = await self.runtime.stats(agent.container_id or agent.container_name)
            except CapsulateError as exc:
                logger.debug("No stats for agent %s: %s", agent.agent_id, exc)
                continue
            snap = stats_from_runtime(agent.agent_id, agent.container_name, raw)
            self._latest[agent.agent_id] = snap
            self._record(snap)
            self._check_thresholds(snap)
        return self.latest

    async def _monitor_loop(self) -> None:
        while self._running:
            try:
                await self.poll()
                await asyncio.sleep(self.interval)
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Container monitor error")
                await asyncio.sleep(self.interval)

    def _record(self, snap: ContainerStats) -> None:
        cat = MetricCategory.RESOURCE_USAGE
        aid = snap.agent_id
        self.metrics.record_gauge(cat, "cpu_percent", snap.cpu_percent, aid)
        self.metrics.record_gauge(cat, "memory_usage_bytes", snap.memory_usage_bytes, aid)
        self.metrics.record_gauge(cat, "memory_percent", snap.memory_percent, aid)
        self.metrics.record_gauge(cat, "network_rx_bytes", snap.network_rx_bytes, aid)
        self.metrics.record_gauge(cat, "network_tx_bytes", snap.network_tx_bytes, aid)
        self.metrics.record_gauge(cat, "block_read_bytes", snap.block_read_bytes, aid)
        self.metrics.record_gauge(cat, "block_write_bytes", snap.block_write_bytes, aid)

    def _check_thresholds(self, snap: ContainerStats) -> None:
        if snap.cpu_percent > CPU_WARNING_PERCENT:
            logger.warning("RESOURCE WARNING: agent %s CPU at %.0f%%", snap.agent_id, snap.cpu_percent)
        if snap.memory_percent > MEMORY_WARNING_PERCENT:
            logger.warning(
                "RESOURCE WARNING: agent %s memory at %.0f%% (%d bytes)",
                snap.agent_id,
                snap.memory_percent,
                snap.memory_usage_bytes,
            )
