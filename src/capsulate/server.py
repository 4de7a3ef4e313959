"""Capsulate Server: FastAPI application around one ``AgentManager``.

Startup:
1. Load config (``<root>/.capsulate/config.yaml`` + environment)
2. Set up tracing
3. Adopt existing ``capsulate-*`` containers into the registry
4. Start the container monitor (unless disabled)

Shutdown stops the monitor.  Agents are left running; a restarted server
adopts them again.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, Response
from prometheus_client import CONTENT_TYPE_LATEST

from capsulate.agent_manager import AgentManager
from capsulate.api import capsulate_error_handler
from capsulate.api import configure as configure_api
from capsulate.api import router as agents_router
from capsulate.config import CapsulateConfig, load_config
from capsulate.errors import CapsulateError
from capsulate.metrics import CapsulateMetrics
from capsulate.models import AgentStatus
from capsulate.monitor import ContainerMonitor
from capsulate.registry import AgentRegistry
from capsulate.runtime import DockerRuntime, RuntimeClient
from capsulate.tracing import setup_tracing

logger = logging.getLogger(__name__)


class CapsulateServer:
    """Encapsulates the server components and their lifecycle."""

    def __init__(
        self,
        config: CapsulateConfig | None = None,
        runtime: RuntimeClient | None = None,
        root: Path | None = None,
    ):
        self.config = config or load_config(root)
        self.runtime = runtime or DockerRuntime(self.config.container.docker_binary)
        self.registry = AgentRegistry()
        self.metrics = CapsulateMetrics()
        self.manager = AgentManager(self.config, self.runtime, self.registry, self.metrics)
        self.monitor: ContainerMonitor | None = None
        if self.config.monitor.enabled:
            self.monitor = ContainerMonitor(
                self.runtime, self.registry, self.metrics, interval=self.config.monitor.interval
            )

    async def start(self) -> None:
        logger.info("Capsulate server starting (root=%s)", self.config.root)
        tracing = self.config.tracing
        if tracing.otlp_endpoint or tracing.console_export:
            setup_tracing(tracing.service_name, tracing.otlp_endpoint, tracing.console_export)

        try:
            adopted = await self.manager.adopt_existing()
        except CapsulateError as exc:
            logger.warning("Could not adopt existing agents: %s", exc)
        else:
            logger.info("Registry initialised with %d existing agent(s)", len(adopted))

        if self.monitor:
            await self.monitor.start()
        logger.info("Capsulate server started")

    async def stop(self) -> None:
        logger.info("Capsulate server shutting down")
        if self.monitor:
            await self.monitor.stop()
        logger.info("Capsulate server stopped")


# ── FastAPI app ──────────────────────────────────────────────────────────────

_server: CapsulateServer | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """FastAPI lifespan: startup and shutdown."""
    await _server.start()
    yield
    await _server.stop()


def create_app(server: CapsulateServer | None = None, root: Path | None = None) -> FastAPI:
    """Create the FastAPI application."""
    global _server
    _server = server or CapsulateServer(root=root)

    app = FastAPI(
        title="Capsulate",
        version="0.1.0",
        description="Isolated, branch-bound agent containers with layered dependencies",
        lifespan=lifespan,
    )
    configure_api(_server.manager, _server.monitor)
    app.add_exception_handler(CapsulateError, capsulate_error_handler)
    app.include_router(agents_router)

    @app.get("/health")
    async def health():
        """Health check with agent counts per status."""
        counts: dict[str, int] = {}
        for agent in _server.registry.list():
            counts[agent.status.value] = counts.get(agent.status.value, 0) + 1
        return {
            "status": "ok",
            "root": str(_server.config.root),
            "agents": counts,
            "total_agents": len(_server.registry),
            "errored_agents": counts.get(AgentStatus.ERROR.value, 0),
            "monitor": bool(_server.monitor and _server.monitor.running),
        }

    @app.get("/metrics", include_in_schema=False)
    async def metrics():
        return Response(content=_server.metrics.exposition(), media_type=CONTENT_TYPE_LATEST)

    return app
