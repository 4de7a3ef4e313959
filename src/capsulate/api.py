"""REST routes over the agent manager.

The router is configured once at startup with the ``AgentManager`` (and,
optionally, the ``ContainerMonitor``).  Capsulate errors are translated to
HTTP responses by ``capsulate_error_handler``, which ``create_app``
registers on the application.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from capsulate.agent_manager import AgentManager
from capsulate.errors import (
    AgentAlreadyExistsError,
    AgentNotFoundError,
    AgentNotRunningError,
    AgentValidationError,
    CapsulateError,
    InfrastructureError,
)
from capsulate.isolation.dependencies import DEFAULT_VERSION
from capsulate.models import Agent, AgentConfig, DependencyListing, ExecResult, GitStatus, OverlayStatus
from capsulate.monitor import ContainerMonitor

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/agents", tags=["agents"])

# Module-level references (configured at startup)
_manager: AgentManager | None = None
_monitor: ContainerMonitor | None = None


def configure(manager: AgentManager, monitor: ContainerMonitor | None = None) -> None:
    """Configure the agents router with required dependencies."""
    global _manager, _monitor
    _manager = manager
    _monitor = monitor
    logger.info("Agents router configured (monitor=%s)", "yes" if monitor else "no")


def _get_manager() -> AgentManager:
    if _manager is None:
        raise HTTPException(status_code=503, detail="Agent manager not available")
    return _manager


# ── Error translation ────────────────────────────────────────────────────────


def status_code_for(exc: CapsulateError) -> int:
    if isinstance(exc, AgentValidationError):
        return 400
    if isinstance(exc, AgentNotFoundError):
        return 404
    if isinstance(exc, (AgentAlreadyExistsError, AgentNotRunningError)):
        return 409
    if isinstance(exc, InfrastructureError):
        return 502
    return 500


async def capsulate_error_handler(request: Request, exc: CapsulateError) -> JSONResponse:
    code = status_code_for(exc)
    if code >= 500:
        logger.warning("%s %s failed: %s", request.method, request.url.path, exc)
    body: dict[str, Any] = {
        "detail": str(exc),
        "error": type(exc).__name__,
        "agent_id": exc.agent_id,
        "operation": exc.operation,
    }
    exit_code = getattr(exc, "exit_code", None)
    if exit_code is not None:
        body["exit_code"] = exit_code
    return JSONResponse(status_code=code, content=body)


# ── Request bodies ───────────────────────────────────────────────────────────


class ExecRequest(BaseModel):
    command: str | list[str] = Field(description="Shell string (run via /bin/sh -c) or argv list")
    workdir: str | None = None
    timeout: float | None = Field(default=None, gt=0)
    check: bool = Field(default=False, description="Fail with an error on non-zero exit")


class BranchRequest(BaseModel):
    name: str
    checkout: bool = False


class CheckoutRequest(BaseModel):
    branch: str


class DependencyRequest(BaseModel):
    package: str
    version: str = DEFAULT_VERSION


# ── Agents ───────────────────────────────────────────────────────────────────


@router.post("", status_code=201, response_model=Agent)
async def create_agent(body: dict[str, Any]) -> Agent:
    return await _get_manager().create(AgentConfig.parse(body))


@router.get("")
async def list_agents() -> dict[str, list[Agent]]:
    return {"agents": _get_manager().list_agents()}


@router.get("/{agent_id}", response_model=Agent)
async def get_agent(agent_id: str) -> Agent:
    return _get_manager().get_agent(agent_id)


@router.delete("/{agent_id}")
async def destroy_agent(agent_id: str) -> dict[str, str]:
    await _get_manager().destroy(agent_id)
    return {"agent_id": agent_id, "status": "destroyed"}


@router.post("/{agent_id}/exec", response_model=ExecResult)
async def exec_in_agent(agent_id: str, body: ExecRequest) -> ExecResult:
    manager = _get_manager()
    if body.check:
        return await manager.exec(agent_id, body.command, workdir=body.workdir, timeout=body.timeout)
    return await manager.exec_command(agent_id, body.command, workdir=body.workdir, timeout=body.timeout)


# ── Git ──────────────────────────────────────────────────────────────────────


@router.post("/{agent_id}/branches", response_model=Agent)
async def create_branch(agent_id: str, body: BranchRequest) -> Agent:
    return await _get_manager().create_branch(agent_id, body.name, checkout=body.checkout)


@router.post("/{agent_id}/checkout", response_model=Agent)
async def checkout_branch(agent_id: str, body: CheckoutRequest) -> Agent:
    return await _get_manager().checkout_branch(agent_id, body.branch)


@router.get("/{agent_id}/git-status", response_model=GitStatus)
async def git_status(agent_id: str) -> GitStatus:
    return await _get_manager().get_git_status(agent_id)


@router.post("/{agent_id}/status-file")
async def update_status_file(agent_id: str) -> dict[str, str]:
    path = await _get_manager().update_status_file(agent_id)
    return {"agent_id": agent_id, "path": str(path)}


# ── Dependencies / overlay / stats ───────────────────────────────────────────


@router.get("/{agent_id}/dependencies", response_model=DependencyListing)
async def list_dependencies(agent_id: str) -> DependencyListing:
    return await _get_manager().list_dependencies(agent_id)


@router.post("/{agent_id}/dependencies", status_code=201)
async def add_dependency(agent_id: str, body: DependencyRequest) -> dict[str, str]:
    await _get_manager().add_dependency(agent_id, body.package, body.version)
    return {"agent_id": agent_id, "package": body.package, "version": body.version}


@router.get("/{agent_id}/overlay", response_model=OverlayStatus)
async def overlay_status(agent_id: str) -> OverlayStatus:
    return await _get_manager().overlay_status(agent_id)


@router.get("/{agent_id}/stats")
async def agent_stats(agent_id: str) -> dict[str, Any]:
    """Latest monitored sample, or a live runtime sample when none exists yet."""
    manager = _get_manager()
    manager.get_agent(agent_id)
    if _monitor is not None:
        snap = _monitor.get(agent_id)
        if snap is not None:
            return snap.to_dict()
    return {"agent_id": agent_id, "raw": await manager.stats(agent_id)}
