"""Typed error surface for Capsulate operations.

Every error carries the agent id and the operation attempted so that a
failure can be diagnosed from its message alone.  Infrastructure errors
embed the underlying runtime / subprocess message verbatim.

Hierarchy:

    CapsulateError
    ├── AgentValidationError          bad config, rejected before any external call
    ├── AgentAlreadyExistsError       conflict, no side effects performed
    ├── AgentNotFoundError            id absent from the registry
    ├── AgentNotRunningError          id registered but container gone (drift)
    └── InfrastructureError           runtime / subprocess failure
        ├── RuntimeClientError
        ├── CommandFailedError        non-zero exit inside the container
        ├── DependencyTierUnavailableError
        ├── OverlayUnavailableError
        └── RollbackError             original failure + failed cleanup
"""

from __future__ import annotations


class CapsulateError(Exception):
    """Base class for all Capsulate errors."""

    def __init__(self, message: str, *, agent_id: str | None = None, operation: str | None = None):
        self.agent_id = agent_id
        self.operation = operation
        self.detail = message
        prefix = []
        if operation:
            prefix.append(operation)
        if agent_id:
            prefix.append(f"agent '{agent_id}'")
        full = f"{' '.join(prefix)}: {message}" if prefix else message
        super().__init__(full)


class AgentValidationError(CapsulateError):
    """Agent configuration is invalid; fix the input and retry."""


class AgentAlreadyExistsError(CapsulateError):
    """An agent (or its container) with this id already exists."""


class AgentNotFoundError(CapsulateError):
    """The agent id is not present in the registry."""


class AgentNotRunningError(CapsulateError):
    """The agent is registered but its container is missing or stopped at the runtime.

    This is registry/runtime drift, usually caused by out-of-band removal
    of the container.  ``destroy`` cleans up the stale registry entry.
    """

    def __init__(self, message: str, *, agent_id: str | None = None, operation: str | None = None):
        super().__init__(
            f"{message} (container not found or not running; run destroy to clean up)",
            agent_id=agent_id,
            operation=operation,
        )


class InfrastructureError(CapsulateError):
    """A runtime call or subprocess failed."""


class RuntimeClientError(InfrastructureError):
    """The container runtime rejected or failed a call."""


class CommandFailedError(InfrastructureError):
    """A command executed inside an agent container exited non-zero."""

    def __init__(
        self,
        message: str,
        *,
        exit_code: int,
        output: str = "",
        agent_id: str | None = None,
        operation: str | None = None,
    ):
        self.exit_code = exit_code
        self.output = output
        detail = f"{message} (exit code {exit_code})"
        if output.strip():
            detail += f": {output.strip()}"
        super().__init__(detail, agent_id=agent_id, operation=operation)


class DependencyTierUnavailableError(InfrastructureError):
    """A dependency tier directory could not be created on the host."""


class OverlayUnavailableError(InfrastructureError):
    """Overlay layer directories could not be prepared on the host."""


class RollbackError(InfrastructureError):
    """Creation failed and the cleanup of the half-built container failed too."""

    def __init__(
        self,
        original: BaseException,
        cleanup: BaseException,
        *,
        agent_id: str | None = None,
        operation: str | None = None,
    ):
        self.original = original
        self.cleanup = cleanup
        super().__init__(
            f"{original}; cleanup also failed: {cleanup}",
            agent_id=agent_id,
            operation=operation,
        )
