"""Core data models for Capsulate."""

from __future__ import annotations

import enum
from datetime import datetime, timezone

from pydantic import BaseModel, Field, ValidationError, field_validator

from capsulate.errors import AgentValidationError
from capsulate.isolation.script import validate_agent_id, validate_branch_name, validate_name


# ── Enums ────────────────────────────────────────────────────────────────────


class DependencyLevel(str, enum.Enum):
    """Which dependency tier an agent inherits from.

    ``core``      organization-wide tier only
    ``team``      core + the tier of the agent's team
    ``container`` core + the agent's private tier (default)
    """

    CORE = "core"
    TEAM = "team"
    CONTAINER = "container"


class AgentStatus(str, enum.Enum):
    """Agent lifecycle states.

    creating → ready → destroying → destroyed, with ERROR reachable from
    CREATING or from any exec that finds the backing container gone.
    """

    CREATING = "creating"
    READY = "ready"
    DESTROYING = "destroying"
    DESTROYED = "destroyed"
    ERROR = "error"


# ── Agent configuration ──────────────────────────────────────────────────────


class AgentConfig(BaseModel):
    """Inputs accepted by ``AgentManager.create``."""

    agent_id: str = Field(description="Unique, caller-supplied agent identifier")
    repo_url: str = Field(default="", description="Git repository to clone (optional)")
    branch: str = Field(default="", description="Branch to check out; empty = repo default")
    depth: int = Field(default=0, ge=0, description="Clone depth, 0 = full history")
    git_config: dict[str, str] = Field(
        default_factory=dict, description="git config key/value pairs applied after clone"
    )
    dependency_level: DependencyLevel = DependencyLevel.CONTAINER
    team_id: str = Field(default="", description="Required iff dependency_level is team")
    override_dependencies: list[str] = Field(
        default_factory=list,
        description="Packages that always resolve from the agent's container tier",
    )
    use_overlay: bool = Field(default=False, description="Union-mount the shared base repo")

    @field_validator("override_dependencies", mode="before")
    @classmethod
    def _split_overrides(cls, v):
        # Accept the comma-separated form used by the CLI and the container env
        if isinstance(v, str):
            return [p.strip() for p in v.split(",") if p.strip()]
        return v

    @field_validator("override_dependencies")
    @classmethod
    def _dedupe_overrides(cls, v: list[str]) -> list[str]:
        return list(dict.fromkeys(v))

    @classmethod
    def parse(cls, data: dict) -> AgentConfig:
        """Build a config from untrusted input, raising the Capsulate error type."""
        try:
            return cls.model_validate(data)
        except ValidationError as exc:
            agent_id = data.get("agent_id") if isinstance(data, dict) else None
            raise AgentValidationError(
                _format_validation_error(exc), agent_id=agent_id, operation="create"
            ) from exc

    def check(self) -> None:
        """Validate cross-field rules before any external call is made."""
        op = "create"
        if not self.agent_id:
            raise AgentValidationError("agent id must not be empty", operation=op)
        try:
            validate_agent_id(self.agent_id)
        except ValueError as exc:
            raise AgentValidationError(str(exc), agent_id=self.agent_id, operation=op) from exc

        match self.dependency_level:
            case DependencyLevel.TEAM:
                if not self.team_id:
                    raise AgentValidationError(
                        "team id is required when dependency level is 'team'",
                        agent_id=self.agent_id,
                        operation=op,
                    )
            case DependencyLevel.CORE | DependencyLevel.CONTAINER:
                pass

        try:
            if self.team_id:
                validate_name(self.team_id, kind="team id")
            for pkg in self.override_dependencies:
                validate_name(pkg, kind="package name")
            if self.branch:
                validate_branch_name(self.branch)
            for key in self.git_config:
                validate_name(key, kind="git config key")
        except ValueError as exc:
            raise AgentValidationError(str(exc), agent_id=self.agent_id, operation=op) from exc

        if self.branch and not self.repo_url:
            raise AgentValidationError(
                "branch requires a repository URL", agent_id=self.agent_id, operation=op
            )


def _format_validation_error(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()))
        parts.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return "; ".join(parts)


# ── Agent ────────────────────────────────────────────────────────────────────


class Agent(BaseModel):
    """One managed, isolated environment as tracked by the registry."""

    agent_id: str
    container_name: str
    container_id: str | None = Field(default=None, description="Opaque runtime handle")
    branch: str = ""
    dependency_level: DependencyLevel = DependencyLevel.CONTAINER
    team_id: str = ""
    override_dependencies: list[str] = Field(default_factory=list)
    use_overlay: bool = False
    host_workspace_path: str = Field(description="Host directory for this agent's private state")
    workdir: str = Field(default="/workspace", description="Effective in-container working dir")
    repo_path: str = Field(default="/workspace", description="In-container git root")
    repo_url: str = ""
    status: AgentStatus = AgentStatus.CREATING
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def has_repo(self) -> bool:
        return bool(self.repo_url)

    def touch(self, status: AgentStatus | None = None) -> None:
        if status is not None:
            self.status = status
        self.updated_at = datetime.now(timezone.utc)


# ── Runtime wire types ───────────────────────────────────────────────────────


class Mount(BaseModel):
    """A host → container bind mount."""

    source: str
    target: str
    read_only: bool = False

    def to_cli(self) -> str:
        """Render as a ``docker run --mount`` value."""
        spec = f"type=bind,source={self.source},target={self.target}"
        if self.read_only:
            spec += ",readonly"
        return spec


class ContainerSpec(BaseModel):
    """Everything the runtime needs to create an agent container."""

    name: str
    image: str
    command: list[str] = Field(default_factory=lambda: ["tail", "-f", "/dev/null"])
    env: dict[str, str] = Field(default_factory=dict)
    mounts: list[Mount] = Field(default_factory=list)
    labels: dict[str, str] = Field(default_factory=dict)
    working_dir: str = "/workspace"
    cap_add: list[str] = Field(default_factory=list)
    security_opt: list[str] = Field(default_factory=list)


class ContainerInfo(BaseModel):
    """A container as reported by ``RuntimeClient.list_containers``."""

    id: str
    name: str
    state: str = ""
    image: str = ""
    labels: dict[str, str] = Field(default_factory=dict)

    @property
    def is_running(self) -> bool:
        return self.state == "running"


class ExecResult(BaseModel):
    """Outcome of a command executed inside a container."""

    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    @property
    def output(self) -> str:
        """stdout followed by stderr, as a user would see it on a terminal."""
        if self.stdout and self.stderr:
            return f"{self.stdout.rstrip()}\n{self.stderr}"
        return self.stdout or self.stderr


# ── Derived views ────────────────────────────────────────────────────────────


class GitStatus(BaseModel):
    """Point-in-time Git status of an agent; never cached."""

    branch: str = ""
    current_commit: str = ""
    modified_files: list[str] = Field(default_factory=list)
    untracked_files: list[str] = Field(default_factory=list)
    ahead_count: int = 0
    behind_count: int = 0

    @property
    def is_clean(self) -> bool:
        return not self.modified_files and not self.untracked_files


class DependencyListing(BaseModel):
    """Packages per tier (name → version) and where each link resolves."""

    agent_id: str
    dependency_level: DependencyLevel
    core: dict[str, str] = Field(default_factory=dict)
    team: dict[str, str] = Field(default_factory=dict)
    container: dict[str, str] = Field(default_factory=dict)
    overrides: list[str] = Field(default_factory=list)
    linked: dict[str, DependencyLevel] = Field(
        default_factory=dict, description="Package name → tier its in-container link points to"
    )


class OverlayStatus(BaseModel):
    """File counts per overlay layer, as seen from inside the container."""

    agent_id: str
    enabled: bool
    base_files: int = 0
    diff_files: int = 0
    merged_files: int = 0
