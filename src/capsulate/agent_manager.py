"""Agent Manager: lifecycle orchestration for isolated agent containers.

Responsible for:
- Creating agents (container + overlay mount + dependency links + git bootstrap)
  with rollback of the container when any bootstrap step fails
- Executing commands and git operations inside agent containers
- Destroying agents and keeping the registry consistent with the runtime
- Dependency tier management and the per-agent ``.git-status.md`` snapshot
- Re-adopting ``capsulate-*`` containers into a fresh registry

The manager holds no global state; the registry, runtime and metrics are
injected.  Every method is a coroutine; cancelling one aborts the in-flight
runtime call without undoing what already happened.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from capsulate import status as git
from capsulate.config import CapsulateConfig
from capsulate.errors import (
    AgentAlreadyExistsError,
    AgentNotFoundError,
    AgentNotRunningError,
    AgentValidationError,
    CapsulateError,
    CommandFailedError,
    RollbackError,
    RuntimeClientError,
)
from capsulate.isolation.dependencies import (
    CONTAINER_DEPS_PATH,
    CORE_DEPS_PATH,
    DEFAULT_VERSION,
    LINK_DIR,
    TEAM_DEPS_PATH,
    DependencyPlan,
    DependencyResolver,
)
from capsulate.isolation.overlay import BASE_PATH, DIFF_PATH, MERGED_PATH, FilesystemComposer, FilesystemPlan
from capsulate.isolation.script import ShellScript, validate_branch_name, validate_name
from capsulate.metrics import CapsulateMetrics, MetricCategory
from capsulate.models import (
    Agent,
    AgentConfig,
    AgentStatus,
    ContainerInfo,
    ContainerSpec,
    DependencyLevel,
    DependencyListing,
    ExecResult,
    GitStatus,
    Mount,
    OverlayStatus,
)
from capsulate.registry import AgentRegistry
from capsulate.runtime import RuntimeClient
from capsulate.tracing import add_event, create_span

logger = logging.getLogger(__name__)

SSH_TARGET = "/root/.ssh"

LABEL_PREFIX = "capsulate."
LABEL_AGENT_ID = "capsulate.agent-id"

# Prints "<name> <target>" for every link in the package-link directory
_LIST_LINKS = (
    f'for l in {LINK_DIR}/* {LINK_DIR}/.[!.]*; do '
    '[ -L "$l" ] && echo "$(basename "$l") $(readlink "$l")"; done; true'
)

_TIER_BY_PREFIX = {
    CORE_DEPS_PATH: DependencyLevel.CORE,
    TEAM_DEPS_PATH: DependencyLevel.TEAM,
    CONTAINER_DEPS_PATH: DependencyLevel.CONTAINER,
}


class AgentManager:
    """Creates, drives and destroys agent containers."""

    def __init__(
        self,
        config: CapsulateConfig,
        runtime: RuntimeClient,
        registry: AgentRegistry,
        metrics: CapsulateMetrics | None = None,
    ):
        self.config = config
        self.runtime = runtime
        self.registry = registry
        self.metrics = metrics or CapsulateMetrics()

        self.dependencies = DependencyResolver(config)
        self.composer = FilesystemComposer(config)

        self._image_ready = False
        self._image_lock = asyncio.Lock()

    # ── Queries ──────────────────────────────────────────────────────────

    def list_agents(self) -> list[Agent]:
        return self.registry.list()

    def get_agent(self, agent_id: str) -> Agent:
        return self._require(agent_id, "get")

    # ── Creation ─────────────────────────────────────────────────────────

    async def create(self, config: AgentConfig | dict[str, Any]) -> Agent:
        """Create, provision and register a new agent.

        Raises:
            AgentValidationError: The config is invalid (nothing was touched).
            AgentAlreadyExistsError: The id is registered, being created, a
                container with the agent's name exists, or a destroyed agent
                left its repository on the host (nothing was touched).
            InfrastructureError: A runtime call or bootstrap step failed; the
                container has been removed (or ``RollbackError`` if not).
        """
        if not isinstance(config, AgentConfig):
            config = AgentConfig.parse(config)
        config.check()
        agent_id = config.agent_id
        container_name = self.config.container_name(agent_id)

        with self._observe(MetricCategory.CONTAINER_OPS, "create", agent_id) as span:
            span.set_attribute("capsulate.use_overlay", config.use_overlay)
            span.set_attribute("capsulate.dependency_level", config.dependency_level.value)

            async with self.registry.claim(agent_id):
                if config.repo_url:
                    self._check_stale_repo(config)
                with self._runtime_errors(agent_id, "create"):
                    if await self.runtime.list_containers(name=container_name):
                        raise AgentAlreadyExistsError(
                            f"container '{container_name}' already exists at the runtime",
                            agent_id=agent_id,
                            operation="create",
                        )
                    await self.ensure_image()

                deps = self.dependencies.plan(config)
                fs = self.composer.plan(config)
                agent = Agent(
                    agent_id=agent_id,
                    container_name=container_name,
                    branch=config.branch,
                    dependency_level=config.dependency_level,
                    team_id=config.team_id,
                    override_dependencies=list(config.override_dependencies),
                    use_overlay=config.use_overlay,
                    host_workspace_path=str(fs.host_workspace),
                    workdir=fs.workdir,
                    repo_path=f"{fs.workdir}/repo" if config.repo_url else fs.workdir,
                    repo_url=config.repo_url,
                )

                spec = self._container_spec(agent, deps, fs)
                with self._runtime_errors(agent_id, "create"):
                    agent.container_id = await self.runtime.create_container(spec)
                add_event("container.created", container_id=agent.container_id)

                try:
                    with self._runtime_errors(agent_id, "create"):
                        await self.runtime.start_container(agent.container_id)
                    await self._bootstrap(agent, config, deps, fs)
                except asyncio.CancelledError:
                    # The container exists; register it so destroy can clean it up
                    logger.warning("Creation of agent %s cancelled; registering it as errored", agent_id)
                    agent.touch(AgentStatus.ERROR)
                    await self.registry.register(agent)
                    raise
                except Exception as exc:
                    await self._rollback(agent, exc)
                    raise

                agent.touch(AgentStatus.READY)
                await self.registry.register(agent)

        logger.info(
            "Agent %s ready (container=%s, level=%s, overlay=%s, branch=%s)",
            agent_id,
            container_name,
            agent.dependency_level.value,
            agent.use_overlay,
            agent.branch or "-",
        )
        await self._write_status_file_best_effort(agent)
        return agent

    async def ensure_image(self) -> None:
        """Build the base image once per manager if the runtime lacks it."""
        if self._image_ready:
            return
        async with self._image_lock:
            if self._image_ready:
                return
            image = self.config.image.name
            if not await self.runtime.image_exists(image):
                with self._observe(MetricCategory.CONTAINER_OPS, "build-image"):
                    await self.runtime.build_image(image, self.config.image.dockerfile)
            self._image_ready = True

    async def _bootstrap(
        self, agent: Agent, config: AgentConfig, deps: DependencyPlan, fs: FilesystemPlan
    ) -> None:
        """Overlay mount, dependency links, then git; strictly in that order."""
        if fs.mount_script:
            with self._observe(MetricCategory.FILE_OPS, "overlay-mount", agent.agent_id):
                await self._run_script(agent, fs.mount_script, "overlay mount", workdir="/")

        if deps.script:
            with self._observe(MetricCategory.DEPENDENCY_OPS, "setup", agent.agent_id):
                await self._run_script(agent, deps.script, "dependency setup", workdir="/")

        if config.repo_url:
            await self._bootstrap_repo(agent, config)

    async def _bootstrap_repo(self, agent: Agent, config: AgentConfig) -> None:
        clone = ["git", "clone"]
        if config.branch and await self._remote_has_branch(agent, config.repo_url, config.branch):
            clone += ["--branch", config.branch]
        if config.depth:
            clone += ["--depth", str(config.depth)]
        clone += [config.repo_url, agent.repo_path]

        with self._observe(MetricCategory.GIT_OPS, "clone", agent.agent_id):
            await self._exec_checked(
                agent, clone, "git clone", timeout=self.config.container.clone_timeout
            )

        for key, value in config.git_config.items():
            await self._exec_checked(agent, git.git_argv(agent.repo_path, "config", key, value), "git config")

        if config.branch:
            await self._exec_checked(
                agent, git.git_argv(agent.repo_path, "checkout", "-B", config.branch), "git checkout"
            )
            agent.branch = config.branch
        else:
            result = await self._exec_checked(agent, git.git_argv(agent.repo_path, *git.BRANCH), "git rev-parse")
            agent.branch = result.stdout.strip()

    async def _remote_has_branch(self, agent: Agent, url: str, branch: str) -> bool:
        result = await self._exec_raw(
            agent,
            ["git", "ls-remote", "--exit-code", "--heads", url, branch],
            timeout=self.config.container.clone_timeout,
        )
        return result.ok

    async def _rollback(self, agent: Agent, original: Exception) -> None:
        """Remove the half-built container; raise ``RollbackError`` if that fails."""
        agent_id = agent.agent_id
        logger.warning("Creation of agent %s failed, rolling back: %s", agent_id, original)
        container_id = agent.container_id or agent.container_name
        try:
            await self.runtime.stop_container(container_id, self.config.container.stop_timeout)
        except RuntimeClientError as exc:
            logger.debug("Stop during rollback of %s failed: %s", agent_id, exc)
        try:
            await self.runtime.remove_container(container_id)
        except RuntimeClientError as cleanup_exc:
            logger.error("Rollback of agent %s left container %s behind", agent_id, agent.container_name)
            raise RollbackError(original, cleanup_exc, agent_id=agent_id, operation="create") from original
        self.metrics.record_count(MetricCategory.CONTAINER_OPS, "rollback", 1, agent_id)

    def _container_spec(self, agent: Agent, deps: DependencyPlan, fs: FilesystemPlan) -> ContainerSpec:
        mounts: list[Mount] = [*fs.mounts, *deps.mounts]
        ssh_dir = self.config.ssh_path
        if self.config.container.share_ssh and ssh_dir.is_dir():
            mounts.append(Mount(source=str(ssh_dir), target=SSH_TARGET, read_only=True))

        return ContainerSpec(
            name=agent.container_name,
            image=self.config.image.name,
            env={
                "AGENT_ID": agent.agent_id,
                "DEPENDENCY_LEVEL": agent.dependency_level.value,
                "TEAM_ID": agent.team_id,
                "OVERRIDE_DEPS": ",".join(agent.override_dependencies),
                "USE_OVERLAY": "true" if agent.use_overlay else "false",
            },
            mounts=mounts,
            labels=self._labels(agent),
            cap_add=fs.cap_add,
            security_opt=fs.security_opt,
        )

    @staticmethod
    def _labels(agent: Agent) -> dict[str, str]:
        return {
            LABEL_AGENT_ID: agent.agent_id,
            "capsulate.dependency-level": agent.dependency_level.value,
            "capsulate.team-id": agent.team_id,
            "capsulate.use-overlay": "true" if agent.use_overlay else "false",
            "capsulate.host-workspace": agent.host_workspace_path,
            "capsulate.workdir": agent.workdir,
            "capsulate.repo-path": agent.repo_path,
            "capsulate.repo-url": agent.repo_url,
        }

    # ── Execution ────────────────────────────────────────────────────────

    async def exec(
        self,
        agent_id: str,
        command: str | list[str],
        *,
        workdir: str | None = None,
        timeout: float | None = None,
    ) -> ExecResult:
        """Run *command* in the agent's container; non-zero exit raises.

        A string is run through ``/bin/sh -c``; a list is executed as-is.

        Raises:
            AgentNotFoundError: Unknown agent id.
            AgentNotRunningError: The container is gone (agent marked ERROR).
            CommandFailedError: The command exited non-zero.
        """
        result = await self.exec_command(agent_id, command, workdir=workdir, timeout=timeout)
        if not result.ok:
            raise CommandFailedError(
                "command failed",
                exit_code=result.exit_code,
                output=result.output,
                agent_id=agent_id,
                operation="exec",
            )
        return result

    async def exec_command(
        self,
        agent_id: str,
        command: str | list[str],
        *,
        workdir: str | None = None,
        timeout: float | None = None,
    ) -> ExecResult:
        """Like ``exec`` but returns non-zero exits instead of raising."""
        agent = self._require(agent_id, "exec")
        argv = ["/bin/sh", "-c", command] if isinstance(command, str) else list(command)
        if not argv:
            raise AgentValidationError("empty command", agent_id=agent_id, operation="exec")
        with self._observe(MetricCategory.CONTAINER_OPS, "exec", agent_id):
            container_id = await self._resolve_container(agent, "exec")
            return await self._exec_raw(agent, argv, workdir=workdir, timeout=timeout, container_id=container_id)

    async def stats(self, agent_id: str) -> dict[str, Any]:
        """Raw runtime stats snapshot for the agent's container."""
        agent = self._require(agent_id, "stats")
        container_id = await self._resolve_container(agent, "stats")
        with self._runtime_errors(agent_id, "stats"):
            return await self.runtime.stats(container_id)

    # ── Git operations ───────────────────────────────────────────────────

    async def create_branch(self, agent_id: str, branch: str, *, checkout: bool = False) -> Agent:
        """Create *branch* at HEAD, optionally checking it out (two execs)."""
        agent = self._require(agent_id, "create-branch")
        self._check_branch(agent_id, branch, "create-branch")
        with self._observe(MetricCategory.GIT_OPS, "create-branch", agent_id):
            await self.exec(agent_id, git.git_argv(agent.repo_path, "branch", branch))
        logger.info("Agent %s: created branch %s", agent_id, branch)
        if checkout:
            return await self.checkout_branch(agent_id, branch)
        return agent

    async def checkout_branch(self, agent_id: str, branch: str) -> Agent:
        agent = self._require(agent_id, "checkout")
        self._check_branch(agent_id, branch, "checkout")
        with self._observe(MetricCategory.GIT_OPS, "checkout", agent_id):
            await self.exec(agent_id, git.git_argv(agent.repo_path, "checkout", branch))
        agent.branch = branch
        agent.touch()
        logger.info("Agent %s: checked out %s", agent_id, branch)
        await self._write_status_file_best_effort(agent)
        return agent

    async def get_git_status(self, agent_id: str) -> GitStatus:
        """Snapshot of the agent's repository from four independent execs."""
        agent = self._require(agent_id, "git-status")
        repo = agent.repo_path
        with self._observe(MetricCategory.GIT_OPS, "status", agent_id):
            branch, commit, modified, untracked = await asyncio.gather(
                self.exec(agent_id, git.git_argv(repo, *git.BRANCH)),
                self.exec(agent_id, git.git_argv(repo, *git.COMMIT)),
                self.exec(agent_id, git.git_argv(repo, *git.MODIFIED)),
                self.exec(agent_id, git.git_argv(repo, *git.UNTRACKED)),
            )
            ahead_behind = await self.exec_command(agent_id, git.git_argv(repo, *git.AHEAD_BEHIND))
        return git.aggregate_git_status(
            branch=branch.stdout,
            commit=commit.stdout,
            modified=modified.stdout,
            untracked=untracked.stdout,
            ahead_behind=ahead_behind.stdout if ahead_behind.ok else None,
        )

    async def update_status_file(self, agent_id: str) -> Path:
        """Rewrite ``<host_workspace>/.git-status.md`` from live git output."""
        agent = self._require(agent_id, "status-file")
        with self._observe(MetricCategory.FILE_OPS, "status-file", agent_id):
            branch_out = await self.exec_command(agent_id, git.git_argv(agent.repo_path, *git.BRANCH_VERBOSE))
            status_out = await self.exec_command(agent_id, git.git_argv(agent.repo_path, *git.STATUS))
            path = Path(agent.host_workspace_path) / git.STATUS_FILE_NAME
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(git.render_status_file(agent, branch_out.output, status_out.output))
        logger.debug("Status file updated at %s", path)
        return path

    async def _write_status_file_best_effort(self, agent: Agent) -> None:
        if not agent.has_repo:
            return
        try:
            await self.update_status_file(agent.agent_id)
        except (CapsulateError, OSError) as exc:
            logger.warning("Failed to update status file for %s: %s", agent.agent_id, exc)

    # ── Destruction ──────────────────────────────────────────────────────

    async def destroy(self, agent_id: str) -> None:
        """Stop and remove the agent's container, then forget the agent.

        If the container is already gone the registry entry is simply
        dropped.  If stop or remove fails the agent stays registered with
        status ERROR and the error propagates, so the call can be retried.

        Host directories (workspace, overlay diff, container tier) are kept.
        Re-creating the same id with a repository fails until the old
        ``repo`` directory is removed.
        """
        agent = self._require(agent_id, "destroy")
        with self._observe(MetricCategory.CONTAINER_OPS, "destroy", agent_id):
            agent.touch(AgentStatus.DESTROYING)
            try:
                with self._runtime_errors(agent_id, "destroy"):
                    containers = await self.runtime.list_containers(name=agent.container_name)
                    if not containers:
                        logger.warning(
                            "Container %s for agent %s already gone; dropping registry entry",
                            agent.container_name,
                            agent_id,
                        )
                    for container in containers:
                        if container.is_running:
                            await self.runtime.stop_container(
                                container.id, self.config.container.stop_timeout
                            )
                        await self.runtime.remove_container(container.id)
            except CapsulateError:
                agent.touch(AgentStatus.ERROR)
                raise
            await self.registry.remove(agent_id)
        logger.info("Agent %s destroyed", agent_id)

    # ── Dependencies ─────────────────────────────────────────────────────

    async def add_dependency(self, agent_id: str, package: str, version: str = DEFAULT_VERSION) -> None:
        """Add *package* to the agent's container tier and link it in place."""
        agent = self._require(agent_id, "add-dependency")
        self._check_name(agent_id, package, "package name", "add-dependency")
        with self._observe(MetricCategory.DEPENDENCY_OPS, "add", agent_id):
            self.dependencies.add_package(self.dependencies.container_dir(agent_id), package, version)
            script = ShellScript()
            script.run("mkdir", "-p", LINK_DIR)
            script.run("ln", "-sfn", f"{CONTAINER_DEPS_PATH}/{package}", f"{LINK_DIR}/{package}")
            await self._run_script(agent, script, "link dependency", workdir="/")
        logger.info("Agent %s: added dependency %s@%s", agent_id, package, version)

    async def list_dependencies(self, agent_id: str) -> DependencyListing:
        agent = self._require(agent_id, "list-dependencies")
        resolver = self.dependencies
        listing = DependencyListing(
            agent_id=agent_id,
            dependency_level=agent.dependency_level,
            core=resolver.read_versions(resolver.core_dir),
            team=resolver.read_versions(resolver.team_dir(agent.team_id))
            if agent.dependency_level is DependencyLevel.TEAM and agent.team_id
            else {},
            container=resolver.read_versions(resolver.container_dir(agent_id)),
            overrides=list(agent.override_dependencies),
        )
        result = await self.exec(agent_id, ["/bin/sh", "-c", _LIST_LINKS], workdir="/")
        for line in result.stdout.splitlines():
            name, _, target = line.strip().partition(" ")
            for prefix, tier in _TIER_BY_PREFIX.items():
                if target.startswith(prefix + "/"):
                    listing.linked[name] = tier
        return listing

    async def sync_dependencies(self, agent_id: str) -> None:
        """Re-run the link setup to pick up packages added since creation."""
        agent = self._require(agent_id, "sync-dependencies")
        plan = self.dependencies.plan(self._config_for(agent))
        with self._observe(MetricCategory.DEPENDENCY_OPS, "sync", agent_id):
            await self._run_script(agent, plan.script, "dependency setup", workdir="/")

    def create_team(self, team_id: str) -> Path:
        self._check_name(None, team_id, "team id", "create-team")
        return self.dependencies.create_team(team_id)

    def add_team_dependency(self, team_id: str, package: str, version: str = DEFAULT_VERSION) -> Path:
        self._check_name(None, team_id, "team id", "add-team-dependency")
        self._check_name(None, package, "package name", "add-team-dependency")
        with self._observe(MetricCategory.DEPENDENCY_OPS, "add-team"):
            return self.dependencies.add_package(self.dependencies.create_team(team_id), package, version)

    def add_core_dependency(self, package: str, version: str = DEFAULT_VERSION) -> Path:
        self._check_name(None, package, "package name", "add-core-dependency")
        with self._observe(MetricCategory.DEPENDENCY_OPS, "add-core"):
            return self.dependencies.add_package(self.dependencies.core_dir, package, version)

    # ── Overlay ──────────────────────────────────────────────────────────

    async def overlay_status(self, agent_id: str) -> OverlayStatus:
        """File counts of the overlay layers as seen inside the container."""
        agent = self._require(agent_id, "overlay-status")
        if not agent.use_overlay:
            return OverlayStatus(agent_id=agent_id, enabled=False)
        counts: dict[str, int] = {}
        with self._observe(MetricCategory.FILE_OPS, "overlay-status", agent_id):
            for layer, path in (("base", BASE_PATH), ("diff", DIFF_PATH), ("merged", MERGED_PATH)):
                result = await self.exec(
                    agent_id, ["/bin/sh", "-c", f"find {path} -type f | wc -l"], workdir="/"
                )
                counts[layer] = int(result.stdout.strip() or 0)
        return OverlayStatus(
            agent_id=agent_id,
            enabled=True,
            base_files=counts["base"],
            diff_files=counts["diff"],
            merged_files=counts["merged"],
        )

    # ── Adoption ─────────────────────────────────────────────────────────

    async def adopt_existing(self) -> list[Agent]:
        """Register labelled agent containers that this registry does not know.

        Running containers become READY (their branch is read back from
        git), stopped ones ERROR.  Returns the newly adopted agents.
        """
        adopted: list[Agent] = []
        with self._runtime_errors(None, "adopt"):
            containers = await self.runtime.list_containers()
        prefix = self.config.container.name_prefix
        for info in containers:
            if not info.name.startswith(prefix):
                continue
            try:
                details = await self.runtime.inspect_container(info.id) or {}
                labels = (details.get("Config") or {}).get("Labels") or info.labels
                agent_id = labels.get(LABEL_AGENT_ID, "")
                if not agent_id or agent_id in self.registry:
                    continue
                agent = self._agent_from_container(agent_id, info, labels, details)
                if agent.has_repo and info.is_running:
                    result = await self._exec_raw(agent, git.git_argv(agent.repo_path, *git.BRANCH))
                    if result.ok:
                        agent.branch = result.stdout.strip()
                await self.registry.register(agent)
            except AgentAlreadyExistsError:
                continue
            except (RuntimeClientError, ValueError) as exc:
                logger.warning("Not adopting container %s: %s", info.name, exc)
                continue
            adopted.append(agent)
            logger.debug("Adopted agent %s (%s)", agent_id, agent.status.value)
        if adopted:
            logger.info("Adopted %d existing agent container(s)", len(adopted))
        return adopted

    def _agent_from_container(
        self, agent_id: str, info: ContainerInfo, labels: dict[str, str], details: dict[str, Any]
    ) -> Agent:
        env = dict(
            item.split("=", 1) for item in (details.get("Config") or {}).get("Env") or [] if "=" in item
        )
        level = DependencyLevel(labels.get("capsulate.dependency-level", DependencyLevel.CONTAINER.value))
        workdir = labels.get("capsulate.workdir", "/workspace")
        return Agent(
            agent_id=agent_id,
            container_name=info.name,
            container_id=info.id,
            dependency_level=level,
            team_id=labels.get("capsulate.team-id", ""),
            override_dependencies=[p for p in env.get("OVERRIDE_DEPS", "").split(",") if p],
            use_overlay=labels.get("capsulate.use-overlay") == "true",
            host_workspace_path=labels.get(
                "capsulate.host-workspace", str(self.config.workspace_path(agent_id))
            ),
            workdir=workdir,
            repo_path=labels.get("capsulate.repo-path", workdir),
            repo_url=labels.get("capsulate.repo-url", ""),
            status=AgentStatus.READY if info.is_running else AgentStatus.ERROR,
        )

    # ── Helpers ──────────────────────────────────────────────────────────

    def _require(self, agent_id: str, operation: str) -> Agent:
        agent = self.registry.get(agent_id)
        if agent is None:
            raise AgentNotFoundError("no such agent", agent_id=agent_id, operation=operation)
        return agent

    async def _resolve_container(self, agent: Agent, operation: str) -> str:
        """Look the container up by name; a missing or stopped one marks the agent ERROR."""
        with self._runtime_errors(agent.agent_id, operation):
            containers = await self.runtime.list_containers(name=agent.container_name)
        if not containers or not containers[0].is_running:
            agent.touch(AgentStatus.ERROR)
            state = "is missing" if not containers else f"is not running ({containers[0].state})"
            raise AgentNotRunningError(
                f"container '{agent.container_name}' {state}",
                agent_id=agent.agent_id,
                operation=operation,
            )
        return containers[0].id

    async def _exec_raw(
        self,
        agent: Agent,
        argv: list[str],
        *,
        workdir: str | None = None,
        timeout: float | None = None,
        container_id: str | None = None,
    ) -> ExecResult:
        with self._runtime_errors(agent.agent_id, "exec"):
            return await self.runtime.exec(
                container_id or agent.container_id or agent.container_name,
                argv,
                workdir=workdir or agent.workdir,
                timeout=timeout or self.config.container.exec_timeout,
            )

    async def _exec_checked(
        self, agent: Agent, argv: list[str], what: str, *, timeout: float | None = None
    ) -> ExecResult:
        """Exec during bootstrap (agent not registered yet); non-zero raises."""
        result = await self._exec_raw(agent, argv, timeout=timeout)
        if not result.ok:
            raise CommandFailedError(
                f"{what} failed",
                exit_code=result.exit_code,
                output=result.output,
                agent_id=agent.agent_id,
                operation="create",
            )
        return result

    async def _run_script(self, agent: Agent, script: ShellScript, what: str, *, workdir: str) -> None:
        result = await self._exec_raw(agent, script.argv(), workdir=workdir)
        if not result.ok:
            raise CommandFailedError(
                f"{what} script failed",
                exit_code=result.exit_code,
                output=result.output,
                agent_id=agent.agent_id,
                operation="create" if agent.status is AgentStatus.CREATING else "exec",
            )

    @staticmethod
    def _config_for(agent: Agent) -> AgentConfig:
        return AgentConfig(
            agent_id=agent.agent_id,
            dependency_level=agent.dependency_level,
            team_id=agent.team_id,
            override_dependencies=agent.override_dependencies,
            use_overlay=agent.use_overlay,
        )

    def _check_stale_repo(self, config: AgentConfig) -> None:
        for path in self.composer.host_repo_dirs(config):
            if path.exists():
                raise AgentAlreadyExistsError(
                    f"host directory {path} already holds a repository; "
                    "remove it or use another agent id",
                    agent_id=config.agent_id,
                    operation="create",
                )

    @staticmethod
    def _check_branch(agent_id: str, branch: str, operation: str) -> None:
        try:
            validate_branch_name(branch)
        except ValueError as exc:
            raise AgentValidationError(str(exc), agent_id=agent_id, operation=operation) from exc

    @staticmethod
    def _check_name(agent_id: str | None, value: str, kind: str, operation: str) -> None:
        try:
            validate_name(value, kind=kind)
        except ValueError as exc:
            raise AgentValidationError(str(exc), agent_id=agent_id, operation=operation) from exc

    @contextmanager
    def _observe(self, category: MetricCategory, operation: str, agent_id: str = "") -> Iterator[Any]:
        with create_span(operation, agent_id or None, {"capsulate.category": category.value}) as span:
            with self.metrics.operation_timer(category, operation, agent_id):
                yield span

    @staticmethod
    @contextmanager
    def _runtime_errors(agent_id: str | None, operation: str) -> Iterator[None]:
        """Attach agent id and operation to runtime errors raised without them."""
        try:
            yield
        except RuntimeClientError as exc:
            if exc.agent_id or exc.operation:
                raise
            raise RuntimeClientError(exc.detail, agent_id=agent_id, operation=operation) from exc
