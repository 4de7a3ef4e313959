"""Filesystem composition for agent containers.

Without overlay the agent's host workspace is bind-mounted read-write at
``/workspace``.  With overlay the container gets three host directories
and assembles the copy-on-write view itself after start-up::

    overlay/base/          → /workspace/base    (read-only, shared lower layer)
    overlay/diffs/<id>/    → /workspace/diff    (upper layer, private)
    overlay/work/<id>/     → /workspace/work    (overlayfs scratch, private)
                             /workspace/merged  (mounted in-container, workdir)

The in-container mount needs ``CAP_SYS_ADMIN``; a failed mount aborts
agent creation rather than falling back to a plain directory.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

from capsulate.config import CapsulateConfig
from capsulate.errors import OverlayUnavailableError
from capsulate.isolation.script import ShellScript, validate_agent_id
from capsulate.models import AgentConfig, Mount

logger = logging.getLogger(__name__)

WORKSPACE = "/workspace"
BASE_PATH = "/workspace/base"
DIFF_PATH = "/workspace/diff"
WORK_PATH = "/workspace/work"
MERGED_PATH = "/workspace/merged"

OVERLAY_CAPABILITIES = ["SYS_ADMIN"]
# default seccomp / apparmor profiles reject mount(2) even with SYS_ADMIN
OVERLAY_SECURITY_OPTS = ["apparmor=unconfined"]


@dataclass
class OverlayLayers:
    """Host paths backing one agent's overlay view."""

    base: Path
    diff: Path
    work: Path
    merged: str = MERGED_PATH


@dataclass
class FilesystemPlan:
    mounts: list[Mount] = field(default_factory=list)
    mount_script: ShellScript = field(default_factory=ShellScript)
    workdir: str = WORKSPACE
    host_workspace: Path | None = None
    cap_add: list[str] = field(default_factory=list)
    security_opt: list[str] = field(default_factory=list)


class FilesystemComposer:
    """Produces the mounts and in-container mount script for an agent."""

    def __init__(self, config: CapsulateConfig) -> None:
        self._config = config

    @property
    def base_dir(self) -> Path:
        return self._config.overlay_dir / "base"

    def layers(self, agent_id: str) -> OverlayLayers:
        validate_agent_id(agent_id)
        overlay_dir = self._config.overlay_dir
        return OverlayLayers(
            base=self.base_dir,
            diff=overlay_dir / "diffs" / agent_id,
            work=overlay_dir / "work" / agent_id,
        )

    def host_repo_dirs(self, config: AgentConfig) -> list[Path]:
        """Host directories that would back ``<workdir>/repo`` for *config*."""
        if not config.use_overlay:
            return [self._config.workspace_path(config.agent_id) / "repo"]
        layers = self.layers(config.agent_id)
        return [layers.base / "repo", layers.diff / "repo"]

    def plan(self, config: AgentConfig) -> FilesystemPlan:
        """Prepare host directories and describe how to mount them.

        The host workspace directory is created in both modes; it holds
        the status file even when the agent works inside the overlay.

        Raises:
            OverlayUnavailableError: Layer (or workspace) directories could
                not be created on the host.
        """
        host_workspace = self._config.workspace_path(config.agent_id)
        self._mkdir(host_workspace, config)

        if not config.use_overlay:
            return FilesystemPlan(
                mounts=[Mount(source=str(host_workspace), target=WORKSPACE)],
                workdir=WORKSPACE,
                host_workspace=host_workspace,
            )

        layers = self.layers(config.agent_id)
        for d in (layers.base, layers.diff, layers.work):
            self._mkdir(d, config)

        script = ShellScript()
        script.run("mkdir", "-p", MERGED_PATH)
        script.run(
            "mount", "-t", "overlay", "overlay",
            "-o", f"lowerdir={BASE_PATH},upperdir={DIFF_PATH},workdir={WORK_PATH}",
            MERGED_PATH,
        )

        logger.debug("Overlay layers for %s: diff=%s work=%s", config.agent_id, layers.diff, layers.work)
        return FilesystemPlan(
            mounts=[
                Mount(source=str(layers.base), target=BASE_PATH, read_only=True),
                Mount(source=str(layers.diff), target=DIFF_PATH),
                Mount(source=str(layers.work), target=WORK_PATH),
            ],
            mount_script=script,
            workdir=MERGED_PATH,
            host_workspace=host_workspace,
            cap_add=list(OVERLAY_CAPABILITIES),
            security_opt=list(OVERLAY_SECURITY_OPTS),
        )

    @staticmethod
    def _mkdir(path: Path, config: AgentConfig) -> None:
        try:
            path.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise OverlayUnavailableError(
                f"cannot create directory {path}: {exc}",
                agent_id=config.agent_id,
                operation="create",
            ) from exc
