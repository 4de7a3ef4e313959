"""Three-tier dependency composition for agent containers.

Tiers live on the host under ``<root>/.capsulate/dependencies``::

    core/<pkg>/version                    shared by every agent (read-only)
    team/<team_id>/<pkg>/version          shared by one team (read-only)
    container/<agent_id>/<pkg>/version    private to one agent (read-write)

Inside the container each tier is bind-mounted at its own path and the
package-link directory is populated with symlinks in precedence order
core → team → container.  ``ln -sfn`` replaces existing links, so the last
tier to link a name wins.  Names listed in ``override_dependencies`` are
never linked from core or team and therefore resolve from the agent's own
tier whenever it provides them.

No versions are resolved; a package is a directory and a ``version`` marker.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

from capsulate.config import CapsulateConfig
from capsulate.errors import DependencyTierUnavailableError
from capsulate.isolation.script import ShellScript, validate_agent_id, validate_name
from capsulate.models import AgentConfig, DependencyLevel, Mount

logger = logging.getLogger(__name__)

CORE_DEPS_PATH = "/workspace/core-deps"
TEAM_DEPS_PATH = "/workspace/team-deps"
CONTAINER_DEPS_PATH = "/workspace/container-deps"
LINK_DIR = "/workspace/node_modules"

VERSION_FILE = "version"
DEFAULT_VERSION = "1.0.0"


@dataclass
class DependencyPlan:
    """Mounts plus the in-container script that wires the tiers together."""

    mounts: list[Mount] = field(default_factory=list)
    script: ShellScript = field(default_factory=ShellScript)
    core_packages: list[str] = field(default_factory=list)
    team_packages: list[str] = field(default_factory=list)
    container_packages: list[str] = field(default_factory=list)


class DependencyResolver:
    """Plans tier mounts and symlink setup; manages tier contents on the host."""

    def __init__(self, config: CapsulateConfig) -> None:
        self._root = config.dependencies_dir

    # ── Tier paths ───────────────────────────────────────────────────────

    @property
    def core_dir(self) -> Path:
        return self._root / "core"

    def team_dir(self, team_id: str) -> Path:
        return self._root / "team" / validate_name(team_id, kind="team id")

    def container_dir(self, agent_id: str) -> Path:
        return self._root / "container" / validate_agent_id(agent_id)

    # ── Planning ─────────────────────────────────────────────────────────

    def plan(self, config: AgentConfig) -> DependencyPlan:
        """Build the mounts and setup script for *config*.

        Creates the core tier, the team tier (team level) and the agent's
        container tier if they do not exist yet.  Core is always mounted so
        packages added to it later reach every running agent on the next
        sync.

        Raises:
            DependencyTierUnavailableError: A tier directory could not be created.
        """
        plan = DependencyPlan()
        overrides = set(config.override_dependencies)

        self._ensure_dir(self.core_dir, config, "core")
        plan.mounts.append(Mount(source=str(self.core_dir), target=CORE_DEPS_PATH, read_only=True))
        plan.core_packages = self.list_packages(self.core_dir)

        team_linked = False
        match config.dependency_level:
            case DependencyLevel.TEAM if config.team_id:
                team_dir = self.team_dir(config.team_id)
                self._ensure_dir(team_dir, config, "team")
                plan.mounts.append(Mount(source=str(team_dir), target=TEAM_DEPS_PATH, read_only=True))
                plan.team_packages = self.list_packages(team_dir)
                team_linked = True
            case DependencyLevel.TEAM | DependencyLevel.CORE | DependencyLevel.CONTAINER:
                pass

        container_dir = self.container_dir(config.agent_id)
        self._ensure_dir(container_dir, config, "container")
        plan.mounts.append(Mount(source=str(container_dir), target=CONTAINER_DEPS_PATH))
        plan.container_packages = self.list_packages(container_dir)

        script = plan.script
        script.run("mkdir", "-p", LINK_DIR)
        for pkg in plan.core_packages:
            if pkg not in overrides:
                script.run("ln", "-sfn", f"{CORE_DEPS_PATH}/{pkg}", f"{LINK_DIR}/{pkg}")
        if team_linked:
            for pkg in plan.team_packages:
                if pkg not in overrides:
                    script.run("ln", "-sfn", f"{TEAM_DEPS_PATH}/{pkg}", f"{LINK_DIR}/{pkg}")
        for pkg in sorted(overrides):
            script.log(f"override: {pkg} resolves from the container tier")
        for pkg in plan.container_packages:
            script.run("ln", "-sfn", f"{CONTAINER_DEPS_PATH}/{pkg}", f"{LINK_DIR}/{pkg}")

        logger.debug(
            "Dependency plan for %s: core=%d team=%d container=%d overrides=%d",
            config.agent_id,
            len(plan.core_packages),
            len(plan.team_packages),
            len(plan.container_packages),
            len(overrides),
        )
        return plan

    # ── Tier contents ────────────────────────────────────────────────────

    @staticmethod
    def list_packages(tier_dir: Path) -> list[str]:
        """Sorted package names in a tier; invalid names are skipped."""
        if not tier_dir.is_dir():
            return []
        names = []
        for entry in tier_dir.iterdir():
            if not entry.is_dir():
                continue
            try:
                names.append(validate_name(entry.name, kind="package name"))
            except ValueError:
                logger.warning("Skipping unsafe package directory %s", entry)
        return sorted(names)

    @staticmethod
    def read_versions(tier_dir: Path) -> dict[str, str]:
        """Map package name → contents of its version marker ("" if absent)."""
        versions: dict[str, str] = {}
        for pkg in DependencyResolver.list_packages(tier_dir):
            marker = tier_dir / pkg / VERSION_FILE
            versions[pkg] = marker.read_text().strip() if marker.is_file() else ""
        return versions

    def add_package(self, tier_dir: Path, package: str, version: str = DEFAULT_VERSION) -> Path:
        """Create (or update) ``<tier>/<package>/version`` on the host."""
        validate_name(package, kind="package name")
        pkg_dir = tier_dir / package
        try:
            pkg_dir.mkdir(parents=True, exist_ok=True)
            (pkg_dir / VERSION_FILE).write_text(f"{version}\n")
        except OSError as exc:
            raise DependencyTierUnavailableError(
                f"cannot write package {package!r} under {tier_dir}: {exc}",
                operation="add-dependency",
            ) from exc
        logger.info("Added package %s@%s to %s", package, version, tier_dir)
        return pkg_dir

    def create_team(self, team_id: str) -> Path:
        team_dir = self.team_dir(team_id)
        try:
            team_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise DependencyTierUnavailableError(
                f"cannot create team tier {team_dir}: {exc}", operation="create-team"
            ) from exc
        return team_dir

    # ── Private helpers ──────────────────────────────────────────────────

    @staticmethod
    def _ensure_dir(path: Path, config: AgentConfig, tier: str) -> None:
        try:
            path.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise DependencyTierUnavailableError(
                f"cannot create {tier} dependency tier {path}: {exc}",
                agent_id=config.agent_id,
                operation="create",
            ) from exc
