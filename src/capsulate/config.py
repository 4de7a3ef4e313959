"""Configuration loading for Capsulate.

Reads the optional ``.capsulate/config.yaml`` under the project root and
applies environment variable overrides.  Pydantic models validate the
schema; every field has a default so a bare project works without any
config file at all.

Host layout (stable across process restarts)::

    <root>/.capsulate/
        config.yaml
        workspaces/<agent_id>/                     direct-mount workspace, status file
        dependencies/core/<pkg>/version
        dependencies/team/<team_id>/<pkg>/version
        dependencies/container/<agent_id>/<pkg>/version
        overlay/base/                              shared read-only lower layer
        overlay/diffs/<agent_id>/                  per-agent upper layer
        overlay/work/<agent_id>/                   per-agent overlayfs scratch
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

STATE_DIR_NAME = ".capsulate"

DEFAULT_DOCKERFILE = """\
FROM ubuntu:latest
RUN apt-get update && apt-get install -y git curl openssh-client && rm -rf /var/lib/apt/lists/*
RUN mkdir -p /root/.ssh && chmod 700 /root/.ssh
RUN echo "StrictHostKeyChecking no" >> /etc/ssh/ssh_config
WORKDIR /workspace
"""


# ── Config Models ────────────────────────────────────────────────────────────


class ImageConfig(BaseModel):
    name: str = "capsulate-base:latest"
    dockerfile: str = DEFAULT_DOCKERFILE


class ContainerConfig(BaseModel):
    name_prefix: str = "capsulate-"
    stop_timeout: int = 10  # seconds of grace before the runtime kills the container
    exec_timeout: int = 300  # seconds; per in-container command
    clone_timeout: int = 900  # seconds; git clone can be slow on large repos
    share_ssh: bool = True
    ssh_dir: str | None = None  # None → ~/.ssh
    docker_binary: str = "docker"

    @field_validator("name_prefix")
    @classmethod
    def _validate_prefix(cls, v: str) -> str:
        if not v or "/" in v:
            raise ValueError(f"name_prefix must be a non-empty name without '/': {v!r}")
        return v


class MonitorConfig(BaseModel):
    enabled: bool = True
    interval: int = 5  # seconds


class TracingConfig(BaseModel):
    service_name: str = "capsulate"
    otlp_endpoint: str | None = None
    console_export: bool = False


class CapsulateConfig(BaseModel):
    """Top-level Capsulate configuration."""

    root: Path = Field(default_factory=Path.cwd)
    image: ImageConfig = Field(default_factory=ImageConfig)
    container: ContainerConfig = Field(default_factory=ContainerConfig)
    monitor: MonitorConfig = Field(default_factory=MonitorConfig)
    tracing: TracingConfig = Field(default_factory=TracingConfig)

    # ── Host layout ──────────────────────────────────────────────────────

    @property
    def state_dir(self) -> Path:
        return self.root / STATE_DIR_NAME

    @property
    def workspaces_dir(self) -> Path:
        return self.state_dir / "workspaces"

    @property
    def dependencies_dir(self) -> Path:
        return self.state_dir / "dependencies"

    @property
    def overlay_dir(self) -> Path:
        return self.state_dir / "overlay"

    def workspace_path(self, agent_id: str) -> Path:
        return self.workspaces_dir / agent_id

    def container_name(self, agent_id: str) -> str:
        return f"{self.container.name_prefix}{agent_id}"

    @property
    def ssh_path(self) -> Path:
        if self.container.ssh_dir:
            return Path(self.container.ssh_dir).expanduser()
        return Path.home() / ".ssh"


# ── Config Loader ────────────────────────────────────────────────────────────


def load_config(root: Path | None = None) -> CapsulateConfig:
    """Load configuration for the project rooted at *root*.

    Resolution order: defaults → ``<root>/.capsulate/config.yaml`` →
    environment variables.

    Raises:
        ValueError: If the config file fails validation.
    """
    env_root = os.environ.get("CAPSULATE_ROOT", "").strip()
    root = Path(env_root) if env_root else (root or Path.cwd())
    root = root.resolve()

    raw: dict = {}
    config_path = root / STATE_DIR_NAME / "config.yaml"
    if config_path.exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        logger.debug("Loaded config file %s", config_path)

    raw["root"] = root
    config = CapsulateConfig(**raw)

    image = os.environ.get("CAPSULATE_IMAGE")
    if image:
        config.image.name = image

    ssh_dir = os.environ.get("CAPSULATE_SSH_DIR")
    if ssh_dir:
        config.container.ssh_dir = ssh_dir

    stop_timeout = os.environ.get("CAPSULATE_STOP_TIMEOUT")
    if stop_timeout:
        try:
            config.container.stop_timeout = int(stop_timeout)
        except ValueError:
            logger.warning("Ignoring non-integer CAPSULATE_STOP_TIMEOUT=%r", stop_timeout)

    interval = os.environ.get("CAPSULATE_MONITOR_INTERVAL")
    if interval:
        try:
            config.monitor.interval = _parse_seconds(interval)
        except ValueError:
            logger.warning("Ignoring invalid CAPSULATE_MONITOR_INTERVAL=%r", interval)

    if os.environ.get("CAPSULATE_MONITOR_DISABLED", "").lower() in ("1", "true", "yes"):
        config.monitor.enabled = False

    otlp = os.environ.get("OTEL_EXPORTER_OTLP_ENDPOINT")
    if otlp and not config.tracing.otlp_endpoint:
        config.tracing.otlp_endpoint = otlp

    logger.debug("Capsulate config: root=%s image=%s", config.root, config.image.name)
    return config


def _parse_seconds(value: str) -> int:
    """Parse ``"5"``, ``"5s"``, ``"2m"`` into whole seconds."""
    value = value.strip().lower()
    if value.endswith("ms"):
        return max(1, int(value[:-2]) // 1000)
    if value.endswith("s"):
        return int(value[:-1])
    if value.endswith("m"):
        return int(value[:-1]) * 60
    return int(value)
