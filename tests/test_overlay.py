"""Tests for workspace / overlay filesystem planning."""

import shlex

import pytest

from capsulate.errors import OverlayUnavailableError
from capsulate.isolation.overlay import (
    BASE_PATH,
    DIFF_PATH,
    MERGED_PATH,
    WORK_PATH,
    WORKSPACE,
    FilesystemComposer,
)
from capsulate.models import AgentConfig


@pytest.fixture
def composer(config) -> FilesystemComposer:
    return FilesystemComposer(config)


class TestDirectMount:
    def test_workspace_bind_mount(self, composer, config):
        plan = composer.plan(AgentConfig(agent_id="a1"))
        assert len(plan.mounts) == 1
        mount = plan.mounts[0]
        assert mount.target == WORKSPACE
        assert mount.source == str(config.workspace_path("a1"))
        assert not mount.read_only
        assert plan.workdir == WORKSPACE
        assert not plan.mount_script
        assert plan.cap_add == []
        assert config.workspace_path("a1").is_dir()


class TestOverlay:
    def test_layer_mounts(self, composer):
        plan = composer.plan(AgentConfig(agent_id="a1", use_overlay=True))
        by_target = {m.target: m for m in plan.mounts}
        assert set(by_target) == {BASE_PATH, DIFF_PATH, WORK_PATH}
        assert by_target[BASE_PATH].read_only
        assert not by_target[DIFF_PATH].read_only
        assert plan.workdir == MERGED_PATH
        assert "SYS_ADMIN" in plan.cap_add
        assert plan.security_opt

    def test_host_dirs_created(self, composer, config):
        composer.plan(AgentConfig(agent_id="a1", use_overlay=True))
        layers = composer.layers("a1")
        assert layers.base.is_dir()
        assert layers.diff.is_dir()
        assert layers.work.is_dir()
        assert layers.diff.name == "a1"
        # status file lives in the host workspace even with overlay
        assert config.workspace_path("a1").is_dir()

    def test_mount_script(self, composer):
        plan = composer.plan(AgentConfig(agent_id="a1", use_overlay=True))
        lines = [shlex.split(line) for line in plan.mount_script.lines]
        assert lines[0] == ["mkdir", "-p", MERGED_PATH]
        assert lines[1] == [
            "mount", "-t", "overlay", "overlay",
            "-o", f"lowerdir={BASE_PATH},upperdir={DIFF_PATH},workdir={WORK_PATH}",
            MERGED_PATH,
        ]

    def test_agents_share_base_but_not_diff(self, composer):
        a = composer.layers("a1")
        b = composer.layers("a2")
        assert a.base == b.base
        assert a.diff != b.diff
        assert a.work != b.work

    def test_unavailable_dirs_raise(self, composer, config):
        config.overlay_dir.parent.mkdir(parents=True, exist_ok=True)
        config.overlay_dir.write_text("")
        with pytest.raises(OverlayUnavailableError) as exc_info:
            composer.plan(AgentConfig(agent_id="a1", use_overlay=True))
        assert exc_info.value.operation == "create"


class TestHostRepoDirs:
    def test_direct_mount(self, composer, config):
        dirs = composer.host_repo_dirs(AgentConfig(agent_id="a1"))
        assert dirs == [config.workspace_path("a1") / "repo"]

    def test_overlay_checks_base_and_diff(self, composer):
        layers = composer.layers("a1")
        dirs = composer.host_repo_dirs(AgentConfig(agent_id="a1", use_overlay=True))
        assert dirs == [layers.base / "repo", layers.diff / "repo"]
