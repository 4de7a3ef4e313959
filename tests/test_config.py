"""Tests for Capsulate config loading."""

from pathlib import Path

import pytest
import yaml

from capsulate.config import CapsulateConfig, _parse_seconds, load_config


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for var in (
        "CAPSULATE_ROOT",
        "CAPSULATE_IMAGE",
        "CAPSULATE_SSH_DIR",
        "CAPSULATE_STOP_TIMEOUT",
        "CAPSULATE_MONITOR_INTERVAL",
        "CAPSULATE_MONITOR_DISABLED",
        "OTEL_EXPORTER_OTLP_ENDPOINT",
    ):
        monkeypatch.delenv(var, raising=False)


def _write_config(root: Path, data: dict) -> None:
    state = root / ".capsulate"
    state.mkdir(parents=True, exist_ok=True)
    (state / "config.yaml").write_text(yaml.safe_dump(data))


class TestLoadConfig:
    def test_defaults_without_file(self, tmp_path: Path):
        config = load_config(tmp_path)
        assert config.root == tmp_path.resolve()
        assert config.image.name == "capsulate-base:latest"
        assert config.container.name_prefix == "capsulate-"
        assert config.monitor.enabled is True

    def test_yaml_values(self, tmp_path: Path):
        _write_config(
            tmp_path,
            {
                "image": {"name": "my-image:1"},
                "container": {"stop_timeout": 3, "share_ssh": False},
                "monitor": {"interval": 30},
            },
        )
        config = load_config(tmp_path)
        assert config.image.name == "my-image:1"
        assert config.container.stop_timeout == 3
        assert config.container.share_ssh is False
        assert config.monitor.interval == 30

    def test_env_overrides(self, tmp_path: Path, monkeypatch):
        _write_config(tmp_path, {"image": {"name": "from-file"}})
        monkeypatch.setenv("CAPSULATE_IMAGE", "from-env")
        monkeypatch.setenv("CAPSULATE_STOP_TIMEOUT", "7")
        monkeypatch.setenv("CAPSULATE_MONITOR_INTERVAL", "2m")
        monkeypatch.setenv("CAPSULATE_MONITOR_DISABLED", "true")
        monkeypatch.setenv("CAPSULATE_SSH_DIR", str(tmp_path / "keys"))
        config = load_config(tmp_path)
        assert config.image.name == "from-env"
        assert config.container.stop_timeout == 7
        assert config.monitor.interval == 120
        assert config.monitor.enabled is False
        assert config.ssh_path == tmp_path / "keys"

    def test_root_from_env(self, tmp_path: Path, monkeypatch):
        other = tmp_path / "elsewhere"
        other.mkdir()
        monkeypatch.setenv("CAPSULATE_ROOT", str(other))
        assert load_config(tmp_path).root == other.resolve()

    def test_invalid_stop_timeout_ignored(self, tmp_path: Path, monkeypatch):
        monkeypatch.setenv("CAPSULATE_STOP_TIMEOUT", "soon")
        assert load_config(tmp_path).container.stop_timeout == 10

    def test_invalid_file_raises(self, tmp_path: Path):
        _write_config(tmp_path, {"container": {"name_prefix": "bad/prefix"}})
        with pytest.raises(ValueError):
            load_config(tmp_path)


class TestLayout:
    def test_paths(self, tmp_path: Path):
        config = CapsulateConfig(root=tmp_path)
        assert config.workspace_path("a1") == tmp_path / ".capsulate" / "workspaces" / "a1"
        assert config.dependencies_dir == tmp_path / ".capsulate" / "dependencies"
        assert config.overlay_dir == tmp_path / ".capsulate" / "overlay"
        assert config.container_name("a1") == "capsulate-a1"


@pytest.mark.parametrize(
    "raw,expected",
    [("5", 5), ("5s", 5), ("2m", 120), ("1500ms", 1), ("100ms", 1)],
)
def test_parse_seconds(raw, expected):
    assert _parse_seconds(raw) == expected
