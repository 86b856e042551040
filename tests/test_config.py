"""Tests for botharbor configuration."""

import tempfile
from pathlib import Path

import pytest

from botharbor.config import SupervisorConfig, load_config
from botharbor.errors import ValidationError


def test_defaults():
    config = SupervisorConfig()
    assert config.port_start == 10000
    assert config.max_archive_bytes == 100 * 1024 * 1024
    assert config.auto_restart is True
    assert config.state_path == config.sandbox_path / ".state"
    assert config.install_env() == {}


def test_from_dict_coerces_and_ignores_unknown_keys():
    config = SupervisorConfig.from_dict({
        "port_start": "12000",
        "start_grace_s": "1.5",
        "auto_restart": "no",
        "node_bin": "/usr/bin/node",
        "unknown": 1,
        "state_dir": None,
    })
    assert config.port_start == 12000
    assert config.start_grace_s == 1.5
    assert config.auto_restart is False
    assert config.node_bin == "/usr/bin/node"
    assert config.state_dir is None


def test_from_dict_rejects_bad_numbers():
    with pytest.raises(ValidationError):
        SupervisorConfig.from_dict({"port_end": "lots"})


def test_from_env_prefers_botharbor_prefixed_vars(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("BOTHARBOR_PORT_START", "15000")
    monkeypatch.setenv("BOTHARBOR_NPM_REGISTRY_URL", "http://verdaccio:4873")
    monkeypatch.setenv("BOTHARBOR_PERSIST", "false")
    monkeypatch.setenv("BOTHARBOR_NODE_BIN", "  ")
    monkeypatch.setenv("BOTHARBOR_HEARTBEAT_S", "5")

    cfg = SupervisorConfig.from_env()
    assert cfg.port_start == 15000
    assert cfg.persist is False
    assert cfg.node_bin == "node"
    assert cfg.heartbeat_s == 5.0
    assert cfg.install_env() == {"NPM_CONFIG_REGISTRY": "http://verdaccio:4873"}


def test_from_yaml_reads_supervisor_section():
    yaml_content = """
supervisor:
  sandbox_root: /srv/bots
  max_restart_attempts: 3
  restart_backoff: 1.5
"""
    with tempfile.NamedTemporaryFile(mode='w', suffix='.yaml', delete=False) as f:
        f.write(yaml_content)
        f.flush()

        config = SupervisorConfig.from_yaml(Path(f.name))

    assert config.sandbox_root == "/srv/bots"
    assert config.max_restart_attempts == 3
    assert config.restart_backoff == 1.5


def test_yaml_round_trip(tmp_path):
    original = SupervisorConfig(sandbox_root=str(tmp_path), port_start=20000, auto_restart=False)
    path = tmp_path / "botharbor.yaml"
    original.to_yaml(path)

    loaded = load_config(path)
    assert loaded == original


def test_non_mapping_yaml_is_rejected(tmp_path):
    path = tmp_path / "bad.yaml"
    path.write_text("- just\n- a list\n")
    with pytest.raises(ValidationError):
        SupervisorConfig.from_yaml(path)


def test_load_config_file_not_found():
    with pytest.raises(FileNotFoundError):
        load_config("/nonexistent/path.yaml")


def test_load_config_without_path_reads_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("BOTHARBOR_LOG_PAGE_SIZE", "25")
    assert load_config().log_page_size == 25
