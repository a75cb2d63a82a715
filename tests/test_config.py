"""
Tests for Config and ServiceSpec.
"""

import json
import os
import subprocess
import tempfile
import pytest
from unittest.mock import patch

from svcman.config import Config, ServiceSpec, default_config_path, load_config
from svcman.errors import ConfigError


def test_service_spec_defaults():
    """Test that ServiceSpec has correct default values."""
    spec = ServiceSpec(run_command="./run.sh")

    assert spec.enabled is False
    assert spec.base_dir is None
    assert spec.git_uri is None
    assert spec.ssh_key_file is None
    assert spec.env == {}


def test_working_dir_for_base_dir_service():
    spec = ServiceSpec(run_command="sh -c ./run.sh", base_dir="/srv/api")

    assert spec.working_dir("/var/lib/svcman", "api") == "/srv/api"
    assert spec.is_git is False


def test_working_dir_for_git_service():
    spec = ServiceSpec(run_command="./run.sh", git_uri="https://example/repo.git")

    assert spec.working_dir("/var/lib/svcman", "worker") == os.path.join("/var/lib/svcman", "worker")
    assert spec.is_git is True


def test_working_dir_rejects_both_sources():
    """Test that a service with both base_dir and git_uri is a configuration error."""
    spec = ServiceSpec(
        run_command="./run.sh",
        base_dir="/srv/api",
        git_uri="https://example/repo.git"
    )

    with pytest.raises(ConfigError) as exc_info:
        spec.working_dir("/root", "api")

    assert exc_info.value.service == "api"
    assert "both" in str(exc_info.value)


def test_working_dir_rejects_no_source():
    """Test that a service with neither base_dir nor git_uri is a configuration error."""
    spec = ServiceSpec(run_command="./run.sh")

    with pytest.raises(ConfigError) as exc_info:
        spec.working_dir("/root", "api")

    assert "neither" in str(exc_info.value)


def test_config_from_dict():
    """Test building a configuration from an evaluated document."""
    config = Config.from_dict({
        "root": "/var/lib/svcman",
        "debug": True,
        "services": {
            "api": {
                "base_dir": "/srv/api",
                "enabled": True,
                "run_command": "sh -c ./run.sh",
                "env": {"PORT": 8080}
            },
            "worker": {
                "git_uri": "git@example.com:team/worker.git",
                "ssh_key_file": "id_deploy",
                "enabled": False,
                "run_command": "./worker"
            }
        }
    })

    assert config.root == "/var/lib/svcman"
    assert config.debug is True
    assert list(config.services) == ["api", "worker"]
    assert config.services["api"].env == {"PORT": "8080"}
    assert config.services["api"].enabled is True
    assert config.services["worker"].ssh_key_file == "id_deploy"
    assert config.reconcile_interval == 60
    assert config.listen_port is None


def test_config_from_dict_requires_root():
    with pytest.raises(ConfigError, match="root"):
        Config.from_dict({"services": {}})


def test_config_from_dict_rejects_unknown_keys():
    with pytest.raises(ConfigError, match="unknown"):
        Config.from_dict({"root": "/r", "servcies": {}})


def test_config_from_dict_requires_run_command():
    with pytest.raises(ConfigError, match="run_command"):
        Config.from_dict({"root": "/r", "services": {"api": {"base_dir": "/srv"}}})


def test_config_from_dict_rejects_bad_interval():
    with pytest.raises(ConfigError, match="reconcile_interval"):
        Config.from_dict({"root": "/r", "reconcile_interval": 0})


def test_config_from_dict_keeps_invalid_sources_for_start_time():
    """Source exclusivity is checked per service at start, not at load."""
    config = Config.from_dict({
        "root": "/r",
        "services": {"broken": {"run_command": "true"}}
    })

    assert "broken" in config.services


def test_config_load_json_file():
    """Test loading configuration from JSON file."""
    with tempfile.NamedTemporaryFile(mode='w', suffix='.json', delete=False) as f:
        json.dump({
            "root": "/custom/root",
            "log_dir": "/tmp/logs",
            "listen_port": 9300,
            "services": {"api": {"base_dir": "/srv/api", "run_command": "./run"}}
        }, f)
        config_path = f.name

    try:
        config = Config.load(config_path)

        assert config.root == "/custom/root"
        assert config.log_dir == "/tmp/logs"
        assert config.listen_port == 9300
        assert config.services["api"].base_dir == "/srv/api"
    finally:
        os.unlink(config_path)


def test_config_load_invalid_json():
    with tempfile.NamedTemporaryFile(mode='w', suffix='.json', delete=False) as f:
        f.write("{not json")
        config_path = f.name

    try:
        with pytest.raises(ConfigError):
            Config.load(config_path)
    finally:
        os.unlink(config_path)


def test_config_load_missing_file():
    """Test that loading non-existent file raises ConfigError."""
    with pytest.raises(ConfigError, match="not found"):
        Config.load("/nonexistent/config.json")


def test_config_load_evaluates_nix_file(temp_dir):
    """Non-JSON files are evaluated with nix eval."""
    config_path = os.path.join(temp_dir, "services.nix")
    with open(config_path, 'w') as f:
        f.write("{ }")

    evaluated = subprocess.CompletedProcess(
        args=[], returncode=0,
        stdout=json.dumps({"root": "/nix/root", "services": {}}),
        stderr=""
    )
    with patch("svcman.config.subprocess.run", return_value=evaluated) as mock_run:
        config = load_config(config_path)

    assert config.root == "/nix/root"
    assert mock_run.call_args[0][0] == ["nix", "eval", "--json", "--file", config_path]


def test_config_load_nix_failure(temp_dir):
    config_path = os.path.join(temp_dir, "services.nix")
    with open(config_path, 'w') as f:
        f.write("{ broken")

    failed = subprocess.CompletedProcess(args=[], returncode=1, stdout="", stderr="syntax error")
    with patch("svcman.config.subprocess.run", return_value=failed):
        with pytest.raises(ConfigError, match="syntax error"):
            load_config(config_path)


def test_config_load_without_nix(temp_dir):
    config_path = os.path.join(temp_dir, "services.nix")
    with open(config_path, 'w') as f:
        f.write("{ }")

    with patch("svcman.config.subprocess.run", side_effect=FileNotFoundError("nix")):
        with pytest.raises(ConfigError, match="nix eval"):
            load_config(config_path)


def test_default_config_path_from_environment(monkeypatch):
    monkeypatch.setenv("SVCMAN_CONFIG", "/opt/services.json")

    assert default_config_path() == "/opt/services.json"


def test_to_dict_round_trips_through_json():
    config = Config(root="/r", services={"api": ServiceSpec(run_command="x", base_dir="/srv")})

    data = json.loads(json.dumps(config.to_dict()))

    assert data["services"]["api"]["base_dir"] == "/srv"
