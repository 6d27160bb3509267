"""Tests for stoker.config module."""

from __future__ import annotations

from ipaddress import IPv4Network
from pathlib import Path

import pytest
import yaml

from stoker.config import Settings, load_config_file, load_settings
from stoker.exceptions import ConfigError


class TestDefaults:
    def test_defaults_without_file_or_env(self, clean_env):
        settings = load_settings()
        assert settings == Settings()
        assert settings.network == IPv4Network("172.16.0.0/16")
        assert settings.bridge == "stoker0"
        assert settings.instances_dir == Path("/var/lib/stoker/instances")
        assert settings.locks_dir == Path("/var/lib/stoker/locks")
        assert settings.kernel_path == Path("/var/lib/stoker/assets/vmlinux.bin")

    def test_firecracker_path_prefers_explicit_binary(self):
        assert Settings().firecracker_path == Path("/var/lib/stoker/assets/firecracker")
        assert Settings(firecracker_bin=Path("/opt/fc")).firecracker_path == Path("/opt/fc")


class TestConfigFile:
    def test_yaml_values(self, clean_env, tmp_path):
        config = tmp_path / "config.yaml"
        config.write_text(
            yaml.dump({"state_dir": str(tmp_path / "state"), "network": "10.200.0.0/24", "boot_timeout": 90})
        )
        settings = load_settings(config)
        assert settings.state_dir == tmp_path / "state"
        assert settings.network == IPv4Network("10.200.0.0/24")
        assert settings.boot_timeout == 90.0

    def test_env_overrides_yaml(self, clean_env, mock_env, tmp_path):
        config = tmp_path / "config.yaml"
        config.write_text(yaml.dump({"bridge": "frombr0"}))
        mock_env(STOKER_BRIDGE="envbr0")
        assert load_settings(config).bridge == "envbr0"

    def test_config_path_from_env(self, clean_env, mock_env, tmp_path):
        config = tmp_path / "elsewhere.yaml"
        config.write_text(yaml.dump({"lima_instance": "my-lima"}))
        mock_env(STOKER_CONFIG=str(config))
        assert load_settings().lima_instance == "my-lima"

    def test_unknown_keys_warn(self, tmp_path, capsys):
        config = tmp_path / "config.yaml"
        config.write_text(yaml.dump({"bridge": "br9", "colour": "blue"}))
        assert load_config_file(config) == {"bridge": "br9"}
        out = capsys.readouterr().out
        assert "[WARN]" in out
        assert "colour" in out

    def test_empty_file(self, tmp_path):
        config = tmp_path / "config.yaml"
        config.write_text("")
        assert load_config_file(config) == {}

    def test_invalid_yaml(self, tmp_path):
        config = tmp_path / "config.yaml"
        config.write_text("bridge: [unclosed\n")
        with pytest.raises(ConfigError, match="invalid YAML"):
            load_config_file(config)

    def test_non_mapping(self, tmp_path):
        config = tmp_path / "config.yaml"
        config.write_text("- a\n- b\n")
        with pytest.raises(ConfigError, match="YAML mapping"):
            load_config_file(config)


class TestValidation:
    def test_network_must_parse(self, clean_env, mock_env):
        mock_env(STOKER_NETWORK="not-a-network")
        with pytest.raises(ConfigError, match="STOKER_NETWORK"):
            load_settings()

    def test_network_must_be_private(self, clean_env, mock_env):
        mock_env(STOKER_NETWORK="8.8.0.0/16")
        with pytest.raises(ConfigError, match="private"):
            load_settings()

    def test_network_must_hold_a_segment(self, clean_env, mock_env):
        mock_env(STOKER_NETWORK="172.16.0.0/31")
        with pytest.raises(ConfigError, match="/30 or larger"):
            load_settings()

    def test_bridge_name_length(self, clean_env, mock_env):
        mock_env(STOKER_BRIDGE="a-very-long-bridge-name")
        with pytest.raises(ConfigError, match="not a valid interface name"):
            load_settings()

    def test_timeouts(self, clean_env, mock_env):
        mock_env(STOKER_SHUTDOWN_GRACE="3", STOKER_REQUEST_TIMEOUT="0.5")
        settings = load_settings()
        assert settings.shutdown_grace == 3.0
        assert settings.request_timeout == 0.5
        mock_env(STOKER_BOOT_TIMEOUT="-1")
        with pytest.raises(ConfigError, match="STOKER_BOOT_TIMEOUT"):
            load_settings()

    def test_uplink_and_firecracker(self, clean_env, mock_env):
        mock_env(STOKER_UPLINK="enp3s0", STOKER_FIRECRACKER="~/bin/firecracker")
        settings = load_settings()
        assert settings.uplink == "enp3s0"
        assert settings.firecracker_bin == Path("~/bin/firecracker").expanduser()
