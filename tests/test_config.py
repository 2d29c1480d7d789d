"""
Tests for registry configuration loading.
"""

import pytest
from pydantic import ValidationError

from registry.config import RegistryConfig, load_config


@pytest.fixture
def clean_env(monkeypatch):
    for name in RegistryConfig.model_fields:
        monkeypatch.delenv(f"REGISTRY_{name.upper()}", raising=False)
    return monkeypatch


@pytest.fixture
def yaml_file(tmp_path):
    path = tmp_path / "registry.yaml"
    path.write_text(
        "registry:\n"
        "  node_id: node-yaml\n"
        "  port: 9000\n"
        "  lease_duration_seconds: 60\n"
        "  peers:\n"
        "    - http://registry-2:8761/\n"
    )
    return path


class TestDefaults:
    """Tests for built-in defaults."""

    def test_defaults(self):
        config = RegistryConfig()
        assert config.port == 8761
        assert config.lease_duration_seconds == 90
        assert config.renewal_interval_seconds == 30
        assert config.renewal_percent_threshold == 0.85
        assert config.eviction_interval_seconds == 60
        assert config.peers == []
        assert not config.cluster_mode

    def test_renews_per_client_per_minute(self):
        assert RegistryConfig().renews_per_client_per_minute == 2.0
        assert RegistryConfig(renewal_interval_seconds=15).renews_per_client_per_minute == 4.0

    def test_peers_from_comma_string(self):
        config = RegistryConfig(peers="http://a:8761/, http://b:8761,")
        assert config.peers == ["http://a:8761", "http://b:8761"]
        assert config.cluster_mode

    def test_out_of_range_threshold_rejected(self):
        with pytest.raises(ValidationError):
            RegistryConfig(renewal_percent_threshold=1.5)

    def test_zero_lease_rejected(self):
        with pytest.raises(ValidationError):
            RegistryConfig(lease_duration_seconds=0)


class TestLoadConfig:
    """Tests for load_config precedence."""

    def test_yaml_values(self, clean_env, yaml_file):
        config = load_config(str(yaml_file))
        assert config.node_id == "node-yaml"
        assert config.port == 9000
        assert config.lease_duration_seconds == 60
        assert config.peers == ["http://registry-2:8761"]
        # Untouched keys keep their defaults
        assert config.renewal_interval_seconds == 30

    def test_env_overrides_yaml(self, clean_env, yaml_file):
        clean_env.setenv("REGISTRY_PORT", "9100")
        clean_env.setenv("REGISTRY_PEERS", "http://x:1,http://y:2")
        clean_env.setenv("REGISTRY_SELF_PRESERVATION_ENABLED", "false")

        config = load_config(str(yaml_file))
        assert config.port == 9100
        assert config.peers == ["http://x:1", "http://y:2"]
        assert config.self_preservation_enabled is False

    def test_overrides_win_and_none_is_ignored(self, clean_env, yaml_file):
        clean_env.setenv("REGISTRY_PORT", "9100")
        config = load_config(str(yaml_file), {"port": 9200, "node_id": None})
        assert config.port == 9200
        assert config.node_id == "node-yaml"

    def test_missing_file_falls_back_to_defaults(self, clean_env, tmp_path):
        config = load_config(str(tmp_path / "absent.yaml"), {"node_id": "n"})
        assert config.port == 8761

    def test_broken_yaml_is_ignored(self, clean_env, tmp_path):
        path = tmp_path / "broken.yaml"
        path.write_text("registry: [unclosed\n")
        config = load_config(str(path), {"node_id": "n"})
        assert config.lease_duration_seconds == 90

    def test_invalid_env_value_raises(self, clean_env, tmp_path):
        clean_env.setenv("REGISTRY_PORT", "not-a-port")
        with pytest.raises(ValidationError):
            load_config(str(tmp_path / "absent.yaml"))
