"""
Registry node configuration.

Values come from defaults, then the ``registry:`` section of
config/registry.yaml, then REGISTRY_* environment variables.
"""

import logging
import os
import socket
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path(__file__).parent.parent.parent / "config" / "registry.yaml"

ENV_PREFIX = "REGISTRY_"


def _default_node_id() -> str:
    return f"{socket.gethostname()}:8761"


class RegistryConfig(BaseModel):
    """Process-wide settings recognised by a registry node."""

    # Node identity
    node_id: str = Field(default_factory=_default_node_id, min_length=1)
    host: str = "0.0.0.0"
    port: int = Field(default=8761, ge=1, le=65535)
    peers: List[str] = Field(default_factory=list, description="Peer base URLs")

    # Leases and heartbeats
    lease_duration_seconds: int = Field(default=90, ge=1)
    renewal_interval_seconds: int = Field(default=30, ge=1)

    # Self-preservation
    self_preservation_enabled: bool = True
    renewal_percent_threshold: float = Field(default=0.85, gt=0.0, le=1.0)
    renewal_window_seconds: int = Field(default=60, ge=1)

    # Eviction
    eviction_interval_seconds: int = Field(default=60, ge=1)
    eviction_circuit_breaker_enabled: bool = True

    # Query cache
    cache_refresh_interval_seconds: int = Field(default=30, ge=1)
    cache_dirty_threshold: int = Field(default=50, ge=1)
    delta_retention_seconds: int = Field(default=180, ge=1)
    read_your_writes: bool = True

    # Replication
    replication_max_retries: int = Field(default=3, ge=0)
    replication_batch_size: int = Field(default=100, ge=1)
    replication_queue_size: int = Field(default=10000, ge=1)
    replication_timeout_seconds: float = Field(default=5.0, gt=0)
    sync_retries: int = Field(default=3, ge=1)
    sync_retry_wait_seconds: float = Field(default=5.0, ge=0)

    log_level: str = "INFO"

    @field_validator("peers", mode="before")
    @classmethod
    def _split_peers(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [p.strip() for p in value.split(",") if p.strip()]
        return value

    @field_validator("peers")
    @classmethod
    def _strip_trailing_slash(cls, value: List[str]) -> List[str]:
        return [p.rstrip("/") for p in value]

    @property
    def renews_per_client_per_minute(self) -> float:
        return 60.0 / self.renewal_interval_seconds

    @property
    def cluster_mode(self) -> bool:
        return bool(self.peers)


def _read_yaml(config_path: Path) -> Dict[str, Any]:
    try:
        with open(config_path) as f:
            file_config = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        logger.warning(f"Failed to load config from {config_path}: {e}")
        return {}

    if not file_config or "registry" not in file_config:
        return {}
    logger.info(f"Loaded config from {config_path}")
    return dict(file_config["registry"] or {})


def _read_env() -> Dict[str, str]:
    values = {}
    for name in RegistryConfig.model_fields:
        raw = os.getenv(ENV_PREFIX + name.upper())
        if raw is not None:
            values[name] = raw
    return values


def load_config(
    config_path: Optional[str] = None,
    overrides: Optional[Dict[str, Any]] = None,
) -> RegistryConfig:
    """
    Build a RegistryConfig.

    Args:
        config_path: YAML file. Defaults to config/registry.yaml when present.
        overrides: Highest-precedence values (used by the CLI and tests).

    Raises:
        pydantic.ValidationError: If a value is out of range.
    """
    load_dotenv()

    values: Dict[str, Any] = {}

    path = Path(config_path) if config_path else DEFAULT_CONFIG_PATH
    if path.exists():
        values.update(_read_yaml(path))
    elif config_path:
        logger.warning(f"Config file not found: {config_path}")

    values.update(_read_env())
    if overrides:
        values.update({k: v for k, v in overrides.items() if v is not None})

    return RegistryConfig.model_validate(values)
