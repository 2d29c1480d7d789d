"""Shared fixtures: a controllable clock and registry factories."""

import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from registry.config import RegistryConfig
from registry.instance_registry import InstanceRegistry
from registry.models import InstanceInfo, InstanceStatus


class FakeClock:
    """Clock that only moves when told to."""

    def __init__(self, start: datetime = datetime(2026, 1, 1, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now += timedelta(seconds=seconds)
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def config():
    """Defaults, with self-preservation and the circuit breaker off."""
    return RegistryConfig(
        node_id="node-a",
        self_preservation_enabled=False,
        eviction_circuit_breaker_enabled=False,
    )


@pytest.fixture
def registry(config, clock):
    return InstanceRegistry(config, clock=clock)


@pytest.fixture
def make_instance():
    """Factory for InstanceInfo with sensible defaults."""
    def _make(instance_id="i-1", app_name="orders", host="10.0.0.5", port=8080,
              status=InstanceStatus.UP, **kwargs):
        return InstanceInfo(
            instance_id=instance_id,
            app_name=app_name,
            host_address=host,
            port=port,
            status=status,
            **kwargs,
        )
    return _make
