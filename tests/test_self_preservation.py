"""
Tests for the self-preservation monitor and the eviction scheduler.

Tests cover:
1. Sliding-window renewal meter
2. Activation and recovery of self-preservation
3. Scheduler ticks, including the lease scenarios
"""

import time

import pytest

from registry.config import RegistryConfig
from registry.eviction import EvictionScheduler
from registry.instance_registry import InstanceRegistry
from registry.self_preservation import RenewalRateMeter, SelfPreservationMonitor


@pytest.fixture
def preserving_config():
    return RegistryConfig(
        node_id="node-a",
        self_preservation_enabled=True,
        eviction_circuit_breaker_enabled=False,
    )


@pytest.fixture
def preserving_registry(preserving_config, clock):
    return InstanceRegistry(preserving_config, clock=clock)


def renew_all(registry, ids):
    for instance_id in ids:
        registry.renew("orders", instance_id)


# =============================================================================
# Meter
# =============================================================================

class TestRenewalRateMeter:
    """Tests for RenewalRateMeter."""

    def test_counts_inside_window(self, clock):
        meter = RenewalRateMeter(60, clock)
        meter.increment()
        clock.advance(30)
        meter.increment()
        assert meter.count() == 2

    def test_old_events_fall_out(self, clock):
        meter = RenewalRateMeter(60, clock)
        meter.increment()
        clock.advance(30)
        meter.increment()
        clock.advance(31)
        assert meter.count() == 1
        clock.advance(60)
        assert meter.count() == 0


# =============================================================================
# Monitor
# =============================================================================

class TestSelfPreservationMonitor:
    """Tests for SelfPreservationMonitor."""

    def test_inactive_while_renewals_arrive(self, preserving_registry, clock, make_instance):
        monitor = SelfPreservationMonitor(preserving_registry, clock)
        ids = [f"i-{n}" for n in range(10)]
        for i in ids:
            preserving_registry.register(make_instance(i))

        for _ in range(2):
            clock.advance(30)
            renew_all(preserving_registry, ids)

        assert monitor.actual_renews_per_minute == 20
        assert not monitor.recompute()
        assert not preserving_registry.self_preservation_active

    def test_activates_when_renewals_collapse(self, preserving_registry, clock, make_instance):
        monitor = SelfPreservationMonitor(preserving_registry, clock)
        ids = [f"i-{n}" for n in range(10)]
        for i in ids:
            preserving_registry.register(make_instance(i))

        # Only 3 of 10 clients still heartbeat
        for _ in range(4):
            clock.advance(30)
            renew_all(preserving_registry, ids[:3])

        assert monitor.recompute()
        assert preserving_registry.self_preservation_active

        # Every lease has expired, nothing is evicted
        clock.advance(120)
        assert preserving_registry.evict_expired_leases() == []
        assert preserving_registry.instance_count() == 10

    def test_deactivates_after_recovery(self, preserving_registry, clock, make_instance):
        monitor = SelfPreservationMonitor(preserving_registry, clock)
        ids = [f"i-{n}" for n in range(4)]
        for i in ids:
            preserving_registry.register(make_instance(i))

        clock.advance(60)
        assert monitor.recompute()

        for _ in range(2):
            clock.advance(30)
            renew_all(preserving_registry, ids)
        assert not monitor.recompute()
        assert monitor.get_stats()["activations"] == 1

    def test_disabled_never_activates(self, registry, clock, make_instance):
        monitor = SelfPreservationMonitor(registry, clock)
        registry.register(make_instance())
        clock.advance(300)
        assert not monitor.recompute()

    def test_empty_registry_is_not_preserving(self, preserving_registry, clock):
        monitor = SelfPreservationMonitor(preserving_registry, clock)
        assert not monitor.recompute()


# =============================================================================
# Scheduler
# =============================================================================

class TestEvictionScheduler:
    """Tests for EvictionScheduler."""

    def test_scenario_expired_instance_is_evicted(self, registry, clock, make_instance):
        monitor = SelfPreservationMonitor(registry, clock)
        scheduler = EvictionScheduler(registry, monitor)
        registry.register(make_instance("i-1", host="10.0.0.5", port=8080))

        clock.advance(91)
        evicted = scheduler.tick()

        assert [e.instance_id for e in evicted] == ["i-1"]
        assert registry.get_application("orders").instances == ()
        assert scheduler.total_evicted == 1

    def test_scenario_renewing_instance_survives(self, preserving_registry, clock, make_instance):
        monitor = SelfPreservationMonitor(preserving_registry, clock)
        scheduler = EvictionScheduler(preserving_registry, monitor)
        preserving_registry.register(make_instance())

        previous = preserving_registry.get_instance("orders", "i-1").lease.last_renewal_timestamp
        for _ in range(10):
            clock.advance(30)
            record = preserving_registry.renew("orders", "i-1")
            assert record.lease.last_renewal_timestamp > previous
            previous = record.lease.last_renewal_timestamp
            assert scheduler.tick() == []

        assert preserving_registry.get_instance("orders", "i-1") is not None
        assert not preserving_registry.self_preservation_active

    def test_tick_recomputes_self_preservation(self, preserving_registry, clock, make_instance):
        monitor = SelfPreservationMonitor(preserving_registry, clock)
        scheduler = EvictionScheduler(preserving_registry, monitor)
        for n in range(5):
            preserving_registry.register(make_instance(f"i-{n}"))

        clock.advance(200)
        assert scheduler.tick() == []
        assert preserving_registry.self_preservation_active

    def test_background_thread_runs_ticks(self, clock, make_instance):
        config = RegistryConfig(
            node_id="node-a",
            eviction_interval_seconds=1,
            self_preservation_enabled=False,
        )
        registry = InstanceRegistry(config, clock=clock)
        scheduler = EvictionScheduler(registry)
        registry.register(make_instance())
        clock.advance(91)

        scheduler.start()
        try:
            deadline = time.time() + 5
            while registry.instance_count() and time.time() < deadline:
                time.sleep(0.05)
        finally:
            scheduler.stop()

        assert registry.instance_count() == 0
        assert not scheduler.running
