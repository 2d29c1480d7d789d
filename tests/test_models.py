"""
Tests for registry models.

Tests cover:
1. Lease expiry and state machine
2. Lease invariants
3. Instance normalisation and immutability
4. Snapshot helpers
"""

from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from registry.models import (
    Application,
    Applications,
    InstanceInfo,
    InstanceStatus,
    Lease,
    LeaseState,
    ReplicationAction,
    ReplicationMessage,
    compute_apps_hashcode,
    next_dirty_timestamp,
)


T0 = datetime(2026, 1, 1, tzinfo=timezone.utc)


# =============================================================================
# Lease
# =============================================================================

class TestLease:
    """Tests for Lease."""

    def test_not_expired_at_exact_duration(self):
        lease = Lease.start(T0, 90)
        assert not lease.is_expired(T0 + timedelta(seconds=90))

    def test_expired_after_duration(self):
        lease = Lease.start(T0, 90)
        assert lease.is_expired(T0 + timedelta(seconds=91))

    def test_renewal_moves_deadline(self):
        lease = Lease.start(T0, 90).renewed(T0 + timedelta(seconds=60))
        assert not lease.is_expired(T0 + timedelta(seconds=120))
        assert lease.registration_timestamp == T0

    def test_renewal_never_goes_backwards(self):
        lease = Lease.start(T0, 90).renewed(T0 - timedelta(seconds=5))
        assert lease.last_renewal_timestamp == T0

    def test_state_transitions(self):
        lease = Lease.start(T0, 90)
        assert lease.state(T0) == LeaseState.ACTIVE
        assert lease.state(T0 + timedelta(seconds=100)) == LeaseState.EXPIRED

        evicted = lease.ended(T0 + timedelta(seconds=100))
        assert evicted.state(T0 + timedelta(seconds=100)) == LeaseState.EVICTED

        cancelled = lease.ended(T0, cancelled=True)
        assert cancelled.state(T0) == LeaseState.CANCELLED

    def test_eviction_timestamp_is_final(self):
        ended = Lease.start(T0, 90).ended(T0 + timedelta(seconds=100))
        again = ended.ended(T0 + timedelta(seconds=500))
        assert again.eviction_timestamp == T0 + timedelta(seconds=100)

    def test_renewal_before_registration_rejected(self):
        with pytest.raises(ValidationError):
            Lease(
                registration_timestamp=T0,
                last_renewal_timestamp=T0 - timedelta(seconds=1),
            )

    def test_lease_is_frozen(self):
        lease = Lease.start(T0, 90)
        with pytest.raises(ValidationError):
            lease.duration_seconds = 10


# =============================================================================
# Instance
# =============================================================================

class TestInstanceInfo:
    """Tests for InstanceInfo."""

    def test_app_name_is_case_insensitive(self):
        instance = InstanceInfo(instance_id="i-1", app_name="Orders",
                                host_address="h", port=80)
        assert instance.app_name == "ORDERS"

    def test_default_status_is_starting(self):
        instance = InstanceInfo(instance_id="i-1", app_name="orders",
                                host_address="h", port=80)
        assert instance.status == InstanceStatus.STARTING

    def test_address(self):
        instance = InstanceInfo(instance_id="i-1", app_name="orders",
                                host_address="10.0.0.5", port=8443, secure=True)
        assert instance.address == "https://10.0.0.5:8443"

    def test_invalid_port_rejected(self):
        with pytest.raises(ValidationError):
            InstanceInfo(instance_id="i-1", app_name="orders", host_address="h", port=70000)

    def test_json_round_trip_keeps_dirty_timestamp(self):
        instance = InstanceInfo(
            instance_id="i-1", app_name="orders", host_address="h", port=80,
            lease=Lease.start(T0, 90),
            last_dirty_timestamp=T0 + timedelta(microseconds=7),
        )
        restored = InstanceInfo.model_validate(instance.model_dump(mode="json"))
        assert restored == instance


# =============================================================================
# Helpers
# =============================================================================

class TestHelpers:
    """Tests for module helpers."""

    def test_dirty_timestamp_strictly_increases(self):
        assert next_dirty_timestamp(None, T0) == T0
        assert next_dirty_timestamp(T0, T0) > T0
        assert next_dirty_timestamp(T0, T0 - timedelta(seconds=1)) > T0
        later = T0 + timedelta(seconds=1)
        assert next_dirty_timestamp(T0, later) == later

    def test_apps_hashcode(self):
        def inst(i, status):
            return InstanceInfo(instance_id=i, app_name="a", host_address="h",
                                port=1, status=status)

        apps = [
            Application(name="A", instances=(inst("1", InstanceStatus.UP),
                                             inst("2", InstanceStatus.DOWN))),
            Application(name="B", instances=(inst("3", InstanceStatus.UP),)),
        ]
        assert compute_apps_hashcode(apps) == "DOWN_1_UP_2_"
        assert compute_apps_hashcode([]) == ""

    def test_applications_lookup_ignores_case(self):
        apps = Applications(applications=(Application(name="ORDERS"),))
        assert apps.get("orders") is not None
        assert apps.get("billing") is None

    def test_replication_message_normalizes_app(self):
        message = ReplicationMessage(
            action=ReplicationAction.CANCEL,
            app_name="orders",
            instance_id="i-1",
            last_dirty_timestamp=T0,
            origin_node_id="node-a",
        )
        assert message.app_name == "ORDERS"
        assert message.replication is True
