"""
Instance Registry: in-memory directory of application instances.

Each application group has its own lock, so traffic for one application never
waits on another. The top-level lock only guards the group map itself.
Published records are immutable; every mutation swaps in a new record.
"""

import logging
import threading
from collections import OrderedDict, deque
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Callable, Deque, Dict, Iterator, List, Optional, Tuple

from .config import RegistryConfig
from .errors import InstanceNotFoundError
from .models import (
    ActionType,
    Application,
    Applications,
    ChangeEvent,
    InstanceInfo,
    InstanceStatus,
    Lease,
    ReplicationAction,
    ReplicationMessage,
    ReplicationOutcome,
    compute_apps_hashcode,
    next_dirty_timestamp,
    normalize_app_name,
    utcnow,
)


logger = logging.getLogger(__name__)

InstanceCallback = Callable[[InstanceInfo, bool], None]


class _ApplicationGroup:
    """Instances of one application plus the lock serialising their writes."""

    __slots__ = ("name", "lock", "instances", "tombstones", "retired")

    def __init__(self, name: str):
        self.name = name
        self.lock = threading.Lock()
        self.instances: "OrderedDict[str, InstanceInfo]" = OrderedDict()
        # instance_id -> (dirty timestamp of the removal, removed at)
        self.tombstones: Dict[str, Tuple[datetime, datetime]] = {}
        # Set once the group is dropped from the registry map
        self.retired = False

    def is_empty(self) -> bool:
        return not self.instances and not self.tombstones

    def last_dirty(self, instance_id: str) -> Optional[datetime]:
        """Newest dirty timestamp known for an id, live or removed."""
        current = self.instances.get(instance_id)
        if current is not None:
            return current.last_dirty_timestamp
        tombstone = self.tombstones.get(instance_id)
        return tombstone[0] if tombstone else None


class InstanceRegistry:
    """
    Thread-safe registry of service instances grouped by application.

    Provides:
    - register / renew / cancel / set_status for clients
    - apply_replicated for peer nodes
    - snapshot and recent-change log for the query cache
    - evict_expired_leases for the eviction scheduler

    The registry is the only writer of instance records.
    """

    def __init__(
        self,
        config: Optional[RegistryConfig] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.config = config or RegistryConfig()
        self._clock = clock

        self._groups: Dict[str, _ApplicationGroup] = {}
        self._lock = threading.Lock()

        # Recent-change log feeding delta reads
        self._log_lock = threading.Lock()
        self._changes: Deque[ChangeEvent] = deque()
        self._change_seq = 0
        self._pruned_through = 0

        self._expected_clients = 0
        self._self_preservation_active = False
        self._eviction_suspended = False

        # Event callbacks: (instance, is_replication)
        self._on_registered: List[InstanceCallback] = []
        self._on_renewed: List[InstanceCallback] = []
        self._on_cancelled: List[InstanceCallback] = []
        self._on_status_changed: List[InstanceCallback] = []
        self._on_evicted: List[InstanceCallback] = []

        logger.info(
            f"InstanceRegistry initialized: "
            f"lease_duration={self.config.lease_duration_seconds}s, "
            f"renewal_interval={self.config.renewal_interval_seconds}s"
        )

    # =========================================================================
    # Internals
    # =========================================================================

    def _group(self, app_name: str, create: bool) -> Optional[_ApplicationGroup]:
        name = normalize_app_name(app_name)
        with self._lock:
            group = self._groups.get(name)
            if group is None and create:
                group = _ApplicationGroup(name)
                self._groups[name] = group
            return group

    @contextmanager
    def _locked_group(self, app_name: str, create: bool) -> Iterator[Optional[_ApplicationGroup]]:
        """Group with its lock held, or None when unknown and not created."""
        while True:
            group = self._group(app_name, create)
            if group is None:
                yield None
                return
            with group.lock:
                # Lost a race with _drop_empty_groups, look it up again
                if group.retired:
                    continue
                yield group
                return

    def _drop_empty_groups(self) -> None:
        with self._lock:
            for name, group in list(self._groups.items()):
                with group.lock:
                    if group.is_empty():
                        group.retired = True
                        del self._groups[name]

    def _groups_copy(self) -> List[_ApplicationGroup]:
        with self._lock:
            return list(self._groups.values())

    def _record_change(self, action: ActionType, instance: InstanceInfo, now: datetime) -> None:
        with self._log_lock:
            self._change_seq += 1
            self._changes.append(ChangeEvent(
                seq=self._change_seq,
                action=action,
                instance=instance,
                timestamp=now,
            ))
            self._prune_changes(now)

    def _prune_changes(self, now: datetime) -> None:
        cutoff = now - timedelta(seconds=self.config.delta_retention_seconds)
        while self._changes and self._changes[0].timestamp < cutoff:
            self._pruned_through = self._changes.popleft().seq

    def _adjust_expected(self, delta: int) -> None:
        with self._log_lock:
            self._expected_clients = max(0, self._expected_clients + delta)

    def _fire(self, callbacks: List[InstanceCallback], instance: InstanceInfo,
              is_replication: bool) -> None:
        for callback in callbacks:
            try:
                callback(instance, is_replication)
            except Exception as e:
                logger.error(f"Error in registry callback {callback!r}: {e}")

    # =========================================================================
    # Client mutations
    # =========================================================================

    def register(
        self,
        instance: InstanceInfo,
        lease_duration_seconds: Optional[int] = None,
    ) -> InstanceInfo:
        """
        Insert or overwrite the record for (app_name, instance_id).

        A fresh lease starts now. Re-registering a known id replaces the
        previous record and does not count as a new client.

        Args:
            instance: Instance description. Its lease, if any, only supplies
                the duration.
            lease_duration_seconds: Overrides the lease duration.

        Returns:
            The stored record.
        """
        now = self._clock()
        duration = (
            lease_duration_seconds
            or (instance.lease.duration_seconds if instance.lease else None)
            or self.config.lease_duration_seconds
        )

        with self._locked_group(instance.app_name, create=True) as group:
            existing = group.instances.get(instance.instance_id)
            record = instance.model_copy(update={
                "metadata": dict(instance.metadata),
                "lease": Lease.start(now, duration),
                "last_dirty_timestamp": next_dirty_timestamp(
                    group.last_dirty(instance.instance_id), now
                ),
            })
            group.instances[instance.instance_id] = record
            group.tombstones.pop(instance.instance_id, None)
            self._record_change(
                ActionType.MODIFIED if existing else ActionType.ADDED, record, now
            )

        if existing is None:
            self._adjust_expected(+1)
            logger.info(
                f"Registered {record.app_name}/{record.instance_id} "
                f"({record.host_address}:{record.port}, status={record.status.value}, "
                f"lease={duration}s)"
            )
        else:
            logger.info(f"Re-registered {record.app_name}/{record.instance_id}")

        self._fire(self._on_registered, record, False)
        return record

    def renew(self, app_name: str, instance_id: str) -> InstanceInfo:
        """
        Record a heartbeat.

        Raises:
            InstanceNotFoundError: The instance is unknown, the client should
                register again.
        """
        now = self._clock()
        with self._locked_group(app_name, create=False) as group:
            if group is None:
                raise InstanceNotFoundError(normalize_app_name(app_name), instance_id)
            existing = group.instances.get(instance_id)
            if existing is None:
                logger.warning(f"Heartbeat for unknown instance: {group.name}/{instance_id}")
                raise InstanceNotFoundError(group.name, instance_id)
            record = existing.model_copy(update={
                "lease": existing.lease.renewed(now),
                "last_dirty_timestamp": next_dirty_timestamp(
                    existing.last_dirty_timestamp, now
                ),
            })
            group.instances[instance_id] = record

        logger.debug(f"Heartbeat: {group.name}/{instance_id}")
        self._fire(self._on_renewed, record, False)
        return record

    def cancel(self, app_name: str, instance_id: str) -> InstanceInfo:
        """
        Remove an instance immediately, whatever its lease state.

        Returns:
            The removed record with its lease marked cancelled.

        Raises:
            InstanceNotFoundError: If the instance is not registered.
        """
        now = self._clock()
        with self._locked_group(app_name, create=False) as group:
            if group is None:
                raise InstanceNotFoundError(normalize_app_name(app_name), instance_id)
            existing = group.instances.pop(instance_id, None)
            if existing is None:
                logger.warning(f"Cannot cancel: {group.name}/{instance_id} not found")
                raise InstanceNotFoundError(group.name, instance_id)
            removed = existing.model_copy(update={
                "lease": existing.lease.ended(now, cancelled=True),
                "last_dirty_timestamp": next_dirty_timestamp(
                    existing.last_dirty_timestamp, now
                ),
            })
            group.tombstones[instance_id] = (removed.last_dirty_timestamp, now)
            self._record_change(ActionType.DELETED, removed, now)

        self._adjust_expected(-1)
        logger.info(f"Cancelled {group.name}/{instance_id}")
        self._fire(self._on_cancelled, removed, False)
        return removed

    def set_status(self, app_name: str, instance_id: str,
                   status: InstanceStatus) -> InstanceInfo:
        """
        Change an instance's status without touching its lease.

        Raises:
            InstanceNotFoundError: If the instance is not registered.
        """
        now = self._clock()
        with self._locked_group(app_name, create=False) as group:
            if group is None:
                raise InstanceNotFoundError(normalize_app_name(app_name), instance_id)
            existing = group.instances.get(instance_id)
            if existing is None:
                raise InstanceNotFoundError(group.name, instance_id)
            record = existing.model_copy(update={
                "status": status,
                "last_dirty_timestamp": next_dirty_timestamp(
                    existing.last_dirty_timestamp, now
                ),
            })
            group.instances[instance_id] = record
            self._record_change(ActionType.MODIFIED, record, now)

        logger.info(
            f"Status of {group.name}/{instance_id}: "
            f"{existing.status.value} -> {status.value}"
        )
        self._fire(self._on_status_changed, record, False)
        return record

    # =========================================================================
    # Replicated mutations
    # =========================================================================

    def apply_replicated(self, message: ReplicationMessage) -> ReplicationOutcome:
        """
        Apply a mutation received from a peer node.

        The message wins only if its dirty timestamp is strictly newer than
        anything known locally for the instance (ties keep local state).
        Callbacks fire with is_replication=True so the change is not
        forwarded again.
        """
        if message.action in (ReplicationAction.CANCEL, ReplicationAction.EVICT):
            return self._apply_replicated_removal(message)
        return self._apply_replicated_upsert(message)

    def _apply_replicated_removal(self, message: ReplicationMessage) -> ReplicationOutcome:
        now = self._clock()
        with self._locked_group(message.app_name, create=True) as group:
            known = group.last_dirty(message.instance_id)
            if known is not None and message.last_dirty_timestamp <= known:
                logger.debug(
                    f"Discarding stale {message.action.value} for "
                    f"{group.name}/{message.instance_id}"
                )
                return ReplicationOutcome.CONFLICT

            group.tombstones[message.instance_id] = (message.last_dirty_timestamp, now)
            existing = group.instances.pop(message.instance_id, None)
            if existing is None:
                return ReplicationOutcome.NOT_FOUND

            cancelled = message.action == ReplicationAction.CANCEL
            removed = existing.model_copy(update={
                "lease": existing.lease.ended(now, cancelled=cancelled),
                "last_dirty_timestamp": message.last_dirty_timestamp,
            })
            self._record_change(ActionType.DELETED, removed, now)

        self._adjust_expected(-1)
        logger.info(
            f"Replicated {message.action.value} of {group.name}/{message.instance_id} "
            f"from {message.origin_node_id}"
        )
        self._fire(self._on_cancelled if cancelled else self._on_evicted, removed, True)
        return ReplicationOutcome.APPLIED

    def _apply_replicated_upsert(self, message: ReplicationMessage) -> ReplicationOutcome:
        now = self._clock()
        with self._locked_group(message.app_name, create=True) as group:
            existing = group.instances.get(message.instance_id)
            known = group.last_dirty(message.instance_id)
            if known is not None and message.last_dirty_timestamp <= known:
                logger.debug(
                    f"Discarding stale {message.action.value} for "
                    f"{group.name}/{message.instance_id}"
                )
                return ReplicationOutcome.CONFLICT

            if message.instance is not None:
                lease = message.instance.lease or Lease.start(
                    now, self.config.lease_duration_seconds
                )
                record = message.instance.model_copy(update={
                    "lease": lease,
                    "last_dirty_timestamp": message.last_dirty_timestamp,
                })
            elif existing is not None:
                update = {"last_dirty_timestamp": message.last_dirty_timestamp}
                if message.status is not None:
                    update["status"] = message.status
                if message.action == ReplicationAction.HEARTBEAT:
                    update["lease"] = existing.lease.renewed(now)
                record = existing.model_copy(update=update)
            else:
                return ReplicationOutcome.NOT_FOUND

            group.instances[message.instance_id] = record
            group.tombstones.pop(message.instance_id, None)
            if existing is None:
                self._record_change(ActionType.ADDED, record, now)
            elif (message.action != ReplicationAction.HEARTBEAT
                  or existing.status != record.status):
                self._record_change(ActionType.MODIFIED, record, now)

        if existing is None:
            self._adjust_expected(+1)
            logger.info(
                f"Replicated registration of {group.name}/{message.instance_id} "
                f"from {message.origin_node_id}"
            )

        callbacks = {
            ReplicationAction.REGISTER: self._on_registered,
            ReplicationAction.HEARTBEAT: self._on_renewed,
            ReplicationAction.STATUS_UPDATE: self._on_status_changed,
        }[message.action]
        self._fire(callbacks, record, True)
        return ReplicationOutcome.APPLIED

    # =========================================================================
    # Query
    # =========================================================================

    def get_instance(self, app_name: str, instance_id: str) -> Optional[InstanceInfo]:
        group = self._group(app_name, create=False)
        if group is None:
            return None
        with group.lock:
            return group.instances.get(instance_id)

    def get_application(self, app_name: str) -> Application:
        """Live view of one application (empty when unknown)."""
        name = normalize_app_name(app_name)
        group = self._group(name, create=False)
        if group is None:
            return Application(name=name)
        with group.lock:
            instances = tuple(group.instances.values())
        return Application(name=name, instances=instances)

    def snapshot(self) -> Applications:
        """
        Point-in-time copy of every non-empty application.

        Each group is copied under its own lock, so no group is ever seen
        half-updated. ``version`` is read first and may understate the
        changes included, which delta readers tolerate.
        """
        with self._log_lock:
            version = self._change_seq

        applications = []
        for group in self._groups_copy():
            with group.lock:
                instances = tuple(group.instances.values())
            if instances:
                applications.append(Application(name=group.name, instances=instances))

        return Applications(
            version=version,
            apps_hashcode=compute_apps_hashcode(applications),
            applications=tuple(applications),
        )

    def recent_changes(self) -> Tuple[Tuple[ChangeEvent, ...], int, int]:
        """
        Retained change log.

        Returns:
            (changes, pruned_through, version): deltas are only complete
            for markers >= pruned_through.
        """
        now = self._clock()
        with self._log_lock:
            self._prune_changes(now)
            return tuple(self._changes), self._pruned_through, self._change_seq

    @property
    def version(self) -> int:
        with self._log_lock:
            return self._change_seq

    def instance_count(self) -> int:
        total = 0
        for group in self._groups_copy():
            with group.lock:
                total += len(group.instances)
        return total

    # =========================================================================
    # Eviction
    # =========================================================================

    def evict_expired_leases(self, now: Optional[datetime] = None) -> List[InstanceInfo]:
        """
        Remove instances whose lease has expired.

        Nothing is evicted while self-preservation is active or while the
        node is resynchronising. With the circuit breaker on, one sweep
        removes at most ``size - int(size * renewal_percent_threshold)``
        instances, longest-expired first.

        Args:
            now: Sweep time, defaults to the registry clock.

        Returns:
            Evicted records, leases stamped with the eviction time.
        """
        now = now or self._clock()

        self._prune_tombstones(now)

        if self._eviction_suspended:
            logger.debug("Eviction suspended while resynchronising")
            return []
        if self._self_preservation_active:
            logger.debug("Self-preservation active, skipping eviction")
            return []

        candidates: List[Tuple[_ApplicationGroup, InstanceInfo]] = []
        size = 0
        for group in self._groups_copy():
            with group.lock:
                size += len(group.instances)
                for record in group.instances.values():
                    if record.lease.is_expired(now):
                        candidates.append((group, record))

        if not candidates:
            return []

        if self.config.eviction_circuit_breaker_enabled:
            limit = size - int(size * self.config.renewal_percent_threshold)
            if len(candidates) > limit:
                logger.warning(
                    f"{len(candidates)} expired leases, evicting only {limit} "
                    f"of {size} this sweep"
                )
                candidates.sort(key=lambda c: c[1].lease.expired_for(now), reverse=True)
                candidates = candidates[:limit]

        evicted = []
        for group, candidate in candidates:
            with group.lock:
                current = group.instances.get(candidate.instance_id)
                # Renewed or removed since the scan
                if current is None or not current.lease.is_expired(now):
                    continue
                del group.instances[candidate.instance_id]
                removed = current.model_copy(update={
                    "lease": current.lease.ended(now),
                    "last_dirty_timestamp": next_dirty_timestamp(
                        current.last_dirty_timestamp, now
                    ),
                })
                group.tombstones[candidate.instance_id] = (removed.last_dirty_timestamp, now)
                self._record_change(ActionType.DELETED, removed, now)
            evicted.append(removed)
            logger.warning(
                f"Lease expired, evicted {removed.app_name}/{removed.instance_id} "
                f"(last_renewal={current.lease.last_renewal_timestamp.isoformat()})"
            )

        if evicted:
            self._adjust_expected(-len(evicted))
            for removed in evicted:
                self._fire(self._on_evicted, removed, False)
        return evicted

    def _prune_tombstones(self, now: datetime) -> None:
        cutoff = now - timedelta(seconds=self.config.delta_retention_seconds)
        for group in self._groups_copy():
            with group.lock:
                stale = [i for i, (_, at) in group.tombstones.items() if at < cutoff]
                for instance_id in stale:
                    del group.tombstones[instance_id]
        self._drop_empty_groups()

    # =========================================================================
    # Self-preservation and eviction gates
    # =========================================================================

    @property
    def expected_clients(self) -> int:
        with self._log_lock:
            return self._expected_clients

    @property
    def expected_renews_per_minute(self) -> float:
        return self.expected_clients * self.config.renews_per_client_per_minute

    @property
    def renews_per_min_threshold(self) -> int:
        return int(self.expected_renews_per_minute * self.config.renewal_percent_threshold)

    @property
    def self_preservation_active(self) -> bool:
        return self._self_preservation_active

    def set_self_preservation(self, active: bool) -> None:
        self._self_preservation_active = active

    @property
    def eviction_suspended(self) -> bool:
        return self._eviction_suspended

    def suspend_eviction(self) -> None:
        self._eviction_suspended = True

    def resume_eviction(self) -> None:
        self._eviction_suspended = False

    # =========================================================================
    # Event callbacks
    # =========================================================================

    def on_registered(self, callback: InstanceCallback):
        """Register callback for registrations (local and replicated)."""
        self._on_registered.append(callback)

    def on_renewed(self, callback: InstanceCallback):
        """Register callback for heartbeats."""
        self._on_renewed.append(callback)

    def on_cancelled(self, callback: InstanceCallback):
        """Register callback for client cancellations."""
        self._on_cancelled.append(callback)

    def on_status_changed(self, callback: InstanceCallback):
        """Register callback for status updates."""
        self._on_status_changed.append(callback)

    def on_evicted(self, callback: InstanceCallback):
        """Register callback for lease-expiry evictions."""
        self._on_evicted.append(callback)

    # =========================================================================
    # Statistics
    # =========================================================================

    def get_stats(self) -> Dict[str, object]:
        snapshot = self.snapshot()
        by_status: Dict[str, int] = {}
        for app in snapshot.applications:
            for instance in app.instances:
                by_status[instance.status.value] = by_status.get(instance.status.value, 0) + 1

        return {
            "applications": len(snapshot.applications),
            "instances": snapshot.instance_count(),
            "instances_by_status": by_status,
            "version": snapshot.version,
            "expected_renews_per_minute": self.expected_renews_per_minute,
            "renews_per_min_threshold": self.renews_per_min_threshold,
            "self_preservation_active": self._self_preservation_active,
            "eviction_suspended": self._eviction_suspended,
        }
