"""
Pydantic models for the service registry.

Records are frozen: the registry never edits a published record, it replaces
it with a copy. Readers holding a reference always see a whole record.
"""

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, Optional, Tuple
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def utcnow() -> datetime:
    """Default clock for every registry component."""
    return datetime.now(timezone.utc)


def normalize_app_name(name: str) -> str:
    """Application names group case-insensitively."""
    return name.strip().upper()


def next_dirty_timestamp(previous: Optional[datetime], now: datetime) -> datetime:
    """Strictly monotonic dirty timestamp for one record."""
    if previous is None or now > previous:
        return now
    return previous + timedelta(microseconds=1)


# =============================================================================
# Enums
# =============================================================================

class InstanceStatus(str, Enum):
    """Status reported by (or imposed on) a service instance."""
    STARTING = "STARTING"
    UP = "UP"
    DOWN = "DOWN"
    OUT_OF_SERVICE = "OUT_OF_SERVICE"
    UNKNOWN = "UNKNOWN"


class LeaseState(str, Enum):
    """Lifecycle of a lease. EVICTED and CANCELLED are terminal."""
    ACTIVE = "ACTIVE"
    EXPIRED = "EXPIRED"
    EVICTED = "EVICTED"
    CANCELLED = "CANCELLED"


class ActionType(str, Enum):
    """Kind of change recorded in the delta log."""
    ADDED = "ADDED"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"


class ReplicationAction(str, Enum):
    """Mutation carried by a replication message."""
    REGISTER = "REGISTER"
    HEARTBEAT = "HEARTBEAT"
    CANCEL = "CANCEL"
    STATUS_UPDATE = "STATUS_UPDATE"
    EVICT = "EVICT"


class ReplicationOutcome(str, Enum):
    """Result of applying one replicated message locally."""
    APPLIED = "APPLIED"
    CONFLICT = "CONFLICT"
    NOT_FOUND = "NOT_FOUND"


# =============================================================================
# Lease
# =============================================================================

class Lease(BaseModel):
    """
    Time-bounded liveness claim held by one instance.

    A lease is expired once more than duration_seconds have passed since
    the last renewal.
    """
    model_config = ConfigDict(frozen=True)

    registration_timestamp: datetime = Field(..., description="First registration")
    last_renewal_timestamp: datetime = Field(..., description="Most recent heartbeat")
    duration_seconds: int = Field(default=90, ge=1, description="Lease time-to-live")
    eviction_timestamp: Optional[datetime] = Field(
        None,
        description="When the registry removed the instance"
    )
    cancelled: bool = Field(default=False, description="Removed by the owning client")

    @model_validator(mode="after")
    def _check_renewal_order(self) -> "Lease":
        if self.last_renewal_timestamp < self.registration_timestamp:
            raise ValueError("last_renewal_timestamp precedes registration_timestamp")
        return self

    @classmethod
    def start(cls, now: datetime, duration_seconds: int) -> "Lease":
        return cls(
            registration_timestamp=now,
            last_renewal_timestamp=now,
            duration_seconds=duration_seconds,
        )

    def is_expired(self, now: datetime) -> bool:
        return now - self.last_renewal_timestamp > timedelta(seconds=self.duration_seconds)

    def expired_for(self, now: datetime) -> timedelta:
        """How long past its deadline the lease is (negative while active)."""
        return now - self.last_renewal_timestamp - timedelta(seconds=self.duration_seconds)

    def state(self, now: datetime) -> LeaseState:
        if self.eviction_timestamp is not None:
            return LeaseState.CANCELLED if self.cancelled else LeaseState.EVICTED
        if self.is_expired(now):
            return LeaseState.EXPIRED
        return LeaseState.ACTIVE

    def renewed(self, now: datetime) -> "Lease":
        return self.model_copy(update={
            "last_renewal_timestamp": max(now, self.last_renewal_timestamp),
        })

    def ended(self, now: datetime, cancelled: bool = False) -> "Lease":
        if self.eviction_timestamp is not None:
            return self
        return self.model_copy(update={"eviction_timestamp": now, "cancelled": cancelled})


# =============================================================================
# Instance
# =============================================================================

class InstanceInfo(BaseModel):
    """One registered process instance of an application."""
    model_config = ConfigDict(frozen=True)

    instance_id: str = Field(..., min_length=1, description="Globally unique instance id")
    app_name: str = Field(..., min_length=1, description="Logical service name")
    host_address: str = Field(..., min_length=1, description="Host name or IP")
    port: int = Field(..., ge=0, le=65535, description="Service port")
    secure: bool = Field(default=False, description="Port speaks TLS")
    status: InstanceStatus = Field(default=InstanceStatus.STARTING)
    metadata: Dict[str, str] = Field(
        default_factory=dict,
        description="Opaque key/value pairs"
    )
    lease: Optional[Lease] = Field(None, description="Assigned by the registry")
    last_dirty_timestamp: Optional[datetime] = Field(
        None,
        description="Last local mutation, orders replicated updates"
    )

    @field_validator("app_name")
    @classmethod
    def _normalize_app_name(cls, value: str) -> str:
        return normalize_app_name(value)

    @property
    def address(self) -> str:
        scheme = "https" if self.secure else "http"
        return f"{scheme}://{self.host_address}:{self.port}"


# =============================================================================
# Read shapes
# =============================================================================

class Application(BaseModel):
    """All instances of one application at a point in time."""
    model_config = ConfigDict(frozen=True)

    name: str
    instances: Tuple[InstanceInfo, ...] = ()


class Applications(BaseModel):
    """Full registry snapshot."""
    model_config = ConfigDict(frozen=True)

    version: int = Field(default=0, description="Change sequence the snapshot covers")
    apps_hashcode: str = Field(default="", description="Status count reconciliation code")
    applications: Tuple[Application, ...] = ()

    def get(self, name: str) -> Optional[Application]:
        wanted = normalize_app_name(name)
        for app in self.applications:
            if app.name == wanted:
                return app
        return None

    def instance_count(self) -> int:
        return sum(len(app.instances) for app in self.applications)


def compute_apps_hashcode(applications) -> str:
    """Reconciliation code, e.g. ``DOWN_1_UP_2_``."""
    counts: Dict[str, int] = {}
    for app in applications:
        for instance in app.instances:
            counts[instance.status.value] = counts.get(instance.status.value, 0) + 1
    return "".join(f"{status}_{counts[status]}_" for status in sorted(counts))


class ChangeEvent(BaseModel):
    """Entry of the registry's recent-change log."""
    model_config = ConfigDict(frozen=True)

    seq: int
    action: ActionType
    instance: InstanceInfo
    timestamp: datetime


class DeltaResponse(BaseModel):
    """Changes since a client-supplied version marker."""
    version: int
    since: int
    full_required: bool = False
    apps_hashcode: str = ""
    changes: Tuple[ChangeEvent, ...] = ()


# =============================================================================
# Replication
# =============================================================================

class ReplicationMessage(BaseModel):
    """
    One mutation sent to a peer node.

    Receivers apply it locally and never forward it again.
    """
    model_config = ConfigDict(frozen=True)

    action: ReplicationAction
    app_name: str
    instance_id: str
    instance: Optional[InstanceInfo] = Field(None, description="Full record, absent on removal")
    status: Optional[InstanceStatus] = None
    last_dirty_timestamp: datetime
    origin_node_id: str
    replication: bool = True

    @field_validator("app_name")
    @classmethod
    def _normalize_app_name(cls, value: str) -> str:
        return normalize_app_name(value)
