"""
Service registry engine.

Provides the in-memory instance directory, lease eviction, self-preservation,
peer replication, and the query cache. RegistryService (registry_service.py)
wires them into one node.
"""

from .client import DiscoveryClient, HeartbeatAgent
from .config import RegistryConfig, load_config
from .errors import InstanceNotFoundError, PeerUnreachableError, RegistryError
from .eviction import EvictionScheduler
from .instance_registry import InstanceRegistry
from .models import (
    Application,
    Applications,
    InstanceInfo,
    InstanceStatus,
    Lease,
    LeaseState,
    ReplicationMessage,
    ReplicationOutcome,
)
from .query_cache import QueryCache
from .replication import HttpPeerSink, LocalPeerSink, PeerSink, ReplicationChannel
from .self_preservation import SelfPreservationMonitor

__all__ = [
    "RegistryConfig",
    "load_config",
    "RegistryError",
    "InstanceNotFoundError",
    "PeerUnreachableError",
    "InstanceRegistry",
    "EvictionScheduler",
    "SelfPreservationMonitor",
    "QueryCache",
    "ReplicationChannel",
    "PeerSink",
    "HttpPeerSink",
    "LocalPeerSink",
    "DiscoveryClient",
    "HeartbeatAgent",
    "Application",
    "Applications",
    "InstanceInfo",
    "InstanceStatus",
    "Lease",
    "LeaseState",
    "ReplicationMessage",
    "ReplicationOutcome",
]
