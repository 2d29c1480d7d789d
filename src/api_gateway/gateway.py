"""
API Gateway: HTTP interface of a registry node.

Provides REST API endpoints for:
- POST   /apps/{app}                  - register an instance
- PUT    /apps/{app}/{id}             - heartbeat
- DELETE /apps/{app}/{id}             - cancel
- PUT    /apps/{app}/{id}/status      - update status
- GET    /apps, /apps/delta, /apps/{app}, /apps/{app}/{id} - lookups
- POST   /peerreplication/batch       - mutations from peer nodes
- GET    /peerreplication/snapshot    - full copy for a rejoining peer
- GET    /actuator/health, /status    - node health and statistics
"""

import logging
import threading
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from fastapi import FastAPI, Header, HTTPException, Query
from pydantic import BaseModel, Field

from registry.errors import InstanceNotFoundError
from registry.instance_registry import InstanceRegistry
from registry.models import (
    Application,
    Applications,
    DeltaResponse,
    InstanceInfo,
    InstanceStatus,
    ReplicationMessage,
    ReplicationOutcome,
    utcnow,
)
from registry.query_cache import QueryCache
from registry.replication import REPLICATION_HEADER, ReplicationChannel
from registry.self_preservation import SelfPreservationMonitor

logger = logging.getLogger(__name__)


# =============================================================================
# Request/Response Models
# =============================================================================

class RegisterRequest(BaseModel):
    """Registration body; the application name comes from the path."""
    instance_id: str = Field(..., min_length=1, description="Unique instance id")
    host_address: str = Field(..., min_length=1, description="Host name or IP")
    port: int = Field(..., ge=0, le=65535)
    secure: bool = Field(default=False)
    status: InstanceStatus = Field(default=InstanceStatus.STARTING)
    metadata: Dict[str, str] = Field(default_factory=dict)
    lease_duration_seconds: Optional[int] = Field(default=None, ge=1)


class ReplicationBatchResponse(BaseModel):
    """Per-message outcome of a replication batch."""
    outcomes: List[ReplicationOutcome]


class StatusResponse(BaseModel):
    """Node status response."""
    status: str
    node_id: str
    partition_suspected: bool
    registry: Dict[str, Any]
    self_preservation: Optional[Dict[str, Any]] = None
    replication: Optional[Dict[str, Any]] = None
    cache: Dict[str, Any]


# =============================================================================
# Registry Gateway Class
# =============================================================================

class RegistryGateway:
    """
    Client-facing operations of one registry node.

    Mutations go to the live registry. Reads come from the query cache,
    except for a client that mutated within the last cache refresh
    interval (read-your-writes) or a caller asking for a consistent read.
    """

    def __init__(
        self,
        registry: InstanceRegistry,
        cache: QueryCache,
        channel: Optional[ReplicationChannel] = None,
        monitor: Optional[SelfPreservationMonitor] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.registry = registry
        self.cache = cache
        self.channel = channel
        self.monitor = monitor
        self.config = registry.config
        self._clock = clock

        # client id -> time of its last mutation
        self._recent_writers: Dict[str, datetime] = {}
        self._writers_lock = threading.Lock()

        logger.info("RegistryGateway initialized")

    # =========================================================================
    # Read-your-writes bookkeeping
    # =========================================================================

    def _note_write(self, client_id: Optional[str]) -> None:
        if not client_id or not self.config.read_your_writes:
            return
        now = self._clock()
        window = timedelta(seconds=self.config.cache_refresh_interval_seconds)
        with self._writers_lock:
            expired = [c for c, at in self._recent_writers.items() if now - at > window]
            for stale_id in expired:
                del self._recent_writers[stale_id]
            self._recent_writers[client_id] = now

    @property
    def tracked_writers(self) -> int:
        with self._writers_lock:
            return len(self._recent_writers)

    def _reads_live(self, client_id: Optional[str], consistent: bool) -> bool:
        if consistent:
            return True
        if not client_id or not self.config.read_your_writes:
            return False
        window = timedelta(seconds=self.config.cache_refresh_interval_seconds)
        now = self._clock()
        with self._writers_lock:
            written_at = self._recent_writers.get(client_id)
            if written_at is None:
                return False
            if now - written_at > window:
                del self._recent_writers[client_id]
                return False
            return True

    # =========================================================================
    # Mutations
    # =========================================================================

    def register(self, app_name: str, request: RegisterRequest,
                 client_id: Optional[str] = None) -> InstanceInfo:
        instance = InstanceInfo(
            app_name=app_name,
            **request.model_dump(exclude={"lease_duration_seconds"}),
        )
        record = self.registry.register(instance, request.lease_duration_seconds)
        self._note_write(client_id)
        return record

    def heartbeat(self, app_name: str, instance_id: str,
                  client_id: Optional[str] = None) -> InstanceInfo:
        try:
            return self.registry.renew(app_name, instance_id)
        except InstanceNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e))

    def cancel(self, app_name: str, instance_id: str,
               client_id: Optional[str] = None) -> InstanceInfo:
        try:
            record = self.registry.cancel(app_name, instance_id)
        except InstanceNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e))
        self._note_write(client_id)
        return record

    def update_status(self, app_name: str, instance_id: str, status: InstanceStatus,
                      client_id: Optional[str] = None) -> InstanceInfo:
        try:
            record = self.registry.set_status(app_name, instance_id, status)
        except InstanceNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e))
        self._note_write(client_id)
        return record

    # =========================================================================
    # Reads
    # =========================================================================

    def get_application(self, app_name: str, client_id: Optional[str] = None,
                        consistent: bool = False) -> Application:
        if self._reads_live(client_id, consistent):
            return self.registry.get_application(app_name)
        return self.cache.get_application(app_name)

    def get_all_applications(self, client_id: Optional[str] = None,
                             consistent: bool = False) -> Applications:
        if self._reads_live(client_id, consistent):
            return self.registry.snapshot()
        return self.cache.get_applications()

    def get_delta(self, since: int) -> DeltaResponse:
        return self.cache.get_delta(since)

    def get_instance(self, app_name: str, instance_id: str) -> InstanceInfo:
        record = self.registry.get_instance(app_name, instance_id)
        if record is None:
            raise HTTPException(
                status_code=404, detail=f"Instance not found: {app_name}/{instance_id}"
            )
        return record

    # =========================================================================
    # Peer replication
    # =========================================================================

    def receive_replication(self, messages: List[ReplicationMessage],
                            replication_header: Optional[str] = None) -> ReplicationBatchResponse:
        if (replication_header or "").lower() != "true":
            raise HTTPException(
                status_code=400,
                detail=f"Replication batches must carry {REPLICATION_HEADER}: true",
            )
        if self.channel is None:
            outcomes = [self.registry.apply_replicated(m) for m in messages]
        else:
            outcomes = self.channel.receive(messages)
        return ReplicationBatchResponse(outcomes=outcomes)

    # =========================================================================
    # Status Operations
    # =========================================================================

    def get_health(self) -> Dict[str, Any]:
        return {
            "status": "UP",
            "details": {
                "instances": self.registry.instance_count(),
                "self_preservation": self.registry.self_preservation_active,
                "eviction_suspended": self.registry.eviction_suspended,
            },
        }

    def get_status(self) -> StatusResponse:
        generation = self.cache.current
        return StatusResponse(
            status="healthy",
            node_id=self.channel.node_id if self.channel else self.config.node_id,
            partition_suspected=self.registry.self_preservation_active,
            registry=self.registry.get_stats(),
            self_preservation=self.monitor.get_stats() if self.monitor else None,
            replication=self.channel.get_stats() if self.channel else None,
            cache={
                "generation": generation.generation,
                "version": generation.version,
                "built_at": generation.built_at.isoformat(),
                "dirty": self.cache.dirty_count,
            },
        )


# =============================================================================
# FastAPI Application
# =============================================================================

def create_app(gateway: RegistryGateway) -> FastAPI:
    """Create FastAPI application."""

    app = FastAPI(
        title="Service Registry API",
        description="Registration, heartbeat and lookup of service instances",
        version="1.0.0",
    )

    # Store gateway instance
    app.state.gateway = gateway

    # ==========================================================================
    # Routes
    # ==========================================================================

    @app.get("/")
    async def root():
        """API root."""
        return {
            "name": "Service Registry API",
            "version": "1.0.0",
            "endpoints": {
                "apps": "/apps",
                "delta": "/apps/delta",
                "health": "/actuator/health",
                "status": "/status",
            }
        }

    @app.post("/apps/{app_name}", response_model=InstanceInfo)
    def register(app_name: str, request: RegisterRequest,
                 x_discovery_client_id: Optional[str] = Header(default=None)):
        """Register an instance."""
        return gateway.register(app_name, request, x_discovery_client_id)

    @app.get("/apps", response_model=Applications)
    def get_all_applications(consistent: bool = False,
                             x_discovery_client_id: Optional[str] = Header(default=None)):
        """All applications."""
        return gateway.get_all_applications(x_discovery_client_id, consistent)

    @app.get("/apps/delta", response_model=DeltaResponse)
    def get_delta(since: int = Query(default=0, ge=0)):
        """Changes since a version marker."""
        return gateway.get_delta(since)

    @app.get("/apps/{app_name}", response_model=Application)
    def get_application(app_name: str, consistent: bool = False,
                        x_discovery_client_id: Optional[str] = Header(default=None)):
        """One application (empty when unknown)."""
        return gateway.get_application(app_name, x_discovery_client_id, consistent)

    @app.get("/apps/{app_name}/{instance_id}", response_model=InstanceInfo)
    def get_instance(app_name: str, instance_id: str):
        """One instance from the live registry."""
        return gateway.get_instance(app_name, instance_id)

    @app.put("/apps/{app_name}/{instance_id}", response_model=InstanceInfo)
    def heartbeat(app_name: str, instance_id: str,
                  x_discovery_client_id: Optional[str] = Header(default=None)):
        """Renew the lease; 404 means register again."""
        return gateway.heartbeat(app_name, instance_id, x_discovery_client_id)

    @app.delete("/apps/{app_name}/{instance_id}", response_model=InstanceInfo)
    def cancel(app_name: str, instance_id: str,
               x_discovery_client_id: Optional[str] = Header(default=None)):
        """Cancel a registration."""
        return gateway.cancel(app_name, instance_id, x_discovery_client_id)

    @app.put("/apps/{app_name}/{instance_id}/status", response_model=InstanceInfo)
    def update_status(app_name: str, instance_id: str, value: InstanceStatus,
                      x_discovery_client_id: Optional[str] = Header(default=None)):
        """Change an instance's status."""
        return gateway.update_status(app_name, instance_id, value, x_discovery_client_id)

    @app.post("/peerreplication/batch", response_model=ReplicationBatchResponse)
    def receive_replication(messages: List[ReplicationMessage],
                            x_discovery_replication: Optional[str] = Header(default=None)):
        """Apply mutations from a peer node."""
        return gateway.receive_replication(messages, x_discovery_replication)

    @app.get("/peerreplication/snapshot", response_model=Applications)
    def peer_snapshot():
        """Live snapshot for a rejoining peer."""
        return gateway.registry.snapshot()

    @app.get("/actuator/health")
    async def health():
        """Liveness/readiness probe."""
        return gateway.get_health()

    @app.get("/status", response_model=StatusResponse)
    def get_status():
        """Node statistics."""
        return gateway.get_status()

    return app
