"""
Registry Service: wires one registry node together.

This service:
- Builds the InstanceRegistry and the components observing it
  (self-preservation monitor, eviction scheduler, query cache,
  replication channel)
- Resynchronises from peers before allowing local evictions
- Exposes the FastAPI app for the HTTP surface
- Starts and stops all background threads
"""

import logging
from datetime import datetime
from typing import Callable, List, Optional

from api_gateway.gateway import RegistryGateway, create_app

from .config import RegistryConfig, load_config
from .eviction import EvictionScheduler
from .instance_registry import InstanceRegistry
from .models import utcnow
from .query_cache import QueryCache
from .replication import HttpPeerSink, PeerSink, ReplicationChannel
from .self_preservation import SelfPreservationMonitor

logger = logging.getLogger(__name__)


class RegistryService:
    """
    One registry node.

    Args:
        config: Node configuration. Loaded from config/registry.yaml and the
            environment when omitted.
        sinks: Replication peers. Defaults to one HttpPeerSink per
            configured peer URL.
        clock: Time source shared by every component.
    """

    def __init__(
        self,
        config: Optional[RegistryConfig] = None,
        sinks: Optional[List[PeerSink]] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.config = config or load_config()

        if sinks is None:
            sinks = [
                HttpPeerSink(url, timeout=self.config.replication_timeout_seconds)
                for url in self.config.peers
            ]

        self.registry = InstanceRegistry(self.config, clock=clock)
        self.monitor = SelfPreservationMonitor(self.registry, clock=clock)
        self.scheduler = EvictionScheduler(self.registry, self.monitor)
        self.cache = QueryCache(self.registry, clock=clock)
        self.channel = ReplicationChannel(self.registry, sinks, node_id=self.config.node_id)
        self.gateway = RegistryGateway(
            self.registry, self.cache, self.channel, self.monitor, clock=clock
        )
        self.app = create_app(self.gateway)

        self._running = False
        self._start_time: Optional[datetime] = None
        self._clock = clock

        logger.info(
            f"RegistryService initialized: node={self.config.node_id}, "
            f"peers={self.channel.peer_names or 'none'}"
        )

    # =========================================================================
    # Service Lifecycle
    # =========================================================================

    def start(self) -> None:
        """Start background work. Blocks while resyncing from peers."""
        if self._running:
            return

        self.channel.start()
        if self.channel.peer_names:
            self.channel.sync_from_peers()
        else:
            self.channel.synced = True

        self.cache.start()
        self.scheduler.start()

        self._running = True
        self._start_time = self._clock()
        logger.info(f"Registry node {self.config.node_id} started")

    def stop(self) -> None:
        """Stop background work and flush pending replication."""
        if not self._running:
            return

        self._running = False
        self.scheduler.stop()
        self.cache.stop()
        self.channel.stop(drain=True)

        uptime = ""
        if self._start_time:
            uptime = f" (uptime: {self._clock() - self._start_time})"
        logger.info(
            f"Registry node {self.config.node_id} stopped{uptime}, "
            f"{self.registry.instance_count()} instances in registry"
        )

    def serve(self) -> None:
        """Start the node and serve HTTP until interrupted."""
        import uvicorn

        self.start()
        try:
            uvicorn.run(
                self.app,
                host=self.config.host,
                port=self.config.port,
                log_level=self.config.log_level.lower(),
            )
        finally:
            self.stop()

    @property
    def running(self) -> bool:
        return self._running

    def get_stats(self) -> dict:
        """Get service statistics."""
        return {
            "service": {
                "running": self._running,
                "start_time": self._start_time.isoformat() if self._start_time else None,
                "eviction_ticks": self.scheduler.ticks,
                "evicted": self.scheduler.total_evicted,
            },
            "registry": self.registry.get_stats(),
            "self_preservation": self.monitor.get_stats(),
            "replication": self.channel.get_stats(),
        }

    # =========================================================================
    # Context manager
    # =========================================================================

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.stop()
        return False


def main():
    """Run a registry node."""
    config = load_config()
    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format='%(asctime)s [%(name)s] %(levelname)s: %(message)s'
    )

    service = RegistryService(config)
    service.serve()


if __name__ == "__main__":
    main()
