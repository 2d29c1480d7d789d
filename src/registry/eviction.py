"""
Eviction Scheduler: periodic sweep of expired leases.

Each tick first lets the self-preservation monitor refresh the registry-wide
flag, then asks the registry to evict. Replicating the evictions is left to
whoever listens on the registry's eviction callback.
"""

import logging
import threading
from datetime import datetime
from typing import List, Optional

from .instance_registry import InstanceRegistry
from .models import InstanceInfo
from .self_preservation import SelfPreservationMonitor

logger = logging.getLogger(__name__)


class EvictionScheduler:
    """Runs evict_expired_leases every eviction_interval_seconds."""

    def __init__(
        self,
        registry: InstanceRegistry,
        monitor: Optional[SelfPreservationMonitor] = None,
    ):
        self.registry = registry
        self.monitor = monitor
        self.interval = registry.config.eviction_interval_seconds

        self._thread: Optional[threading.Thread] = None
        self._stop = threading.Event()

        self.ticks = 0
        self.total_evicted = 0

    def tick(self, now: Optional[datetime] = None) -> List[InstanceInfo]:
        """One sweep: recompute self-preservation, then evict."""
        self.ticks += 1
        if self.monitor is not None:
            self.monitor.recompute()

        evicted = self.registry.evict_expired_leases(now)
        if evicted:
            self.total_evicted += len(evicted)
            logger.info(f"Evicted {len(evicted)} expired instances")
        return evicted

    def start(self):
        """Start the background eviction thread."""
        if self._thread and self._thread.is_alive():
            logger.warning("Eviction thread already running")
            return

        self._stop.clear()

        def eviction_loop():
            logger.info(f"Eviction thread started (interval={self.interval}s)")

            while not self._stop.wait(timeout=self.interval):
                try:
                    self.tick()
                except Exception as e:
                    logger.error(f"Error in eviction thread: {e}")

            logger.info("Eviction thread stopped")

        self._thread = threading.Thread(target=eviction_loop, name="eviction", daemon=True)
        self._thread.start()

    def stop(self):
        """Stop the eviction thread."""
        self._stop.set()
        if self._thread:
            self._thread.join(timeout=5.0)
            self._thread = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()
