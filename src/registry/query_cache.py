"""
Query Cache: read-optimised generations of the registry.

A generation is built from a registry snapshot and the recent-change log,
then published by replacing a single reference. Readers grab the reference
once and work on that generation only, so they never see a mix of two.
"""

import logging
import threading
from datetime import datetime
from typing import Callable, Optional, Tuple

from pydantic import BaseModel, ConfigDict

from .instance_registry import InstanceRegistry
from .models import (
    Application,
    Applications,
    ChangeEvent,
    DeltaResponse,
    InstanceInfo,
    normalize_app_name,
    utcnow,
)

logger = logging.getLogger(__name__)


class CacheGeneration(BaseModel):
    """One immutable build of the cache."""
    model_config = ConfigDict(frozen=True)

    generation: int
    version: int
    built_at: datetime
    applications: Applications
    changes: Tuple[ChangeEvent, ...] = ()
    pruned_through: int = 0


class QueryCache:
    """
    Periodically rebuilt snapshot served to lookup clients.

    Rebuilds every cache_refresh_interval_seconds, or sooner once
    cache_dirty_threshold mutations have accumulated.
    """

    def __init__(
        self,
        registry: InstanceRegistry,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.registry = registry
        self.config = registry.config
        self._clock = clock

        self._dirty = 0
        self._dirty_lock = threading.Lock()
        self._wake = threading.Event()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

        self._generation = CacheGeneration(
            generation=0,
            version=0,
            built_at=clock(),
            applications=Applications(),
        )

        registry.on_registered(self._mark_dirty)
        registry.on_cancelled(self._mark_dirty)
        registry.on_status_changed(self._mark_dirty)
        registry.on_evicted(self._mark_dirty)

    def _mark_dirty(self, instance: InstanceInfo, is_replication: bool) -> None:
        with self._dirty_lock:
            self._dirty += 1
            if self._dirty >= self.config.cache_dirty_threshold:
                self._wake.set()

    @property
    def dirty_count(self) -> int:
        with self._dirty_lock:
            return self._dirty

    # =========================================================================
    # Build
    # =========================================================================

    def refresh(self) -> CacheGeneration:
        """Build the next generation and publish it."""
        with self._dirty_lock:
            self._dirty = 0
            self._wake.clear()

        applications = self.registry.snapshot()
        changes, pruned_through, version = self.registry.recent_changes()

        generation = CacheGeneration(
            generation=self._generation.generation + 1,
            version=max(version, applications.version),
            built_at=self._clock(),
            applications=applications,
            changes=changes,
            pruned_through=pruned_through,
        )
        self._generation = generation
        logger.debug(
            f"Cache generation {generation.generation} built "
            f"(version={generation.version}, "
            f"instances={applications.instance_count()})"
        )
        return generation

    @property
    def current(self) -> CacheGeneration:
        return self._generation

    # =========================================================================
    # Reads
    # =========================================================================

    def get_applications(self) -> Applications:
        return self._generation.applications

    def get_application(self, app_name: str) -> Application:
        name = normalize_app_name(app_name)
        app = self._generation.applications.get(name)
        return app if app is not None else Application(name=name)

    def get_delta(self, since: int) -> DeltaResponse:
        """
        Changes with seq greater than ``since``.

        ``full_required`` tells the client its marker is outside the
        retained log and it must fetch the full snapshot instead.
        """
        generation = self._generation
        full_required = since < generation.pruned_through or since > generation.version
        changes = () if full_required else tuple(
            c for c in generation.changes if since < c.seq <= generation.version
        )
        return DeltaResponse(
            version=generation.version,
            since=since,
            full_required=full_required,
            apps_hashcode=generation.applications.apps_hashcode,
            changes=changes,
        )

    # =========================================================================
    # Background rebuild
    # =========================================================================

    def start(self):
        """Start the background rebuild thread."""
        if self._thread and self._thread.is_alive():
            logger.warning("Cache refresh thread already running")
            return

        self._stop.clear()
        self.refresh()

        def refresh_loop():
            interval = self.config.cache_refresh_interval_seconds
            logger.info(f"Cache refresh thread started (interval={interval}s)")

            while not self._stop.is_set():
                self._wake.wait(timeout=interval)
                if self._stop.is_set():
                    break
                try:
                    self.refresh()
                except Exception as e:
                    logger.error(f"Error in cache refresh thread: {e}")

            logger.info("Cache refresh thread stopped")

        self._thread = threading.Thread(target=refresh_loop, name="query-cache", daemon=True)
        self._thread.start()

    def stop(self):
        """Stop the background rebuild thread."""
        self._stop.set()
        self._wake.set()
        if self._thread:
            self._thread.join(timeout=5.0)
            self._thread = None
