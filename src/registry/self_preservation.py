"""
Self-Preservation Monitor.

Compares the renewals actually observed over a sliding window with the
renewals the registered population should produce. When too few arrive the
registry is probably cut off from its clients, not watching them die, so
eviction is suspended until the rate recovers.
"""

import logging
import threading
from collections import deque
from datetime import datetime, timedelta
from typing import Callable, Deque, Dict, Optional

from .instance_registry import InstanceRegistry
from .models import InstanceInfo, utcnow

logger = logging.getLogger(__name__)


class RenewalRateMeter:
    """Counts events inside a sliding time window."""

    def __init__(self, window_seconds: int = 60, clock: Callable[[], datetime] = utcnow):
        self._window = timedelta(seconds=window_seconds)
        self._clock = clock
        self._events: Deque[datetime] = deque()
        self._lock = threading.Lock()

    def increment(self) -> None:
        now = self._clock()
        with self._lock:
            self._events.append(now)
            self._trim(now)

    def count(self, now: Optional[datetime] = None) -> int:
        now = now or self._clock()
        with self._lock:
            self._trim(now)
            return len(self._events)

    def _trim(self, now: datetime) -> None:
        cutoff = now - self._window
        while self._events and self._events[0] <= cutoff:
            self._events.popleft()


class SelfPreservationMonitor:
    """
    Tracks expected vs. observed renewals and flips the registry's
    self-preservation flag.

    Subscribes to the registry's renewal callback, so replicated heartbeats
    count as well as local ones.
    """

    def __init__(
        self,
        registry: InstanceRegistry,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.registry = registry
        self.config = registry.config
        self._clock = clock
        self.meter = RenewalRateMeter(self.config.renewal_window_seconds, clock)
        self._activations = 0

        registry.on_renewed(self._on_renewed)

    def _on_renewed(self, instance: InstanceInfo, is_replication: bool) -> None:
        self.meter.increment()

    @property
    def actual_renews_per_minute(self) -> float:
        window = self.config.renewal_window_seconds
        return self.meter.count() * 60.0 / window

    def should_preserve(self) -> bool:
        if not self.config.self_preservation_enabled:
            return False
        expected = self.registry.expected_renews_per_minute
        return self.actual_renews_per_minute < expected * self.config.renewal_percent_threshold

    def recompute(self) -> bool:
        """
        Re-evaluate the flag. Called once per eviction tick.

        Returns:
            True while self-preservation is active.
        """
        active = self.should_preserve()
        was_active = self.registry.self_preservation_active

        if active and not was_active:
            self._activations += 1
            logger.warning(
                f"Self-preservation activated: {self.actual_renews_per_minute:.1f} "
                f"renews/min observed, {self.registry.expected_renews_per_minute:.1f} "
                f"expected (threshold {self.config.renewal_percent_threshold:.0%}). "
                f"Eviction suspended."
            )
        elif was_active and not active:
            logger.info(
                f"Self-preservation deactivated: renewal rate recovered to "
                f"{self.actual_renews_per_minute:.1f}/min"
            )

        self.registry.set_self_preservation(active)
        return active

    def get_stats(self) -> Dict[str, object]:
        return {
            "enabled": self.config.self_preservation_enabled,
            "active": self.registry.self_preservation_active,
            "actual_renews_per_minute": self.actual_renews_per_minute,
            "expected_renews_per_minute": self.registry.expected_renews_per_minute,
            "renews_per_min_threshold": self.registry.renews_per_min_threshold,
            "activations": self._activations,
        }
