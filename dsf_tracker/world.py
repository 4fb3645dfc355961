from __future__ import annotations

import logging
from typing import Callable, Optional

from dsf_tracker.eventlog.models import now_ms

logger = logging.getLogger("dsftracker")

# Returns the world number reported by the game client, <= 0 or None when unknown
WorldSensor = Callable[[], Optional[int]]
# Slower visual lookup (OCR of the friends-list world marker)
WorldLookup = Callable[[], Optional[str]]


def _sensor_world(sensor: Optional[WorldSensor]) -> Optional[str]:
    if sensor is None:
        return None
    try:
        w = sensor()
    except Exception:
        logger.exception("World sensor failed")
        return None
    if w is None or int(w) <= 0:
        return None
    return str(int(w))


class WorldSessionTracker:
    """Owns "which world am I on", including the quiet window after a hop."""

    def __init__(
        self,
        sensor: Optional[WorldSensor] = None,
        lookup: Optional[WorldLookup] = None,
        *,
        quiet_seconds: float = 6.0,
        initial_world: Optional[str] = None,
    ) -> None:
        self._sensor = sensor
        self._lookup = lookup
        self.quiet_ms = int(quiet_seconds * 1000)

        self.current: Optional[str] = initial_world
        self.previous: Optional[str] = None
        self._quiet_until = 0
        self._hop_pending = False

    def quiet_until(self) -> int:
        return self._quiet_until

    def is_quiet(self, now: Optional[int] = None) -> bool:
        now = now_ms() if now is None else now
        return now < self._quiet_until

    def mark_hop(self, now: Optional[int] = None) -> int:
        """Start the quiet window; the world is re-resolved once it has passed."""
        now = now_ms() if now is None else now
        self._quiet_until = now + self.quiet_ms
        self._hop_pending = True
        logger.info("World hop detected on world %s, quiet until %d", self.current, self._quiet_until)
        return self._quiet_until

    def resolve(self) -> Optional[str]:
        """Re-read the world: client sensor, then visual lookup, then last known."""
        world = _sensor_world(self._sensor)
        if world is None and self._lookup is not None:
            try:
                found = self._lookup()
            except Exception:
                logger.exception("World lookup failed")
                found = None
            world = str(found).strip() if found else None

        if world is None:
            if self.current is None:
                logger.info("Unable to find world number. Please open your Friends List.")
            return self.current

        if world != self.current:
            self.previous, self.current = self.current, world
        return self.current

    def current_world(self, now: Optional[int] = None) -> Optional[str]:
        now = now_ms() if now is None else now
        if self.is_quiet(now):
            return None
        if self._hop_pending:
            self.resolve()
            self._hop_pending = False
            logger.info("World after hop: %s (previous %s)", self.current, self.previous)
            return self.current

        # sensor wins over the cached value when it disagrees
        world = _sensor_world(self._sensor)
        if world is not None and world != self.current:
            self.previous, self.current = self.current, world
        if self.current is None:
            return self.resolve()
        return self.current
