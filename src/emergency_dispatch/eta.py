from __future__ import annotations

import logging
import math
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Protocol, Sequence, Tuple

from emergency_dispatch.config import DispatchSettings
from emergency_dispatch.fallback import try_primary
from emergency_dispatch.geo import haversine_km, validate_coordinates
from emergency_dispatch.models import Coordinates, EtaResult

LOGGER = logging.getLogger(__name__)


class RoutingClient(Protocol):
    def route(self, origin: Coordinates, destination: Coordinates) -> Tuple[float, float]:
        """Return (distance_km, duration_minutes) for a road route."""


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def local_duration_minutes(distance_km: float, average_speed_kmh: float, traffic_multiplier: float) -> int:
    hours = (distance_km / average_speed_kmh) * traffic_multiplier
    return math.ceil(hours * 60)


class EtaEstimator:
    """Travel-time estimates, preferring an external router when one is configured."""

    def __init__(
        self,
        settings: Optional[DispatchSettings] = None,
        routing: Optional[RoutingClient] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.settings = settings or DispatchSettings()
        self.routing = routing
        self.clock = clock

    def local_estimate(self, origin: Coordinates, destination: Coordinates) -> EtaResult:
        distance = haversine_km(origin, destination)
        duration = local_duration_minutes(
            distance, self.settings.average_speed_kmh, self.settings.traffic_multiplier
        )
        return EtaResult(
            distance_km=round(distance, 2),
            duration_minutes=duration,
            estimated_arrival=self.clock() + timedelta(minutes=duration),
            source="local",
        )

    def _routed_estimate(self, origin: Coordinates, destination: Coordinates) -> EtaResult:
        distance, duration = self.routing.route(origin, destination)
        distance, duration = float(distance), float(duration)
        if not (math.isfinite(distance) and math.isfinite(duration)) or distance < 0 or duration < 0:
            raise ValueError(f"malformed route ({distance}, {duration})")
        minutes = math.ceil(duration)
        LOGGER.info("Route calculated: %.2fkm, %d minutes", distance, minutes)
        return EtaResult(
            distance_km=round(distance, 2),
            duration_minutes=minutes,
            estimated_arrival=self.clock() + timedelta(minutes=minutes),
            source="routing",
        )

    def estimate(self, origin: Coordinates, destination: Coordinates) -> EtaResult:
        validate_coordinates(origin)
        validate_coordinates(destination)
        primary = None
        if self.routing is not None:
            primary = lambda: self._routed_estimate(origin, destination)  # noqa: E731
        return try_primary(
            primary,
            lambda: self.local_estimate(origin, destination),
            timeout=self.settings.routing_timeout_seconds,
            label="routing",
        )

    def route_duration(self, points: Sequence[Coordinates]) -> int:
        """Total minutes along a multi-stop path, leg by leg."""
        if len(points) < 2:
            return 0
        return sum(self.estimate(a, b).duration_minutes for a, b in zip(points, points[1:]))
