from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from app.database import DatabaseError
from app.security_repository import SecurityRepository, parse_timestamp, utcnow

logger = logging.getLogger(__name__)

EARTH_RADIUS_KM = 6371.0
IMPOSSIBLE_TRAVEL_DISTANCE_KM = 500.0
IMPOSSIBLE_TRAVEL_SPEED_KMH = 500.0


@dataclass(frozen=True)
class GeoAnomalyResult:
    geo_anomaly: bool
    distance_km: float
    time_diff_minutes: float
    previous_country: str | None
    details: str


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    d_lat = math.radians(lat2 - lat1)
    d_lon = math.radians(lon2 - lon1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lon / 2) ** 2
    )
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def implied_speed_kmh(distance_km: float, time_diff_minutes: float) -> float:
    if time_diff_minutes <= 0:
        return math.inf if distance_km > 0 else 0.0
    return distance_km / time_diff_minutes * 60


def evaluate_travel(
    *,
    previous_country: str,
    previous_lat: float,
    previous_lon: float,
    previous_at: datetime,
    current_country: str,
    current_lat: float,
    current_lon: float,
    current_at: datetime,
    distance_threshold_km: float = IMPOSSIBLE_TRAVEL_DISTANCE_KM,
    speed_threshold_kmh: float = IMPOSSIBLE_TRAVEL_SPEED_KMH,
) -> GeoAnomalyResult:
    time_diff_minutes = (current_at - previous_at).total_seconds() / 60
    distance_km = haversine_km(previous_lat, previous_lon, current_lat, current_lon)
    speed_kmh = implied_speed_kmh(distance_km, time_diff_minutes)
    geo_anomaly = distance_km > distance_threshold_km and speed_kmh > speed_threshold_kmh

    details = f"Distance: {round(distance_km)}km in {round(time_diff_minutes)}min"
    if geo_anomaly:
        speed_text = "instant" if math.isinf(speed_kmh) else f"{round(speed_kmh)} km/h"
        details = (
            f"Impossible travel: {round(distance_km)}km in {round(time_diff_minutes)}min "
            f"({speed_text}) from {previous_country} to {current_country}"
        )
    elif current_country != previous_country and previous_country != "unknown":
        details = (
            f"Country changed: {previous_country} -> {current_country} "
            f"({round(distance_km)}km, {round(time_diff_minutes)}min ago)"
        )

    return GeoAnomalyResult(
        geo_anomaly=geo_anomaly,
        distance_km=distance_km,
        time_diff_minutes=time_diff_minutes,
        previous_country=previous_country,
        details=details,
    )


class GeoAnomalyDetector:
    """Impossible-travel check against the user's most recent access log."""

    def __init__(
        self,
        repository: SecurityRepository,
        clock: Callable[[], datetime] = utcnow,
        distance_threshold_km: float = IMPOSSIBLE_TRAVEL_DISTANCE_KM,
        speed_threshold_kmh: float = IMPOSSIBLE_TRAVEL_SPEED_KMH,
    ) -> None:
        self._repository = repository
        self._clock = clock
        self._distance_threshold_km = distance_threshold_km
        self._speed_threshold_kmh = speed_threshold_kmh

    def check(self, *, user_id: str, country: str, lat: float, lon: float) -> GeoAnomalyResult:
        if country == "unknown":
            return GeoAnomalyResult(False, 0.0, 0.0, None, "Current location unknown")

        try:
            last_log = self._repository.get_latest_access_log(user_id)
        except DatabaseError as exc:
            logger.warning("geo_history_unavailable user_id=%s error=%s", user_id, str(exc))
            return GeoAnomalyResult(False, 0.0, 0.0, None, "Login history unavailable")

        metadata = (last_log or {}).get("metadata") or {}
        if not last_log or not metadata:
            return GeoAnomalyResult(False, 0.0, 0.0, None, "First login - no history to compare")

        previous_country = str(metadata.get("country") or "unknown")
        if previous_country == "unknown":
            return GeoAnomalyResult(False, 0.0, 0.0, None, "Previous location unknown")

        try:
            previous_at = parse_timestamp(last_log.get("created_at"))
            previous_lat = float(metadata.get("lat") or 0.0)
            previous_lon = float(metadata.get("lon") or 0.0)
        except (TypeError, ValueError) as exc:
            logger.warning("geo_history_malformed user_id=%s error=%s", user_id, str(exc))
            return GeoAnomalyResult(False, 0.0, 0.0, None, "Login history malformed")

        return evaluate_travel(
            previous_country=previous_country,
            previous_lat=previous_lat,
            previous_lon=previous_lon,
            previous_at=previous_at,
            current_country=country,
            current_lat=lat,
            current_lon=lon,
            current_at=self._clock(),
            distance_threshold_km=self._distance_threshold_km,
            speed_threshold_kmh=self._speed_threshold_kmh,
        )
