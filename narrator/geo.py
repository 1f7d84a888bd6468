"""Geographic utility functions."""

from __future__ import annotations

import math
import time
from typing import TYPE_CHECKING, Callable, Iterable, Optional, TypeVar

if TYPE_CHECKING:
    from .logger import Logger

EARTH_RADIUS_M = 6371000

T = TypeVar("T")


def haversine_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Calculate distance between two points in meters using Haversine formula"""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    delta_phi = math.radians(lat2 - lat1)
    delta_lambda = math.radians(lon2 - lon1)

    a = (math.sin(delta_phi / 2) ** 2 +
         math.cos(phi1) * math.cos(phi2) * math.sin(delta_lambda / 2) ** 2)
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

    return EARTH_RADIUS_M * c


def bearing_between(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Calculate bearing from point 1 to point 2 in degrees (0-360, 0=North)"""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    delta_lambda = math.radians(lon2 - lon1)

    x = math.sin(delta_lambda) * math.cos(phi2)
    y = (math.cos(phi1) * math.sin(phi2) -
         math.sin(phi1) * math.cos(phi2) * math.cos(delta_lambda))

    bearing = math.degrees(math.atan2(x, y))
    return (bearing + 360) % 360


def bearing_to_compass(bearing: float) -> str:
    """Convert bearing to compass direction"""
    directions = ["north", "northeast", "east", "southeast",
                  "south", "southwest", "west", "northwest"]
    index = round(bearing / 45) % 8
    return directions[index]


def filter_within_radius(lat: float, lng: float, pois: Iterable[T],
                         radius: float) -> list[tuple[T, float]]:
    """Return (poi, distance) pairs within radius, nearest first.

    Works on anything with `lat`/`lng` attributes.
    """
    results = []
    for poi in pois:
        distance = haversine_distance(lat, lng, poi.lat, poi.lng)
        if distance <= radius:
            results.append((poi, distance))
    results.sort(key=lambda pair: pair[1])
    return results


def find_nearest(lat: float, lng: float, pois: Iterable[T]) -> Optional[tuple[T, float]]:
    """Nearest item and its distance, or None for an empty input"""
    best = None
    for poi in pois:
        distance = haversine_distance(lat, lng, poi.lat, poi.lng)
        if best is None or distance < best[1]:
            best = (poi, distance)
    return best


def format_distance(meters: float) -> str:
    """Human-readable distance ("150 m", "1.5 km")"""
    if meters < 1000:
        return f"{round(meters)} m"
    return f"{meters / 1000:.1f} km"


def retry_with_backoff(func: Callable[[], T], max_time: float = 30.0, initial_delay: float = 1.0,
                       max_delay: float = 8.0, description: str = "operation",
                       logger: Optional["Logger"] = None,
                       sleep: Callable[[float], None] = time.sleep) -> Optional[T]:
    """Retry a function with exponential backoff.

    Args:
        func: Function that returns a truthy value on success, falsy on failure
        max_time: Maximum total time to retry (seconds)
        initial_delay: Initial delay between retries (seconds)
        max_delay: Maximum delay between retries (seconds)
        description: Description for logging

    Returns:
        The result of func() on success, or None if all retries failed
    """
    start_time = time.time()
    delay = initial_delay
    attempt = 1

    while True:
        result = func()
        if result:
            return result

        elapsed = time.time() - start_time
        if elapsed >= max_time:
            if logger:
                logger.log(f"Failed to complete {description}",
                           {"elapsed": round(elapsed, 1), "attempts": attempt})
            return None

        remaining = max_time - elapsed
        sleep_time = min(delay, remaining, max_delay)
        if sleep_time > 0:
            if logger:
                logger.log(f"Retrying {description}", {"delay": round(sleep_time, 1), "attempt": attempt})
            sleep(sleep_time)

        delay = min(delay * 2, max_delay)
        attempt += 1
