"""GPS proximity gate for check-in."""

import math

from shiftbook.core.schemas import Coordinates, ErrorCode, GPSValidationResult

EARTH_RADIUS_METERS = 6_371_000.0
DEFAULT_RADIUS_METERS = 200.0


def haversine_distance_meters(a: Coordinates, b: Coordinates) -> float:
    """Great-circle distance between two points, in meters."""
    phi1 = math.radians(a.latitude)
    phi2 = math.radians(b.latitude)
    d_phi = math.radians(b.latitude - a.latitude)
    d_lambda = math.radians(b.longitude - a.longitude)
    h = (
        math.sin(d_phi / 2) ** 2
        + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    )
    # Rounding can push h just past 1 for near-antipodal points.
    h = min(1.0, max(0.0, h))
    return 2 * EARTH_RADIUS_METERS * math.atan2(math.sqrt(h), math.sqrt(1 - h))


def validate_gps_location(
    worker: Coordinates,
    restaurant: Coordinates,
    radius_meters: float = DEFAULT_RADIUS_METERS,
) -> GPSValidationResult:
    """Accept the worker only within ``radius_meters`` of the restaurant."""
    distance = haversine_distance_meters(worker, restaurant)
    rounded = round(distance)
    if distance > radius_meters:
        return GPSValidationResult(
            valid=False,
            distance_meters=rounded,
            error=(
                f"You are {rounded} m from the restaurant; "
                f"check-in is allowed within {round(radius_meters)} m"
            ),
            error_code=ErrorCode.GPS_OUT_OF_RANGE,
        )
    return GPSValidationResult(valid=True, distance_meters=rounded)
