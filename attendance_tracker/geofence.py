"""
Geofence validation.

A geofence is a circle (center + radius in meters). A point is within bounds
when its great-circle distance to the center is at most the radius. Pure
functions only; invalid input raises InvalidInputError.
"""

from dataclasses import dataclass

from .errors import InvalidInputError
from .filters.utils import haversine_distance, is_finite_number
from .models import validate_coordinate


@dataclass(frozen=True)
class GeofenceResult:
    distance: float  # meters
    radius: float  # meters
    within_bounds: bool


def validate_radius(radius):
    if not is_finite_number(radius) or radius <= 0:
        raise InvalidInputError(f"radius must be a finite number > 0, got {radius!r}")


def check_geofence(latitude, longitude, center_latitude, center_longitude, radius):
    """
    Validate a position against a circular geofence.

    Args:
        latitude, longitude: Position to check (degrees)
        center_latitude, center_longitude: Geofence center (degrees)
        radius (float): Allowed radius in meters (> 0)

    Returns:
        GeofenceResult: distance, radius and within_bounds (distance <= radius)

    Raises:
        InvalidInputError: On NaN/out-of-range coordinates or non-positive radius
    """
    validate_coordinate(latitude, longitude)
    validate_coordinate(center_latitude, center_longitude)
    validate_radius(radius)

    distance = haversine_distance(latitude, longitude, center_latitude, center_longitude)
    return GeofenceResult(distance=distance, radius=radius, within_bounds=distance <= radius)


def effective_distance(distance, accuracy):
    """Distance with the reported GPS error subtracted (never negative)."""
    return max(0.0, distance - accuracy)


@dataclass(frozen=True)
class Geofence:
    latitude: float
    longitude: float
    radius: float

    def __post_init__(self):
        validate_coordinate(self.latitude, self.longitude)
        validate_radius(self.radius)

    def check(self, latitude, longitude):
        return check_geofence(latitude, longitude, self.latitude, self.longitude, self.radius)

    def contains(self, latitude, longitude):
        return self.check(latitude, longitude).within_bounds
