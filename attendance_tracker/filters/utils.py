"""
Shared mathematical utilities for position filtering and fusion.

Contains the distance and projection helpers used by the geofence, the
fusion engine and the dead-reckoning tracker so that every component agrees
on the same constants.
"""

import math

EARTH_RADIUS = 6371000  # mean Earth radius in meters
METERS_PER_DEGREE = 111320.0  # local tangent plane scale at the equator


def is_finite_number(value):
    """True for real numbers that are neither NaN nor infinite (bools excluded)."""
    return (isinstance(value, (int, float)) and not isinstance(value, bool)
            and math.isfinite(value))


def haversine_distance(lat1, lon1, lat2, lon2):
    """
    Calculate great-circle distance between two GPS coordinates in meters.

    Args:
        lat1, lon1: First coordinate (latitude, longitude in degrees)
        lat2, lon2: Second coordinate (latitude, longitude in degrees)

    Returns:
        float: Distance in meters (0 for identical points, symmetric)
    """
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    delta_phi = math.radians(lat2 - lat1)
    delta_lambda = math.radians(lon2 - lon1)

    a = (math.sin(delta_phi/2) ** 2 +
         math.cos(phi1) * math.cos(phi2) * math.sin(delta_lambda/2) ** 2)
    a = min(1.0, a)
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1-a))

    return EARTH_RADIUS * c


def latlon_to_meters(lat, lon, origin_lat, origin_lon, meters_per_degree=METERS_PER_DEGREE):
    """
    Convert lat/lon to local x/y meters from origin.

    Local tangent plane: 1° latitude = meters_per_degree, 1° longitude =
    meters_per_degree * cos(origin latitude).

    Returns:
        tuple: (x east, y north) in meters
    """
    x = (lon - origin_lon) * meters_per_degree * math.cos(math.radians(origin_lat))
    y = (lat - origin_lat) * meters_per_degree
    return x, y


def meters_to_latlon(x, y, origin_lat, origin_lon, meters_per_degree=METERS_PER_DEGREE):
    """
    Convert local x/y meters to lat/lon relative to origin.

    Inverse of latlon_to_meters.

    Returns:
        tuple: (latitude, longitude) in degrees
    """
    lat = origin_lat + y / meters_per_degree
    lon_scale = meters_per_degree * math.cos(math.radians(origin_lat))
    # Degenerate at the poles, longitude is meaningless there
    lon = origin_lon + (x / lon_scale if lon_scale > 1e-9 else 0.0)
    return lat, lon


def normalize_angle(angle):
    """Normalize angle to [0, 2π)."""
    angle = math.fmod(angle, 2 * math.pi)
    if angle < 0:
        angle += 2 * math.pi
    # fmod can return exactly 2π after the addition for tiny negatives
    return 0.0 if angle >= 2 * math.pi else angle


def wrap_angle(angle):
    """Wrap an angle difference to [-π, π]."""
    while angle > math.pi:
        angle -= 2 * math.pi
    while angle < -math.pi:
        angle += 2 * math.pi
    return angle


def bearing_to_heading(bearing_deg):
    """
    Convert a compass bearing (degrees clockwise from north) to the local
    frame heading (radians counter-clockwise from +x/east).
    """
    return normalize_angle(math.radians(90.0 - bearing_deg))
