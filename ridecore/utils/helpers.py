"""
Helper Utilities
Common utility functions used across the application
"""

import math

DURATION_UNIT = "dk"


def calculate_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """
    Calculate distance between two coordinates using Haversine formula

    Args:
        lat1, lon1: First coordinate (latitude, longitude)
        lat2, lon2: Second coordinate (latitude, longitude)

    Returns:
        Distance in kilometers
    """
    # Earth's radius in kilometers
    R = 6371.0

    lat1_rad = math.radians(lat1)
    lat2_rad = math.radians(lat2)
    dlat = math.radians(lat2 - lat1)
    dlon = math.radians(lon2 - lon1)

    a = (
        math.sin(dlat / 2) ** 2
        + math.cos(lat1_rad) * math.cos(lat2_rad) * math.sin(dlon / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

    return R * c


def calculate_eta(distance_km: float, avg_speed_kmh: float = 30.0) -> float:
    """
    Calculate estimated travel time in minutes

    Args:
        distance_km: Distance in kilometers
        avg_speed_kmh: Average speed in km/h (default: 30, city traffic)

    Returns:
        ETA in minutes
    """
    if distance_km <= 0:
        return 0.0

    return distance_km / avg_speed_kmh * 60


def round_half_up(value: float) -> int:
    """Round to the nearest integer, halves away from zero for positives"""
    return int(math.floor(value + 0.5))


def format_distance(distance_km: float) -> str:
    return f"{distance_km:.1f} km"


def parse_distance(text) -> float:
    """
    Read a distance label such as "5.2 km" back into kilometers.
    Older documents may use a decimal comma; unreadable text counts as 0.
    """
    if not text:
        return 0.0
    value = str(text).strip().lower().removesuffix("km").strip().replace(",", ".")
    try:
        return float(value)
    except ValueError:
        return 0.0


def format_duration(duration_minutes: float) -> str:
    return f"{round_half_up(duration_minutes)} {DURATION_UNIT}"


def get_ride_status_message(status: str) -> str:
    """
    Get user-friendly message for ride status

    Args:
        status: Ride status

    Returns:
        User-friendly status message
    """
    messages = {
        "pending": "Waiting for the driver to respond",
        "accepted": "Driver is on the way to pick you up",
        "rejected": "Driver declined the ride request",
        "in_progress": "Ride in progress",
        "arrived": "Arrived at the destination",
        "completed": "Ride completed successfully",
        "cancelled": "Ride was cancelled",
    }

    return messages.get(status, "Unknown status")
