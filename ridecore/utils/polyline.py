"""
Encoded Polyline codec
Google's compact route geometry format: zigzag-encoded, 5-bit varint deltas
of latitude/longitude scaled by 1e5, each chunk offset by 63 into printable ASCII.
"""

import math
from typing import Iterable, List, Tuple

from ridecore.models.ride_schema import Coordinate

PRECISION = 1e5
CHUNK_BITS = 5
CHUNK_MASK = 0x1F
CONTINUATION_BIT = 0x20
ASCII_OFFSET = 63


def _read_value(encoded: str, index: int) -> Tuple[int, int]:
    """Read one signed varint starting at index; return (value, next index)"""
    result = 0
    shift = 0
    while True:
        if index >= len(encoded):
            raise ValueError("Truncated polyline: value runs past end of input")
        b = ord(encoded[index]) - ASCII_OFFSET
        index += 1
        if b < 0 or b > 0x3F:
            raise ValueError(f"Invalid polyline character at offset {index - 1}")
        result |= (b & CHUNK_MASK) << shift
        shift += CHUNK_BITS
        if b < CONTINUATION_BIT:
            break
    value = ~(result >> 1) if result & 1 else result >> 1
    return value, index


def decode_polyline(encoded: str) -> List[Coordinate]:
    """
    Decode an encoded polyline into coordinates

    Args:
        encoded: Polyline string as returned by the routing provider

    Returns:
        Ordered list of Coordinate

    Raises:
        ValueError: if the string is not a valid polyline
    """
    return [
        Coordinate(latitude=lat, longitude=lng)
        for lat, lng in decode_polyline_pairs(encoded)
    ]


def decode_polyline_pairs(encoded: str) -> List[Tuple[float, float]]:
    points = []
    index = 0
    lat = 0
    lng = 0
    while index < len(encoded):
        dlat, index = _read_value(encoded, index)
        if index >= len(encoded):
            raise ValueError("Truncated polyline: latitude without longitude")
        dlng, index = _read_value(encoded, index)
        lat += dlat
        lng += dlng
        points.append((lat / PRECISION, lng / PRECISION))
    return points


def _write_value(value: int) -> str:
    value = ~(value << 1) if value < 0 else value << 1
    chunks = []
    while value >= CONTINUATION_BIT:
        chunks.append(chr((CONTINUATION_BIT | (value & CHUNK_MASK)) + ASCII_OFFSET))
        value >>= CHUNK_BITS
    chunks.append(chr(value + ASCII_OFFSET))
    return "".join(chunks)


def encode_polyline(points: Iterable) -> str:
    """
    Encode coordinates (Coordinate objects or (lat, lng) pairs) as a polyline
    """
    parts = []
    prev_lat = 0
    prev_lng = 0
    for point in points:
        if isinstance(point, tuple):
            latitude, longitude = point
        else:
            latitude, longitude = point.latitude, point.longitude
        lat = int(math.floor(latitude * PRECISION + 0.5))
        lng = int(math.floor(longitude * PRECISION + 0.5))
        parts.append(_write_value(lat - prev_lat))
        parts.append(_write_value(lng - prev_lng))
        prev_lat, prev_lng = lat, lng
    return "".join(parts)
