"""Distance and freshness helpers for displaying friend positions."""

import math

from .models import parse_timestamp, utcnow

EARTH_RADIUS_M = 6_371_000


def haversine_m(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Haversine distance in meters between two lat/lng points."""
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlam = math.radians(lng2 - lng1)
    a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlam / 2) ** 2
    return EARTH_RADIUS_M * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def format_distance(meters: float) -> str:
    """Format a distance as '350 m' or '2.4 km'."""
    if meters < 1000:
        return f'{int(round(meters))} m'
    return f'{meters / 1000:.1f} km'


def format_time_ago(ts, now=None) -> str:
    """Format how long ago a timestamp was: 'Just now', '5m ago', '3h ago', '2d ago'."""
    if ts is None:
        return 'Unknown'
    then = parse_timestamp(ts)
    now = parse_timestamp(now) if now is not None else utcnow()

    seconds = max(0, int((now - then).total_seconds()))
    if seconds < 60:
        return 'Just now'
    minutes = seconds // 60
    if minutes < 60:
        return f'{minutes}m ago'
    hours = minutes // 60
    if hours < 24:
        return f'{hours}h ago'
    return f'{hours // 24}d ago'
