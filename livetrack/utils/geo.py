"""Utilitaires géographiques / Geographic utilities."""

import math

EARTH_RADIUS_KM = 6371.0


def haversine(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Distance Haversine en km / Haversine distance in km."""
    dlat = math.radians(lat2 - lat1)
    dlon = math.radians(lon2 - lon1)
    a = math.sin(dlat / 2) ** 2 + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(dlon / 2) ** 2
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def lerp(lat1: float, lon1: float, lat2: float, lon2: float, t: float) -> tuple[float, float]:
    """Interpolation lineaire entre deux points / Linear interpolation between two points.

    Suffisant pour les courtes distances d'une animation de marqueur.
    Good enough for the short hops of a marker animation.
    """
    return lat1 + (lat2 - lat1) * t, lon1 + (lon2 - lon1) * t
