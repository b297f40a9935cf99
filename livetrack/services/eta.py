"""
Service d'estimation d'arrivee / ETA estimation service.

Distance a vol d'oiseau (Haversine) divisee par une vitesse urbaine moyenne,
arrondie a la minute superieure : mieux vaut arriver en avance qu'en retard.
Straight-line (haversine) distance over an average urban speed, rounded up
to the next whole minute: better early than late.

Ce n'est pas une distance routiere : l'estimation peut remonter si le
chauffeur s'eloigne temporairement (tour de pate de maisons).
Not a road distance: the estimate can go up while the driver temporarily
moves away (going around a block).
"""

import math

from livetrack.config import settings
from livetrack.utils.geo import haversine


def travel_minutes(distance_km: float, speed_kmh: float | None = None) -> float:
    """Temps de trajet exact en minutes / Exact travel time in minutes."""
    speed = settings.AVERAGE_SPEED_KMH if speed_kmh is None else speed_kmh
    if speed <= 0:
        raise ValueError("speed_kmh must be positive")
    return distance_km / speed * 60


def estimate(
    from_lat: float,
    from_lng: float,
    to_lat: float,
    to_lng: float,
    speed_kmh: float | None = None,
) -> int:
    """ETA en minutes entieres (plafond) / ETA in whole minutes (ceiling)."""
    return math.ceil(travel_minutes(haversine(from_lat, from_lng, to_lat, to_lng), speed_kmh))
