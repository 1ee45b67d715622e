"""
Geo Service - great-circle distance and nearby lookups for places and events
"""
import logging
import math
from typing import Any, Dict, List, Tuple

from sqlalchemy.orm import Session

from amazonia.db.models import Place, Event

logger = logging.getLogger(__name__)

EARTH_RADIUS_KM = 6371.0


def haversine_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Calculate distance between two GPS coordinates in km."""
    lat1_rad = math.radians(lat1)
    lat2_rad = math.radians(lat2)
    delta_lat = math.radians(lat2 - lat1)
    delta_lon = math.radians(lon2 - lon1)

    a = (math.sin(delta_lat / 2) ** 2 +
         math.cos(lat1_rad) * math.cos(lat2_rad) *
         math.sin(delta_lon / 2) ** 2)
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

    return EARTH_RADIUS_KM * c


def bounding_box(lat: float, lon: float, radius_km: float) -> Tuple[float, float, float, float]:
    """
    Return (min_lat, max_lat, min_lon, max_lon) enclosing a circle of radius_km.

    Used as a cheap SQL pre-filter; callers still apply haversine_distance.
    """
    delta_lat = math.degrees(radius_km / EARTH_RADIUS_KM)
    cos_lat = math.cos(math.radians(lat))
    if cos_lat < 1e-12:
        delta_lon = 180.0
    else:
        delta_lon = min(180.0, math.degrees(radius_km / (EARTH_RADIUS_KM * cos_lat)))
    return lat - delta_lat, lat + delta_lat, lon - delta_lon, lon + delta_lon


class GeoService:
    """Nearby search over places and events"""

    def _nearby(
        self,
        db: Session,
        model,
        latitude: float,
        longitude: float,
        radius_km: float,
        limit: int
    ) -> List[Dict[str, Any]]:
        min_lat, max_lat, min_lon, max_lon = bounding_box(latitude, longitude, radius_km)
        candidates = db.query(model).filter(
            model.latitude.between(min_lat, max_lat),
            model.longitude.between(min_lon, max_lon)
        ).all()

        results = []
        for row in candidates:
            distance = haversine_distance(latitude, longitude, row.latitude, row.longitude)
            if distance <= radius_km:
                results.append({"item": row, "distance_km": round(distance, 3)})

        results.sort(key=lambda r: r["distance_km"])
        return results[:limit]

    def find_nearby_places(
        self,
        db: Session,
        latitude: float,
        longitude: float,
        radius_km: float,
        limit: int = 10
    ) -> List[Dict[str, Any]]:
        return self._nearby(db, Place, latitude, longitude, radius_km, limit)

    def find_nearby_events(
        self,
        db: Session,
        latitude: float,
        longitude: float,
        radius_km: float,
        limit: int = 10
    ) -> List[Dict[str, Any]]:
        return self._nearby(db, Event, latitude, longitude, radius_km, limit)


# Singleton instance
geo_service = GeoService()
