"""Nearest-neighbour lookups over hospitals and ambulances.

SQLite has no spatial index, so the active/status filter and a
latitude/longitude bounding box are pushed into the query and the exact
great-circle distance is computed for the rows that survive.
"""

import logging
import math
from typing import Literal

from lifeline.database import DatabaseAdapter
from lifeline.errors import GeoIndexUnavailable
from lifeline.models.fleet import Ambulance, AmbulanceStatus, Hospital, NearbyHospital
from lifeline.services.store import row_to_ambulance, row_to_hospital

logger = logging.getLogger(__name__)

EARTH_RADIUS_METERS = 6_371_000.0

_TABLES = {"hospital": "hospitals", "ambulance": "ambulances"}


def haversine_meters(a: tuple[float, float], b: tuple[float, float]) -> float:
    """Great-circle distance between two (lon, lat) points in meters."""
    lon1, lat1 = a
    lon2, lat2 = b
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)
    h = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    return 2 * EARTH_RADIUS_METERS * math.asin(min(1.0, math.sqrt(h)))


def bounding_box(point: tuple[float, float], radius_m: float) -> tuple[float, float, float, float]:
    """Return (min_lon, max_lon, min_lat, max_lat) enclosing the radius around point."""
    lon, lat = point
    d_lat = math.degrees(radius_m / EARTH_RADIUS_METERS)
    cos_lat = math.cos(math.radians(lat))
    if cos_lat < 1e-9:
        # At the poles every longitude is within reach
        return -180.0, 180.0, max(-90.0, lat - d_lat), min(90.0, lat + d_lat)
    d_lon = math.degrees(radius_m / (EARTH_RADIUS_METERS * cos_lat))
    if d_lon >= 180.0:
        return -180.0, 180.0, max(-90.0, lat - d_lat), min(90.0, lat + d_lat)
    return lon - d_lon, lon + d_lon, max(-90.0, lat - d_lat), min(90.0, lat + d_lat)


class GeoIndex:
    def __init__(self, db: DatabaseAdapter) -> None:
        self.db = db

    async def nearest(
        self,
        kind: Literal["hospital", "ambulance"],
        point: tuple[float, float],
        max_radius_m: float,
        active_only: bool = True,
        status: AmbulanceStatus | None = None,
        limit: int | None = None,
    ) -> list[tuple[Hospital | Ambulance, float]]:
        """Candidates within ``max_radius_m`` of ``point``, nearest first.

        Raises GeoIndexUnavailable if the store cannot be queried.
        """
        table = _TABLES[kind]
        min_lon, max_lon, min_lat, max_lat = bounding_box(point, max_radius_m)

        clauses = ["latitude BETWEEN ? AND ?"]
        params: list = [min_lat, max_lat]
        if min_lon < -180.0 or max_lon > 180.0:
            # Box crosses the antimeridian, split the longitude range
            clauses.append("(longitude >= ? OR longitude <= ?)")
            params += [
                min_lon + 360.0 if min_lon < -180.0 else min_lon,
                max_lon - 360.0 if max_lon > 180.0 else max_lon,
            ]
        else:
            clauses.append("longitude BETWEEN ? AND ?")
            params += [min_lon, max_lon]
        if active_only:
            clauses.append("is_active = 1")
        if status is not None:
            if kind != "ambulance":
                raise ValueError("status filter only applies to ambulances")
            clauses.append("status = ?")
            params.append(status.value)

        query = f"SELECT * FROM {table} WHERE " + " AND ".join(clauses)
        try:
            rows = await self.db.fetch_all(query, params)
        except Exception as e:
            logger.error("Nearest %s query failed: %s", kind, e)
            raise GeoIndexUnavailable(f"{kind} index unavailable") from e

        convert = row_to_hospital if kind == "hospital" else row_to_ambulance
        candidates = []
        for row in rows:
            distance = haversine_meters(point, (row["longitude"], row["latitude"]))
            if distance <= max_radius_m:
                candidates.append((convert(row), distance))
        candidates.sort(key=lambda c: c[1])
        if limit is not None:
            candidates = candidates[:limit]
        return candidates

    async def nearest_hospitals(
        self, point: tuple[float, float], max_radius_m: float, limit: int | None = None
    ) -> list[NearbyHospital]:
        found = await self.nearest("hospital", point, max_radius_m, active_only=True, limit=limit)
        return [NearbyHospital(hospital=h, distance_meters=d) for h, d in found]
