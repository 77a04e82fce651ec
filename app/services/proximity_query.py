from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Protocol

import httpx
from loguru import logger
from postgrest.exceptions import APIError
from sqlalchemy import select
from sqlalchemy.engine import Engine

from app.core.proximity_config import INACTIVE_AFTER_SECONDS, MAX_DISTANCE_METERS, NEARBY_LIMIT
from app.models.location import Location
from app.services.location_store import utcnow

EARTH_RADIUS_M = 6371000
METERS_PER_DEGREE_LAT = 111320


class ProximityQueryError(Exception):
    pass


@dataclass(frozen=True)
class NearbyUser:
    user_id: str
    distance_meters: float
    last_updated: datetime


class ProximityQuery(Protocol):
    def find_nearby(
        self,
        lat: float,
        lng: float,
        *,
        exclude_user_id: str,
        radius_meters: float = MAX_DISTANCE_METERS,
        inactive_after_seconds: int = INACTIVE_AFTER_SECONDS,
        limit: int = NEARBY_LIMIT,
    ) -> List[NearbyUser]:
        ...


def haversine_m(lat1, lng1, lat2, lng2):
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlambda = math.radians(lng2 - lng1)

    a = (
        math.sin(dphi / 2) ** 2
        + math.cos(phi1) * math.cos(phi2) * math.sin(dlambda / 2) ** 2
    )
    return 2 * EARTH_RADIUS_M * math.atan2(math.sqrt(a), math.sqrt(1 - a))


# ------------------------------------------------------------------
# SQL backend
# ------------------------------------------------------------------

class SqlProximityQuery:
    """
    Searches the locations table directly.

    Candidates are narrowed in SQL by staleness and a lat/lng bounding box,
    exact great-circle distances are computed here.
    """

    def __init__(self, engine: Engine, clock: Callable[[], datetime] = utcnow):
        self._engine = engine
        self._clock = clock

    def find_nearby(
        self,
        lat: float,
        lng: float,
        *,
        exclude_user_id: str,
        radius_meters: float = MAX_DISTANCE_METERS,
        inactive_after_seconds: int = INACTIVE_AFTER_SECONDS,
        limit: int = NEARBY_LIMIT,
    ) -> List[NearbyUser]:
        active_cutoff = self._clock() - timedelta(seconds=inactive_after_seconds)
        dlat = radius_meters / METERS_PER_DEGREE_LAT

        stmt = select(
            Location.user_id, Location.lat, Location.lng, Location.last_updated
        ).where(
            Location.user_id != exclude_user_id,
            Location.last_updated >= active_cutoff,
            Location.lat.between(lat - dlat, lat + dlat),
        )

        cos_lat = math.cos(math.radians(lat))
        if cos_lat > 1e-6:
            dlng = radius_meters / (METERS_PER_DEGREE_LAT * cos_lat)
            # no longitude prefilter across the antimeridian
            if -180 <= lng - dlng and lng + dlng <= 180:
                stmt = stmt.where(Location.lng.between(lng - dlng, lng + dlng))

        with self._engine.begin() as conn:
            rows = conn.execute(stmt).all()

        in_radius: list[NearbyUser] = []
        for r in rows:
            distance = haversine_m(lat, lng, r.lat, r.lng)
            if distance <= radius_meters:
                in_radius.append(
                    NearbyUser(
                        user_id=str(r.user_id),
                        distance_meters=round(distance, 1),
                        last_updated=r.last_updated,
                    )
                )

        in_radius.sort(key=lambda u: u.distance_meters)
        return in_radius[:limit]


# ------------------------------------------------------------------
# Supabase backend
# ------------------------------------------------------------------

def _parse_timestamp(value) -> datetime:
    if isinstance(value, datetime):
        ts = value
    else:
        ts = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if ts.tzinfo is not None:
        ts = ts.astimezone(timezone.utc).replace(tzinfo=None)
    return ts


class SupabaseProximityQuery:
    """
    Calls the `nearby_locations` Postgres function through Supabase RPC.

    The function is expected to return rows with user_id, distance_meters and
    last_updated.
    """

    def __init__(self, client_factory: Callable):
        self._client_factory = client_factory

    def find_nearby(
        self,
        lat: float,
        lng: float,
        *,
        exclude_user_id: str,
        radius_meters: float = MAX_DISTANCE_METERS,
        inactive_after_seconds: int = INACTIVE_AFTER_SECONDS,
        limit: int = NEARBY_LIMIT,
    ) -> List[NearbyUser]:
        params = {
            "query_lat": lat,
            "query_lng": lng,
            "radius_m": radius_meters,
            "exclude_user": exclude_user_id,
            "inactive_after_seconds": inactive_after_seconds,
            "limit_results": limit,
        }

        try:
            res = self._client_factory().rpc("nearby_locations", params).execute()
        except (APIError, httpx.HTTPError) as exc:
            logger.error(f"nearby_locations RPC failed | user={exclude_user_id} error={exc}")
            raise ProximityQueryError("nearby_locations RPC failed") from exc

        users: list[NearbyUser] = []
        for row in res.data or []:
            try:
                if not row.get("user_id"):
                    continue
                users.append(
                    NearbyUser(
                        user_id=str(row["user_id"]),
                        distance_meters=round(float(row.get("distance_meters") or 0.0), 1),
                        last_updated=_parse_timestamp(row["last_updated"]),
                    )
                )
            except (AttributeError, KeyError, TypeError, ValueError) as exc:
                logger.warning(f"Skipping malformed nearby row | user={exclude_user_id} row={row!r} error={exc}")

        return users[:limit]
