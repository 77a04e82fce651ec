from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from loguru import logger
from sqlalchemy import delete, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import Engine

from app.models.location import Location


def utcnow() -> datetime:
    # stored as naive UTC
    return datetime.now(timezone.utc).replace(tzinfo=None)


class WriteConflict(Exception):
    """Raised when a counter write keeps losing the version check."""

    def __init__(self, user_id: str, expected_version: int):
        super().__init__(f"conflicting counter write for {user_id} at version {expected_version}")
        self.user_id = user_id
        self.expected_version = expected_version


@dataclass(frozen=True)
class ProximityState:
    user_id: str
    proximity_count: int = 0
    last_notified_at: Optional[datetime] = None
    version: int = 0
    exists: bool = False


@dataclass(frozen=True)
class LocationRecord:
    user_id: str
    lat: float
    lng: float
    last_updated: datetime
    proximity_count: int
    last_notified_at: Optional[datetime]
    version: int


def dialect_insert(engine: Engine) -> Callable:
    name = engine.dialect.name
    if name == "postgresql":
        return postgresql.insert
    if name == "sqlite":
        return sqlite.insert
    raise RuntimeError(f"Unsupported database dialect for upserts: {name}")


class LocationStore:
    """
    Owns the `locations` table.

    Guarantees:
      - upsert_coordinates never touches the hysteresis counters
      - write_if_unchanged commits only if nobody else committed counters since
        the caller's read (version compare-and-swap), in one statement
    """

    def __init__(self, engine: Engine):
        self._engine = engine
        self._insert = dialect_insert(engine)

    def read_or_default(self, user_id: str) -> ProximityState:
        with self._engine.begin() as conn:
            row = conn.execute(
                select(
                    Location.proximity_count,
                    Location.last_notified_at,
                    Location.version,
                ).where(Location.user_id == user_id)
            ).mappings().first()

        if not row:
            return ProximityState(user_id=user_id)

        return ProximityState(
            user_id=user_id,
            proximity_count=int(row["proximity_count"]),
            last_notified_at=row["last_notified_at"],
            version=int(row["version"]),
            exists=True,
        )

    def get(self, user_id: str) -> Optional[LocationRecord]:
        with self._engine.begin() as conn:
            row = conn.execute(
                select(Location.__table__).where(Location.user_id == user_id)
            ).mappings().first()

        if not row:
            return None

        return LocationRecord(
            user_id=row["user_id"],
            lat=row["lat"],
            lng=row["lng"],
            last_updated=row["last_updated"],
            proximity_count=row["proximity_count"],
            last_notified_at=row["last_notified_at"],
            version=row["version"],
        )

    def upsert_coordinates(self, user_id: str, lat: float, lng: float, now: datetime) -> None:
        stmt = self._insert(Location).values(
            user_id=user_id,
            lat=lat,
            lng=lng,
            last_updated=now,
            proximity_count=0,
            last_notified_at=None,
            version=0,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[Location.user_id],
            set_={
                "lat": stmt.excluded.lat,
                "lng": stmt.excluded.lng,
                "last_updated": stmt.excluded.last_updated,
            },
        )

        with self._engine.begin() as conn:
            conn.execute(stmt)

    def write_if_unchanged(
        self,
        user_id: str,
        expected_version: int,
        proximity_count: int,
        last_notified_at: Optional[datetime],
    ) -> bool:
        stmt = (
            update(Location)
            .where(Location.user_id == user_id, Location.version == expected_version)
            .values(
                proximity_count=proximity_count,
                last_notified_at=last_notified_at,
                version=Location.version + 1,
            )
        )

        with self._engine.begin() as conn:
            result = conn.execute(stmt)

        committed = result.rowcount == 1
        if not committed:
            logger.debug(f"Counter write lost version check | user={user_id} expected={expected_version}")
        return committed

    def cleanup_stale(self, retention: timedelta, now: Optional[datetime] = None) -> int:
        cutoff = (now or utcnow()) - retention

        with self._engine.begin() as conn:
            result = conn.execute(delete(Location).where(Location.last_updated < cutoff))

        removed = result.rowcount or 0
        logger.info(f"Stale locations removed | count={removed} cutoff={cutoff.isoformat()}")
        return removed
