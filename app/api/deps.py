from __future__ import annotations

from functools import lru_cache

from loguru import logger

from app.core.config import NOTIFICATIONS_ENABLED, PROXIMITY_BACKEND
from app.core.db import engine
from app.services.location_ingest import LocationIngestService
from app.services.location_store import LocationStore
from app.services.notifications import ExpoProximityNotifier, NotificationDispatcher
from app.services.proximity_query import ProximityQuery, SqlProximityQuery, SupabaseProximityQuery
from app.services.supabase_admin import supabase_admin

# Process-wide handles: built on first use, shared read-only afterwards.


@lru_cache(maxsize=1)
def get_location_store() -> LocationStore:
    return LocationStore(engine)


@lru_cache(maxsize=1)
def get_proximity_query() -> ProximityQuery:
    if PROXIMITY_BACKEND == "supabase":
        logger.info("Proximity backend: supabase RPC")
        return SupabaseProximityQuery(supabase_admin)
    if PROXIMITY_BACKEND == "sql":
        logger.info("Proximity backend: SQL")
        return SqlProximityQuery(engine)
    raise RuntimeError(f"Invalid PROXIMITY_BACKEND: {PROXIMITY_BACKEND}")


@lru_cache(maxsize=1)
def get_dispatcher() -> NotificationDispatcher | None:
    if not NOTIFICATIONS_ENABLED:
        logger.info("Proximity notifications disabled")
        return None
    return NotificationDispatcher(ExpoProximityNotifier(engine))


@lru_cache(maxsize=1)
def get_ingest_service() -> LocationIngestService:
    return LocationIngestService(
        store=get_location_store(),
        proximity=get_proximity_query(),
        dispatcher=get_dispatcher(),
    )
