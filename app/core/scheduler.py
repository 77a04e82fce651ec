from datetime import timedelta

from apscheduler.schedulers.background import BackgroundScheduler
from loguru import logger
from sqlalchemy.exc import SQLAlchemyError

from app.services.location_store import LocationStore


def sweep_stale_locations(store: LocationStore, retention_seconds: int) -> int:
    try:
        return store.cleanup_stale(timedelta(seconds=retention_seconds))
    except SQLAlchemyError:
        logger.exception("Scheduled cleanup failed")
        return 0


def start_cleanup_scheduler(
    store: LocationStore,
    interval_minutes: int,
    retention_seconds: int,
) -> BackgroundScheduler | None:
    if interval_minutes <= 0:
        logger.info("Scheduled cleanup disabled")
        return None

    scheduler = BackgroundScheduler()
    scheduler.add_job(
        sweep_stale_locations,
        "interval",
        minutes=interval_minutes,
        args=[store, retention_seconds],
        id="cleanup_stale_locations",
        max_instances=1,
        coalesce=True,
    )
    scheduler.start()
    logger.info(f"Scheduled cleanup every {interval_minutes} min | retention={retention_seconds}s")
    return scheduler
