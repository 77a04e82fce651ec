from __future__ import annotations

import math
import re
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from functools import partial
from typing import Any, Callable, List, Optional, Union

from fastapi.concurrency import run_in_threadpool
from loguru import logger

from app.core.proximity_config import USER_ID_PATTERN, WRITE_CONFLICT_RETRIES
from app.services.accuracy_gate import admit
from app.services.hysteresis import evaluate
from app.services.location_store import LocationStore, ProximityState, WriteConflict, utcnow
from app.services.notifications import NotificationDispatcher
from app.services.proximity_query import NearbyUser, ProximityQuery
from app.services.user_locks import UserLocks

USER_ID_REGEX = re.compile(USER_ID_PATTERN)

POOR_ACCURACY_MESSAGE = "Location ignored due to poor accuracy"


# ------------------------------------------------------------------
# Results
# ------------------------------------------------------------------

@dataclass(frozen=True)
class ReportOutcome:
    nearby: List[NearbyUser]
    proximity_count: int
    notified: bool


@dataclass(frozen=True)
class QualityRejection:
    accuracy: float
    message: str = POOR_ACCURACY_MESSAGE
    nearby: List[NearbyUser] = field(default_factory=list)


@dataclass(frozen=True)
class ValidationFailure:
    message: str


@dataclass(frozen=True)
class UpstreamFailure:
    message: str = "Internal server error"


@dataclass(frozen=True)
class NearbyResult:
    users: List[NearbyUser]


@dataclass(frozen=True)
class CleanupResult:
    removed: int


ReportResult = Union[ReportOutcome, QualityRejection, ValidationFailure, UpstreamFailure]


# ------------------------------------------------------------------
# Validation
# ------------------------------------------------------------------

@dataclass(frozen=True)
class ValidReport:
    user_id: str
    lat: float
    lng: float
    accuracy: Optional[float] = None


def _parse_float(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        value = value.strip()
        if not value:
            return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _to_number(value: Any) -> Optional[float]:
    number = _parse_float(value)
    return number if number is not None and math.isfinite(number) else None


def _to_accuracy(value: Any) -> Optional[float]:
    # unreadable accuracy counts as unknown; +inf still reaches the gate
    number = _parse_float(value)
    return None if number is None or math.isnan(number) else number


def is_valid_user_id(user_id: Any) -> bool:
    return isinstance(user_id, str) and USER_ID_REGEX.fullmatch(user_id) is not None


def validate_report(user_id: Any, lat: Any, lng: Any, accuracy: Any = None) -> Union[ValidReport, ValidationFailure]:
    if not is_valid_user_id(user_id):
        return ValidationFailure("Invalid userId format")

    latitude = _to_number(lat)
    longitude = _to_number(lng)
    if latitude is None or longitude is None:
        return ValidationFailure("Latitude and longitude are required")

    return ValidReport(user_id, latitude, longitude, _to_accuracy(accuracy))


# ------------------------------------------------------------------
# Orchestrator
# ------------------------------------------------------------------

class LocationIngestService:
    """
    Turns location reports into debounced proximity alerts.

    Per report: gate -> lock user -> read counters -> upsert coordinates ->
    query neighbors at the new coordinates -> hysteresis -> versioned counter
    write -> detached notification.
    """

    def __init__(
        self,
        store: LocationStore,
        proximity: ProximityQuery,
        dispatcher: Optional[NotificationDispatcher] = None,
        locks: Optional[UserLocks] = None,
        clock: Callable[[], datetime] = utcnow,
        conflict_retries: int = WRITE_CONFLICT_RETRIES,
    ):
        self._store = store
        self._proximity = proximity
        self._dispatcher = dispatcher
        self._locks = locks if locks is not None else UserLocks()
        self._clock = clock
        self._conflict_retries = conflict_retries

    @property
    def store(self) -> LocationStore:
        return self._store

    @property
    def dispatcher(self) -> Optional[NotificationDispatcher]:
        return self._dispatcher

    async def handle_report(self, user_id: Any, lat: Any, lng: Any, accuracy: Any = None) -> ReportResult:
        report = validate_report(user_id, lat, lng, accuracy)
        if isinstance(report, ValidationFailure):
            logger.info(f"Location update rejected | reason={report.message}")
            return report

        if not admit(report.accuracy):
            logger.info(f"Location ignored, poor accuracy | user={report.user_id} accuracy={report.accuracy}")
            return QualityRejection(accuracy=report.accuracy)

        try:
            async with self._locks.hold(report.user_id):
                outcome = await self._process(report)
        except Exception:
            logger.exception(f"Location update error | user={report.user_id}")
            return UpstreamFailure()

        if outcome.notified and self._dispatcher is not None:
            self._dispatcher.dispatch(report.user_id, outcome.nearby)

        logger.debug(
            f"Location updated | user={report.user_id} nearby={len(outcome.nearby)} "
            f"count={outcome.proximity_count} notified={outcome.notified}"
        )
        return outcome

    async def _process(self, report: ValidReport) -> ReportOutcome:
        user_id = report.user_id

        state = await run_in_threadpool(self._store.read_or_default, user_id)

        now = self._clock()
        await run_in_threadpool(self._store.upsert_coordinates, user_id, report.lat, report.lng, now)

        nearby = await run_in_threadpool(
            partial(self._proximity.find_nearby, report.lat, report.lng, exclude_user_id=user_id)
        )
        detected = len(nearby) > 0

        for attempt in range(self._conflict_retries + 1):
            decision = evaluate(state.proximity_count, state.last_notified_at, detected, now)
            if decision.should_notify and self._dispatcher is None:
                # nothing to deliver through, so the cooldown is not consumed
                decision = replace(decision, last_notified_at=state.last_notified_at, should_notify=False)

            committed = await run_in_threadpool(
                self._store.write_if_unchanged,
                user_id,
                state.version,
                decision.proximity_count,
                decision.last_notified_at,
            )
            if committed:
                return ReportOutcome(
                    nearby=nearby,
                    proximity_count=decision.proximity_count,
                    notified=decision.should_notify,
                )

            logger.warning(f"Counter write conflict | user={user_id} version={state.version} attempt={attempt + 1}")
            if attempt < self._conflict_retries:
                state = await self._reread(report, now)

        raise WriteConflict(user_id, state.version)

    async def _reread(self, report: ValidReport, now: datetime) -> ProximityState:
        state = await run_in_threadpool(self._store.read_or_default, report.user_id)
        if not state.exists:
            # swept between upsert and write
            await run_in_threadpool(self._store.upsert_coordinates, report.user_id, report.lat, report.lng, now)
        return state

    async def nearby(self, user_id: Any, lat: Any, lng: Any) -> Union[NearbyResult, ValidationFailure, UpstreamFailure]:
        report = validate_report(user_id, lat, lng)
        if isinstance(report, ValidationFailure):
            return report

        try:
            users = await run_in_threadpool(
                partial(self._proximity.find_nearby, report.lat, report.lng, exclude_user_id=report.user_id)
            )
        except Exception:
            logger.exception(f"Nearby lookup failed | user={report.user_id}")
            return UpstreamFailure()

        return NearbyResult(users=users)

    async def cleanup(self, retention: timedelta) -> Union[CleanupResult, UpstreamFailure]:
        try:
            removed = await run_in_threadpool(self._store.cleanup_stale, retention)
        except Exception:
            logger.exception("Cleanup job failed")
            return UpstreamFailure()

        return CleanupResult(removed=removed)
