import asyncio
from datetime import timedelta

import pytest
from loguru import logger
from sqlalchemy.exc import OperationalError

from app.services.location_ingest import (
    CleanupResult,
    LocationIngestService,
    NearbyResult,
    QualityRejection,
    ReportOutcome,
    UpstreamFailure,
    ValidationFailure,
)
from app.services.location_store import LocationStore, utcnow
from app.services.notifications import NotificationDispatcher, NotificationError
from app.services.proximity_query import ProximityQueryError

USER = "alice_01"
LAT, LNG = 52.52, 13.405


@pytest.fixture
def service(store, proximity, notifier, clock):
    return LocationIngestService(
        store=store,
        proximity=proximity,
        dispatcher=NotificationDispatcher(notifier),
        clock=clock,
    )


# ------------------------------------------------------------------
# Hysteresis through the full pipeline
# ------------------------------------------------------------------

@pytest.mark.asyncio
async def test_first_detection_counts_without_notifying(service, proximity, neighbor):
    proximity.results = [neighbor()]

    result = await service.handle_report(USER, LAT, LNG, 10)

    assert isinstance(result, ReportOutcome)
    assert result.proximity_count == 1
    assert result.notified is False
    assert [u.user_id for u in result.nearby] == ["bob_42"]


@pytest.mark.asyncio
async def test_second_detection_notifies(service, proximity, notifier, neighbor, clock, store):
    proximity.results = [neighbor()]

    await service.handle_report(USER, LAT, LNG)
    clock.advance(10)
    result = await service.handle_report(USER, LAT, LNG)

    assert result.proximity_count == 2
    assert result.notified is True
    assert store.get(USER).last_notified_at == clock()

    await service.dispatcher.drain()
    assert [call[0] for call in notifier.calls] == [USER]
    assert notifier.calls[0][1][0].user_id == "bob_42"


@pytest.mark.asyncio
async def test_third_detection_respects_cooldown(service, proximity, notifier, neighbor, clock):
    proximity.results = [neighbor()]

    await service.handle_report(USER, LAT, LNG)
    clock.advance(10)
    await service.handle_report(USER, LAT, LNG)
    clock.advance(10)
    within = await service.handle_report(USER, LAT, LNG)

    assert within.proximity_count == 2
    assert within.notified is False

    clock.advance(61)
    beyond = await service.handle_report(USER, LAT, LNG)

    assert beyond.proximity_count == 2
    assert beyond.notified is True

    await service.dispatcher.drain()
    assert len(notifier.calls) == 2


@pytest.mark.asyncio
async def test_miss_resets_count_and_keeps_notification_time(service, proximity, neighbor, clock, store):
    proximity.results = [neighbor()]
    await service.handle_report(USER, LAT, LNG)
    clock.advance(10)
    await service.handle_report(USER, LAT, LNG)
    notified_at = store.get(USER).last_notified_at

    proximity.results = []
    clock.advance(10)
    result = await service.handle_report(USER, LAT, LNG)

    assert result.proximity_count == 0
    assert result.notified is False
    assert store.get(USER).last_notified_at == notified_at


@pytest.mark.asyncio
async def test_without_dispatcher_cooldown_is_not_consumed(store, proximity, neighbor, clock):
    service = LocationIngestService(store=store, proximity=proximity, clock=clock)
    proximity.results = [neighbor()]

    await service.handle_report(USER, LAT, LNG)
    clock.advance(10)
    result = await service.handle_report(USER, LAT, LNG)

    assert result.proximity_count == 2
    assert result.notified is False
    assert store.get(USER).last_notified_at is None


@pytest.mark.asyncio
async def test_query_uses_new_coordinates_and_excludes_self(service, proximity):
    await service.handle_report(USER, "48.8566", "2.3522")

    assert proximity.calls == [{"lat": 48.8566, "lng": 2.3522, "exclude_user_id": USER}]


@pytest.mark.asyncio
async def test_report_stores_coordinates(service, store, clock):
    await service.handle_report(USER, LAT, LNG)

    record = store.get(USER)
    assert (record.lat, record.lng, record.last_updated) == (LAT, LNG, clock())


# ------------------------------------------------------------------
# Gate and validation
# ------------------------------------------------------------------

@pytest.mark.asyncio
@pytest.mark.parametrize("accuracy", [50.5, 51, 120, "999"])
async def test_poor_accuracy_leaves_state_untouched(service, proximity, neighbor, store, clock, accuracy):
    proximity.results = [neighbor()]
    await service.handle_report(USER, LAT, LNG, 5)
    before = store.get(USER)
    calls_before = len(proximity.calls)

    clock.advance(5)
    result = await service.handle_report(USER, LAT + 1, LNG + 1, accuracy)

    assert isinstance(result, QualityRejection)
    assert result.nearby == []
    assert result.message == "Location ignored due to poor accuracy"
    assert store.get(USER) == before
    assert len(proximity.calls) == calls_before


@pytest.mark.asyncio
async def test_infinite_accuracy_is_gated(service, proximity, store):
    result = await service.handle_report(USER, LAT, LNG, "Infinity")

    assert isinstance(result, QualityRejection)
    assert proximity.calls == []
    assert store.get(USER) is None


@pytest.mark.asyncio
@pytest.mark.parametrize("accuracy", ["", "  ", "good", "nan"])
async def test_unreadable_accuracy_counts_as_unknown(service, store, accuracy):
    result = await service.handle_report(USER, LAT, LNG, accuracy)

    assert isinstance(result, ReportOutcome)
    assert store.get(USER) is not None


@pytest.mark.asyncio
async def test_poor_accuracy_does_not_create_record(service, store):
    await service.handle_report(USER, LAT, LNG, 80)
    assert store.get(USER) is None


@pytest.mark.asyncio
async def test_invalid_report_touches_nothing(service, proximity, store):
    result = await service.handle_report("no", LAT, LNG)

    assert result == ValidationFailure("Invalid userId format")
    assert proximity.calls == []
    assert store.get("no") is None


# ------------------------------------------------------------------
# Upstream failures
# ------------------------------------------------------------------

@pytest.mark.asyncio
async def test_proximity_failure_is_upstream_failure(service, proximity, neighbor, store, clock):
    proximity.results = [neighbor()]
    await service.handle_report(USER, LAT, LNG)

    proximity.error = ProximityQueryError("rpc down")
    clock.advance(10)
    result = await service.handle_report(USER, LAT, LNG)

    assert result == UpstreamFailure()
    assert result.message == "Internal server error"
    # counters are only written after a successful query
    assert store.get(USER).proximity_count == 1
    assert store.get(USER).version == 1


class BrokenStore(LocationStore):
    def read_or_default(self, user_id):
        raise OperationalError("select", {}, Exception("connection refused"))


@pytest.mark.asyncio
async def test_store_failure_is_upstream_failure(engine, proximity):
    service = LocationIngestService(store=BrokenStore(engine), proximity=proximity)

    result = await service.handle_report(USER, LAT, LNG)

    assert isinstance(result, UpstreamFailure)
    assert "connection refused" not in result.message


@pytest.mark.asyncio
async def test_unexpected_error_is_upstream_failure(service, proximity, store):
    proximity.error = RuntimeError("adapter bug")

    messages = []
    sink = logger.add(messages.append, level="ERROR")
    try:
        result = await service.handle_report(USER, LAT, LNG)
    finally:
        logger.remove(sink)

    assert result == UpstreamFailure()
    assert any("Location update error" in m for m in messages)
    assert await service.nearby(USER, LAT, LNG) == UpstreamFailure()


@pytest.mark.asyncio
async def test_notification_failure_is_logged_not_raised(store, proximity, neighbor, clock):
    class FailingNotifier:
        async def notify(self, user_id, nearby):
            raise NotificationError("expo unreachable")

    service = LocationIngestService(
        store=store,
        proximity=proximity,
        dispatcher=NotificationDispatcher(FailingNotifier()),
        clock=clock,
    )
    proximity.results = [neighbor()]

    messages = []
    sink = logger.add(messages.append, level="ERROR")
    try:
        await service.handle_report(USER, LAT, LNG)
        clock.advance(5)
        result = await service.handle_report(USER, LAT, LNG)
        await service.dispatcher.drain()
    finally:
        logger.remove(sink)

    assert isinstance(result, ReportOutcome)
    assert result.notified is True
    assert store.get(USER).last_notified_at == clock()
    assert any("Failed to send proximity alert" in m for m in messages)


# ------------------------------------------------------------------
# Concurrency
# ------------------------------------------------------------------

@pytest.mark.asyncio
async def test_conflict_is_retried_against_fresh_state(service, store, proximity, neighbor):
    proximity.results = [neighbor()]
    await service.handle_report(USER, LAT, LNG)

    def other_writer(user_id):
        # another worker commits a miss while this request is querying
        state = store.read_or_default(user_id)
        assert store.write_if_unchanged(user_id, state.version, 0, state.last_notified_at)

    proximity.on_query = other_writer
    result = await service.handle_report(USER, LAT, LNG)

    # applied after the other worker's reset, not on top of the stale count of 1
    assert result.proximity_count == 1
    assert result.notified is False
    state = store.read_or_default(USER)
    assert state.proximity_count == 1
    assert state.version == 3


class AlwaysConflictingStore(LocationStore):
    def __init__(self, engine):
        super().__init__(engine)
        self.writes = 0

    def write_if_unchanged(self, *args, **kwargs):
        self.writes += 1
        return False


@pytest.mark.asyncio
async def test_repeated_conflict_surfaces_upstream_failure(engine, proximity):
    store = AlwaysConflictingStore(engine)
    service = LocationIngestService(store=store, proximity=proximity)

    result = await service.handle_report(USER, LAT, LNG)

    assert isinstance(result, UpstreamFailure)
    assert store.writes == 2


@pytest.mark.asyncio
async def test_concurrent_reports_serialize(service, store, proximity, neighbor):
    proximity.results = [neighbor()]
    await service.handle_report(USER, LAT, LNG)

    # one report sees a neighbor, the other does not
    proximity.responses = [[neighbor()], []]
    first, second = await asyncio.gather(
        service.handle_report(USER, LAT, LNG),
        service.handle_report(USER, LAT, LNG),
    )

    assert isinstance(first, ReportOutcome)
    assert isinstance(second, ReportOutcome)
    state = store.read_or_default(USER)
    assert state.version == 3
    # hit then miss -> 0, miss then hit -> 1
    assert state.proximity_count in (0, 1)
    assert state.proximity_count == second.proximity_count


@pytest.mark.asyncio
async def test_concurrent_workers_do_not_lose_updates(store, proximity, notifier, neighbor, clock):
    # separate services model separate processes: no shared in-memory lock
    worker_a = LocationIngestService(
        store=store, proximity=proximity, dispatcher=NotificationDispatcher(notifier), clock=clock
    )
    worker_b = LocationIngestService(
        store=store, proximity=proximity, dispatcher=NotificationDispatcher(notifier), clock=clock
    )

    proximity.results = [neighbor()]
    await worker_a.handle_report(USER, LAT, LNG)

    results = await asyncio.gather(
        worker_a.handle_report(USER, LAT, LNG),
        worker_b.handle_report(USER, LAT, LNG),
    )

    assert all(isinstance(r, ReportOutcome) for r in results)
    state = store.read_or_default(USER)
    assert state.version == 3
    assert state.proximity_count == 2
    # cooldown holds even though both saw the threshold
    assert sum(r.notified for r in results) == 1


@pytest.mark.asyncio
async def test_locks_are_released(service):
    await asyncio.gather(*(service.handle_report(USER, LAT, LNG) for _ in range(5)))
    assert len(service._locks) == 0


# ------------------------------------------------------------------
# Nearby and cleanup
# ------------------------------------------------------------------

@pytest.mark.asyncio
async def test_nearby_lookup_is_read_only(service, proximity, neighbor, store):
    proximity.results = [neighbor()]

    result = await service.nearby(USER, LAT, LNG)

    assert isinstance(result, NearbyResult)
    assert [u.user_id for u in result.users] == ["bob_42"]
    assert store.get(USER) is None


@pytest.mark.asyncio
async def test_nearby_validation(service):
    assert await service.nearby(USER, "north", LNG) == ValidationFailure("Latitude and longitude are required")


@pytest.mark.asyncio
async def test_nearby_upstream_failure(service, proximity):
    proximity.error = ProximityQueryError("down")
    assert isinstance(await service.nearby(USER, LAT, LNG), UpstreamFailure)


@pytest.mark.asyncio
async def test_cleanup_delegates_to_store(service, store):
    store.upsert_coordinates("old_user", LAT, LNG, utcnow() - timedelta(days=2))

    result = await service.cleanup(timedelta(hours=1))

    assert result == CleanupResult(removed=1)