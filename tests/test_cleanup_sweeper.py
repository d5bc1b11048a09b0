from __future__ import annotations

import asyncio
import contextlib
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from core.exceptions import VisitPersistenceError
from tests.fakes import PLACE_LOCATION, T0, RecordingNotifier, VisitHarness, make_place
from visits.events import VisitEndedEvent
from visits.models import VisitCandidate, VisitEvent
from visits.services.cleanup_sweeper import CleanupSweeper, SweepResult


def _open_visit(
    last_seen_minutes_ago: int,
    *,
    place_id: str = "place-1",
    user_id: str = "user-1",
) -> VisitEvent:
    last_seen = T0 - timedelta(minutes=last_seen_minutes_ago)
    return VisitEvent(
        user_id=user_id,
        place_id=place_id,
        arrived_at=last_seen - timedelta(minutes=30),
        last_seen_at=last_seen,
    )


def _candidate(last_hit_minutes_ago: int, *, place_id: str = "place-1") -> VisitCandidate:
    last_hit = T0 - timedelta(minutes=last_hit_minutes_ago)
    return VisitCandidate(
        user_id="user-1",
        place_id=place_id,
        first_hit_at=last_hit,
        last_hit_at=last_hit,
    )


@pytest.mark.asyncio
async def test_sweep_closes_stale_visit_at_last_seen() -> None:
    harness = VisitHarness()
    stale = _open_visit(60)
    await harness.visits.insert(stale)

    result = await harness.sweeper.run_sweep(T0)

    assert result == SweepResult(closed_visits=1, purged_candidates=0, failed_records=0)
    [visit] = harness.visits.all()
    assert not visit.is_open
    assert visit.ended_at == T0 - timedelta(minutes=60)
    assert visit.status == "closed"


@pytest.mark.asyncio
async def test_sweep_emits_visit_ended_with_dwell() -> None:
    harness = VisitHarness()
    stale = _open_visit(60)
    await harness.visits.insert(stale)

    await harness.sweeper.run_sweep(T0)

    [event] = harness.notifier.events
    assert isinstance(event, VisitEndedEvent)
    assert event.visit_id == stale.id
    assert event.ended_at == stale.last_seen_at
    assert event.dwell_minutes == pytest.approx(30.0)


@pytest.mark.asyncio
async def test_sweep_keeps_recent_visits_open() -> None:
    harness = VisitHarness()
    await harness.visits.insert(_open_visit(45))
    await harness.visits.insert(_open_visit(10, place_id="place-2"))

    result = await harness.sweeper.run_sweep(T0)

    assert result.closed_visits == 0
    assert len(harness.visits.open_events()) == 2
    assert harness.notifier.events == []


@pytest.mark.asyncio
async def test_sweep_purges_stale_candidates_only() -> None:
    harness = VisitHarness()
    await harness.candidates.insert(_candidate(61, place_id="old"))
    await harness.candidates.insert(_candidate(60, place_id="edge"))
    await harness.candidates.insert(_candidate(5, place_id="fresh"))

    result = await harness.sweeper.run_sweep(T0)

    assert result.purged_candidates == 1
    assert {c.place_id for c in harness.candidates.all()} == {"edge", "fresh"}


@pytest.mark.asyncio
async def test_sweep_is_idempotent() -> None:
    harness = VisitHarness()
    for index in range(5):
        await harness.visits.insert(_open_visit(90 + index, place_id=f"place-{index}"))
        await harness.candidates.insert(_candidate(120, place_id=f"place-{index}"))

    first = await harness.sweeper.run_sweep(T0)
    snapshot = {e.id: e.model_dump() for e in harness.visits.all()}
    second = await harness.sweeper.run_sweep(T0)

    # batch_size is 2, so both passes span several batches
    assert first == SweepResult(closed_visits=5, purged_candidates=5, failed_records=0)
    assert second == SweepResult()
    assert {e.id: e.model_dump() for e in harness.visits.all()} == snapshot
    assert len(harness.notifier.events) == 5


@pytest.mark.asyncio
async def test_sweep_with_nothing_stale_is_a_no_op() -> None:
    harness = VisitHarness()

    result = await harness.sweeper.run_sweep(T0)

    assert result.to_dict() == {
        "closed_visits": 0,
        "purged_candidates": 0,
        "failed_records": 0,
    }


@pytest.mark.asyncio
async def test_ping_extending_visit_during_sweep_wins() -> None:
    harness = VisitHarness()
    stale = _open_visit(60)
    await harness.visits.insert(stale)
    snapshot = await harness.visits.find_stale_open(T0 - timedelta(minutes=45), 10)
    await harness.visits.touch(stale.id, T0)
    harness.visits.find_stale_open = AsyncMock(side_effect=[snapshot, []])

    result = await harness.sweeper.run_sweep(T0)

    assert result.closed_visits == 0
    [visit] = harness.visits.all()
    assert visit.is_open
    assert visit.last_seen_at == T0
    assert harness.notifier.events == []


@pytest.mark.asyncio
async def test_sweep_continues_after_record_failure() -> None:
    harness = VisitHarness()
    broken = _open_visit(120, place_id="broken")
    healthy = _open_visit(100, place_id="healthy")
    await harness.visits.insert(broken)
    await harness.visits.insert(healthy)
    original_close = harness.visits.close_if_unchanged

    async def _close(event_id, expected_last_seen_at):
        if event_id == broken.id:
            msg = "close visit failed"
            raise VisitPersistenceError(msg)
        return await original_close(event_id, expected_last_seen_at)

    harness.visits.close_if_unchanged = _close

    result = await harness.sweeper.run_sweep(T0)

    assert result.closed_visits == 1
    assert result.failed_records == 1
    open_ids = {e.id for e in harness.visits.open_events()}
    assert open_ids == {broken.id}


@pytest.mark.asyncio
async def test_failed_record_is_retried_by_next_sweep() -> None:
    harness = VisitHarness()
    stale = _open_visit(120)
    await harness.visits.insert(stale)
    original_close = harness.visits.close_if_unchanged
    harness.visits.close_if_unchanged = AsyncMock(side_effect=VisitPersistenceError("down"))

    first = await harness.sweeper.run_sweep(T0)
    harness.visits.close_if_unchanged = original_close
    second = await harness.sweeper.run_sweep(T0)

    assert first.failed_records == 1
    assert second.closed_visits == 1
    assert harness.visits.open_events() == []


@pytest.mark.asyncio
async def test_sweep_runs_concurrently_with_pings() -> None:
    harness = VisitHarness(yield_control=True)
    harness.spatial_index.add("user-1", make_place())
    await harness.visits.insert(_open_visit(50))

    await asyncio.gather(
        harness.sweeper.run_sweep(T0),
        harness.engine.process_ping("user-1", PLACE_LOCATION, None, T0),
    )

    # Either the ping extended the visit first, or the sweep closed it and the
    # ping started a new candidate; never both open.
    assert len(harness.visits.open_events()) <= 1
    if harness.visits.open_events():
        assert harness.visits.open_events()[0].last_seen_at == T0
    else:
        assert len(harness.candidates.all()) == 1


@pytest.mark.asyncio
async def test_notifier_failure_does_not_stop_sweep() -> None:
    harness = VisitHarness(notifier=RecordingNotifier(fail=True))
    await harness.visits.insert(_open_visit(60))
    await harness.visits.insert(_open_visit(70, place_id="place-2"))

    result = await harness.sweeper.run_sweep(T0)

    assert result.closed_visits == 2


def test_batch_size_must_be_positive() -> None:
    harness = VisitHarness()
    with pytest.raises(ValueError):
        CleanupSweeper(
            ledger=harness.ledger,
            tracker=harness.tracker,
            settings_provider=harness.settings_provider,
            batch_size=0,
        )


async def _drain(steps: int = 20) -> None:
    for _ in range(steps):
        await asyncio.sleep(0)


@pytest.mark.asyncio
async def test_cancelled_sweep_finishes_the_batch_in_flight() -> None:
    harness = VisitHarness()
    stale = [_open_visit(60 + i, place_id=f"place-{i}") for i in range(5)]
    for visit in stale:
        await harness.visits.insert(visit)

    entered = asyncio.Event()
    release = asyncio.Event()
    original_close = harness.visits.close_if_unchanged

    async def _gated_close(event_id, expected_last_seen_at):
        if not entered.is_set():
            entered.set()
            await release.wait()
        return await original_close(event_id, expected_last_seen_at)

    harness.visits.close_if_unchanged = _gated_close

    task = asyncio.create_task(harness.sweeper.run_sweep(T0))
    await asyncio.wait_for(entered.wait(), timeout=1)
    task.cancel()
    release.set()
    with pytest.raises(asyncio.CancelledError):
        await task
    await _drain()

    closed = [v for v in harness.visits.all() if not v.is_open]
    assert len(closed) == 2
    assert all(v.ended_at == v.last_seen_at for v in closed)
    assert {e.visit_id for e in harness.notifier.events} == {v.id for v in closed}

    result = await harness.sweeper.run_sweep(T0)

    assert result.closed_visits == 3
    assert harness.visits.open_events() == []
    assert len(harness.notifier.events) == 5


@pytest.mark.asyncio
@pytest.mark.parametrize("steps_before_cancel", range(12))
async def test_cancelled_sweep_never_leaves_a_partial_batch(steps_before_cancel: int) -> None:
    harness = VisitHarness(yield_control=True)
    for i in range(5):
        await harness.visits.insert(_open_visit(60 + i, place_id=f"place-{i}"))

    task = asyncio.create_task(harness.sweeper.run_sweep(T0))
    await _drain(steps_before_cancel)
    task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await task
    await _drain()

    closed = [v for v in harness.visits.all() if not v.is_open]
    assert len(closed) in (0, 2, 4, 5)
    assert all(v.ended_at == v.last_seen_at for v in closed)
    assert len(harness.notifier.events) == len(closed)
