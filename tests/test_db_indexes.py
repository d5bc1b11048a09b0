from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest
from pymongo.errors import OperationFailure

from db import indexes
from db.indexes import (
    CANDIDATE_USER_PLACE_INDEX,
    OPEN_VISIT_PER_PLACE_INDEX,
    VISIT_CANDIDATE_INDEXES,
    VISIT_EVENT_INDEXES,
)
from db.manager import DatabaseManager
from db.models import Place


def _index(models, name: str) -> dict:
    for model in models:
        if model.document["name"] == name:
            return model.document
    msg = f"index {name} not defined"
    raise AssertionError(msg)


def test_candidate_pair_index_is_unique() -> None:
    index = _index(VISIT_CANDIDATE_INDEXES, CANDIDATE_USER_PLACE_INDEX)

    assert index["unique"] is True
    assert list(index["key"].items()) == [("user_id", 1), ("place_id", 1)]


def test_open_visit_index_is_partial_on_open_attached_visits() -> None:
    index = _index(VISIT_EVENT_INDEXES, OPEN_VISIT_PER_PLACE_INDEX)

    assert index["unique"] is True
    assert list(index["key"].items()) == [("user_id", 1), ("place_id", 1)]
    assert index["partialFilterExpression"] == {
        "status": "open",
        "place_id": {"$type": "string"},
    }


def test_sweeper_queries_are_indexed() -> None:
    stale_visits = _index(VISIT_EVENT_INDEXES, "visit_events_status_last_seen_idx")
    stale_candidates = _index(VISIT_CANDIDATE_INDEXES, "visit_candidates_last_hit_idx")

    assert list(stale_visits["key"]) == ["status", "last_seen_at"]
    assert list(stale_candidates["key"]) == ["last_hit_at"]


def test_places_have_user_scoped_geospatial_index() -> None:
    [geo_index] = [
        model.document
        for model in Place.Settings.indexes
        if model.document["name"] == "places_user_location_2dsphere_idx"
    ]

    assert list(geo_index["key"].items()) == [("user_id", 1), ("location", "2dsphere")]


@pytest.mark.asyncio
async def test_ensure_visit_indexes_creates_every_index(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    create = AsyncMock(return_value="ok")
    monkeypatch.setattr(indexes.db_manager, "safe_create_index", create)

    await indexes.ensure_visit_indexes()

    assert create.await_count == len(VISIT_CANDIDATE_INDEXES) + len(VISIT_EVENT_INDEXES)
    calls = {call.kwargs["name"]: call for call in create.await_args_list}
    guard = calls[OPEN_VISIT_PER_PLACE_INDEX]
    assert guard.args == (
        "visit_events",
        [("user_id", 1), ("place_id", 1)],
    )
    assert guard.kwargs["unique"] is True
    assert "partialFilterExpression" in guard.kwargs


@pytest.mark.asyncio
async def test_ensure_visit_indexes_logs_failures(
    monkeypatch: pytest.MonkeyPatch,
    caplog: pytest.LogCaptureFixture,
) -> None:
    monkeypatch.setattr(
        indexes.db_manager,
        "safe_create_index",
        AsyncMock(side_effect=RuntimeError("boom")),
    )

    await indexes.ensure_visit_indexes()

    assert "Error creating visit state indexes" in caplog.text


@pytest.mark.asyncio
async def test_init_database_runs_beanie_then_indexes(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    order: list[str] = []
    monkeypatch.setattr(
        indexes.db_manager,
        "init_beanie",
        AsyncMock(side_effect=lambda: order.append("beanie")),
    )
    monkeypatch.setattr(
        indexes,
        "ensure_visit_indexes",
        AsyncMock(side_effect=lambda: order.append("indexes")),
    )

    await indexes.init_database()

    assert order == ["beanie", "indexes"]


@pytest.mark.asyncio
async def test_safe_create_index_skips_existing_name(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    collection = MagicMock()
    collection.index_information = AsyncMock(
        return_value={OPEN_VISIT_PER_PLACE_INDEX: {}},
    )
    collection.create_index = AsyncMock()
    manager = DatabaseManager()
    monkeypatch.setattr(manager, "get_collection", lambda _name: collection)

    result = await manager.safe_create_index(
        "visit_events",
        [("user_id", 1)],
        name=OPEN_VISIT_PER_PLACE_INDEX,
    )

    assert result == OPEN_VISIT_PER_PLACE_INDEX
    collection.create_index.assert_not_awaited()


@pytest.mark.asyncio
async def test_safe_create_index_tolerates_operation_failure(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    collection = MagicMock()
    collection.index_information = AsyncMock(return_value={})
    collection.create_index = AsyncMock(
        side_effect=OperationFailure("Index already exists", code=85),
    )
    manager = DatabaseManager()
    monkeypatch.setattr(manager, "get_collection", lambda _name: collection)

    result = await manager.safe_create_index("visit_events", [("user_id", 1)], name="x")

    assert result is None
