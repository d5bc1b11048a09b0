"""
Persistence for visit candidates and visit events.

Every state transition is a single conditional write: inserts rely on the
unique indexes from db.indexes, updates and deletes match on the values the
caller read. A write that loses a race raises ConcurrencyConflictError (or
returns False where losing is an expected outcome for the caller), and
driver failures surface as VisitPersistenceError.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Protocol

import pymongo
from pymongo.errors import DuplicateKeyError, PyMongoError

from core.exceptions import ConcurrencyConflictError, VisitPersistenceError
from db.collections import visit_candidates_collection, visit_events_collection
from db.indexes import VISIT_STATUS_CLOSED, VISIT_STATUS_OPEN
from visits.models import VisitCandidate, VisitEvent

logger = logging.getLogger(__name__)


@contextmanager
def _store_errors(operation: str) -> Iterator[None]:
    try:
        yield
    except DuplicateKeyError as exc:
        msg = f"{operation}: duplicate key"
        raise ConcurrencyConflictError(msg, {"operation": operation}) from exc
    except PyMongoError as exc:
        msg = f"{operation} failed: {exc}"
        raise VisitPersistenceError(msg, {"operation": operation}) from exc


class CandidateRepository(Protocol):
    async def get(self, user_id: str, place_id: str) -> VisitCandidate | None: ...

    async def insert(self, candidate: VisitCandidate) -> None: ...

    async def update_if_unchanged(
        self,
        candidate: VisitCandidate,
        *,
        expected_hits: int,
        expected_last_hit_at: datetime,
    ) -> None: ...

    async def delete(self, candidate_id: str) -> bool: ...

    async def delete_for_pair(self, user_id: str, place_id: str) -> int: ...

    async def find_stale(
        self,
        cutoff: datetime,
        limit: int,
        exclude_ids: list[str] | None = None,
    ) -> list[VisitCandidate]: ...

    async def delete_if_stale(self, candidate_id: str, cutoff: datetime) -> bool: ...

    async def delete_for_place(self, place_id: str) -> int: ...


class VisitRepository(Protocol):
    async def get_open(self, user_id: str, place_id: str) -> VisitEvent | None: ...

    async def insert(self, event: VisitEvent) -> None: ...

    async def touch(self, event_id: str, seen_at: datetime) -> bool: ...

    async def find_stale_open(
        self,
        cutoff: datetime,
        limit: int,
        exclude_ids: list[str] | None = None,
    ) -> list[VisitEvent]: ...

    async def close_if_unchanged(
        self,
        event_id: str,
        expected_last_seen_at: datetime,
    ) -> bool: ...

    async def has_recent_visit(
        self,
        user_id: str,
        place_id: str,
        since: datetime,
        exclude_id: str,
    ) -> bool: ...

    async def detach_place(self, place_id: str) -> int: ...

    async def list_recent(self, user_id: str, limit: int) -> list[VisitEvent]: ...


class MongoCandidateRepository:
    """Candidate store backed by the ``visit_candidates`` collection."""

    def __init__(self, collection: Any = None) -> None:
        self._collection = (
            collection if collection is not None else visit_candidates_collection
        )

    async def get(self, user_id: str, place_id: str) -> VisitCandidate | None:
        with _store_errors("load candidate"):
            doc = await self._collection.find_one(
                {"user_id": user_id, "place_id": place_id},
            )
        return VisitCandidate.from_document(doc) if doc else None

    async def insert(self, candidate: VisitCandidate) -> None:
        with _store_errors("insert candidate"):
            await self._collection.insert_one(candidate.to_document())

    async def update_if_unchanged(
        self,
        candidate: VisitCandidate,
        *,
        expected_hits: int,
        expected_last_hit_at: datetime,
    ) -> None:
        """Write candidate counters only if nobody changed them since they were read."""
        with _store_errors("update candidate"):
            result = await self._collection.update_one(
                {
                    "_id": candidate.id,
                    "consecutive_hits": expected_hits,
                    "last_hit_at": expected_last_hit_at,
                },
                {
                    "$set": {
                        "first_hit_at": candidate.first_hit_at,
                        "last_hit_at": candidate.last_hit_at,
                        "consecutive_hits": candidate.consecutive_hits,
                    },
                },
            )
        if result.matched_count == 0:
            msg = f"Candidate {candidate.id} changed concurrently"
            raise ConcurrencyConflictError(msg, {"candidate_id": candidate.id})

    async def delete(self, candidate_id: str) -> bool:
        with _store_errors("delete candidate"):
            result = await self._collection.delete_one({"_id": candidate_id})
        return result.deleted_count > 0

    async def delete_for_pair(self, user_id: str, place_id: str) -> int:
        with _store_errors("delete candidate"):
            result = await self._collection.delete_many(
                {"user_id": user_id, "place_id": place_id},
            )
        return result.deleted_count

    async def find_stale(
        self,
        cutoff: datetime,
        limit: int,
        exclude_ids: list[str] | None = None,
    ) -> list[VisitCandidate]:
        query: dict[str, Any] = {"last_hit_at": {"$lt": cutoff}}
        if exclude_ids:
            query["_id"] = {"$nin": exclude_ids}
        with _store_errors("find stale candidates"):
            cursor = (
                self._collection.find(query)
                .sort("last_hit_at", pymongo.ASCENDING)
                .limit(limit)
            )
            docs = await cursor.to_list(length=limit)
        return [VisitCandidate.from_document(doc) for doc in docs]

    async def delete_if_stale(self, candidate_id: str, cutoff: datetime) -> bool:
        with _store_errors("purge candidate"):
            result = await self._collection.delete_one(
                {"_id": candidate_id, "last_hit_at": {"$lt": cutoff}},
            )
        return result.deleted_count > 0

    async def delete_for_place(self, place_id: str) -> int:
        with _store_errors("delete place candidates"):
            result = await self._collection.delete_many({"place_id": place_id})
        return result.deleted_count


class MongoVisitRepository:
    """Visit event store backed by the ``visit_events`` collection."""

    def __init__(self, collection: Any = None) -> None:
        self._collection = (
            collection if collection is not None else visit_events_collection
        )

    async def get_open(self, user_id: str, place_id: str) -> VisitEvent | None:
        with _store_errors("load open visit"):
            doc = await self._collection.find_one(
                {
                    "user_id": user_id,
                    "place_id": place_id,
                    "status": VISIT_STATUS_OPEN,
                },
            )
        return VisitEvent.from_document(doc) if doc else None

    async def insert(self, event: VisitEvent) -> None:
        with _store_errors("insert visit"):
            await self._collection.insert_one(event.to_document())

    async def touch(self, event_id: str, seen_at: datetime) -> bool:
        """Extend an open visit. Returns False if it is no longer open."""
        with _store_errors("extend visit"):
            result = await self._collection.update_one(
                {"_id": event_id, "status": VISIT_STATUS_OPEN},
                {"$max": {"last_seen_at": seen_at}},
            )
        return result.matched_count > 0

    async def find_stale_open(
        self,
        cutoff: datetime,
        limit: int,
        exclude_ids: list[str] | None = None,
    ) -> list[VisitEvent]:
        query: dict[str, Any] = {
            "status": VISIT_STATUS_OPEN,
            "last_seen_at": {"$lt": cutoff},
        }
        if exclude_ids:
            query["_id"] = {"$nin": exclude_ids}
        with _store_errors("find stale visits"):
            cursor = (
                self._collection.find(query)
                .sort("last_seen_at", pymongo.ASCENDING)
                .limit(limit)
            )
            docs = await cursor.to_list(length=limit)
        return [VisitEvent.from_document(doc) for doc in docs]

    async def close_if_unchanged(
        self,
        event_id: str,
        expected_last_seen_at: datetime,
    ) -> bool:
        """Close an open visit at its last_seen_at if no ping extended it since."""
        with _store_errors("close visit"):
            result = await self._collection.update_one(
                {
                    "_id": event_id,
                    "status": VISIT_STATUS_OPEN,
                    "last_seen_at": expected_last_seen_at,
                },
                {
                    "$set": {
                        "status": VISIT_STATUS_CLOSED,
                        "ended_at": expected_last_seen_at,
                    },
                },
            )
        return result.modified_count > 0

    async def has_recent_visit(
        self,
        user_id: str,
        place_id: str,
        since: datetime,
        exclude_id: str,
    ) -> bool:
        with _store_errors("check recent visits"):
            doc = await self._collection.find_one(
                {
                    "user_id": user_id,
                    "place_id": place_id,
                    "_id": {"$ne": exclude_id},
                    "last_seen_at": {"$gte": since},
                },
                projection={"_id": 1},
            )
        return doc is not None

    async def detach_place(self, place_id: str) -> int:
        with _store_errors("detach place from visits"):
            result = await self._collection.update_many(
                {"place_id": place_id},
                {"$set": {"place_id": None}},
            )
        return result.modified_count

    async def list_recent(self, user_id: str, limit: int) -> list[VisitEvent]:
        with _store_errors("list visits"):
            cursor = (
                self._collection.find({"user_id": user_id})
                .sort("arrived_at", pymongo.DESCENDING)
                .limit(limit)
            )
            docs = await cursor.to_list(length=limit)
        return [VisitEvent.from_document(doc) for doc in docs]
