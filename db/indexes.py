"""Database index definitions and initialization.

Provides the visit state index definitions and creates them with proper
handling of conflicts and duplicates. The unique indexes are the store-level
backstop for the at-most-one rules: one candidate per (user, place) and one
open visit per (user, place).
"""

from __future__ import annotations

import logging

import pymongo
from pymongo import IndexModel

from db.collections import VISIT_CANDIDATES_COLLECTION, VISIT_EVENTS_COLLECTION
from db.manager import db_manager

logger = logging.getLogger(__name__)

VISIT_STATUS_OPEN = "open"
VISIT_STATUS_CLOSED = "closed"

CANDIDATE_USER_PLACE_INDEX = "visit_candidates_user_place_unique_idx"
OPEN_VISIT_PER_PLACE_INDEX = "visit_events_one_open_per_place_idx"


# ============================================================================
# Visit Candidate Indexes
# ============================================================================

VISIT_CANDIDATE_INDEXES: list[IndexModel] = [
    IndexModel(
        [("user_id", pymongo.ASCENDING), ("place_id", pymongo.ASCENDING)],
        name=CANDIDATE_USER_PLACE_INDEX,
        unique=True,
    ),
    IndexModel(
        [("last_hit_at", pymongo.ASCENDING)],
        name="visit_candidates_last_hit_idx",
    ),
    IndexModel(
        [("place_id", pymongo.ASCENDING)],
        name="visit_candidates_place_idx",
    ),
]


# ============================================================================
# Visit Event Indexes
# ============================================================================

VISIT_EVENT_INDEXES: list[IndexModel] = [
    IndexModel(
        [("user_id", pymongo.ASCENDING), ("place_id", pymongo.ASCENDING)],
        name=OPEN_VISIT_PER_PLACE_INDEX,
        unique=True,
        # Detached events (place_id null) are excluded from the guard
        partialFilterExpression={
            "status": VISIT_STATUS_OPEN,
            "place_id": {"$type": "string"},
        },
    ),
    IndexModel(
        [("status", pymongo.ASCENDING), ("last_seen_at", pymongo.ASCENDING)],
        name="visit_events_status_last_seen_idx",
    ),
    IndexModel(
        [("user_id", pymongo.ASCENDING), ("arrived_at", pymongo.DESCENDING)],
        name="visit_events_user_arrived_idx",
    ),
    IndexModel(
        [
            ("user_id", pymongo.ASCENDING),
            ("place_id", pymongo.ASCENDING),
            ("last_seen_at", pymongo.DESCENDING),
        ],
        name="visit_events_user_place_last_seen_idx",
    ),
    IndexModel(
        [("place_id", pymongo.ASCENDING)],
        name="visit_events_place_idx",
    ),
]


async def _ensure_indexes(collection_name: str, indexes: list[IndexModel]) -> None:
    for index in indexes:
        document = dict(index.document)
        keys = list(document.pop("key").items())
        await db_manager.safe_create_index(collection_name, keys, **document)


async def ensure_visit_indexes() -> None:
    """Ensure indexes for the visit candidate and visit event collections."""
    logger.debug("Ensuring visit state indexes...")
    try:
        await _ensure_indexes(VISIT_CANDIDATES_COLLECTION, VISIT_CANDIDATE_INDEXES)
        await _ensure_indexes(VISIT_EVENTS_COLLECTION, VISIT_EVENT_INDEXES)
        logger.info("Visit state indexes ensured/created successfully")
    except Exception as e:
        logger.error("Error creating visit state indexes: %s", str(e))


async def init_database() -> None:
    """Initialize Beanie and all visit state indexes."""
    logger.info("Initializing database...")
    await db_manager.init_beanie()
    await ensure_visit_indexes()
    logger.info("Database initialization complete.")
