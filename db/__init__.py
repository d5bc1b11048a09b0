"""Database package for MongoDB operations using Beanie ODM.

Modules:
    manager: DatabaseManager singleton for connection handling
    models: Beanie Document models for the planning collections
    collections: Collection proxies for the visit state collections
    indexes: Index definitions and initialization

Usage:
    from db import db_manager, init_database

    await init_database()
    place = await Place.get(place_id)
"""

from __future__ import annotations

from db.collections import (
    CollectionProxy,
    get_collection,
    visit_candidates_collection,
    visit_events_collection,
)
from db.indexes import ensure_visit_indexes, init_database
from db.manager import DatabaseManager, db_manager
from db.models import ALL_DOCUMENT_MODELS, AppSettings, Place, Region, Trip

__all__ = [
    "ALL_DOCUMENT_MODELS",
    "AppSettings",
    "CollectionProxy",
    "DatabaseManager",
    "Place",
    "Region",
    "Trip",
    "db_manager",
    "ensure_visit_indexes",
    "get_collection",
    "init_database",
    "visit_candidates_collection",
    "visit_events_collection",
]
