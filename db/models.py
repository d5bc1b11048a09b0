"""Beanie ODM document models for MongoDB collections.

The planning documents (Trip, Region, Place) belong to the trip-planning
subsystem; the visit detection core only reads them. Place carries a
denormalized ``user_id`` so the nearest-place query can be restricted to
the owning user with a single compound geospatial index.

The visit state collections (``visit_candidates`` and ``visit_events``)
are not Beanie models: they are written with conditional raw operations
by visits.repositories and indexed by db.indexes.

Usage:
    from db.models import Place

    place = await Place.get(place_id)
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from beanie import Document, Indexed, PydanticObjectId
from pydantic import ConfigDict, field_validator
from pymongo import ASCENDING, GEOSPHERE, IndexModel

from date_utils import parse_timestamp


class Trip(Document):
    """Planned trip owned by a user."""

    user_id: Indexed(str)
    name: str = ""
    created_at: datetime | None = None
    updated_at: datetime | None = None

    class Settings:
        name = "trips"

    model_config = ConfigDict(extra="allow")


class Region(Document):
    """Named grouping of places inside a trip."""

    trip_id: Indexed(PydanticObjectId)
    name: str = ""

    class Settings:
        name = "regions"

    model_config = ConfigDict(extra="allow")


class Place(Document):
    """Planned point of interest with a GeoJSON point location."""

    user_id: str
    trip_id: PydanticObjectId
    region_id: PydanticObjectId
    name: str = ""
    location: dict[str, Any] | None = None
    notes: str | None = None
    icon_name: str | None = None
    marker_color: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @field_validator("created_at", "updated_at", mode="before")
    @classmethod
    def parse_datetime_fields(cls, v: Any) -> datetime | None:
        """Parse datetime fields using the centralized date_utils."""
        if v is None:
            return None
        return parse_timestamp(v)

    class Settings:
        name = "places"
        indexes = [
            IndexModel(
                [("user_id", ASCENDING), ("location", GEOSPHERE)],
                name="places_user_location_2dsphere_idx",
            ),
            IndexModel([("region_id", ASCENDING)], name="places_region_id_idx"),
        ]

    model_config = ConfigDict(extra="allow")


class AppSettings(Document):
    """Application settings document.

    Visit detection thresholds are optional here: a missing value means the
    built-in default from visits.settings.VisitDetectionSettings applies.
    """

    id: str = "app_settings"

    visit_required_hits: int | None = None
    visit_hit_window_minutes: int | None = None
    visit_min_radius_meters: float | None = None
    visit_max_radius_meters: float | None = None
    visit_accuracy_multiplier: float | None = None
    visit_accuracy_reject_meters: float | None = None
    visit_max_search_radius_meters: float | None = None
    visit_candidate_stale_minutes: int | None = None
    visit_end_after_minutes: int | None = None
    visit_notes_snapshot_max_chars: int | None = None
    visit_notification_cooldown_hours: int | None = None
    updated_at: datetime | None = None

    class Settings:
        name = "app_settings"

    model_config = ConfigDict(extra="allow")


ALL_DOCUMENT_MODELS = [
    Trip,
    Region,
    Place,
    AppSettings,
]
