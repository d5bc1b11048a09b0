"""Domain models for visit detection state.

VisitCandidate and VisitEvent are stored as plain documents in the
``visit_candidates`` and ``visit_events`` collections. ``to_document`` and
``from_document`` map the ``id`` field to Mongo's ``_id``.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from core.spatial import GeometryService
from date_utils import ensure_utc, minutes_between
from db.indexes import VISIT_STATUS_CLOSED, VISIT_STATUS_OPEN

SOURCE_REALTIME = "realtime"


def new_id() -> str:
    return uuid.uuid4().hex


class _StoredModel(BaseModel):
    """Base for models persisted as raw documents keyed by ``_id``."""

    model_config = ConfigDict(extra="ignore")

    id: str = Field(default_factory=new_id)

    def to_document(self) -> dict[str, Any]:
        doc = self.model_dump(exclude={"id"})
        doc["_id"] = self.id
        return doc

    @classmethod
    def from_document(cls, doc: dict[str, Any]):
        data = dict(doc)
        if "_id" in data:
            data["id"] = str(data.pop("_id"))
        return cls.model_validate(data)


class GeoPoint(BaseModel):
    """WGS84 latitude/longitude pair."""

    model_config = ConfigDict(frozen=True)

    lat: float
    lon: float

    def is_valid(self) -> bool:
        valid, _ = GeometryService.validate_coordinate_pair([self.lon, self.lat])
        return valid

    def to_geojson(self) -> dict[str, Any]:
        return GeometryService.point_geojson(self.lon, self.lat)

    @classmethod
    def from_geojson(cls, value: Any) -> GeoPoint | None:
        coords = GeometryService.point_coordinates(value)
        if coords is None:
            return None
        return cls(lon=coords[0], lat=coords[1])


class NearestPlace(BaseModel):
    """Result of a nearest-place lookup, with the data needed for snapshots."""

    place_id: str
    place_name: str = ""
    location: GeoPoint
    notes: str | None = None
    icon_name: str | None = None
    marker_color: str | None = None
    region_name: str = ""
    trip_id: str | None = None
    trip_name: str = ""
    distance_meters: float


class VisitCandidate(_StoredModel):
    """Unconfirmed evidence that a user is at a place."""

    user_id: str
    place_id: str
    first_hit_at: datetime
    last_hit_at: datetime
    consecutive_hits: int = Field(default=1, ge=1)

    @field_validator("first_hit_at", "last_hit_at", mode="after")
    @classmethod
    def _as_utc(cls, v: datetime) -> datetime:
        return ensure_utc(v)


class VisitEvent(_StoredModel):
    """Confirmed visit with snapshots of the place data at creation time.

    ``place_id`` is a weak reference: it becomes None when the place is
    deleted, while the ``*_snapshot`` fields keep their values.
    """

    user_id: str
    place_id: str | None = None
    status: str = VISIT_STATUS_OPEN
    arrived_at: datetime
    last_seen_at: datetime
    ended_at: datetime | None = None

    trip_id_snapshot: str | None = None
    trip_name_snapshot: str = ""
    region_name_snapshot: str = ""
    place_name_snapshot: str = ""
    place_location_snapshot: dict[str, Any] | None = None
    icon_name_snapshot: str | None = None
    marker_color_snapshot: str | None = None
    notes_snapshot: str | None = None

    source: str = SOURCE_REALTIME
    created_at: datetime | None = None

    @field_validator("arrived_at", "last_seen_at", "ended_at", "created_at", mode="after")
    @classmethod
    def _as_utc(cls, v: datetime | None) -> datetime | None:
        return ensure_utc(v)

    @property
    def is_open(self) -> bool:
        return self.ended_at is None

    @property
    def observed_dwell_minutes(self) -> float | None:
        """Minutes between arrival and the last observed ping, None if not positive."""
        if self.last_seen_at <= self.arrived_at:
            return None
        return minutes_between(self.arrived_at, self.last_seen_at)

    @property
    def location(self) -> GeoPoint | None:
        return GeoPoint.from_geojson(self.place_location_snapshot)

    def closed(self, ended_at: datetime) -> VisitEvent:
        """Copy of this event closed at ``ended_at``."""
        return self.model_copy(
            update={"ended_at": ended_at, "status": VISIT_STATUS_CLOSED},
        )
