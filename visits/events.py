"""
Visit lifecycle notifications.

Visit-started and visit-ended events are published as camelCase JSON to the
Redis channel ``user_visits:{user_id}``. Publishing is best-effort: it runs
after the state change has been written and a failure is logged and
reported as ``False``, never raised.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Literal, Protocol

from pydantic import BaseModel, ConfigDict, Field

from config import VISIT_CHANNEL_PREFIX
from core.redis import get_shared_redis
from visits.models import VisitEvent

logger = logging.getLogger(__name__)


class _VisitNotification(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    visit_id: str = Field(alias="visitId")
    user_id: str = Field(alias="userId")
    place_id: str | None = Field(default=None, alias="placeId")

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True)


class VisitStartedEvent(_VisitNotification):
    type: Literal["visit_started"] = "visit_started"
    trip_id: str | None = Field(default=None, alias="tripId")
    trip_name: str = Field(default="", alias="tripName")
    place_name: str = Field(default="", alias="placeName")
    region_name: str = Field(default="", alias="regionName")
    arrived_at: datetime = Field(alias="arrivedAt")
    lat: float | None = None
    lon: float | None = None
    icon_hint: str | None = Field(default=None, alias="iconHint")
    color_hint: str | None = Field(default=None, alias="colorHint")

    @classmethod
    def from_visit(cls, visit: VisitEvent) -> VisitStartedEvent:
        location = visit.location
        return cls(
            visit_id=visit.id,
            user_id=visit.user_id,
            place_id=visit.place_id,
            trip_id=visit.trip_id_snapshot,
            trip_name=visit.trip_name_snapshot,
            place_name=visit.place_name_snapshot,
            region_name=visit.region_name_snapshot,
            arrived_at=visit.arrived_at,
            lat=location.lat if location else None,
            lon=location.lon if location else None,
            icon_hint=visit.icon_name_snapshot,
            color_hint=visit.marker_color_snapshot,
        )


class VisitEndedEvent(_VisitNotification):
    type: Literal["visit_ended"] = "visit_ended"
    ended_at: datetime = Field(alias="endedAt")
    dwell_minutes: float = Field(default=0.0, alias="dwellMinutes")

    @classmethod
    def from_visit(cls, visit: VisitEvent) -> VisitEndedEvent:
        if visit.ended_at is None:
            msg = f"Visit {visit.id} is still open"
            raise ValueError(msg)
        return cls(
            visit_id=visit.id,
            user_id=visit.user_id,
            place_id=visit.place_id,
            ended_at=visit.ended_at,
            dwell_minutes=round(visit.observed_dwell_minutes or 0.0, 2),
        )


VisitNotification = VisitStartedEvent | VisitEndedEvent


class VisitNotifier(Protocol):
    async def publish(self, event: VisitNotification) -> bool: ...


def visit_channel(user_id: str) -> str:
    return f"{VISIT_CHANNEL_PREFIX}:{user_id}"


class RedisVisitNotifier:
    """Publishes visit notifications over Redis Pub/Sub."""

    async def publish(self, event: VisitNotification) -> bool:
        """
        Publish a visit notification to the user's channel.

        Returns:
            True if published successfully, False otherwise.
        """
        try:
            client = await get_shared_redis()
            subscribers = await client.publish(
                visit_channel(event.user_id),
                event.to_json(),
            )
            logger.debug(
                "Published %s for visit %s to %d subscriber(s)",
                event.type,
                event.visit_id,
                subscribers,
            )
        except Exception:
            logger.exception(
                "Failed to publish %s for visit %s",
                event.type,
                event.visit_id,
            )
            return False
        else:
            return True
