"""Open/closed visit records and the shared closing rule."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from core.exceptions import ConcurrencyConflictError
from visits.models import SOURCE_REALTIME, NearestPlace, VisitEvent
from visits.repositories import VisitRepository
from visits.settings import VisitDetectionSettings

logger = logging.getLogger(__name__)

NOTES_ELLIPSIS = "…"
DEFAULT_RECENT_LIMIT = 50


def truncate_notes(notes: str | None, max_chars: int) -> str | None:
    """Cap notes at ``max_chars``, ending truncated text with an ellipsis."""
    if not notes:
        return notes
    if len(notes) <= max_chars:
        return notes
    if max_chars <= 1:
        return NOTES_ELLIPSIS[:max_chars]
    return notes[: max_chars - 1] + NOTES_ELLIPSIS


def visit_stale_cutoff(now: datetime, settings: VisitDetectionSettings) -> datetime:
    """Open visits last seen before this instant are due to be closed."""
    return now - settings.end_visit_after


def is_stale(event: VisitEvent, now: datetime, settings: VisitDetectionSettings) -> bool:
    """
    Closing rule: an open visit ends once no ping has extended it for longer
    than ``end_visit_after_minutes``.
    """
    return event.is_open and now - event.last_seen_at > settings.end_visit_after


class VisitLedger:
    """Opens, extends and closes visit events."""

    def __init__(self, repository: VisitRepository) -> None:
        self._repository = repository

    async def get_open(self, user_id: str, place_id: str) -> VisitEvent | None:
        return await self._repository.get_open(user_id, place_id)

    async def extend(self, event: VisitEvent, now: datetime) -> None:
        """
        Bump ``last_seen_at`` of an open visit.

        Raises:
            ConcurrencyConflictError: If the visit was closed since it was read.
        """
        if not await self._repository.touch(event.id, now):
            msg = f"Visit {event.id} is no longer open"
            raise ConcurrencyConflictError(msg, {"visit_id": event.id})
        logger.debug("Extended visit %s to %s", event.id, now.isoformat())

    @staticmethod
    def build_visit(
        user_id: str,
        place: NearestPlace,
        arrived_at: datetime,
        now: datetime,
        settings: VisitDetectionSettings,
    ) -> VisitEvent:
        """New open visit with snapshots of the place, region and trip."""
        return VisitEvent(
            user_id=user_id,
            place_id=place.place_id,
            arrived_at=arrived_at,
            last_seen_at=now,
            trip_id_snapshot=place.trip_id,
            trip_name_snapshot=place.trip_name,
            region_name_snapshot=place.region_name,
            place_name_snapshot=place.place_name,
            place_location_snapshot=place.location.to_geojson(),
            icon_name_snapshot=place.icon_name,
            marker_color_snapshot=place.marker_color,
            notes_snapshot=truncate_notes(place.notes, settings.notes_snapshot_max_chars),
            source=SOURCE_REALTIME,
            created_at=now,
        )

    async def open_visit(self, event: VisitEvent) -> None:
        """
        Persist a new open visit.

        Raises:
            ConcurrencyConflictError: If an open visit already exists for the pair.
        """
        await self._repository.insert(event)
        logger.info(
            "Visit %s started for user %s at %s",
            event.id,
            event.user_id,
            event.place_name_snapshot or event.place_id,
        )

    async def find_stale(
        self,
        now: datetime,
        settings: VisitDetectionSettings,
        limit: int,
        exclude_ids: list[str] | None = None,
    ) -> list[VisitEvent]:
        return await self._repository.find_stale_open(
            visit_stale_cutoff(now, settings),
            limit,
            exclude_ids,
        )

    async def close_if_stale(
        self,
        event: VisitEvent,
        now: datetime,
        settings: VisitDetectionSettings,
    ) -> VisitEvent | None:
        """
        Close the visit at its ``last_seen_at`` if the closing rule applies.

        Returns:
            The closed visit, or None when it is not stale or was extended or
            closed concurrently.
        """
        if not is_stale(event, now, settings):
            return None
        if not await self._repository.close_if_unchanged(event.id, event.last_seen_at):
            return None
        closed = event.closed(event.last_seen_at)
        logger.debug("Closed visit %s at %s", closed.id, closed.ended_at.isoformat())
        return closed

    async def should_notify_start(
        self,
        event: VisitEvent,
        settings: VisitDetectionSettings,
    ) -> bool:
        """
        Whether a visit-started notification should be sent for a new visit.

        Negative cooldown disables the notification, zero always sends it and
        a positive cooldown suppresses it when another visit to the same place
        was seen within the cooldown window.
        """
        cooldown = settings.notification_cooldown_hours
        if cooldown < 0:
            return False
        if cooldown == 0 or event.place_id is None:
            return True
        since = event.last_seen_at - timedelta(hours=cooldown)
        recent = await self._repository.has_recent_visit(
            event.user_id,
            event.place_id,
            since,
            exclude_id=event.id,
        )
        return not recent

    async def detach_place(self, place_id: str) -> int:
        """Clear the place reference on all visits to a deleted place."""
        return await self._repository.detach_place(place_id)

    async def list_recent(
        self,
        user_id: str,
        limit: int = DEFAULT_RECENT_LIMIT,
    ) -> list[VisitEvent]:
        return await self._repository.list_recent(user_id, limit)
