"""
Visit detection for incoming location pings.

Each ping is matched against the nearest planned place of the user. Pings
inside the effective radius either extend an open visit or count towards a
candidate, which is promoted to a visit once enough consecutive hits arrive
within the hit window.
"""

from __future__ import annotations

import asyncio
import logging
import math
from datetime import datetime
from enum import Enum

from tenacity import (
    AsyncRetrying,
    RetryError,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
)

from core.exceptions import ConcurrencyConflictError
from core.service_config import SettingsProvider
from core.spatial import clamp
from date_utils import ensure_utc, get_current_utc_time
from visits.events import VisitNotifier, VisitStartedEvent
from visits.models import GeoPoint, NearestPlace, VisitCandidate, VisitEvent
from visits.services.candidate_tracker import CandidateTracker
from visits.services.locks import KeyedLocks
from visits.services.spatial_index import SpatialIndex
from visits.services.visit_ledger import VisitLedger
from visits.settings import VisitDetectionSettings

logger = logging.getLogger(__name__)

MAX_CONFLICT_ATTEMPTS = 3


class PingOutcome(str, Enum):
    INVALID_LOCATION = "invalid_location"
    LOW_ACCURACY = "low_accuracy"
    NO_PLACE_NEARBY = "no_place_nearby"
    VISIT_EXTENDED = "visit_extended"
    CANDIDATE_RECORDED = "candidate_recorded"
    VISIT_STARTED = "visit_started"
    CONFLICT_DROPPED = "conflict_dropped"


def normalize_accuracy(accuracy_meters: float | None) -> float | None:
    """Return a usable accuracy in meters, or None when unknown or invalid."""
    if accuracy_meters is None:
        return None
    try:
        value = float(accuracy_meters)
    except (TypeError, ValueError):
        return None
    if math.isnan(value) or math.isinf(value) or value < 0:
        return None
    return value


def calculate_effective_radius(
    accuracy_meters: float | None,
    settings: VisitDetectionSettings,
) -> float:
    """
    Radius within which a ping counts as being at a place.

    Scales with reported GPS accuracy and is clamped to the configured
    bounds; unknown accuracy uses the minimum radius.
    """
    accuracy = normalize_accuracy(accuracy_meters)
    if accuracy is None:
        return settings.min_radius_meters
    radius = max(settings.min_radius_meters, accuracy * settings.accuracy_multiplier)
    return clamp(radius, settings.min_radius_meters, settings.max_radius_meters)


class VisitDetectionEngine:
    """Turns location pings into candidates and visit events."""

    def __init__(
        self,
        *,
        spatial_index: SpatialIndex,
        settings_provider: SettingsProvider,
        tracker: CandidateTracker,
        ledger: VisitLedger,
        notifier: VisitNotifier | None = None,
    ) -> None:
        self._spatial_index = spatial_index
        self._settings_provider = settings_provider
        self._tracker = tracker
        self._ledger = ledger
        self._notifier = notifier
        self._locks = KeyedLocks()

    async def process_ping(
        self,
        user_id: str,
        location: GeoPoint,
        accuracy_meters: float | None = None,
        now: datetime | None = None,
    ) -> PingOutcome:
        """
        Process one location ping for a user.

        Args:
            user_id: Owner of the ping.
            location: Reported position.
            accuracy_meters: Reported horizontal accuracy, None if unknown.
            now: Ping timestamp, defaults to the current UTC time.

        Returns:
            What the ping did. Rejected pings are no-ops, not errors.

        Raises:
            VisitPersistenceError: If the visit store is unavailable.
        """
        now = ensure_utc(now) or get_current_utc_time()

        if not location.is_valid():
            logger.warning(
                "Ignoring ping with invalid location for user %s: %s",
                user_id,
                location,
            )
            return PingOutcome.INVALID_LOCATION

        settings = await self._settings_provider.current()
        accuracy = normalize_accuracy(accuracy_meters)

        if (
            settings.accuracy_rejection_enabled
            and accuracy is not None
            and accuracy > settings.accuracy_reject_meters
        ):
            logger.debug(
                "Ignoring ping for user %s: accuracy %.1fm exceeds %.1fm",
                user_id,
                accuracy,
                settings.accuracy_reject_meters,
            )
            return PingOutcome.LOW_ACCURACY

        radius = calculate_effective_radius(accuracy, settings)
        place = await self._spatial_index.find_nearest_place(
            user_id,
            location,
            settings.max_search_radius_meters,
        )
        if place is None or place.distance_meters > radius:
            return PingOutcome.NO_PLACE_NEARBY

        started: VisitEvent | None = None
        async with self._locks.hold((user_id, place.place_id)):
            try:
                async for attempt in AsyncRetrying(
                    stop=stop_after_attempt(MAX_CONFLICT_ATTEMPTS),
                    retry=retry_if_exception_type(ConcurrencyConflictError),
                    before_sleep=before_sleep_log(logger, logging.DEBUG),
                ):
                    with attempt:
                        outcome, started = await self._apply_hit(
                            user_id,
                            place,
                            now,
                            settings,
                        )
            except RetryError:
                logger.warning(
                    "Dropping ping for user %s at place %s after %d conflicting attempts",
                    user_id,
                    place.place_id,
                    MAX_CONFLICT_ATTEMPTS,
                )
                return PingOutcome.CONFLICT_DROPPED

        if started is not None:
            await self._notify_started(started, settings)
        return outcome

    async def _apply_hit(
        self,
        user_id: str,
        place: NearestPlace,
        now: datetime,
        settings: VisitDetectionSettings,
    ) -> tuple[PingOutcome, VisitEvent | None]:
        open_visit = await self._ledger.get_open(user_id, place.place_id)
        if open_visit is not None:
            await self._ledger.extend(open_visit, now)
            await self._tracker.discard_pair(user_id, place.place_id)
            return PingOutcome.VISIT_EXTENDED, None

        hit = await self._tracker.record_hit(user_id, place.place_id, now, settings)
        if not self._tracker.is_confirmed(hit.candidate, settings):
            return PingOutcome.CANDIDATE_RECORDED, None

        visit = self._ledger.build_visit(
            user_id,
            place,
            hit.candidate.first_hit_at,
            now,
            settings,
        )
        # Completes even if the caller is cancelled mid-commit
        await asyncio.shield(self._promote(hit.candidate, visit))
        return PingOutcome.VISIT_STARTED, visit

    async def _promote(self, candidate: VisitCandidate, visit: VisitEvent) -> None:
        await self._ledger.open_visit(visit)
        await self._tracker.discard(candidate)

    async def _notify_started(
        self,
        visit: VisitEvent,
        settings: VisitDetectionSettings,
    ) -> None:
        if self._notifier is None:
            return
        try:
            if not await self._ledger.should_notify_start(visit, settings):
                logger.debug("Visit-started notification suppressed for %s", visit.id)
                return
            await self._notifier.publish(VisitStartedEvent.from_visit(visit))
        except Exception:
            logger.exception("Failed to notify start of visit %s", visit.id)
