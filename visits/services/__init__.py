"""Visit detection services.

The ``get_*`` helpers return the process-wide engine and sweeper, wired to
MongoDB and Redis. The detection engine must be shared within a process so its
per-key locks serialize pings for the same (user, place).
"""

from __future__ import annotations

from core.service_config import settings_provider
from visits.events import RedisVisitNotifier
from visits.repositories import MongoCandidateRepository, MongoVisitRepository
from visits.services.candidate_tracker import CandidateTracker
from visits.services.cleanup_sweeper import CleanupSweeper, SweepResult
from visits.services.detection_service import (
    PingOutcome,
    VisitDetectionEngine,
    calculate_effective_radius,
)
from visits.services.place_service import PlaceService
from visits.services.spatial_index import MongoPlaceIndex
from visits.services.visit_ledger import VisitLedger


class _Services:
    engine: VisitDetectionEngine | None = None
    sweeper: CleanupSweeper | None = None


def _tracker() -> CandidateTracker:
    return CandidateTracker(MongoCandidateRepository())


def _ledger() -> VisitLedger:
    return VisitLedger(MongoVisitRepository())


def get_detection_engine() -> VisitDetectionEngine:
    if _Services.engine is None:
        _Services.engine = VisitDetectionEngine(
            spatial_index=MongoPlaceIndex(),
            settings_provider=settings_provider,
            tracker=_tracker(),
            ledger=_ledger(),
            notifier=RedisVisitNotifier(),
        )
    return _Services.engine


def get_cleanup_sweeper() -> CleanupSweeper:
    if _Services.sweeper is None:
        _Services.sweeper = CleanupSweeper(
            ledger=_ledger(),
            tracker=_tracker(),
            settings_provider=settings_provider,
            notifier=RedisVisitNotifier(),
        )
    return _Services.sweeper


__all__ = [
    "CandidateTracker",
    "CleanupSweeper",
    "PingOutcome",
    "PlaceService",
    "SweepResult",
    "VisitDetectionEngine",
    "VisitLedger",
    "calculate_effective_radius",
    "get_cleanup_sweeper",
    "get_detection_engine",
]
