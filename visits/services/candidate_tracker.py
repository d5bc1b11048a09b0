"""Pre-confirmation hit counting per (user, place)."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from visits.models import VisitCandidate
from visits.repositories import CandidateRepository
from visits.settings import VisitDetectionSettings

logger = logging.getLogger(__name__)


class HitOutcome(str, Enum):
    CREATED = "created"
    INCREMENTED = "incremented"
    RESET = "reset"


@dataclass(frozen=True)
class CandidateHit:
    candidate: VisitCandidate
    outcome: HitOutcome


def candidate_stale_cutoff(now: datetime, settings: VisitDetectionSettings) -> datetime:
    """Candidates whose last hit is before this instant are stale."""
    return now - settings.candidate_stale_after


class CandidateTracker:
    """Accumulates inside-radius hits until a place visit is confirmed."""

    def __init__(self, repository: CandidateRepository) -> None:
        self._repository = repository

    async def record_hit(
        self,
        user_id: str,
        place_id: str,
        now: datetime,
        settings: VisitDetectionSettings,
    ) -> CandidateHit:
        """
        Record one inside-radius ping for the pair.

        A hit within ``hit_window`` of the previous one extends the streak.
        A later hit starts a fresh streak: the count, first hit and last hit
        are all reset.

        Raises:
            ConcurrencyConflictError: If another writer created or changed the
                candidate between the read and the write.
        """
        existing = await self._repository.get(user_id, place_id)
        if existing is None:
            candidate = VisitCandidate(
                user_id=user_id,
                place_id=place_id,
                first_hit_at=now,
                last_hit_at=now,
                consecutive_hits=1,
            )
            await self._repository.insert(candidate)
            logger.debug("Created visit candidate for user %s at place %s", user_id, place_id)
            return CandidateHit(candidate, HitOutcome.CREATED)

        if now - existing.last_hit_at <= settings.hit_window:
            updated = existing.model_copy(
                update={
                    "last_hit_at": max(now, existing.last_hit_at),
                    "consecutive_hits": existing.consecutive_hits + 1,
                },
            )
            outcome = HitOutcome.INCREMENTED
        else:
            updated = existing.model_copy(
                update={
                    "first_hit_at": now,
                    "last_hit_at": now,
                    "consecutive_hits": 1,
                },
            )
            outcome = HitOutcome.RESET

        await self._repository.update_if_unchanged(
            updated,
            expected_hits=existing.consecutive_hits,
            expected_last_hit_at=existing.last_hit_at,
        )
        logger.debug(
            "Visit candidate %s %s (hits=%d)",
            updated.id,
            outcome.value,
            updated.consecutive_hits,
        )
        return CandidateHit(updated, outcome)

    @staticmethod
    def is_confirmed(candidate: VisitCandidate, settings: VisitDetectionSettings) -> bool:
        return candidate.consecutive_hits >= settings.required_hits

    @staticmethod
    def is_stale(
        candidate: VisitCandidate,
        now: datetime,
        settings: VisitDetectionSettings,
    ) -> bool:
        return now - candidate.last_hit_at > settings.candidate_stale_after

    async def discard(self, candidate: VisitCandidate) -> None:
        await self._repository.delete(candidate.id)

    async def discard_pair(self, user_id: str, place_id: str) -> int:
        removed = await self._repository.delete_for_pair(user_id, place_id)
        if removed:
            logger.debug(
                "Removed %d lingering candidate(s) for user %s at place %s",
                removed,
                user_id,
                place_id,
            )
        return removed

    async def find_stale(
        self,
        now: datetime,
        settings: VisitDetectionSettings,
        limit: int,
        exclude_ids: list[str] | None = None,
    ) -> list[VisitCandidate]:
        return await self._repository.find_stale(
            candidate_stale_cutoff(now, settings),
            limit,
            exclude_ids,
        )

    async def purge_if_stale(
        self,
        candidate: VisitCandidate,
        now: datetime,
        settings: VisitDetectionSettings,
    ) -> bool:
        """Delete the candidate if it is still stale at write time."""
        if not self.is_stale(candidate, now, settings):
            return False
        return await self._repository.delete_if_stale(
            candidate.id,
            candidate_stale_cutoff(now, settings),
        )

    async def delete_for_place(self, place_id: str) -> int:
        return await self._repository.delete_for_place(place_id)


__all__ = [
    "CandidateHit",
    "CandidateTracker",
    "HitOutcome",
    "candidate_stale_cutoff",
]
