"""Place deletion and its effect on visit state."""

from __future__ import annotations

import logging
from typing import Any

from beanie import PydanticObjectId
from bson.errors import InvalidId

from core.exceptions import ValidationError
from db.models import Place
from visits.services.candidate_tracker import CandidateTracker
from visits.services.visit_ledger import VisitLedger

logger = logging.getLogger(__name__)


class PlaceService:
    """Service class for place operations that touch visit state."""

    def __init__(self, *, ledger: VisitLedger, tracker: CandidateTracker) -> None:
        self._ledger = ledger
        self._tracker = tracker

    async def delete_place(self, place_id: str) -> dict[str, Any]:
        """
        Delete a place.

        Visits to the place keep their snapshots and lose their place
        reference; pending candidates for the place are removed.

        Args:
            place_id: Place ID

        Returns:
            Summary with ``deleted``, ``visits_detached`` and
            ``candidates_removed``.

        Raises:
            ValidationError: If the place ID is malformed.
        """
        try:
            object_id = PydanticObjectId(place_id)
        except (InvalidId, TypeError) as e:
            msg = f"Invalid place ID: {place_id}"
            raise ValidationError(msg) from e

        place = await Place.get(object_id)
        if place is None:
            logger.debug("Place %s not found, cleaning up visit state only", place_id)
        else:
            await place.delete()

        detached = await self._ledger.detach_place(place_id)
        removed = await self._tracker.delete_for_place(place_id)
        logger.info(
            "Deleted place %s: detached %d visit(s), removed %d candidate(s)",
            place_id,
            detached,
            removed,
        )
        return {
            "deleted": place is not None,
            "visits_detached": detached,
            "candidates_removed": removed,
        }
