"""
Periodic cleanup of visit state that no ping will touch again.

The sweep closes open visits that have not been extended for longer than
``end_visit_after_minutes`` and purges candidates whose last hit is older
than ``candidate_stale_minutes``. Every transition is conditional on the
record still being stale when written, so a ping racing the sweep wins and
re-running the sweep converges on the same state.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any

from config import VISIT_SWEEP_BATCH_SIZE
from core.service_config import SettingsProvider
from date_utils import ensure_utc, get_current_utc_time
from visits.events import VisitEndedEvent, VisitNotifier
from visits.models import VisitEvent
from visits.services.candidate_tracker import CandidateTracker
from visits.services.visit_ledger import VisitLedger
from visits.settings import VisitDetectionSettings

logger = logging.getLogger(__name__)


@dataclass
class SweepResult:
    closed_visits: int = 0
    purged_candidates: int = 0
    failed_records: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class CleanupSweeper:
    """Closes stale visits and purges stale candidates in batches."""

    def __init__(
        self,
        *,
        ledger: VisitLedger,
        tracker: CandidateTracker,
        settings_provider: SettingsProvider,
        notifier: VisitNotifier | None = None,
        batch_size: int = VISIT_SWEEP_BATCH_SIZE,
    ) -> None:
        if batch_size < 1:
            msg = "batch_size must be positive"
            raise ValueError(msg)
        self._ledger = ledger
        self._tracker = tracker
        self._settings_provider = settings_provider
        self._notifier = notifier
        self._batch_size = batch_size

    async def run_sweep(self, now: datetime | None = None) -> SweepResult:
        """
        Run both cleanup passes once.

        Cancellation takes effect between batches; a batch that has started
        is finished first.

        Returns:
            Counts of closed visits, purged candidates and records that failed
            and were skipped.
        """
        now = ensure_utc(now) or get_current_utc_time()
        settings = await self._settings_provider.current()
        result = SweepResult()

        await self._close_stale_visits(now, settings, result)
        await self._purge_stale_candidates(now, settings, result)

        logger.info(
            "Visit sweep complete: closed %d visit(s), purged %d candidate(s), "
            "%d failure(s)",
            result.closed_visits,
            result.purged_candidates,
            result.failed_records,
        )
        return result

    async def _close_stale_visits(
        self,
        now: datetime,
        settings: VisitDetectionSettings,
        result: SweepResult,
    ) -> None:
        # Records that failed or lost a race are not fetched again this run
        skipped: list[str] = []
        while True:
            batch = await self._ledger.find_stale(
                now,
                settings,
                self._batch_size,
                exclude_ids=skipped,
            )
            if not batch:
                return
            await asyncio.shield(
                self._close_batch(batch, now, settings, result, skipped),
            )
            if len(batch) < self._batch_size:
                return

    async def _close_batch(
        self,
        batch: list[VisitEvent],
        now: datetime,
        settings: VisitDetectionSettings,
        result: SweepResult,
        skipped: list[str],
    ) -> None:
        closed_events: list[VisitEvent] = []
        for event in batch:
            try:
                closed = await self._ledger.close_if_stale(event, now, settings)
            except Exception:
                logger.exception("Failed to close stale visit %s", event.id)
                result.failed_records += 1
                skipped.append(event.id)
                continue
            if closed is None:
                skipped.append(event.id)
                continue
            result.closed_visits += 1
            closed_events.append(closed)
        # Ended events go out only after every close in the batch is written
        for closed in closed_events:
            await self._notify_ended(closed)

    async def _purge_stale_candidates(
        self,
        now: datetime,
        settings: VisitDetectionSettings,
        result: SweepResult,
    ) -> None:
        skipped: list[str] = []
        while True:
            batch = await self._tracker.find_stale(
                now,
                settings,
                self._batch_size,
                exclude_ids=skipped,
            )
            if not batch:
                return
            for candidate in batch:
                try:
                    purged = await self._tracker.purge_if_stale(candidate, now, settings)
                except Exception:
                    logger.exception("Failed to purge visit candidate %s", candidate.id)
                    result.failed_records += 1
                    skipped.append(candidate.id)
                    continue
                if purged:
                    result.purged_candidates += 1
                else:
                    skipped.append(candidate.id)
            if len(batch) < self._batch_size:
                return
            await asyncio.sleep(0)

    async def _notify_ended(self, event: VisitEvent) -> None:
        if self._notifier is None:
            return
        try:
            await self._notifier.publish(VisitEndedEvent.from_visit(event))
        except Exception:
            logger.exception("Failed to notify end of visit %s", event.id)
