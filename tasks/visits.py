"""Visit cleanup task.

Closes open visits that stopped receiving pings and purges stale visit
candidates. Scheduled by Celery beat (see celery_app.py).
"""

from __future__ import annotations

from typing import Any

from celery import shared_task
from celery.utils.log import get_task_logger

from core.async_bridge import run_async_from_sync
from core.exceptions import VisitPersistenceError
from visits.services import get_cleanup_sweeper

logger = get_task_logger(__name__)


async def cleanup_visits_async() -> dict[str, Any]:
    """Async logic for the visit cleanup sweep."""
    result = await get_cleanup_sweeper().run_sweep()
    logger.info(
        "Visit cleanup: closed %d visit(s), purged %d candidate(s), %d failure(s)",
        result.closed_visits,
        result.purged_candidates,
        result.failed_records,
    )
    return {
        "status": "success",
        "message": (
            f"Closed {result.closed_visits} visits, "
            f"purged {result.purged_candidates} candidates."
        ),
        "details": result.to_dict(),
    }


@shared_task(
    bind=True,
    max_retries=3,
    default_retry_delay=60,
    time_limit=600,
    soft_time_limit=540,
    name="tasks.cleanup_visits",
)
def cleanup_visits(self, *_args, **_kwargs):
    """Celery task wrapper for the visit cleanup sweep.

    The sweep is idempotent, so a store outage is retried with backoff.
    """
    try:
        return run_async_from_sync(cleanup_visits_async())
    except VisitPersistenceError as e:
        countdown = int(self.default_retry_delay * (2**self.request.retries))
        logger.warning(
            "Visit cleanup failed on the visit store, retrying in %d seconds: %s",
            countdown,
            e,
        )
        raise self.retry(exc=e, countdown=countdown) from e
