"""Celery application configuration for place visit detection.

This module sets up the Celery application instance with Redis as the message
broker and result backend, and configures Celery Beat to run the visit
cleanup sweep.

**Important Security Note:** Celery workers should NOT be run with superuser
(root) privileges. Use the `--uid` option when starting Celery workers to
specify a different user.
"""

import asyncio
import os
from datetime import timedelta

from celery import Celery, signals
from celery.signals import worker_process_init, worker_process_shutdown
from celery.utils.log import get_task_logger
from kombu import Queue

from config import VISIT_SWEEP_INTERVAL_MINUTES, get_redis_url
from core.async_bridge import set_worker_loop, shutdown_worker_loop
from db import init_database

logger = get_task_logger(__name__)

REDIS_URL = get_redis_url()

logger.info(
    "Configuring Celery with broker: %s",
    (REDIS_URL.split("@")[-1] if "@" in REDIS_URL else REDIS_URL),
)

task_queues = [
    Queue("default", routing_key="default"),
    Queue("low_priority", routing_key="low_priority"),
]

app = Celery(
    "place_visits",
    broker=REDIS_URL,
    backend=REDIS_URL,
    include=["tasks"],
)

app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_queues=task_queues,
    task_default_queue="default",
    task_default_exchange="tasks",
    task_default_routing_key="default",
    worker_concurrency=int(os.getenv("CELERY_WORKER_CONCURRENCY", "2")),
    worker_pool=os.getenv("CELERY_WORKER_POOL", "prefork"),
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_prefetch_multiplier=1,
    result_expires=3600,
    broker_connection_retry=True,
    broker_connection_retry_on_startup=True,
    broker_connection_max_retries=10,
    broker_connection_timeout=30,
    beat_schedule={
        "cleanup_visits": {
            "task": "tasks.cleanup_visits",
            "schedule": timedelta(minutes=VISIT_SWEEP_INTERVAL_MINUTES),
            "options": {
                "queue": "low_priority",
                # A missed sweep is covered by the next one
                "expires": VISIT_SWEEP_INTERVAL_MINUTES * 60,
            },
        },
    },
    worker_send_task_events=True,
)


@signals.task_failure.connect
def task_failure_handler(
    sender=None,
    task_id=None,
    exception=None,
    **kwargs,
):
    task_name = sender.name if sender else "unknown"
    logger.error(
        "Task %s (%s) failed: %s",
        task_name,
        task_id,
        exception,
        exc_info=True,
    )


@signals.beat_init.connect
def beat_init_handler(**kwargs):
    logger.info(
        "Celery beat initialized; visit cleanup runs every %d minute(s).",
        VISIT_SWEEP_INTERVAL_MINUTES,
    )


@worker_process_init.connect(weak=False)
def init_worker(**kwargs):
    """Create the worker event loop and initialize the database for it."""
    logger.info("Initializing Celery worker process...")
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    set_worker_loop(loop)
    try:
        loop.run_until_complete(init_database())
    except Exception as e:
        logger.critical(
            "CRITICAL ERROR during worker initialization: %s",
            e,
            exc_info=True,
        )
        msg = f"Worker initialization failed critically: {e}"
        raise RuntimeError(msg) from e
    finally:
        asyncio.set_event_loop(None)
    logger.info("Worker process initialization complete.")


@worker_process_shutdown.connect(weak=False)
def shutdown_worker(**kwargs):
    shutdown_worker_loop()
