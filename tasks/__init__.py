"""
Background tasks implementation using Celery.

Tasks are organized into modules by function:
- visits: periodic visit cleanup sweep
"""

# Import task modules so Celery registers @shared_task decorators on startup.
from tasks.visits import cleanup_visits

__all__ = [
    "cleanup_visits",
]
