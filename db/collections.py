"""Collection proxy and collection definitions module.

Provides CollectionProxy for lazy collection access and defines the
visit state collection proxies.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from pymongo.asynchronous.collection import AsyncCollection

from db.manager import db_manager

VISIT_CANDIDATES_COLLECTION = "visit_candidates"
VISIT_EVENTS_COLLECTION = "visit_events"


class CollectionProxy:
    """Proxy that always resolves the current collection from the db manager.

    Collection references stay valid across event loop changes and client
    reconnects.

    Example:
        events = CollectionProxy("visit_events")
        await events.find_one({"_id": visit_id})
    """

    def __init__(self, name: str) -> None:
        self._name = name

    @property
    def _collection(self) -> AsyncCollection:
        return db_manager.get_collection(self._name)

    @property
    def name(self) -> str:
        return self._name

    def __getattr__(self, attr: str) -> Any:
        """Delegate attribute access to the underlying collection."""
        return getattr(self._collection, attr)

    def __repr__(self) -> str:
        return f"<CollectionProxy name={self._name}>"


def get_collection(name: str) -> CollectionProxy:
    """Create a collection proxy for the named collection."""
    return CollectionProxy(name)


visit_candidates_collection = get_collection(VISIT_CANDIDATES_COLLECTION)
visit_events_collection = get_collection(VISIT_EVENTS_COLLECTION)
