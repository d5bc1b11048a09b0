"""Nearest-place lookups over the user's planned places."""

from __future__ import annotations

import logging
from typing import Any, Protocol

from db.models import Place
from visits.models import GeoPoint, NearestPlace

logger = logging.getLogger(__name__)


class SpatialIndex(Protocol):
    async def find_nearest_place(
        self,
        user_id: str,
        location: GeoPoint,
        max_radius_meters: float,
    ) -> NearestPlace | None: ...


def build_nearest_place_pipeline(
    user_id: str,
    location: GeoPoint,
    max_radius_meters: float,
) -> list[dict[str, Any]]:
    """
    Aggregation returning the single nearest place of a user, joined with
    its region and trip.

    $geoNear must be the first stage and uses the
    places_user_location_2dsphere_idx index.
    """
    return [
        {
            "$geoNear": {
                "near": location.to_geojson(),
                "key": "location",
                "distanceField": "distance_meters",
                "maxDistance": float(max_radius_meters),
                "spherical": True,
                "query": {"user_id": user_id},
            },
        },
        {"$limit": 1},
        {
            "$lookup": {
                "from": "regions",
                "localField": "region_id",
                "foreignField": "_id",
                "as": "region",
            },
        },
        {
            "$lookup": {
                "from": "trips",
                "localField": "trip_id",
                "foreignField": "_id",
                "as": "trip",
            },
        },
        {"$unwind": {"path": "$region", "preserveNullAndEmptyArrays": True}},
        {"$unwind": {"path": "$trip", "preserveNullAndEmptyArrays": True}},
    ]


def nearest_place_from_document(doc: dict[str, Any]) -> NearestPlace | None:
    location = GeoPoint.from_geojson(doc.get("location"))
    if location is None:
        logger.warning("Place %s has no valid point location", doc.get("_id"))
        return None
    region = doc.get("region") or {}
    trip = doc.get("trip") or {}
    trip_id = doc.get("trip_id")
    return NearestPlace(
        place_id=str(doc["_id"]),
        place_name=doc.get("name") or "",
        location=location,
        notes=doc.get("notes"),
        icon_name=doc.get("icon_name"),
        marker_color=doc.get("marker_color"),
        region_name=region.get("name") or "",
        trip_id=str(trip_id) if trip_id is not None else None,
        trip_name=trip.get("name") or "",
        distance_meters=float(doc.get("distance_meters") or 0.0),
    )


class MongoPlaceIndex:
    """SpatialIndex backed by a $geoNear query on the places collection."""

    async def find_nearest_place(
        self,
        user_id: str,
        location: GeoPoint,
        max_radius_meters: float,
    ) -> NearestPlace | None:
        """
        Find the nearest place of ``user_id`` within ``max_radius_meters``.

        Query failures are logged and reported as no place nearby.
        """
        pipeline = build_nearest_place_pipeline(user_id, location, max_radius_meters)
        try:
            cursor = await Place.get_pymongo_collection().aggregate(pipeline)
            docs = await cursor.to_list(length=1)
        except Exception:
            logger.exception("Nearest place lookup failed for user %s", user_id)
            return None
        if not docs:
            return None
        return nearest_place_from_document(docs[0])
