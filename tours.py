"""
Tour reads and writes, including removing a deleted tour's reviews.
"""

import logging
import math
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Tuple

from bson import ObjectId
from bson.errors import InvalidId

from database import to_object_id
from errors import InvalidRequestError, NotFoundError
from query_builder import QueryBuilder
from retries import retry_async
from reviews import attach_authors
from schemas import Tour, TourRecord

logger = logging.getLogger(__name__)

CASCADE_ATTEMPTS = 3
CASCADE_BACKOFF_SECONDS = 0.2

TOP_RATED_THRESHOLD = 4.5

MONTH_NAMES = (
    "January", "February", "March", "April", "May", "June",
    "July", "August", "September", "October", "November", "December",
)

# earth radius in each unit for $centerSphere, and units per metre for $geoNear
EARTH_RADIUS = {"mi": 3963.2, "km": 6378.1}
UNITS_PER_METRE = {"mi": 0.000621371, "km": 0.001}
GUIDE_PROJECTION = {"name": 1, "email": 1, "role": 1}

STATS_REDUCERS = {
    "numTours": ("count", None),
    "numRatings": ("sum", "ratingsQuantity"),
    "avgRating": ("avg", "ratingsAverage"),
    "avgPrice": ("avg", "price"),
    "minPrice": ("min", "price"),
    "maxPrice": ("max", "price"),
}


def _guide_ids(values: List[str]) -> List[ObjectId]:
    try:
        return [ObjectId(v) for v in values]
    except (InvalidId, TypeError):
        raise InvalidRequestError("guides must be a list of user ids")


def with_duration_weeks(tour: dict) -> dict:
    if isinstance(tour.get("duration"), (int, float)):
        tour["durationWeeks"] = math.ceil(tour["duration"] / 7)
    return tour


async def attach_guides(db, tours: List[dict]) -> List[dict]:
    """Replace guide ids with the guides' public user fields."""
    guide_ids = list({g for t in tours for g in t.get("guides") or [] if isinstance(g, ObjectId)})
    if not guide_ids:
        return tours
    users = await db.users.find({"_id": {"$in": guide_ids}}, projection=GUIDE_PROJECTION)
    by_id = {u["_id"]: u for u in users}
    for tour in tours:
        if tour.get("guides"):
            tour["guides"] = [by_id[g] for g in tour["guides"] if g in by_id]
    return tours


async def _present(db, tours: List[dict]) -> List[dict]:
    await attach_guides(db, tours)
    return [with_duration_weeks(t) for t in tours]


async def list_tours(db, params: Mapping[str, Any], base_filter: Optional[Mapping[str, Any]] = None) -> List[dict]:
    builder = QueryBuilder(db.tours, params, base_filter=base_filter, model=TourRecord)
    await builder.filter().sort().limit_fields().paginate()
    return await _present(db, await builder.execute())


async def create_tour(db, tour: Tour) -> dict:
    doc = tour.model_dump()
    doc["guides"] = _guide_ids(doc["guides"])
    if doc.get("startLocation") is None:
        # a null would not fit the 2dsphere index
        doc.pop("startLocation", None)
    doc["ratingsAverage"] = 0
    doc["ratingsQuantity"] = 0
    tour_id = await db.tours.insert(doc)
    logger.info("Created tour %s (%s)", tour_id, doc["name"])
    return await db.tours.find_by_id(tour_id)


async def get_tour(db, tour_id: Any) -> dict:
    oid = to_object_id(tour_id)
    tour = await db.tours.find_by_id(oid)
    if tour is None:
        raise NotFoundError(f"tour with id={tour_id} does not exist")
    [tour] = await _present(db, [tour])
    reviews = await db.reviews.find({"tour": oid})
    tour["reviews"] = await attach_authors(db, reviews)
    return tour


async def update_tour(db, tour_id: Any, changes: Dict[str, Any]) -> dict:
    if not changes:
        raise InvalidRequestError("no fields to update")
    oid = to_object_id(tour_id)
    if "guides" in changes:
        changes["guides"] = _guide_ids(changes["guides"])
    if changes.get("priceDiscount") is not None and "price" not in changes:
        current = await db.tours.find_by_id(oid, projection={"price": 1})
        if current is not None and changes["priceDiscount"] >= current.get("price", 0):
            raise InvalidRequestError(
                f"discount value {changes['priceDiscount']} should be less than regular price"
            )

    matched = await db.tours.update_by_id(oid, changes)
    if not matched:
        raise NotFoundError(f"tour with id={tour_id} does not exist")
    return await db.tours.find_by_id(oid)


async def delete_tour(db, tour_id: Any) -> int:
    """
    Delete a tour and then every review that references it.

    Returns:
        int: number of reviews removed with the tour
    """
    oid = to_object_id(tour_id)
    deleted = await db.tours.delete_by_id(oid)
    if not deleted:
        raise NotFoundError(f"tour with id={tour_id} does not exist")
    return await cascade_delete_reviews(db, oid)


async def cascade_delete_reviews(db, tour_id: ObjectId) -> int:
    # the tour is already gone; if this keeps failing its reviews are orphaned, so let it raise
    removed = await retry_async(
        lambda: db.reviews.delete_many({"tour": tour_id}),
        max_attempts=CASCADE_ATTEMPTS,
        backoff_seconds=CASCADE_BACKOFF_SECONDS,
        description=f"review cleanup of deleted tour {tour_id}",
    )
    logger.info("Deleted tour %s and %d of its reviews", tour_id, removed)
    return removed


async def tour_stats(db) -> List[dict]:
    groups = await db.tours.aggregate_group(
        {"ratingsAverage": {"$gte": TOP_RATED_THRESHOLD}}, "difficulty", STATS_REDUCERS
    )
    stats = []
    for group in groups:
        group = dict(group)
        stats.append({"difficulty": group.pop("_id"), **group})
    return sorted(stats, key=lambda s: s["avgPrice"])


async def tours_by_month(db, year: int) -> List[dict]:
    """Tours starting in each month of ``year``, months without tours omitted."""
    if not 1 <= year <= 9998:
        raise InvalidRequestError(f"invalid year: {year}")
    start = datetime(year, 1, 1, tzinfo=timezone.utc)
    end = datetime(year + 1, 1, 1, tzinfo=timezone.utc)

    tours = await db.tours.find(
        {"startDates": {"$gte": start, "$lt": end}},
        projection={"name": 1, "startDates": 1},
    )
    names_by_month: Dict[int, List[str]] = defaultdict(list)
    for tour in tours:
        for start_date in tour.get("startDates") or []:
            if start <= start_date < end:
                names_by_month[start_date.month].append(tour["name"])

    return [
        {
            "month": MONTH_NAMES[month - 1],
            "monthNumber": month,
            "tourCount": len(names),
            "tours": names,
        }
        for month, names in sorted(names_by_month.items())
    ]


def parse_center(latlng: str) -> Tuple[float, float]:
    """Parse ``"lat,lng"`` into ``(lat, lng)``."""
    parts = latlng.split(",")
    try:
        lat, lng = (float(p) for p in parts)
    except ValueError:
        raise InvalidRequestError("latitude and longitude should be numbers and should be separated by comma")
    if not -90 <= lat <= 90 or not -180 <= lng <= 180:
        raise InvalidRequestError("latitude or longitude out of range")
    return lat, lng


def _check_unit(unit: str) -> str:
    if unit not in EARTH_RADIUS:
        raise InvalidRequestError("invalid unit provided, allowed units are (mi, km)")
    return unit


async def tours_within(db, distance: float, latlng: str, unit: str, params: Mapping[str, Any]) -> List[dict]:
    """Tours whose start location lies within ``distance`` of the center, refined by the usual query params."""
    unit = _check_unit(unit)
    if distance < 0:
        raise InvalidRequestError("distance parameter should be a positive number")
    lat, lng = parse_center(latlng)
    radius = distance / EARTH_RADIUS[unit]
    geo_filter = {"startLocation": {"$geoWithin": {"$centerSphere": [[lng, lat], radius]}}}
    return await list_tours(db, params, base_filter=geo_filter)


async def tour_distances(db, latlng: str, unit: str) -> List[dict]:
    """Name and distance from the center of every tour with a start location, nearest first."""
    unit = _check_unit(unit)
    lat, lng = parse_center(latlng)
    return await db.tours.geo_near("startLocation", (lng, lat), UNITS_PER_METRE[unit], projection={"name": 1})
