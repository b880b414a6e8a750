"""
Keeps a tour's ratingsAverage / ratingsQuantity in line with its reviews.

The statistics are always recomputed from the full set of reviews for the
tour, never adjusted incrementally, so a recompute that runs after any
earlier failure brings the tour back in sync.
"""

import logging
from typing import Any, Dict

from bson import ObjectId

from retries import retry_async

logger = logging.getLogger(__name__)

RECOMPUTE_ATTEMPTS = 3
RECOMPUTE_BACKOFF_SECONDS = 0.2

RATING_REDUCERS = {
    "nRating": ("count", None),
    "avgRating": ("avg", "rating"),
}


async def recompute_tour_ratings(db, tour_id: ObjectId) -> Dict[str, Any]:
    """
    Recalculate count and mean rating of a tour's reviews and store them on the tour.

    Writes straight to the tour document; this is the only writer of the
    two rating fields.

    Returns:
        dict: the ``ratingsQuantity`` / ``ratingsAverage`` values written
    """
    groups = await db.reviews.aggregate_group({"tour": tour_id}, "tour", RATING_REDUCERS)
    if groups:
        stats = {
            "ratingsQuantity": groups[0]["nRating"],
            "ratingsAverage": groups[0]["avgRating"],
        }
    else:
        stats = {"ratingsQuantity": 0, "ratingsAverage": 0}

    await db.tours.update_by_id(tour_id, stats)
    logger.debug("Recomputed ratings for tour %s: %s", tour_id, stats)
    return stats


async def refresh_tour_ratings(db, tour_id: ObjectId) -> bool:
    """
    Run ``recompute_tour_ratings`` with retries, never raising.

    The review change that triggered this has already been committed, so a
    failure here only leaves the tour's statistics stale until the next
    successful recompute for the same tour.

    Returns:
        bool: True if the statistics were written
    """
    try:
        await retry_async(
            lambda: recompute_tour_ratings(db, tour_id),
            max_attempts=RECOMPUTE_ATTEMPTS,
            backoff_seconds=RECOMPUTE_BACKOFF_SECONDS,
            description=f"ratings recompute of tour {tour_id}",
        )
    except Exception:
        logger.exception("Ratings of tour %s left stale until its next review change", tour_id)
        return False
    return True
