"""
Review reads and writes.

Every write that changes the set of reviews of a tour goes through
``ReviewMutations`` so the tour's rating statistics are refreshed once the
write has been committed. Update and delete look the review up first to
learn which tour it belongs to, then mutate, then refresh that tour.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional

from bson import ObjectId

from database import to_object_id
from errors import ForbiddenError, InvalidRequestError, NotFoundError
from query_builder import QueryBuilder
from ratings import refresh_tour_ratings
from schemas import ReviewRecord, Role

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MutationContext:
    """What the pre-mutation lookup learned about the review being changed."""

    review_id: ObjectId
    review: Dict[str, Any]

    @property
    def tour_id(self) -> ObjectId:
        return self.review["tour"]


def can_modify(actor: Optional[Mapping[str, Any]], review: Mapping[str, Any]) -> bool:
    if actor is None:
        return True
    return actor.get("role") == Role.ADMIN.value or actor.get("_id") == review.get("user")


class ReviewMutations:
    def __init__(self, db) -> None:
        self.db = db

    async def create(self, data: Mapping[str, Any], author: Mapping[str, Any]) -> Dict[str, Any]:
        if not data.get("tour"):
            raise InvalidRequestError("a review must belong to a tour")
        tour_id = to_object_id(data["tour"])
        if await self.db.tours.find_by_id(tour_id, projection={"_id": 1}) is None:
            raise NotFoundError(f"tour with id={data['tour']} does not exist")

        doc = {
            "review": data["review"],
            "rating": data["rating"],
            "tour": tour_id,
            "user": author["_id"],
        }
        # raises ConflictError when this author already reviewed the tour
        review_id = await self.db.reviews.insert(doc)
        if await self.db.tours.find_by_id(tour_id, projection={"_id": 1}) is None:
            # the tour was deleted after the lookup; drop the review so it is not left orphaned
            await self.db.reviews.delete_by_id(review_id)
            raise NotFoundError(f"tour with id={data['tour']} does not exist")
        created = await self.db.reviews.find_by_id(review_id) or {**doc, "_id": review_id}

        await refresh_tour_ratings(self.db, created["tour"])
        return created

    async def capture(self, review_id: Any, actor: Optional[Mapping[str, Any]] = None) -> MutationContext:
        oid = to_object_id(review_id)
        review = await self.db.reviews.find_by_id(oid)
        if review is None:
            raise NotFoundError(f"review with id={review_id} does not exist")
        if not can_modify(actor, review):
            raise ForbiddenError("you can only change your own reviews")
        return MutationContext(review_id=oid, review=review)

    async def update(
        self,
        review_id: Any,
        changes: Mapping[str, Any],
        actor: Optional[Mapping[str, Any]] = None,
    ) -> Dict[str, Any]:
        if not changes:
            raise InvalidRequestError("no fields to update")
        ctx = await self.capture(review_id, actor)

        affected = await self.db.reviews.update_by_id(ctx.review_id, changes)
        if not affected:
            raise NotFoundError(f"review with id={review_id} does not exist")

        await refresh_tour_ratings(self.db, ctx.tour_id)
        updated = await self.db.reviews.find_by_id(ctx.review_id)
        return updated or {**ctx.review, **changes}

    async def delete(self, review_id: Any, actor: Optional[Mapping[str, Any]] = None) -> None:
        ctx = await self.capture(review_id, actor)

        affected = await self.db.reviews.delete_by_id(ctx.review_id)
        if not affected:
            raise NotFoundError(f"review with id={review_id} does not exist")

        await refresh_tour_ratings(self.db, ctx.tour_id)


async def attach_authors(db, reviews: List[dict]) -> List[dict]:
    """Replace each review's user id with ``{_id, name}`` of its author."""
    author_ids = list({r["user"] for r in reviews if r.get("user") is not None})
    if not author_ids:
        return reviews
    users = await db.users.find({"_id": {"$in": author_ids}}, projection={"name": 1})
    names = {u["_id"]: u.get("name") for u in users}
    for review in reviews:
        if review.get("user") in names:
            review["user"] = {"_id": review["user"], "name": names[review["user"]]}
    return reviews


async def list_reviews(db, params: Mapping[str, Any], tour_id: Optional[Any] = None) -> List[dict]:
    params = dict(params)
    # ?tour=<id> is a reference, not a plain string field
    reference = params.pop("tour", None)
    if tour_id is None and isinstance(reference, str):
        tour_id = reference
    base_filter = {"tour": to_object_id(tour_id)} if tour_id is not None else None
    builder = QueryBuilder(db.reviews, params, base_filter=base_filter, model=ReviewRecord)
    await builder.filter().sort().limit_fields().paginate()
    reviews = await builder.execute()
    return await attach_authors(db, reviews)
