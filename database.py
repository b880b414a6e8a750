"""
MongoDB access for the Tour Booking API.

A single ``Database`` is opened when the app starts and closed at shutdown;
handlers receive it through ``get_db``. Each collection is wrapped in a
``DocumentCollection`` exposing the small find/aggregate/update/delete
surface the rest of the code relies on.
"""

import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from bson import ObjectId
from bson.errors import InvalidId
from fastapi import Request
from pymongo import ASCENDING, DESCENDING, GEOSPHERE, AsyncMongoClient
from pymongo.asynchronous.collection import AsyncCollection
from pymongo.errors import DuplicateKeyError, OperationFailure

from errors import ConflictError, InvalidRequestError, NotFoundError

logger = logging.getLogger(__name__)

SortSpec = Sequence[Tuple[str, int]]
# output field -> (reducer, source field); "count" takes no source field
Reducers = Mapping[str, Tuple[str, Optional[str]]]

REDUCERS = {"count", "sum", "avg", "min", "max"}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_object_id(value: Any) -> ObjectId:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        raise NotFoundError(f"document with id={value} does not exist")


def serialize_doc(doc: Any) -> Any:
    """Convert MongoDB document to JSON-serializable dict"""
    if isinstance(doc, dict):
        d = {}
        for k, v in doc.items():
            if k == "_id":
                k = "id"
            d[k] = serialize_doc(v)
        return d
    if isinstance(doc, list):
        return [serialize_doc(v) for v in doc]
    if isinstance(doc, ObjectId):
        return str(doc)
    if isinstance(doc, datetime):
        return doc.isoformat()
    return doc


def serialize_list(docs: List[dict]) -> List[dict]:
    return [serialize_doc(d) for d in docs]


def _group_stage(group_key: str, reducers: Reducers) -> Dict[str, Any]:
    stage: Dict[str, Any] = {"_id": f"${group_key}"}
    for out_field, (reducer, source) in reducers.items():
        if reducer not in REDUCERS:
            raise ValueError(f"unknown reducer {reducer!r}")
        if reducer == "count":
            stage[out_field] = {"$sum": 1}
        else:
            stage[out_field] = {f"${reducer}": f"${source}"}
    return stage


class DocumentCollection:
    def __init__(self, collection: AsyncCollection) -> None:
        self._collection = collection

    @property
    def name(self) -> str:
        return self._collection.name

    async def find(
        self,
        filter: Optional[Mapping[str, Any]] = None,
        sort: Optional[SortSpec] = None,
        projection: Optional[Mapping[str, int]] = None,
        skip: int = 0,
        limit: int = 0,
    ) -> List[dict]:
        cursor = self._collection.find(dict(filter or {}), dict(projection) if projection else None)
        if sort:
            cursor = cursor.sort(list(sort))
        if skip:
            cursor = cursor.skip(skip)
        if limit:
            cursor = cursor.limit(limit)
        try:
            return await cursor.to_list(length=None)
        except OperationFailure as e:
            raise InvalidRequestError(f"invalid query: {e.details.get('errmsg') if e.details else e}")

    async def count(self, filter: Optional[Mapping[str, Any]] = None) -> int:
        try:
            return await self._collection.count_documents(dict(filter or {}))
        except OperationFailure as e:
            raise InvalidRequestError(f"invalid query: {e.details.get('errmsg') if e.details else e}")

    async def find_by_id(self, doc_id: Any, projection: Optional[Mapping[str, int]] = None) -> Optional[dict]:
        return await self._collection.find_one({"_id": to_object_id(doc_id)}, dict(projection) if projection else None)

    async def find_one(self, filter: Mapping[str, Any]) -> Optional[dict]:
        return await self._collection.find_one(dict(filter))

    async def aggregate_group(self, match: Mapping[str, Any], group_key: str, reducers: Reducers) -> List[dict]:
        pipeline = [{"$match": dict(match)}, {"$group": _group_stage(group_key, reducers)}]
        cursor = await self._collection.aggregate(pipeline)
        return await cursor.to_list(length=None)

    async def geo_near(
        self,
        key: str,
        point: Sequence[float],
        distance_multiplier: float,
        projection: Mapping[str, int],
    ) -> List[dict]:
        """Documents ordered by distance from ``point`` ([lng, lat]), with the distance in ``distance``."""
        pipeline = [
            {
                "$geoNear": {
                    "near": {"type": "Point", "coordinates": list(point)},
                    "key": key,
                    "distanceField": "distance",
                    "distanceMultiplier": distance_multiplier,
                    "spherical": True,
                }
            },
            {"$project": {**projection, "distance": 1}},
        ]
        cursor = await self._collection.aggregate(pipeline)
        return await cursor.to_list(length=None)

    async def insert(self, doc: Mapping[str, Any]) -> ObjectId:
        now = utcnow()
        data = dict(doc)
        data.setdefault("createdAt", now)
        data["updatedAt"] = now
        try:
            result = await self._collection.insert_one(data)
        except DuplicateKeyError as e:
            raise ConflictError(_duplicate_message(self.name, e))
        return result.inserted_id

    async def update_by_id(self, doc_id: Any, changes: Mapping[str, Any]) -> int:
        update = dict(changes)
        update["updatedAt"] = utcnow()
        try:
            result = await self._collection.update_one({"_id": to_object_id(doc_id)}, {"$set": update})
        except DuplicateKeyError as e:
            raise ConflictError(_duplicate_message(self.name, e))
        return result.matched_count

    async def delete_by_id(self, doc_id: Any) -> int:
        result = await self._collection.delete_one({"_id": to_object_id(doc_id)})
        return result.deleted_count

    async def delete_many(self, filter: Mapping[str, Any]) -> int:
        result = await self._collection.delete_many(dict(filter))
        return result.deleted_count


def _duplicate_message(collection: str, error: DuplicateKeyError) -> str:
    key_value = (error.details or {}).get("keyValue")
    if key_value:
        fields = ", ".join(sorted(key_value))
        return f"a {collection} with the same {fields} already exists"
    return f"duplicate {collection}"


class Database:
    """Owns the MongoDB client for the lifetime of the process."""

    def __init__(self, url: str, name: str) -> None:
        self.url = url
        self.name = name
        self._client: Optional[AsyncMongoClient] = None
        self._collections: Dict[str, DocumentCollection] = {}

    @classmethod
    def from_env(cls) -> "Database":
        url = os.getenv("DATABASE_URL")
        name = os.getenv("DATABASE_NAME")
        if not url or not name:
            raise RuntimeError("Database not available. Check DATABASE_URL and DATABASE_NAME environment variables.")
        return cls(url, name)

    async def connect(self) -> None:
        self._client = AsyncMongoClient(self.url, tz_aware=True)
        await self._client.admin.command("ping")
        await self.ensure_indexes()
        logger.info("Connected to MongoDB database %s", self.name)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None
            self._collections.clear()
            logger.info("MongoDB connection closed")

    async def ensure_indexes(self) -> None:
        db = self._raw()
        await db["review"].create_index([("user", ASCENDING), ("tour", ASCENDING)], unique=True)
        await db["tour"].create_index([("name", ASCENDING)], unique=True)
        await db["tour"].create_index([("price", ASCENDING), ("ratingsAverage", DESCENDING)])
        await db["tour"].create_index([("startLocation", GEOSPHERE)])
        await db["user"].create_index([("email", ASCENDING)], unique=True)

    def _raw(self):
        if self._client is None:
            raise RuntimeError("Database is not connected")
        return self._client[self.name]

    def collection(self, name: str) -> DocumentCollection:
        if name not in self._collections:
            self._collections[name] = DocumentCollection(self._raw()[name])
        return self._collections[name]

    @property
    def tours(self) -> DocumentCollection:
        return self.collection("tour")

    @property
    def reviews(self) -> DocumentCollection:
        return self.collection("review")

    @property
    def users(self) -> DocumentCollection:
        return self.collection("user")


def get_db(request: Request) -> Database:
    return request.app.state.db
