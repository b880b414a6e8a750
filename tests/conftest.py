import asyncio
import copy
import itertools
import math
import operator
import os
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional

os.environ.setdefault("JWT_SECRET", "test-secret")

import pytest
from bson import ObjectId
from fastapi.testclient import TestClient

import ratings
import tours
from auth import create_token, hash_password
from database import to_object_id
from errors import ConflictError

_COMPARISONS = {
    "$gt": operator.gt,
    "$gte": operator.ge,
    "$lt": operator.lt,
    "$lte": operator.le,
}


# same sphere as the server uses for $geoNear distances in metres
EARTH_RADIUS_METRES = 6378100


def central_angle(a, b) -> float:
    """Angle in radians between two [lng, lat] points."""
    lng1, lat1, lng2, lat2 = map(math.radians, (a[0], a[1], b[0], b[1]))
    h = math.sin((lat2 - lat1) / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin((lng2 - lng1) / 2) ** 2
    return 2 * math.asin(min(1.0, math.sqrt(h)))


def _values(value: Any) -> List[Any]:
    return value if isinstance(value, list) else [value]


def _compare(value: Any, op: str, operand: Any) -> bool:
    if op == "$in":
        return any(v in operand for v in _values(value))
    if op == "$geoWithin":
        center, radius = operand["$centerSphere"]
        return isinstance(value, Mapping) and central_angle(value["coordinates"], center) <= radius
    compare = _COMPARISONS[op]
    for v in _values(value):
        if v is None:
            continue
        try:
            if compare(v, operand):
                return True
        except TypeError:
            continue
    return False


def matches(doc: Mapping[str, Any], flt: Mapping[str, Any]) -> bool:
    for key, cond in flt.items():
        value = doc.get(key)
        if isinstance(cond, Mapping) and cond and all(str(k).startswith("$") for k in cond):
            if not all(_compare(value, op, operand) for op, operand in cond.items()):
                return False
        elif isinstance(value, list) and not isinstance(cond, list):
            if cond not in value:
                return False
        elif value != cond:
            return False
    return True


def _sorted(docs: List[dict], sort: Iterable) -> List[dict]:
    docs = list(docs)
    for field, direction in reversed(list(sort)):
        present = [d for d in docs if d.get(field) is not None]
        missing = [d for d in docs if d.get(field) is None]
        present.sort(key=lambda d: d[field], reverse=direction < 0)
        docs = missing + present if direction > 0 else present + missing
    return docs


def _project(doc: dict, projection: Optional[Mapping[str, int]]) -> dict:
    if not projection:
        return dict(doc)
    if any(projection.values()):
        out = {"_id": doc["_id"]} if projection.get("_id", 1) else {}
        for field, flag in projection.items():
            if flag and field in doc:
                out[field] = doc[field]
        return out
    return {k: v for k, v in doc.items() if k not in projection}


class InMemoryCollection:
    """Stand-in for database.DocumentCollection backed by a dict."""

    def __init__(self, name: str, unique: Iterable[Iterable[str]] = ()) -> None:
        self.name = name
        self.docs: Dict[ObjectId, dict] = {}
        self.unique = [tuple(fields) for fields in unique]

    def _check_unique(self, doc: dict, exclude_id: Optional[ObjectId] = None) -> None:
        for fields in self.unique:
            key = tuple(doc.get(f) for f in fields)
            for other_id, other in self.docs.items():
                if other_id != exclude_id and tuple(other.get(f) for f in fields) == key:
                    raise ConflictError(f"a {self.name} with the same {', '.join(fields)} already exists")

    def add(self, doc: Mapping[str, Any]) -> dict:
        data = copy.deepcopy(dict(doc))
        data.setdefault("_id", ObjectId())
        now = datetime.now(timezone.utc)
        data.setdefault("createdAt", now)
        data.setdefault("updatedAt", now)
        self._check_unique(data)
        self.docs[data["_id"]] = data
        return copy.deepcopy(data)

    def where(self, **flt: Any) -> List[dict]:
        return [copy.deepcopy(d) for d in self.docs.values() if matches(d, flt)]

    async def find(self, filter=None, sort=None, projection=None, skip=0, limit=0) -> List[dict]:
        docs = [d for d in self.docs.values() if matches(d, dict(filter or {}))]
        if sort:
            docs = _sorted(docs, sort)
        docs = docs[skip:]
        if limit:
            docs = docs[:limit]
        return [copy.deepcopy(_project(d, projection)) for d in docs]

    async def count(self, filter=None) -> int:
        return sum(1 for d in self.docs.values() if matches(d, dict(filter or {})))

    async def find_by_id(self, doc_id, projection=None) -> Optional[dict]:
        doc = self.docs.get(to_object_id(doc_id))
        return copy.deepcopy(_project(doc, projection)) if doc is not None else None

    async def find_one(self, filter) -> Optional[dict]:
        for doc in self.docs.values():
            if matches(doc, filter):
                return copy.deepcopy(doc)
        return None

    async def aggregate_group(self, match, group_key, reducers) -> List[dict]:
        groups: Dict[Any, List[dict]] = {}
        for doc in self.docs.values():
            if matches(doc, match):
                groups.setdefault(doc.get(group_key), []).append(doc)
        results = []
        for key, members in groups.items():
            row: Dict[str, Any] = {"_id": key}
            for out_field, (reducer, source) in reducers.items():
                values = [m[source] for m in members if isinstance(m.get(source), (int, float))] if source else []
                if reducer == "count":
                    row[out_field] = len(members)
                elif reducer == "sum":
                    row[out_field] = sum(values)
                elif reducer == "avg":
                    row[out_field] = sum(values) / len(values) if values else None
                elif reducer == "min":
                    row[out_field] = min(values) if values else None
                elif reducer == "max":
                    row[out_field] = max(values) if values else None
            results.append(row)
        return results

    async def geo_near(self, key, point, distance_multiplier, projection) -> List[dict]:
        rows = []
        for doc in self.docs.values():
            location = doc.get(key)
            if not isinstance(location, Mapping):
                continue
            row = _project(doc, projection)
            row["distance"] = central_angle(location["coordinates"], point) * EARTH_RADIUS_METRES * distance_multiplier
            rows.append(copy.deepcopy(row))
        return sorted(rows, key=lambda r: r["distance"])

    async def insert(self, doc) -> ObjectId:
        await asyncio.sleep(0)
        return self.add(doc)["_id"]

    async def update_by_id(self, doc_id, changes) -> int:
        oid = to_object_id(doc_id)
        current = self.docs.get(oid)
        if current is None:
            return 0
        updated = {**current, **copy.deepcopy(dict(changes)), "updatedAt": datetime.now(timezone.utc)}
        self._check_unique(updated, exclude_id=oid)
        self.docs[oid] = updated
        return 1

    async def delete_by_id(self, doc_id) -> int:
        await asyncio.sleep(0)
        return 1 if self.docs.pop(to_object_id(doc_id), None) is not None else 0

    async def delete_many(self, filter) -> int:
        doomed = [oid for oid, doc in self.docs.items() if matches(doc, filter)]
        for oid in doomed:
            del self.docs[oid]
        return len(doomed)


class FakeDatabase:
    name = "tour-booking-test"

    def __init__(self) -> None:
        self.tours = InMemoryCollection("tour", unique=[("name",)])
        self.reviews = InMemoryCollection("review", unique=[("user", "tour")])
        self.users = InMemoryCollection("user", unique=[("email",)])


_counter = itertools.count(1)


def tour_doc(**overrides: Any) -> dict:
    n = next(_counter)
    doc = {
        "name": f"The Forest Hiker {n}",
        "duration": 5,
        "maxGroupSize": 25,
        "difficulty": "easy",
        "price": 397,
        "summary": "Breathtaking hike through the Canadian Banff National Park",
        "description": "Ut enim ad minim veniam, quis nostrud exercitation ullamco.",
        "imageCover": "tour-1-cover.jpg",
        "images": [],
        "startDates": [],
        "guides": [],
        "ratingsAverage": 0,
        "ratingsQuantity": 0,
    }
    doc.update(overrides)
    return doc


@pytest.fixture(autouse=True)
def no_backoff(monkeypatch):
    monkeypatch.setattr(ratings, "RECOMPUTE_BACKOFF_SECONDS", 0)
    monkeypatch.setattr(tours, "CASCADE_BACKOFF_SECONDS", 0)


@pytest.fixture
def db():
    return FakeDatabase()


@pytest.fixture
def make_user(db):
    def _make(role: str = "user", password: str = "pass12345", **extra: Any) -> dict:
        n = next(_counter)
        hashed, salt = hash_password(password)
        doc = {
            "name": f"Test User {n}",
            "email": f"user{n}@example.com",
            "role": role,
            "passwordHash": hashed,
            "passwordSalt": salt,
        }
        doc.update(extra)
        return db.users.add(doc)

    return _make


@pytest.fixture
def make_tour(db):
    def _make(**overrides: Any) -> dict:
        return db.tours.add(tour_doc(**overrides))

    return _make


@pytest.fixture
def make_review(db):
    def _make(tour: dict, user: dict, rating: int, review: str = "Amazing tour, would go again") -> dict:
        return db.reviews.add({"review": review, "rating": rating, "tour": tour["_id"], "user": user["_id"]})

    return _make


@pytest.fixture
def auth_headers():
    def _headers(user: dict, **kwargs: Any) -> dict:
        return {"Authorization": f"Bearer {create_token(user['_id'], **kwargs)}"}

    return _headers


@pytest.fixture
def client(db):
    from main import app

    app.state.db = db
    yield TestClient(app, raise_server_exceptions=False)
    app.state.db = None
    app.state.reset_mailer = None
