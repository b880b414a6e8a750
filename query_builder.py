"""
Turns request query parameters into a bounded MongoDB query.

    docs = await (
        await QueryBuilder(db.tours, request.query_params, model=Tour)
        .filter()
        .sort()
        .limit_fields()
        .paginate()
    ).execute()

Only ``gt``, ``gte``, ``lt`` and ``lte`` may be used as operators
(``?price[gte]=100``); every other key is an equality match. Anything else
that looks like a store operator is rejected with ``InvalidRequestError``.
"""

import math
import re
import types
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, Type, Union, get_args, get_origin

from bson import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING

from errors import InvalidRequestError

RESERVED_PARAMS = ("page", "sort", "limit", "fields")
COMPARISON_OPERATORS = {"gt": "$gt", "gte": "$gte", "lt": "$lt", "lte": "$lte"}

DEFAULT_PAGE = 1
DEFAULT_LIMIT = 10
MAX_LIMIT = 100

_BRACKET_KEY = re.compile(r"^([^\[\]]+)\[([^\[\]]*)\](.*)$")


@dataclass(frozen=True)
class QuerySpec:
    filter: Mapping[str, Any]
    sort: Tuple[Tuple[str, int], ...] = ()
    projection: Optional[Mapping[str, int]] = None
    skip: int = 0
    limit: int = DEFAULT_LIMIT
    page: int = DEFAULT_PAGE
    total: Optional[int] = None


def _cast_bool(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in ("true", "1"):
        return True
    if lowered in ("false", "0"):
        return False
    raise ValueError(value)


def _cast_object_id(value: str) -> ObjectId:
    try:
        return ObjectId(value.strip())
    except (InvalidId, TypeError):
        raise ValueError(value)


_CASTS: Dict[Any, Callable[[str], Any]] = {
    int: int,
    float: float,
    bool: _cast_bool,
    datetime: datetime.fromisoformat,
}


def _unwrap(annotation: Any) -> Any:
    origin = get_origin(annotation)
    if origin is Union or origin is types.UnionType:
        args = [a for a in get_args(annotation) if a is not type(None)]
        if len(args) == 1:
            return _unwrap(args[0])
    if origin in (list, List):
        args = get_args(annotation)
        if args:
            return _unwrap(args[0])
    return annotation


def field_casters(model: Type[BaseModel]) -> Dict[str, Callable[[str], Any]]:
    """
    Map model fields with non-string types to a parser for their query-string form.

    Fields named in the model's ``reference_fields`` hold document ids and are
    parsed into ``ObjectId``.
    """
    casters = {}
    for name, info in model.model_fields.items():
        cast = _CASTS.get(_unwrap(info.annotation))
        if cast is not None:
            casters[name] = cast
    for name in getattr(model, "reference_fields", ()):
        casters[name] = _cast_object_id
    return casters


def _check_field_name(name: Any) -> str:
    if not isinstance(name, str) or not name or "$" in name or "." in name:
        raise InvalidRequestError(f"invalid field name: {name!r}")
    return name


def _int_param(value: Any, default: int) -> int:
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return default


def nest_params(params: Mapping[str, Any]) -> Dict[str, Any]:
    """Fold ``price[gte]=100`` style keys into ``{"price": {"gte": "100"}}``."""
    nested: Dict[str, Any] = {}
    for key, value in params.items():
        match = _BRACKET_KEY.match(key)
        if match is None:
            if isinstance(nested.get(key), dict):
                raise InvalidRequestError(f"conflicting filters for {key}")
            nested[key] = dict(value) if isinstance(value, Mapping) else value
            continue
        name, sub_key, rest = match.groups()
        if rest or not sub_key:
            raise InvalidRequestError(f"malformed query parameter: {key}")
        bucket = nested.setdefault(name, {})
        if not isinstance(bucket, dict):
            raise InvalidRequestError(f"conflicting filters for {name}")
        bucket[sub_key] = value
    return nested


class QueryBuilder:
    def __init__(
        self,
        collection,
        params: Mapping[str, Any],
        base_filter: Optional[Mapping[str, Any]] = None,
        model: Optional[Type[BaseModel]] = None,
    ) -> None:
        self.collection = collection
        self.params = nest_params(params)
        self.base_filter = dict(base_filter or {})
        self.casters = field_casters(model) if model is not None else {}
        self._filter: Dict[str, Any] = dict(self.base_filter)
        self._sort: Tuple[Tuple[str, int], ...] = ()
        self._projection: Optional[Dict[str, int]] = None
        self._page = DEFAULT_PAGE
        self._skip = 0
        self._limit = DEFAULT_LIMIT
        self._total: Optional[int] = None

    def _cast(self, field_name: str, value: Any) -> Any:
        cast = self.casters.get(field_name)
        if cast is None or not isinstance(value, str):
            return value
        try:
            return cast(value)
        except ValueError:
            raise InvalidRequestError(f"invalid value for {field_name}: {value!r}")

    def filter(self) -> "QueryBuilder":
        query = {k: v for k, v in self.params.items() if k not in RESERVED_PARAMS}
        rewritten: Dict[str, Any] = {}
        for name, value in query.items():
            _check_field_name(name)
            if isinstance(value, Mapping):
                if not value:
                    raise InvalidRequestError(f"empty filter for {name}")
                conditions = {}
                for op, operand in value.items():
                    if op not in COMPARISON_OPERATORS:
                        raise InvalidRequestError(f"unsupported operator {op!r} on {name}")
                    if isinstance(operand, (Mapping, list, tuple)):
                        raise InvalidRequestError(f"malformed filter for {name}")
                    conditions[COMPARISON_OPERATORS[op]] = self._cast(name, operand)
                rewritten[name] = conditions
            elif isinstance(value, (list, tuple)):
                raise InvalidRequestError(f"malformed filter for {name}")
            else:
                rewritten[name] = self._cast(name, value)
        # scope set by the route (e.g. a tour's reviews) cannot be overridden by the client
        rewritten.update(self.base_filter)
        self._filter = rewritten
        return self

    def sort(self) -> "QueryBuilder":
        raw = self.params.get("sort")
        if raw is None:
            return self
        if not isinstance(raw, str):
            raise InvalidRequestError("sort must be a comma-separated list of fields")
        keys: List[Tuple[str, int]] = []
        seen = set()
        for token in raw.split(","):
            token = token.strip()
            if not token:
                continue
            direction = DESCENDING if token.startswith("-") else ASCENDING
            name = _check_field_name(token[1:] if token.startswith("-") else token)
            if name in seen:
                continue
            seen.add(name)
            keys.append((name, direction))
        self._sort = tuple(keys)
        return self

    def limit_fields(self) -> "QueryBuilder":
        raw = self.params.get("fields")
        if raw is None:
            return self
        if not isinstance(raw, str):
            raise InvalidRequestError("fields must be a comma-separated list of fields")
        included, excluded = [], []
        for token in raw.split(","):
            token = token.strip()
            if not token:
                continue
            if token.startswith("-"):
                excluded.append(_check_field_name(token[1:]))
            else:
                included.append(_check_field_name(token))
        if included and excluded:
            raise InvalidRequestError("fields cannot mix included and excluded fields")
        if included:
            self._projection = {name: 1 for name in included}
        elif excluded:
            self._projection = {name: 0 for name in excluded}
        return self

    async def paginate(self) -> "QueryBuilder":
        limit = _int_param(self.params.get("limit"), DEFAULT_LIMIT)
        if limit <= 0:
            limit = DEFAULT_LIMIT
        limit = min(limit, MAX_LIMIT)
        page = _int_param(self.params.get("page"), DEFAULT_PAGE)

        total = await self.collection.count(self._filter)
        last_page = math.ceil(total / limit)
        # an empty result has last_page == 0; max() keeps that on page 1
        page = max(1, min(page, last_page))

        self._page = page
        self._limit = limit
        self._skip = (page - 1) * limit
        self._total = total
        return self

    def build(self) -> QuerySpec:
        return QuerySpec(
            filter=types.MappingProxyType(dict(self._filter)),
            sort=self._sort,
            projection=types.MappingProxyType(dict(self._projection)) if self._projection else None,
            skip=self._skip,
            limit=self._limit,
            page=self._page,
            total=self._total,
        )

    async def execute(self) -> List[dict]:
        spec = self.build()
        return await self.collection.find(
            spec.filter,
            sort=spec.sort,
            projection=spec.projection,
            skip=spec.skip,
            limit=spec.limit,
        )
