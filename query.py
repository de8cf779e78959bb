"""
Translation of list-request query parameters into a bounded store query.

Parameters arrive either already structured or as strings straight from a
query string. Each one goes through a fixed decision table so that every
accepted shape, and every rejection, is explicit:

    where / sort / select   None -> not applied
                            str  -> json.loads, failure -> InvalidParameter
                            else -> used as-is
                            must then be a JSON object
    skip / limit            int or decimal string >= 0, else InvalidParameter
    count                   "true"/"1" -> True, "false"/"0" -> False,
                            bool as-is, anything else -> False
"""
import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from database import as_object_id
from outcomes import InvalidParameter

logger = logging.getLogger(__name__)

# Operators that run JavaScript on the server.
FORBIDDEN_OPERATORS = frozenset({"$where", "$function", "$accumulator"})

_SORT_DIRECTIONS = {
    1: 1,
    -1: -1,
    "1": 1,
    "-1": -1,
    "asc": 1,
    "ascending": 1,
    "desc": -1,
    "descending": -1,
}

_INTEGER = re.compile(r"[+-]?[0-9]+")

# Largest value BSON can encode as int64.
_MAX_INT64 = 2**63 - 1

_ID_LIST_OPERATORS = ("$in", "$nin")
_ID_VALUE_OPERATORS = ("$eq", "$ne")


def parse_json_param(param: Any, name: str) -> Any:
    if param is None:
        return None
    if not isinstance(param, str):
        return param
    try:
        return json.loads(param)
    except (ValueError, RecursionError):
        raise InvalidParameter(f'Invalid JSON in query parameter "{name}"')


def parse_integer(param: Any, name: str) -> Optional[int]:
    if param is None:
        return None
    message = f'Query parameter "{name}" must be a non-negative integer'
    if isinstance(param, bool):
        raise InvalidParameter(message)
    if isinstance(param, int):
        parsed = param
    elif isinstance(param, str) and _INTEGER.fullmatch(param.strip()):
        digits = param.strip().lstrip("+-").lstrip("0")
        if len(digits) > len(str(_MAX_INT64)):
            raise InvalidParameter(message)
        parsed = int(param.strip())
    else:
        raise InvalidParameter(message)
    if parsed < 0 or parsed > _MAX_INT64:
        raise InvalidParameter(message)
    return parsed


def parse_boolean(param: Any) -> Optional[bool]:
    """Boolean-like value, or None when the input is absent or unrecognized."""
    if param is None:
        return None
    if isinstance(param, bool):
        return param
    lowered = str(param).strip().lower()
    if lowered in ("true", "1"):
        return True
    if lowered in ("false", "0"):
        return False
    return None


def normalize_id_list(value: Any) -> List[str]:
    """
    Accept a list of identifiers in any of the shapes clients send:

        None / "" / []          -> []
        list                    -> items as strings
        '["a","b"]'             -> ["a", "b"]
        '"a"' or other JSON     -> [the trimmed string]
        "a, b"                  -> ["a", "b"]
    """
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return [str(item) for item in value]
    if isinstance(value, str):
        trimmed = value.strip()
        if not trimmed:
            return []
        try:
            parsed = json.loads(trimmed)
        except RecursionError:
            raise InvalidParameter("pendingTasks must be an array.")
        except ValueError:
            return [item.strip() for item in trimmed.split(",") if item.strip()]
        if isinstance(parsed, list):
            return [str(item) for item in parsed]
        return [trimmed]
    raise InvalidParameter("pendingTasks must be an array.")


# -----------------------------
# where / sort / select
# -----------------------------

def _require_object(value: Any, name: str) -> Dict[str, Any]:
    if not isinstance(value, dict):
        raise InvalidParameter(f'Query parameter "{name}" must be a JSON object')
    return value


def _alias_id(key: str) -> str:
    return "_id" if key == "id" else key


def _reject_forbidden(value: Any) -> None:
    if isinstance(value, dict):
        for key, inner in value.items():
            if key in FORBIDDEN_OPERATORS:
                raise InvalidParameter(f'Operator "{key}" is not allowed in query parameter "where"')
            _reject_forbidden(inner)
    elif isinstance(value, list):
        for inner in value:
            _reject_forbidden(inner)


def _cast_id(value: Any) -> Any:
    oid = as_object_id(value)
    return oid if oid is not None else value


def _cast_id_condition(condition: Any) -> Any:
    if isinstance(condition, dict):
        cast = dict(condition)
        for op in _ID_LIST_OPERATORS:
            if isinstance(cast.get(op), list):
                cast[op] = [_cast_id(v) for v in cast[op]]
        for op in _ID_VALUE_OPERATORS:
            if op in cast:
                cast[op] = _cast_id(cast[op])
        return cast
    return _cast_id(condition)


def build_filter(where: Any) -> Dict[str, Any]:
    if where is None:
        return {}
    where = _require_object(where, "where")
    try:
        _reject_forbidden(where)
    except RecursionError:
        raise InvalidParameter('Query parameter "where" is nested too deeply')
    result: Dict[str, Any] = {}
    for key, condition in where.items():
        key = _alias_id(key)
        result[key] = _cast_id_condition(condition) if key == "_id" else condition
    return result


def build_sort(sort: Any) -> Optional[List[Tuple[str, int]]]:
    if sort is None:
        return None
    sort = _require_object(sort, "sort")
    keys: List[Tuple[str, int]] = []
    for field, direction in sort.items():
        normalized = None
        if isinstance(direction, (int, str)) and not isinstance(direction, bool):
            lookup = direction.lower() if isinstance(direction, str) else direction
            normalized = _SORT_DIRECTIONS.get(lookup)
        if normalized is None:
            raise InvalidParameter(f'Invalid sort direction for "{field}"')
        keys.append((_alias_id(field), normalized))
    return keys or None


def build_projection(select: Any) -> Optional[Dict[str, int]]:
    if select is None:
        return None
    select = _require_object(select, "select")
    projection: Dict[str, int] = {}
    for field, flag in select.items():
        if flag not in (0, 1) or isinstance(flag, float):
            raise InvalidParameter(f'Invalid projection value for "{field}"')
        projection[_alias_id(field)] = int(flag)
    modes = {v for k, v in projection.items() if k != "_id"}
    if len(modes) > 1:
        raise InvalidParameter('Query parameter "select" cannot mix inclusion and exclusion')
    return projection or None


def parse_projection(params: Mapping[str, Any]) -> Optional[Dict[str, int]]:
    """`select`, or its alias `filter`, as a validated projection."""
    raw = params.get("select")
    if raw is None:
        raw = params.get("filter")
    return build_projection(parse_json_param(raw, "select"))


@dataclass(frozen=True)
class ListQuery:
    filter: Dict[str, Any]
    sort: Optional[List[Tuple[str, int]]] = None
    projection: Optional[Dict[str, int]] = None
    skip: Optional[int] = None
    limit: Optional[int] = None
    count: bool = False


def build_list_query(params: Mapping[str, Any], default_limit: Optional[int] = None) -> ListQuery:
    """Parse and validate list parameters. Raises InvalidParameter."""
    where = parse_json_param(params.get("where"), "where")
    sort = parse_json_param(params.get("sort"), "sort")
    projection = parse_projection(params)
    skip = parse_integer(params.get("skip"), "skip")
    limit = parse_integer(params.get("limit"), "limit")
    count = parse_boolean(params.get("count")) or False

    if limit is None:
        limit = default_limit

    return ListQuery(
        filter=build_filter(where),
        sort=build_sort(sort),
        projection=projection,
        skip=skip,
        limit=limit,
        count=count,
    )


async def run_list_query(collection, query: ListQuery) -> Union[int, List[Dict[str, Any]]]:
    if query.count:
        return await collection.count_documents(query.filter)
    if query.limit == 0:
        return []
    cursor = collection.find(query.filter, query.projection)
    if query.sort:
        cursor = cursor.sort(query.sort)
    if query.skip:
        cursor = cursor.skip(query.skip)
    if query.limit is not None:
        cursor = cursor.limit(query.limit)
    docs = await cursor.to_list(length=None)
    logger.debug("list %s filter=%s returned=%d", collection.name, query.filter, len(docs))
    return docs
