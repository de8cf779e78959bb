from __future__ import annotations

from datetime import datetime, timezone

import pytest
from bson import ObjectId

from outcomes import InvalidParameter
from query import (
    ListQuery,
    build_filter,
    build_list_query,
    build_projection,
    build_sort,
    normalize_id_list,
    parse_boolean,
    parse_integer,
    parse_json_param,
    run_list_query,
)


def test_json_params_accept_strings_and_structures() -> None:
    assert parse_json_param(None, "where") is None
    assert parse_json_param('{"completed": false}', "where") == {"completed": False}
    assert parse_json_param({"a": 1}, "where") == {"a": 1}


def test_invalid_json_is_a_client_error() -> None:
    with pytest.raises(InvalidParameter) as exc:
        parse_json_param("{invalid", "where")
    assert exc.value.status == 400
    assert '"where"' in exc.value.message


def test_deeply_nested_json_is_a_client_error() -> None:
    for name in ("where", "sort", "select"):
        with pytest.raises(InvalidParameter) as exc:
            parse_json_param("[" * 100_000, name)
        assert exc.value.status == 400


def test_deeply_nested_pending_tasks_is_a_client_error() -> None:
    with pytest.raises(InvalidParameter):
        normalize_id_list("[" * 100_000)


@pytest.mark.asyncio
async def test_nested_where_never_reaches_the_store(db) -> None:
    from services import list_tasks

    outcome = await list_tasks(db, {"where": "[" * 100_000})

    assert outcome.status == 400
    assert outcome.data is None
    assert db["task"].calls == {}


@pytest.mark.parametrize(
    "raw, expected",
    [("0", 0), ("25", 25), (" 7 ", 7), ("+5", 5), ("0009", 9), (3, 3), (None, None), (str(2**63 - 1), 2**63 - 1)],
)
def test_parse_integer_accepts_non_negative(raw, expected) -> None:
    assert parse_integer(raw, "skip") == expected


@pytest.mark.parametrize(
    "raw",
    ["-1", "abc", "1.5", "", "--5", -3, True, 2.0, "9" * 5000, str(2**63), str(2**70), 2**70],
)
def test_parse_integer_rejects(raw) -> None:
    with pytest.raises(InvalidParameter) as exc:
        parse_integer(raw, "limit")
    assert exc.value.message == 'Query parameter "limit" must be a non-negative integer'


@pytest.mark.asyncio
async def test_oversized_limit_is_a_client_error(db) -> None:
    from services import list_tasks

    outcome = await list_tasks(db, {"limit": "9" * 5000})

    assert (outcome.status, outcome.data) == (400, None)


@pytest.mark.parametrize(
    "raw, expected",
    [("true", True), ("1", True), ("TRUE", True), ("false", False), ("0", False), (True, True), ("yes", None), (None, None)],
)
def test_parse_boolean(raw, expected) -> None:
    assert parse_boolean(raw) is expected


@pytest.mark.parametrize(
    "raw, expected",
    [
        (None, []),
        ("", []),
        ("   ", []),
        ([], []),
        (["a", "b"], ["a", "b"]),
        ('["a", "b"]', ["a", "b"]),
        ('"a"', ['"a"']),
        ("a, b ,,c", ["a", "b", "c"]),
        ("abc", ["abc"]),
    ],
)
def test_normalize_id_list_shapes(raw, expected) -> None:
    assert normalize_id_list(raw) == expected


def test_normalize_id_list_rejects_objects() -> None:
    with pytest.raises(InvalidParameter):
        normalize_id_list({"id": "a"})


def test_filter_rejects_server_side_javascript() -> None:
    with pytest.raises(InvalidParameter):
        build_filter({"$where": "this.completed"})
    with pytest.raises(InvalidParameter):
        build_filter({"$or": [{"name": "x"}, {"$expr": {"$function": {}}}]})


def test_filter_must_be_an_object() -> None:
    with pytest.raises(InvalidParameter):
        build_filter([1, 2])


def test_filter_casts_ids() -> None:
    oid = ObjectId()
    assert build_filter({"_id": str(oid)}) == {"_id": oid}
    assert build_filter({"id": {"$in": [str(oid), "nope"]}}) == {"_id": {"$in": [oid, "nope"]}}
    assert build_filter({"assignedUser": str(oid)}) == {"assignedUser": str(oid)}


def test_sort_directions_are_normalized() -> None:
    assert build_sort({"name": 1, "deadline": "desc", "id": "-1"}) == [
        ("name", 1),
        ("deadline", -1),
        ("_id", -1),
    ]
    assert build_sort({}) is None
    for bad in ({"name": 2}, {"name": True}, {"name": [1]}):
        with pytest.raises(InvalidParameter):
            build_sort(bad)


def test_projection_validation() -> None:
    assert build_projection({"name": 1, "_id": 0}) == {"name": 1, "_id": 0}
    assert build_projection({"email": False}) == {"email": 0}
    with pytest.raises(InvalidParameter):
        build_projection({"name": 1, "email": 0})
    with pytest.raises(InvalidParameter):
        build_projection({"name": "yes"})


def test_build_list_query_defaults() -> None:
    q = build_list_query({}, default_limit=100)
    assert q == ListQuery(filter={}, limit=100)

    q = build_list_query({"limit": "5", "skip": "2", "count": "nope"}, default_limit=100)
    assert (q.limit, q.skip, q.count) == (5, 2, False)


def test_build_list_query_filter_alias_for_select() -> None:
    q = build_list_query({"filter": '{"name": 1}'})
    assert q.projection == {"name": 1}
    q = build_list_query({"select": '{"email": 1}', "filter": '{"name": 1}'})
    assert q.projection == {"email": 1}


def test_build_list_query_rejects_malformed_where() -> None:
    with pytest.raises(InvalidParameter):
        build_list_query({"where": "{invalid"})


# -----------------------------
# Execution
# -----------------------------

def _seed(db) -> None:
    now = datetime.now(timezone.utc)
    db.raw["task"].insert_many(
        [
            {"name": "a", "completed": False, "deadline": now},
            {"name": "b", "completed": True, "deadline": now},
            {"name": "c", "completed": False, "deadline": now},
            {"name": "d", "completed": False, "deadline": now},
        ]
    )


@pytest.mark.asyncio
async def test_where_and_count_agree(db) -> None:
    _seed(db)
    coll = db["task"]

    docs = await run_list_query(coll, build_list_query({"where": '{"completed": false}'}))
    assert sorted(d["name"] for d in docs) == ["a", "c", "d"]

    total = await run_list_query(coll, build_list_query({"where": '{"completed": false}', "count": "true", "limit": "1"}))
    assert total == 3


@pytest.mark.asyncio
async def test_sort_skip_limit_and_projection(db) -> None:
    _seed(db)
    q = build_list_query({"sort": '{"name": -1}', "skip": "1", "limit": "2", "select": '{"name": 1, "_id": 0}'})
    docs = await run_list_query(db["task"], q)
    assert docs == [{"name": "c"}, {"name": "b"}]


@pytest.mark.asyncio
async def test_limit_zero_returns_nothing(db) -> None:
    _seed(db)
    docs = await run_list_query(db["task"], build_list_query({"limit": "0"}))
    assert docs == []
