"""
Entity services: one logical CRUD operation per call.

Every function returns a RequestOutcome; nothing raised below escapes
unmapped (see outcomes.handles_errors). Relationship fields are written
through RelationshipSync only.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional

from bson import ObjectId
from dateutil import parser as dateparser

from config import get_settings
from database import TASKS, USERS, as_object_id, create_document, serialize
from outcomes import (
    DuplicateKey,
    InvalidIdentifier,
    InvalidParameter,
    NotFound,
    RequestOutcome,
    created,
    handles_errors,
    ok,
)
from query import build_list_query, normalize_id_list, parse_boolean, parse_projection, run_list_query
from relationships import UNASSIGNED_NAME, RelationshipSync
from schemas import Task, User

logger = logging.getLogger(__name__)


# -----------------------------
# Field helpers
# -----------------------------

def ensure_valid_id(value: Any, name: str) -> ObjectId:
    oid = as_object_id(value)
    if oid is None:
        raise InvalidIdentifier(f"Invalid {name} id")
    return oid


def parse_deadline(value: Any, label: str = "Task deadline") -> datetime:
    """
    Parse a deadline the way clients send it: a date string, or epoch
    milliseconds as a number or numeric string. Naive values are UTC.
    """
    if value is None or value == "":
        raise InvalidParameter(f"{label} is required.")
    invalid = InvalidParameter(f"{label} must be a valid date.")
    if isinstance(value, bool):
        raise invalid

    number: Optional[float] = None
    text = ""
    if isinstance(value, (int, float)):
        number = value
    elif isinstance(value, str):
        text = value.strip()
        try:
            number = float(text)
        except ValueError:
            number = None
    else:
        raise invalid

    try:
        if number is not None:
            parsed = datetime.fromtimestamp(number / 1000, tz=timezone.utc)
        else:
            parsed = dateparser.parse(text)
    except (ValueError, OverflowError, OSError):
        raise invalid
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def coerce_completed(value: Any) -> bool:
    parsed = parse_boolean(value)
    return parsed if parsed is not None else bool(value)


async def _resolve_assignee(db, user_id: str) -> Dict[str, Any]:
    oid = ensure_valid_id(user_id, "user")
    user = await db[USERS].find_one({"_id": oid})
    if not user:
        raise NotFound("Assigned user not found.")
    return user


async def _email_taken(db, email: str, exclude: Optional[ObjectId] = None) -> bool:
    query: Dict[str, Any] = {"email": email}
    if exclude is not None:
        query["_id"] = {"$ne": exclude}
    return await db[USERS].find_one(query, {"_id": 1}) is not None


def _task_fields(payload: Mapping[str, Any]) -> Dict[str, Any]:
    name = payload.get("name")
    if not name:
        raise InvalidParameter("Task name is required.")
    return {
        "name": name,
        "description": payload.get("description") or "",
        "deadline": parse_deadline(payload.get("deadline")),
        "completed": coerce_completed(payload.get("completed")),
    }


def _assigned_task(fields: Dict[str, Any], assignee: Optional[Dict[str, Any]]) -> Task:
    return Task(
        **fields,
        assignedUser=str(assignee["_id"]) if assignee else "",
        assignedUserName=assignee["name"] if assignee else UNASSIGNED_NAME,
    )


def _require_user_fields(payload: Mapping[str, Any]) -> User:
    if not payload.get("name"):
        raise InvalidParameter("User name is required.")
    if not payload.get("email"):
        raise InvalidParameter("User email is required.")
    return User(name=payload["name"], email=payload["email"])


# -----------------------------
# Tasks
# -----------------------------

@handles_errors
async def list_tasks(db, params: Mapping[str, Any]) -> RequestOutcome:
    query = build_list_query(params, default_limit=get_settings().task_default_limit)
    result = await run_list_query(db[TASKS], query)
    return ok(result if query.count else [serialize(d) for d in result])


@handles_errors
async def get_task(db, task_id: str, params: Mapping[str, Any]) -> RequestOutcome:
    oid = ensure_valid_id(task_id, "task")
    task = await db[TASKS].find_one({"_id": oid}, parse_projection(params))
    if not task:
        raise NotFound("Task not found.")
    return ok(serialize(task))


@handles_errors
async def create_task(db, payload: Mapping[str, Any]) -> RequestOutcome:
    fields = _task_fields(payload)
    assignee = None
    if payload.get("assignedUser"):
        assignee = await _resolve_assignee(db, payload["assignedUser"])
    task = _assigned_task(fields, assignee)

    doc = await create_document(db, TASKS, task.model_dump())
    await RelationshipSync(db).on_task_assigned(doc, "", doc["assignedUser"])
    logger.info("task created id=%s assignedUser=%r", doc["_id"], doc["assignedUser"])
    return created(serialize(doc), "Task created successfully.")


@handles_errors
async def update_task(db, task_id: str, payload: Mapping[str, Any]) -> RequestOutcome:
    oid = ensure_valid_id(task_id, "task")
    fields = _task_fields(payload)

    existing = await db[TASKS].find_one({"_id": oid})
    if not existing:
        raise NotFound("Task not found.")
    previous_user_id = existing.get("assignedUser") or ""

    assignee = None
    if payload.get("assignedUser"):
        assignee = await _resolve_assignee(db, payload["assignedUser"])
    changes = _assigned_task(fields, assignee).model_dump()

    await db[TASKS].update_one({"_id": oid}, {"$set": changes})
    existing.update(changes)
    await RelationshipSync(db).on_task_assigned(existing, previous_user_id, changes["assignedUser"])
    logger.info("task updated id=%s assignedUser %r -> %r", oid, previous_user_id, changes["assignedUser"])
    return ok(serialize(existing), "Task updated successfully.")


@handles_errors
async def delete_task(db, task_id: str) -> RequestOutcome:
    oid = ensure_valid_id(task_id, "task")
    task = await db[TASKS].find_one({"_id": oid})
    if not task:
        raise NotFound("Task not found.")
    await db[TASKS].delete_one({"_id": oid})
    await RelationshipSync(db).on_task_deleted(task)
    logger.info("task deleted id=%s", oid)
    return ok({}, "Task deleted successfully.")


# -----------------------------
# Users
# -----------------------------

@handles_errors
async def list_users(db, params: Mapping[str, Any]) -> RequestOutcome:
    query = build_list_query(params)
    result = await run_list_query(db[USERS], query)
    return ok(result if query.count else [serialize(d) for d in result])


@handles_errors
async def get_user(db, user_id: str, params: Mapping[str, Any]) -> RequestOutcome:
    oid = ensure_valid_id(user_id, "user")
    user = await db[USERS].find_one({"_id": oid}, parse_projection(params))
    if not user:
        raise NotFound("User not found.")
    return ok(serialize(user))


@handles_errors
async def create_user(db, payload: Mapping[str, Any]) -> RequestOutcome:
    requested = normalize_id_list(payload.get("pendingTasks"))
    user = _require_user_fields(payload)
    doc: Dict[str, Any] = {"_id": ObjectId(), **user.model_dump()}

    if await _email_taken(db, doc["email"]):
        raise DuplicateKey()

    if requested:
        await RelationshipSync(db).apply_assignments(doc, requested)

    doc = await create_document(db, USERS, doc)
    logger.info("user created id=%s pending=%d", doc["_id"], len(doc["pendingTasks"]))
    return created(serialize(doc), "User created successfully.")


@handles_errors
async def update_user(db, user_id: str, payload: Mapping[str, Any]) -> RequestOutcome:
    oid = ensure_valid_id(user_id, "user")
    requested = normalize_id_list(payload.get("pendingTasks"))
    user = _require_user_fields(payload)

    existing = await db[USERS].find_one({"_id": oid})
    if not existing:
        raise NotFound("User not found.")
    if await _email_taken(db, user.email, exclude=oid):
        raise DuplicateKey()

    renamed = existing.get("name") != user.name
    existing["name"] = user.name
    existing["email"] = user.email

    sync = RelationshipSync(db)
    await sync.apply_assignments(existing, requested)
    if renamed:
        await sync.on_user_renamed(existing)

    await db[USERS].update_one(
        {"_id": oid},
        {"$set": {k: existing[k] for k in ("name", "email", "pendingTasks")}},
    )
    logger.info("user updated id=%s pending=%d", oid, len(existing["pendingTasks"]))
    return ok(serialize(existing), "User updated successfully.")


@handles_errors
async def delete_user(db, user_id: str) -> RequestOutcome:
    oid = ensure_valid_id(user_id, "user")
    user = await db[USERS].find_one({"_id": oid})
    if not user:
        raise NotFound("User not found.")
    await RelationshipSync(db).on_user_deleted(user)
    await db[USERS].delete_one({"_id": oid})
    logger.info("user deleted id=%s", oid)
    return ok({}, "User deleted successfully.")
