"""
MongoDB access for the Task API.

Collections are named after the entity in lower case: User -> "user",
Task -> "task". The client is created lazily so importing the app never
touches the network.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from bson import ObjectId
from pymongo import ASCENDING, AsyncMongoClient

from config import get_settings

logger = logging.getLogger(__name__)

USERS = "user"
TASKS = "task"

_client: Optional[AsyncMongoClient] = None


def get_client() -> AsyncMongoClient:
    global _client
    if _client is None:
        settings = get_settings()
        _client = AsyncMongoClient(settings.database_url, tz_aware=True)
        logger.info("Mongo client created db=%s", settings.database_name)
    return _client


def get_db():
    """FastAPI dependency returning the application database."""
    return get_client()[get_settings().database_name]


async def close_client() -> None:
    global _client
    if _client is not None:
        await _client.close()
        _client = None


async def ensure_indexes(db) -> None:
    await db[USERS].create_index([("email", ASCENDING)], unique=True)
    await db[TASKS].create_index([("assignedUser", ASCENDING)])


# -----------------------------
# Identifiers and documents
# -----------------------------

def is_valid_id(value: Any) -> bool:
    return isinstance(value, str) and ObjectId.is_valid(value)


def as_object_id(value: Any) -> Optional[ObjectId]:
    """Return an ObjectId for a well-formed id string, otherwise None."""
    if isinstance(value, ObjectId):
        return value
    if is_valid_id(value):
        return ObjectId(value)
    return None


def serialize(doc: Dict[str, Any]) -> Dict[str, Any]:
    if not doc:
        return doc
    d = {**doc}
    if "_id" in d:
        d["id"] = str(d.pop("_id"))
    for k, v in list(d.items()):
        if isinstance(v, datetime):
            if v.tzinfo is None:
                v = v.replace(tzinfo=timezone.utc)
            d[k] = v.astimezone(timezone.utc).isoformat()
        if isinstance(v, ObjectId):
            d[k] = str(v)
    return d


async def create_document(db, collection_name: str, data: Dict[str, Any]) -> Dict[str, Any]:
    """Insert a document, stamping `_id` and `dateCreated` if missing."""
    doc = {**data}
    doc.setdefault("_id", ObjectId())
    doc.setdefault("dateCreated", datetime.now(timezone.utc))
    await db[collection_name].insert_one(doc)
    logger.debug("inserted %s id=%s", collection_name, doc["_id"])
    return doc
