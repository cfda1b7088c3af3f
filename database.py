"""
MongoDB access helpers.

The connection is configured from DATABASE_URL / DATABASE_NAME. When either is missing
``db`` stays None and routes answer 503 through ``get_db``.
"""
import logging
import os
from datetime import datetime, timezone
from typing import Any, Optional, Union

from bson import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient, ReturnDocument
from pymongo.database import Database

from errors import DatabaseUnavailableError, InvalidIdentifierError

logger = logging.getLogger(__name__)

COUNTERS = "counters"

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")
MONGO_TIMEOUT_MS = int(os.getenv("MONGO_TIMEOUT_MS", "5000"))

client: Optional[MongoClient] = None
db: Optional[Database] = None

if DATABASE_URL and DATABASE_NAME:
    client = MongoClient(
        DATABASE_URL,
        serverSelectionTimeoutMS=MONGO_TIMEOUT_MS,
        connectTimeoutMS=MONGO_TIMEOUT_MS,
        socketTimeoutMS=MONGO_TIMEOUT_MS,
    )
    db = client[DATABASE_NAME]


def get_db() -> Database:
    """FastAPI dependency returning the configured database."""
    if db is None:
        raise DatabaseUnavailableError()
    return db


def now() -> datetime:
    return datetime.now(timezone.utc)


def to_object_id(value: str, kind: str = "document") -> ObjectId:
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        raise InvalidIdentifierError(kind, str(value))


def create_document(database: Database, collection_name: str, data: Union[BaseModel, dict]) -> str:
    """Insert a document with created_at/updated_at stamps and return its _id as a string."""
    if isinstance(data, BaseModel):
        data_dict = data.model_dump(mode="json")
    else:
        data_dict = dict(data)
    stamp = now()
    data_dict["created_at"] = stamp
    data_dict["updated_at"] = stamp
    result = database[collection_name].insert_one(data_dict)
    return str(result.inserted_id)


def get_documents(
    database: Database,
    collection_name: str,
    filter_dict: Optional[dict] = None,
    limit: Optional[int] = None,
    sort: Optional[list] = None,
) -> list:
    cursor = database[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def _convert(value: Any) -> Any:
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: _convert(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_convert(v) for v in value]
    return value


def doc_to_dict(doc: dict, id_key: str = "id") -> dict:
    """Make a document JSON friendly; ``_id`` is renamed to ``id_key``."""
    out = {k: _convert(v) for k, v in doc.items()}
    if "_id" in out:
        out[id_key] = out.pop("_id")
    return out


# ---------- Sequences ----------

def next_sequence(database: Database, name: str) -> int:
    """Atomically allocate the next value of a named counter (first value is 1)."""
    counter = database[COUNTERS].find_one_and_update(
        {"_id": name},
        {"$inc": {"seq": 1}},
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )
    return counter["seq"]


def sync_sequence(database: Database, name: str, collection_name: str, field: str) -> int:
    """Raise a counter to the highest ``field`` already stored in a collection.

    Never lowers the counter. Returns the counter value after syncing.
    """
    highest = database[collection_name].find_one(
        {field: {"$exists": True}}, sort=[(field, DESCENDING)], projection={field: 1}
    )
    current_max = int(highest[field]) if highest else 0
    database[COUNTERS].update_one({"_id": name}, {"$setOnInsert": {"seq": 0}}, upsert=True)
    database[COUNTERS].update_one(
        {"_id": name, "seq": {"$lt": current_max}}, {"$set": {"seq": current_max}}
    )
    counter = database[COUNTERS].find_one({"_id": name})
    return counter["seq"]


def ensure_indexes(database: Database) -> None:
    database["order"].create_index([("id", ASCENDING)], unique=True)
    database["order"].create_index([("user_id", ASCENDING)])
    database["cart"].create_index([("user_id", ASCENDING)], unique=True)
    database["product"].create_index([("sold", DESCENDING)])
    logger.info("Indexes ensured on %s", database.name)
