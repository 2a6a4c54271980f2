"""
Database helpers

A single MongoDB database is shared by the whole API. The connection is made
at import time from DATABASE_URL / DATABASE_NAME; when they are not set ``db``
stays None and every request that needs the store fails with a ServerError.

Routes never import ``db`` directly, they take it through the ``get_db``
dependency so the store can be swapped (tests use mongomock).
"""
import logging
import math
from datetime import datetime, timezone
from typing import Callable, List, Tuple, Union

from bson import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from config import DATABASE_NAME, DATABASE_URL
from errors import Conflict, NotFound, ServerError, ValidationFailed

logger = logging.getLogger(__name__)

_client = None
db = None

if DATABASE_URL and DATABASE_NAME:
    _client = MongoClient(DATABASE_URL)
    db = _client[DATABASE_NAME]


def get_db() -> Database:
    if db is None:
        raise ServerError("Database not configured")
    return db


def utcnow() -> datetime:
    # pymongo hands datetimes back as naive UTC, so store them that way too
    return datetime.now(timezone.utc).replace(tzinfo=None)


def ensure_indexes(database: Database):
    database["user"].create_index("email", unique=True)
    database["product"].create_index("sku", unique=True)
    database["product"].create_index("seller")
    database["product"].create_index([("category", ASCENDING), ("is_active", ASCENDING)])
    database["order"].create_index("order_number", unique=True)
    database["order"].create_index("customer")
    database["order"].create_index("sellers")
    database["order"].create_index("delivery.delivery_agent")
    database["order"].create_index([("created_at", DESCENDING)])
    database["revoked_token"].create_index("jti", unique=True)
    # rows are dropped by the server once the token would have expired anyway
    database["revoked_token"].create_index("expires_at", expireAfterSeconds=0)
    logger.info("Indexes ensured on %s", database.name)


# ----------------------- Documents -----------------------
def create_document(database: Database, collection_name: str, data: Union[BaseModel, dict]) -> str:
    """Insert ``data`` stamped with created_at/updated_at and return the new id."""
    doc = data.model_dump() if isinstance(data, BaseModel) else data
    now = utcnow()
    doc.setdefault("created_at", now)
    doc["updated_at"] = now
    result = database[collection_name].insert_one(doc)
    return str(result.inserted_id)


def insert_with_generated_key(
    database: Database,
    collection_name: str,
    doc: dict,
    field: str,
    generate: Callable[[], str],
    attempts: int = 3,
) -> str:
    """Insert ``doc`` whose unique ``field`` is produced by ``generate``.

    A caller-supplied value is never regenerated: a collision on it is a
    Conflict. Generated values are redrawn on a duplicate key error.
    """
    supplied = bool(doc.get(field))
    for attempt in range(1, attempts + 1):
        if not supplied:
            doc[field] = generate()
        try:
            return create_document(database, collection_name, doc)
        except DuplicateKeyError:
            doc.pop("_id", None)
            if supplied:
                raise Conflict(f"{field} '{doc[field]}' already exists")
            logger.warning("Generated %s collided (attempt %d/%d)", field, attempt, attempts)
    raise Conflict(f"Could not generate a unique {field}")


def paginate(
    database: Database,
    collection_name: str,
    filter_dict: dict,
    page: int,
    limit: int,
    sort: List[Tuple[str, int]],
) -> Tuple[List[dict], dict]:
    skip = (page - 1) * limit
    cursor = database[collection_name].find(filter_dict).sort(sort).skip(skip).limit(limit)
    docs = list(cursor)
    total = database[collection_name].count_documents(filter_dict)
    pagination = {
        "page": page,
        "limit": limit,
        "total": total,
        "pages": math.ceil(total / limit) if limit else 0,
    }
    return docs, pagination


# ----------------------- Ids & serialization -----------------------
def to_obj_id(id_str: str, label: str = "Resource") -> ObjectId:
    try:
        return ObjectId(id_str)
    except (InvalidId, TypeError):
        raise NotFound(f"{label} not found")


def parse_sort(sort: str, allowed: dict) -> List[Tuple[str, int]]:
    """Turn ``-price`` style sort keys into pymongo sort specs.

    ``allowed`` maps the public key to the stored field name.
    """
    direction = DESCENDING if sort.startswith("-") else ASCENDING
    key = sort[1:] if sort.startswith("-") else sort
    if key not in allowed:
        options = ", ".join(sorted(allowed))
        raise ValidationFailed(details=[{"field": "sort", "message": f"Sort must be one of: {options}"}])
    return [(allowed[key], direction), ("_id", direction)]


def _convert(value):
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: _convert(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_convert(v) for v in value]
    return value


def serialize_doc(doc):
    if not doc:
        return doc
    doc = dict(doc)
    if "_id" in doc:
        doc["id"] = str(doc.pop("_id"))
    return _convert(doc)
