"""
MongoDB access for the storefront.

`db` is None until both DATABASE_URL and DATABASE_NAME are set; callers check
for that before touching a collection.
"""

import os
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from bson import ObjectId
from bson.errors import InvalidId
from dotenv import load_dotenv
from pydantic import BaseModel
from pymongo import ASCENDING, MongoClient

from logging_config import get_logger

load_dotenv()

logger = get_logger(__name__)

USERS = "users"
PRODUCTS = "products"
CATEGORIES = "categories"
ORDERS = "orders"

_client = None
db = None

database_url = os.getenv("DATABASE_URL")
database_name = os.getenv("DATABASE_NAME")

if database_url and database_name:
    _client = MongoClient(database_url)
    db = _client[database_name]


def to_object_id(value: Any) -> Optional[ObjectId]:
    """Parse an id coming from a path or body; None when it is not a valid ObjectId."""
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        return None


def create_document(collection_name: str, data: Union[BaseModel, Dict[str, Any]]) -> str:
    """Insert a single document with timestamps and return its id as a string."""
    if db is None:
        raise Exception("Database not available. Check DATABASE_URL and DATABASE_NAME environment variables.")

    if isinstance(data, BaseModel):
        data_dict = data.model_dump()
    else:
        data_dict = dict(data)

    now = datetime.now(timezone.utc)
    data_dict["created_at"] = now
    data_dict["updated_at"] = now

    result = db[collection_name].insert_one(data_dict)
    return str(result.inserted_id)


def get_documents(collection_name: str, filter_dict: Optional[dict] = None) -> List[dict]:
    if db is None:
        raise Exception("Database not available. Check DATABASE_URL and DATABASE_NAME environment variables.")

    return list(db[collection_name].find(filter_dict or {}))


def ensure_indexes() -> None:
    """Unique keys the application relies on; safe to call on every startup."""
    if db is None:
        logger.warning("Database not configured, skipping index creation")
        return
    db[USERS].create_index([("email", ASCENDING)], unique=True)
    db[CATEGORIES].create_index([("slug", ASCENDING)], unique=True)
    db[ORDERS].create_index(
        [("buyer", ASCENDING), ("idempotency_key", ASCENDING)],
        name="buyer_idempotency_key_unique",
        unique=True,
        partialFilterExpression={"idempotency_key": {"$type": "string"}},
    )
    logger.info("Database indexes ensured", extra={"database": db.name})
