"""
MongoDB access for the marketplace backend.

`db` is created once at import time from DATABASE_URL / DATABASE_NAME and is
`None` when the service runs without a database. Routes receive the database
through the `get_db` dependency so tests can swap in an in-memory one.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from bson import ObjectId
from fastapi import HTTPException
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database

from config import DATABASE_NAME, DATABASE_URL

logger = logging.getLogger(__name__)

db: Optional[Database] = None

if DATABASE_URL and DATABASE_NAME:
    _client = MongoClient(DATABASE_URL, tz_aware=True)
    db = _client[DATABASE_NAME]


def get_db() -> Database:
    if db is None:
        raise HTTPException(status_code=500, detail="Database not configured")
    return db


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Mongo hands back naive datetimes unless the client is tz_aware."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def oid(id_str: str) -> ObjectId:
    try:
        return ObjectId(id_str)
    except Exception:
        raise HTTPException(status_code=400, detail="Invalid id")


def serialize(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not doc:
        return doc
    d = dict(doc)
    if "_id" in d:
        d["id"] = str(d.pop("_id"))
    return d


def create_document(database: Database, collection_name: str, data: Union[BaseModel, dict]) -> str:
    if isinstance(data, BaseModel):
        data_dict = data.model_dump()
    else:
        data_dict = dict(data)
    now = utcnow()
    data_dict.setdefault("created_at", now)
    data_dict["updated_at"] = now
    result = database[collection_name].insert_one(data_dict)
    return str(result.inserted_id)


def get_documents(database: Database, collection_name: str, filter_dict: Optional[dict] = None, limit: Optional[int] = None) -> List[dict]:
    cursor = database[collection_name].find(filter_dict or {})
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def ensure_indexes(database: Database) -> None:
    # carts: one per customer, abandoned carts reaped by TTL
    database["carts"].create_index("customer_id", unique=True)
    database["carts"].create_index([("last_modified", DESCENDING)])
    database["carts"].create_index("expires_at", expireAfterSeconds=0)

    database["wishlists"].create_index("customer_id", unique=True)
    database["wishlists"].create_index([("last_modified", DESCENDING)])
    database["wishlists"].create_index("items.product_id")

    database["orders"].create_index("order_id", unique=True)
    database["orders"].create_index([("seller_id", ASCENDING), ("status", ASCENDING)])
    database["orders"].create_index("customer_id")
    database["orders"].create_index([("created_at", DESCENDING)])
    database["orders"].create_index([("status", ASCENDING), ("created_at", DESCENDING)])
    database["orders"].create_index("items.product_id")

    # one review per purchase
    database["reviews"].create_index(
        [("product_id", ASCENDING), ("customer_id", ASCENDING), ("order_id", ASCENDING)],
        unique=True,
    )
    database["reviews"].create_index([("product_id", ASCENDING), ("created_at", DESCENDING)])
    database["reviews"].create_index([("customer_id", ASCENDING), ("created_at", DESCENDING)])
    database["reviews"].create_index([("seller_id", ASCENDING), ("created_at", DESCENDING)])
    database["reviews"].create_index("status")

    database["products"].create_index("seller_id")
    database["products"].create_index([("status", ASCENDING), ("in_stock", ASCENDING)])
    database["customers"].create_index("email", unique=True)
    database["sellers"].create_index("email", unique=True)
    logger.info("Indexes ensured on %s", database.name)
