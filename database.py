"""
MongoDB access helpers.

Collections are named after what they hold; documents are stamped with
``createdAt`` on insert and exposed to clients with ``id`` instead of ``_id``.
"""
from datetime import datetime, timezone
from typing import Any, Optional

from bson import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel
from pymongo import DESCENDING, MongoClient
from pymongo.database import Database

import config
from errors import NotFoundError

USERS = "users"
PRODUCTS = "products"
ORDERS = "orders"
CONTACTS = "contacts"
SECURITY_LOGS = "securitylogs"
LOCKOUTS = "lockouts"
LOGIN_ATTEMPTS = "loginattempts"

_client: Optional[MongoClient] = None


def get_client() -> MongoClient:
    global _client
    if _client is None:
        _client = MongoClient(config.MONGODB_URI, tz_aware=True)
    return _client


def get_db() -> Database:
    """FastAPI dependency returning the storefront database."""
    return get_client()[config.DATABASE_NAME]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Attach UTC to datetimes read back without tzinfo."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def parse_object_id(kind: str, doc_id: str) -> ObjectId:
    try:
        return ObjectId(doc_id)
    except (InvalidId, TypeError):
        raise NotFoundError(kind, doc_id)


def create_document(db: Database, collection: str, data: Any) -> str:
    if isinstance(data, BaseModel):
        doc = data.model_dump(mode="json", by_alias=True)
    else:
        doc = dict(data)
    doc.setdefault("createdAt", utcnow())
    result = db[collection].insert_one(doc)
    return str(result.inserted_id)


def get_documents(
    db: Database,
    collection: str,
    filter_dict: Optional[dict] = None,
    limit: Optional[int] = None,
) -> list[dict]:
    """Fetch documents newest first."""
    cursor = db[collection].find(filter_dict or {}).sort("createdAt", DESCENDING)
    if limit:
        cursor = cursor.limit(limit)
    return [serialize(doc) for doc in cursor]


def serialize(doc: dict) -> dict:
    doc = dict(doc)
    doc["id"] = str(doc.pop("_id"))
    return doc
