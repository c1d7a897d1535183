"""
Database access for the AgriConnect API.

A single pymongo client is created from DATABASE_URL / DATABASE_NAME at import
time. When either is missing `db` stays None and the API reports the database
as unavailable. Datetimes are stored as naive UTC, which is what pymongo hands
back by default.
"""
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from bson import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel
from pymongo import MongoClient
from pymongo.database import Database

from config import get_settings

_settings = get_settings()

client: Optional[MongoClient] = None
db: Optional[Database] = None

if _settings.database_url and _settings.database_name:
    client = MongoClient(_settings.database_url)
    db = client[_settings.database_name]


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    """Normalise an incoming datetime to the naive-UTC form used in storage."""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def parse_object_id(value: Any) -> Optional[ObjectId]:
    """Return an ObjectId for `value`, or None when it can never resolve."""
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        return None


def serialize_doc(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not doc:
        return doc
    d = dict(doc)
    if "_id" in d:
        d["id"] = str(d.pop("_id"))
    for k, v in d.items():
        if isinstance(v, ObjectId):
            d[k] = str(v)
    return d


def _resolve(database: Optional[Database]) -> Database:
    target = database if database is not None else db
    if target is None:
        raise RuntimeError("Database is not configured. Set DATABASE_URL and DATABASE_NAME.")
    return target


def create_document(collection_name: str, data: Union[BaseModel, Dict[str, Any]], database: Optional[Database] = None) -> str:
    """Insert a document, stamping created_at/updated_at, and return its id."""
    target = _resolve(database)
    if isinstance(data, BaseModel):
        doc = data.model_dump()
    else:
        doc = dict(data)
    now = utcnow()
    doc["created_at"] = now
    doc["updated_at"] = now
    result = target[collection_name].insert_one(doc)
    return str(result.inserted_id)


def get_documents(collection_name: str, filter_dict: Optional[Dict[str, Any]] = None, limit: Optional[int] = None, database: Optional[Database] = None) -> List[Dict[str, Any]]:
    target = _resolve(database)
    cursor = target[collection_name].find(filter_dict or {})
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)
