"""
MongoDB bootstrap and document helpers.

The client is created lazily by pymongo, so importing this module never opens a
connection. When DATABASE_URL / DATABASE_NAME are missing, ``db`` stays None and
``get_db`` reports a server configuration error on first use.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from bson import ObjectId
from pymongo import MongoClient
from pymongo.database import Database

from config import get_settings
from errors import ServerConfigError, ValidationError

logger = logging.getLogger(__name__)

_settings = get_settings()

client: Optional[MongoClient] = None
db: Optional[Database] = None

if _settings.database_url and _settings.database_name:
    client = MongoClient(_settings.database_url)
    db = client[_settings.database_name]
else:
    logger.warning("DATABASE_URL or DATABASE_NAME not set; database unavailable")


def get_db() -> Database:
    if db is None:
        raise ServerConfigError("Server misconfigured: database not available")
    return db


def close_db() -> None:
    if client is not None:
        client.close()


# -----------------------------
# Helpers
# -----------------------------

def utcnow() -> datetime:
    """Current time as naive UTC, the form Mongo hands datetimes back in."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize to naive UTC; naive input from clients is taken to be UTC already."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def oid(value: Any, label: str = "id") -> ObjectId:
    if isinstance(value, ObjectId):
        return value
    if not isinstance(value, str) or not ObjectId.is_valid(value):
        raise ValidationError(f"Invalid {label}")
    return ObjectId(value)


def same_id(a: Any, b: Any) -> bool:
    if a is None or b is None:
        return False
    return str(a) == str(b)


def _serialize_value(v: Any) -> Any:
    if isinstance(v, ObjectId):
        return str(v)
    if isinstance(v, datetime):
        return (v if v.tzinfo else v.replace(tzinfo=timezone.utc)).isoformat()
    if isinstance(v, dict):
        return serialize(v)
    if isinstance(v, list):
        return [_serialize_value(i) for i in v]
    return v


def serialize(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not doc:
        return doc
    d = {**doc}
    if "_id" in d:
        d["id"] = str(d.pop("_id"))
    return {k: _serialize_value(v) for k, v in d.items()}


def create_document(database: Database, collection_name: str, data: Dict[str, Any]) -> ObjectId:
    now = utcnow()
    payload = {**data, "created_at": now, "updated_at": now}
    res = database[collection_name].insert_one(payload)
    return res.inserted_id
