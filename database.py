"""
MongoDB access

One client per process. Collections are addressed by the lowercase schema
name (see schemas.py): "product", "cart", "order", "user", ...
"""
from datetime import datetime
from typing import Any, Dict, Optional

from bson import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel
from pymongo import MongoClient
from pymongo.database import Database

import config
from errors import NotFoundError

_client = MongoClient(config.DATABASE_URL) if config.DATABASE_URL else None
db: Optional[Database] = _client[config.DATABASE_NAME] if _client is not None else None


def get_db() -> Database:
    """FastAPI dependency; tests override it with a mongomock database."""
    if db is None:
        raise RuntimeError("DATABASE_URL is not configured")
    return db


def to_object_id(value: Any, kind: str = "Document") -> ObjectId:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        raise NotFoundError(kind, str(value))


def create_document(database: Database, collection_name: str, data: BaseModel | Dict[str, Any]) -> str:
    doc = data.model_dump() if isinstance(data, BaseModel) else dict(data)
    now = datetime.utcnow()
    doc.setdefault("created_at", now)
    doc.setdefault("updated_at", now)
    return str(database[collection_name].insert_one(doc).inserted_id)


def serialize_doc(value: Any) -> Any:
    """Make a Mongo document JSON friendly: _id -> id, ObjectId -> str, datetime -> iso."""
    if isinstance(value, dict):
        out = {}
        for k, v in value.items():
            if k == "_id":
                out["id"] = str(v)
            else:
                out[k] = serialize_doc(v)
        return out
    if isinstance(value, list):
        return [serialize_doc(v) for v in value]
    if isinstance(value, ObjectId):
        return str(value)
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return value


def ensure_indexes(database: Database) -> None:
    database["cart"].create_index("user_id", unique=True)
    database["order"].create_index([("user_id", 1), ("created_at", -1)])
    database["order"].create_index([("inventory_committed", 1), ("created_at", 1)])
