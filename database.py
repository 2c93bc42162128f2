"""
MongoDB access.

`db` is None when DATABASE_URL is not configured; routes obtain the database
through the `get_db` dependency so tests can swap in another one.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union

from bson import ObjectId
from fastapi import HTTPException
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database

import settings

logger = logging.getLogger(__name__)

client: Optional[MongoClient] = None
db: Optional[Database] = None

if settings.DATABASE_URL:
    client = MongoClient(settings.DATABASE_URL, serverSelectionTimeoutMS=5000)
    db = client[settings.DATABASE_NAME]


def get_db() -> Database:
    if db is None:
        raise HTTPException(status_code=503, detail="Database not configured")
    return db


def now() -> datetime:
    return datetime.now(timezone.utc)


def oid(id_str: str, label: str = "id") -> ObjectId:
    try:
        return ObjectId(id_str)
    except Exception:
        raise HTTPException(status_code=400, detail=f"Invalid {label}")


def is_oid(value: Optional[str]) -> bool:
    return bool(value) and ObjectId.is_valid(value)


def to_str_id(doc: Optional[dict]) -> Optional[dict]:
    if not doc:
        return doc
    d = {**doc}
    if "_id" in d:
        d["id"] = str(d.pop("_id"))
    return d


def create_document(database: Database, collection_name: str, data: Union[BaseModel, Dict[str, Any]]) -> str:
    if isinstance(data, BaseModel):
        doc = data.model_dump(by_alias=True, exclude_none=True)
    else:
        doc = dict(data)
    doc.setdefault("createdAt", now())
    doc.setdefault("updatedAt", now())
    res = database[collection_name].insert_one(doc)
    return str(res.inserted_id)


def ensure_indexes(database: Database) -> None:
    database["user"].create_index("email", unique=True)
    database["category"].create_index("slug", unique=True)
    database["product"].create_index("slug", unique=True)
    # sku is omitted from the document when blank
    database["product"].create_index("sku", unique=True, sparse=True)
    database["product"].create_index([("categoryId", ASCENDING), ("createdAt", DESCENDING)])
    database["order"].create_index("orderNumber", unique=True)
    database["order"].create_index([("userId", ASCENDING), ("createdAt", DESCENDING)])
    database["cart"].create_index("userId", unique=True)
    logger.info("Indexes ensured on %s", database.name)


def ping(database: Optional[Database]) -> bool:
    if database is None:
        return False
    try:
        database.command("ping")
        return True
    except Exception as e:
        logger.warning("Database ping failed: %s", e)
        return False
