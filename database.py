"""
MongoDB access helpers.

The client is created once in the application lifespan (see ``main.create_app``)
and the selected database is kept on ``app.state.db``; handlers receive it via
the ``get_db`` dependency.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from bson import ObjectId
from bson.errors import InvalidId
from fastapi import HTTPException, Request
from pymongo import ASCENDING, MongoClient
from pymongo.collection import Collection
from pymongo.database import Database

from config import Settings

logger = logging.getLogger(__name__)


def connect(settings: Settings) -> MongoClient:
    return MongoClient(settings.database_url, serverSelectionTimeoutMS=5000, tz_aware=True)


def ensure_indexes(db: Database) -> None:
    db["user"].create_index([("email", ASCENDING)], unique=True)
    db["restaurant"].create_index([("owner_email", ASCENDING)], unique=True)
    db["category"].create_index([("name", ASCENDING)], unique=True)
    db["favourite"].create_index([("email", ASCENDING), ("review_id", ASCENDING)], unique=True)
    db["menuitem"].create_index([("seller_email", ASCENDING)])
    db["review"].create_index([("menu_id", ASCENDING)])
    db["review"].create_index([("reviewer_email", ASCENDING)])
    logger.info("indexes ensured on %s", db.name)


def get_db(request: Request) -> Database:
    return request.app.state.db


def now() -> datetime:
    return datetime.now(timezone.utc)


def to_obj_id(id_str: Any) -> Optional[ObjectId]:
    """Coerce a text id to an ObjectId; ``None`` when it is not a valid id."""
    if isinstance(id_str, ObjectId):
        return id_str
    if not id_str:
        return None
    try:
        return ObjectId(id_str)
    except (InvalidId, TypeError):
        return None


def sanitize(doc: Optional[Dict]) -> Optional[Dict]:
    if not doc:
        return doc
    d = {**doc}
    if "_id" in d:
        d["id"] = str(d.pop("_id"))
    return d


def sanitize_all(docs: Iterable[Dict]) -> List[Dict]:
    return [sanitize(d) for d in docs]


def get_or_404(collection: Collection, id_str: str, label: str) -> Dict:
    oid = to_obj_id(id_str)
    doc = collection.find_one({"_id": oid}) if oid else None
    if not doc:
        raise HTTPException(status_code=404, detail=f"{label} not found")
    return doc
