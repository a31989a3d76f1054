"""
Database helpers

MongoDB access for the MedEasy API. The client and database handles are built
once by the application factory and handed to routes through FastAPI
dependencies; nothing here keeps a module-level connection.

Collections:
- users       -> User
- medicines   -> Medicine
- carts       -> CartItem
- checkout    -> CheckoutRecord
- categories  -> Category
- payments    -> Payment
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple, Union

from bson import ObjectId
from bson.errors import InvalidId
from fastapi import Request
from pydantic import BaseModel
from pymongo import ASCENDING, MongoClient
from pymongo.database import Database

from config import Settings
from errors import ValidationFailed

logger = logging.getLogger(__name__)

USERS = "users"
MEDICINES = "medicines"
CARTS = "carts"
CHECKOUT = "checkout"
CATEGORIES = "categories"
PAYMENTS = "payments"


def connect(settings: Settings) -> Tuple[MongoClient, Database]:
    client = MongoClient(settings.database_url)
    return client, client[settings.database_name]


def ensure_indexes(db) -> None:
    db[USERS].create_index([("email", ASCENDING)], unique=True)
    db[CARTS].create_index([("medicineId", ASCENDING), ("userEmail", ASCENDING)], unique=True)
    db[CHECKOUT].create_index([("userEmail", ASCENDING)])
    db[PAYMENTS].create_index([("userEmail", ASCENDING)])
    db[PAYMENTS].create_index(
        [("transactionId", ASCENDING)],
        unique=True,
        partialFilterExpression={"transactionId": {"$exists": True}},
    )


def get_db(request: Request):
    return request.app.state.db


def get_client(request: Request):
    return request.app.state.client


def oid(id_str: str) -> ObjectId:
    try:
        return ObjectId(id_str)
    except (InvalidId, TypeError):
        raise ValidationFailed("Invalid id")


def to_public(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not doc:
        return doc
    d = dict(doc)
    if "_id" in d:
        d["id"] = str(d.pop("_id"))
    return d


def create_document(db, collection_name: str, data: Union[BaseModel, Dict[str, Any]]) -> str:
    """Insert a document stamped with created_at/updated_at and return its id."""
    doc = data.model_dump() if isinstance(data, BaseModel) else dict(data)
    now = datetime.now(timezone.utc)
    doc.setdefault("created_at", now)
    doc["updated_at"] = now
    result = db[collection_name].insert_one(doc)
    return str(result.inserted_id)


def get_documents(db, collection_name: str, filter_dict: Optional[Dict[str, Any]] = None, limit: Optional[int] = None) -> List[Dict[str, Any]]:
    cursor = db[collection_name].find(filter_dict or {})
    if limit:
        cursor = cursor.limit(limit)
    return [to_public(d) for d in cursor]
