"""
MongoDB connection and generic document helpers.

DATABASE_URL / DATABASE_NAME come from the environment (or a .env file). When
DATABASE_URL is not set, `db` is None and the app runs on in-process stores.
"""
import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union

from dotenv import load_dotenv
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database

load_dotenv()

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME", "storefront")


def connect(url: Optional[str] = DATABASE_URL, name: str = DATABASE_NAME) -> Optional[Database]:
    if not url:
        return None
    client = MongoClient(url, tz_aware=True, serverSelectionTimeoutMS=5000)
    logger.info("Connected to MongoDB database %s", name)
    return client[name]


db = connect()


def create_document(collection_name: str, data: Union[BaseModel, Dict[str, Any]], database: Optional[Database] = None) -> str:
    """Insert a document, stamping created_at/updated_at. Returns the new id as string."""
    target = database if database is not None else db
    if target is None:
        raise RuntimeError("Database not configured")
    doc = data.model_dump() if isinstance(data, BaseModel) else dict(data)
    now = datetime.now(timezone.utc)
    doc["updated_at"] = now
    if doc.get("created_at") is None:
        doc["created_at"] = now
    result = target[collection_name].insert_one(doc)
    return str(result.inserted_id)


def ensure_indexes(database: Database) -> None:
    database["coupon"].create_index([("code", ASCENDING)], unique=True)
    database["order"].create_index(
        [("payment_id", ASCENDING)], unique=True, partialFilterExpression={"payment_id": {"$type": "string"}}
    )
    database["order"].create_index([("created_at", DESCENDING)])
    database["order"].create_index([("user_id", ASCENDING)])
    database["offer"].create_index([("category_ids", ASCENDING), ("is_active", ASCENDING), ("end_date", ASCENDING)])
