"""
Database Helper Functions

MongoDB helpers used by the API for players, quests and quest history.
Documents come back as plain dicts with the Mongo ``_id`` exposed as ``id``.
"""

from pymongo import MongoClient, ReturnDocument
from bson import ObjectId
from datetime import datetime, timezone
import logging
import os
from dotenv import load_dotenv
from typing import Union, Optional, Dict, Any, List
from pydantic import BaseModel

# Load environment variables from .env file
load_dotenv()

logger = logging.getLogger(__name__)

_client = None
db = None

database_url = os.getenv("DATABASE_URL")
database_name = os.getenv("DATABASE_NAME")

if database_url and database_name:
    # tz_aware so stored datetimes come back as UTC-aware values
    _client = MongoClient(database_url, tz_aware=True)
    db = _client[database_name]
else:
    logger.warning("DATABASE_URL/DATABASE_NAME not set; database helpers are disabled")


class DatabaseUnavailable(Exception):
    """Raised when a helper is called without a configured database."""

    def __init__(self, message: str = "Database not available. Check DATABASE_URL and DATABASE_NAME environment variables."):
        super().__init__(message)


def _require_db():
    if db is None:
        raise DatabaseUnavailable()
    return db

# Helper: ensure dict

def _to_dict(data: Union[BaseModel, dict]) -> dict:
    if isinstance(data, BaseModel):
        return data.model_dump()
    return data.copy()

# Helper: store ids are ObjectIds, except players which use the identity provider id

def _oid(id_val: Union[str, ObjectId]) -> Union[str, ObjectId]:
    if isinstance(id_val, ObjectId):
        return id_val
    return ObjectId(id_val) if ObjectId.is_valid(id_val) else id_val


def _out(doc: Optional[dict]) -> Optional[Dict[str, Any]]:
    if not doc:
        return None
    doc['id'] = str(doc.pop('_id'))
    return doc

# Helper functions for common database operations

def create_document(collection_name: str, data: Union[BaseModel, dict], doc_id: Optional[str] = None) -> str:
    """Insert a single document with timestamps"""
    database = _require_db()
    data_dict = _to_dict(data)
    now = datetime.now(timezone.utc)
    data_dict['created_at'] = now
    data_dict['updated_at'] = now
    if doc_id is not None:
        data_dict['_id'] = doc_id

    result = database[collection_name].insert_one(data_dict)
    return str(result.inserted_id)


def get_documents(collection_name: str) -> List[Dict[str, Any]]:
    """Get every document in a collection"""
    database = _require_db()
    return [_out(d) for d in database[collection_name].find({})]


def get_document_by_id(collection_name: str, id_val: Union[str, ObjectId]) -> Optional[Dict[str, Any]]:
    database = _require_db()
    return _out(database[collection_name].find_one({"_id": _oid(id_val)}))


def update_document(collection_name: str, id_or_filter: Union[str, ObjectId, dict], update_dict: dict) -> Optional[Dict[str, Any]]:
    """Merge fields into a document and return the updated version"""
    database = _require_db()
    if isinstance(id_or_filter, dict):
        query = id_or_filter
    else:
        query = {"_id": _oid(id_or_filter)}
    update_dict = {"$set": {**update_dict, "updated_at": datetime.now(timezone.utc)}}
    doc = database[collection_name].find_one_and_update(query, update_dict, return_document=ReturnDocument.AFTER)
    return _out(doc)


def update_document_where(collection_name: str, id_val: Union[str, ObjectId], conditions: dict, update_dict: dict) -> Optional[Dict[str, Any]]:
    """Update a document only if it still matches ``conditions``.

    Returns None when the document is missing or another writer got there first.
    """
    query = {"_id": _oid(id_val), **conditions}
    return update_document(collection_name, query, update_dict)


def increment_xp(collection_name: str, id_val: Union[str, ObjectId], xp_delta: int, xp_per_coin: int) -> Optional[Dict[str, Any]]:
    """Add XP to ``total_xp`` and ``weekly_xp`` and recompute ``star_coins`` in one write.

    The update pipeline reads the stored total, so a concurrent award can never
    leave ``star_coins`` computed from a stale total.
    """
    database = _require_db()
    new_total = {"$add": [{"$ifNull": ["$total_xp", 0]}, xp_delta]}
    pipeline = [{"$set": {
        "total_xp": new_total,
        "weekly_xp": {"$add": [{"$ifNull": ["$weekly_xp", 0]}, xp_delta]},
        "star_coins": {"$toLong": {"$floor": {"$divide": [new_total, xp_per_coin]}}},
        "updated_at": datetime.now(timezone.utc),
    }}]
    doc = database[collection_name].find_one_and_update({"_id": _oid(id_val)}, pipeline, return_document=ReturnDocument.AFTER)
    return _out(doc)
