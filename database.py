import logging
import os
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel
from pymongo import MongoClient, ReturnDocument

from errors import DatabaseUnavailable

log = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")

db = None

if DATABASE_URL and DATABASE_NAME:
    _client = MongoClient(DATABASE_URL)
    db = _client[DATABASE_NAME]


def _collection(collection_name: str):
    if db is None:
        raise DatabaseUnavailable("Database not available. Check DATABASE_URL and DATABASE_NAME.")
    return db[collection_name]


def _to_document(data: Union[BaseModel, Dict[str, Any]]) -> Dict[str, Any]:
    if isinstance(data, BaseModel):
        return data.model_dump(mode="json")
    return dict(data)


def create_document(collection_name: str, data: Union[BaseModel, Dict[str, Any]]) -> str:
    result = _collection(collection_name).insert_one(_to_document(data))
    return str(result.inserted_id)


def get_documents(
    collection_name: str,
    filter_dict: Optional[Dict[str, Any]] = None,
    limit: Optional[int] = None,
) -> List[Dict[str, Any]]:
    cursor = _collection(collection_name).find(filter_dict or {})
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def get_document(collection_name: str, filter_dict: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    return _collection(collection_name).find_one(filter_dict)


def update_document(
    collection_name: str,
    filter_dict: Dict[str, Any],
    update: Dict[str, Any],
) -> Optional[Dict[str, Any]]:
    """Apply ``update`` to the first match and return it as it is after the write.

    The filter and the write are one atomic step in the store, so callers use
    the filter to express preconditions. None means nothing matched.
    """
    return _collection(collection_name).find_one_and_update(
        filter_dict,
        update,
        return_document=ReturnDocument.AFTER,
    )


def update_documents(collection_name: str, filter_dict: Dict[str, Any], update: Dict[str, Any]) -> int:
    result = _collection(collection_name).update_many(filter_dict, update)
    return result.modified_count
