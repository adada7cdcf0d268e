"""
Entity store for the turf booking backend.

Collections hold plain dict documents keyed by an integer `id`. Ids come from a
monotonically increasing counter per collection. Two backends are available:

- MemoryStore: in-process maps guarded by a lock, used by default and in tests
- MongoStore: pymongo collections, used when DATABASE_URL is set

Only the slot and booking services write `is_booked`; they do it through
`compare_and_set` so a flip is conditional on the value they observed.
"""

import logging
import os
import threading
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from pymongo import ASCENDING, MongoClient, ReturnDocument
from pymongo.errors import DuplicateKeyError

from errors import DuplicateError

logger = logging.getLogger(__name__)

COLLECTIONS = ("user", "turf", "slot", "booking")
UNIQUE_FIELDS = {"user": ("username", "email")}

Document = Dict[str, Any]
Filters = Optional[Dict[str, Any]]


class Store(ABC):
    """Keyed document storage with atomic single-document updates."""

    backend = "abstract"

    @abstractmethod
    def create_document(self, collection: str, data: Document) -> Document:
        """Insert `data` under a fresh id and return the stored document."""

    @abstractmethod
    def get_document(self, collection: str, doc_id: int) -> Optional[Document]:
        pass

    @abstractmethod
    def get_documents(
        self, collection: str, filters: Filters = None, sort: Optional[str] = None
    ) -> List[Document]:
        """Documents whose fields equal every value in `filters`."""

    @abstractmethod
    def update_document(
        self, collection: str, doc_id: int, fields: Document
    ) -> Optional[Document]:
        """Set `fields` on one document; None if it does not exist."""

    @abstractmethod
    def delete_document(self, collection: str, doc_id: int) -> bool:
        pass

    @abstractmethod
    def compare_and_set(
        self, collection: str, doc_id: int, field: str, expected: Any, value: Any
    ) -> bool:
        """Set `field` to `value` only if it currently equals `expected`."""

    def count_documents(self, collection: str, filters: Filters = None) -> int:
        return len(self.get_documents(collection, filters))

    def find_one(self, collection: str, filters: Dict[str, Any]) -> Optional[Document]:
        docs = self.get_documents(collection, filters)
        return docs[0] if docs else None

    def collection_names(self) -> List[str]:
        return list(COLLECTIONS)


def _matches(doc: Document, filters: Filters) -> bool:
    if not filters:
        return True
    return all(doc.get(key) == value for key, value in filters.items())


class MemoryStore(Store):
    backend = "memory"

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._data: Dict[str, Dict[int, Document]] = {name: {} for name in COLLECTIONS}
        self._counters: Dict[str, int] = {name: 0 for name in COLLECTIONS}

    def _collection(self, name: str) -> Dict[int, Document]:
        if name not in self._data:
            raise KeyError(f"Unknown collection: {name}")
        return self._data[name]

    def create_document(self, collection, data):
        with self._lock:
            docs = self._collection(collection)
            self._counters[collection] += 1
            doc = dict(data, id=self._counters[collection])
            docs[doc["id"]] = doc
            return dict(doc)

    def get_document(self, collection, doc_id):
        with self._lock:
            doc = self._collection(collection).get(doc_id)
            return dict(doc) if doc is not None else None

    def get_documents(self, collection, filters=None, sort=None):
        with self._lock:
            docs = [dict(d) for d in self._collection(collection).values() if _matches(d, filters)]
        key = sort or "id"
        docs.sort(key=lambda d: (d.get(key) is None, d.get(key), d["id"]))
        return docs

    def update_document(self, collection, doc_id, fields):
        with self._lock:
            doc = self._collection(collection).get(doc_id)
            if doc is None:
                return None
            doc.update({k: v for k, v in fields.items() if k != "id"})
            return dict(doc)

    def delete_document(self, collection, doc_id):
        with self._lock:
            return self._collection(collection).pop(doc_id, None) is not None

    def compare_and_set(self, collection, doc_id, field, expected, value):
        with self._lock:
            doc = self._collection(collection).get(doc_id)
            if doc is None or doc.get(field) != expected:
                return False
            doc[field] = value
            return True


class MongoStore(Store):
    """Store backed by a pymongo Database; documents carry their own integer `id`."""

    backend = "mongodb"

    def __init__(self, db) -> None:
        self.db = db
        for name in COLLECTIONS:
            self.db[name].create_index([("id", ASCENDING)], unique=True)
        for name, fields in UNIQUE_FIELDS.items():
            for field in fields:
                self.db[name].create_index([(field, ASCENDING)], unique=True)

    def _next_id(self, collection: str) -> int:
        counter = self.db["counters"].find_one_and_update(
            {"_id": collection},
            {"$inc": {"seq": 1}},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        return int(counter["seq"])

    @staticmethod
    def _clean(doc: Optional[Document]) -> Optional[Document]:
        if doc is None:
            return None
        doc.pop("_id", None)
        return doc

    def create_document(self, collection, data):
        doc = dict(data, id=self._next_id(collection))
        try:
            self.db[collection].insert_one(dict(doc))
        except DuplicateKeyError as exc:
            raise DuplicateError(
                f"Duplicate value in {collection}", code="duplicate_key"
            ) from exc
        return doc

    def get_document(self, collection, doc_id):
        return self._clean(self.db[collection].find_one({"id": doc_id}))

    def get_documents(self, collection, filters=None, sort=None):
        cursor = self.db[collection].find(filters or {}).sort(
            [(sort or "id", ASCENDING), ("id", ASCENDING)]
        )
        return [self._clean(doc) for doc in cursor]

    def update_document(self, collection, doc_id, fields):
        fields = {k: v for k, v in fields.items() if k != "id"}
        doc = self.db[collection].find_one_and_update(
            {"id": doc_id},
            {"$set": fields},
            return_document=ReturnDocument.AFTER,
        )
        return self._clean(doc)

    def delete_document(self, collection, doc_id):
        return self.db[collection].delete_one({"id": doc_id}).deleted_count == 1

    def compare_and_set(self, collection, doc_id, field, expected, value):
        result = self.db[collection].update_one(
            {"id": doc_id, field: expected}, {"$set": {field: value}}
        )
        return result.modified_count == 1

    def count_documents(self, collection, filters=None):
        return self.db[collection].count_documents(filters or {})

    def collection_names(self):
        return self.db.list_collection_names()


def create_store() -> Store:
    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        logger.info("DATABASE_URL not set, using in-memory store")
        return MemoryStore()
    database_name = os.getenv("DATABASE_NAME", "turfbook")
    client = MongoClient(database_url)
    logger.info("Using MongoDB store", extra={"database_name": database_name})
    return MongoStore(client[database_name])
