"""
MongoDB access.

A single ``Database`` is built by the app factory and kept on ``app.state``.
``connect()`` is idempotent, so request dependencies can call it freely.
"""
import logging
import threading
from typing import Optional

from fastapi import Request
from pymongo import ASCENDING, DESCENDING, MongoClient

from config import DATABASE_NAME, DATABASE_URL

logger = logging.getLogger(__name__)


class Database:
    def __init__(self, url: Optional[str] = None, name: Optional[str] = None, client=None):
        self.url = url or DATABASE_URL
        self.name = name or DATABASE_NAME
        self._client = client
        self._owns_client = client is None
        self._db = None
        self._lock = threading.Lock()

    @property
    def is_connected(self) -> bool:
        return self._db is not None

    def connect(self):
        if self._db is not None:
            return self._db
        with self._lock:
            if self._db is None:
                if self._client is None:
                    self._client = MongoClient(self.url)
                self._db = self._client[self.name]
                logger.info("Connected to MongoDB database %s", self.name)
        return self._db

    def ensure_indexes(self) -> None:
        db = self.connect()
        db["product"].create_index("sku", unique=True, sparse=True)
        db["product"].create_index("category")
        db["product"].create_index("status")
        db["product"].create_index("createdBy")
        db["product"].create_index([("createdAt", DESCENDING)])
        db["user"].create_index([("email", ASCENDING)], unique=True)

    def close(self) -> None:
        with self._lock:
            if self._owns_client and self._client is not None:
                self._client.close()
                self._client = None
            self._db = None

    def __getitem__(self, collection: str):
        return self.connect()[collection]


def get_db(request: Request):
    """FastAPI dependency: the connected pymongo database of this app."""
    return request.app.state.database.connect()
