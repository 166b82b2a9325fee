import asyncio
import copy
from typing import Dict, Optional, Tuple

import pytest
from bson import ObjectId
from fastapi.testclient import TestClient

from auth import Identity
from config import Settings
from errors import DuplicateDocument, StoreFailure, Unauthorized
from main import create_app
from schemas import BOOKS, BORROWED


def _matches(doc: dict, query: dict) -> bool:
    for key, cond in query.items():
        value = doc.get(key)
        if isinstance(cond, dict) and "$gt" in cond:
            if value is None or not value > cond["$gt"]:
                return False
        elif value != cond:
            return False
    return True


def _apply(doc: dict, update: dict) -> None:
    for key, value in update.get("$set", {}).items():
        doc[key] = value
    for key, value in update.get("$inc", {}).items():
        doc[key] = doc.get(key, 0) + value


class MemoryDocumentStore:
    """In-process stand-in for ``DocumentStore``.

    Every operation yields to the event loop once and then runs without
    further suspension, so each call is atomic the way a single MongoDB
    document operation is, while concurrent tasks still interleave between
    calls.
    """

    def __init__(self, unique: Optional[Dict[str, Tuple[str, ...]]] = None):
        self.collections: Dict[str, Dict[ObjectId, dict]] = {}
        self.unique = unique if unique is not None else {BORROWED: ("bookId", "email")}
        self.failures: Dict[Tuple[str, str], Exception] = {}
        self.calls = 0
        self.closed = False

    def fail(self, operation: str, collection: str, exc: Exception = None) -> None:
        self.failures[(operation, collection)] = exc or StoreFailure()

    async def _enter(self, operation: str, collection: str) -> Dict[ObjectId, dict]:
        self.calls += 1
        await asyncio.sleep(0)
        if (operation, collection) in self.failures:
            raise self.failures[(operation, collection)]
        return self.collections.setdefault(collection, {})

    def _first(self, docs: Dict[ObjectId, dict], query: dict) -> Optional[dict]:
        return next((d for d in docs.values() if _matches(d, query)), None)

    # seeding helpers, synchronous so tests can arrange state directly
    def seed(self, collection: str, document: dict) -> ObjectId:
        doc = copy.deepcopy(document)
        oid = doc.setdefault("_id", ObjectId())
        self.collections.setdefault(collection, {})[oid] = doc
        return oid

    def get(self, collection: str, oid: ObjectId) -> Optional[dict]:
        return self.collections.get(collection, {}).get(oid)

    def all(self, collection: str) -> list:
        return list(self.collections.get(collection, {}).values())

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        self.closed = True

    async def ensure_indexes(self) -> None:
        pass

    async def find(self, collection, query=None):
        docs = await self._enter("find", collection)
        return [copy.deepcopy(d) for d in docs.values() if _matches(d, dict(query or {}))]

    async def find_one(self, collection, query):
        docs = await self._enter("find_one", collection)
        return copy.deepcopy(self._first(docs, dict(query)))

    async def insert(self, collection, document):
        docs = await self._enter("insert", collection)
        keys = self.unique.get(collection)
        if keys and any(all(d.get(k) == document.get(k) for k in keys) for d in docs.values()):
            raise DuplicateDocument()
        oid = document.setdefault("_id", ObjectId())
        docs[oid] = copy.deepcopy(document)
        return oid

    async def update(self, collection, query, update):
        docs = await self._enter("update", collection)
        doc = self._first(docs, dict(query))
        if doc is None:
            return 0
        _apply(doc, update)
        return 1

    async def find_one_and_update(self, collection, query, update):
        docs = await self._enter("find_one_and_update", collection)
        doc = self._first(docs, dict(query))
        if doc is None:
            return None
        _apply(doc, update)
        return copy.deepcopy(doc)

    async def delete(self, collection, query):
        docs = await self._enter("delete", collection)
        doc = self._first(docs, dict(query))
        if doc is None:
            return 0
        del docs[doc["_id"]]
        return 1


class FakeVerifier:
    def __init__(self, tokens: Dict[str, Identity]):
        self.tokens = tokens
        self.closed = False

    async def verify(self, token: str) -> Identity:
        if token not in self.tokens:
            raise Unauthorized()
        identity = self.tokens[token]
        if isinstance(identity, Exception):
            raise identity
        return identity

    def close(self) -> None:
        self.closed = True


def sample_book(**overrides) -> dict:
    book = {
        "name": "The Hobbit",
        "image": "https://img.example/hobbit.jpg",
        "author": "J. R. R. Tolkien",
        "category": "Fantasy",
        "description": "There and back again.",
        "rating": 4.8,
        "quantity": 3,
    }
    book.update(overrides)
    return book


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def store():
    return MemoryDocumentStore()


@pytest.fixture
def verifier():
    return FakeVerifier(
        {
            "token-a": Identity(uid="uid-a", email="a@x.com"),
            "token-b": Identity(uid="uid-b", email="b@x.com"),
        }
    )


@pytest.fixture
def client(store, verifier):
    app = create_app(settings=Settings(), store=store, verifier=verifier)
    return TestClient(app)


@pytest.fixture
def book_id(store):
    return store.seed(BOOKS, sample_book())
