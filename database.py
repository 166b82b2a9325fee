"""
MongoDB access for the ReadBooks API.

``DocumentStore`` is the only object that talks to the database. It is built
once at startup, handed to the routes and the ledger, and closed on shutdown.
All driver errors leave this module as ``StoreFailure``.
"""

from datetime import date, datetime
from typing import Any, Dict, List, Mapping, Optional

import structlog
from bson import ObjectId
from bson.errors import InvalidId
from pymongo import ASCENDING, AsyncMongoClient, ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from errors import DuplicateDocument, InvalidReference, StoreFailure
from schemas import BORROWED

log = structlog.get_logger()


def to_object_id(id_str: Any, message: str = "Invalid ID format") -> ObjectId:
    if isinstance(id_str, ObjectId):
        return id_str
    # ObjectId(None) would mint a fresh id
    if not isinstance(id_str, str):
        raise InvalidReference(message)
    try:
        return ObjectId(id_str)
    except InvalidId:
        raise InvalidReference(message)


def serialize(doc: Optional[dict]) -> Optional[dict]:
    if not doc:
        return doc
    d = {**doc}
    if d.get("_id") is not None:
        d["id"] = str(d.pop("_id"))
    # ObjectId and datetime/date are not JSON native
    for k, v in list(d.items()):
        if isinstance(v, ObjectId):
            d[k] = str(v)
        elif isinstance(v, (datetime, date)):
            d[k] = v.isoformat()
    return d


class DocumentStore:
    """Thin async wrapper over one MongoDB database."""

    def __init__(self, client: AsyncMongoClient, database_name: str):
        self.client = client
        self.db = client[database_name]

    @classmethod
    def connect(cls, url: str, database_name: str, timeout_ms: int = 5000) -> "DocumentStore":
        # The client connects lazily on first operation.
        client = AsyncMongoClient(
            url,
            timeoutMS=timeout_ms,
            serverSelectionTimeoutMS=timeout_ms,
            retryWrites=False,
            retryReads=False,
        )
        log.info("store_client_created", database=database_name)
        return cls(client, database_name)

    async def close(self) -> None:
        await self.client.close()
        log.info("store_client_closed")

    async def ping(self) -> bool:
        try:
            await self.db.command("ping")
        except PyMongoError as e:
            log.warning("store_ping_failed", error=str(e))
            return False
        return True

    async def ensure_indexes(self) -> None:
        """One active loan per (book, borrower)."""
        try:
            await self.db[BORROWED].create_index(
                [("bookId", ASCENDING), ("email", ASCENDING)],
                unique=True,
                name="one_loan_per_borrower",
            )
        except PyMongoError as e:
            log.error("store_index_failed", collection=BORROWED, error=str(e))
            raise StoreFailure() from e

    async def find(self, collection: str, query: Optional[Mapping] = None) -> List[dict]:
        try:
            return await self.db[collection].find(dict(query or {})).to_list(None)
        except PyMongoError as e:
            log.error("store_find_failed", collection=collection, error=str(e))
            raise StoreFailure() from e

    async def find_one(self, collection: str, query: Mapping) -> Optional[dict]:
        try:
            return await self.db[collection].find_one(dict(query))
        except PyMongoError as e:
            log.error("store_find_one_failed", collection=collection, error=str(e))
            raise StoreFailure() from e

    async def insert(self, collection: str, document: Dict[str, Any]) -> ObjectId:
        try:
            result = await self.db[collection].insert_one(document)
        except DuplicateKeyError as e:
            log.info("store_duplicate_rejected", collection=collection)
            raise DuplicateDocument() from e
        except PyMongoError as e:
            log.error("store_insert_failed", collection=collection, error=str(e))
            raise StoreFailure() from e
        return result.inserted_id

    async def update(self, collection: str, query: Mapping, update: Mapping) -> int:
        """Apply ``update`` to the first match; returns the matched count."""
        try:
            result = await self.db[collection].update_one(dict(query), dict(update))
        except PyMongoError as e:
            log.error("store_update_failed", collection=collection, error=str(e))
            raise StoreFailure() from e
        return result.matched_count

    async def find_one_and_update(self, collection: str, query: Mapping, update: Mapping) -> Optional[dict]:
        """Conditioned update: apply only if ``query`` still matches at write time.

        Returns the document after the update, or None when nothing matched.
        """
        try:
            return await self.db[collection].find_one_and_update(
                dict(query), dict(update), return_document=ReturnDocument.AFTER
            )
        except PyMongoError as e:
            log.error("store_conditioned_update_failed", collection=collection, error=str(e))
            raise StoreFailure() from e

    async def delete(self, collection: str, query: Mapping) -> int:
        try:
            result = await self.db[collection].delete_one(dict(query))
        except PyMongoError as e:
            log.error("store_delete_failed", collection=collection, error=str(e))
            raise StoreFailure() from e
        return result.deleted_count


async def create_document(store: DocumentStore, collection: str, data: Mapping) -> str:
    """Insert a document, returning the new id as a string."""
    return str(await store.insert(collection, dict(data)))


async def get_documents(store: DocumentStore, collection: str, query: Optional[Mapping] = None) -> List[dict]:
    return [serialize(d) for d in await store.find(collection, query)]
