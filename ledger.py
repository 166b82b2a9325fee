"""
Borrow and return.

These are the only operations that touch a book and a borrow record
together. Correctness rests on two single-document atomic updates in the
store, never on in-process locks:

- borrow decrements ``quantity`` with a filter of ``quantity > 0`` and only
  then inserts the record;
- return increments ``quantity`` and only then deletes the record.

A store failure between the two halves leaves quantity and records out of
step. That is logged at CRITICAL and raised as ``LedgerInconsistency``.
"""

from typing import Any

import structlog
from bson import ObjectId

from database import DocumentStore, to_object_id
from errors import (
    AlreadyBorrowed,
    DuplicateDocument,
    LedgerInconsistency,
    NotFound,
    StoreFailure,
    Unavailable,
)
from schemas import BOOKS, BORROWED, BorrowRecord, BorrowRequest

log = structlog.get_logger()


class LendingLedger:
    def __init__(self, store: DocumentStore):
        self.store = store

    async def borrow(self, book_id: Any, request: BorrowRequest) -> ObjectId:
        """Lend one copy of ``book_id`` to the borrower; returns the new record id."""
        oid = to_object_id(book_id, "Invalid book ID")

        # Optimistic checks; the conditioned decrement below is authoritative.
        book = await self.store.find_one(BOOKS, {"_id": oid})
        if not book:
            raise NotFound("Book not found")
        if book.get("quantity", 0) <= 0:
            raise Unavailable()

        existing = await self.store.find_one(BORROWED, {"bookId": oid, "email": request.email})
        if existing:
            raise AlreadyBorrowed()

        taken = await self.store.find_one_and_update(
            BOOKS,
            {"_id": oid, "quantity": {"$gt": 0}},
            {"$inc": {"quantity": -1}},
        )
        if taken is None:
            log.info("borrow_lost_race", book_id=str(oid), email=request.email)
            raise Unavailable()

        record = BorrowRecord.snapshot(taken, request)
        try:
            borrow_id = await self.store.insert(BORROWED, record.to_document())
        except DuplicateDocument:
            # Same borrower won a concurrent insert; hand the copy back.
            await self._restock(oid, reason="duplicate_borrow")
            raise AlreadyBorrowed()
        except StoreFailure as e:
            log.critical(
                "ledger_inconsistent",
                operation="borrow",
                book_id=str(oid),
                email=request.email,
                detail="quantity decremented without a borrow record",
            )
            raise LedgerInconsistency("Failed to borrow book") from e

        log.info("book_borrowed", book_id=str(oid), borrow_id=str(borrow_id), email=request.email)
        return borrow_id

    async def return_book(self, borrow_id: Any) -> None:
        """Close the loan ``borrow_id`` and put its copy back on the shelf."""
        oid = to_object_id(borrow_id, "Invalid borrow ID")

        entry = await self.store.find_one(BORROWED, {"_id": oid})
        if not entry:
            raise NotFound("Borrow record not found")

        book_id = entry.get("bookId")
        if isinstance(book_id, str) and ObjectId.is_valid(book_id):
            book_id = ObjectId(book_id)
        matched = await self.store.update(BOOKS, {"_id": book_id}, {"$inc": {"quantity": 1}})
        if not matched:
            log.warning("return_book_missing", borrow_id=str(oid), book_id=str(book_id))

        try:
            deleted = await self.store.delete(BORROWED, {"_id": oid})
        except StoreFailure as e:
            self._double_count(oid, book_id, matched)
            raise LedgerInconsistency("Failed to return book") from e
        if not deleted:
            # A concurrent return removed the record and credited its own copy.
            if matched:
                await self._unstock(book_id, borrow_id=oid)
            raise NotFound("Borrow record not found")

        log.info("book_returned", borrow_id=str(oid), book_id=str(book_id))

    async def _unstock(self, book_id: Any, borrow_id: ObjectId) -> None:
        try:
            taken = await self.store.find_one_and_update(
                BOOKS,
                {"_id": book_id, "quantity": {"$gt": 0}},
                {"$inc": {"quantity": -1}},
            )
        except StoreFailure as e:
            self._double_count(borrow_id, book_id, 1)
            raise LedgerInconsistency("Failed to return book") from e
        if taken is None:
            log.warning("return_undo_skipped", borrow_id=str(borrow_id), book_id=str(book_id))
        else:
            log.info("return_undone", borrow_id=str(borrow_id), book_id=str(book_id))

    async def _restock(self, book_id: ObjectId, reason: str) -> None:
        try:
            await self.store.update(BOOKS, {"_id": book_id}, {"$inc": {"quantity": 1}})
        except StoreFailure:
            log.critical(
                "ledger_inconsistent",
                operation="restock",
                book_id=str(book_id),
                reason=reason,
                detail="quantity decremented without a borrow record",
            )
            raise
        log.info("book_restocked", book_id=str(book_id), reason=reason)

    @staticmethod
    def _double_count(borrow_id: ObjectId, book_id: Any, incremented: int) -> None:
        if incremented:
            log.critical(
                "ledger_inconsistent",
                operation="return",
                borrow_id=str(borrow_id),
                book_id=str(book_id),
                detail="quantity incremented but borrow record not removed",
            )
        else:
            log.error("return_delete_failed", borrow_id=str(borrow_id), book_id=str(book_id))
