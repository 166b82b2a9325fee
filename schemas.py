"""
Database Schemas for ReadBooks

Each Pydantic model describes the documents of one MongoDB collection:
- Book -> "books"
- Category -> "category"
- BorrowRecord -> "borrowedBooks"

Field aliases are the stored (and wire) key names.
"""

from datetime import datetime, timezone
from typing import Any, Optional, Union

from bson import ObjectId
from pydantic import BaseModel, ConfigDict, Field

BOOKS = "books"
CATEGORIES = "category"
BORROWED = "borrowedBooks"

BOOK_REQUIRED_FIELDS = ("name", "image", "author", "category", "description", "rating", "quantity")
BORROW_REQUIRED_FIELDS = ("name", "email", "returnDate")


class Book(BaseModel):
    model_config = ConfigDict(extra="allow")

    name: str = Field(..., description="Book title")
    image: str = Field(..., description="Cover image URL")
    author: str = Field(..., description="Author name")
    category: str = Field(..., description="Category name, matched exactly when filtering")
    description: str = Field(..., description="Short description")
    rating: Union[float, str] = Field(..., description="Rating as entered by the librarian")
    quantity: int = Field(..., ge=0, description="Copies currently available to lend")


class Category(BaseModel):
    model_config = ConfigDict(extra="allow")

    name: Optional[str] = Field(None, description="Category name")
    image: Optional[str] = Field(None, description="Category image URL")


class BorrowRequest(BaseModel):
    name: str = Field(..., description="Borrower display name")
    email: str = Field(..., description="Borrower identity")
    return_date: str = Field(..., alias="returnDate", description="Date the borrower promises to return by")


class BorrowRecord(BaseModel):
    model_config = ConfigDict(populate_by_name=True, arbitrary_types_allowed=True)

    book_id: Any = Field(..., alias="bookId", description="Book ObjectId")
    name: str = Field(..., description="Borrower display name")
    email: str = Field(..., description="Borrower identity")
    return_date: str = Field(..., alias="returnDate", description="Promised return date")
    borrowed_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        alias="borrowedAt",
        description="Server time the loan was recorded",
    )
    title: Optional[str] = Field(None, description="Book name at borrow time")
    image: Optional[str] = Field(None, description="Book image at borrow time")
    category: Optional[str] = Field(None, description="Book category at borrow time")

    @classmethod
    def snapshot(cls, book: dict, request: BorrowRequest) -> "BorrowRecord":
        """Build a record from the book document as it was when the copy was taken."""
        return cls(
            book_id=book["_id"],
            name=request.name,
            email=request.email,
            return_date=request.return_date,
            title=book.get("name"),
            image=book.get("image"),
            category=book.get("category"),
        )

    def to_document(self) -> dict:
        doc = self.model_dump(by_alias=True)
        if isinstance(doc["bookId"], str):
            doc["bookId"] = ObjectId(doc["bookId"])
        return doc
