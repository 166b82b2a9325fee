from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

import structlog
import uvicorn
from fastapi import APIRouter, Body, Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from auth import FirebaseIdentityVerifier, Identity, IdentityVerifier, authorize_email, verified_identity
from config import Settings, configure_logging
from database import DocumentStore, create_document, get_documents, serialize, to_object_id
from errors import LendingError, NotFound, ValidationFailed, failure_message
from ledger import LendingLedger
from schemas import (
    BOOK_REQUIRED_FIELDS,
    BOOKS,
    BORROW_REQUIRED_FIELDS,
    BORROWED,
    CATEGORIES,
    Book as BookSchema,
    BorrowRecord as BorrowRecordSchema,
    Category as CategorySchema,
    BorrowRequest,
)

log = structlog.get_logger()


# ----------------------
# Utility helpers
# ----------------------

def _missing(body: Dict[str, Any], fields) -> List[str]:
    return [f for f in fields if body.get(f) is None or body.get(f) == ""]


def get_store(request: Request) -> DocumentStore:
    return request.app.state.store


def get_ledger(store: DocumentStore = Depends(get_store)) -> LendingLedger:
    return LendingLedger(store)


router = APIRouter()

# ----------------------
# Health & Schema
# ----------------------

@router.get("/")
async def read_root():
    return {"message": "Welcome to ReadBooks API"}

@router.get("/health")
async def health(store: DocumentStore = Depends(get_store)):
    ok = await store.ping()
    return {"status": "ok", "database": "connected" if ok else "unavailable"}

@router.get("/schema")
async def get_schema():
    return {
        "book": BookSchema.model_json_schema(),
        "category": CategorySchema.model_json_schema(),
        "borrowRecord": BorrowRecordSchema.model_json_schema(by_alias=True),
    }

# ----------------------
# Catalog Endpoints
# ----------------------

@router.get("/categories")
async def list_categories(store: DocumentStore = Depends(get_store)):
    with failure_message("Failed to fetch categories"):
        return await get_documents(store, CATEGORIES)

@router.get("/books")
async def list_books(
    category: Optional[str] = Query(None, description="Exact category match"),
    store: DocumentStore = Depends(get_store),
):
    with failure_message("Failed to fetch books"):
        return await get_documents(store, BOOKS, {"category": category} if category else {})

@router.get("/books/{book_id}")
async def get_book(book_id: str, store: DocumentStore = Depends(get_store)):
    oid = to_object_id(book_id, "Invalid Book ID")
    with failure_message("Failed to fetch book"):
        doc = await store.find_one(BOOKS, {"_id": oid})
    if not doc:
        raise NotFound("Book not found")
    return serialize(doc)

@router.post("/books")
async def create_book(body: Dict[str, Any] = Body(...), store: DocumentStore = Depends(get_store)):
    missing = _missing(body, BOOK_REQUIRED_FIELDS)
    if missing:
        raise ValidationFailed(f"Missing fields: {', '.join(missing)}")
    quantity = body["quantity"]
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 0:
        raise ValidationFailed("quantity must be a non-negative integer")
    body.pop("_id", None)
    with failure_message("Failed to add book"):
        new_id = await create_document(store, BOOKS, body)
    log.info("book_created", book_id=new_id)
    return {"insertedId": new_id}

@router.put("/books/{book_id}")
async def update_book(book_id: str, body: Dict[str, Any] = Body(...), store: DocumentStore = Depends(get_store)):
    oid = to_object_id(book_id, "Invalid Book ID")
    update = {k: v for k, v in body.items() if k not in ("_id", "id")}
    if not update:
        raise ValidationFailed("No fields to update")
    with failure_message("Failed to update book"):
        matched = await store.update(BOOKS, {"_id": oid}, {"$set": update})
    if matched == 0:
        raise NotFound("Book not found")
    log.info("book_updated", book_id=book_id, fields=sorted(update))
    return {"message": "Book updated successfully"}

# ----------------------
# Lending Endpoints
# ----------------------

@router.post("/borrow/{book_id}")
async def borrow_book(
    book_id: str,
    body: Dict[str, Any] = Body(...),
    ledger: LendingLedger = Depends(get_ledger),
):
    missing = _missing(body, BORROW_REQUIRED_FIELDS)
    if missing:
        raise ValidationFailed(f"Missing fields: {', '.join(missing)}")
    try:
        request = BorrowRequest(**{f: body[f] for f in BORROW_REQUIRED_FIELDS})
    except ValidationError:
        raise ValidationFailed("name, email and returnDate must be strings")
    with failure_message("Failed to borrow book"):
        borrow_id = await ledger.borrow(book_id, request)
    return {"message": "Book borrowed successfully", "borrowId": str(borrow_id)}

@router.get("/borrowed")
async def list_borrowed(
    email: Optional[str] = Query(None),
    identity: Identity = Depends(verified_identity),
    store: DocumentStore = Depends(get_store),
):
    email = authorize_email(identity, email)
    with failure_message("Failed to fetch borrowed books"):
        return await get_documents(store, BORROWED, {"email": email})

@router.delete("/return/{borrow_id}")
async def return_book(borrow_id: str, ledger: LendingLedger = Depends(get_ledger)):
    with failure_message("Failed to return book"):
        await ledger.return_book(borrow_id)
    return {"message": "Book returned successfully"}


# ----------------------
# App factory & lifecycle
# ----------------------

def create_app(
    settings: Optional[Settings] = None,
    store: Optional[DocumentStore] = None,
    verifier: Optional[IdentityVerifier] = None,
) -> FastAPI:
    """Build the API. Clients passed in are used as-is and never closed here."""
    settings = settings or Settings.from_env()
    configure_logging(settings.log_level, json_output=not settings.is_dev)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned_store = owned_verifier = None
        try:
            if app.state.verifier is None:
                if not settings.firebase_service_key:
                    raise RuntimeError("FB_SERVICE_KEY is not set")
                owned_verifier = app.state.verifier = FirebaseIdentityVerifier(settings.firebase_service_key)
            if app.state.store is None:
                owned_store = app.state.store = DocumentStore.connect(
                    settings.database_url, settings.database_name, settings.store_timeout_ms
                )
                try:
                    await owned_store.ensure_indexes()
                except LendingError:
                    log.warning("startup_without_unique_loan_index")
            log.info("startup_complete", database=settings.database_name)
            yield
        finally:
            if owned_verifier is not None:
                owned_verifier.close()
                app.state.verifier = None
            if owned_store is not None:
                await owned_store.close()
                app.state.store = None
            log.info("shutdown_complete")

    app = FastAPI(title="ReadBooks API", lifespan=lifespan)
    app.state.settings = settings
    app.state.store = store
    app.state.verifier = verifier

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(LendingError)
    async def lending_error_handler(request: Request, exc: LendingError):
        return JSONResponse(status_code=exc.status_code, content={"message": exc.message})

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        log.info("request_rejected", path=request.url.path, errors=len(exc.errors()))
        return JSONResponse(status_code=400, content={"message": "Invalid request"})

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        log.exception("unhandled_error", method=request.method, path=request.url.path)
        return JSONResponse(status_code=500, content={"message": "Internal server error"})

    app.include_router(router)
    return app


def main():
    settings = app.state.settings
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=settings.port,
        reload=settings.is_dev,
    )


app = create_app()

if __name__ == "__main__":
    main()
