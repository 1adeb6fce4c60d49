from functools import lru_cache
from typing import List

import structlog
from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse

from config import get_settings
from contact_store import ContactStore
from db_models import AddContactRequest, AddContactResponse, Contact, FinalResponse, IdentifyRequest
from db_setup import Database
from disjoint_set_store import DisjointSetStore
from errors import ConcurrencyConflict, IdentityError, InvalidState, ServiceUnavailable, StoreError
from identity_resolver import IdentityResolver
from logging_setup import configure_logging
from union_find import UnionFind

configure_logging(get_settings())

logger = structlog.get_logger()

app = FastAPI(
    title="Bitespeed Contact Reconciliation API",
    version="1.0.0"
)


@lru_cache
def get_resolver() -> IdentityResolver:
    settings = get_settings()
    db = Database(settings.database_path, timeout=settings.database_timeout_seconds)
    db.init_db()
    sets = DisjointSetStore(db)
    engine = UnionFind(
        sets,
        max_retries=settings.union_max_retries,
        retry_backoff_seconds=settings.union_retry_backoff_seconds,
    )
    return IdentityResolver(
        db,
        ContactStore(db),
        sets,
        engine,
        accept_client_ids=settings.accept_client_ids,
        rewrite_precedence=settings.rewrite_precedence,
    )


@app.exception_handler(IdentityError)
async def identity_error_handler(request: Request, exc: IdentityError):
    status_code = exc.status_code
    if isinstance(exc, ConcurrencyConflict):
        # a conflict that escaped every retry loop is reported as unavailable
        logger.warning("Unretried write conflict", path=request.url.path, error=exc.message)
        status_code = ServiceUnavailable.status_code
    elif isinstance(exc, (InvalidState, StoreError)):
        logger.error("Request failed", path=request.url.path, error=exc.message, kind=type(exc).__name__)
    else:
        logger.info("Request rejected", path=request.url.path, error=exc.message, kind=type(exc).__name__)
    return JSONResponse(status_code=status_code, content={"detail": exc.message})


@app.get("/")
async def root():
    return {"message": "Bitespeed API is up"}


# Handlers are sync so the blocking sqlite calls run in the threadpool.
@app.post("/identify", response_model=FinalResponse)
def identify(request: IdentifyRequest, resolver: IdentityResolver = Depends(get_resolver)):
    summary = resolver.resolve(request.email, request.phoneNumber)
    return FinalResponse(contact=summary)


@app.post("/add-contact", response_model=AddContactResponse)
def add_contact(request: AddContactRequest, resolver: IdentityResolver = Depends(get_resolver)):
    """Add a new contact and link it to every identity it shares details with"""
    contact = resolver.ingest(request)
    return AddContactResponse(message="Contact added successfully", contact_id=contact.id)


@app.get("/contacts", response_model=List[Contact])
def list_contacts(resolver: IdentityResolver = Depends(get_resolver)):
    return resolver.list_all()


if __name__ == "__main__":
    import uvicorn
    settings = get_settings()
    uvicorn.run(app, host=settings.host, port=settings.port)
