"""FastAPI application for the storage reconciler."""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Annotated

from fastapi import Depends, FastAPI, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from storage_reconciler import __version__
from storage_reconciler.clients.blob_store import BlobStore, build_blob_store
from storage_reconciler.config import settings
from storage_reconciler.db import get_session, init_db
from storage_reconciler.exceptions import StorageReconcilerError
from storage_reconciler.models.enums import ExecutionMode
from storage_reconciler.reconciliation.schemas import CleanupOutcome, ReconciliationReport
from storage_reconciler.services.storage_audit import AuditScope, StorageAuditService


class CleanupRequest(BaseModel):
    """Body of POST /storage/cleanup. Dry run unless `execute` is true."""

    execute: bool = False
    prefixes: list[str] = Field(default_factory=list)  # pyright: ignore[reportUnknownVariableType]


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan handler."""
    await init_db()
    app.state.blob_store = build_blob_store(settings)
    yield


app = FastAPI(
    title="Storage Reconciler",
    description="Audit and clean up blob storage against the portfolio database",
    version=__version__,
    lifespan=lifespan,
)


def get_blob_store() -> BlobStore:
    """The process-wide blob store client, constructed once at startup."""
    store = getattr(app.state, "blob_store", None)
    if store is None:
        store = build_blob_store(settings)
        app.state.blob_store = store
    return store


async def get_audit_service(
    session: Annotated[AsyncSession, Depends(get_session)],
    blob_store: Annotated[BlobStore, Depends(get_blob_store)],
) -> StorageAuditService:
    """Dependency providing a StorageAuditService per request."""
    return StorageAuditService(session, blob_store)


AuditService = Annotated[StorageAuditService, Depends(get_audit_service)]


@app.get("/health")
async def health() -> dict[str, str]:
    """Health check endpoint."""
    return {"status": "ok", "version": __version__}


@app.get("/storage/audit")
async def storage_audit(
    service: AuditService,
    prefix: Annotated[list[str] | None, Query()] = None,
) -> ReconciliationReport:
    """Read-only reconciliation report."""
    try:
        return await service.run_audit(AuditScope.from_prefixes(prefix or []))
    except StorageReconcilerError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc


@app.post("/storage/cleanup")
async def storage_cleanup(service: AuditService, request: CleanupRequest) -> CleanupOutcome:
    """Run garbage collection. Mutates only when `execute` is true."""
    mode = ExecutionMode.EXECUTE if request.execute else ExecutionMode.DRY_RUN
    try:
        return await service.run_cleanup(AuditScope.from_prefixes(request.prefixes), mode=mode)
    except StorageReconcilerError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
