"""
FastAPI + Uvicorn ASGI application.

Exposes document submission and status lookup over HTTP, with health
endpoints and a background status poller.

Architecture:
  - FastAPI: request validation (pydantic models) and routing
  - Uvicorn: ASGI server (signals, graceful shutdown)
  - APScheduler: polls pending track ids in a background thread
  - Probes: liveness (poller thread alive) + readiness (components built)

Entry point for production: uvicorn sii_dte.asgi:app --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

import asyncio
import threading
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import date
from decimal import Decimal
from typing import Any

import structlog
from fastapi import FastAPI, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, field_validator

from sii_dte import __version__
from sii_dte.config import AppSettings
from sii_dte.domain import rut
from sii_dte.domain.errors import AuthorityRejection, ErrorCode
from sii_dte.domain.models import (
    BusinessDocument,
    DocumentQuery,
    DocumentType,
    LineItem,
    Party,
    Reference,
    ReferenceCode,
)
from sii_dte.domain.result import FailureDescription
from sii_dte.main import (
    DocumentStatusFn,
    StatusFn,
    SubmitFn,
    build_components,
    configure_structlog,
)
from sii_dte.scheduler import PendingDeliveries, create_status_poller

# ─────────────────────── Global State ───────────────────────

_scheduler_thread: threading.Thread | None = None
_scheduler_started = False
_ready = False
_error_message: str | None = None
_submit_fn: SubmitFn | None = None
_status_fn: StatusFn | None = None
_document_status_fn: DocumentStatusFn | None = None
_registry = PendingDeliveries()
log = structlog.get_logger()

_HTTP_STATUS = {
    ErrorCode.INVALID_DOCUMENT: 422,
    ErrorCode.HETEROGENEOUS_BATCH: 422,
    ErrorCode.STAMP_GENERATION_ERROR: 422,
    ErrorCode.TRANSPORT_ERROR: 503,
    ErrorCode.PROTOCOL_ERROR: 502,
    ErrorCode.AUTHENTICATION_ERROR: 502,
    ErrorCode.SUBMISSION_REJECTED: 502,
}


# ─────────────────────── Request Models ───────────────────────


class PartyPayload(BaseModel):
    rut: str
    name: str = Field(min_length=1)
    business_line: str | None = None
    activity_code: int | None = None
    address: str | None = None
    commune: str | None = None
    city: str | None = None

    @field_validator("rut")
    @classmethod
    def validate_rut(cls, value: str) -> str:
        if not rut.is_valid(value):
            raise ValueError(f"Invalid RUT: {value!r}")
        return rut.normalize(value)

    def to_domain(self) -> Party:
        return Party(**self.model_dump())


class LineItemPayload(BaseModel):
    description: str = Field(min_length=1)
    quantity: Decimal = Field(gt=0)
    unit_price: Decimal = Field(ge=0)
    product_code: str | None = None
    discount_amount: int = Field(default=0, ge=0)
    exempt: bool = False

    def to_domain(self) -> LineItem:
        return LineItem(**self.model_dump())


class ReferencePayload(BaseModel):
    line_number: int = Field(ge=1)
    document_type: str = Field(min_length=1, max_length=3)
    folio: str = Field(min_length=1)
    emission_date: date
    reason: str | None = None
    code: ReferenceCode | None = None

    def to_domain(self) -> Reference:
        return Reference(**self.model_dump())


class DocumentPayload(BaseModel):
    document_type: DocumentType
    folio: int = Field(gt=0)
    emission_date: date
    emitter: PartyPayload
    items: list[LineItemPayload] = Field(min_length=1)
    receiver: PartyPayload | None = None
    due_date: date | None = None
    references: list[ReferencePayload] = Field(default_factory=list)

    def to_domain(self) -> BusinessDocument:
        return BusinessDocument(
            document_type=self.document_type,
            folio=self.folio,
            emission_date=self.emission_date,
            emitter=self.emitter.to_domain(),
            items=tuple(item.to_domain() for item in self.items),
            receiver=self.receiver.to_domain() if self.receiver else None,
            due_date=self.due_date,
            references=tuple(reference.to_domain() for reference in self.references),
        )


class BatchPayload(BaseModel):
    documents: list[DocumentPayload] = Field(min_length=1)


# ─────────────────────── Lifespan ───────────────────────


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """
    Startup: load settings and key material, start the status poller.
    Shutdown: stop the poller and join its thread.
    """
    global _scheduler_thread, _error_message, _submit_fn, _status_fn, _document_status_fn, _ready

    log.info("asgi.startup")

    try:
        settings = AppSettings()
    except Exception as e:
        _error_message = f"Configuration error: {e}"
        log.error("asgi.startup_error", error=_error_message)
        raise

    configure_structlog(settings.log_level)

    try:
        components = build_components(settings)
        scheduler = create_status_poller(
            status_fn=components.status,
            registry=_registry,
            interval_seconds=settings.poller.interval_seconds,
            register_signals=False,
        )
    except Exception as e:
        _error_message = f"Failed to initialize components: {e}"
        log.error("asgi.init_error", error=_error_message)
        raise

    _submit_fn = components.submit
    _status_fn = components.status
    _document_status_fn = components.document_status

    def run_scheduler() -> None:
        global _scheduler_started, _error_message
        try:
            _scheduler_started = True
            log.info("asgi.scheduler_thread_started")
            scheduler.start()
        except Exception as e:
            _error_message = f"Scheduler error: {e}"
            log.error("asgi.scheduler_error", error=_error_message)

    _scheduler_thread = threading.Thread(target=run_scheduler, daemon=True)
    _scheduler_thread.start()
    await asyncio.sleep(0.1)
    _ready = True

    log.info("asgi.startup_complete", signer=components.identity.signer_rut)

    yield

    log.info("asgi.shutdown")
    try:
        scheduler.shutdown(wait=True)
    except Exception as e:
        log.warning("asgi.scheduler_shutdown_error", error=str(e))
    if _scheduler_thread and _scheduler_thread.is_alive():
        _scheduler_thread.join(timeout=5.0)
        if _scheduler_thread.is_alive():
            log.warning("asgi.scheduler_thread_timeout", timeout_seconds=5.0)
    log.info("asgi.shutdown_complete")


# ─────────────────────── FastAPI Application ───────────────────────

app = FastAPI(
    title="sii-dte",
    description="Electronic tax document signing and delivery to the SII",
    version=__version__,
    lifespan=lifespan,
)


def _failure_response(failure: FailureDescription) -> JSONResponse:
    content: dict[str, Any] = {
        "status": "failed",
        "error_code": failure.code.value,
        "stage": failure.stage,
        "message": failure.message,
    }
    if isinstance(failure.exception, AuthorityRejection):
        content["authority_code"] = failure.exception.code
        content["authority_message"] = failure.exception.message
    return JSONResponse(status_code=_HTTP_STATUS.get(failure.code, 500), content=content)


def _invalid(reason: str) -> JSONResponse:
    return JSONResponse(status_code=422, content={"status": "invalid", "reason": reason})


def _unavailable() -> JSONResponse:
    return JSONResponse(
        status_code=503,
        content={"status": "unavailable", "reason": "Components not initialized"},
    )


async def _submit(documents: list[BusinessDocument]) -> JSONResponse:
    if _submit_fn is None:
        return _unavailable()

    log.info("deliveries.submit_requested", documents=len(documents))
    try:
        result = await asyncio.to_thread(_submit_fn, documents)
    except Exception as e:
        log.error("deliveries.exception", error=str(e))
        return JSONResponse(status_code=500, content={"status": "error", "error": str(e)})

    if result.is_failure():
        return _failure_response(result.error())

    delivery = result.value()
    _registry.add(delivery.submission.track_id)
    return JSONResponse(
        status_code=202,
        content={
            "status": "submitted",
            "track_id": delivery.submission.track_id,
            "authority_status": delivery.submission.status,
            "documents": [d.reference_id for d in delivery.envelope.documents],
        },
    )


@app.post("/deliveries")
async def submit_document(payload: DocumentPayload) -> JSONResponse:
    """Stamp, sign and deliver one document. 202 with the track id on success."""
    return await _submit([payload.to_domain()])


@app.post("/deliveries/batch")
async def submit_batch(payload: BatchPayload) -> JSONResponse:
    """Deliver several documents of one type and emitter in a single envelope."""
    return await _submit([d.to_domain() for d in payload.documents])


@app.get("/deliveries/{track_id}")
async def delivery_status(track_id: str) -> JSONResponse:
    """Processing status of an envelope; final states are served from memory."""
    status = _registry.final_status(track_id)
    if status is None:
        if _status_fn is None:
            return _unavailable()
        result = await asyncio.to_thread(_status_fn, track_id)
        if result.is_failure():
            return _failure_response(result.error())
        status = result.value()

    return JSONResponse(
        status_code=200,
        content={
            "track_id": status.track_id,
            "status": status.status,
            "message": status.message,
            "final": status.is_final,
            "accepted": status.accepted,
            "rejected": status.rejected,
            "objected": status.objected,
        },
    )


@app.get("/documents/{document_type}/{folio}")
async def document_status(
    document_type: int,
    folio: int,
    emission_date: date,
    receiver_rut: str,
    total_amount: int = Query(ge=0),
) -> JSONResponse:
    """What the authority knows about one issued document, matched on its key data."""
    try:
        kind = DocumentType(document_type)
    except ValueError:
        return _invalid(f"Unknown document type {document_type}")
    if not rut.is_valid(receiver_rut):
        return _invalid(f"Invalid receiver RUT: {receiver_rut!r}")
    if _document_status_fn is None:
        return _unavailable()

    query = DocumentQuery(
        document_type=kind,
        folio=folio,
        emission_date=emission_date,
        receiver_rut=rut.normalize(receiver_rut),
        total_amount=total_amount,
    )
    result = await asyncio.to_thread(_document_status_fn, query)
    if result.is_failure():
        return _failure_response(result.error())

    status = result.value()
    return JSONResponse(
        status_code=200,
        content={
            "document_type": int(status.document_type),
            "folio": status.folio,
            "status": status.status,
            "message": status.message,
            "accepted": status.is_accepted,
            "error_code": status.error_code,
            "error_message": status.error_message,
        },
    )


@app.get("/health")
async def health() -> JSONResponse:
    """Liveness: 200 while the poller thread runs and startup had no errors."""
    if _error_message:
        log.warning("health.check_failed", error=_error_message)
        return JSONResponse(status_code=503, content={"status": "unhealthy", "error": _error_message})

    if not _scheduler_thread or not _scheduler_thread.is_alive():
        return JSONResponse(
            status_code=503,
            content={"status": "unhealthy", "reason": "poller thread not running"},
        )

    return JSONResponse(status_code=200, content={"status": "healthy", "poller_running": True})


@app.get("/ready")
async def ready() -> JSONResponse:
    """Readiness: 200 once key material and CAFs are loaded."""
    if _error_message:
        return JSONResponse(status_code=503, content={"status": "error", "error": _error_message})

    if not _ready or _submit_fn is None:
        return JSONResponse(
            status_code=202,
            content={"status": "starting", "scheduler_started": _scheduler_started},
        )

    return JSONResponse(
        status_code=200,
        content={"status": "ready", "pending_deliveries": len(_registry.pending())},
    )


@app.get("/info")
async def info() -> dict[str, Any]:
    return {
        "name": "sii-dte",
        "version": __version__,
        "poller_running": _scheduler_thread is not None and _scheduler_thread.is_alive(),
        "ready": _ready,
        "pending_deliveries": _registry.pending(),
        "has_error": _error_message is not None,
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("sii_dte.asgi:app", host="0.0.0.0", port=8000, reload=False, log_level="info")
