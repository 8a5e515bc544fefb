"""FastAPI backend for the admin UI: event CRUD, publish, lifecycle actions."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Literal

import structlog
from fastapi import FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from predlaunch.api.schemas import (
    ErrorResponse,
    HealthResponse,
    MarketResponse,
    MarketsListResponse,
    PublishResponse,
    SlugCheckResponse,
    StatsResponse,
)
from predlaunch.config import get_settings
from predlaunch.errors import (
    InsufficientAllowance,
    InsufficientBalance,
    InvalidLifecycleTransition,
    MarketNotFound,
    OnChainError,
    OutcomeReconciliationFailed,
    PredLaunchError,
    SlugExhausted,
    ValidationFailed,
)
from predlaunch.models.market import MarketDraft, MarketEdit, Resolution
from predlaunch.models.publish import PublishOutcome, PublishResult
from predlaunch.publishing.orchestrator import ONCHAIN_FAILURE_MESSAGE, PROCESSING_MESSAGE, PublicationOrchestrator
from predlaunch.storage.markets import PAGE_SIZE

log = structlog.get_logger(__name__)

# Set by run_api() so lifespan builds the orchestrator for the right profile.
_config_profile: str | None = None
_run_with_reconciler = False


@asynccontextmanager
async def lifespan(app: FastAPI):
    owned = False
    if getattr(app.state, "orchestrator", None) is None:
        from predlaunch.publishing import build_orchestrator

        settings = get_settings(_config_profile)
        app.state.orchestrator = build_orchestrator(settings)
        app.state.chain_backend = settings.chain_backend
        owned = True

    reconcile_task = None
    reconcile_stop = None
    if _run_with_reconciler:
        from predlaunch.publishing.reconciler import Reconciler

        settings = get_settings(_config_profile)
        reconciler = Reconciler(app.state.orchestrator, settings.publish_config().reconcile_interval_sec)
        reconcile_stop = asyncio.Event()
        reconcile_task = asyncio.create_task(reconciler.run(stop_event=reconcile_stop))

    yield

    if reconcile_task is not None and reconcile_stop is not None:
        reconcile_stop.set()
        await reconcile_task
    if owned:
        app.state.orchestrator = None


app = FastAPI(title="PredLaunch API", version="0.1.0", lifespan=lifespan)
app.add_middleware(CORSMiddleware, allow_origins=["*"], allow_methods=["*"], allow_headers=["*"])


def _error_json(code: str, message: str, status_code: int = 404, **extra: Any) -> JSONResponse:
    """Return consistent error JSON: { detail, code } plus optional structured fields."""
    content = {"detail": message, "code": code}
    content.update({k: v for k, v in extra.items() if v is not None})
    return JSONResponse(status_code=status_code, content=content)


def _orchestrator(request: Request) -> PublicationOrchestrator:
    return request.app.state.orchestrator


_ERRORS = {404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}}


@app.exception_handler(PredLaunchError)
async def predlaunch_error(request: Request, exc: PredLaunchError) -> JSONResponse:
    if isinstance(exc, MarketNotFound):
        return _error_json(exc.code, str(exc), 404)
    if isinstance(exc, ValidationFailed):
        return _error_json(exc.code, "validation failed", 400, reasons=exc.reasons)
    if isinstance(exc, (InsufficientBalance, InsufficientAllowance)):
        return _error_json(
            exc.code, str(exc), 400, required=exc.required, available=exc.available, shortfall=exc.shortfall
        )
    if isinstance(exc, (InvalidLifecycleTransition, SlugExhausted)):
        return _error_json(exc.code, str(exc), 409)
    if isinstance(exc, OutcomeReconciliationFailed):
        log.error("outcome_edit_incomplete", market_id=exc.market_id, step=exc.step, alert=True)
        return _error_json(exc.code, str(exc), 503, retryable=True)
    if isinstance(exc, OnChainError):
        return _error_json(exc.code, ONCHAIN_FAILURE_MESSAGE, 502)
    log.error("unhandled_domain_error", code=exc.code, error=str(exc))
    return _error_json(exc.code, str(exc), 500)


def _publish_body(result: PublishResult, status: str | None) -> PublishResponse:
    return PublishResponse(
        outcome=result.outcome.value,
        market_id=result.market_id,
        status=status,
        slug=result.slug,
        market_address=result.market_address,
        tx_hash=result.tx_hash,
        approval_tx_hash=result.approval_tx_hash,
        message=result.message,
    )


def _publish_response(result: PublishResult) -> JSONResponse | PublishResponse:
    """Map each publish outcome to its own status code; they are never collapsed."""
    if result.outcome is PublishOutcome.PUBLISHED:
        return _publish_body(result, result.status)
    if result.outcome is PublishOutcome.VALIDATION_FAILED:
        return _error_json(result.outcome.value, "validation failed", 400, reasons=result.reasons)
    if result.outcome in (PublishOutcome.INSUFFICIENT_BALANCE, PublishOutcome.INSUFFICIENT_ALLOWANCE):
        return _error_json(
            result.outcome.value,
            result.message or result.outcome.value,
            400,
            reasons=result.reasons,
            required=result.required,
            available=result.available,
            shortfall=result.shortfall,
        )
    if result.outcome is PublishOutcome.ONCHAIN_FAILED:
        return _error_json(
            result.outcome.value, result.message or ONCHAIN_FAILURE_MESSAGE, 502, retryable=result.retryable
        )
    # Pending confirmation or commit pending: neither success nor failure yet
    body = _publish_body(result, PROCESSING_MESSAGE)
    return JSONResponse(status_code=202, content=body.model_dump())


@app.get("/health", response_model=HealthResponse)
def health(request: Request) -> HealthResponse:
    return HealthResponse(status="ok", chain_backend=getattr(request.app.state, "chain_backend", None))


@app.get("/events", response_model=MarketsListResponse)
def events_list(
    request: Request,
    q: str | None = Query(None, max_length=200, description="Search question and slug"),
    status: list[str] | None = Query(None, description="Filter by status; repeatable"),
    created_from: datetime | None = None,
    created_to: datetime | None = None,
    sort: Literal["created_at", "close_time", "status", "title"] = "created_at",
    order: Literal["asc", "desc"] = "desc",
    page: int = Query(1, ge=1),
) -> MarketsListResponse:
    """List events with search, status filter, created range, sort and paging."""
    markets, total = _orchestrator(request).list_markets(
        q=q.strip() if q else None,
        statuses=status,
        created_from=created_from,
        created_to=created_to,
        sort=sort,
        order=order,
        page=page,
    )
    return MarketsListResponse(
        markets=[MarketResponse.from_market(m) for m in markets], total=total, page=page, page_size=PAGE_SIZE
    )


@app.post("/events", response_model=MarketResponse, status_code=201, responses={400: {"model": ErrorResponse}})
def events_create(request: Request, draft: MarketDraft) -> MarketResponse:
    return MarketResponse.from_market(_orchestrator(request).create_draft(draft))


@app.get("/events/by-slug/{slug}", response_model=MarketResponse, responses=_ERRORS)
def events_by_slug(request: Request, slug: str) -> MarketResponse:
    return MarketResponse.from_market(_orchestrator(request).get_by_slug(slug))


@app.get("/events/{market_id}", response_model=MarketResponse, responses=_ERRORS)
def events_detail(request: Request, market_id: str) -> MarketResponse:
    return MarketResponse.from_market(_orchestrator(request).get(market_id))


@app.patch("/events/{market_id}", response_model=MarketResponse, responses=_ERRORS)
def events_edit(request: Request, market_id: str, edit: MarketEdit) -> MarketResponse:
    """Partial update; `outcomes`, when sent, is the complete desired list (ids mark existing outcomes)."""
    return MarketResponse.from_market(_orchestrator(request).edit(market_id, edit))


@app.delete("/events/{market_id}", status_code=204, responses=_ERRORS)
def events_delete(request: Request, market_id: str) -> None:
    _orchestrator(request).delete(market_id)


@app.put(
    "/events/{market_id}/publish",
    response_model=PublishResponse,
    responses={
        202: {"description": "Transaction sent, awaiting confirmation", "model": PublishResponse},
        400: {"description": "Validation or funding problem", "model": ErrorResponse},
        502: {"description": "On-chain failure", "model": ErrorResponse},
        **_ERRORS,
    },
)
def events_publish(request: Request, market_id: str):
    return _publish_response(_orchestrator(request).publish(market_id))


@app.post("/events/{market_id}/reconcile", response_model=PublishResponse, responses=_ERRORS)
def events_reconcile(request: Request, market_id: str):
    """Re-check a publish whose outcome was not yet known. Never sends a transaction."""
    return _publish_response(_orchestrator(request).reconcile(market_id))


@app.post("/events/{market_id}/cancel", response_model=MarketResponse, responses=_ERRORS)
def events_cancel(request: Request, market_id: str) -> MarketResponse:
    return MarketResponse.from_market(_orchestrator(request).cancel_publish(market_id))


@app.post("/events/{market_id}/abandon", response_model=PublishResponse, responses=_ERRORS)
def events_abandon(request: Request, market_id: str, force: bool = False):
    """Release a stuck publish attempt. A broadcast create needs force=true while it may still confirm."""
    result = _orchestrator(request).abandon_attempt(market_id, force=force)
    if result.outcome is PublishOutcome.ONCHAIN_FAILED:
        return _publish_body(result, result.status)
    return _publish_response(result)


@app.post("/events/{market_id}/close", response_model=MarketResponse, responses=_ERRORS)
def events_close(request: Request, market_id: str) -> MarketResponse:
    return MarketResponse.from_market(_orchestrator(request).close(market_id))


@app.post("/events/{market_id}/resolve", response_model=MarketResponse, responses=_ERRORS)
def events_resolve(request: Request, market_id: str, resolution: Resolution) -> MarketResponse:
    return MarketResponse.from_market(_orchestrator(request).resolve(market_id, resolution))


@app.post("/events/{market_id}/archive", response_model=MarketResponse, responses=_ERRORS)
def events_archive(request: Request, market_id: str) -> MarketResponse:
    return MarketResponse.from_market(_orchestrator(request).archive(market_id))


@app.get("/slugs/check", response_model=SlugCheckResponse)
def slugs_check(request: Request, slug: str = Query(..., min_length=1, max_length=200)) -> SlugCheckResponse:
    return SlugCheckResponse(**_orchestrator(request).slug_available(slug))


@app.get("/stats", response_model=StatsResponse)
def stats(request: Request) -> StatsResponse:
    return StatsResponse(**_orchestrator(request).stats())


def run_api(
    host: str = "127.0.0.1",
    port: int = 8000,
    with_reconciler: bool = False,
    profile: str | None = None,
) -> None:
    global _config_profile, _run_with_reconciler
    _config_profile = profile
    _run_with_reconciler = with_reconciler
    import uvicorn

    uvicorn.run("predlaunch.api.main:app", host=host, port=port, reload=False)
