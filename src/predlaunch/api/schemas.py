"""Pydantic schemas for API responses and OpenAPI docs. Request bodies are the models in predlaunch.models."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from predlaunch.models.market import Market


# --- Health ---
class HealthResponse(BaseModel):
    status: str = "ok"
    chain_backend: str | None = None


# --- Error (consistent shape for 4xx/5xx) ---
class ErrorResponse(BaseModel):
    detail: str = Field(..., description="Human-readable message")
    code: str | None = Field(None, description="Machine-readable code, e.g. validation_failed, invalid_transition")
    reasons: list[str] | None = Field(None, description="Every violated rule, for validation failures")
    required: int | None = Field(None, description="Collateral needed, token base units")
    available: int | None = Field(None, description="Collateral held or approved, token base units")
    shortfall: int | None = None
    retryable: bool | None = None


# --- Markets ---
class OutcomeResponse(BaseModel):
    id: str | None
    label: str
    color: str | None = None
    idx: int


class MarketResponse(BaseModel):
    id: str
    slug: str
    title: str
    question: str
    type: str
    status: str
    close_time: datetime
    created_at: datetime
    updated_at: datetime | None = None
    description: str | None = None
    rules: str | None = None
    image_url: str | None = None
    fee_bps: int | None = None
    chain_id: int | None = None
    market_address: str | None = None
    tx_hash: str | None = None
    publishing: bool = Field(False, description="A publish attempt currently holds the market")
    winning_outcome_idx: int | None = None
    evidence_url: str | None = None
    evidence_cid: str | None = None
    resolution_notes: str | None = None
    resolved_at: datetime | None = None
    closed_at: datetime | None = None
    archived_at: datetime | None = None
    outcomes: list[OutcomeResponse] = Field(default_factory=list)

    @classmethod
    def from_market(cls, market: Market) -> MarketResponse:
        data = market.model_dump(exclude={"outcomes", "active_attempt_id", "previous_status", "rules_cid"})
        data["type"] = market.type.value
        data["status"] = market.status.value
        data["publishing"] = market.active_attempt_id is not None
        data["outcomes"] = [
            OutcomeResponse(id=o.id, label=o.label, color=o.color, idx=o.idx)
            for o in sorted(market.outcomes, key=lambda o: o.idx)
        ]
        return cls(**data)


class MarketsListResponse(BaseModel):
    markets: list[MarketResponse]
    total: int
    page: int
    page_size: int


# --- Publish / reconcile ---
class PublishResponse(BaseModel):
    outcome: str
    market_id: str
    status: str | None = Field(None, description="Market status, or 'processing' while awaiting reconciliation")
    slug: str | None = None
    market_address: str | None = None
    tx_hash: str | None = None
    approval_tx_hash: str | None = Field(None, description="Collateral approval awaiting confirmation, if any")
    message: str | None = None


# --- Slugs / stats ---
class SlugCheckResponse(BaseModel):
    slug: str
    available: bool
    suggestion: str


class StatsResponse(BaseModel):
    total: int
    by_status: dict[str, int]
