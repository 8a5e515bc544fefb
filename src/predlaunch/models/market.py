"""Market (event), Outcome and the edit/draft/resolution payloads accepted at the boundary."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated

from pydantic import AfterValidator, AnyHttpUrl, BaseModel, ConfigDict, Field, field_validator

MIN_OUTCOMES = 2
MAX_OUTCOMES = 8
BINARY_OUTCOMES = 2
OUTCOME_LABEL_MAX = 100
QUESTION_MAX = 500


class MarketType(str, Enum):
    BINARY = "binary"
    MULTI = "multi"

    def outcome_bounds(self) -> tuple[int, int]:
        """Inclusive (min, max) outcome count for this type."""
        if self is MarketType.BINARY:
            return BINARY_OUTCOMES, BINARY_OUTCOMES
        return MIN_OUTCOMES, MAX_OUTCOMES


class MarketStatus(str, Enum):
    DRAFT = "draft"
    PENDING = "pending"
    ONCHAIN = "onchain"
    LIVE = "live"
    CLOSED = "closed"
    RESOLVED = "resolved"
    ARCHIVED = "archived"


# market_address and tx_hash are set iff the status is one of these
ONCHAIN_STATUSES = frozenset(
    {
        MarketStatus.ONCHAIN,
        MarketStatus.LIVE,
        MarketStatus.CLOSED,
        MarketStatus.RESOLVED,
        MarketStatus.ARCHIVED,
    }
)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


UtcDatetime = Annotated[datetime, AfterValidator(_as_utc)]


class Outcome(BaseModel):
    """One possible resolution of a market. idx is its dense 0-based ordinal."""

    id: str | None = None
    market_id: str | None = None
    label: str = Field(..., min_length=1, max_length=OUTCOME_LABEL_MAX)
    color: str | None = None
    idx: int = Field(0, ge=0)


class Market(BaseModel):
    """Aggregate root. Owns its outcomes."""

    id: str
    slug: str
    title: str
    question: str
    type: MarketType
    status: MarketStatus = MarketStatus.DRAFT
    close_time: datetime
    created_at: datetime
    updated_at: datetime | None = None
    description: str | None = None
    rules: str | None = None
    rules_cid: str | None = None
    image_url: str | None = None
    chain_id: int | None = None
    fee_bps: int | None = None
    market_address: str | None = None
    tx_hash: str | None = None
    active_attempt_id: str | None = None
    winning_outcome_idx: int | None = None
    evidence_url: str | None = None
    evidence_cid: str | None = None
    resolution_notes: str | None = None
    resolved_at: datetime | None = None
    closed_at: datetime | None = None
    archived_at: datetime | None = None
    previous_status: MarketStatus | None = None
    outcomes: list[Outcome] = Field(default_factory=list)

    @property
    def has_onchain_artifact(self) -> bool:
        return bool(self.market_address or self.tx_hash)


class OutcomeInput(BaseModel):
    """Outcome as supplied by a create or edit request. id present = existing outcome."""

    model_config = ConfigDict(extra="forbid")

    id: str | None = None
    label: str = Field(..., min_length=1, max_length=OUTCOME_LABEL_MAX)
    color: str | None = None

    @field_validator("label")
    @classmethod
    def _strip_label(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("label must not be blank")
        return v


class MarketDraft(BaseModel):
    """Create request for a new draft market."""

    model_config = ConfigDict(extra="forbid")

    title: str | None = Field(None, min_length=1, max_length=200)
    question: str = Field(..., min_length=1, max_length=QUESTION_MAX)
    type: MarketType
    outcomes: list[OutcomeInput] = Field(..., min_length=MIN_OUTCOMES, max_length=MAX_OUTCOMES)
    close_time: UtcDatetime
    description: str | None = Field(None, max_length=2000)
    rules: str | None = Field(None, min_length=10, max_length=2000)
    image_url: AnyHttpUrl | None = None
    fee_bps: int | None = Field(None, ge=0, le=10_000)


class MarketEdit(BaseModel):
    """Partial update. Only fields explicitly sent are applied (see model_fields_set)."""

    model_config = ConfigDict(extra="forbid")

    title: str | None = Field(None, min_length=1, max_length=200)
    question: str | None = Field(None, min_length=1, max_length=QUESTION_MAX)
    type: MarketType | None = None
    outcomes: list[OutcomeInput] | None = Field(None, min_length=MIN_OUTCOMES, max_length=MAX_OUTCOMES)
    close_time: UtcDatetime | None = None
    description: str | None = Field(None, max_length=2000)
    rules: str | None = Field(None, min_length=10, max_length=2000)
    image_url: AnyHttpUrl | None = None

    def provided(self) -> set[str]:
        return set(self.model_fields_set)


class Resolution(BaseModel):
    """Resolve request: winning ordinal plus evidence metadata."""

    model_config = ConfigDict(extra="forbid")

    winning_outcome_idx: int = Field(..., ge=0)
    evidence_url: AnyHttpUrl
    evidence_cid: str | None = None
    resolution_notes: str | None = Field(None, min_length=10, max_length=1000)
