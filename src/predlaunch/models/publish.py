"""Publish attempts and publish workflow results."""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field


class AttemptStage(str, Enum):
    CLAIMED = "claimed"  # market reserved for this attempt, nothing sent
    APPROVING = "approving"  # approval tx may be in flight
    APPROVAL_TIMEOUT = "approval_timeout"  # worker gave up waiting on the approval, nothing else sent
    BROADCASTING = "broadcasting"  # create tx hash persisted, send in progress
    BROADCAST = "broadcast"  # create tx sent, awaiting receipt
    CONFIRMED = "confirmed"  # receipt ok, address known, db not yet live
    COMMITTED = "committed"
    REVERTED = "reverted"
    FAILED = "failed"  # failed before anything was broadcast
    ABANDONED = "abandoned"


ACTIVE_STAGES = frozenset(
    {
        AttemptStage.CLAIMED,
        AttemptStage.APPROVING,
        AttemptStage.APPROVAL_TIMEOUT,
        AttemptStage.BROADCASTING,
        AttemptStage.BROADCAST,
        AttemptStage.CONFIRMED,
    }
)

# Once here, a create transaction may exist on-chain: not cancellable, only reconcilable
BROADCAST_STAGES = frozenset(
    {AttemptStage.BROADCASTING, AttemptStage.BROADCAST, AttemptStage.CONFIRMED}
)


class PublishAttempt(BaseModel):
    attempt_id: str
    market_id: str
    stage: AttemptStage
    approval_tx_hash: str | None = None
    tx_hash: str | None = None
    market_address: str | None = None
    error: str | None = None
    created_at: datetime
    updated_at: datetime

    @property
    def broadcast(self) -> bool:
        return self.stage in BROADCAST_STAGES


class PublishOutcome(str, Enum):
    PUBLISHED = "published"
    VALIDATION_FAILED = "validation_failed"
    INSUFFICIENT_BALANCE = "insufficient_balance"
    INSUFFICIENT_ALLOWANCE = "insufficient_allowance"
    ONCHAIN_FAILED = "onchain_failed"
    PENDING_CONFIRMATION = "pending_confirmation"  # tx sent, status unknown: reconcile
    COMMIT_PENDING = "commit_pending"  # on-chain done, db not live yet: reconcile


class PublishResult(BaseModel):
    """Outcome of publish/reconcile. Each outcome kind needs a different follow-up."""

    outcome: PublishOutcome
    market_id: str
    status: str | None = None
    slug: str | None = None
    market_address: str | None = None
    approval_tx_hash: str | None = None
    tx_hash: str | None = None
    reasons: list[str] = Field(default_factory=list)
    required: int | None = None
    available: int | None = None
    shortfall: int | None = None
    retryable: bool = False
    message: str | None = None

    @property
    def ok(self) -> bool:
        return self.outcome is PublishOutcome.PUBLISHED

    @property
    def needs_reconciliation(self) -> bool:
        return self.outcome in (PublishOutcome.PENDING_CONFIRMATION, PublishOutcome.COMMIT_PENDING)
