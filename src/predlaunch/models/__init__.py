"""Canonical schema (Pydantic) - Market, Outcome, publish attempts and results."""

from predlaunch.models.market import (
    Market,
    MarketDraft,
    MarketEdit,
    MarketStatus,
    MarketType,
    Outcome,
    OutcomeInput,
    Resolution,
)
from predlaunch.models.publish import (
    AttemptStage,
    PublishAttempt,
    PublishOutcome,
    PublishResult,
)

__all__ = [
    "Market",
    "MarketDraft",
    "MarketEdit",
    "MarketStatus",
    "MarketType",
    "Outcome",
    "OutcomeInput",
    "Resolution",
    "AttemptStage",
    "PublishAttempt",
    "PublishOutcome",
    "PublishResult",
]
