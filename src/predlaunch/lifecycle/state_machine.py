"""Market lifecycle: allowed transitions, their guards, and edit permissions per status.

    draft -> pending -> onchain -> live -> closed -> resolved
                                                  \\-> archived
    pending -> draft       (cancel, only before any broadcast)
    draft/pending -> deleted (only without on-chain artifact)

resolved and archived are terminal. Every refusal raises InvalidLifecycleTransition
naming the current status and the attempted operation.
"""

from __future__ import annotations

from datetime import datetime

from predlaunch.errors import InvalidLifecycleTransition
from predlaunch.models.market import Market, MarketEdit, MarketStatus

S = MarketStatus

TRANSITIONS: dict[MarketStatus, frozenset[MarketStatus]] = {
    S.DRAFT: frozenset({S.PENDING}),
    S.PENDING: frozenset({S.PENDING, S.ONCHAIN, S.DRAFT}),
    S.ONCHAIN: frozenset({S.LIVE}),
    S.LIVE: frozenset({S.CLOSED}),
    S.CLOSED: frozenset({S.RESOLVED, S.ARCHIVED}),
    S.RESOLVED: frozenset(),
    S.ARCHIVED: frozenset(),
}

TERMINAL = frozenset({S.RESOLVED, S.ARCHIVED})
CONTENT_EDITABLE = frozenset({S.DRAFT, S.PENDING})
DELETABLE = frozenset({S.DRAFT, S.PENDING})

# Fields frozen once a market leaves draft/pending
CONTENT_FIELDS = ("title", "question", "outcomes")


class LifecycleStateMachine:
    """Authoritative state model. Stateless: every check takes the current market."""

    def is_terminal(self, status: MarketStatus) -> bool:
        return status in TERMINAL

    def require_transition(
        self,
        market: Market,
        target: MarketStatus,
        *,
        operation: str | None = None,
        now: datetime | None = None,
        preflight_passed: bool = False,
        market_address: str | None = None,
        tx_hash: str | None = None,
        winning_outcome_idx: int | None = None,
        publish_broadcast: bool = False,
    ) -> None:
        """Raise InvalidLifecycleTransition unless market may move to target right now."""
        current = market.status
        op = operation or f"move to {target.value}"
        if target not in TRANSITIONS[current]:
            raise InvalidLifecycleTransition(current.value, op)

        if target is S.PENDING:
            if not preflight_passed:
                raise InvalidLifecycleTransition(current.value, op, "preflight has not passed")
            if now is not None and market.close_time <= now:
                raise InvalidLifecycleTransition(current.value, op, "close time is not in the future")
        elif target is S.ONCHAIN:
            if not market_address or not tx_hash:
                raise InvalidLifecycleTransition(
                    current.value, op, "contract address and transaction hash are required"
                )
        elif target is S.LIVE:
            if not market.market_address or not market.tx_hash:
                raise InvalidLifecycleTransition(
                    current.value, op, "no contract address recorded"
                )
        elif target is S.RESOLVED:
            count = len(market.outcomes)
            if winning_outcome_idx is None or not 0 <= winning_outcome_idx < count:
                raise InvalidLifecycleTransition(
                    current.value, op, f"winning outcome index must be in 0..{count - 1}"
                )
        elif target is S.DRAFT:
            if publish_broadcast:
                raise InvalidLifecycleTransition(
                    current.value, op, "a transaction was already broadcast; reconcile instead"
                )

    def require_edit(self, market: Market, edit: MarketEdit) -> None:
        """Check an edit against the status-dependent freeze rules."""
        current = market.status
        if current in TERMINAL:
            raise InvalidLifecycleTransition(current.value, "edit")
        provided = edit.provided()
        content = [f for f in CONTENT_FIELDS if f in provided]
        if content:
            if current not in CONTENT_EDITABLE:
                raise InvalidLifecycleTransition(current.value, f"edit {', '.join(content)}")
            if market.active_attempt_id:
                raise InvalidLifecycleTransition(
                    current.value, f"edit {', '.join(content)}", "a publish attempt is in progress"
                )
        if "close_time" in provided and edit.close_time is not None:
            if current is S.LIVE and edit.close_time < market.close_time:
                raise InvalidLifecycleTransition(
                    current.value, "shorten close time", "close time may only be extended"
                )

    def require_delete(self, market: Market) -> None:
        current = market.status
        if current not in DELETABLE:
            raise InvalidLifecycleTransition(current.value, "delete")
        if market.has_onchain_artifact or market.active_attempt_id:
            raise InvalidLifecycleTransition(
                current.value, "delete", "market has an on-chain artifact or publish in progress"
            )
