"""Error taxonomy for market publication and lifecycle operations."""

from __future__ import annotations


class PredLaunchError(Exception):
    """Base for all predlaunch errors."""

    code = "error"


class MarketNotFound(PredLaunchError):
    code = "not_found"

    def __init__(self, market_id: str) -> None:
        super().__init__(f"Market not found: {market_id}")
        self.market_id = market_id


class ValidationFailed(PredLaunchError):
    """User-correctable; carries every violated rule, never mutates state."""

    code = "validation_failed"

    def __init__(self, reasons: list[str]) -> None:
        super().__init__("; ".join(reasons) or "validation failed")
        self.reasons = list(reasons)


class InvalidLifecycleTransition(PredLaunchError):
    code = "invalid_transition"

    def __init__(self, current: str, operation: str, detail: str | None = None) -> None:
        msg = f"Cannot {operation} while market is {current}"
        if detail:
            msg = f"{msg}: {detail}"
        super().__init__(msg)
        self.current = current
        self.operation = operation


class _CollateralShortfall(PredLaunchError):
    what = "collateral"

    def __init__(self, required: int, available: int, decimals: int = 6) -> None:
        from predlaunch.chain.units import format_units

        super().__init__(
            f"Insufficient {self.what}: required {format_units(required, decimals)}, "
            f"available {format_units(available, decimals)}"
        )
        self.required = required
        self.available = available
        self.decimals = decimals

    @property
    def shortfall(self) -> int:
        return max(0, self.required - self.available)


class InsufficientBalance(_CollateralShortfall):
    """Publishing account does not hold enough collateral. Fix by funding it."""

    code = "insufficient_balance"
    what = "collateral balance"


class InsufficientAllowance(_CollateralShortfall):
    """Factory may not pull enough collateral. Fix by approving (can be automatic)."""

    code = "insufficient_allowance"
    what = "collateral allowance"


class SlugTaken(PredLaunchError):
    """Raised by storage when the slug uniqueness constraint rejects an insert."""

    code = "slug_taken"

    def __init__(self, slug: str) -> None:
        super().__init__(f"Slug already in use: {slug}")
        self.slug = slug


class SlugExhausted(PredLaunchError):
    code = "slug_exhausted"

    def __init__(self, base: str, attempts: int) -> None:
        super().__init__(f"No free slug for '{base}' after {attempts} attempts")
        self.base = base
        self.attempts = attempts


class OutcomeReconciliationFailed(PredLaunchError):
    """Outcome edit stopped partway. Retryable; the edit must be re-submitted."""

    code = "outcome_reconciliation_failed"

    def __init__(self, market_id: str, step: str, cause: Exception) -> None:
        super().__init__(f"Outcome {step} failed for market {market_id}: {cause}")
        self.market_id = market_id
        self.step = step
        self.cause = cause


class OnChainError(PredLaunchError):
    code = "onchain_failed"


class OnChainSubmissionFailed(OnChainError):
    """Transaction never reached the chain."""

    def __init__(self, message: str, retryable: bool = True) -> None:
        super().__init__(message)
        self.retryable = retryable


class OnChainTransactionReverted(OnChainError):
    code = "onchain_reverted"

    def __init__(self, tx_hash: str, reason: str | None = None) -> None:
        super().__init__(f"Transaction {tx_hash} reverted" + (f": {reason}" if reason else ""))
        self.tx_hash = tx_hash
        self.reason = reason


class OnChainConfirmationTimeout(OnChainError):
    code = "onchain_timeout"

    def __init__(self, tx_hash: str, timeout_sec: float, stage: str = "create") -> None:
        super().__init__(f"No receipt for {stage} transaction {tx_hash} within {timeout_sec}s")
        self.tx_hash = tx_hash
        self.timeout_sec = timeout_sec
        self.stage = stage


class OnChainStatusUnknown(OnChainError):
    code = "onchain_status_unknown"

    def __init__(self, tx_hash: str | None, detail: str) -> None:
        super().__init__(f"Status of transaction {tx_hash or '<unknown>'} is unknown: {detail}")
        self.tx_hash = tx_hash


class DatabaseCommitAfterOnChainSuccess(PredLaunchError):
    """On-chain market exists but the local record has not caught up. Needs reconciliation."""

    code = "commit_pending"

    def __init__(self, market_id: str, market_address: str, tx_hash: str, cause: Exception) -> None:
        super().__init__(
            f"Market {market_id} deployed at {market_address} (tx {tx_hash}) "
            f"but database commit failed: {cause}"
        )
        self.market_id = market_id
        self.market_address = market_address
        self.tx_hash = tx_hash
        self.cause = cause
