"""Publication orchestrator: drives a market from draft to live and through the rest of its life.

The on-chain create call is attempted at most once per publish attempt. The
attempt row records the creation hash before the transaction is sent, and a
market held by an attempt can only be moved forward by reconciliation.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any, Callable

import duckdb
import structlog

from predlaunch.chain.base import ChainClient, ChainRpcError
from predlaunch.config.settings import ChainConfig, PublishConfig
from predlaunch.errors import (
    DatabaseCommitAfterOnChainSuccess,
    InvalidLifecycleTransition,
    MarketNotFound,
    OnChainConfirmationTimeout,
    OnChainError,
    OnChainStatusUnknown,
    OnChainSubmissionFailed,
    OnChainTransactionReverted,
    ValidationFailed,
)
from predlaunch.lifecycle.outcomes import OutcomeReconciler
from predlaunch.lifecycle.slug import SlugAllocator, derive_title, to_slug
from predlaunch.lifecycle.state_machine import LifecycleStateMachine
from predlaunch.models.market import (
    Market,
    MarketDraft,
    MarketEdit,
    MarketStatus,
    Outcome,
    Resolution,
)
from predlaunch.models.publish import (
    BROADCAST_STAGES,
    AttemptStage,
    PublishAttempt,
    PublishOutcome,
    PublishResult,
)
from predlaunch.publishing.journal import JournalEntry, PendingCommitJournal
from predlaunch.publishing.preflight import PreflightReport, PreflightValidator, outcome_count_reason
from predlaunch.publishing.publisher import DeployedMarket, OnChainPublisher
from predlaunch.storage import attempts as attempt_store
from predlaunch.storage import markets as market_store

if TYPE_CHECKING:
    from duckdb import DuckDBPyConnection

log = structlog.get_logger(__name__)

ONCHAIN_FAILURE_MESSAGE = "publish failed, no funds were lost beyond network fees"
PROCESSING_MESSAGE = "processing"

PRE_BROADCAST = (AttemptStage.CLAIMED, AttemptStage.APPROVING)
# No create transaction exists: safe to cancel or abandon
UNSENT = (*PRE_BROADCAST, AttemptStage.APPROVAL_TIMEOUT)

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PublicationOrchestrator:
    """Every market operation goes through here. Thread-safe: each call uses its own cursor."""

    def __init__(
        self,
        conn: DuckDBPyConnection,
        chain: ChainClient | None,
        chain_config: ChainConfig,
        publish_config: PublishConfig,
        *,
        journal: PendingCommitJournal | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._conn = conn
        self._chain = chain
        self._chain_config = chain_config
        self._config = publish_config
        self._clock = clock or _utcnow
        self.journal = journal or PendingCommitJournal(publish_config.journal_path)
        self.lifecycle = LifecycleStateMachine()
        self.outcomes = OutcomeReconciler()
        self.preflight = PreflightValidator(chain, chain_config, publish_config)
        self.publisher = OnChainPublisher(chain, chain_config, publish_config) if chain is not None else None

    def _cursor(self) -> DuckDBPyConnection:
        return self._conn.cursor()

    def _load(self, cur: DuckDBPyConnection, market_id: str) -> Market:
        market = market_store.get_market(cur, market_id)
        if market is None:
            raise MarketNotFound(market_id)
        return market

    def _allocator(self, cur: DuckDBPyConnection) -> SlugAllocator:
        return SlugAllocator(lambda s: market_store.slug_exists(cur, s), self._config.slug_max_attempts)

    @staticmethod
    def _stale(current: MarketStatus, operation: str) -> InvalidLifecycleTransition:
        return InvalidLifecycleTransition(current.value, operation, "market changed concurrently, reload and retry")

    # --- drafts and edits ---

    def create_draft(self, draft: MarketDraft) -> Market:
        now = self._clock()
        reasons = []
        lo, hi = draft.type.outcome_bounds()
        if not lo <= len(draft.outcomes) <= hi:
            reasons.append(outcome_count_reason(draft.type, len(draft.outcomes)))
        if draft.close_time <= now:
            reasons.append("close time must be in the future")
        if reasons:
            raise ValidationFailed(reasons)

        title = draft.title.strip() if draft.title else derive_title(draft.question)
        with self._cursor() as cur:

            def claim(slug: str) -> Market:
                market = Market(
                    id=str(uuid.uuid4()),
                    slug=slug,
                    title=title,
                    question=draft.question.strip(),
                    type=draft.type,
                    status=MarketStatus.DRAFT,
                    close_time=draft.close_time,
                    created_at=now,
                    updated_at=now,
                    description=draft.description,
                    rules=draft.rules,
                    image_url=str(draft.image_url) if draft.image_url else None,
                    chain_id=self._chain_config.chain_id,
                    fee_bps=draft.fee_bps,
                )
                return market_store.insert_market(cur, market)

            market = self._allocator(cur).allocate(title, claim)
            outcomes = [Outcome(label=o.label, color=o.color, idx=i) for i, o in enumerate(draft.outcomes)]
            try:
                market_store.insert_outcomes(cur, market.id, outcomes)
            except duckdb.Error:
                log.error("draft_outcomes_failed", market_id=market.id)
                market_store.delete_market(cur, market.id, MarketStatus.DRAFT)
                raise
            log.info("draft_created", market_id=market.id, slug=market.slug, outcomes=len(outcomes))
            return self._load(cur, market.id)

    def edit(self, market_id: str, edit: MarketEdit) -> Market:
        """Apply a partial edit. Outcomes, when sent, are the complete desired list."""
        with self._cursor() as cur:
            market = self._load(cur, market_id)
            provided = edit.provided()
            reasons = []
            if "type" in provided and edit.type is not market.type:
                reasons.append("market type cannot be changed")
            self.lifecycle.require_edit(market, edit)

            for name in ("title", "question", "close_time", "outcomes"):
                if name in provided and getattr(edit, name) is None:
                    reasons.append(f"{name.replace('_', ' ')} is required")
            if "close_time" in provided and edit.close_time is not None and edit.close_time <= self._clock():
                reasons.append("close time must be in the future")
            if "outcomes" in provided and edit.outcomes is not None:
                lo, hi = market.type.outcome_bounds()
                if not lo <= len(edit.outcomes) <= hi:
                    reasons.append(outcome_count_reason(market.type, len(edit.outcomes)))
            if reasons:
                raise ValidationFailed(reasons)

            fields: dict[str, Any] = {}
            for name in ("title", "question", "description", "rules", "close_time"):
                if name in provided:
                    fields[name] = getattr(edit, name)
            if "image_url" in provided:
                fields["image_url"] = str(edit.image_url) if edit.image_url else None
            if "rules" in provided:
                # Stored cid described the old text
                fields["rules_cid"] = None
            plan = None
            if "outcomes" in provided and edit.outcomes is not None:
                plan = self.outcomes.reconcile(market.outcomes, edit.outcomes, market_id)
            # Fields and outcomes land together, and only if no publish claimed the market meanwhile
            content_edit = any(f in provided for f in ("title", "question", "outcomes"))
            if not market_store.update_market(
                cur, market_id, market.status, fields, plan=plan, require_idle=content_edit
            ):
                raise self._stale(self._load(cur, market_id).status, "edit")

            if plan is not None:
                log.info(
                    "outcomes_reconciled",
                    market_id=market_id,
                    inserted=len(plan.to_insert),
                    updated=len(plan.to_update),
                    deleted=len(plan.to_delete),
                )
            log.info("market_edited", market_id=market_id, fields=sorted(provided))
            return self._load(cur, market_id)

    def get(self, market_id: str) -> Market:
        with self._cursor() as cur:
            return self._load(cur, market_id)

    def get_by_slug(self, slug: str) -> Market:
        with self._cursor() as cur:
            market = market_store.get_market_by_slug(cur, slug)
        if market is None:
            raise MarketNotFound(slug)
        return market

    def list_markets(self, **filters: Any) -> tuple[list[Market], int]:
        with self._cursor() as cur:
            return market_store.list_markets(cur, **filters)

    def attempts(self, market_id: str) -> list[PublishAttempt]:
        with self._cursor() as cur:
            self._load(cur, market_id)
            return attempt_store.list_attempts(cur, market_id)

    def delete(self, market_id: str) -> None:
        with self._cursor() as cur:
            market = self._load(cur, market_id)
            self.lifecycle.require_delete(market)
            if not market_store.delete_market(cur, market_id, market.status):
                raise self._stale(self._load(cur, market_id).status, "delete")
        log.info("market_deleted", market_id=market_id, slug=market.slug)

    def slug_available(self, slug: str) -> dict[str, Any]:
        """Normalized form of slug, whether it is free, and the first free alternative."""
        normalized = to_slug(slug)
        with self._cursor() as cur:
            taken = not normalized or market_store.slug_exists(cur, normalized)
            suggestion = self._allocator(cur).allocate(slug) if taken else normalized
        return {"slug": normalized, "available": not taken, "suggestion": suggestion}

    def stats(self) -> dict[str, Any]:
        with self._cursor() as cur:
            counts = market_store.status_counts(cur)
        return {"total": sum(counts.values()), "by_status": counts}

    # --- publish ---

    def publish(self, market_id: str) -> PublishResult:
        """Validate, claim, send at most one create transaction, commit live.

        Never re-broadcasts: a market whose attempt already recorded a hash is
        only ever reconciled.
        """
        with self._cursor() as cur:
            market = self._load(cur, market_id)
            if market.status is MarketStatus.ONCHAIN:
                return self._reconcile(cur, market)
            if market.status not in (MarketStatus.DRAFT, MarketStatus.PENDING):
                raise InvalidLifecycleTransition(market.status.value, "publish")
            if market.active_attempt_id:
                held = attempt_store.get_attempt(cur, market.active_attempt_id)
                result = self._reconcile(cur, market)
                market = self._load(cur, market_id)
                if market.active_attempt_id or market.status is not MarketStatus.PENDING or (held and held.tx_hash):
                    return result
                # The held attempt ended without a create transaction: start a fresh one
                log.info("publish_resumed", market_id=market_id, released=held.attempt_id if held else None)

            now = self._clock()
            try:
                report = self.preflight.validate(market, now)
            except ChainRpcError as e:
                log.warning("preflight_chain_error", market_id=market_id, error=str(e))
                return self._failed(market)
            rejected = self._preflight_result(market, report)
            if rejected is not None:
                return rejected

            self.lifecycle.require_transition(
                market, MarketStatus.PENDING, operation="publish", now=now, preflight_passed=True
            )
            if market.status is MarketStatus.DRAFT:
                if not market_store.transition_status(cur, market_id, MarketStatus.DRAFT, MarketStatus.PENDING):
                    market = self._load(cur, market_id)
                    if market.status is not MarketStatus.PENDING:
                        raise self._stale(market.status, "publish")

            attempt = attempt_store.create_attempt(cur, market_id)
            if not market_store.claim_attempt(cur, market_id, attempt.attempt_id):
                attempt_store.advance_attempt(cur, attempt.attempt_id, AttemptStage.FAILED, error="claim lost")
                market = self._load(cur, market_id)
                log.info("publish_claim_lost", market_id=market_id, holder=market.active_attempt_id)
                if market.active_attempt_id or market.status is MarketStatus.ONCHAIN:
                    return self._reconcile(cur, market)
                raise self._stale(market.status, "publish")

            log.info("publish_started", market_id=market_id, attempt_id=attempt.attempt_id)
            return self._run_attempt(cur, self._load(cur, market_id), attempt.attempt_id, report)

    def _preflight_result(self, market: Market, report: PreflightReport) -> PublishResult | None:
        if report.field_reasons:
            log.info("publish_validation_failed", market_id=market.id, reasons=report.reasons)
            return self._result(market, PublishOutcome.VALIDATION_FAILED, reasons=report.reasons)
        shortage = report.insufficient_balance
        kind = PublishOutcome.INSUFFICIENT_BALANCE
        if shortage is None and report.insufficient_allowance is not None and not self._config.auto_approve:
            shortage = report.insufficient_allowance
            kind = PublishOutcome.INSUFFICIENT_ALLOWANCE
        if shortage is None:
            return None
        log.info("publish_underfunded", market_id=market.id, outcome=kind.value, shortfall=shortage.shortfall)
        return self._result(
            market,
            kind,
            reasons=report.reasons,
            required=shortage.required,
            available=shortage.available,
            shortfall=shortage.shortfall,
            message=str(shortage),
        )

    def _run_attempt(
        self, cur: DuckDBPyConnection, market: Market, attempt_id: str, report: PreflightReport
    ) -> PublishResult:
        def on_approval(tx_hash: str) -> None:
            if not attempt_store.advance_attempt(
                cur, attempt_id, AttemptStage.APPROVING, PRE_BROADCAST, approval_tx_hash=tx_hash
            ):
                raise InvalidLifecycleTransition(MarketStatus.PENDING.value, "approve", "publish attempt was cancelled")

        def on_broadcast(tx_hash: str) -> None:
            if not attempt_store.advance_attempt(
                cur, attempt_id, AttemptStage.BROADCASTING, PRE_BROADCAST, tx_hash=tx_hash
            ):
                raise InvalidLifecycleTransition(MarketStatus.PENDING.value, "publish", "publish attempt was cancelled")
            log.info("create_tx_recorded", market_id=market.id, attempt_id=attempt_id, tx_hash=tx_hash)

        def on_sent(tx_hash: str) -> None:
            attempt_store.advance_attempt(cur, attempt_id, AttemptStage.BROADCAST, [AttemptStage.BROADCASTING])

        assert self.publisher is not None
        try:
            deployed = self.publisher.publish(
                market, report.plan, on_approval=on_approval, on_broadcast=on_broadcast, on_sent=on_sent
            )
        except OnChainError as e:
            return self._onchain_failure(cur, market, attempt_id, e)
        except InvalidLifecycleTransition:
            log.info("publish_cancelled_midway", market_id=market.id, attempt_id=attempt_id)
            raise
        return self._commit(cur, market.id, attempt_id, deployed)

    def _onchain_failure(
        self, cur: DuckDBPyConnection, market: Market, attempt_id: str, error: OnChainError
    ) -> PublishResult:
        attempt = attempt_store.get_attempt(cur, attempt_id)
        created = attempt is not None and attempt.broadcast
        if created and isinstance(error, OnChainTransactionReverted) and error.tx_hash == attempt.tx_hash:
            attempt_store.advance_attempt(cur, attempt_id, AttemptStage.REVERTED, BROADCAST_STAGES, error=str(error))
            market_store.release_attempt(cur, market.id, attempt_id)
            log.warning("create_tx_reverted", market_id=market.id, tx_hash=error.tx_hash)
            return self._failed(market, tx_hash=error.tx_hash)
        if created and not isinstance(error, OnChainSubmissionFailed):
            # Create tx may be on-chain: keep the claim, only reconciliation moves on
            log.error(
                "create_tx_unconfirmed",
                market_id=market.id,
                attempt_id=attempt_id,
                tx_hash=attempt.tx_hash,
                error=str(error),
                alert=isinstance(error, OnChainStatusUnknown),
            )
            return self._processing(market, attempt.tx_hash)

        approval = attempt.approval_tx_hash if attempt is not None else None
        if (
            not created
            and approval
            and isinstance(error, (OnChainConfirmationTimeout, OnChainStatusUnknown))
            and error.tx_hash == approval
        ):
            # Approval may still be mined: hold the claim so a retry cannot approve twice
            attempt_store.advance_attempt(
                cur, attempt_id, AttemptStage.APPROVAL_TIMEOUT, [AttemptStage.APPROVING], error=str(error)
            )
            log.warning("approval_unconfirmed", market_id=market.id, attempt_id=attempt_id, tx_hash=approval)
            return self._processing(self._load(cur, market.id), approval_tx_hash=approval)

        # Nothing was created on-chain; the market may be published again
        from_stages = [AttemptStage.BROADCASTING] if created else PRE_BROADCAST
        attempt_store.advance_attempt(cur, attempt_id, AttemptStage.FAILED, from_stages, error=str(error))
        market_store.release_attempt(cur, market.id, attempt_id)
        retryable = getattr(error, "retryable", True)
        log.warning("publish_onchain_failed", market_id=market.id, error=str(error), retryable=retryable)
        return self._failed(market, retryable=retryable)

    def _commit(
        self, cur: DuckDBPyConnection, market_id: str, attempt_id: str | None, deployed: DeployedMarket
    ) -> PublishResult:
        """pending -> onchain (address, hash) -> live. Only touches the database."""
        if attempt_id:
            attempt_store.advance_attempt(
                cur, attempt_id, AttemptStage.CONFIRMED, BROADCAST_STAGES, market_address=deployed.market_address
            )
        try:
            market = self._load(cur, market_id)
            if market.status is MarketStatus.PENDING:
                self.lifecycle.require_transition(
                    market,
                    MarketStatus.ONCHAIN,
                    operation="record deployment",
                    market_address=deployed.market_address,
                    tx_hash=deployed.tx_hash,
                )
                moved = market_store.transition_status(
                    cur,
                    market_id,
                    MarketStatus.PENDING,
                    MarketStatus.ONCHAIN,
                    market_address=deployed.market_address,
                    tx_hash=deployed.tx_hash,
                )
                market = self._load(cur, market_id)
                if not moved and market.tx_hash != deployed.tx_hash:
                    raise InvalidLifecycleTransition(market.status.value, "record deployment", "row changed underneath")
            elif market.tx_hash != deployed.tx_hash:
                raise InvalidLifecycleTransition(market.status.value, "record deployment")
        except (duckdb.Error, InvalidLifecycleTransition) as e:
            err = DatabaseCommitAfterOnChainSuccess(market_id, deployed.market_address, deployed.tx_hash, e)
            self.journal.record(market_id, deployed.tx_hash, deployed.market_address, attempt_id)
            log.critical(
                "commit_after_onchain_failed", market_id=market_id, tx_hash=deployed.tx_hash, error=str(e), alert=True
            )
            return PublishResult(
                outcome=PublishOutcome.COMMIT_PENDING,
                market_id=market_id,
                status=MarketStatus.PENDING.value,
                market_address=deployed.market_address,
                tx_hash=deployed.tx_hash,
                message=str(err),
            )
        return self._finish_live(cur, market, attempt_id)

    def _finish_live(self, cur: DuckDBPyConnection, market: Market, attempt_id: str | None) -> PublishResult:
        if market.status is MarketStatus.ONCHAIN:
            try:
                self.lifecycle.require_transition(market, MarketStatus.LIVE, operation="go live")
                market_store.transition_status(
                    cur, market.id, MarketStatus.ONCHAIN, MarketStatus.LIVE, active_attempt_id=None
                )
                market = self._load(cur, market.id)
            except duckdb.Error as e:
                err = DatabaseCommitAfterOnChainSuccess(market.id, market.market_address, market.tx_hash, e)
                log.error("go_live_failed", market_id=market.id, tx_hash=market.tx_hash, error=str(e), alert=True)
                return self._result(market, PublishOutcome.COMMIT_PENDING, message=str(err))
        if market.status is MarketStatus.ONCHAIN:
            return self._result(market, PublishOutcome.COMMIT_PENDING, message=PROCESSING_MESSAGE)
        attempt_id = attempt_id or market.active_attempt_id
        if attempt_id:
            attempt_store.advance_attempt(cur, attempt_id, AttemptStage.COMMITTED, BROADCAST_STAGES)
        for entry in self.journal.entries():
            if entry.tx_hash == market.tx_hash:
                self.journal.mark_committed(entry)
        log.info("market_live", market_id=market.id, market_address=market.market_address, tx_hash=market.tx_hash)
        return self._result(market, PublishOutcome.PUBLISHED)

    # --- reconciliation ---

    def reconcile(self, market_id: str) -> PublishResult:
        """Idempotent: move a market as far forward as facts already on-chain allow. Never sends."""
        with self._cursor() as cur:
            return self._reconcile(cur, self._load(cur, market_id))

    def _reconcile(self, cur: DuckDBPyConnection, market: Market) -> PublishResult:
        if market.status is MarketStatus.ONCHAIN:
            return self._finish_live(cur, market, market.active_attempt_id)
        if market.market_address and market.status is not MarketStatus.PENDING:
            return self._result(market, PublishOutcome.PUBLISHED)
        if market.status is not MarketStatus.PENDING:
            raise InvalidLifecycleTransition(market.status.value, "reconcile")

        for entry in self.journal.entries():
            if entry.market_id == market.id:
                log.info("journal_replay", market_id=market.id, tx_hash=entry.tx_hash)
                return self._commit(cur, market.id, entry.attempt_id, _from_journal(entry))

        if not market.active_attempt_id:
            raise InvalidLifecycleTransition(market.status.value, "reconcile", "no publish attempt in flight")
        attempt = attempt_store.get_attempt(cur, market.active_attempt_id)
        if attempt is None or not attempt.broadcast or not attempt.tx_hash:
            return self._reconcile_unsent(cur, market, attempt)

        if self.publisher is None:
            return self._processing(market, attempt.tx_hash)
        try:
            deployed = self.publisher.check_confirmation(attempt.tx_hash)
        except OnChainTransactionReverted as e:
            return self._onchain_failure(cur, market, attempt.attempt_id, e)
        except OnChainStatusUnknown as e:
            log.warning("reconcile_status_unknown", market_id=market.id, tx_hash=attempt.tx_hash, error=str(e))
            deployed = None
        if deployed is None:
            return self._processing(market, attempt.tx_hash)
        log.info("reconcile_confirmed", market_id=market.id, tx_hash=attempt.tx_hash)
        return self._commit(cur, market.id, attempt.attempt_id, deployed)

    def _reconcile_unsent(
        self, cur: DuckDBPyConnection, market: Market, attempt: PublishAttempt | None
    ) -> PublishResult:
        """Attempt holds the market but never recorded a create hash."""
        if attempt is not None and attempt.stage is AttemptStage.APPROVAL_TIMEOUT:
            return self._reconcile_approval(cur, market, attempt)
        stale_after = timedelta(seconds=self._config.approval_timeout_sec + self._config.confirmation_timeout_sec)
        if attempt is not None and self._clock() - attempt.updated_at < stale_after:
            return self._processing(market, approval_tx_hash=attempt.approval_tx_hash)
        # Worker is gone: a late hook fails its conditional stage write, so nothing can be sent
        if attempt is not None and attempt.approval_tx_hash:
            if attempt_store.advance_attempt(
                cur, attempt.attempt_id, AttemptStage.APPROVAL_TIMEOUT, [AttemptStage.APPROVING], error="stale"
            ):
                return self._reconcile_approval(cur, market, attempt_store.get_attempt(cur, attempt.attempt_id))
        if attempt is not None:
            attempt_store.advance_attempt(cur, attempt.attempt_id, AttemptStage.ABANDONED, PRE_BROADCAST, error="stale")
        market_store.release_attempt(cur, market.id, market.active_attempt_id)
        log.warning("stale_attempt_released", market_id=market.id, attempt_id=market.active_attempt_id)
        return self._failed(self._load(cur, market.id))

    def _reconcile_approval(self, cur: DuckDBPyConnection, market: Market, attempt: PublishAttempt) -> PublishResult:
        """Release the claim once the timed-out approval is mined or the allowance already covers the seed."""
        approval = attempt.approval_tx_hash
        if self.publisher is None or not approval:
            return self._processing(market, approval_tx_hash=approval)
        try:
            settled = self.publisher.approval_settled(approval, self.preflight.collateral_plan(market))
            error = "approval confirmed, market not created"
        except OnChainTransactionReverted as e:
            settled, error = True, str(e)
        except OnChainStatusUnknown as e:
            log.warning("reconcile_status_unknown", market_id=market.id, tx_hash=approval, error=str(e))
            settled = False
        if not settled:
            return self._processing(market, approval_tx_hash=approval)
        attempt_store.advance_attempt(
            cur, attempt.attempt_id, AttemptStage.FAILED, [AttemptStage.APPROVAL_TIMEOUT], error=error
        )
        market_store.release_attempt(cur, market.id, attempt.attempt_id)
        log.info("approval_settled", market_id=market.id, attempt_id=attempt.attempt_id, tx_hash=approval)
        return self._failed(self._load(cur, market.id), approval_tx_hash=approval)

    def replay_journal(self) -> list[PublishResult]:
        """Commit every journaled deployment. Safe to run repeatedly."""
        results = []
        with self._cursor() as cur:
            for entry in self.journal.entries():
                market = market_store.get_market(cur, entry.market_id)
                if market is None:
                    log.error("journal_market_missing", market_id=entry.market_id, tx_hash=entry.tx_hash, alert=True)
                    continue
                results.append(self._replay_entry(cur, market, entry))
        self.journal.compact()
        return results

    def _replay_entry(self, cur: DuckDBPyConnection, market: Market, entry: JournalEntry) -> PublishResult:
        if market.status is MarketStatus.PENDING:
            return self._commit(cur, market.id, entry.attempt_id, _from_journal(entry))
        if market.tx_hash == entry.tx_hash:
            if market.status is MarketStatus.ONCHAIN:
                return self._finish_live(cur, market, entry.attempt_id)
            self.journal.mark_committed(entry)
            return self._result(market, PublishOutcome.PUBLISHED)
        log.error(
            "journal_entry_conflicts",
            market_id=market.id,
            tx_hash=entry.tx_hash,
            status=market.status.value,
            alert=True,
        )
        return self._result(market, PublishOutcome.COMMIT_PENDING, tx_hash=entry.tx_hash, message=PROCESSING_MESSAGE)

    def markets_to_reconcile(self) -> list[Market]:
        """onchain markets plus pending markets held by an attempt."""
        with self._cursor() as cur:
            candidates = market_store.list_by_status(cur, [MarketStatus.ONCHAIN, MarketStatus.PENDING])
        return [m for m in candidates if m.status is MarketStatus.ONCHAIN or m.active_attempt_id]

    def cancel_publish(self, market_id: str) -> Market:
        """pending -> draft. Refused once a create transaction hash has been recorded."""
        with self._cursor() as cur:
            market = self._load(cur, market_id)
            attempt = attempt_store.get_attempt(cur, market.active_attempt_id) if market.active_attempt_id else None
            self.lifecycle.require_transition(
                market,
                MarketStatus.DRAFT,
                operation="cancel publish",
                publish_broadcast=attempt is not None and attempt.broadcast,
            )
            if attempt is not None and not attempt_store.advance_attempt(
                cur, attempt.attempt_id, AttemptStage.ABANDONED, UNSENT, error="cancelled"
            ):
                raise InvalidLifecycleTransition(
                    market.status.value, "cancel publish", "a transaction was already broadcast; reconcile instead"
                )
            if not market_store.revert_to_draft(cur, market_id, attempt.attempt_id if attempt else None):
                raise self._stale(self._load(cur, market_id).status, "cancel publish")
            log.info("publish_cancelled", market_id=market_id, attempt_id=attempt.attempt_id if attempt else None)
            return self._load(cur, market_id)

    def abandon_attempt(self, market_id: str, force: bool = False) -> PublishResult:
        """Operator action: release the attempt holding a pending market.

        Pre-broadcast attempts are always released. A recorded create hash is
        released only if its receipt shows a revert, or with force=True when
        the transaction is known never to have reached the network.
        """
        with self._cursor() as cur:
            market = self._load(cur, market_id)
            if market.status is not MarketStatus.PENDING or not market.active_attempt_id:
                raise InvalidLifecycleTransition(market.status.value, "abandon attempt", "no publish attempt in flight")
            attempt = attempt_store.get_attempt(cur, market.active_attempt_id)
            if attempt is not None and attempt.broadcast and attempt.tx_hash:
                result = self._reconcile(cur, market)
                if result.outcome is not PublishOutcome.PENDING_CONFIRMATION:
                    return result
                if not force:
                    raise InvalidLifecycleTransition(
                        market.status.value, "abandon attempt", f"transaction {attempt.tx_hash} may still confirm"
                    )
                attempt_store.advance_attempt(
                    cur, attempt.attempt_id, AttemptStage.ABANDONED, BROADCAST_STAGES, error="abandoned by operator"
                )
                log.warning("broadcast_attempt_abandoned", market_id=market_id, tx_hash=attempt.tx_hash, alert=True)
            elif attempt is not None:
                attempt_store.advance_attempt(
                    cur, attempt.attempt_id, AttemptStage.ABANDONED, UNSENT, error="abandoned by operator"
                )
            market_store.release_attempt(cur, market_id, market.active_attempt_id)
            log.info("attempt_abandoned", market_id=market_id, attempt_id=market.active_attempt_id)
            market = self._load(cur, market_id)
            return self._failed(market, message="publish attempt abandoned")

    # --- after publish ---

    def close(self, market_id: str) -> Market:
        with self._cursor() as cur:
            market = self._load(cur, market_id)
            self.lifecycle.require_transition(market, MarketStatus.CLOSED, operation="close")
            if not market_store.transition_status(
                cur, market_id, MarketStatus.LIVE, MarketStatus.CLOSED, closed_at=self._clock()
            ):
                raise self._stale(self._load(cur, market_id).status, "close")
            log.info("market_closed", market_id=market_id)
            return self._load(cur, market_id)

    def close_expired(self, now: datetime | None = None) -> list[str]:
        """Close every live market whose close time has passed. Returns the ids closed."""
        now = now or self._clock()
        closed = []
        with self._cursor() as cur:
            for market_id in market_store.list_expired_live(cur, market_store.to_ms(now)):
                if market_store.transition_status(
                    cur, market_id, MarketStatus.LIVE, MarketStatus.CLOSED, closed_at=now
                ):
                    closed.append(market_id)
        if closed:
            log.info("expired_markets_closed", count=len(closed))
        return closed

    def resolve(self, market_id: str, resolution: Resolution) -> Market:
        """closed -> resolved. Database only; no settlement transaction is sent."""
        with self._cursor() as cur:
            market = self._load(cur, market_id)
            self.lifecycle.require_transition(
                market,
                MarketStatus.RESOLVED,
                operation="resolve",
                winning_outcome_idx=resolution.winning_outcome_idx,
            )
            if not market_store.transition_status(
                cur,
                market_id,
                MarketStatus.CLOSED,
                MarketStatus.RESOLVED,
                winning_outcome_idx=resolution.winning_outcome_idx,
                evidence_url=str(resolution.evidence_url),
                evidence_cid=resolution.evidence_cid,
                resolution_notes=resolution.resolution_notes,
                resolved_at=self._clock(),
            ):
                raise self._stale(self._load(cur, market_id).status, "resolve")
            log.info("market_resolved", market_id=market_id, winning_outcome_idx=resolution.winning_outcome_idx)
            return self._load(cur, market_id)

    def archive(self, market_id: str) -> Market:
        with self._cursor() as cur:
            market = self._load(cur, market_id)
            self.lifecycle.require_transition(market, MarketStatus.ARCHIVED, operation="archive")
            if not market_store.transition_status(
                cur,
                market_id,
                market.status,
                MarketStatus.ARCHIVED,
                previous_status=market.status,
                archived_at=self._clock(),
            ):
                raise self._stale(self._load(cur, market_id).status, "archive")
            log.info("market_archived", market_id=market_id, previous_status=market.status.value)
            return self._load(cur, market_id)

    def _failed(self, market: Market, **kwargs: Any) -> PublishResult:
        kwargs.setdefault("message", ONCHAIN_FAILURE_MESSAGE)
        return self._result(market, PublishOutcome.ONCHAIN_FAILED, retryable=kwargs.pop("retryable", True), **kwargs)

    def _processing(
        self, market: Market, tx_hash: str | None = None, approval_tx_hash: str | None = None
    ) -> PublishResult:
        return self._result(
            market,
            PublishOutcome.PENDING_CONFIRMATION,
            tx_hash=tx_hash or market.tx_hash,
            approval_tx_hash=approval_tx_hash,
            message=PROCESSING_MESSAGE,
        )

    @staticmethod
    def _result(market: Market, outcome: PublishOutcome, **kwargs: Any) -> PublishResult:
        values = {
            "market_id": market.id,
            "status": market.status.value,
            "slug": market.slug,
            "market_address": market.market_address,
            "tx_hash": market.tx_hash,
        }
        values.update(kwargs)
        return PublishResult(outcome=outcome, **values)


def _from_journal(entry: JournalEntry) -> DeployedMarket:
    return DeployedMarket(entry.market_address, entry.tx_hash)
