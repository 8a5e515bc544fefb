"""Publication orchestrator: publish workflow, at-most-once creation, reconciliation, lifecycle."""

import threading
from datetime import datetime, timedelta, timezone

import duckdb
import pytest

from predlaunch.chain.base import ChainRpcError
from predlaunch.chain.simulated import SimulatedChain
from predlaunch.errors import InvalidLifecycleTransition, MarketNotFound, ValidationFailed
from predlaunch.models.market import MarketEdit, MarketStatus, MarketType, OutcomeInput, Resolution
from predlaunch.models.publish import AttemptStage, PublishOutcome
from predlaunch.storage import attempts as attempt_store
from predlaunch.storage import markets as market_store

from conftest import FACTORY, SEED_TOTAL_BINARY, UNIT, binary_draft, future, multi_draft

S = MarketStatus


def funded_chain(allowance=10_000 * UNIT, balance=1_000 * UNIT):
    return SimulatedChain(balance=balance, allowance=allowance, factory_address=FACTORY)


def fail_on(target):
    """transition_status replacement that raises when moving to target."""
    real = market_store.transition_status

    def flaky(conn, market_id, expected, to, **fields):
        if to is target:
            raise duckdb.IOException("disk I/O error")
        return real(conn, market_id, expected, to, **fields)

    return flaky


def claimed_pending(conn, orch):
    """Pending market held by an attempt that has sent nothing."""
    market = orch.create_draft(binary_draft())
    assert market_store.transition_status(conn, market.id, S.DRAFT, S.PENDING)
    attempt = attempt_store.create_attempt(conn, market.id)
    assert market_store.claim_attempt(conn, market.id, attempt.attempt_id)
    return market, attempt


# --- drafts ---


def test_create_draft_derives_title_and_orders_outcomes(orch):
    market = orch.create_draft(multi_draft(labels=("Red", "Green", "Blue")))
    assert market.status is S.DRAFT
    assert market.title == "Which team wins the cup final"
    assert market.slug == "which-team-wins-the-cup-final"
    assert [(o.label, o.idx) for o in market.outcomes] == [("Red", 0), ("Green", 1), ("Blue", 2)]
    assert market.market_address is None


def test_create_draft_rejects_bad_count_and_past_close(orch):
    draft = binary_draft(
        outcomes=[OutcomeInput(label="A"), OutcomeInput(label="B"), OutcomeInput(label="C")],
        close_time=datetime.now(timezone.utc) - timedelta(hours=1),
    )
    with pytest.raises(ValidationFailed) as exc:
        orch.create_draft(draft)
    assert exc.value.reasons == [
        "binary markets must have exactly 2 outcomes (got 3)",
        "close time must be in the future",
    ]
    assert orch.stats()["total"] == 0


def test_edit_draft_fields(orch):
    market = orch.create_draft(binary_draft())
    edited = orch.edit(
        market.id,
        MarketEdit(title="Lisbon rain", rules="Resolves YES on any measurable rainfall.", description=None),
    )
    assert edited.title == "Lisbon rain"
    assert edited.rules == "Resolves YES on any measurable rainfall."
    assert edited.slug == market.slug


def test_edit_rejects_type_change_and_past_close(orch):
    market = orch.create_draft(binary_draft())
    with pytest.raises(ValidationFailed) as exc:
        orch.edit(
            market.id,
            MarketEdit(type=MarketType.MULTI, close_time=datetime.now(timezone.utc) - timedelta(minutes=5)),
        )
    assert "market type cannot be changed" in exc.value.reasons
    assert "close time must be in the future" in exc.value.reasons


def test_edit_rejects_outcome_count_for_type(orch):
    market = orch.create_draft(binary_draft())
    with pytest.raises(ValidationFailed):
        orch.edit(market.id, MarketEdit(outcomes=[OutcomeInput(label=x) for x in "ABC"]))


def test_edit_loses_to_publish_that_lands_first(make_orchestrator, monkeypatch):
    orch = make_orchestrator(funded_chain())
    market = orch.create_draft(binary_draft())
    real = orch.lifecycle.require_edit

    def publish_then_check(current, edit):
        # Checks pass against the draft just read, then a publish goes live
        real(current, edit)
        assert orch.publish(market.id).ok

    monkeypatch.setattr(orch.lifecycle, "require_edit", publish_then_check)
    with pytest.raises(InvalidLifecycleTransition, match="concurrently"):
        orch.edit(
            market.id,
            MarketEdit(
                question="Will it snow in Lisbon?",
                outcomes=[OutcomeInput(label="Up"), OutcomeInput(label="Down")],
            ),
        )
    live = orch.get(market.id)
    assert live.status is S.LIVE
    assert live.question == market.question
    assert [o.label for o in live.outcomes] == [o.label for o in market.outcomes]


def test_edit_accepts_short_question(orch):
    market = orch.create_draft(binary_draft("Rain?"))
    assert orch.edit(market.id, MarketEdit(question="Snow?")).question == "Snow?"


def test_delete_draft(orch):
    market = orch.create_draft(binary_draft())
    orch.delete(market.id)
    with pytest.raises(MarketNotFound):
        orch.get(market.id)


def test_list_and_stats(orch):
    orch.create_draft(binary_draft("Will it rain in Lisbon tomorrow?"))
    orch.create_draft(binary_draft("Will it snow in Oslo tomorrow?"))
    live = orch.create_draft(binary_draft("Will the sun shine in Madrid?"))
    assert orch.publish(live.id).ok

    markets, total = orch.list_markets(statuses=["live"])
    assert total == 1
    assert markets[0].id == live.id
    markets, total = orch.list_markets(q="oslo")
    assert [m.slug for m in markets] == ["will-it-snow-in-oslo-tomorrow"]
    _, total = orch.list_markets(q="100%_match")
    assert total == 0
    stats = orch.stats()
    assert stats["total"] == 3
    assert stats["by_status"]["draft"] == 2
    assert stats["by_status"]["live"] == 1


# --- publish ---


def test_publish_approves_then_goes_live(orch, chain):
    market = orch.create_draft(binary_draft())
    result = orch.publish(market.id)

    assert result.outcome is PublishOutcome.PUBLISHED
    assert result.status == "live"
    assert [t.function for t in chain.sent_calls()] == ["approve", "createMarket"]
    live = orch.get(market.id)
    assert live.status is S.LIVE
    assert live.market_address == result.market_address
    assert live.tx_hash == result.tx_hash
    assert live.active_attempt_id is None
    attempts = orch.attempts(market.id)
    assert [a.stage for a in attempts] == [AttemptStage.COMMITTED]
    assert attempts[0].approval_tx_hash is not None
    assert chain.balances[chain.account_address] == 1_000 * UNIT - SEED_TOTAL_BINARY


def test_balance_exactly_covering_seed_is_enough(make_orchestrator):
    chain = funded_chain(allowance=0, balance=SEED_TOTAL_BINARY)
    orch = make_orchestrator(chain)
    market = orch.create_draft(binary_draft(close_time=future(days=1)))
    result = orch.publish(market.id)

    assert result.outcome is PublishOutcome.PUBLISHED
    assert [t.function for t in chain.sent_calls()] == ["approve", "createMarket"]
    assert chain.balances[chain.account_address] == 0


def test_publish_multi_seeds_every_outcome(make_orchestrator):
    chain = funded_chain()
    orch = make_orchestrator(chain)
    market = orch.create_draft(multi_draft(labels=("A", "B", "C", "D")))
    assert orch.publish(market.id).ok
    (create,) = chain.sent_calls("createMultiMarket")
    assert create.args[3] == [100 * UNIT] * 4


def test_insufficient_balance_reports_shortfall(make_orchestrator):
    chain = funded_chain(allowance=0, balance=150 * UNIT)
    orch = make_orchestrator(chain)
    market = orch.create_draft(binary_draft())
    result = orch.publish(market.id)

    assert result.outcome is PublishOutcome.INSUFFICIENT_BALANCE
    assert result.required == 200 * UNIT
    assert result.available == 150 * UNIT
    assert result.shortfall == 50 * UNIT
    assert orch.get(market.id).status is S.DRAFT
    assert chain.sent_calls() == []
    assert orch.attempts(market.id) == []


def test_insufficient_allowance_without_auto_approve(make_orchestrator):
    chain = funded_chain(allowance=50 * UNIT)
    orch = make_orchestrator(chain, auto_approve=False)
    market = orch.create_draft(binary_draft())
    result = orch.publish(market.id)
    assert result.outcome is PublishOutcome.INSUFFICIENT_ALLOWANCE
    assert result.shortfall == 150 * UNIT
    assert chain.sent_calls() == []


def test_validation_failure_lists_reasons(make_orchestrator):
    chain = funded_chain()
    market = make_orchestrator(chain).create_draft(binary_draft(close_time=future(days=1)))
    later = make_orchestrator(chain, clock=lambda: datetime.now(timezone.utc) + timedelta(days=2))
    result = later.publish(market.id)
    assert result.outcome is PublishOutcome.VALIDATION_FAILED
    assert result.reasons == ["close time must be in the future"]
    assert later.get(market.id).status is S.DRAFT
    assert chain.sent_calls() == []


def test_chain_read_failure_during_preflight(make_orchestrator):
    class Unreachable(SimulatedChain):
        def call(self, contract, abi, function, args):
            raise ChainRpcError("connection refused")

    orch = make_orchestrator(Unreachable(factory_address=FACTORY))
    market = orch.create_draft(binary_draft())
    result = orch.publish(market.id)
    assert result.outcome is PublishOutcome.ONCHAIN_FAILED
    assert result.retryable
    assert result.message == "publish failed, no funds were lost beyond network fees"
    assert orch.get(market.id).status is S.DRAFT


def test_publish_live_market_is_refused(orch):
    market = orch.create_draft(binary_draft())
    assert orch.publish(market.id).ok
    with pytest.raises(InvalidLifecycleTransition):
        orch.publish(market.id)


def test_concurrent_publish_sends_one_create(make_orchestrator):
    chain = funded_chain()
    orch = make_orchestrator(chain)
    market = orch.create_draft(binary_draft())
    chain.hold()
    results = {}
    worker = threading.Thread(target=lambda: results.setdefault("first", orch.publish(market.id)))
    worker.start()
    assert chain.broadcast_seen.wait(5)

    second = orch.publish(market.id)
    assert second.outcome is PublishOutcome.PENDING_CONFIRMATION
    assert second.message == "processing"

    chain.release()
    worker.join(10)
    assert results["first"].outcome is PublishOutcome.PUBLISHED
    assert len(chain.sent_calls("createMarket")) == 1
    assert orch.get(market.id).status is S.LIVE


def test_revert_releases_claim_and_allows_retry(make_orchestrator):
    chain = funded_chain(allowance=0)
    orch = make_orchestrator(chain)
    market = orch.create_draft(binary_draft())
    chain.revert_functions.add("createMarket")

    failed = orch.publish(market.id)
    assert failed.outcome is PublishOutcome.ONCHAIN_FAILED
    pending = orch.get(market.id)
    assert pending.status is S.PENDING
    assert pending.active_attempt_id is None
    assert pending.market_address is None
    assert orch.attempts(market.id)[0].stage is AttemptStage.REVERTED

    chain.revert_functions.clear()
    assert orch.publish(market.id).ok
    # The first approval still covers the retry
    assert len(chain.sent_calls("approve")) == 1
    assert len(chain.sent_calls("createMarket")) == 2


def test_unconfirmed_create_keeps_claim_until_reconciled(make_orchestrator):
    chain = funded_chain()
    orch = make_orchestrator(chain, confirmation_timeout_sec=0.05)
    market = orch.create_draft(binary_draft())
    chain.hold()

    first = orch.publish(market.id)
    assert first.outcome is PublishOutcome.PENDING_CONFIRMATION
    assert first.tx_hash is not None
    held = orch.get(market.id)
    assert held.status is S.PENDING
    assert held.active_attempt_id is not None

    assert orch.publish(market.id).outcome is PublishOutcome.PENDING_CONFIRMATION
    assert orch.reconcile(market.id).outcome is PublishOutcome.PENDING_CONFIRMATION
    with pytest.raises(InvalidLifecycleTransition, match="broadcast"):
        orch.cancel_publish(market.id)
    with pytest.raises(InvalidLifecycleTransition):
        orch.delete(market.id)
    with pytest.raises(InvalidLifecycleTransition):
        orch.edit(market.id, MarketEdit(title="Changed"))

    chain.release()
    result = orch.reconcile(market.id)
    assert result.outcome is PublishOutcome.PUBLISHED
    assert result.tx_hash == first.tx_hash
    assert len(chain.sent_calls("createMarket")) == 1
    # Idempotent once live
    assert orch.reconcile(market.id).outcome is PublishOutcome.PUBLISHED


def test_approval_timeout_holds_claim_until_approval_settles(make_orchestrator):
    chain = funded_chain(allowance=0)
    orch = make_orchestrator(chain, approval_timeout_sec=0.05)
    market = orch.create_draft(binary_draft())
    chain.hold()

    result = orch.publish(market.id)
    assert result.outcome is PublishOutcome.PENDING_CONFIRMATION
    assert result.approval_tx_hash is not None
    assert result.tx_hash is None
    held = orch.get(market.id)
    assert held.status is S.PENDING
    assert held.active_attempt_id is not None
    assert orch.attempts(market.id)[0].stage is AttemptStage.APPROVAL_TIMEOUT

    # Retrying while the approval is unmined must not approve again
    again = orch.publish(market.id)
    assert again.outcome is PublishOutcome.PENDING_CONFIRMATION
    assert again.approval_tx_hash == result.approval_tx_hash
    assert len(chain.sent_calls("approve")) == 1
    assert chain.sent_calls("createMarket") == []
    with pytest.raises(InvalidLifecycleTransition):
        orch.edit(market.id, MarketEdit(title="Changed"))

    chain.release()
    assert orch.publish(market.id).ok
    assert [t.function for t in chain.sent_calls()] == ["approve", "createMarket"]
    assert {a.stage for a in orch.attempts(market.id)} == {AttemptStage.FAILED, AttemptStage.COMMITTED}


def test_reconcile_releases_claim_once_approval_mined(make_orchestrator):
    chain = funded_chain(allowance=0)
    orch = make_orchestrator(chain, approval_timeout_sec=0.05)
    market = orch.create_draft(binary_draft())
    chain.hold()
    approval = orch.publish(market.id).approval_tx_hash

    assert orch.reconcile(market.id).outcome is PublishOutcome.PENDING_CONFIRMATION
    chain.release()
    result = orch.reconcile(market.id)
    assert result.outcome is PublishOutcome.ONCHAIN_FAILED
    assert result.retryable
    assert result.approval_tx_hash == approval
    assert orch.get(market.id).active_attempt_id is None
    assert orch.get(market.id).status is S.PENDING
    assert orch.publish(market.id).ok
    assert len(chain.sent_calls("approve")) == 1


def test_commit_failure_is_journaled_and_reconciled(make_orchestrator, monkeypatch):
    chain = funded_chain()
    orch = make_orchestrator(chain)
    market = orch.create_draft(binary_draft())
    monkeypatch.setattr(market_store, "transition_status", fail_on(S.ONCHAIN))

    result = orch.publish(market.id)
    assert result.outcome is PublishOutcome.COMMIT_PENDING
    assert result.market_address is not None
    (entry,) = orch.journal.entries()
    assert entry.market_id == market.id
    assert entry.tx_hash == result.tx_hash
    assert orch.get(market.id).status is S.PENDING

    monkeypatch.undo()
    reconciled = orch.reconcile(market.id)
    assert reconciled.outcome is PublishOutcome.PUBLISHED
    live = orch.get(market.id)
    assert live.market_address == result.market_address
    assert live.tx_hash == result.tx_hash
    assert orch.journal.entries() == []
    assert len(chain.sent_calls("createMarket")) == 1


def test_go_live_failure_leaves_onchain_then_reconciles(make_orchestrator, monkeypatch):
    chain = funded_chain()
    orch = make_orchestrator(chain)
    market = orch.create_draft(binary_draft())
    monkeypatch.setattr(market_store, "transition_status", fail_on(S.LIVE))

    result = orch.publish(market.id)
    assert result.outcome is PublishOutcome.COMMIT_PENDING
    onchain = orch.get(market.id)
    assert onchain.status is S.ONCHAIN
    assert onchain.market_address == result.market_address

    monkeypatch.undo()
    assert orch.publish(market.id).outcome is PublishOutcome.PUBLISHED
    assert orch.get(market.id).status is S.LIVE
    assert len(chain.sent_calls("createMarket")) == 1


def test_replay_journal_commits_entries(make_orchestrator, monkeypatch):
    chain = funded_chain()
    orch = make_orchestrator(chain)
    market = orch.create_draft(binary_draft())
    monkeypatch.setattr(market_store, "transition_status", fail_on(S.ONCHAIN))
    orch.publish(market.id)
    monkeypatch.undo()

    results = orch.replay_journal()
    assert [r.outcome for r in results] == [PublishOutcome.PUBLISHED]
    assert orch.replay_journal() == []
    assert orch.journal.path.read_text() == ""


# --- cancel / abandon ---


def test_cancel_before_broadcast_returns_to_draft(temp_db, orch):
    market, attempt = claimed_pending(temp_db, orch)
    reverted = orch.cancel_publish(market.id)
    assert reverted.status is S.DRAFT
    assert reverted.active_attempt_id is None
    assert attempt_store.get_attempt(temp_db, attempt.attempt_id).stage is AttemptStage.ABANDONED


def test_cancel_draft_is_refused(orch):
    market = orch.create_draft(binary_draft())
    with pytest.raises(InvalidLifecycleTransition):
        orch.cancel_publish(market.id)


def test_fresh_unsent_attempt_is_processing(temp_db, orch):
    market, _ = claimed_pending(temp_db, orch)
    assert orch.reconcile(market.id).outcome is PublishOutcome.PENDING_CONFIRMATION


def test_stale_unsent_attempt_is_released(temp_db, make_orchestrator, chain):
    later = make_orchestrator(chain, clock=lambda: datetime.now(timezone.utc) + timedelta(hours=1))
    market, attempt = claimed_pending(temp_db, make_orchestrator(chain))

    result = later.reconcile(market.id)
    assert result.outcome is PublishOutcome.ONCHAIN_FAILED
    assert later.get(market.id).active_attempt_id is None
    assert attempt_store.get_attempt(temp_db, attempt.attempt_id).stage is AttemptStage.ABANDONED
    # A late hook from the stale worker can no longer record a hash
    assert not attempt_store.advance_attempt(
        temp_db, attempt.attempt_id, AttemptStage.BROADCASTING, [AttemptStage.CLAIMED, AttemptStage.APPROVING]
    )


def test_abandon_pre_broadcast_attempt(temp_db, orch):
    market, attempt = claimed_pending(temp_db, orch)
    result = orch.abandon_attempt(market.id)
    assert result.outcome is PublishOutcome.ONCHAIN_FAILED
    assert orch.get(market.id).active_attempt_id is None
    assert attempt_store.get_attempt(temp_db, attempt.attempt_id).stage is AttemptStage.ABANDONED


def test_abandon_broadcast_attempt_needs_force(make_orchestrator):
    chain = funded_chain()
    orch = make_orchestrator(chain, confirmation_timeout_sec=0.05)
    market = orch.create_draft(binary_draft())
    chain.hold()
    assert orch.publish(market.id).outcome is PublishOutcome.PENDING_CONFIRMATION

    with pytest.raises(InvalidLifecycleTransition, match="may still confirm"):
        orch.abandon_attempt(market.id)
    result = orch.abandon_attempt(market.id, force=True)
    assert result.outcome is PublishOutcome.ONCHAIN_FAILED
    assert orch.get(market.id).active_attempt_id is None
    assert orch.attempts(market.id)[0].stage is AttemptStage.ABANDONED


def test_abandon_confirmed_attempt_reconciles_instead(make_orchestrator):
    chain = funded_chain()
    orch = make_orchestrator(chain, confirmation_timeout_sec=0.05)
    market = orch.create_draft(binary_draft())
    chain.hold()
    orch.publish(market.id)
    chain.release()
    assert orch.abandon_attempt(market.id).outcome is PublishOutcome.PUBLISHED


# --- after publish ---


def test_live_edits_limited_to_metadata_and_later_close(make_orchestrator):
    orch = make_orchestrator(funded_chain())
    market = orch.create_draft(binary_draft())
    orch.publish(market.id)

    edited = orch.edit(market.id, MarketEdit(description="Source: national weather service"))
    assert edited.description == "Source: national weather service"
    extended = orch.edit(market.id, MarketEdit(close_time=market.close_time + timedelta(days=3)))
    assert extended.close_time == market.close_time + timedelta(days=3)
    with pytest.raises(InvalidLifecycleTransition):
        orch.edit(market.id, MarketEdit(close_time=market.close_time))
    with pytest.raises(InvalidLifecycleTransition):
        orch.edit(market.id, MarketEdit(question="A brand new question?"))
    with pytest.raises(InvalidLifecycleTransition):
        orch.delete(market.id)


def test_close_resolve_and_archive(make_orchestrator):
    orch = make_orchestrator(funded_chain())
    first = orch.create_draft(binary_draft())
    second = orch.create_draft(binary_draft("Will the bridge reopen this year?"))
    for m in (first, second):
        assert orch.publish(m.id).ok

    with pytest.raises(InvalidLifecycleTransition):
        orch.archive(first.id)
    with pytest.raises(InvalidLifecycleTransition):
        orch.resolve(first.id, Resolution(winning_outcome_idx=0, evidence_url="https://example.com/result"))

    closed = orch.close(first.id)
    assert closed.status is S.CLOSED
    assert closed.closed_at is not None
    with pytest.raises(InvalidLifecycleTransition):
        orch.resolve(first.id, Resolution(winning_outcome_idx=2, evidence_url="https://example.com/result"))

    resolved = orch.resolve(
        first.id,
        Resolution(
            winning_outcome_idx=1,
            evidence_url="https://example.com/result",
            resolution_notes="Official statement published.",
        ),
    )
    assert resolved.status is S.RESOLVED
    assert resolved.winning_outcome_idx == 1
    assert resolved.evidence_url == "https://example.com/result"
    assert resolved.market_address == closed.market_address
    with pytest.raises(InvalidLifecycleTransition):
        orch.archive(first.id)
    with pytest.raises(InvalidLifecycleTransition):
        orch.edit(first.id, MarketEdit(description="too late"))

    orch.close(second.id)
    archived = orch.archive(second.id)
    assert archived.status is S.ARCHIVED
    assert archived.previous_status is S.CLOSED
    assert archived.market_address is not None


def test_close_expired(make_orchestrator):
    orch = make_orchestrator(funded_chain())
    soon = orch.create_draft(binary_draft(close_time=future(days=1)))
    later = orch.create_draft(binary_draft("Will the bridge reopen this year?", close_time=future(days=30)))
    for m in (soon, later):
        orch.publish(m.id)

    closed = orch.close_expired(now=future(days=2))
    assert closed == [soon.id]
    assert orch.get(soon.id).status is S.CLOSED
    assert orch.get(later.id).status is S.LIVE
    assert orch.close_expired(now=future(days=2)) == []
