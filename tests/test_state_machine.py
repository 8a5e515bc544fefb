"""Lifecycle transitions, guards and edit freezes."""

from datetime import timedelta

import pytest

from predlaunch.errors import InvalidLifecycleTransition
from predlaunch.lifecycle.state_machine import TRANSITIONS, LifecycleStateMachine
from predlaunch.models.market import MarketEdit, MarketStatus, OutcomeInput

from conftest import make_market

S = MarketStatus
sm = LifecycleStateMachine()

ADDR = "0x" + "ab" * 20
TX = "0x" + "12" * 32


def test_terminal_states_have_no_exits():
    assert sm.is_terminal(S.RESOLVED)
    assert sm.is_terminal(S.ARCHIVED)
    assert not sm.is_terminal(S.CLOSED)
    assert TRANSITIONS[S.RESOLVED] == frozenset()
    assert TRANSITIONS[S.ARCHIVED] == frozenset()


@pytest.mark.parametrize(
    "current,target",
    [
        (S.DRAFT, S.LIVE),
        (S.DRAFT, S.ONCHAIN),
        (S.LIVE, S.DRAFT),
        (S.LIVE, S.RESOLVED),
        (S.LIVE, S.ARCHIVED),
        (S.RESOLVED, S.CLOSED),
        (S.ARCHIVED, S.LIVE),
    ],
)
def test_disallowed_transitions_name_status_and_operation(current, target):
    market = make_market(status=current)
    with pytest.raises(InvalidLifecycleTransition) as exc:
        sm.require_transition(market, target, operation="poke")
    assert exc.value.current == current.value
    assert exc.value.operation == "poke"


def test_pending_requires_preflight_and_future_close():
    market = make_market()
    with pytest.raises(InvalidLifecycleTransition, match="preflight"):
        sm.require_transition(market, S.PENDING)
    sm.require_transition(market, S.PENDING, preflight_passed=True, now=market.created_at)
    with pytest.raises(InvalidLifecycleTransition, match="close time"):
        sm.require_transition(
            market, S.PENDING, preflight_passed=True, now=market.close_time + timedelta(seconds=1)
        )


def test_onchain_requires_address_and_hash():
    market = make_market(status=S.PENDING)
    with pytest.raises(InvalidLifecycleTransition):
        sm.require_transition(market, S.ONCHAIN, market_address=ADDR)
    sm.require_transition(market, S.ONCHAIN, market_address=ADDR, tx_hash=TX)


def test_live_requires_recorded_address():
    with pytest.raises(InvalidLifecycleTransition):
        sm.require_transition(make_market(status=S.ONCHAIN), S.LIVE)
    sm.require_transition(make_market(status=S.ONCHAIN, market_address=ADDR, tx_hash=TX), S.LIVE)


def test_resolve_requires_valid_winning_index():
    market = make_market(labels=("A", "B", "C"), status=S.CLOSED, market_address=ADDR, tx_hash=TX)
    sm.require_transition(market, S.RESOLVED, winning_outcome_idx=2)
    for bad in (None, 3, -1):
        with pytest.raises(InvalidLifecycleTransition):
            sm.require_transition(market, S.RESOLVED, winning_outcome_idx=bad)


def test_cancel_refused_after_broadcast():
    market = make_market(status=S.PENDING)
    sm.require_transition(market, S.DRAFT)
    with pytest.raises(InvalidLifecycleTransition, match="broadcast"):
        sm.require_transition(market, S.DRAFT, publish_broadcast=True)


def test_archive_only_from_closed():
    sm.require_transition(make_market(status=S.CLOSED, market_address=ADDR, tx_hash=TX), S.ARCHIVED)
    for status in (S.DRAFT, S.PENDING, S.LIVE):
        with pytest.raises(InvalidLifecycleTransition):
            sm.require_transition(make_market(status=status), S.ARCHIVED)


def test_live_close_time_may_only_extend():
    market = make_market(status=S.LIVE, market_address=ADDR, tx_hash=TX)
    sm.require_edit(market, MarketEdit(close_time=market.close_time + timedelta(days=1)))
    sm.require_edit(market, MarketEdit(close_time=market.close_time))
    with pytest.raises(InvalidLifecycleTransition, match="extended"):
        sm.require_edit(market, MarketEdit(close_time=market.close_time - timedelta(minutes=1)))


def test_content_frozen_after_publish():
    market = make_market(status=S.LIVE, market_address=ADDR, tx_hash=TX)
    sm.require_edit(market, MarketEdit(description="More context"))
    with pytest.raises(InvalidLifecycleTransition, match="title"):
        sm.require_edit(market, MarketEdit(title="New title"))
    with pytest.raises(InvalidLifecycleTransition, match="outcomes"):
        sm.require_edit(market, MarketEdit(outcomes=[OutcomeInput(label="A"), OutcomeInput(label="B")]))


def test_content_frozen_while_attempt_in_flight():
    market = make_market(status=S.PENDING, active_attempt_id="att-1")
    with pytest.raises(InvalidLifecycleTransition, match="in progress"):
        sm.require_edit(market, MarketEdit(question="A different question?"))


def test_terminal_markets_are_not_editable():
    market = make_market(status=S.RESOLVED, market_address=ADDR, tx_hash=TX)
    with pytest.raises(InvalidLifecycleTransition):
        sm.require_edit(market, MarketEdit(description="late note"))


def test_delete_rules():
    sm.require_delete(make_market())
    sm.require_delete(make_market(status=S.PENDING))
    with pytest.raises(InvalidLifecycleTransition):
        sm.require_delete(make_market(status=S.LIVE, market_address=ADDR, tx_hash=TX))
    with pytest.raises(InvalidLifecycleTransition):
        sm.require_delete(make_market(status=S.PENDING, tx_hash=TX))
    with pytest.raises(InvalidLifecycleTransition):
        sm.require_delete(make_market(status=S.PENDING, active_attempt_id="att-1"))
