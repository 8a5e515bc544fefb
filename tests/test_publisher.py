"""On-chain publisher against the simulated chain."""

import dataclasses
import hashlib

import pytest

from predlaunch.chain.base import ChainRpcError, TransactionRejected
from predlaunch.chain.simulated import SimulatedChain
from predlaunch.errors import (
    OnChainConfirmationTimeout,
    OnChainStatusUnknown,
    OnChainSubmissionFailed,
    OnChainTransactionReverted,
)
from predlaunch.publishing.preflight import CollateralPlan
from predlaunch.publishing.publisher import OnChainPublisher, rules_content_id

from conftest import FACTORY, UNIT, make_market

PLAN2 = CollateralPlan(seeds=(100 * UNIT, 100 * UNIT), decimals=6)


@pytest.fixture
def publisher(chain_config, publish_config):
    def make(chain, **overrides):
        config = publish_config
        if overrides:
            config = dataclasses.replace(publish_config, **overrides)
        return OnChainPublisher(chain, chain_config, config)

    return make


def funded(allowance=0):
    return SimulatedChain(balance=1_000 * UNIT, allowance=allowance, factory_address=FACTORY)


def test_creation_call_binary_and_multi(publisher):
    p = publisher(funded())
    binary = make_market(rules="Resolves YES if it rains.")
    function, args = p.creation_call(binary, PLAN2)
    assert function == "createMarket"
    assert args == [200, int(binary.close_time.timestamp()), rules_content_id(binary), 100 * UNIT, 100 * UNIT]

    multi = make_market(labels=("A", "B", "C"), fee_bps=50)
    plan3 = CollateralPlan(seeds=(UNIT, UNIT, UNIT), decimals=6)
    function, args = p.creation_call(multi, plan3)
    assert function == "createMultiMarket"
    assert args[0] == 50
    assert args[3] == [UNIT, UNIT, UNIT]


def test_rules_content_id():
    market = make_market(rules="Resolves YES if it rains.")
    expected = "sha256-" + hashlib.sha256(b"Resolves YES if it rains.").hexdigest()
    assert rules_content_id(market) == expected
    assert rules_content_id(make_market(rules_cid="bafy123")) == "bafy123"


def test_publish_approves_then_creates(publisher):
    chain = funded(allowance=0)
    approvals, broadcasts, sent = [], [], []
    deployed = publisher(chain).publish(
        make_market(),
        PLAN2,
        on_approval=approvals.append,
        on_broadcast=broadcasts.append,
        on_sent=sent.append,
    )
    assert [t.function for t in chain.sent_calls()] == ["approve", "createMarket"]
    assert approvals == [deployed.approval_tx_hash]
    assert broadcasts == sent == [deployed.tx_hash]
    assert deployed.market_address.startswith("0x")
    assert chain.balances[chain.account_address] == 800 * UNIT


def test_existing_allowance_skips_approval(publisher):
    chain = funded(allowance=10_000 * UNIT)
    deployed = publisher(chain).publish(make_market(), PLAN2)
    assert deployed.approval_tx_hash is None
    assert [t.function for t in chain.sent_calls()] == ["createMarket"]


def test_broadcast_hook_failure_sends_nothing(publisher):
    chain = funded(allowance=10_000 * UNIT)

    def refuse(tx_hash):
        raise RuntimeError("cannot persist hash")

    with pytest.raises(RuntimeError):
        publisher(chain).publish(make_market(), PLAN2, on_broadcast=refuse)
    assert chain.sent_calls() == []


def test_rejected_send_is_submission_failure(publisher):
    chain = funded(allowance=10_000 * UNIT)
    chain.reject_next_send = TransactionRejected("nonce too low")
    with pytest.raises(OnChainSubmissionFailed):
        publisher(chain).publish(make_market(), PLAN2)
    assert chain.sent_calls() == []


def test_maybe_sent_rpc_error_is_status_unknown(publisher):
    chain = funded(allowance=10_000 * UNIT)
    chain.reject_next_send = ChainRpcError("read timeout", maybe_sent=True)
    with pytest.raises(OnChainStatusUnknown) as exc:
        publisher(chain).publish(make_market(), PLAN2)
    assert exc.value.tx_hash is not None


def test_revert_raises(publisher):
    chain = funded(allowance=10_000 * UNIT)
    chain.revert_functions.add("createMarket")
    with pytest.raises(OnChainTransactionReverted):
        publisher(chain).publish(make_market(), PLAN2)


def test_approval_timeout_names_stage(publisher):
    chain = funded(allowance=0)
    chain.hold()
    with pytest.raises(OnChainConfirmationTimeout) as exc:
        publisher(chain, approval_timeout_sec=0.05).publish(make_market(), PLAN2)
    assert exc.value.stage == "approval"
    assert chain.sent_calls("createMarket") == []


def test_check_confirmation_never_blocks(publisher):
    chain = funded(allowance=10_000 * UNIT)
    p = publisher(chain, confirmation_timeout_sec=0.05)
    chain.hold()
    with pytest.raises(OnChainConfirmationTimeout) as exc:
        p.publish(make_market(), PLAN2)
    tx_hash = exc.value.tx_hash
    assert p.check_confirmation(tx_hash) is None
    chain.release()
    deployed = p.check_confirmation(tx_hash)
    assert deployed.tx_hash == tx_hash
    assert deployed.market_address.startswith("0x")


def test_approval_settled_tracks_mined_allowance(publisher):
    chain = funded(allowance=0)
    p = publisher(chain, approval_timeout_sec=0.05)
    chain.hold()
    with pytest.raises(OnChainConfirmationTimeout) as exc:
        p.publish(make_market(), PLAN2)
    approval = exc.value.tx_hash
    assert [t.function for t in chain.sent_calls()] == ["approve"]
    assert p.approval_settled(approval, PLAN2) is False
    chain.release()
    assert p.approval_settled(approval, PLAN2) is True


def test_approval_settled_when_allowance_covers_plan(publisher):
    p = publisher(funded(allowance=PLAN2.total))
    assert p.approval_settled("0x" + "ab" * 32, PLAN2) is True


def test_reverted_approval_is_reported(publisher):
    chain = funded(allowance=0)
    chain.revert_functions.add("approve")
    p = publisher(chain, approval_timeout_sec=0.05)
    chain.hold()
    with pytest.raises(OnChainConfirmationTimeout) as exc:
        p.publish(make_market(), PLAN2)
    chain.release()
    with pytest.raises(OnChainTransactionReverted):
        p.approval_settled(exc.value.tx_hash, PLAN2)
