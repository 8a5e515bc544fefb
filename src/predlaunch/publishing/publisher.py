"""Side-effecting half of publish: approval and market-creation transactions. Never touches the database."""

from __future__ import annotations

import hashlib
import threading
from dataclasses import dataclass
from typing import Callable

import structlog

from predlaunch.chain.abi import ERC20_ABI, FACTORY_ABI, MARKET_CREATED_EVENTS
from predlaunch.chain.base import ChainClient, ChainRpcError, Receipt, ReceiptTimeout, TransactionRejected
from predlaunch.config.settings import ChainConfig, PublishConfig
from predlaunch.errors import (
    OnChainConfirmationTimeout,
    OnChainStatusUnknown,
    OnChainSubmissionFailed,
    OnChainTransactionReverted,
)
from predlaunch.models.market import Market, MarketType
from predlaunch.publishing.preflight import CollateralPlan

log = structlog.get_logger(__name__)

# Hook signature: called with a tx hash before the transaction is sent
TxHook = Callable[[str], None]


@dataclass(frozen=True)
class DeployedMarket:
    market_address: str
    tx_hash: str
    block_number: int | None = None
    approval_tx_hash: str | None = None


def rules_content_id(market: Market) -> str:
    """Content id for the rules text: the stored rules_cid, else a sha256-derived id."""
    if market.rules_cid:
        return market.rules_cid
    text = (market.rules or market.question or "").encode("utf-8")
    return "sha256-" + hashlib.sha256(text).hexdigest()


class OnChainPublisher:
    """Approve (if needed), create, confirm. One signer, so sends are serialized."""

    def __init__(self, chain: ChainClient, chain_config: ChainConfig, publish_config: PublishConfig) -> None:
        self._chain = chain
        self._chain_config = chain_config
        self._publish_config = publish_config
        # Held from prepare (nonce assignment) through send
        self._account_lock = threading.Lock()

    def creation_call(self, market: Market, plan: CollateralPlan) -> tuple[str, list]:
        """Factory function name and arguments for this market."""
        fee = market.fee_bps if market.fee_bps is not None else self._publish_config.default_fee_bps
        end_time = int(market.close_time.timestamp())
        cid = rules_content_id(market)
        if market.type is MarketType.BINARY:
            yes, no = plan.seeds
            return "createMarket", [fee, end_time, cid, yes, no]
        return "createMultiMarket", [fee, end_time, cid, list(plan.seeds)]

    def _submit(
        self,
        contract: str,
        abi: list,
        function: str,
        args: list,
        before_send: TxHook | None,
        after_send: TxHook | None = None,
    ) -> str:
        with self._account_lock:
            try:
                prepared = self._chain.prepare_transaction(contract, abi, function, args)
            except ChainRpcError as e:
                raise OnChainSubmissionFailed(f"could not prepare {function}: {e}") from e
            if before_send is not None:
                before_send(prepared.tx_hash)
            try:
                self._chain.send(prepared)
            except TransactionRejected as e:
                raise OnChainSubmissionFailed(f"{function} rejected by node: {e}") from e
            except ChainRpcError as e:
                if e.maybe_sent:
                    raise OnChainStatusUnknown(prepared.tx_hash, str(e)) from e
                raise OnChainSubmissionFailed(f"{function} not sent: {e}") from e
            if after_send is not None:
                after_send(prepared.tx_hash)
        log.info("tx_sent", function=function, tx_hash=prepared.tx_hash)
        return prepared.tx_hash

    def _wait(self, tx_hash: str, timeout: float, stage: str, abi: list | None = None) -> Receipt:
        try:
            receipt = self._chain.wait_for_receipt(tx_hash, timeout, abi=abi)
        except ReceiptTimeout as e:
            raise OnChainConfirmationTimeout(tx_hash, timeout, stage=stage) from e
        except ChainRpcError as e:
            raise OnChainStatusUnknown(tx_hash, str(e)) from e
        if not receipt.success:
            raise OnChainTransactionReverted(tx_hash)
        return receipt

    def _allowance(self) -> int:
        cfg = self._chain_config
        return int(
            self._chain.call(
                cfg.collateral_address, ERC20_ABI, "allowance", [self._chain.account_address, cfg.factory_address]
            )
        )

    def ensure_allowance(self, plan: CollateralPlan, on_approval: TxHook | None = None) -> str | None:
        """Approve the factory for plan.total unless the allowance already covers it."""
        cfg = self._chain_config
        try:
            current = self._allowance()
        except ChainRpcError as e:
            raise OnChainSubmissionFailed(f"could not read allowance: {e}") from e
        if current >= plan.total:
            return None
        log.info("approval_needed", current=current, required=plan.total)
        tx_hash = self._submit(
            cfg.collateral_address, ERC20_ABI, "approve", [cfg.factory_address, plan.total], on_approval
        )
        self._wait(tx_hash, self._publish_config.approval_timeout_sec, stage="approval")
        log.info("approval_confirmed", tx_hash=tx_hash)
        return tx_hash

    def approval_settled(self, tx_hash: str, plan: CollateralPlan) -> bool:
        """Non-blocking: True once the approval is mined or the allowance covers plan.

        A node reports the allowance as of the latest block, so an approval still
        in the mempool reads as False here. Raises OnChainTransactionReverted if
        the approval reverted.
        """
        try:
            if self._allowance() >= plan.total:
                return True
            receipt = self._chain.get_receipt(tx_hash)
        except ChainRpcError as e:
            raise OnChainStatusUnknown(tx_hash, str(e)) from e
        if receipt is None:
            return False
        if not receipt.success:
            raise OnChainTransactionReverted(tx_hash)
        return True

    def publish(
        self,
        market: Market,
        plan: CollateralPlan,
        on_approval: TxHook | None = None,
        on_broadcast: TxHook | None = None,
        on_sent: TxHook | None = None,
    ) -> DeployedMarket:
        """Create the market on-chain and return its address once confirmed.

        on_broadcast receives the creation hash before the transaction is sent
        (if it raises, nothing is sent); on_sent receives it once the node accepted it.
        """
        approval_hash = self.ensure_allowance(plan, on_approval)
        function, args = self.creation_call(market, plan)
        tx_hash = self._submit(
            self._chain_config.factory_address, FACTORY_ABI, function, args, on_broadcast, on_sent
        )
        receipt = self._wait(
            tx_hash, self._publish_config.confirmation_timeout_sec, stage="create", abi=FACTORY_ABI
        )
        deployed = self._deployed(receipt)
        log.info("market_deployed", market_id=market.id, market_address=deployed.market_address, tx_hash=tx_hash)
        return DeployedMarket(deployed.market_address, tx_hash, deployed.block_number, approval_hash)

    def check_confirmation(self, tx_hash: str) -> DeployedMarket | None:
        """Non-blocking: None while unmined, the deployment once confirmed. Raises if reverted."""
        try:
            receipt = self._chain.get_receipt(tx_hash, abi=FACTORY_ABI)
        except ChainRpcError as e:
            raise OnChainStatusUnknown(tx_hash, str(e)) from e
        if receipt is None:
            return None
        if not receipt.success:
            raise OnChainTransactionReverted(tx_hash)
        return self._deployed(receipt)

    @staticmethod
    def _deployed(receipt: Receipt) -> DeployedMarket:
        event = receipt.find_event(*MARKET_CREATED_EVENTS)
        if event is None or not event.args.get("market"):
            raise OnChainStatusUnknown(receipt.tx_hash, "receipt has no market creation event")
        return DeployedMarket(str(event.args["market"]), receipt.tx_hash, receipt.block_number)
