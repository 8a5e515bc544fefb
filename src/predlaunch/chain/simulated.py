"""In-process simulated chain: ERC20 collateral + market factory. Used by the dev profile and tests."""

from __future__ import annotations

import hashlib
import threading
from dataclasses import dataclass
from typing import Any, Sequence

import structlog

from predlaunch.chain.base import (
    ChainClient,
    LogEvent,
    PreparedTransaction,
    Receipt,
    ReceiptTimeout,
    TransactionRejected,
)

log = structlog.get_logger(__name__)

DEFAULT_ACCOUNT = "0x" + "11" * 20


@dataclass
class SentTransaction:
    tx_hash: str
    contract: str
    function: str
    args: tuple[Any, ...]
    nonce: int


class SimulatedChain(ChainClient):
    """Deterministic chain double.

    Transactions are mined when sent, or on release() while hold() is in effect.
    Balances, allowances and receipts only reflect mined transactions.
    """

    def __init__(
        self,
        account: str = DEFAULT_ACCOUNT,
        balance: int = 0,
        allowance: int = 0,
        factory_address: str = "0x" + "fa" * 20,
    ) -> None:
        self._account = account.lower()
        self.factory_address = factory_address.lower()
        self.balances: dict[str, int] = {self._account: balance}
        self.allowances: dict[tuple[str, str], int] = {}
        if allowance:
            self.allowances[(self._account, self.factory_address)] = allowance
        self.sent: list[SentTransaction] = []
        self.revert_functions: set[str] = set()
        self.reject_next_send: Exception | None = None
        self.confirmations = threading.Event()
        self.confirmations.set()
        self.broadcast_seen = threading.Event()
        self._receipts: dict[str, Receipt] = {}
        self._unmined: list[tuple[str, str, str, tuple[Any, ...]]] = []
        self._prepared: dict[str, tuple[str, str, tuple[Any, ...]]] = {}
        self._nonce = 0
        self._market_count = 0
        self._lock = threading.Lock()

    # --- test controls ---
    def hold(self) -> None:
        self.confirmations.clear()

    def release(self) -> None:
        with self._lock:
            for tx_hash, contract, function, args in self._unmined:
                self._receipts[tx_hash] = self._execute(tx_hash, contract, function, args)
            self._unmined.clear()
        self.confirmations.set()

    def sent_calls(self, function: str | None = None) -> list[SentTransaction]:
        with self._lock:
            return [t for t in self.sent if function is None or t.function == function]

    # --- ChainClient ---
    @property
    def account_address(self) -> str:
        return self._account

    def call(self, contract: str, abi: list[dict[str, Any]], function: str, args: Sequence[Any]) -> Any:
        with self._lock:
            if function == "balanceOf":
                return self.balances.get(str(args[0]).lower(), 0)
            if function == "allowance":
                return self.allowances.get((str(args[0]).lower(), str(args[1]).lower()), 0)
        raise ValueError(f"Simulated chain has no view function {function}")

    def prepare_transaction(
        self,
        contract: str,
        abi: list[dict[str, Any]],
        function: str,
        args: Sequence[Any],
    ) -> PreparedTransaction:
        with self._lock:
            nonce = self._nonce
            self._nonce += 1
            digest = hashlib.sha256(f"{self._account}:{nonce}:{function}:{list(args)}".encode()).hexdigest()
            tx_hash = "0x" + digest
            self._prepared[tx_hash] = (contract.lower(), function, tuple(args))
        return PreparedTransaction(tx_hash=tx_hash, raw=tx_hash, contract=contract, function=function, nonce=nonce)

    def send(self, tx: PreparedTransaction) -> str:
        with self._lock:
            if self.reject_next_send is not None:
                err, self.reject_next_send = self.reject_next_send, None
                raise err
            if tx.tx_hash not in self._prepared:
                raise TransactionRejected(f"unknown transaction {tx.tx_hash}")
            contract, function, args = self._prepared.pop(tx.tx_hash)
            self.sent.append(SentTransaction(tx.tx_hash, contract, function, args, tx.nonce or 0))
            if self.confirmations.is_set():
                self._receipts[tx.tx_hash] = self._execute(tx.tx_hash, contract, function, args)
            else:
                self._unmined.append((tx.tx_hash, contract, function, args))
        log.debug("sim_tx_sent", tx_hash=tx.tx_hash, function=function)
        self.broadcast_seen.set()
        return tx.tx_hash

    def _execute(self, tx_hash: str, contract: str, function: str, args: tuple[Any, ...]) -> Receipt:
        if function in self.revert_functions:
            return Receipt(tx_hash=tx_hash, success=False, block_number=len(self.sent))
        if function == "approve":
            spender, amount = str(args[0]).lower(), int(args[1])
            self.allowances[(self._account, spender)] = amount
            return Receipt(tx_hash=tx_hash, success=True, block_number=len(self.sent))
        if function in ("createMarket", "createMultiMarket"):
            fee_bps, end_time, rules_cid = args[0], args[1], args[2]
            seeds = [int(args[3]), int(args[4])] if function == "createMarket" else [int(s) for s in args[3]]
            total = sum(seeds)
            key = (self._account, contract)
            if self.allowances.get(key, 0) < total or self.balances.get(self._account, 0) < total:
                return Receipt(tx_hash=tx_hash, success=False, block_number=len(self.sent))
            self.allowances[key] -= total
            self.balances[self._account] -= total
            self._market_count += 1
            market = "0x" + hashlib.sha256(f"market:{self._market_count}".encode()).hexdigest()[:40]
            base = {"marketId": self._market_count, "market": market, "endTime": end_time,
                    "feeBps": fee_bps, "rulesCid": rules_cid}
            if function == "createMarket":
                event = LogEvent("MarketCreated", {**base, "initialYes": seeds[0], "initialNo": seeds[1]}, contract)
            else:
                event = LogEvent("MultiMarketCreated", {**base, "initialLiquidity": seeds}, contract)
            return Receipt(tx_hash=tx_hash, success=True, block_number=len(self.sent), events=[event])
        return Receipt(tx_hash=tx_hash, success=False, block_number=len(self.sent))

    def get_receipt(self, tx_hash: str, abi: list[dict[str, Any]] | None = None) -> Receipt | None:
        if not self.confirmations.is_set():
            return None
        with self._lock:
            return self._receipts.get(tx_hash)

    def wait_for_receipt(
        self,
        tx_hash: str,
        timeout: float,
        abi: list[dict[str, Any]] | None = None,
    ) -> Receipt:
        if not self.confirmations.wait(timeout):
            raise ReceiptTimeout(tx_hash, timeout)
        with self._lock:
            receipt = self._receipts.get(tx_hash)
        if receipt is None:
            raise ReceiptTimeout(tx_hash, timeout)
        return receipt
