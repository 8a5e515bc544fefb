"""web3.py-backed chain client: JSON-RPC over HTTP, locally signed transactions."""

from __future__ import annotations

from typing import Any, Sequence

import structlog
from web3 import Web3
from web3.exceptions import (
    ContractLogicError,
    TimeExhausted,
    TransactionNotFound,
    Web3Exception,
    Web3RPCError,
)
from web3.logs import DISCARD

from predlaunch.chain.abi import event_names
from predlaunch.chain.base import (
    ChainClient,
    ChainRpcError,
    LogEvent,
    PreparedTransaction,
    Receipt,
    ReceiptTimeout,
    TransactionRejected,
)
from predlaunch.config.settings import ChainConfig

log = structlog.get_logger(__name__)


class Web3ChainClient(ChainClient):
    """Signs with the configured key; the node never holds it."""

    def __init__(self, config: ChainConfig, request_timeout: float = 30.0) -> None:
        if not config.private_key:
            raise ValueError("No signing key configured (see chain.private_key_env)")
        self._config = config
        self._w3 = Web3(Web3.HTTPProvider(config.rpc_url, request_kwargs={"timeout": request_timeout}))
        self._account = self._w3.eth.account.from_key(config.private_key)

    @property
    def account_address(self) -> str:
        return self._account.address

    def _contract(self, address: str, abi: list[dict[str, Any]]):
        return self._w3.eth.contract(address=Web3.to_checksum_address(address), abi=abi)

    @staticmethod
    def _normalize_args(args: Sequence[Any]) -> list[Any]:
        out = []
        for a in args:
            if isinstance(a, str) and Web3.is_address(a):
                a = Web3.to_checksum_address(a)
            out.append(a)
        return out

    def call(self, contract: str, abi: list[dict[str, Any]], function: str, args: Sequence[Any]) -> Any:
        fn = self._contract(contract, abi).get_function_by_name(function)
        try:
            return fn(*self._normalize_args(args)).call()
        except (Web3Exception, OSError) as e:
            raise ChainRpcError(f"{function} call failed: {e}") from e

    def _estimate_gas(self, fn: Any) -> int:
        try:
            gas = fn.estimate_gas({"from": self.account_address})
            return gas * (100 + self._config.gas_buffer_pct) // 100
        except (ContractLogicError, Web3Exception, ValueError) as e:
            log.warning("gas_estimate_failed", error=str(e), fallback=self._config.gas_limit_fallback)
            return self._config.gas_limit_fallback

    def prepare_transaction(
        self,
        contract: str,
        abi: list[dict[str, Any]],
        function: str,
        args: Sequence[Any],
    ) -> PreparedTransaction:
        fn = self._contract(contract, abi).get_function_by_name(function)(*self._normalize_args(args))
        try:
            nonce = self._w3.eth.get_transaction_count(self.account_address, "pending")
            tx = fn.build_transaction(
                {
                    "from": self.account_address,
                    "nonce": nonce,
                    "gas": self._estimate_gas(fn),
                    "chainId": self._config.chain_id,
                }
            )
        except (Web3Exception, OSError) as e:
            raise ChainRpcError(f"could not build {function}: {e}") from e
        signed = self._account.sign_transaction(tx)
        return PreparedTransaction(
            tx_hash=Web3.to_hex(signed.hash),
            raw=signed.raw_transaction,
            contract=contract,
            function=function,
            nonce=nonce,
        )

    def send(self, tx: PreparedTransaction) -> str:
        try:
            sent = self._w3.eth.send_raw_transaction(tx.raw)
        except Web3RPCError as e:
            # The node answered with an error: it did not accept the transaction
            raise TransactionRejected(f"{tx.function} rejected: {e}") from e
        except (Web3Exception, OSError) as e:
            raise ChainRpcError(f"{tx.function} send failed: {e}", maybe_sent=True) from e
        return Web3.to_hex(sent)

    def _to_receipt(self, raw: Any, abi: list[dict[str, Any]] | None) -> Receipt:
        events: list[LogEvent] = []
        if abi and raw.get("to"):
            contract = self._contract(raw["to"], abi)
            for name in event_names(abi):
                for ev in getattr(contract.events, name)().process_receipt(raw, errors=DISCARD):
                    events.append(LogEvent(name=name, args=dict(ev["args"]), address=ev["address"]))
        return Receipt(
            tx_hash=Web3.to_hex(raw["transactionHash"]),
            success=raw["status"] == 1,
            block_number=raw.get("blockNumber"),
            gas_used=raw.get("gasUsed"),
            events=events,
        )

    def get_receipt(self, tx_hash: str, abi: list[dict[str, Any]] | None = None) -> Receipt | None:
        try:
            raw = self._w3.eth.get_transaction_receipt(tx_hash)
        except TransactionNotFound:
            return None
        except (Web3Exception, OSError) as e:
            raise ChainRpcError(f"receipt lookup failed for {tx_hash}: {e}") from e
        return self._to_receipt(raw, abi)

    def wait_for_receipt(
        self,
        tx_hash: str,
        timeout: float,
        abi: list[dict[str, Any]] | None = None,
    ) -> Receipt:
        try:
            raw = self._w3.eth.wait_for_transaction_receipt(tx_hash, timeout=timeout)
        except TimeExhausted as e:
            raise ReceiptTimeout(tx_hash, timeout) from e
        except (Web3Exception, OSError) as e:
            raise ChainRpcError(f"waiting for {tx_hash} failed: {e}") from e
        return self._to_receipt(raw, abi)
