"""Chain client interface: view calls, signed transactions, receipts. Pluggable backends."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Sequence


@dataclass(frozen=True)
class PreparedTransaction:
    """Signed transaction whose hash is known before it is sent."""

    tx_hash: str
    raw: Any
    contract: str
    function: str
    nonce: int | None = None


@dataclass(frozen=True)
class LogEvent:
    """Decoded event log."""

    name: str
    args: dict[str, Any]
    address: str | None = None


@dataclass(frozen=True)
class Receipt:
    tx_hash: str
    success: bool
    block_number: int | None = None
    gas_used: int | None = None
    events: list[LogEvent] = field(default_factory=list)

    def find_event(self, *names: str) -> LogEvent | None:
        for ev in self.events:
            if ev.name in names:
                return ev
        return None


class ChainRpcError(Exception):
    """RPC call failed. maybe_sent=True when a send may have reached the network anyway."""

    def __init__(self, message: str, maybe_sent: bool = False) -> None:
        super().__init__(message)
        self.maybe_sent = maybe_sent


class TransactionRejected(ChainRpcError):
    """Node refused the transaction (nonce, funds, gas). Nothing was broadcast."""


class ReceiptTimeout(Exception):
    def __init__(self, tx_hash: str, timeout: float) -> None:
        super().__init__(f"Timed out after {timeout}s waiting for {tx_hash}")
        self.tx_hash = tx_hash
        self.timeout = timeout


class ChainClient(ABC):
    """Abstract chain backend. Implement for each node/provider stack."""

    @property
    @abstractmethod
    def account_address(self) -> str:
        """Address of the publishing account."""
        ...

    @abstractmethod
    def call(self, contract: str, abi: list[dict[str, Any]], function: str, args: Sequence[Any]) -> Any:
        """Read a view function."""
        ...

    @abstractmethod
    def prepare_transaction(
        self,
        contract: str,
        abi: list[dict[str, Any]],
        function: str,
        args: Sequence[Any],
    ) -> PreparedTransaction:
        """Build, price and sign a state-changing call from the publishing account. Sends nothing."""
        ...

    @abstractmethod
    def send(self, tx: PreparedTransaction) -> str:
        """Broadcast a prepared transaction, return its hash."""
        ...

    @abstractmethod
    def get_receipt(self, tx_hash: str, abi: list[dict[str, Any]] | None = None) -> Receipt | None:
        """Receipt if mined, else None. Never blocks on confirmation."""
        ...

    @abstractmethod
    def wait_for_receipt(
        self,
        tx_hash: str,
        timeout: float,
        abi: list[dict[str, Any]] | None = None,
    ) -> Receipt:
        """Block until mined. Raises ReceiptTimeout after timeout seconds."""
        ...
