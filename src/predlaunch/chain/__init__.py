"""Chain access: client interface, ABIs, web3 and simulated backends."""

from __future__ import annotations

from predlaunch.chain.base import (
    ChainClient,
    ChainRpcError,
    LogEvent,
    PreparedTransaction,
    Receipt,
    ReceiptTimeout,
    TransactionRejected,
)
from predlaunch.config.settings import Settings

__all__ = [
    "ChainClient",
    "ChainRpcError",
    "LogEvent",
    "PreparedTransaction",
    "Receipt",
    "ReceiptTimeout",
    "TransactionRejected",
    "create_chain_client",
]


def create_chain_client(settings: Settings) -> ChainClient:
    """Return the backend named by chain.backend ("web3" or "simulated")."""
    backend = settings.chain_backend
    if backend == "simulated":
        from predlaunch.chain.simulated import SimulatedChain
        from predlaunch.chain.units import parse_units

        config = settings.chain_config()
        funds = parse_units(settings.chain.get("sim_balance", "100000"), config.collateral_decimals)
        kwargs = {"balance": funds}
        if config.factory_address:
            kwargs["factory_address"] = config.factory_address
        return SimulatedChain(**kwargs)
    if backend == "web3":
        from predlaunch.chain.web3_client import Web3ChainClient

        return Web3ChainClient(settings.chain_config())
    raise ValueError(f"Unknown chain backend: {backend}")
