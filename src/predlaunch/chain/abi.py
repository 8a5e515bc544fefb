"""ABI fragments for the collateral token (ERC20) and the market factory."""

from __future__ import annotations

ERC20_ABI = [
    {
        "inputs": [
            {"name": "spender", "type": "address"},
            {"name": "amount", "type": "uint256"},
        ],
        "name": "approve",
        "outputs": [{"name": "", "type": "bool"}],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [{"name": "owner", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [
            {"name": "owner", "type": "address"},
            {"name": "spender", "type": "address"},
        ],
        "name": "allowance",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
]

# Binary markets: createMarket(fee, end, cid, yes, no)
# Multi-outcome markets: createMultiMarket(fee, end, cid, seeds[])
FACTORY_ABI = [
    {
        "inputs": [
            {"name": "feeBps", "type": "uint16"},
            {"name": "endTimeUTC", "type": "uint64"},
            {"name": "rulesCid", "type": "string"},
            {"name": "initialYes", "type": "uint256"},
            {"name": "initialNo", "type": "uint256"},
        ],
        "name": "createMarket",
        "outputs": [{"name": "market", "type": "address"}],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [
            {"name": "feeBps", "type": "uint16"},
            {"name": "endTimeUTC", "type": "uint64"},
            {"name": "rulesCid", "type": "string"},
            {"name": "initialLiquidity", "type": "uint256[]"},
        ],
        "name": "createMultiMarket",
        "outputs": [{"name": "market", "type": "address"}],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "name": "marketId", "type": "uint256"},
            {"indexed": True, "name": "market", "type": "address"},
            {"indexed": False, "name": "endTime", "type": "uint256"},
            {"indexed": False, "name": "feeBps", "type": "uint256"},
            {"indexed": False, "name": "rulesCid", "type": "string"},
            {"indexed": False, "name": "initialYes", "type": "uint256"},
            {"indexed": False, "name": "initialNo", "type": "uint256"},
        ],
        "name": "MarketCreated",
        "type": "event",
    },
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "name": "marketId", "type": "uint256"},
            {"indexed": True, "name": "market", "type": "address"},
            {"indexed": False, "name": "endTime", "type": "uint256"},
            {"indexed": False, "name": "feeBps", "type": "uint256"},
            {"indexed": False, "name": "rulesCid", "type": "string"},
            {"indexed": False, "name": "initialLiquidity", "type": "uint256[]"},
        ],
        "name": "MultiMarketCreated",
        "type": "event",
    },
]

MARKET_CREATED_EVENTS = ("MarketCreated", "MultiMarketCreated")


def event_names(abi: list[dict]) -> list[str]:
    return [e["name"] for e in abi if e.get("type") == "event"]
