"""Publish readiness checks. Every rule is evaluated; all failures are reported together."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone

import structlog

from predlaunch.chain.abi import ERC20_ABI
from predlaunch.chain.base import ChainClient
from predlaunch.chain.units import format_units, parse_units
from predlaunch.config.settings import ChainConfig, PublishConfig
from predlaunch.errors import InsufficientAllowance, InsufficientBalance
from predlaunch.models.market import Market, MarketType

log = structlog.get_logger(__name__)


def outcome_count_reason(market_type: MarketType, count: int) -> str:
    if market_type is MarketType.BINARY:
        return f"binary markets must have exactly 2 outcomes (got {count})"
    lo, hi = market_type.outcome_bounds()
    return f"multi-choice markets must have {lo}-{hi} outcomes (got {count})"


@dataclass(frozen=True)
class CollateralPlan:
    """Seed liquidity per outcome, in collateral base units."""

    seeds: tuple[int, ...]
    decimals: int

    @property
    def total(self) -> int:
        return sum(self.seeds)


@dataclass
class PreflightReport:
    reasons: list[str] = field(default_factory=list)
    plan: CollateralPlan | None = None
    balance: int | None = None
    allowance: int | None = None
    insufficient_balance: InsufficientBalance | None = None
    insufficient_allowance: InsufficientAllowance | None = None

    @property
    def ok(self) -> bool:
        return not self.reasons

    @property
    def field_reasons(self) -> list[str]:
        """Reasons other than the two economic ones."""
        economic = {str(e) for e in (self.insufficient_balance, self.insufficient_allowance) if e}
        return [r for r in self.reasons if r not in economic]


class PreflightValidator:
    """Checks fields, outcome counts, close time and (for publish) collateral."""

    def __init__(
        self,
        chain: ChainClient | None,
        chain_config: ChainConfig,
        publish_config: PublishConfig,
    ) -> None:
        self._chain = chain
        self._chain_config = chain_config
        self._publish_config = publish_config

    def collateral_plan(self, market: Market) -> CollateralPlan:
        decimals = self._chain_config.collateral_decimals
        seed = parse_units(self._publish_config.seed_per_outcome, decimals)
        return CollateralPlan(seeds=tuple(seed for _ in market.outcomes), decimals=decimals)

    def check_fields(self, market: Market, now: datetime | None = None) -> list[str]:
        """Non-economic rules. Pure; no chain access."""
        now = now or datetime.now(timezone.utc)
        reasons: list[str] = []
        if not (market.title or "").strip():
            reasons.append("title is required")
        if not (market.question or "").strip():
            reasons.append("question is required")
        if market.type is None:
            reasons.append("type is required")
        if market.close_time is None:
            reasons.append("close time is required")

        count = len(market.outcomes)
        if market.type is not None:
            lo, hi = market.type.outcome_bounds()
            if not lo <= count <= hi:
                reasons.append(outcome_count_reason(market.type, count))
        if any(not o.label.strip() for o in market.outcomes):
            reasons.append("outcome labels must not be empty")
        if sorted(o.idx for o in market.outcomes) != list(range(count)):
            reasons.append(f"outcome ordinals must be exactly 0..{count - 1}")

        if market.close_time is not None and market.close_time <= now:
            reasons.append("close time must be in the future")
        if market.fee_bps is not None and not 0 <= market.fee_bps <= 10_000:
            reasons.append("fee must be between 0 and 10000 basis points")
        return reasons

    def validate(self, market: Market, now: datetime | None = None, for_publish: bool = True) -> PreflightReport:
        report = PreflightReport(reasons=self.check_fields(market, now))
        if not market.image_url:
            log.warning("publish_without_image", market_id=market.id)
        if not for_publish:
            return report

        cfg = self._chain_config
        if not cfg.factory_address or not cfg.collateral_address:
            report.reasons.append("contract addresses are not configured")
            return report
        if self._chain is None:
            report.reasons.append("no chain client configured")
            return report

        plan = self.collateral_plan(market)
        report.plan = plan
        account = self._chain.account_address
        # Integer base units only; never floats
        balance = int(self._chain.call(cfg.collateral_address, ERC20_ABI, "balanceOf", [account]))
        allowance = int(
            self._chain.call(cfg.collateral_address, ERC20_ABI, "allowance", [account, cfg.factory_address])
        )
        report.balance, report.allowance = balance, allowance
        if balance < plan.total:
            err = InsufficientBalance(plan.total, balance, plan.decimals)
            report.insufficient_balance = err
            report.reasons.append(str(err))
        if allowance < plan.total:
            err = InsufficientAllowance(plan.total, allowance, plan.decimals)
            report.insufficient_allowance = err
            report.reasons.append(str(err))
        log.debug(
            "preflight_collateral",
            market_id=market.id,
            required=format_units(plan.total, plan.decimals),
            balance=format_units(balance, plan.decimals),
            allowance=format_units(allowance, plan.decimals),
        )
        return report
