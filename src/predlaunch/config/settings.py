"""TOML config loading and profiles."""

from __future__ import annotations

import logging
import os
import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import Any

# Default config search path (project root or cwd)
_CONFIG_DIR = Path(__file__).resolve().parent.parent.parent.parent / "config"
_CWD_CONFIG = Path.cwd() / "config"


def _load_toml(path: Path) -> dict[str, Any]:
    with open(path, "rb") as f:
        return tomllib.load(f)


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge override into base. Override values take precedence."""
    result = dict(base)
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _find_config_dir(config_dir: Path | None = None) -> Path:
    if config_dir is not None:
        return config_dir
    if _CWD_CONFIG.exists():
        return _CWD_CONFIG
    return _CONFIG_DIR


def load_config(profile: str | None = None, config_dir: Path | None = None) -> dict[str, Any]:
    """Load merged config from default.toml and optional profile overlay."""
    config_dir = _find_config_dir(config_dir)
    default_path = config_dir / "default.toml"
    if not default_path.exists():
        return {}
    base = _load_toml(default_path)
    if profile:
        profile_path = config_dir / f"{profile}.toml"
        if profile_path.exists():
            overlay = _load_toml(profile_path)
            base = _deep_merge(base, overlay)
    return base


def get_settings(profile: str | None = None, config_dir: Path | None = None) -> Settings:
    """Return Settings instance from merged config."""
    raw = load_config(profile, config_dir)
    return Settings.from_dict(raw)


class Settings:
    """Application settings from TOML config."""

    def __init__(
        self,
        *,
        storage: dict[str, Any] | None = None,
        chain: dict[str, Any] | None = None,
        publishing: dict[str, Any] | None = None,
        api: dict[str, Any] | None = None,
        logging: dict[str, Any] | None = None,
    ):
        self.storage = storage or {}
        self.chain = chain or {}
        self.publishing = publishing or {}
        self.api = api or {}
        self.logging = logging or {}

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> Settings:
        return cls(
            storage=raw.get("storage"),
            chain=raw.get("chain"),
            publishing=raw.get("publishing"),
            api=raw.get("api"),
            logging=raw.get("logging"),
        )

    # Convenience accessors with defaults
    @property
    def db_path(self) -> str:
        return self.storage.get("db_path", "data/predlaunch.duckdb")

    @property
    def chain_backend(self) -> str:
        return str(self.chain.get("backend", "web3")).lower()

    @property
    def api_host(self) -> str:
        return self.api.get("host", "127.0.0.1")

    @property
    def api_port(self) -> int:
        return int(self.api.get("port", 8000))

    @property
    def logging_level(self) -> str:
        return self.logging.get("level", "INFO").upper()

    @property
    def logging_format(self) -> str:
        return self.logging.get("format", "console")

    @property
    def logging_level_num(self) -> int:
        return getattr(logging, self.logging_level, logging.INFO)

    def chain_config(self) -> ChainConfig:
        return ChainConfig.from_dict(self.chain)

    def publish_config(self) -> PublishConfig:
        return PublishConfig.from_dict(self.publishing)


@dataclass(frozen=True)
class ChainConfig:
    """Chain endpoint, contracts and signing account. Built once and injected."""

    rpc_url: str = "http://127.0.0.1:8545"
    chain_id: int = 80002
    factory_address: str = ""
    collateral_address: str = ""
    collateral_decimals: int = 6
    private_key: str | None = None
    gas_limit_fallback: int = 500_000
    gas_buffer_pct: int = 20

    @classmethod
    def from_dict(cls, raw: dict[str, Any], environ: dict[str, str] | None = None) -> ChainConfig:
        env = os.environ if environ is None else environ
        key_env = raw.get("private_key_env", "PREDLAUNCH_PRIVATE_KEY")
        return cls(
            rpc_url=raw.get("rpc_url", cls.rpc_url),
            chain_id=int(raw.get("chain_id", cls.chain_id)),
            factory_address=raw.get("factory_address", ""),
            collateral_address=raw.get("collateral_address", ""),
            collateral_decimals=int(raw.get("collateral_decimals", cls.collateral_decimals)),
            private_key=env.get(key_env) or None,
            gas_limit_fallback=int(raw.get("gas_limit_fallback", cls.gas_limit_fallback)),
            gas_buffer_pct=int(raw.get("gas_buffer_pct", cls.gas_buffer_pct)),
        )

    def __repr__(self) -> str:
        # Never print the key
        return (
            f"ChainConfig(rpc_url={self.rpc_url!r}, chain_id={self.chain_id}, "
            f"factory_address={self.factory_address!r}, collateral_address={self.collateral_address!r})"
        )


@dataclass(frozen=True)
class PublishConfig:
    """Publish workflow knobs: seeding, fees, timeouts, slug budget."""

    seed_per_outcome: str = "100"
    default_fee_bps: int = 200
    approval_timeout_sec: float = 300.0
    confirmation_timeout_sec: float = 300.0
    auto_approve: bool = True
    slug_max_attempts: int = 50
    journal_path: str = "data/pending_commits.jsonl"
    reconcile_interval_sec: float = 30.0

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> PublishConfig:
        return cls(
            seed_per_outcome=str(raw.get("seed_per_outcome", cls.seed_per_outcome)),
            default_fee_bps=int(raw.get("default_fee_bps", cls.default_fee_bps)),
            approval_timeout_sec=float(raw.get("approval_timeout_sec", cls.approval_timeout_sec)),
            confirmation_timeout_sec=float(
                raw.get("confirmation_timeout_sec", cls.confirmation_timeout_sec)
            ),
            auto_approve=bool(raw.get("auto_approve", cls.auto_approve)),
            slug_max_attempts=int(raw.get("slug_max_attempts", cls.slug_max_attempts)),
            journal_path=raw.get("journal_path", cls.journal_path),
            reconcile_interval_sec=float(raw.get("reconcile_interval_sec", cls.reconcile_interval_sec)),
        )


def configure_logging(settings: Settings) -> None:
    """Configure structlog with settings. Call once at application entry."""
    import structlog

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]
    if settings.logging_format == "json":
        processors.append(structlog.processors.format_exc_info)
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(settings.logging_level_num),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
