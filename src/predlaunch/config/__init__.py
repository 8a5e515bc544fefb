"""Configuration: TOML profiles and structlog setup."""

from predlaunch.config.settings import (
    ChainConfig,
    PublishConfig,
    Settings,
    configure_logging,
    get_settings,
)

__all__ = ["ChainConfig", "PublishConfig", "Settings", "configure_logging", "get_settings"]
