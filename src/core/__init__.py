"""Core module: config, types, logging."""

from src.core.config import Settings, get_settings, load_settings, reset_settings
from src.core.logging import setup_logging
from src.core.types import (
    DecodedAccount,
    LiquidationCandidate,
    Market,
    MarketConfig,
    MarketCrankStatus,
    MonitorStatus,
    OracleMode,
    PriceSample,
    RawAccount,
    ScanReport,
)

__all__ = [
    "DecodedAccount",
    "LiquidationCandidate",
    "Market",
    "MarketConfig",
    "MarketCrankStatus",
    "MonitorStatus",
    "OracleMode",
    "PriceSample",
    "RawAccount",
    "ScanReport",
    "Settings",
    "get_settings",
    "load_settings",
    "reset_settings",
    "setup_logging",
]
