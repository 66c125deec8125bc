"""Keeper services: signer, oracle cache, market registry, crank and liquidation loops."""

from src.keeper.crank import CrankService
from src.keeper.exceptions import ConfigError, KeeperError, PartialCycleFailure, SigningError
from src.keeper.liquidation import LiquidationService
from src.keeper.oracle import OracleService
from src.keeper.registry import MarketRegistry, MarketsProvider
from src.keeper.signer import SealedSigner

__all__ = [
    "ConfigError",
    "CrankService",
    "KeeperError",
    "LiquidationService",
    "MarketRegistry",
    "MarketsProvider",
    "OracleService",
    "PartialCycleFailure",
    "SealedSigner",
    "SigningError",
]
