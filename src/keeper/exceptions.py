"""Keeper error taxonomy."""

from __future__ import annotations

from src.core.config import ConfigError

__all__ = ["ConfigError", "KeeperError", "PartialCycleFailure", "SigningError"]


class KeeperError(Exception):
    """Base exception for keeper errors."""


class SigningError(KeeperError):
    """A payload could not be signed. Counted as an attempt failure."""


class PartialCycleFailure(KeeperError):
    """One candidate inside a batch cycle failed; the cycle continues."""

    def __init__(self, market_id: str, account_index: int, reason: str) -> None:
        super().__init__(f"{market_id}#{account_index}: {reason}")
        self.market_id = market_id
        self.account_index = account_index
        self.reason = reason
