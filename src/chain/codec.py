"""ProgramCodec: the binary layout collaborator the keeper consumes.

The keeper never parses account bytes itself. A codec for the deployed
program is loaded at startup by ``src.keeper.factory.load_codec``.
"""

from __future__ import annotations

import abc
from typing import Any

from src.core.types import DecodedAccount, Market, MarketConfig, PriceSample


class ProgramCodec(abc.ABC):
    """Decodes market/account state and encodes keeper transactions."""

    @abc.abstractmethod
    def market_filters(self) -> list[dict[str, Any]]:
        """RPC filters selecting market accounts (e.g. ``{"dataSize": n}``)."""

    @abc.abstractmethod
    def decode_market_config(self, data: bytes) -> MarketConfig:
        """Decode the market header. Raises ValueError on unknown layouts."""

    @abc.abstractmethod
    def decode_account(self, data: bytes, index: int) -> DecodedAccount:
        """Decode one trader account slot of a market."""

    @abc.abstractmethod
    def build_crank(
        self,
        market: Market,
        price: PriceSample,
        payer: str,
        blockhash: str,
    ) -> bytes:
        """Serialized, unsigned crank transaction message."""

    @abc.abstractmethod
    def build_liquidation(
        self,
        market: Market,
        account_index: int,
        price: PriceSample,
        payer: str,
        blockhash: str,
    ) -> bytes:
        """Serialized, unsigned liquidation transaction message."""
