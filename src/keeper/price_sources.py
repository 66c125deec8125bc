"""HTTP price sources used by the oracle pull loop."""

from __future__ import annotations

import abc
from decimal import Decimal, InvalidOperation
from typing import Any

import httpx
import structlog

logger = structlog.stdlib.get_logger()

_E6 = Decimal(1_000_000)


def to_price_e6(raw: Any) -> int | None:
    """Convert a decimal price string to a 1e6-scaled integer, or None."""
    if raw is None:
        return None
    try:
        value = Decimal(str(raw))
    except (InvalidOperation, ValueError):
        return None
    if not value.is_finite() or value <= 0:
        return None
    return int((value * _E6).to_integral_value())


class PriceSource(abc.ABC):
    """A remote price quote for a collateral mint."""

    name: str = ""

    def __init__(self, http: httpx.AsyncClient, base_url: str) -> None:
        self._http = http
        self._base_url = base_url.rstrip("/")

    @abc.abstractmethod
    async def fetch_price_e6(self, mint: str) -> int | None:
        """Latest price for *mint*, or None when the source has no quote.

        Transport failures propagate as ``httpx.HTTPError``.
        """


class DexScreenerSource(PriceSource):
    """First pair quote from the DexScreener token endpoint."""

    name = "dexscreener"

    async def fetch_price_e6(self, mint: str) -> int | None:
        resp = await self._http.get(f"{self._base_url}/{mint}")
        resp.raise_for_status()
        pairs = resp.json().get("pairs") or []
        if not pairs:
            return None
        return to_price_e6(pairs[0].get("priceUsd"))


class JupiterSource(PriceSource):
    """Jupiter price API v2."""

    name = "jupiter"

    async def fetch_price_e6(self, mint: str) -> int | None:
        resp = await self._http.get(self._base_url, params={"ids": mint})
        resp.raise_for_status()
        entry = (resp.json().get("data") or {}).get(mint) or {}
        return to_price_e6(entry.get("price"))
