"""MarketRegistry: discovers on-chain markets and holds the tracked snapshot."""

from __future__ import annotations

from typing import Protocol

import structlog

from src.chain.client import ChainClient
from src.chain.codec import ProgramCodec
from src.core.types import Market
from src.monitor.service_monitor import ServiceMonitor

logger = structlog.stdlib.get_logger()


class MarketsProvider(Protocol):
    """Anything that can hand out the current market set."""

    def current_markets(self) -> tuple[Market, ...]: ...


class MarketRegistry:
    """In-memory directory of tracked markets.

    The snapshot is an immutable tuple replaced wholesale on each
    successful discovery; readers never see a partially updated set.
    """

    def __init__(
        self,
        chain: ChainClient,
        codec: ProgramCodec,
        program_ids: list[str],
        monitor: ServiceMonitor | None = None,
    ) -> None:
        self._chain = chain
        self._codec = codec
        self._program_ids = list(dict.fromkeys(program_ids))
        self._monitor = monitor
        self._markets: tuple[Market, ...] = ()
        self._by_id: dict[str, Market] = {}
        self._discovery_count = 0

    @property
    def program_ids(self) -> list[str]:
        return list(self._program_ids)

    @property
    def discovery_count(self) -> int:
        return self._discovery_count

    async def discover(self) -> tuple[Market, ...]:
        """Query every program for market accounts and replace the snapshot.

        On failure the previous snapshot is retained and returned; the error
        is reported to the monitor rather than raised.
        """
        filters = self._codec.market_filters()
        found: dict[str, Market] = {}
        try:
            for program_id in self._program_ids:
                accounts = await self._chain.get_accounts_matching(program_id, filters)
                for account in accounts:
                    try:
                        config = self._codec.decode_market_config(account.data)
                    except ValueError as exc:
                        logger.warning(
                            "market_decode_skipped",
                            market_id=account.address,
                            program_id=program_id,
                            error=str(exc),
                        )
                        continue
                    found[account.address] = Market(
                        market_id=account.address,
                        program_id=program_id,
                        config=config,
                    )
        except Exception as exc:
            logger.exception("market_discovery_failed", retained=len(self._markets))
            if self._monitor is not None:
                self._monitor.record_failure(f"discovery: {exc}")
            return self._markets

        markets = tuple(found[k] for k in sorted(found))
        previous = set(self._by_id)
        self._markets = markets
        self._by_id = {m.market_id: m for m in markets}
        self._discovery_count += 1
        if self._monitor is not None:
            self._monitor.record_success()

        added = set(self._by_id) - previous
        removed = previous - set(self._by_id)
        logger.info(
            "markets_discovered",
            count=len(markets),
            added=len(added),
            removed=len(removed),
            programs=len(self._program_ids),
        )
        return markets

    def current_markets(self) -> tuple[Market, ...]:
        return self._markets

    def get(self, market_id: str) -> Market | None:
        return self._by_id.get(market_id)

    def __len__(self) -> int:
        return len(self._markets)
