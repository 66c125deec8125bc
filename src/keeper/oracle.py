"""OracleService: per-market price cache with bounded history.

Prices arrive either by push (``ingest``) or by pull (``refresh``):

- ADMIN markets are quoted from HTTP price sources in order
  (DexScreener, then Jupiter) and the keeper pushes the price on-chain
  as part of its crank;
- EXTERNAL markets carry their own oracle, so the last price is read
  back from the market account.

A failed pull keeps the cached price in place.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable, Sequence

import httpx
import structlog

from src.chain.client import ChainClient
from src.chain.codec import ProgramCodec
from src.core.config import OracleConfig
from src.core.types import Market, OracleMode, PriceSample
from src.keeper.price_sources import PriceSource
from src.keeper.registry import MarketsProvider
from src.monitor.service_monitor import ServiceMonitor

logger = structlog.stdlib.get_logger()

_SOURCE_ERRORS = (httpx.HTTPError, ValueError, TypeError, AttributeError)


class OracleService:
    """Current-price slot and bounded history per market.

    History tuples are replaced on each ingest, never mutated, so a reader
    always sees either the pre- or post-ingest state.
    """

    def __init__(
        self,
        config: OracleConfig | None = None,
        sources: Sequence[PriceSource] = (),
        chain: ChainClient | None = None,
        codec: ProgramCodec | None = None,
        monitor: ServiceMonitor | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._config = config or OracleConfig()
        self._sources = list(sources)
        self._chain = chain
        self._codec = codec
        self._monitor = monitor
        self._clock = clock

        self._current: dict[str, PriceSample] = {}
        self._history: dict[str, tuple[PriceSample, ...]] = {}

        self._running = False
        self._task: asyncio.Task[None] | None = None
        self._provider: MarketsProvider | None = None
        self._refresh_count = 0

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def capacity(self) -> int:
        return self._config.history_capacity

    # ── Cache ───────────────────────────────────────────────────

    def ingest(self, market_id: str, sample: PriceSample) -> None:
        """Record *sample* as current and append it to the history."""
        history = self._history.get(market_id, ()) + (sample,)
        if len(history) > self._config.history_capacity:
            history = history[-self._config.history_capacity:]
        self._history[market_id] = history
        self._current[market_id] = sample

    def current_price(self, market_id: str) -> PriceSample | None:
        return self._current.get(market_id)

    def price_history(self, market_id: str) -> tuple[PriceSample, ...]:
        """Samples for *market_id*, oldest first."""
        return self._history.get(market_id, ())

    def is_fresh(self, market_id: str, max_age_secs: float) -> bool:
        sample = self._current.get(market_id)
        if sample is None:
            return False
        age_ms = self._clock() * 1000 - sample.timestamp_ms
        return age_ms <= max_age_secs * 1000

    # ── Pull ────────────────────────────────────────────────────

    async def refresh(self, market: Market) -> PriceSample | None:
        """Pull a new price for *market*.

        Returns the new sample, or the cached one (possibly None) when
        every source failed.
        """
        if market.config.oracle_mode == OracleMode.EXTERNAL:
            sample = await self._read_onchain(market)
        else:
            sample = await self._quote_sources(market)

        if sample is None:
            if self._monitor is not None:
                self._monitor.record_failure(f"no price for {market.market_id}")
            return self.current_price(market.market_id)

        self.ingest(market.market_id, sample)
        if self._monitor is not None:
            self._monitor.record_success()
        return sample

    async def _quote_sources(self, market: Market) -> PriceSample | None:
        mint = market.config.collateral_mint
        for source in self._sources:
            try:
                price_e6 = await source.fetch_price_e6(mint)
            except _SOURCE_ERRORS as exc:
                logger.warning(
                    "price_source_failed",
                    source=source.name,
                    market_id=market.market_id,
                    error=str(exc),
                )
                continue
            if price_e6 is None:
                continue
            return PriceSample(
                price_e6=price_e6,
                source=source.name,
                timestamp_ms=int(self._clock() * 1000),
            )
        logger.warning("price_sources_exhausted", market_id=market.market_id, mint=mint)
        return None

    async def _read_onchain(self, market: Market) -> PriceSample | None:
        if self._chain is None or self._codec is None:
            return None
        try:
            data = await self._chain.get_account_data(market.market_id)
            if data is None:
                logger.warning("market_account_missing", market_id=market.market_id)
                return None
            config = self._codec.decode_market_config(data)
        except Exception:
            logger.exception("onchain_price_read_failed", market_id=market.market_id)
            return None

        if config.last_price_e6 <= 0:
            return None
        timestamp_ms = (
            config.price_timestamp * 1000
            if config.price_timestamp > 0
            else int(self._clock() * 1000)
        )
        return PriceSample(
            price_e6=config.last_price_e6,
            source="onchain",
            timestamp_ms=timestamp_ms,
        )

    async def refresh_all(self) -> int:
        """Refresh every market the provider currently knows. Returns successes."""
        if self._provider is None:
            return 0
        refreshed = 0
        for market in self._provider.current_markets():
            before = self.current_price(market.market_id)
            sample = await self.refresh(market)
            if sample is not None and sample is not before:
                refreshed += 1
        self._refresh_count += 1
        logger.debug("oracle_refreshed", refreshed=refreshed, cycle=self._refresh_count)
        return refreshed

    # ── Lifecycle ───────────────────────────────────────────────

    async def start(self, markets_provider: MarketsProvider) -> None:
        """Start the background refresh loop."""
        if self._running:
            return
        self._provider = markets_provider
        self._running = True
        self._task = asyncio.create_task(self._refresh_loop())
        logger.info(
            "oracle_started",
            refresh_interval=self._config.refresh_interval_secs,
            sources=[s.name for s in self._sources],
        )

    async def stop(self) -> None:
        """Stop the refresh loop."""
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
            logger.info("oracle_stopped", cycles=self._refresh_count)

    async def _refresh_loop(self) -> None:
        while self._running:
            try:
                await self.refresh_all()
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("oracle_refresh_error")

            try:
                await asyncio.sleep(self._config.refresh_interval_secs)
            except asyncio.CancelledError:
                break

    def get_status(self) -> dict[str, object]:
        return {
            "running": self._running,
            "markets": len(self._current),
            "refresh_count": self._refresh_count,
        }
