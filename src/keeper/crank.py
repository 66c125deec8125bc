"""CrankService: periodic per-market crank submission with exponential backoff."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable

import structlog

from src.chain.client import ChainClient, await_confirmation
from src.chain.codec import ProgramCodec
from src.chain.exceptions import TransientNetworkError
from src.core.config import KeeperConfig, RpcConfig
from src.core.types import CrankState, Market, MarketCrankStatus, PriceSample
from src.keeper.oracle import OracleService
from src.keeper.registry import MarketRegistry
from src.keeper.signer import SealedSigner
from src.monitor.service_monitor import ServiceMonitor

logger = structlog.stdlib.get_logger()


class CrankService:
    """Submits a crank transaction for every tracked market each interval.

    One shared timer fans out to the registry's current markets. A market
    with an attempt still in flight, or inside its backoff window, is
    skipped for that tick rather than queued.
    """

    def __init__(
        self,
        registry: MarketRegistry,
        oracle: OracleService,
        chain: ChainClient,
        codec: ProgramCodec,
        signer: SealedSigner,
        config: KeeperConfig | None = None,
        rpc_config: RpcConfig | None = None,
        crank_monitor: ServiceMonitor | None = None,
        rpc_monitor: ServiceMonitor | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._registry = registry
        self._oracle = oracle
        self._chain = chain
        self._codec = codec
        self._signer = signer
        self._config = config or KeeperConfig()
        self._rpc_config = rpc_config or RpcConfig()
        self._crank_monitor = crank_monitor
        self._rpc_monitor = rpc_monitor
        self._clock = clock

        self._status: dict[str, MarketCrankStatus] = {}
        self._in_flight: set[str] = set()
        self._tasks: set[asyncio.Task[bool | None]] = set()

        self._running = False
        self._task: asyncio.Task[None] | None = None
        self._last_discovery_at = 0.0
        self._tick_count = 0

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def in_flight(self) -> frozenset[str]:
        return frozenset(self._in_flight)

    def backoff_secs(self, consecutive_failures: int) -> float:
        """Backoff after the given number of consecutive failures."""
        return min(
            self._config.crank_backoff_cap_secs,
            self._config.crank_backoff_base_secs * 2 ** consecutive_failures,
        )

    # ── Attempts ────────────────────────────────────────────────

    def _begin(self, market: Market) -> PriceSample | None:
        """Claim *market* for an attempt. Returns the price to crank with, or None to skip.

        Runs without awaiting so the in-flight check and claim are atomic.
        """
        market_id = market.market_id
        status = self._status.setdefault(market_id, MarketCrankStatus())

        if market_id in self._in_flight:
            logger.debug("crank_skipped_in_flight", market_id=market_id)
            return None

        now = self._clock()
        if status.backoff_until is not None and now < status.backoff_until:
            logger.debug(
                "crank_skipped_backoff",
                market_id=market_id,
                remaining=round(status.backoff_until - now, 1),
            )
            return None

        price = self._oracle.current_price(market_id)
        if price is None:
            logger.debug("crank_skipped_no_price", market_id=market_id)
            return None

        self._in_flight.add(market_id)
        status.state = CrankState.CRANKING
        status.last_crank_at = now
        return price

    async def _attempt(self, market: Market, price: PriceSample) -> bool:
        market_id = market.market_id
        try:
            blockhash = await self._chain.get_latest_blockhash()
            message = self._codec.build_crank(
                market, price, self._signer.public_identity(), blockhash,
            )
            signed = self._signer.sign(message)
            signature = await self._chain.send_transaction(signed)
            await await_confirmation(
                self._chain,
                signature,
                timeout_secs=self._rpc_config.confirmation_timeout_secs,
                poll_secs=self._rpc_config.confirmation_poll_secs,
            )
        except TransientNetworkError as exc:
            self._record_failure(market_id, exc, transient=True)
            return False
        except Exception as exc:
            self._record_failure(market_id, exc, transient=False)
            return False
        finally:
            self._in_flight.discard(market_id)
            status = self._status[market_id]
            if status.state == CrankState.CRANKING:
                status.state = CrankState.IDLE

        self._record_success(market_id, signature)
        return True

    async def crank_market(self, market: Market) -> bool | None:
        """Run one crank attempt for *market*.

        Returns True on confirmed success, False on failure, and None when
        the attempt was skipped (in flight, backing off, or no price).
        """
        price = self._begin(market)
        if price is None:
            return None
        return await self._attempt(market, price)

    def _record_success(self, market_id: str, signature: str) -> None:
        status = self._status[market_id]
        status.state = CrankState.IDLE
        status.consecutive_failures = 0
        status.backoff_until = None
        status.success_count += 1
        status.last_crank_success_at = self._clock()
        status.last_signature = signature
        status.last_error = ""

        logger.info("crank_succeeded", market_id=market_id, signature=signature)
        if self._crank_monitor is not None:
            self._crank_monitor.record_success()
        if self._rpc_monitor is not None:
            self._rpc_monitor.record_success()

    def _record_failure(self, market_id: str, exc: Exception, transient: bool) -> None:
        status = self._status[market_id]
        status.consecutive_failures += 1
        status.failure_count += 1
        delay = self.backoff_secs(status.consecutive_failures)
        status.backoff_until = self._clock() + delay
        status.state = CrankState.BACKOFF
        status.last_error = f"{type(exc).__name__}: {exc}"

        logger.warning(
            "crank_failed",
            market_id=market_id,
            error=status.last_error,
            consecutive_failures=status.consecutive_failures,
            backoff_secs=delay,
            transient=transient,
        )
        reason = f"{market_id}: {status.last_error}"
        if self._crank_monitor is not None:
            self._crank_monitor.record_failure(reason)
        if transient and self._rpc_monitor is not None:
            self._rpc_monitor.record_failure(reason)

    # ── Scheduling ──────────────────────────────────────────────

    def tick(self) -> list[str]:
        """Start one attempt per eligible market. Returns the started market ids.

        Status entries for markets no longer in the registry are dropped
        once they have no attempt in flight.
        """
        markets = self._registry.current_markets()
        self._prune_status({m.market_id for m in markets})

        started: list[str] = []
        for market in markets:
            price = self._begin(market)
            if price is None:
                continue
            task = asyncio.create_task(self._attempt(market, price))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            started.append(market.market_id)
        self._tick_count += 1
        return started

    def _prune_status(self, tracked: set[str]) -> None:
        stale = [k for k in self._status if k not in tracked and k not in self._in_flight]
        for market_id in stale:
            del self._status[market_id]
        if stale:
            logger.info("crank_status_pruned", markets=stale)

    async def wait_idle(self, timeout: float | None = None) -> bool:
        """Wait for in-flight attempts. Returns True if none remain."""
        if self._tasks:
            await asyncio.wait(set(self._tasks), timeout=timeout)
        return not self._tasks

    async def start(self) -> None:
        """Start the shared crank timer."""
        if self._running:
            return
        self._running = True
        self._last_discovery_at = self._clock()
        self._task = asyncio.create_task(self._crank_loop())
        logger.info(
            "crank_started",
            interval=self._config.crank_interval_secs,
            markets=len(self._registry.current_markets()),
            signer=self._signer.public_identity(),
        )

    async def stop(self) -> None:
        """Cancel the timer. In-flight attempts run to completion."""
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
            logger.info(
                "crank_stopped",
                ticks=self._tick_count,
                in_flight=len(self._in_flight),
            )

    async def _crank_loop(self) -> None:
        while self._running:
            try:
                await self._maybe_rediscover()
                started = self.tick()
                if started:
                    logger.debug("crank_tick", started=len(started))
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("crank_cycle_error")

            try:
                await asyncio.sleep(self._config.crank_interval_secs)
            except asyncio.CancelledError:
                break

    async def _maybe_rediscover(self) -> None:
        interval = self._config.discovery_interval_secs
        if interval <= 0:
            return
        now = self._clock()
        if now - self._last_discovery_at < interval:
            return
        self._last_discovery_at = now
        await self._registry.discover()

    def get_status(self) -> dict[str, MarketCrankStatus]:
        """Snapshot copy of per-market crank state."""
        return {k: v.model_copy() for k, v in self._status.items()}
