"""LiquidationService: scans markets for under-collateralised accounts and liquidates them.

Each cycle walks the tracked markets, decodes every account slot against
a fresh price and submits one liquidation per eligible account. A failed
candidate never aborts the cycle. Submitted transactions are confirmed in
the background; until then the account is skipped by later cycles.

Accounts whose liquidation keeps failing are retried up to
``max_attempts`` times and then quarantined for ``quarantine_secs``.
"""

from __future__ import annotations

import asyncio
import time
from collections import deque
from collections.abc import Callable

import structlog

from src.chain.client import ChainClient, await_confirmation
from src.chain.codec import ProgramCodec
from src.chain.exceptions import TransientNetworkError
from src.core.config import LiquidationConfig, RpcConfig
from src.core.types import (
    LiquidationCandidate,
    LiquidationOutcome,
    LiquidationStatus,
    Market,
    PriceSample,
    ScanReport,
)
from src.keeper.exceptions import PartialCycleFailure
from src.keeper.oracle import OracleService
from src.keeper.registry import MarketsProvider
from src.keeper.signer import SealedSigner
from src.monitor.formatters import liquidation_fields
from src.monitor.service_monitor import ServiceMonitor
from src.monitor.transport import AlertTransport, NullAlertTransport

logger = structlog.stdlib.get_logger()

AccountKey = tuple[str, int]


class LiquidationService:
    """Periodic liquidation scanner."""

    def __init__(
        self,
        oracle: OracleService,
        chain: ChainClient,
        codec: ProgramCodec,
        signer: SealedSigner,
        config: LiquidationConfig | None = None,
        rpc_config: RpcConfig | None = None,
        scan_monitor: ServiceMonitor | None = None,
        rpc_monitor: ServiceMonitor | None = None,
        transport: AlertTransport | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._oracle = oracle
        self._chain = chain
        self._codec = codec
        self._signer = signer
        self._config = config or LiquidationConfig()
        self._rpc_config = rpc_config or RpcConfig()
        self._scan_monitor = scan_monitor
        self._rpc_monitor = rpc_monitor
        self._transport = transport or NullAlertTransport()
        self._clock = clock

        self._pending: dict[AccountKey, str] = {}
        self._attempts: dict[AccountKey, int] = {}
        self._quarantined: dict[AccountKey, float] = {}
        self._confirmations: set[asyncio.Task[None]] = set()
        self._recent: deque[LiquidationOutcome] = deque(maxlen=50)

        self._scanning = False
        self._running = False
        self._task: asyncio.Task[None] | None = None
        self._stop_event: asyncio.Event | None = None
        self._provider: MarketsProvider | None = None
        self._scan_count = 0
        self._liquidation_count = 0
        self._last_scan_at: float | None = None

    @property
    def is_running(self) -> bool:
        return self._running

    # ── Scan ────────────────────────────────────────────────────

    async def scan_once(self) -> ScanReport:
        """Run one scan cycle over the provider's markets.

        A call made while another cycle is still running returns an empty
        report without scanning.
        """
        report = ScanReport(started_at=self._clock())
        if self._scanning:
            logger.debug("liquidation_scan_overlap_skipped")
            report.finished_at = report.started_at
            return report
        if self._provider is None:
            report.finished_at = report.started_at
            return report

        self._scanning = True
        try:
            healthy = await self._scan_markets(self._provider.current_markets(), report)
        finally:
            self._scanning = False

        self._scan_count += 1
        self._last_scan_at = report.finished_at = self._clock()
        if healthy and self._scan_monitor is not None:
            self._scan_monitor.record_success()

        if report.candidates:
            logger.info(
                "liquidation_scan_complete",
                markets=report.markets_scanned,
                skipped=report.markets_skipped,
                candidates=report.candidates,
                submitted=report.submitted,
                failed=report.failed,
            )
        return report

    async def _scan_markets(self, markets: tuple[Market, ...], report: ScanReport) -> bool:
        seen: set[AccountKey] = set()
        healthy = True

        for market in markets:
            market_id = market.market_id
            if not self._oracle.is_fresh(market_id, self._config.max_price_age_secs):
                logger.debug("liquidation_stale_price_skipped", market_id=market_id)
                report.markets_skipped += 1
                continue
            price = self._oracle.current_price(market_id)
            if price is None:
                report.markets_skipped += 1
                continue

            try:
                data = await self._chain.get_account_data(market_id)
            except Exception as exc:
                logger.warning("market_fetch_failed", market_id=market_id, error=str(exc))
                self._report_failure(f"fetch {market_id}: {exc}", exc)
                report.markets_skipped += 1
                healthy = False
                continue
            if data is None:
                report.markets_skipped += 1
                continue

            report.markets_scanned += 1
            for candidate in self.find_candidates(market, data):
                if candidate.key in seen:
                    continue
                seen.add(candidate.key)
                report.candidates += 1

                outcome = await self._handle_candidate(market, candidate, price)
                report.outcomes.append(outcome)
                if outcome.status == LiquidationStatus.SUBMITTED:
                    report.submitted += 1
                elif outcome.status == LiquidationStatus.FAILED:
                    report.failed += 1
                    healthy = False

        return healthy

    def find_candidates(self, market: Market, data: bytes) -> list[LiquidationCandidate]:
        """Used accounts of *market* whose health ratio is below the threshold."""
        candidates: list[LiquidationCandidate] = []
        for index in range(market.config.max_accounts):
            try:
                account = self._codec.decode_account(data, index)
            except ValueError:
                continue
            if not account.is_used:
                continue
            if account.health_ratio < self._config.liquidation_threshold:
                candidates.append(LiquidationCandidate(
                    market_id=market.market_id,
                    account_index=index,
                    health_ratio=account.health_ratio,
                ))
        return candidates

    # ── Candidates ──────────────────────────────────────────────

    async def _handle_candidate(
        self,
        market: Market,
        candidate: LiquidationCandidate,
        price: PriceSample,
    ) -> LiquidationOutcome:
        key = candidate.key
        if key in self._pending:
            return LiquidationOutcome(
                candidate=candidate,
                status=LiquidationStatus.SKIPPED_PENDING,
                signature=self._pending[key],
            )
        if self._is_quarantined(key):
            return LiquidationOutcome(
                candidate=candidate, status=LiquidationStatus.SKIPPED_QUARANTINED,
            )

        try:
            signature = await self._submit(market, candidate, price)
        except PartialCycleFailure as exc:
            logger.warning(
                "liquidation_candidate_failed",
                market_id=exc.market_id,
                account_index=exc.account_index,
                reason=exc.reason,
            )
            cause = exc.__cause__ if isinstance(exc.__cause__, Exception) else exc
            self._report_failure(str(exc), cause)
            self._count_failed_attempt(candidate)
            return LiquidationOutcome(
                candidate=candidate, status=LiquidationStatus.FAILED, error=exc.reason,
            )

        if signature is None:
            return LiquidationOutcome(
                candidate=candidate, status=LiquidationStatus.SKIPPED_RECOVERED,
            )

        self._pending[key] = signature
        task = asyncio.create_task(self._confirm(candidate, signature))
        self._confirmations.add(task)
        task.add_done_callback(self._confirmations.discard)
        logger.info(
            "liquidation_submitted",
            market_id=candidate.market_id,
            account_index=candidate.account_index,
            health_ratio=candidate.health_ratio,
            signature=signature,
        )
        return LiquidationOutcome(
            candidate=candidate, status=LiquidationStatus.SUBMITTED, signature=signature,
        )

    async def _submit(
        self,
        market: Market,
        candidate: LiquidationCandidate,
        price: PriceSample,
    ) -> str | None:
        """Re-verify and submit. Returns the signature, or None if the account recovered."""
        try:
            if self._config.verify_before_submit and not await self._still_eligible(market, candidate):
                logger.info(
                    "liquidation_candidate_recovered",
                    market_id=candidate.market_id,
                    account_index=candidate.account_index,
                )
                return None

            blockhash = await self._chain.get_latest_blockhash()
            message = self._codec.build_liquidation(
                market,
                candidate.account_index,
                price,
                self._signer.public_identity(),
                blockhash,
            )
            signed = self._signer.sign(message)
            return await self._chain.send_transaction(signed)
        except Exception as exc:
            raise PartialCycleFailure(
                candidate.market_id,
                candidate.account_index,
                f"{type(exc).__name__}: {exc}",
            ) from exc

    async def _still_eligible(self, market: Market, candidate: LiquidationCandidate) -> bool:
        data = await self._chain.get_account_data(market.market_id)
        if data is None:
            return False
        try:
            account = self._codec.decode_account(data, candidate.account_index)
        except ValueError:
            return False
        return account.is_used and account.health_ratio < self._config.liquidation_threshold

    async def _confirm(self, candidate: LiquidationCandidate, signature: str) -> None:
        key = candidate.key
        try:
            await await_confirmation(
                self._chain,
                signature,
                timeout_secs=self._config.confirmation_timeout_secs,
                poll_secs=self._rpc_config.confirmation_poll_secs,
            )
        except Exception as exc:
            logger.warning(
                "liquidation_unconfirmed",
                market_id=candidate.market_id,
                account_index=candidate.account_index,
                signature=signature,
                error=str(exc),
            )
            self._report_failure(f"{candidate.market_id}#{candidate.account_index}: {exc}", exc)
            self._count_failed_attempt(candidate)
            self._recent.append(LiquidationOutcome(
                candidate=candidate,
                status=LiquidationStatus.FAILED,
                signature=signature,
                error=str(exc),
            ))
            return
        finally:
            self._pending.pop(key, None)

        self._attempts.pop(key, None)
        self._liquidation_count += 1
        self._recent.append(LiquidationOutcome(
            candidate=candidate, status=LiquidationStatus.CONFIRMED, signature=signature,
        ))
        logger.info(
            "account_liquidated",
            market_id=candidate.market_id,
            account_index=candidate.account_index,
            signature=signature,
        )
        self._transport.send_warning_alert(
            "liquidation",
            "Liquidation executed",
            liquidation_fields(candidate, signature),
        )

    # ── Retry bookkeeping ───────────────────────────────────────

    def _is_quarantined(self, key: AccountKey) -> bool:
        until = self._quarantined.get(key)
        if until is None:
            return False
        if self._clock() < until:
            return True
        del self._quarantined[key]
        self._attempts.pop(key, None)
        return False

    def _count_failed_attempt(self, candidate: LiquidationCandidate) -> None:
        key = candidate.key
        attempts = self._attempts.get(key, 0) + 1
        if attempts < self._config.max_attempts:
            self._attempts[key] = attempts
            return

        self._attempts.pop(key, None)
        self._quarantined[key] = self._clock() + self._config.quarantine_secs
        logger.warning(
            "liquidation_account_quarantined",
            market_id=candidate.market_id,
            account_index=candidate.account_index,
            attempts=attempts,
            quarantine_secs=self._config.quarantine_secs,
        )
        self._transport.send_warning_alert(
            "liquidation",
            f"Account {candidate.market_id}#{candidate.account_index} quarantined "
            f"after {attempts} failed liquidation attempts",
            {"market": candidate.market_id, "account_index": candidate.account_index},
        )

    def _report_failure(self, reason: str, exc: BaseException) -> None:
        if self._scan_monitor is not None:
            self._scan_monitor.record_failure(reason)
        if isinstance(exc, TransientNetworkError) and self._rpc_monitor is not None:
            self._rpc_monitor.record_failure(reason)

    # ── Lifecycle ───────────────────────────────────────────────

    async def start(self, markets_provider: MarketsProvider) -> None:
        """Start the recurring scan over *markets_provider*."""
        if self._running:
            return
        self._provider = markets_provider
        self._running = True
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._scan_loop(self._stop_event))
        logger.info("liquidation_started", interval=self._config.scan_interval_secs)

    async def stop(self) -> None:
        """Stop scheduling scans. Safe when not started or already stopped.

        A cycle that is already running is not interrupted: it finishes its
        submissions and their outcomes are still recorded. ``wait_idle()``
        waits for it together with the outstanding confirmations.
        """
        self._running = False
        if self._stop_event is None:
            return
        self._stop_event.set()
        self._stop_event = None
        logger.info(
            "liquidation_stopped",
            scans=self._scan_count,
            liquidations=self._liquidation_count,
            scan_in_progress=self._scanning,
        )

    def set_provider(self, markets_provider: MarketsProvider) -> None:
        self._provider = markets_provider

    async def _scan_loop(self, stop_event: asyncio.Event) -> None:
        while not stop_event.is_set():
            try:
                await self.scan_once()
            except Exception:
                logger.exception("liquidation_scan_error")

            # Only the wait between cycles is interruptible
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self._config.scan_interval_secs)
            except TimeoutError:
                pass

    async def wait_idle(self, timeout: float | None = None) -> bool:
        """Wait for a running cycle and outstanding confirmations.

        Returns True if nothing remains in flight.
        """
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while True:
            pending: set[asyncio.Task[None]] = set(self._confirmations)
            if self._task is not None:
                if self._task.done():
                    self._task = None
                elif not self._running:
                    pending.add(self._task)
            if not pending:
                return True
            remaining = None if deadline is None else deadline - loop.time()
            if remaining is not None and remaining <= 0:
                return False
            await asyncio.wait(pending, timeout=remaining)

    def recent_outcomes(self) -> list[LiquidationOutcome]:
        """Resolved (confirmed or failed) submissions, oldest first."""
        return list(self._recent)

    def get_status(self) -> dict[str, object]:
        now = self._clock()
        return {
            "running": self._running,
            "scan_count": self._scan_count,
            "liquidation_count": self._liquidation_count,
            "last_scan_at": self._last_scan_at,
            "pending": [f"{m}#{i}" for m, i in self._pending],
            "quarantined": [
                f"{m}#{i}" for (m, i), until in self._quarantined.items() if until > now
            ],
        }
