"""Tests for LiquidationService: candidate discovery, isolation, confirmation, quarantine."""

from __future__ import annotations

import asyncio

import pytest

from src.chain.client import SignatureStatus
from src.chain.exceptions import TransientNetworkError
from src.core.config import LiquidationConfig, RpcConfig
from src.core.types import LiquidationStatus, Market, PriceSample
from src.keeper.liquidation import LiquidationService
from src.keeper.oracle import OracleService
from src.monitor.service_monitor import ServiceMonitor


# ── Helpers ─────────────────────────────────────────────────────


class _Provider:
    def __init__(self, *markets: Market) -> None:
        self.markets = markets

    def current_markets(self) -> tuple[Market, ...]:
        return self.markets


def _service(chain, codec, signer, clock, transport, **config: object):  # type: ignore[no-untyped-def]
    oracle = OracleService(clock=clock)
    service = LiquidationService(
        oracle,
        chain,
        codec,
        signer,
        config=LiquidationConfig(confirmation_timeout_secs=5.0, **config),  # type: ignore[arg-type]
        rpc_config=RpcConfig(confirmation_poll_secs=0.01),
        scan_monitor=ServiceMonitor("scan", clock=clock),
        rpc_monitor=ServiceMonitor("rpc", clock=clock),
        transport=transport,
        clock=clock,
    )
    return service, oracle


def _fresh(oracle: OracleService, clock, *market_ids: str) -> None:  # type: ignore[no-untyped-def]
    for market_id in market_ids:
        oracle.ingest(market_id, PriceSample(
            price_e6=1_000_000, source="test", timestamp_ms=int(clock.now * 1000),
        ))


@pytest.fixture()
def liq(chain, codec, signer, clock, transport):  # type: ignore[no-untyped-def]
    return _service(chain, codec, signer, clock, transport)


# ── Candidate discovery ─────────────────────────────────────────


class TestFindCandidates:
    def test_only_used_accounts_below_threshold(self, liq, markets) -> None:
        service, _ = liq
        market = markets.add("m1", max_accounts=6, accounts={1: 0.5, 2: 1.0, 3: 1.8, 5: 0.99})
        found = service.find_candidates(market, b"m1")
        assert [(c.account_index, c.health_ratio) for c in found] == [(1, 0.5), (5, 0.99)]

    def test_slots_beyond_max_accounts_ignored(self, liq, markets) -> None:
        service, _ = liq
        market = markets.add("m1", max_accounts=2, accounts={0: 0.5, 4: 0.5})
        assert [c.account_index for c in service.find_candidates(market, b"m1")] == [0]

    def test_undecodable_data_yields_nothing(self, liq, markets) -> None:
        service, _ = liq
        market = markets.add("m1", accounts={0: 0.5})
        assert service.find_candidates(market, b"garbage") == []

    def test_custom_threshold(self, chain, codec, signer, clock, transport, markets) -> None:
        service, _ = _service(chain, codec, signer, clock, transport, liquidation_threshold=1.2)
        market = markets.add("m1", accounts={0: 1.1, 1: 1.3})
        assert [c.account_index for c in service.find_candidates(market, b"m1")] == [0]


# ── Scan cycle ──────────────────────────────────────────────────


class TestScanOnce:
    async def test_no_provider_is_empty(self, liq) -> None:
        service, _ = liq
        report = await service.scan_once()
        assert report.markets_scanned == 0
        assert report.outcomes == []

    async def test_submits_and_confirms(self, liq, markets, chain, clock, transport) -> None:
        service, oracle = liq
        market = markets.add("m1", accounts={3: 0.42})
        _fresh(oracle, clock, "m1")
        service.set_provider(_Provider(market))

        report = await service.scan_once()
        assert report.markets_scanned == 1
        assert report.candidates == 1
        assert report.submitted == 1
        assert report.outcomes[0].status == LiquidationStatus.SUBMITTED
        assert chain.sent[0][65:] == b"liq:m1:3"

        assert await service.wait_idle(1.0) is True
        status = service.get_status()
        assert status["liquidation_count"] == 1
        assert status["pending"] == []
        assert [o.status for o in service.recent_outcomes()] == [LiquidationStatus.CONFIRMED]

        assert transport.warnings == [("liquidation", "Liquidation executed")]
        assert transport.warning_fields[0] == {
            "market": "m1",
            "account_index": "3",
            "health_ratio": "0.4200",
            "signature": "sig1",
        }

    async def test_one_failure_does_not_abort_cycle(self, liq, markets, chain, clock) -> None:
        service, oracle = liq
        market = markets.add("m1", accounts={i: 0.5 for i in range(5)})
        _fresh(oracle, clock, "m1")
        service.set_provider(_Provider(market))
        chain.errors["send_transaction"] = [None, None, RuntimeError("node rejected"), None, None]

        report = await service.scan_once()
        assert report.candidates == 5
        assert report.submitted == 4
        assert report.failed == 1
        failed = [o for o in report.outcomes if o.status == LiquidationStatus.FAILED]
        assert failed[0].candidate.account_index == 2
        assert "node rejected" in failed[0].error

        await service.wait_idle(1.0)
        assert service.get_status()["liquidation_count"] == 4

    async def test_stale_price_skips_market(self, liq, markets, chain, clock) -> None:
        service, oracle = liq
        stale = markets.add("stale", accounts={0: 0.1})
        fresh = markets.add("fresh", accounts={0: 0.1})
        _fresh(oracle, clock, "stale")
        clock.advance(61)
        _fresh(oracle, clock, "fresh")
        service.set_provider(_Provider(stale, fresh))

        report = await service.scan_once()
        assert report.markets_skipped == 1
        assert report.markets_scanned == 1
        assert [o.candidate.market_id for o in report.outcomes] == ["fresh"]
        await service.wait_idle(1.0)

    async def test_missing_price_skips_market(self, liq, markets, chain) -> None:
        service, _ = liq
        service.set_provider(_Provider(markets.add("m1", accounts={0: 0.1})))
        report = await service.scan_once()
        assert report.markets_skipped == 1
        assert chain.sent == []

    async def test_fetch_error_skips_market(self, liq, markets, chain, clock) -> None:
        service, oracle = liq
        a = markets.add("a", accounts={0: 0.1})
        b = markets.add("b", accounts={0: 0.1})
        _fresh(oracle, clock, "a", "b")
        service.set_provider(_Provider(a, b))
        chain.errors["get_account_data"] = [TransientNetworkError("timeout")]

        report = await service.scan_once()
        assert report.markets_skipped == 1
        assert report.submitted == 1
        assert service._scan_monitor.consecutive_failures == 1
        assert service._rpc_monitor.consecutive_failures == 1
        await service.wait_idle(1.0)

    async def test_healthy_cycle_records_success(self, liq, markets, clock) -> None:
        service, oracle = liq
        _fresh(oracle, clock, "m1")
        service.set_provider(_Provider(markets.add("m1", accounts={0: 2.0})))
        await service.scan_once()
        assert service._scan_monitor.get_status().last_success_at == clock.now

    async def test_duplicate_market_deduplicated(self, liq, markets, clock, chain) -> None:
        service, oracle = liq
        market = markets.add("m1", accounts={0: 0.1})
        _fresh(oracle, clock, "m1")
        service.set_provider(_Provider(market, market))

        report = await service.scan_once()
        assert report.candidates == 1
        assert len(chain.sent) == 1
        await service.wait_idle(1.0)

    async def test_recovered_before_submit(self, liq, markets, chain, clock) -> None:
        service, oracle = liq
        market = markets.add("m1", accounts={0: 0.5})
        _fresh(oracle, clock, "m1")
        service.set_provider(_Provider(market))

        original = chain.get_account_data
        calls = 0

        async def _fetch(address: str) -> bytes | None:
            nonlocal calls
            calls += 1
            if calls == 2:
                markets.set_health("m1", 0, 1.5)
            return await original(address)

        chain.get_account_data = _fetch  # type: ignore[method-assign]

        report = await service.scan_once()
        assert report.outcomes[0].status == LiquidationStatus.SKIPPED_RECOVERED
        assert report.submitted == 0
        assert chain.sent == []

    async def test_verification_disabled(self, chain, codec, signer, clock, transport, markets) -> None:
        service, oracle = _service(
            chain, codec, signer, clock, transport, verify_before_submit=False,
        )
        _fresh(oracle, clock, "m1")
        service.set_provider(_Provider(markets.add("m1", accounts={0: 0.5})))
        await service.scan_once()
        assert chain.calls.count("get_account_data") == 1
        await service.wait_idle(1.0)

    async def test_overlapping_scan_skipped(self, liq, markets, chain, clock) -> None:
        service, oracle = liq
        _fresh(oracle, clock, "m1")
        service.set_provider(_Provider(markets.add("m1", accounts={0: 0.5})))
        chain.send_gate = asyncio.Event()

        first = asyncio.create_task(service.scan_once())
        await asyncio.sleep(0.01)
        overlapped = await service.scan_once()
        assert overlapped.markets_scanned == 0
        assert overlapped.outcomes == []

        chain.send_gate.set()
        report = await first
        assert report.submitted == 1
        assert service.get_status()["scan_count"] == 1
        await service.wait_idle(1.0)


# ── Pending & confirmation ──────────────────────────────────────


class TestConfirmation:
    async def test_pending_account_skipped_next_cycle(self, liq, markets, chain, clock) -> None:
        service, oracle = liq
        _fresh(oracle, clock, "m1")
        service.set_provider(_Provider(markets.add("m1", accounts={0: 0.5})))
        chain.default_status = SignatureStatus.PENDING

        await service.scan_once()
        assert service.get_status()["pending"] == ["m1#0"]

        second = await service.scan_once()
        assert second.outcomes[0].status == LiquidationStatus.SKIPPED_PENDING
        assert second.outcomes[0].signature == "sig1"
        assert len(chain.sent) == 1

        chain.statuses["sig1"] = SignatureStatus.CONFIRMED
        assert await service.wait_idle(1.0) is True
        assert service.get_status()["pending"] == []
        assert service.get_status()["liquidation_count"] == 1

    async def test_failed_confirmation(self, liq, markets, chain, clock, transport) -> None:
        service, oracle = liq
        _fresh(oracle, clock, "m1")
        service.set_provider(_Provider(markets.add("m1", accounts={0: 0.5})))
        chain.default_status = SignatureStatus.FAILED

        report = await service.scan_once()
        assert report.submitted == 1
        await service.wait_idle(1.0)

        outcomes = service.recent_outcomes()
        assert [o.status for o in outcomes] == [LiquidationStatus.FAILED]
        assert "failed on-chain" in outcomes[0].error
        assert service.get_status()["liquidation_count"] == 0
        assert service.get_status()["pending"] == []
        assert transport.warnings == []
        assert service._scan_monitor.consecutive_failures == 1

    async def test_poll_blip_keeps_account_pending(self, liq, markets, chain, clock) -> None:
        service, oracle = liq
        _fresh(oracle, clock, "m1")
        service.set_provider(_Provider(markets.add("m1", accounts={0: 0.5})))
        chain.default_status = SignatureStatus.PENDING
        chain.errors["get_signature_status"] = [TransientNetworkError("blip")]

        await service.scan_once()
        await asyncio.sleep(0.05)
        assert chain.calls.count("get_signature_status") >= 2

        second = await service.scan_once()
        assert second.outcomes[0].status == LiquidationStatus.SKIPPED_PENDING
        assert len(chain.sent) == 1
        assert service.recent_outcomes() == []

        chain.statuses["sig1"] = SignatureStatus.CONFIRMED
        assert await service.wait_idle(1.0) is True
        assert service.get_status()["liquidation_count"] == 1
        assert service._scan_monitor.consecutive_failures == 0


# ── Quarantine ──────────────────────────────────────────────────


class TestQuarantine:
    async def test_quarantined_after_max_attempts(self, liq, markets, codec, clock, transport) -> None:
        service, oracle = liq
        _fresh(oracle, clock, "m1")
        service.set_provider(_Provider(markets.add("m1", accounts={0: 0.5})))
        codec.fail_build = True

        for _ in range(3):
            report = await service.scan_once()
            assert report.outcomes[0].status == LiquidationStatus.FAILED
        assert len(transport.warnings) == 1
        assert "quarantined" in transport.warnings[0][1]
        assert service.get_status()["quarantined"] == ["m1#0"]

        report = await service.scan_once()
        assert report.outcomes[0].status == LiquidationStatus.SKIPPED_QUARANTINED
        assert report.failed == 0

    async def test_quarantine_expires(self, liq, markets, codec, clock, transport) -> None:
        service, oracle = liq
        market = markets.add("m1", accounts={0: 0.5})
        service.set_provider(_Provider(market))
        codec.fail_build = True
        for _ in range(3):
            _fresh(oracle, clock, "m1")
            await service.scan_once()

        clock.advance(300)
        _fresh(oracle, clock, "m1")
        codec.fail_build = False
        report = await service.scan_once()
        assert report.outcomes[0].status == LiquidationStatus.SUBMITTED
        assert service.get_status()["quarantined"] == []
        await service.wait_idle(1.0)

    async def test_success_resets_attempts(self, liq, markets, chain, clock, transport) -> None:
        service, oracle = liq
        _fresh(oracle, clock, "m1")
        service.set_provider(_Provider(markets.add("m1", accounts={0: 0.5})))

        chain.errors["send_transaction"] = [RuntimeError("x"), RuntimeError("y")]
        await service.scan_once()
        await service.scan_once()
        await service.scan_once()
        await service.wait_idle(1.0)

        chain.errors["send_transaction"] = [RuntimeError("z")]
        report = await service.scan_once()
        assert report.failed == 1
        assert service.get_status()["quarantined"] == []
        assert [w[1] for w in transport.warnings] == ["Liquidation executed"]


# ── Lifecycle ───────────────────────────────────────────────────


class TestLifecycle:
    async def test_start_and_stop(self, chain, codec, signer, clock, transport, markets) -> None:
        service, oracle = _service(chain, codec, signer, clock, transport, scan_interval_secs=0.01)
        _fresh(oracle, clock, "m1")
        provider = _Provider(markets.add("m1", accounts={0: 2.0}))

        await service.start(provider)
        await service.start(provider)
        assert service.is_running
        await asyncio.sleep(0.05)
        await service.stop()
        await service.stop()
        assert await service.wait_idle(1.0) is True

        status = service.get_status()
        assert status["running"] is False
        assert status["scan_count"] >= 2
        assert status["last_scan_at"] == clock.now

    async def test_stop_when_never_started(self, liq) -> None:
        service, _ = liq
        await service.stop()

    async def test_stop_does_not_interrupt_submission(
        self, chain, codec, signer, clock, transport, markets,
    ) -> None:
        service, oracle = _service(chain, codec, signer, clock, transport, scan_interval_secs=0.01)
        _fresh(oracle, clock, "m1")
        chain.send_gate = asyncio.Event()

        await service.start(_Provider(markets.add("m1", accounts={0: 0.5})))
        for _ in range(100):
            if "send_transaction" in chain.calls:
                break
            await asyncio.sleep(0.005)
        assert "send_transaction" in chain.calls

        await service.stop()
        assert await service.wait_idle(0.05) is False

        chain.send_gate.set()
        assert await service.wait_idle(1.0) is True

        status = service.get_status()
        assert len(chain.sent) == 1
        assert status["scan_count"] == 1
        assert status["liquidation_count"] == 1
        assert [o.status for o in service.recent_outcomes()] == [LiquidationStatus.CONFIRMED]
