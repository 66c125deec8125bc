#!/usr/bin/env python3
"""Keeper entrypoint: wires all services and runs until signalled.

Usage::

    # Run with default config
    python scripts/run.py

    # Custom config file
    python scripts/run.py --config config/settings.yaml

    # Override log level
    python scripts/run.py --log-level DEBUG
"""

from __future__ import annotations

import argparse
import asyncio
import os
import signal
import sys

# Ensure project root is on sys.path so `src` is importable.
_PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if _PROJECT_ROOT not in sys.path:
    sys.path.insert(0, _PROJECT_ROOT)

import structlog

from src.chain.client import SolanaRpcClient
from src.chain.rate_limiter import RateLimiter
from src.core.config import ConfigError, Settings, load_settings
from src.core.logging import setup_logging
from src.keeper.crank import CrankService
from src.keeper.factory import build_price_sources, load_codec
from src.keeper.liquidation import LiquidationService
from src.keeper.oracle import OracleService
from src.keeper.registry import MarketRegistry
from src.keeper.signer import SealedSigner
from src.monitor.factory import create_alert_stack
from src.monitor.health_server import start_health_server

logger = structlog.get_logger(__name__)

# Upper bound on waiting for in-flight submissions at shutdown
_DRAIN_TIMEOUT_SECS = 30.0


async def run(settings: Settings, args: argparse.Namespace) -> int:
    """Start all services and run until interrupted."""
    # ── Fatal checks first ───────────────────────────────────────
    try:
        signer = SealedSigner.load(settings.signer, settings.database)
        codec = load_codec(settings.keeper.codec)
    except ConfigError as exc:
        logger.error("keeper_config_invalid", error=str(exc))
        print(f"Configuration error: {exc}", file=sys.stderr)
        return 1

    logger.info(
        "keeper_starting",
        rpc=settings.rpc.url,
        programs=settings.keeper.program_ids,
        signer=signer.public_identity(),
    )

    # ── Alerting ─────────────────────────────────────────────────
    dispatcher, transport, monitors = create_alert_stack(settings.alerts)

    # ── Chain + price sources ────────────────────────────────────
    chain = SolanaRpcClient(
        settings.rpc, rate_limiter=RateLimiter.from_config(settings.rate_limit),
    )
    http, sources = build_price_sources(settings.oracle)

    # ── Services ─────────────────────────────────────────────────
    registry = MarketRegistry(
        chain, codec, settings.keeper.program_ids, monitor=monitors.rpc,
    )
    oracle = OracleService(
        settings.oracle,
        sources=sources,
        chain=chain,
        codec=codec,
        monitor=monitors.oracle,
    )
    crank = CrankService(
        registry,
        oracle,
        chain,
        codec,
        signer,
        config=settings.keeper,
        rpc_config=settings.rpc,
        crank_monitor=monitors.crank,
        rpc_monitor=monitors.rpc,
    )
    liquidation = LiquidationService(
        oracle,
        chain,
        codec,
        signer,
        config=settings.liquidation,
        rpc_config=settings.rpc,
        scan_monitor=monitors.scan,
        rpc_monitor=monitors.rpc,
        transport=transport,
    )

    def snapshot() -> dict[str, object]:
        return {
            "signer": signer.public_identity(),
            "markets": len(registry),
            "crank": crank.get_status(),
            "liquidation": liquidation.get_status(),
            "oracle": oracle.get_status(),
        }

    # ── Start everything ─────────────────────────────────────────
    markets = await registry.discover()
    for market in markets:
        await oracle.refresh(market)

    await oracle.start(registry)
    await crank.start()
    await liquidation.start(registry)

    health_runner = None
    if settings.health.enabled:
        health_runner = await start_health_server(
            monitors, snapshot, host=settings.health.host, port=settings.health.port,
        )

    logger.info(
        "keeper_running",
        markets=len(markets),
        crank_interval=settings.keeper.crank_interval_secs,
        scan_interval=settings.liquidation.scan_interval_secs,
        health_port=settings.health.port if health_runner else None,
    )

    # ── Wait for shutdown signal ─────────────────────────────────
    stop_event = asyncio.Event()

    def _signal_handler() -> None:
        logger.info("shutdown_signal_received")
        stop_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _signal_handler)
        except NotImplementedError:
            pass

    try:
        await stop_event.wait()
    except KeyboardInterrupt:
        logger.info("keyboard_interrupt")

    # ── Graceful shutdown ────────────────────────────────────────
    logger.info("keeper_shutting_down")

    await crank.stop()
    await liquidation.stop()
    await oracle.stop()

    crank_idle = await crank.wait_idle(_DRAIN_TIMEOUT_SECS)
    liquidation_idle = await liquidation.wait_idle(_DRAIN_TIMEOUT_SECS)
    if not (crank_idle and liquidation_idle):
        logger.warning("shutdown_with_inflight_work")

    if health_runner is not None:
        await health_runner.cleanup()
    await transport.drain()
    await dispatcher.close()
    await http.aclose()
    await chain.close()

    logger.info("keeper_stopped", liquidations=liquidation.get_status()["liquidation_count"])
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Run the perps keeper: market discovery, crank, liquidation.",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Path to settings YAML (default: config/settings.yaml)",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        help="Log level override: DEBUG, INFO, WARNING, ERROR",
    )
    args = parser.parse_args()

    try:
        settings = load_settings(args.config)
    except ConfigError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        sys.exit(1)
    setup_logging(level=args.log_level)

    code = asyncio.run(run(settings, args))
    sys.exit(code)


if __name__ == "__main__":
    main()
