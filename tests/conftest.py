"""Shared in-memory fakes for keeper tests: chain, codec, alert transport, clock."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

import pytest
from solders.keypair import Keypair

from src.chain.client import ChainClient, SignatureStatus
from src.chain.codec import ProgramCodec
from src.core.config import reset_settings
from src.core.types import (
    DecodedAccount,
    Market,
    MarketConfig,
    OracleMode,
    PriceSample,
    RawAccount,
)
from src.keeper.signer import SealedSigner
from src.monitor.transport import AlertTransport

PROGRAM_ID = "Prog1111111111111111111111111111111111111111"


class FakeClock:
    """Manually advanced wall clock (seconds)."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, secs: float) -> None:
        self.now += secs


class FakeChain(ChainClient):
    """In-memory chain.

    ``errors[method]`` lists per-call outcomes: an exception is raised, None
    lets that call succeed. Once the list is empty every call succeeds.
    """

    def __init__(self) -> None:
        self.program_accounts: dict[str, list[RawAccount]] = {}
        self.accounts: dict[str, bytes] = {}
        self.statuses: dict[str, SignatureStatus] = {}
        self.default_status = SignatureStatus.CONFIRMED
        self.errors: dict[str, list[Exception | None]] = {}
        self.sent: list[bytes] = []
        self.calls: list[str] = []
        self.send_gate: Any = None

    def _maybe_fail(self, method: str) -> None:
        self.calls.append(method)
        queued = self.errors.get(method)
        if queued:
            exc = queued.pop(0)
            if exc is not None:
                raise exc

    async def get_slot(self) -> int:
        self._maybe_fail("get_slot")
        return 1

    async def get_accounts_matching(
        self, program_id: str, filters: list[dict[str, Any]],
    ) -> list[RawAccount]:
        self._maybe_fail("get_accounts_matching")
        return list(self.program_accounts.get(program_id, []))

    async def get_account_data(self, address: str) -> bytes | None:
        self._maybe_fail("get_account_data")
        return self.accounts.get(address)

    async def get_latest_blockhash(self) -> str:
        self._maybe_fail("get_latest_blockhash")
        return "blockhash111"

    async def send_transaction(self, signed: bytes) -> str:
        self._maybe_fail("send_transaction")
        if self.send_gate is not None:
            await self.send_gate.wait()
        self.sent.append(signed)
        return f"sig{len(self.sent)}"

    async def get_signature_status(self, signature: str) -> SignatureStatus:
        self._maybe_fail("get_signature_status")
        return self.statuses.get(signature, self.default_status)


class FakeCodec(ProgramCodec):
    """Codec over a lookup table keyed by account data.

    Market data is the market id encoded as bytes; its decoded config and
    account slots live in ``configs`` / ``slots``.
    """

    def __init__(self) -> None:
        self.configs: dict[bytes, MarketConfig] = {}
        self.slots: dict[bytes, dict[int, DecodedAccount]] = {}
        self.fail_build = False

    def market_filters(self) -> list[dict[str, Any]]:
        return [{"dataSize": 1024}]

    def decode_market_config(self, data: bytes) -> MarketConfig:
        try:
            return self.configs[data]
        except KeyError:
            raise ValueError("unknown market layout") from None

    def decode_account(self, data: bytes, index: int) -> DecodedAccount:
        if data not in self.slots:
            raise ValueError("unknown market layout")
        return self.slots[data].get(index, DecodedAccount(index=index))

    def build_crank(
        self, market: Market, price: PriceSample, payer: str, blockhash: str,
    ) -> bytes:
        if self.fail_build:
            raise ValueError("cannot encode crank")
        return f"crank:{market.market_id}:{price.price_e6}".encode()

    def build_liquidation(
        self,
        market: Market,
        account_index: int,
        price: PriceSample,
        payer: str,
        blockhash: str,
    ) -> bytes:
        if self.fail_build:
            raise ValueError("cannot encode liquidation")
        return f"liq:{market.market_id}:{account_index}".encode()


class FakeTransport(AlertTransport):
    def __init__(self) -> None:
        self.critical: list[tuple[str, str]] = []
        self.warnings: list[tuple[str, str]] = []
        self.warning_fields: list[dict[str, object]] = []

    def send_critical_alert(
        self, concern: str, reason: str, fields: Mapping[str, object] | None = None,
    ) -> None:
        self.critical.append((concern, reason))

    def send_warning_alert(
        self, concern: str, reason: str, fields: Mapping[str, object] | None = None,
    ) -> None:
        self.warnings.append((concern, reason))
        self.warning_fields.append(dict(fields or {}))


class MarketFactory:
    """Registers markets with a FakeChain/FakeCodec pair."""

    def __init__(self, chain: FakeChain, codec: FakeCodec) -> None:
        self._chain = chain
        self._codec = codec

    def add(
        self,
        market_id: str,
        *,
        program_id: str = PROGRAM_ID,
        oracle_mode: OracleMode = OracleMode.ADMIN,
        max_accounts: int = 8,
        last_price_e6: int = 0,
        price_timestamp: int = 0,
        accounts: Mapping[int, float] | None = None,
    ) -> Market:
        """Add a market; *accounts* maps used slot index to health ratio."""
        data = market_id.encode()
        config = MarketConfig(
            collateral_mint=f"mint-{market_id}",
            oracle_mode=oracle_mode,
            max_accounts=max_accounts,
            last_price_e6=last_price_e6,
            price_timestamp=price_timestamp,
        )
        self._codec.configs[data] = config
        self._codec.slots[data] = {
            idx: DecodedAccount(index=idx, capital=1_000_000, health_ratio=ratio, is_used=True)
            for idx, ratio in (accounts or {}).items()
        }
        self._chain.accounts[market_id] = data
        self._chain.program_accounts.setdefault(program_id, []).append(
            RawAccount(address=market_id, data=data),
        )
        return Market(market_id=market_id, program_id=program_id, config=config)

    def set_health(self, market_id: str, index: int, ratio: float) -> None:
        data = market_id.encode()
        self._codec.slots[data][index] = DecodedAccount(
            index=index, capital=1_000_000, health_ratio=ratio, is_used=True,
        )


@pytest.fixture(autouse=True)
def _reset_settings() -> None:
    reset_settings()


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def chain() -> FakeChain:
    return FakeChain()


@pytest.fixture()
def codec() -> FakeCodec:
    return FakeCodec()


@pytest.fixture()
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture()
def markets(chain: FakeChain, codec: FakeCodec) -> MarketFactory:
    return MarketFactory(chain, codec)


@pytest.fixture()
def signer() -> SealedSigner:
    return SealedSigner(Keypair())


@pytest.fixture()
def program_id() -> str:
    return PROGRAM_ID
