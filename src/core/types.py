"""Domain types for the keeper: markets, prices, crank and liquidation state."""

from __future__ import annotations

from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field


class OracleMode(StrEnum):
    """How a market receives its index price."""

    ADMIN = "ADMIN"  # keeper-pushed authority price
    EXTERNAL = "EXTERNAL"  # external oracle account read on-chain


class RawAccount(BaseModel):
    """An on-chain account as returned by the chain reader."""

    model_config = ConfigDict(frozen=True)

    address: str
    data: bytes


class MarketConfig(BaseModel):
    """Immutable market configuration decoded from the market account."""

    model_config = ConfigDict(frozen=True)

    collateral_mint: str
    oracle_mode: OracleMode = OracleMode.ADMIN
    oracle_authority: str = ""
    index_feed_id: str = ""
    max_accounts: int = 0
    last_price_e6: int = 0
    price_timestamp: int = 0  # unix seconds of the on-chain price


class Market(BaseModel):
    """A tracked market: on-chain identity plus its decoded configuration."""

    model_config = ConfigDict(frozen=True)

    market_id: str
    program_id: str
    config: MarketConfig


class PriceSample(BaseModel):
    """A single price observation, scaled by 1e6."""

    model_config = ConfigDict(frozen=True)

    price_e6: int
    source: str
    timestamp_ms: int


class DecodedAccount(BaseModel):
    """The codec's view of a single trader account slot."""

    model_config = ConfigDict(frozen=True)

    index: int
    capital: int = 0
    health_ratio: float = 0.0
    is_used: bool = False


# ── Crank Types ──────────────────────────────────────────────────


class CrankState(StrEnum):
    """Per-market crank scheduling state."""

    IDLE = "IDLE"
    CRANKING = "CRANKING"
    BACKOFF = "BACKOFF"


class MarketCrankStatus(BaseModel):
    """Mutable crank bookkeeping for one market (owned by CrankService)."""

    state: CrankState = CrankState.IDLE
    last_crank_at: float | None = None
    last_crank_success_at: float | None = None
    consecutive_failures: int = 0
    backoff_until: float | None = None
    success_count: int = 0
    failure_count: int = 0
    last_signature: str = ""
    last_error: str = ""


# ── Liquidation Types ────────────────────────────────────────────


class LiquidationCandidate(BaseModel):
    """An account found below the liquidation threshold in one scan cycle."""

    model_config = ConfigDict(frozen=True)

    market_id: str
    account_index: int
    health_ratio: float

    @property
    def key(self) -> tuple[str, int]:
        return (self.market_id, self.account_index)


class LiquidationStatus(StrEnum):
    """Outcome of handling one candidate within a cycle."""

    SUBMITTED = "SUBMITTED"
    CONFIRMED = "CONFIRMED"
    FAILED = "FAILED"
    SKIPPED_PENDING = "SKIPPED_PENDING"
    SKIPPED_RECOVERED = "SKIPPED_RECOVERED"
    SKIPPED_QUARANTINED = "SKIPPED_QUARANTINED"


class LiquidationOutcome(BaseModel):
    """Per-candidate result recorded during a scan cycle."""

    candidate: LiquidationCandidate
    status: LiquidationStatus
    signature: str = ""
    error: str = ""


class ScanReport(BaseModel):
    """Summary of one liquidation scan cycle."""

    markets_scanned: int = 0
    markets_skipped: int = 0
    candidates: int = 0
    submitted: int = 0
    failed: int = 0
    outcomes: list[LiquidationOutcome] = Field(default_factory=list)
    started_at: float = 0.0
    finished_at: float = 0.0


# ── Monitor Types ────────────────────────────────────────────────


class MonitorStatus(BaseModel):
    """Point-in-time view of a ServiceMonitor."""

    concern: str
    healthy: bool
    consecutive_failures: int
    alert_active: bool
    error_rate: float = 0.0
    error_rate_exceeded: bool = False
    stale: bool = False
    last_alert_at: float | None = None
    last_success_at: float | None = None
