"""Pure functions that turn keeper conditions into AlertMessage objects."""

from __future__ import annotations

from collections.abc import Mapping

from src.core.types import LiquidationCandidate
from src.monitor.types import AlertMessage, Severity

_TITLES: dict[Severity, str] = {
    Severity.CRITICAL: "{concern} failing",
    Severity.WARNING: "{concern} warning",
    Severity.INFO: "{concern}",
    Severity.DEBUG: "{concern}",
}


def format_service_alert(
    service: str,
    concern: str,
    severity: Severity,
    reason: str,
    fields: Mapping[str, object] | None = None,
) -> AlertMessage:
    """Build the alert for a monitored concern."""
    all_fields = {"service": service, "concern": concern}
    for key, value in (fields or {}).items():
        all_fields[key] = str(value)

    return AlertMessage(
        severity=severity,
        title=f"[{service}] " + _TITLES[severity].format(concern=concern),
        body=reason,
        service=service,
        concern=concern,
        fields=all_fields,
    )


def liquidation_fields(
    candidate: LiquidationCandidate, signature: str,
) -> dict[str, str]:
    """Structured fields attached to the "liquidation executed" alert."""
    return {
        "market": candidate.market_id,
        "account_index": str(candidate.account_index),
        "health_ratio": f"{candidate.health_ratio:.4f}",
        "signature": signature,
    }
