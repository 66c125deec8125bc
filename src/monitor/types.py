"""Domain types for the alerting subsystem."""

from __future__ import annotations

import time
from enum import IntEnum

from pydantic import BaseModel, Field


class Severity(IntEnum):
    """Alert severity, ordered so comparisons work naturally."""

    DEBUG = 0
    INFO = 1
    WARNING = 2
    CRITICAL = 3


class AlertMessage(BaseModel):
    """Normalised alert ready for dispatch to channels."""

    severity: Severity
    title: str
    body: str = ""
    service: str = ""
    concern: str = ""
    fields: dict[str, str] = Field(default_factory=dict)
    timestamp: float = Field(default_factory=time.time)

    @property
    def throttle_key(self) -> str:
        return f"{self.concern}:{self.severity.name}"
