from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


class AnalyticsError(Exception):
    """Base class for analytics engine failures."""


class ConfigurationError(AnalyticsError, ValueError):
    """Raised when thresholds or curve parameters cannot produce valid output."""


class UpstreamFetchError(AnalyticsError):
    """Raised when the time-series store cannot supply readings or treatments."""


@dataclass(frozen=True)
class InputIssue:
    """A single record that was skipped instead of aborting a calculation."""

    reason: str
    record_id: Optional[str] = None
    mills: Optional[int] = None

    def describe(self) -> str:
        ref = self.record_id or "<no id>"
        return f"{ref}: {self.reason}"


__all__ = ["AnalyticsError", "ConfigurationError", "UpstreamFetchError", "InputIssue"]
