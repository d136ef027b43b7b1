from __future__ import annotations

import hashlib
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Optional, Protocol, Sequence

import httpx
from pydantic import ValidationError

from glucoscope.core.errors import UpstreamFetchError
from glucoscope.models.entries import ActiveProfile, GlucoseReading, Treatment

logger = logging.getLogger(__name__)

DEFAULT_COUNT = 100_000


class StoreError(UpstreamFetchError):
    """Raised when the time-series store fails to answer."""


class TimeSeriesStore(Protocol):
    async def fetch_readings(self, account: str, start: int, end: int) -> list[GlucoseReading]: ...

    async def fetch_treatments(self, account: str, start: int, end: int) -> list[Treatment]: ...


def _iso(mills: int) -> str:
    return datetime.fromtimestamp(mills / 1000, tz=timezone.utc).isoformat().replace("+00:00", "Z")


class NightscoutStore:
    """Reads entries, treatments and profiles over the legacy Nightscout REST API."""

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        api_secret: Optional[str] = None,
        timeout_seconds: int = 10,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.api_secret = api_secret
        self.timeout_seconds = timeout_seconds

        headers = self._auth_headers()
        headers["Accept"] = "application/json"
        self.client = client or httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout_seconds,
            headers=headers,
        )

    def _auth_headers(self) -> dict[str, str]:
        headers: dict[str, str] = {}
        if self.token:
            is_jwt = len(self.token) > 20 and self.token.count(".") >= 2
            if is_jwt:
                headers["Authorization"] = f"Bearer {self.token}"
            else:
                headers["API-SECRET"] = hashlib.sha1(self.token.encode("utf-8")).hexdigest()
        if self.api_secret:
            headers["API-SECRET"] = hashlib.sha1(self.api_secret.encode("utf-8")).hexdigest()
        return headers

    async def aclose(self) -> None:
        await self.client.aclose()

    async def _get(self, path: str, params: dict[str, Any]) -> Any:
        try:
            response = await self.client.get(path, params=params)
        except httpx.HTTPError as exc:
            logger.error("Store request failed", extra={"path": path, "error": str(exc)})
            raise StoreError(f"Store request to {path} failed: {exc}") from exc
        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            logger.error("Store API error", extra={"status_code": exc.response.status_code, "path": path})
            raise StoreError(f"Store returned status {exc.response.status_code}") from exc
        if not response.content.strip():
            return []
        try:
            return response.json()
        except ValueError as exc:
            preview = response.text[:200]
            logger.error("Invalid JSON from store", extra={"path": path, "body": preview})
            raise StoreError(f"Store returned invalid JSON (Body: {preview!r})") from exc

    @staticmethod
    def _parse_many(model, rows: Any, what: str) -> list:
        if not isinstance(rows, list):
            raise StoreError(f"Expected a list of {what}, got {type(rows).__name__}")
        parsed = []
        for row in rows:
            try:
                parsed.append(model.model_validate(row))
            except ValidationError as exc:
                logger.warning("Skipping malformed record", extra={"kind": what, "error": str(exc)})
        return parsed

    async def fetch_readings(self, account: str, start: int, end: int) -> list[GlucoseReading]:
        params = {
            "find[date][$gte]": start,
            "find[date][$lte]": end,
            "count": DEFAULT_COUNT,
        }
        rows = await self._get("/api/v1/entries/sgv.json", params)
        readings = self._parse_many(GlucoseReading, rows, "entries")
        logger.debug("Fetched readings", extra={"account": account, "count": len(readings)})
        return sorted(readings, key=lambda r: r.mills)

    async def latest_reading_mills(self, account: str) -> Optional[int]:
        rows = await self._get("/api/v1/entries/sgv.json", {"count": 1})
        readings = self._parse_many(GlucoseReading, rows, "entries")
        return max((r.mills for r in readings), default=None)

    async def fetch_treatments(self, account: str, start: int, end: int) -> list[Treatment]:
        params = {
            "find[created_at][$gte]": _iso(start),
            "find[created_at][$lte]": _iso(end),
            "count": DEFAULT_COUNT,
        }
        rows = await self._get("/api/v1/treatments.json", params)
        treatments = self._parse_many(Treatment, rows, "treatments")
        logger.debug("Fetched treatments", extra={"account": account, "count": len(treatments)})
        return treatments

    async def fetch_profile(self, account: str) -> Optional[ActiveProfile]:
        rows = await self._get("/api/v1/profile.json", {"count": 1})
        if isinstance(rows, list):
            rows = rows[0] if rows else None
        if not rows:
            return None
        store = rows.get("store") or {}
        name = rows.get("defaultProfile")
        data = store.get(name) if name in store else next(iter(store.values()), None)
        if data is None:
            return None
        try:
            return ActiveProfile.model_validate(data)
        except ValidationError as exc:
            logger.warning("Profile could not be parsed", extra={"account": account, "error": str(exc)})
            return None


class InMemoryStore:
    """Account-keyed store for tests and local runs."""

    def __init__(self) -> None:
        self.readings: dict[str, list[GlucoseReading]] = {}
        self.treatments: dict[str, list[Treatment]] = {}
        self.profiles: dict[str, ActiveProfile] = {}
        self.fetch_count = 0
        self._listeners: list[Callable[[str, int], Any]] = []

    def subscribe(self, listener: Callable[[str, int], Any]) -> None:
        """Call listener(account, earliest_mills) whenever readings are added."""
        if listener not in self._listeners:
            self._listeners.append(listener)

    def add_readings(self, account: str, readings: Sequence[GlucoseReading]) -> None:
        self.readings.setdefault(account, []).extend(readings)
        if readings:
            earliest = min(r.mills for r in readings)
            for listener in self._listeners:
                listener(account, earliest)

    async def latest_reading_mills(self, account: str) -> Optional[int]:
        return max((r.mills for r in self.readings.get(account, [])), default=None)

    def add_treatments(self, account: str, treatments: Sequence[Treatment]) -> None:
        self.treatments.setdefault(account, []).extend(treatments)

    async def fetch_readings(self, account: str, start: int, end: int) -> list[GlucoseReading]:
        self.fetch_count += 1
        rows = self.readings.get(account, [])
        return sorted((r for r in rows if start <= r.mills <= end), key=lambda r: r.mills)

    async def fetch_treatments(self, account: str, start: int, end: int) -> list[Treatment]:
        rows = self.treatments.get(account, [])
        # undated records pass through so callers can report them
        return [t for t in rows if t.timestamp_ms is None or start <= t.timestamp_ms <= end]

    async def fetch_profile(self, account: str) -> Optional[ActiveProfile]:
        return self.profiles.get(account)


__all__ = ["InMemoryStore", "NightscoutStore", "StoreError", "TimeSeriesStore"]
