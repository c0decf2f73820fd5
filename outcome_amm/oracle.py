"""
Oracle collaborators.

The engine only knows the narrow `get_latest(feed_id)` interface. Readings
use 8-decimal values and unix-second timestamps. Whether a reading is fresh
enough is decided by the resolution state machine, not here.
"""

from dataclasses import dataclass
from typing import Optional

import httpx


DEFAULT_TIMEOUT = 10.0


@dataclass(frozen=True)
class OracleReading:
    value: int
    updated_at: int
    ok: bool = True


class Oracle:
    """Base oracle. Subclasses implement get_latest."""

    async def get_latest(self, feed_id: str) -> OracleReading:
        raise NotImplementedError


class StaticOracle(Oracle):
    """Readings set by hand. Used by tests and for offline operation."""

    def __init__(self, readings: Optional[dict[str, OracleReading]] = None):
        self.readings: dict[str, OracleReading] = dict(readings or {})

    def set(self, feed_id: str, value: int, updated_at: int,
            ok: bool = True) -> None:
        self.readings[feed_id] = OracleReading(value, updated_at, ok)

    async def get_latest(self, feed_id: str) -> OracleReading:
        # an unknown feed is a failed reading, not an exception
        return self.readings.get(feed_id, OracleReading(0, 0, ok=False))


class HttpOracle(Oracle):
    """
    Reads `GET {base_url}/feeds/{feed_id}/latest`, expecting
    {"value": int, "updated_at": int, "ok": bool}.

    Transport errors propagate as httpx exceptions; the caller turns them
    into OracleUnavailable.
    """

    def __init__(self, base_url: str, client: Optional[httpx.AsyncClient] = None,
                 timeout: float = DEFAULT_TIMEOUT):
        self.base = base_url.rstrip("/")
        self._client = client
        self._timeout = timeout

    async def get_latest(self, feed_id: str) -> OracleReading:
        if self._client is not None:
            return await self._fetch(self._client, feed_id)
        async with httpx.AsyncClient(base_url=self.base,
                                     timeout=self._timeout) as client:
            return await self._fetch(client, feed_id)

    async def _fetch(self, client: httpx.AsyncClient,
                     feed_id: str) -> OracleReading:
        resp = await client.get(f"{self.base}/feeds/{feed_id}/latest")
        resp.raise_for_status()
        data = resp.json()
        return OracleReading(
            value=int(data["value"]),
            updated_at=int(data["updated_at"]),
            ok=bool(data.get("ok", True)),
        )
