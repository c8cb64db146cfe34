"""Market metric collection for tracked assets."""

from __future__ import annotations

import asyncio
import logging
import math
import time
from typing import Any, Awaitable, Callable, Mapping, MutableMapping, Protocol, Sequence

import aiohttp

from ..http import get_session
from .errors import InvalidError, NotFoundError, TransientError
from .types import MetricSnapshot

log = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.dexscreener.com"

HolderCounter = Callable[[str], Awaitable[int]]


class MetricCollector(Protocol):
    async def collect_metrics(self, asset_id: str) -> MetricSnapshot:
        ...


def _coerce_float(value: Any) -> float | None:
    if value is None:
        return None
    if isinstance(value, (int, float)):
        numeric = float(value)
    elif isinstance(value, str):
        try:
            numeric = float(value)
        except ValueError:
            return None
    elif isinstance(value, Mapping):
        for key in ("usd", "h24", "value"):
            if key in value:
                return _coerce_float(value.get(key))
        return None
    else:
        return None
    if math.isnan(numeric) or math.isinf(numeric):
        return None
    return numeric


def _extract_pairs(payload: Any) -> Sequence[MutableMapping[str, Any]]:
    if isinstance(payload, Mapping):
        pairs = payload.get("pairs")
        if isinstance(pairs, Sequence):
            return [pair for pair in pairs if isinstance(pair, MutableMapping)]
        return []
    if isinstance(payload, Sequence):
        return [pair for pair in payload if isinstance(pair, MutableMapping)]
    return []


def _pair_liquidity(pair: Mapping[str, Any]) -> float:
    return _coerce_float(pair.get("liquidity")) or 0.0


def _base_address(pair: Mapping[str, Any]) -> str:
    token = pair.get("baseToken")
    if isinstance(token, Mapping):
        return str(token.get("address") or "")
    return ""


class DexScreenerCollector:
    """Collect price, 24h volume and liquidity from Dexscreener.

    Dexscreener does not report holder counts; pass ``holder_counter`` (for
    example :meth:`SolanaRpcClient.get_holder_count`) to fill them in,
    otherwise holders are reported as zero.  When the counter fails the
    last known count is reused so one bad RPC call does not read as a
    holder collapse.
    """

    def __init__(
        self,
        *,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 5.0,
        requests_per_second: float = 1.0,
        holder_counter: HolderCounter | None = None,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = float(timeout)
        self.requests_per_second = float(requests_per_second)
        self._holder_counter = holder_counter
        self._session = session
        self._rate_lock = asyncio.Lock()
        self._next_allowed = 0.0
        self._last_holders: dict[str, int] = {}

    async def _rate_limit(self) -> None:
        if self.requests_per_second <= 0:
            return
        minimum_interval = 1.0 / max(self.requests_per_second, 0.001)
        async with self._rate_lock:
            now = time.monotonic()
            wait = self._next_allowed - now
            if wait > 0:
                await asyncio.sleep(wait)
                now = time.monotonic()
            self._next_allowed = max(now, self._next_allowed) + minimum_interval

    async def _fetch_pairs(self, mint: str) -> Sequence[MutableMapping[str, Any]]:
        url = f"{self.base_url}/latest/dex/tokens/{mint}"
        session = self._session or await get_session()
        await self._rate_limit()
        try:
            async with session.get(
                url,
                headers={"Accept": "application/json"},
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            ) as resp:
                if resp.status == 429 or resp.status >= 500:
                    raise TransientError(f"dexscreener {mint} -> HTTP {resp.status}", status=resp.status)
                if resp.status >= 400:
                    raise InvalidError(f"dexscreener {mint} -> HTTP {resp.status}")
                payload = await resp.json(content_type=None)
        except asyncio.TimeoutError as exc:
            raise TransientError(f"dexscreener {mint} timed out") from exc
        except aiohttp.ClientError as exc:
            raise TransientError(f"dexscreener {mint} failed: {exc}") from exc
        return _extract_pairs(payload)

    async def _holders(self, mint: str) -> int:
        if self._holder_counter is None:
            return 0
        try:
            count = int(await self._holder_counter(mint))
        except TransientError:
            if mint not in self._last_holders:
                raise
            log.debug("holder count for %s unavailable, reusing last value", mint)
            return self._last_holders[mint]
        self._last_holders[mint] = count
        return count

    async def collect_metrics(self, asset_id: str) -> MetricSnapshot:
        pairs = await self._fetch_pairs(asset_id)
        own = [pair for pair in pairs if _base_address(pair) == asset_id] or list(pairs)
        if not own:
            raise NotFoundError(asset_id, what="market pair")
        best = max(own, key=_pair_liquidity)
        price = _coerce_float(best.get("priceUsd"))
        if price is None:
            raise InvalidError(f"dexscreener pair for {asset_id} has no usd price")
        volume = sum(_coerce_float(pair.get("volume")) or 0.0 for pair in own)
        liquidity = sum(_pair_liquidity(pair) for pair in own)
        return MetricSnapshot(
            price=price,
            volume=volume,
            holders=await self._holders(asset_id),
            liquidity=liquidity,
        )


__all__ = ["MetricCollector", "DexScreenerCollector", "HolderCounter"]
