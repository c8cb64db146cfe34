from __future__ import annotations

import asyncio

import pytest

from mintwatch.tracking.collector import DexScreenerCollector
from mintwatch.tracking.errors import InvalidError, NotFoundError, TransientError
from tests.tracking.fakes import DummyResponse, DummySession

MINT = "Mint1111"


def _pair(base: str, price, liquidity, volume) -> dict:
    return {
        "chainId": "solana",
        "baseToken": {"address": base, "symbol": "TKN"},
        "priceUsd": price,
        "liquidity": {"usd": liquidity},
        "volume": {"h24": volume},
    }


def _collector(*responses, **kwargs) -> tuple[DexScreenerCollector, DummySession]:
    session = DummySession(*responses)
    kwargs.setdefault("requests_per_second", 0)
    return DexScreenerCollector(base_url="https://dex.test/", session=session, **kwargs), session


@pytest.mark.anyio
async def test_best_liquidity_pair_sets_price() -> None:
    payload = {
        "pairs": [
            _pair(MINT, "1.5", 500, 100),
            _pair(MINT, "1.6", 2000, 50),
            _pair("OtherMint", "9.0", 10_000, 1_000_000),
        ]
    }
    collector, session = _collector(DummyResponse(200, payload))
    metrics = await collector.collect_metrics(MINT)

    assert metrics.price == 1.6
    assert metrics.volume == 150
    assert metrics.liquidity == 2500
    assert metrics.holders == 0
    assert session.requests[0]["url"] == f"https://dex.test/latest/dex/tokens/{MINT}"


@pytest.mark.anyio
@pytest.mark.parametrize("payload", [{"pairs": []}, {"pairs": None}, {}])
async def test_no_pairs_is_not_found(payload) -> None:
    collector, _ = _collector(DummyResponse(200, payload))
    with pytest.raises(NotFoundError):
        await collector.collect_metrics(MINT)


@pytest.mark.anyio
async def test_pair_without_price_is_invalid() -> None:
    collector, _ = _collector(DummyResponse(200, {"pairs": [_pair(MINT, None, 10, 10)]}))
    with pytest.raises(InvalidError):
        await collector.collect_metrics(MINT)


@pytest.mark.anyio
@pytest.mark.parametrize("status, error", [(429, TransientError), (502, TransientError), (404, InvalidError)])
async def test_http_status_mapping(status, error) -> None:
    collector, _ = _collector(DummyResponse(status, {}))
    with pytest.raises(error):
        await collector.collect_metrics(MINT)


@pytest.mark.anyio
async def test_timeout_is_transient() -> None:
    collector, _ = _collector(asyncio.TimeoutError())
    with pytest.raises(TransientError):
        await collector.collect_metrics(MINT)


@pytest.mark.anyio
async def test_holder_count_falls_back_to_last_known() -> None:
    results = [42, TransientError("rpc busy")]

    async def counter(mint: str) -> int:
        value = results.pop(0)
        if isinstance(value, Exception):
            raise value
        return value

    ok = DummyResponse(200, {"pairs": [_pair(MINT, "1.0", 10, 10)]})
    collector, _ = _collector(ok, holder_counter=counter)

    assert (await collector.collect_metrics(MINT)).holders == 42
    assert (await collector.collect_metrics(MINT)).holders == 42


@pytest.mark.anyio
async def test_holder_failure_without_history_propagates() -> None:
    async def counter(mint: str) -> int:
        raise TransientError("rpc busy")

    ok = DummyResponse(200, {"pairs": [_pair(MINT, "1.0", 10, 10)]})
    collector, _ = _collector(ok, holder_counter=counter)
    with pytest.raises(TransientError):
        await collector.collect_metrics(MINT)
