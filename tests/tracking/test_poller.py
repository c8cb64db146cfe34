from __future__ import annotations

import asyncio

import pytest

from mintwatch.tracking.errors import InvalidError, TransientError
from mintwatch.tracking.ledger import PUMP_FUN_PROGRAM_ID
from mintwatch.tracking.poller import Backoff, ChainPoller, SeenSignatures, parse_event
from mintwatch.tracking.types import (
    AssetCreatedEvent,
    SignatureInfo,
    TransferEvent,
    UnclassifiedEvent,
)
from tests.tracking.fakes import T0, creation_tx


def _tx(instructions, logs=None, keys=("Payer1111",)):
    return {
        "slot": 7,
        "blockTime": None,
        "transaction": {"message": {"accountKeys": list(keys), "instructions": instructions}},
        "meta": {"err": None, "logMessages": logs or []},
    }


@pytest.fixture
def poller(ledger, clock) -> ChainPoller:
    return ChainPoller(ledger, clock, backoff=Backoff(base=1, factor=2, ceiling=5))


# ---------------------------------------------------------------------------
# parsing
# ---------------------------------------------------------------------------


def test_parse_inner_mint_initialization() -> None:
    event = parse_event("sig", creation_tx("MintX"))
    assert isinstance(event, AssetCreatedEvent)
    assert event.mint == "MintX"
    assert event.creator == "Creator1111"
    assert event.block_time == 1_700_000_000.0
    assert event.slot == 250_000_000


def test_parse_outer_mint_initialization_with_rpc_envelope() -> None:
    event = parse_event("sig", {"jsonrpc": "2.0", "result": creation_tx("MintY", inner=False)})
    assert isinstance(event, AssetCreatedEvent)
    assert event.mint == "MintY"


def test_parse_pump_create_instruction() -> None:
    raw = _tx(
        [
            {
                "programId": PUMP_FUN_PROGRAM_ID,
                "parsed": {
                    "type": "create",
                    "info": {"mint": "PumpMint", "name": "Dog", "symbol": "DOG", "user": "Dev1"},
                },
            }
        ]
    )
    event = parse_event("sig", raw)
    assert isinstance(event, AssetCreatedEvent)
    assert (event.mint, event.name, event.symbol, event.creator) == ("PumpMint", "Dog", "DOG", "Dev1")
    assert event.block_time is None


def test_parse_pump_create_from_logs() -> None:
    raw = _tx(
        [
            {"programId": "ComputeBudget111111111111111111111111111111", "data": "3Dc8"},
            {"programId": PUMP_FUN_PROGRAM_ID, "accounts": ["LoggedMint", "Bonding"], "data": "xyz"},
        ],
        logs=[f"Program {PUMP_FUN_PROGRAM_ID} invoke [1]", "Program log: Instruction: Create"],
    )
    event = parse_event("sig", raw)
    assert isinstance(event, AssetCreatedEvent)
    assert event.mint == "LoggedMint"
    assert event.creator == "Payer1111"


def test_parse_transfer() -> None:
    raw = _tx(
        [
            {
                "programId": "TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA",
                "parsed": {
                    "type": "transferChecked",
                    "info": {
                        "source": "SrcAcct",
                        "destination": "DstAcct",
                        "mint": "MintZ",
                        "tokenAmount": {"amount": "1500000", "uiAmount": 1.5},
                    },
                },
            }
        ]
    )
    event = parse_event("sig", raw)
    assert isinstance(event, TransferEvent)
    assert (event.source, event.destination, event.mint, event.amount) == ("SrcAcct", "DstAcct", "MintZ", 1.5)


def test_parse_unclassified() -> None:
    raw = _tx([{"programId": "Vote111111111111111111111111111111111111111", "data": "a"}])
    event = parse_event("sig", raw)
    assert isinstance(event, UnclassifiedEvent)
    assert event.programs == ["Vote111111111111111111111111111111111111111"]


@pytest.mark.parametrize(
    "raw",
    [
        "not a transaction",
        {"result": None},
        {"transaction": {}, "meta": {"err": None}},
        creation_tx("MintE", err={"InstructionError": [0, "Custom"]}),
        {"transaction": "opaque", "meta": None},
        {**creation_tx("MintS"), "slot": "not-a-slot"},
        {**creation_tx("MintT"), "blockTime": [1]},
        _tx(
            [{"programId": PUMP_FUN_PROGRAM_ID, "accounts": {"mint": "M"}}],
            logs=["Program log: Instruction: Create"],
        ),
    ],
)
def test_parse_rejects_malformed_or_failed(raw) -> None:
    with pytest.raises(InvalidError):
        parse_event("sig", raw)


# ---------------------------------------------------------------------------
# dedup and backoff
# ---------------------------------------------------------------------------


def test_backoff_grows_to_ceiling_and_resets() -> None:
    backoff = Backoff(base=1, factor=2, ceiling=5)
    assert [backoff.failure() for _ in range(4)] == [2, 4, 5, 5]
    assert backoff.success() == 1
    assert backoff.current == 1


def test_backoff_rejects_non_positive_base() -> None:
    with pytest.raises(ValueError):
        Backoff(base=0)


def test_seen_signatures_bounded(clock) -> None:
    seen = SeenSignatures(clock, ttl=60, max_entries=2)
    for sig in ("a", "b", "c"):
        seen.add(sig)
    assert len(seen) == 2
    assert "a" not in seen
    assert "c" in seen

    clock.set(T0 + 61)
    assert "c" not in seen


# ---------------------------------------------------------------------------
# polling
# ---------------------------------------------------------------------------


@pytest.mark.anyio
async def test_duplicate_signature_is_processed_once(poller, ledger) -> None:
    ledger.signatures = [SignatureInfo("sig1")]
    ledger.events["sig1"] = creation_tx("Mint1")

    first = await poller.poll()
    second = await poller.poll()

    assert [event.mint for event in first] == ["Mint1"]
    assert second == []
    assert ledger.event_calls["sig1"] == 1
    assert poller.metrics.duplicates_skipped == 1


@pytest.mark.anyio
async def test_signature_is_reprocessed_after_ttl(poller, ledger, clock) -> None:
    ledger.signatures = [SignatureInfo("sig1")]
    ledger.events["sig1"] = creation_tx("Mint1")

    await poller.poll()
    clock.set(T0 + 301)
    again = await poller.poll()

    assert [event.mint for event in again] == ["Mint1"]
    assert ledger.event_calls["sig1"] == 2


@pytest.mark.anyio
async def test_events_are_processed_oldest_first(poller, ledger) -> None:
    ledger.signatures = [SignatureInfo("new"), SignatureInfo("old")]
    ledger.events = {"new": creation_tx("MintNew"), "old": creation_tx("MintOld")}
    assert [event.mint for event in await poller.poll()] == ["MintOld", "MintNew"]


@pytest.mark.anyio
async def test_failed_missing_and_invalid_events_are_marked_seen(poller, ledger) -> None:
    ledger.signatures = [
        SignatureInfo("failed", err={"InstructionError": [0, "Custom"]}),
        SignatureInfo("missing"),
        SignatureInfo("broken"),
        SignatureInfo("transfer"),
    ]
    ledger.events = {
        "broken": {"transaction": {}},
        "transfer": _tx([]),
    }

    assert await poller.poll() == []
    assert poller.metrics.invalid_events == 2
    assert poller.metrics.not_found_events == 1
    assert poller.metrics.events_fetched == 1
    assert ledger.event_calls["failed"] == 0

    await poller.poll()
    assert poller.metrics.duplicates_skipped == 4
    assert ledger.event_calls["missing"] == 1


@pytest.mark.anyio
async def test_transient_event_failure_is_retried(poller, ledger) -> None:
    ledger.signatures = [SignatureInfo("sig1")]
    ledger.events["sig1"] = TransientError("rate limited", status=429)

    assert await poller.poll() == []
    assert poller.last_cycle_transient

    ledger.events["sig1"] = creation_tx("Mint1")
    assert [event.mint for event in await poller.poll()] == ["Mint1"]
    assert not poller.last_cycle_transient


@pytest.mark.anyio
async def test_slow_event_fetch_times_out(ledger, clock) -> None:
    poller = ChainPoller(ledger, clock, request_timeout=0.01)
    ledger.delay = 0.5
    ledger.events["sig1"] = creation_tx("Mint1")

    with pytest.raises(TransientError):
        await poller.fetch_event("sig1")


@pytest.mark.anyio
async def test_listing_failure_propagates_and_backs_off(poller, ledger) -> None:
    ledger.listing_error = TransientError("node unavailable", status=503)
    with pytest.raises(TransientError):
        await poller.poll()

    await poller._cycle(lambda event: None)
    await poller._cycle(lambda event: None)
    assert poller.backoff.current == 4
    assert poller.metrics.transient_failures == 2

    ledger.listing_error = None
    await poller._cycle(lambda event: None)
    assert poller.backoff.current == 1


@pytest.mark.anyio
async def test_transient_event_backs_off_cycle(poller, ledger) -> None:
    ledger.signatures = [SignatureInfo("sig1")]
    ledger.events["sig1"] = TransientError("timeout")
    await poller._cycle(lambda event: None)
    assert poller.backoff.current == 2


@pytest.mark.anyio
async def test_run_isolates_callback_errors_and_stops(poller, ledger) -> None:
    ledger.signatures = [SignatureInfo("sig2"), SignatureInfo("sig1")]
    ledger.events = {"sig1": creation_tx("Mint1"), "sig2": creation_tx("Mint2")}
    received = []
    done = asyncio.Event()

    async def on_created(event: AssetCreatedEvent) -> None:
        received.append(event.mint)
        if event.mint == "Mint1":
            raise RuntimeError("downstream broke")
        done.set()

    task = asyncio.create_task(poller.run(on_created))
    await asyncio.wait_for(done.wait(), timeout=1)
    assert poller.running

    await asyncio.wait_for(poller.stop(), timeout=1)
    await asyncio.wait_for(task, timeout=1)

    assert received == ["Mint1", "Mint2"]
    assert poller.metrics.callback_failures == 1
    assert poller.metrics.assets_created == 2
    assert not poller.running


@pytest.mark.anyio
async def test_malformed_event_does_not_discard_valid_ones(poller, ledger) -> None:
    ledger.signatures = [SignatureInfo("sigok"), SignatureInfo("sigbad"), SignatureInfo("sigboom")]
    ledger.events = {
        "sigbad": {**creation_tx("MintBad"), "slot": "not-a-slot"},
        "sigboom": RuntimeError("decoder exploded"),
        "sigok": creation_tx("MintGood"),
    }

    assert [event.mint for event in await poller.poll()] == ["MintGood"]
    assert poller.metrics.invalid_events == 2
    assert "sigbad" in poller.seen
    assert "sigboom" in poller.seen
    assert not poller.last_cycle_transient


@pytest.mark.anyio
@pytest.mark.parametrize("error", [InvalidError("rpc error -32602"), RuntimeError("unexpected")])
async def test_rejected_listing_backs_off_without_raising(poller, ledger, error) -> None:
    ledger.listing_error = error

    await poller._cycle(lambda event: None)

    assert poller.metrics.listing_failures == 1
    assert poller.backoff.current == 2


async def _until(predicate) -> None:
    for _ in range(200):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition not reached")


@pytest.mark.anyio
async def test_run_survives_rejected_listing(poller, ledger, clock) -> None:
    ledger.listing_error = InvalidError("rpc error -32602")
    ledger.signatures = [SignatureInfo("sig1")]
    ledger.events["sig1"] = creation_tx("Mint1")
    received = []

    task = asyncio.create_task(poller.run(lambda event: received.append(event.mint)))
    await _until(lambda: clock.pending() == 1)
    assert poller.metrics.listing_failures == 1
    assert poller.running

    ledger.listing_error = None
    await clock.advance(2)
    await _until(lambda: received == ["Mint1"])

    await asyncio.wait_for(poller.stop(), timeout=1)
    await asyncio.wait_for(task, timeout=1)
    assert poller.backoff.current == 1
