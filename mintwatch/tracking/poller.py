"""Upstream chain poller: detect newly created assets for one program.

Each cycle lists the most recent signatures for the watched program, skips
the ones already handled inside the dedup window, fetches and parses the
rest, and hands creation events to a callback.  Transient failures stretch
the sleep between cycles multiplicatively up to a ceiling; any clean cycle
resets it.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections import OrderedDict
from dataclasses import asdict, dataclass
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Union

from .clock import Clock
from .errors import InvalidError, NotFoundError, TransientError
from .ledger import PUMP_FUN_PROGRAM_ID, LedgerClient
from .types import AssetCreatedEvent, ChainEvent, TransferEvent, UnclassifiedEvent

log = logging.getLogger(__name__)

CreatedCallback = Callable[[AssetCreatedEvent], Union[Awaitable[None], None]]

_MINT_CREATE_TYPES = {"initializemint", "initializemint2"}
_TRANSFER_TYPES = {"transfer", "transferchecked"}
_PUMP_CREATE_TYPES = {"create", "createtoken"}
_PUMP_CREATE_LOG = "Program log: Instruction: Create"


class Backoff:
    """Multiplicative backoff with full reset on success."""

    def __init__(self, base: float = 1.0, factor: float = 2.0, ceiling: float = 300.0) -> None:
        if base <= 0:
            raise ValueError("backoff base must be positive")
        self.base = float(base)
        self.factor = max(1.0, float(factor))
        self.ceiling = max(self.base, float(ceiling))
        self.current = self.base

    def failure(self) -> float:
        self.current = min(self.current * self.factor, self.ceiling)
        return self.current

    def success(self) -> float:
        self.current = self.base
        return self.current


class SeenSignatures:
    """Time-windowed, size-bounded set of handled signatures."""

    def __init__(self, clock: Clock, *, ttl: float = 300.0, max_entries: int = 10_000) -> None:
        self._clock = clock
        self.ttl = float(ttl)
        self.max_entries = max(1, int(max_entries))
        self._data: "OrderedDict[str, float]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._data)

    def __contains__(self, signature: object) -> bool:
        expiry = self._data.get(signature)  # type: ignore[arg-type]
        if expiry is None:
            return False
        if expiry <= self._clock.now():
            self._data.pop(signature, None)  # type: ignore[arg-type]
            return False
        return True

    def add(self, signature: str) -> None:
        self._data.pop(signature, None)
        self._data[signature] = self._clock.now() + self.ttl
        self.evict()

    def evict(self) -> int:
        now = self._clock.now()
        removed = 0
        # insertion order matches expiry order since the ttl is fixed
        while self._data:
            _, expiry = next(iter(self._data.items()))
            if expiry > now and len(self._data) <= self.max_entries:
                break
            self._data.popitem(last=False)
            removed += 1
        return removed


@dataclass(slots=True)
class PollerMetrics:
    cycles: int = 0
    events_fetched: int = 0
    assets_created: int = 0
    duplicates_skipped: int = 0
    invalid_events: int = 0
    not_found_events: int = 0
    transient_failures: int = 0
    listing_failures: int = 0
    callback_failures: int = 0

    def snapshot(self) -> Dict[str, int]:
        return asdict(self)


def _flatten_instructions(result: Mapping[str, Any]) -> List[Dict[str, Any]]:
    """Return top-level and inner instruction dictionaries in execution order."""

    message = (result.get("transaction") or {}).get("message") or {}
    outer = message.get("instructions") or []
    meta = result.get("meta") or {}
    inners: List[Dict[str, Any]] = []
    for container in meta.get("innerInstructions") or []:
        for inner in (container or {}).get("instructions") or []:
            inners.append(inner)
    return [ix for ix in list(outer) + inners if isinstance(ix, dict)]


def _account_keys(result: Mapping[str, Any]) -> List[str]:
    message = (result.get("transaction") or {}).get("message") or {}
    keys: List[str] = []
    for key in message.get("accountKeys") or []:
        if isinstance(key, str):
            keys.append(key)
        elif isinstance(key, dict) and isinstance(key.get("pubkey"), str):
            keys.append(key["pubkey"])
    return keys


def _parsed(ix: Mapping[str, Any]) -> tuple[str, Dict[str, Any]]:
    parsed = ix.get("parsed")
    if not isinstance(parsed, dict):
        return "", {}
    info = parsed.get("info")
    return str(parsed.get("type") or "").lower(), info if isinstance(info, dict) else {}


def _amount(info: Mapping[str, Any]) -> float:
    token_amount = info.get("tokenAmount")
    if isinstance(token_amount, dict):
        raw = token_amount.get("uiAmount")
        if raw is None:
            raw = token_amount.get("amount")
    else:
        raw = info.get("amount")
    try:
        return float(raw) if raw is not None else 0.0
    except (TypeError, ValueError):
        return 0.0


def parse_event(
    signature: str, raw: Mapping[str, Any], program_id: str = PUMP_FUN_PROGRAM_ID
) -> ChainEvent:
    """Classify a ``getTransaction`` (jsonParsed) payload.

    Raises :class:`InvalidError` for failed or malformed transactions.
    """

    if not isinstance(raw, Mapping):
        raise InvalidError(f"{signature}: transaction payload is not an object")
    result = raw["result"] if "result" in raw else raw
    if not isinstance(result, Mapping):
        raise InvalidError(f"{signature}: transaction result is not an object")
    meta = result.get("meta")
    if meta is not None and not isinstance(meta, Mapping):
        raise InvalidError(f"{signature}: malformed meta")
    if meta and meta.get("err"):
        raise InvalidError(f"{signature}: transaction failed: {meta.get('err')}")
    transaction = result.get("transaction")
    if not isinstance(transaction, Mapping) or not isinstance(transaction.get("message"), Mapping):
        raise InvalidError(f"{signature}: transaction has no message")
    try:
        return _classify(signature, result, meta, program_id)
    except (TypeError, ValueError, KeyError, AttributeError, IndexError) as exc:
        raise InvalidError(f"{signature}: malformed transaction: {exc!r}") from exc


def _classify(
    signature: str, result: Mapping[str, Any], meta: Any, program_id: str
) -> ChainEvent:
    slot = int(result.get("slot") or 0)
    block_time = result.get("blockTime")
    block_time = float(block_time) if block_time is not None else None
    keys = _account_keys(result)
    creator = keys[0] if keys else None
    instructions = _flatten_instructions(result)
    logs = [line for line in (meta or {}).get("logMessages") or [] if isinstance(line, str)]

    for ix in instructions:
        ix_type, info = _parsed(ix)
        program = ix.get("programId")
        if ix_type in _MINT_CREATE_TYPES and isinstance(info.get("mint"), str):
            return AssetCreatedEvent(
                signature=signature,
                slot=slot,
                block_time=block_time,
                mint=info["mint"],
                creator=creator,
            )
        if program == program_id and ix_type in _PUMP_CREATE_TYPES and isinstance(info.get("mint"), str):
            return AssetCreatedEvent(
                signature=signature,
                slot=slot,
                block_time=block_time,
                mint=info["mint"],
                creator=info.get("creator") or info.get("user") or creator,
                name=info.get("name"),
                symbol=info.get("symbol"),
            )

    # Pump.fun instructions arrive partially decoded; the mint is the first account.
    if any(line.startswith(_PUMP_CREATE_LOG) for line in logs):
        for ix in instructions:
            accounts = ix.get("accounts")
            if ix.get("programId") == program_id and accounts and isinstance(accounts[0], str):
                return AssetCreatedEvent(
                    signature=signature,
                    slot=slot,
                    block_time=block_time,
                    mint=accounts[0],
                    creator=creator,
                )

    for ix in instructions:
        ix_type, info = _parsed(ix)
        if ix_type in _TRANSFER_TYPES and ("source" in info or "destination" in info):
            return TransferEvent(
                signature=signature,
                slot=slot,
                block_time=block_time,
                mint=info.get("mint"),
                source=info.get("source"),
                destination=info.get("destination"),
                amount=_amount(info),
            )

    programs = sorted(
        {str(ix.get("programId")) for ix in instructions if ix.get("programId")}
    )
    return UnclassifiedEvent(signature=signature, slot=slot, block_time=block_time, programs=programs)


class ChainPoller:
    def __init__(
        self,
        ledger: LedgerClient,
        clock: Clock,
        *,
        program_id: str = PUMP_FUN_PROGRAM_ID,
        signature_limit: int = 25,
        dedup_ttl: float = 300.0,
        max_seen: int = 10_000,
        backoff: Backoff | None = None,
        request_timeout: float = 10.0,
    ) -> None:
        self.ledger = ledger
        self.clock = clock
        self.program_id = program_id
        self.signature_limit = max(1, int(signature_limit))
        self.request_timeout = float(request_timeout)
        self.backoff = backoff or Backoff()
        self.seen = SeenSignatures(clock, ttl=dedup_ttl, max_entries=max_seen)
        self.metrics = PollerMetrics()
        self.last_cycle_transient = False
        self._stopped = asyncio.Event()
        self._idle = asyncio.Event()
        self._idle.set()

    async def _with_timeout(self, awaitable: Awaitable[Any], what: str) -> Any:
        try:
            return await asyncio.wait_for(awaitable, timeout=self.request_timeout)
        except asyncio.TimeoutError as exc:
            raise TransientError(f"{what} timed out after {self.request_timeout:.1f}s") from exc

    async def fetch_event(self, signature: str) -> ChainEvent:
        raw = await self._with_timeout(self.ledger.get_event(signature), f"getTransaction({signature})")
        if raw is None:
            raise NotFoundError(signature, what="event")
        return parse_event(signature, raw, self.program_id)

    async def poll(self) -> List[AssetCreatedEvent]:
        """Run one detection cycle and return the creation events it found.

        Failures while listing signatures propagate.  A transient
        failure on one event leaves that signature unseen for the next cycle
        and sets :attr:`last_cycle_transient`.
        """

        self.last_cycle_transient = False
        signatures = await self._with_timeout(
            self.ledger.get_recent_signatures(self.program_id, self.signature_limit),
            "getSignaturesForAddress",
        )
        self.seen.evict()
        created: List[AssetCreatedEvent] = []
        # the node returns newest first
        for info in reversed(list(signatures)):
            signature = info.signature
            if signature in self.seen:
                self.metrics.duplicates_skipped += 1
                continue
            if info.err:
                self.metrics.invalid_events += 1
                self.seen.add(signature)
                continue
            try:
                event = await self.fetch_event(signature)
            except NotFoundError:
                self.metrics.not_found_events += 1
                log.debug("transaction %s not found yet", signature)
                self.seen.add(signature)
                continue
            except InvalidError as exc:
                self.metrics.invalid_events += 1
                log.debug("dropping %s: %s", signature, exc)
                self.seen.add(signature)
                continue
            except TransientError as exc:
                self.metrics.transient_failures += 1
                self.last_cycle_transient = True
                log.warning("transient failure fetching %s: %s", signature, exc)
                continue
            except asyncio.CancelledError:
                raise
            except Exception:
                self.metrics.invalid_events += 1
                log.exception("unexpected failure handling %s; dropping it", signature)
                self.seen.add(signature)
                continue
            self.seen.add(signature)
            self.metrics.events_fetched += 1
            if isinstance(event, AssetCreatedEvent):
                self.metrics.assets_created += 1
                created.append(event)
        return created

    async def _cycle(self, on_created: CreatedCallback) -> None:
        self.metrics.cycles += 1
        try:
            events = await self.poll()
        except TransientError as exc:
            self.metrics.transient_failures += 1
            delay = self.backoff.failure()
            log.warning("signature listing failed (%s); next poll in %.1fs", exc, delay)
            return
        except InvalidError as exc:
            self.metrics.listing_failures += 1
            delay = self.backoff.failure()
            log.error("signature listing rejected (%s); next poll in %.1fs", exc, delay)
            return
        except asyncio.CancelledError:
            raise
        except Exception:
            self.metrics.listing_failures += 1
            delay = self.backoff.failure()
            log.exception("poll cycle failed; next poll in %.1fs", delay)
            return
        for event in events:
            try:
                result = on_created(event)
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception:
                self.metrics.callback_failures += 1
                log.exception("creation callback failed for %s", event.mint)
        if self.last_cycle_transient:
            delay = self.backoff.failure()
            log.info("poll cycle had transient failures; next poll in %.1fs", delay)
        else:
            self.backoff.success()

    async def run(self, on_created: CreatedCallback) -> None:
        """Poll until :meth:`stop` is called.

        A stopped poller stays stopped; build a new one to resume polling.
        """

        self._idle.clear()
        log.info("chain poller watching %s", self.program_id)
        try:
            while not self._stopped.is_set():
                await self._cycle(on_created)
                if self._stopped.is_set():
                    break
                await self._sleep(self.backoff.current)
        finally:
            self._idle.set()
            log.info("chain poller stopped after %d cycles", self.metrics.cycles)

    async def _sleep(self, delay: float) -> None:
        sleeper = asyncio.ensure_future(self.clock.sleep(delay))
        stopper = asyncio.ensure_future(self._stopped.wait())
        try:
            await asyncio.wait({sleeper, stopper}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for fut in (sleeper, stopper):
                if not fut.done():
                    fut.cancel()

    async def stop(self) -> None:
        """Stop scheduling cycles and wait for the in-flight one to finish."""

        self._stopped.set()
        await self._idle.wait()

    @property
    def running(self) -> bool:
        return not self._idle.is_set()


__all__ = [
    "Backoff",
    "SeenSignatures",
    "PollerMetrics",
    "ChainPoller",
    "CreatedCallback",
    "parse_event",
]
