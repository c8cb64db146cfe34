"""Wire the poller, lifecycle engine, alert bus and service together."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from .config import TrackerSettings
from .http import close_session
from .tracking.alerts import AlertBus
from .tracking.clock import Clock, SystemClock
from .tracking.collector import DexScreenerCollector, MetricCollector
from .tracking.errors import InvalidError, TrackingError
from .tracking.ledger import LedgerClient, SolanaRpcClient
from .tracking.lifecycle import LifecycleStateMachine
from .tracking.poller import Backoff, ChainPoller
from .tracking.scoring import MomentumScorer
from .tracking.service import DAY, TrackingService
from .tracking.store import AssetRepository, InMemoryAssetRepository
from .tracking.types import AssetCreatedEvent, TrackedAsset

log = logging.getLogger(__name__)


class TrackerRuntime:
    """Own every long-lived component of one tracker instance.

    Collaborators that are not passed in are built from ``settings``.  The
    shared HTTP session is closed on :meth:`stop` only when this runtime
    built the network clients itself.
    """

    def __init__(
        self,
        settings: TrackerSettings | None = None,
        *,
        repository: AssetRepository | None = None,
        ledger: LedgerClient | None = None,
        collector: MetricCollector | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.settings = settings or TrackerSettings()
        cfg = self.settings
        self.clock = clock or SystemClock()
        self.repository = repository or InMemoryAssetRepository()
        self._owns_http = ledger is None or collector is None

        if ledger is None:
            ledger = SolanaRpcClient(cfg.poller.rpc_url, timeout=cfg.poller.request_timeout)
        self.ledger = ledger
        if collector is None:
            holder_counter = None
            if cfg.collector.count_holders and isinstance(ledger, SolanaRpcClient):
                holder_counter = ledger.get_holder_count
            collector = DexScreenerCollector(
                base_url=cfg.collector.base_url,
                timeout=cfg.collector.timeout,
                requests_per_second=cfg.collector.requests_per_second,
                holder_counter=holder_counter,
            )
        self.collector = collector

        self.policies = cfg.policy_table()
        self.bus = AlertBus(
            buffer_size=cfg.alerts.buffer_size,
            subscriber_queue=cfg.alerts.subscriber_queue,
        )
        self.engine = LifecycleStateMachine(
            self.repository,
            self.collector,
            self.bus,
            self.clock,
            policies=self.policies,
            scorer=MomentumScorer(cfg.scoring.weights()),
            degraded_after=cfg.alerts.degraded_after,
        )
        self.service = TrackingService(
            self.engine,
            self.repository,
            self.bus,
            self.clock,
            alert_retention=cfg.alerts.retention_days * DAY,
        )
        self.poller = ChainPoller(
            self.ledger,
            self.clock,
            program_id=cfg.poller.program_id,
            signature_limit=cfg.poller.signature_limit,
            dedup_ttl=cfg.poller.dedup_ttl,
            max_seen=cfg.poller.max_seen,
            backoff=Backoff(
                cfg.poller.backoff_base, cfg.poller.backoff_factor, cfg.poller.backoff_ceiling
            ),
            request_timeout=cfg.poller.request_timeout,
        )
        self._poll_task: Optional[asyncio.Task[None]] = None

    async def handle_created(self, event: AssetCreatedEvent) -> None:
        """Create the asset record if needed and start tracking it."""

        now = self.clock.now()
        if not await self.repository.exists(event.mint):
            created_at = event.block_time if event.block_time is not None else now
            asset = TrackedAsset(
                id=event.mint,
                created_at=min(created_at, now),
                name=event.name,
                symbol=event.symbol,
                creator=event.creator,
                updated_at=now,
            )
            try:
                await self.repository.create(asset)
            except InvalidError:
                log.debug("asset %s was created concurrently", event.mint)
            else:
                log.info("new asset %s by %s (slot %d)", event.mint, event.creator, event.slot)
        try:
            await self.engine.start_tracking(event.mint)
        except TrackingError as exc:
            log.info("not tracking %s: %s", event.mint, exc)

    async def start(self) -> None:
        if self._poll_task is not None:
            return
        await self.service.initialize()
        self._poll_task = asyncio.create_task(
            self.poller.run(self.handle_created), name="mintwatch-poller"
        )

    async def stop(self) -> None:
        """Stop polling, let the in-flight cycle finish, then cancel all timers."""

        if self._poll_task is not None:
            await self.poller.stop()
            await self._poll_task
            self._poll_task = None
        stopped = await self.engine.stop_all()
        self.bus.close()
        if isinstance(self.clock, SystemClock):
            await self.clock.drain()
        if self._owns_http:
            await close_session()
        log.info("runtime stopped (%d assets untracked)", stopped)

    async def __aenter__(self) -> "TrackerRuntime":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.stop()


__all__ = ["TrackerRuntime"]
