"""Per-asset phase state machine and adaptive tick scheduler.

Every tracked asset owns an entry in a :class:`TrackingRegistry`: a lock, the
pending tick timer, the pending phase-boundary timer and a small amount of
failure bookkeeping.  The registry is passed in by the caller so several
engines can coexist in one process (tests rely on this).

Two kinds of timers run per asset.  The tick timer samples metrics at the
current phase interval.  The boundary timer fires when the asset's age
crosses the end of its current phase window; it advances the phase, grades
the asset at the 24 hour mark and archives it when its tracking window ends.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from functools import partial
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple, TypeVar

from ..logging_utils import warn_once_per
from .alerts import AlertBus
from .clock import Clock, TimerHandle
from .collector import MetricCollector
from .errors import ConflictError, InvalidError, NotFoundError
from .policy import HOUR, PhasePolicy, PhasePolicyTable
from .retention import RetentionCompactor
from .scoring import MomentumScorer
from .store import AssetRepository
from .types import (
    Alert,
    AlertType,
    GradeResult,
    HistorySample,
    MetricSnapshot,
    MomentumResult,
    Phase,
    Priority,
    TrackedAsset,
)

log = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_DEGRADED_AFTER = 3


@dataclass
class TrackingEntry:
    asset_id: str
    phase: Phase
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    tick_handle: Optional[TimerHandle] = None
    boundary_handle: Optional[TimerHandle] = None
    tracked: bool = True
    consecutive_failures: int = 0
    degraded: bool = False
    next_update_at: Optional[float] = None
    phase_started_at: Optional[float] = None

    def cancel_timers(self) -> None:
        for handle in (self.tick_handle, self.boundary_handle):
            if handle is not None:
                handle.cancel()
        self.tick_handle = None
        self.boundary_handle = None
        self.next_update_at = None


class TrackingRegistry:
    """Explicitly owned table of tracked assets."""

    def __init__(self) -> None:
        self._entries: Dict[str, TrackingEntry] = {}

    def __contains__(self, asset_id: object) -> bool:
        return asset_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[TrackingEntry]:
        return iter(list(self._entries.values()))

    def get(self, asset_id: str) -> Optional[TrackingEntry]:
        return self._entries.get(asset_id)

    def add(self, entry: TrackingEntry) -> None:
        self._entries[entry.asset_id] = entry

    def pop(self, asset_id: str) -> Optional[TrackingEntry]:
        return self._entries.pop(asset_id, None)

    def ids(self) -> List[str]:
        return list(self._entries)


def momentum_priority(change: float) -> Priority:
    magnitude = abs(change)
    if magnitude >= 30:
        return Priority.CRITICAL
    if magnitude >= 20:
        return Priority.HIGH
    return Priority.MEDIUM


def grade_priority(letter: str) -> Priority:
    return {
        "A": Priority.CRITICAL,
        "B": Priority.HIGH,
        "C": Priority.MEDIUM,
    }.get(letter, Priority.LOW)


class _RecordMissing(Exception):
    """Internal signal: the backing record disappeared mid-operation."""


class _Untracked(Exception):
    """Internal signal: tracking stopped while an operation was in flight."""


class LifecycleStateMachine:
    def __init__(
        self,
        repository: AssetRepository,
        collector: MetricCollector,
        bus: AlertBus,
        clock: Clock,
        *,
        registry: TrackingRegistry | None = None,
        policies: PhasePolicyTable | None = None,
        scorer: MomentumScorer | None = None,
        compactor: RetentionCompactor | None = None,
        degraded_after: int = DEFAULT_DEGRADED_AFTER,
    ) -> None:
        self.repository = repository
        self.collector = collector
        self.bus = bus
        self.clock = clock
        self.registry = registry if registry is not None else TrackingRegistry()
        self.policies = policies or PhasePolicyTable.default()
        self.scorer = scorer or MomentumScorer()
        self.compactor = compactor or RetentionCompactor(self.policies)
        self.degraded_after = max(1, int(degraded_after))

    # ------------------------------------------------------------------
    # public operations
    # ------------------------------------------------------------------
    def is_tracked(self, asset_id: str) -> bool:
        return asset_id in self.registry

    async def start_tracking(self, asset_id: str) -> bool:
        """Begin scheduling ticks for ``asset_id``.

        Returns ``False`` when the asset is already tracked.  Assets loaded
        mid-lifecycle resume from their stored phase; any phase boundary that
        already passed fires on the next turn of the clock.
        """

        asset = await self.repository.get(asset_id)
        if asset is None:
            raise NotFoundError(asset_id)
        if asset_id in self.registry:
            log.warning("asset %s is already tracked", asset_id)
            return False
        if asset.phase.terminal or not asset.active:
            raise InvalidError(f"{asset_id} is archived and cannot be tracked")

        now = self.clock.now()
        entry = TrackingEntry(asset_id=asset_id, phase=asset.phase, phase_started_at=now)
        self.registry.add(entry)
        self._schedule_tick(entry)
        self._schedule_boundary(entry, asset)
        log.info(
            "tracking %s (%s) in %s phase, age %.1fh",
            asset_id,
            asset.symbol or "?",
            asset.phase.value,
            asset.age(now) / HOUR,
        )
        self._publish(
            AlertType.TRACKING_STARTED,
            asset_id,
            Priority.LOW,
            {"phase": asset.phase.value, "name": asset.name, "symbol": asset.symbol},
        )
        return True

    async def stop_tracking(self, asset_id: str, *, reason: str = "stopped") -> bool:
        entry = self.registry.pop(asset_id)
        if entry is None:
            log.debug("stop_tracking(%s): not tracked", asset_id)
            return False
        entry.tracked = False
        entry.cancel_timers()
        log.info("stopped tracking %s (%s)", asset_id, reason)
        self._publish(
            AlertType.TRACKING_STOPPED,
            asset_id,
            Priority.LOW,
            {"phase": entry.phase.value, "reason": reason},
        )
        return True

    async def stop_all(self) -> int:
        stopped = 0
        for asset_id in self.registry.ids():
            if await self.stop_tracking(asset_id, reason="shutdown"):
                stopped += 1
        return stopped

    def get_tracking_status(self) -> List[Dict[str, Any]]:
        status = [
            {
                "asset_id": entry.asset_id,
                "phase": entry.phase.value,
                "next_update_at": entry.next_update_at,
            }
            for entry in self.registry
        ]
        status.sort(key=lambda row: (row["next_update_at"] is None, row["next_update_at"] or 0.0))
        return status

    async def tick(self, asset_id: str) -> Optional[MomentumResult]:
        """Sample, score and persist one asset.

        Never raises: every failure is logged and the next tick stays
        scheduled unless the asset stopped being tracked.
        """

        entry = self.registry.get(asset_id)
        if entry is None or not entry.tracked:
            return None
        async with entry.lock:
            if not entry.tracked:
                return None
            try:
                return await self._tick_locked(entry)
            except Exception:
                log.exception("tick failed for %s", asset_id)
                return None
            finally:
                if entry.tracked:
                    self._schedule_tick(entry)

    # ------------------------------------------------------------------
    # tick internals
    # ------------------------------------------------------------------
    async def _tick_locked(self, entry: TrackingEntry) -> Optional[MomentumResult]:
        asset_id = entry.asset_id
        try:
            metrics = await self.collector.collect_metrics(asset_id)
        except Exception as exc:
            self._record_failure(entry, exc)
            return None
        self._record_success(entry)

        now = self.clock.now()
        policy = self.policies[entry.phase]

        def _apply(asset: TrackedAsset) -> MomentumResult:
            return self._apply_sample(asset, metrics, now, policy)

        try:
            _, result = await self._update(entry, _apply)
        except _RecordMissing:
            await self._forget(entry, "record missing during tick")
            return None
        except _Untracked:
            return None

        if abs(result.change) >= policy.alert_threshold:
            self._publish(
                AlertType.MOMENTUM,
                asset_id,
                momentum_priority(result.change),
                {
                    "phase": entry.phase.value,
                    "score": result.score,
                    "change": result.change,
                    "velocity": result.velocity,
                    "trend": result.trend.value,
                    "threshold": policy.alert_threshold,
                },
            )
        return result

    def _apply_sample(
        self,
        asset: TrackedAsset,
        metrics: MetricSnapshot,
        now: float,
        policy: PhasePolicy,
    ) -> MomentumResult:
        asset.append_sample(HistorySample.from_metrics(now, metrics))
        result = self.scorer.score(asset.history, asset.score)
        phase_elapsed = asset.age(now) - policy.starts_at
        asset.metrics = metrics
        asset.score = result.score
        asset.confidence = self.scorer.confidence(
            len(asset.history), phase_elapsed, policy.duration
        )
        asset.updated_at = now
        return result

    def _record_failure(self, entry: TrackingEntry, exc: BaseException) -> None:
        entry.consecutive_failures += 1
        warn_once_per(
            5,
            f"collect:{entry.asset_id}",
            "metric collection failed for %s (%d in a row): %s",
            entry.asset_id,
            entry.consecutive_failures,
            exc,
            logger=log,
        )
        if entry.consecutive_failures >= self.degraded_after and not entry.degraded:
            entry.degraded = True
            self._publish(
                AlertType.DEGRADED_TRACKING,
                entry.asset_id,
                Priority.HIGH,
                {
                    "phase": entry.phase.value,
                    "consecutive_failures": entry.consecutive_failures,
                    "error": str(exc),
                },
            )

    def _record_success(self, entry: TrackingEntry) -> None:
        if entry.degraded:
            log.info("metric collection recovered for %s", entry.asset_id)
        entry.consecutive_failures = 0
        entry.degraded = False

    # ------------------------------------------------------------------
    # phase boundaries
    # ------------------------------------------------------------------
    async def _on_boundary(self, asset_id: str) -> None:
        entry = self.registry.get(asset_id)
        if entry is None or not entry.tracked:
            return
        async with entry.lock:
            if not entry.tracked:
                return
            entry.boundary_handle = None
            try:
                await self._advance(entry)
            except _RecordMissing:
                await self._forget(entry, "record missing at phase boundary")
            except _Untracked:
                return
            except Exception:
                log.exception("phase transition failed for %s", asset_id)

    async def _advance(self, entry: TrackingEntry) -> None:
        current = entry.phase
        if current is Phase.EVALUATION:
            await self._evaluate(entry)
            return
        target = self.policies.next_phase(current)
        if target is None:
            return
        now = self.clock.now()

        def _apply(asset: TrackedAsset) -> None:
            self._transition(asset, target, now)

        asset, _ = await self._update(entry, _apply)
        self._after_transition(entry, asset, current, target)

    async def _evaluate(self, entry: TrackingEntry) -> None:
        now = self.clock.now()

        def _apply(asset: TrackedAsset) -> Tuple[GradeResult, Phase]:
            grade = self.scorer.grade(asset.history)
            asset.assign_grade(grade.letter, now)
            asset.score = grade.score
            asset.confidence = grade.confidence
            target = Phase.EXTENDED if self.scorer.qualifies_for_extended(grade) else Phase.ARCHIVED
            self._transition(asset, target, now)
            return grade, target

        asset, (grade, target) = await self._update(entry, _apply)
        log.info(
            "graded %s %s (score %.0f, confidence %.2f) -> %s",
            asset.id,
            grade.letter,
            grade.score,
            grade.confidence,
            target.value,
        )
        self._publish(
            AlertType.EVALUATION,
            asset.id,
            grade_priority(grade.letter),
            {
                "grade": grade.letter,
                "score": grade.score,
                "confidence": grade.confidence,
                "next_phase": target.value,
            },
        )
        self._after_transition(entry, asset, Phase.EVALUATION, target)

    def _transition(self, asset: TrackedAsset, target: Phase, now: float) -> None:
        asset.advance_phase(target)
        asset.history = self.compactor.compact(asset.history, target, now)
        if target.terminal:
            asset.active = False
        asset.updated_at = now

    def _after_transition(
        self, entry: TrackingEntry, asset: TrackedAsset, previous: Phase, target: Phase
    ) -> None:
        entry.phase = target
        entry.phase_started_at = self.clock.now()
        self._publish(
            AlertType.PHASE_TRANSITION,
            asset.id,
            Priority.MEDIUM,
            {
                "from": previous.value,
                "to": target.value,
                "age_hours": round(asset.age(self.clock.now()) / HOUR, 2),
                "score": asset.score,
            },
        )
        if target.terminal:
            self.registry.pop(entry.asset_id)
            entry.tracked = False
            entry.cancel_timers()
            log.info("archived %s with grade %s", asset.id, asset.grade)
            self._publish(
                AlertType.ARCHIVED,
                asset.id,
                Priority.LOW,
                {"grade": asset.grade, "score": asset.score, "from": previous.value},
            )
            return
        if entry.tick_handle is not None:
            entry.tick_handle.cancel()
            entry.tick_handle = None
        self._schedule_tick(entry)
        self._schedule_boundary(entry, asset)

    # ------------------------------------------------------------------
    # persistence helpers
    # ------------------------------------------------------------------
    async def _update(
        self, entry: TrackingEntry, mutate: Callable[[TrackedAsset], T]
    ) -> Tuple[TrackedAsset, T]:
        """Load, mutate and save one record, retrying once on a version conflict."""

        for attempt in (1, 2):
            asset = await self.repository.get(entry.asset_id)
            if asset is None:
                raise _RecordMissing(entry.asset_id)
            result = mutate(asset)
            if not entry.tracked:
                raise _Untracked(entry.asset_id)
            try:
                await self.repository.save(asset)
            except ConflictError as exc:
                if attempt == 2:
                    raise
                log.debug("retrying save for %s after conflict: %s", entry.asset_id, exc)
                continue
            return asset, result
        raise AssertionError("unreachable")  # pragma: no cover

    async def _forget(self, entry: TrackingEntry, reason: str) -> None:
        """Drop an asset whose backing record vanished."""

        log.info("stopping %s: %s", entry.asset_id, reason)
        if self.registry.get(entry.asset_id) is entry:
            self.registry.pop(entry.asset_id)
        entry.tracked = False
        entry.cancel_timers()

    # ------------------------------------------------------------------
    # scheduling
    # ------------------------------------------------------------------
    def _schedule_tick(self, entry: TrackingEntry) -> None:
        if entry.tick_handle is not None:
            entry.tick_handle.cancel()
        interval = self.policies[entry.phase].interval
        entry.tick_handle = self.clock.call_later(
            interval, partial(self.tick, entry.asset_id), name=f"tick:{entry.asset_id}"
        )
        entry.next_update_at = entry.tick_handle.when

    def _schedule_boundary(self, entry: TrackingEntry, asset: TrackedAsset) -> None:
        if entry.boundary_handle is not None:
            entry.boundary_handle.cancel()
        policy = self.policies[entry.phase]
        delay = policy.ends_at - asset.age(self.clock.now())
        entry.boundary_handle = self.clock.call_later(
            max(0.0, delay),
            partial(self._on_boundary, entry.asset_id),
            name=f"boundary:{entry.asset_id}",
        )

    def _publish(
        self, kind: AlertType, asset_id: str, priority: Priority, payload: Dict[str, Any]
    ) -> None:
        self.bus.publish(
            Alert(
                type=kind,
                asset_id=asset_id,
                timestamp=self.clock.now(),
                priority=priority,
                payload=payload,
            )
        )


__all__ = [
    "LifecycleStateMachine",
    "TrackingRegistry",
    "TrackingEntry",
    "momentum_priority",
    "grade_priority",
    "DEFAULT_DEGRADED_AFTER",
]
