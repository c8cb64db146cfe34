"""Read-side queries and housekeeping over the tracking engine."""

from __future__ import annotations

import logging
from collections import Counter
from statistics import fmean
from typing import Any, Dict, List

from .alerts import AlertBus
from .clock import Clock
from .errors import NotFoundError, TrackingError
from .lifecycle import LifecycleStateMachine
from .policy import HOUR
from .store import AssetRepository
from .types import AlertType, Phase, Priority, TrackedAsset

log = logging.getLogger(__name__)

DAY = 24 * HOUR

ANALYTICS_WINDOWS: Dict[str, float] = {
    "1h": HOUR,
    "6h": 6 * HOUR,
    "24h": DAY,
    "7d": 7 * DAY,
}

DASHBOARD_ALERTS = 50
TOP_PERFORMER_SCORE = 70.0
TOP_PERFORMER_LIMIT = 10


class TrackingService:
    def __init__(
        self,
        engine: LifecycleStateMachine,
        repository: AssetRepository,
        bus: AlertBus,
        clock: Clock,
        *,
        alert_retention: float = 7 * DAY,
    ) -> None:
        self.engine = engine
        self.repository = repository
        self.bus = bus
        self.clock = clock
        self.alert_retention = float(alert_retention)

    async def initialize(self) -> int:
        """Resume tracking for every active, non-archived asset.

        Assets that outlived their window while nothing was running catch up
        on the missed boundaries at once, so they are graded and archived.
        """

        candidates = await self.repository.find(
            lambda asset: asset.active and not asset.phase.terminal
        )
        resumed = 0
        for asset in sorted(candidates, key=lambda a: a.created_at):
            try:
                if await self.engine.start_tracking(asset.id):
                    resumed += 1
            except TrackingError as exc:
                log.warning("could not resume %s: %s", asset.id, exc)
        log.info("resumed tracking for %d of %d active assets", resumed, len(candidates))
        return resumed

    async def get_dashboard(self) -> Dict[str, Any]:
        now = self.clock.now()
        assets = await self.repository.find()
        counts = Counter(asset.phase.value for asset in assets)
        top = sorted(
            (a for a in assets if a.active and a.score >= TOP_PERFORMER_SCORE),
            key=lambda a: a.score,
            reverse=True,
        )[:TOP_PERFORMER_LIMIT]
        return {
            "counts_by_phase": {phase.value: counts.get(phase.value, 0) for phase in Phase},
            "tracked": len(self.engine.registry),
            "recent_alerts": [alert.to_dict() for alert in self.bus.recent(DASHBOARD_ALERTS)],
            "top_performers": [_summary(asset) for asset in top],
            "graded_today": sum(
                1 for a in assets if a.graded_at is not None and a.graded_at >= now - DAY
            ),
        }

    def get_alerts(
        self,
        *,
        type: AlertType | str | None = None,
        priority: Priority | str | None = None,
        since: float | None = None,
        asset_id: str | None = None,
        limit: int | None = None,
    ) -> List[Dict[str, Any]]:
        alerts = self.bus.query(type=type, priority=priority, since=since, asset_id=asset_id)
        if limit is not None:
            alerts = alerts[: max(0, limit)]
        return [alert.to_dict() for alert in alerts]

    async def get_asset_tracking_info(self, asset_id: str) -> Dict[str, Any]:
        asset = await self.repository.get(asset_id)
        if asset is None:
            raise NotFoundError(asset_id)
        entry = self.engine.registry.get(asset_id)
        return {
            "asset": asset.to_dict(),
            "phase": asset.phase.value,
            "tracked": entry is not None,
            "next_update_at": entry.next_update_at if entry is not None else None,
            "alerts": self.get_alerts(asset_id=asset_id),
            "timeline": self._timeline(asset),
        }

    def _qualified(self, asset: TrackedAsset) -> bool:
        """Whether the asset's 24h grade earned extended tracking."""

        if asset.grade is None:
            return False
        weights = self.engine.scorer.weights
        return weights.grade_cutoffs.get(asset.grade, 0.0) >= weights.extended_cutoff

    def _timeline(self, asset: TrackedAsset) -> List[Dict[str, Any]]:
        rows: List[Dict[str, Any]] = []
        for policy in self.engine.policies:
            phase = policy.phase
            if asset.phase is phase:
                status = "current"
            elif phase is Phase.EXTENDED and asset.phase is Phase.ARCHIVED:
                status = "completed" if self._qualified(asset) else "skipped"
            elif asset.phase.rank > phase.rank:
                status = "completed"
            else:
                status = "upcoming"
            rows.append(
                {
                    "phase": phase.value,
                    "starts_at": asset.created_at + policy.starts_at,
                    "ends_at": asset.created_at + policy.ends_at,
                    "interval": policy.interval,
                    "status": status,
                }
            )
        rows.append(
            {
                "phase": Phase.ARCHIVED.value,
                "starts_at": asset.updated_at if asset.phase is Phase.ARCHIVED else None,
                "ends_at": None,
                "interval": None,
                "status": "current" if asset.phase is Phase.ARCHIVED else "upcoming",
            }
        )
        return rows

    async def get_analytics(self, timeframe: str = "24h") -> Dict[str, Any]:
        try:
            window = ANALYTICS_WINDOWS[timeframe]
        except KeyError:
            raise ValueError(
                f"unknown timeframe {timeframe!r}; expected one of {', '.join(ANALYTICS_WINDOWS)}"
            ) from None
        since = self.clock.now() - window
        assets = await self.repository.find(lambda asset: asset.created_at >= since)
        graded = [a for a in assets if a.grade is not None]
        extended = [a for a in graded if self._qualified(a)]
        return {
            "timeframe": timeframe,
            "since": since,
            "total_assets": len(assets),
            "graded": len(graded),
            "extended": len(extended),
            "success_rate": round(100.0 * len(extended) / len(graded), 2) if graded else 0.0,
            "average_score": round(fmean(a.score for a in assets), 2) if assets else 0.0,
            "alerts_generated": len(self.bus.query(since=since)),
            "phase_distribution": dict(Counter(a.phase.value for a in assets)),
            "grade_distribution": dict(Counter(a.grade for a in graded)),
        }

    async def perform_maintenance(self) -> Dict[str, int]:
        pruned = self.bus.prune(self.clock.now() - self.alert_retention)
        if pruned:
            log.info("maintenance pruned %d alerts", pruned)
        return {"alerts_pruned": pruned, "tracked": len(self.engine.registry)}

    async def trigger_evaluation(
        self, *, min_age: float = 23 * HOUR, max_age: float = 25 * HOUR
    ) -> List[str]:
        """Tick every tracked asset whose age falls inside ``[min_age, max_age]``."""

        now = self.clock.now()
        ticked: List[str] = []
        for entry in self.engine.registry:
            asset = await self.repository.get(entry.asset_id)
            if asset is None:
                continue
            if min_age <= asset.age(now) <= max_age:
                await self.engine.tick(asset.id)
                ticked.append(asset.id)
        return ticked


def _summary(asset: TrackedAsset) -> Dict[str, Any]:
    return {
        "asset_id": asset.id,
        "name": asset.name,
        "symbol": asset.symbol,
        "phase": asset.phase.value,
        "score": asset.score,
        "confidence": asset.confidence,
        "grade": asset.grade,
    }


__all__ = ["TrackingService", "ANALYTICS_WINDOWS"]
