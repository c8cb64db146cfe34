"""History retention and hourly compaction."""

from __future__ import annotations

import logging
from collections import OrderedDict
from statistics import fmean
from typing import Dict, List, Sequence

from .policy import HOUR, PhasePolicyTable
from .types import HistorySample, Phase

log = logging.getLogger(__name__)


def hour_start(timestamp: float) -> float:
    """Return the UTC hour boundary at or before ``timestamp``."""

    return float(int(timestamp // HOUR) * HOUR)


class RetentionCompactor:
    """Apply the phase retention window or collapse history to hourly points.

    Archival compaction is lossy: once an asset is archived its minute level
    samples are gone for good.
    """

    def __init__(self, policies: PhasePolicyTable) -> None:
        self._policies = policies

    def compact(
        self, history: Sequence[HistorySample], phase: Phase, now: float
    ) -> List[HistorySample]:
        if phase is Phase.ARCHIVED:
            return self.hourly_summaries(history)
        policy = self._policies[phase]
        cutoff = now - policy.retention
        kept = [sample for sample in history if sample.timestamp >= cutoff]
        dropped = len(history) - len(kept)
        if dropped:
            log.debug("retention(%s) dropped %d samples older than %.0f", phase.value, dropped, cutoff)
        return kept

    @staticmethod
    def hourly_summaries(history: Sequence[HistorySample]) -> List[HistorySample]:
        buckets: Dict[float, List[HistorySample]] = OrderedDict()
        for sample in history:
            buckets.setdefault(hour_start(sample.timestamp), []).append(sample)

        summaries = [
            HistorySample(
                timestamp=start,
                price=fmean(s.price for s in points),
                volume=max(s.volume for s in points),
                holders=max(s.holders for s in points),
                liquidity=fmean(s.liquidity for s in points),
            )
            for start, points in buckets.items()
        ]
        summaries.sort(key=lambda s: s.timestamp)
        return summaries


__all__ = ["RetentionCompactor", "hour_start"]
