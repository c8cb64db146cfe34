"""Momentum scoring and 24-hour grading."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Mapping, Sequence

from .types import GradeResult, HistorySample, MomentumResult, Trend

_EPSILON = 1e-12


def clamp(value: float, minimum: float, maximum: float) -> float:
    """Return ``value`` bounded by ``minimum`` and ``maximum``."""

    return max(minimum, min(maximum, value))


def _growth(latest: float, base: float, *, floor: float = _EPSILON) -> float:
    return (latest - base) / max(base, floor)


@dataclass(frozen=True)
class ScoringWeights:
    """Heuristic weights and cutoffs.

    The defaults carry no calibration data behind them; they are kept as
    policy so operators can tune them from configuration.
    """

    neutral_score: float = 50.0
    price_weight: float = 0.3
    volume_weight: float = 0.2
    holder_weight: float = 0.5
    trend_band: float = 5.0
    confidence_phase_weight: float = 0.6
    confidence_sample_weight: float = 0.4
    confidence_sample_target: int = 10

    grade_base: float = 30.0
    grade_price_weight: float = 30.0
    grade_volume_weight: float = 20.0
    grade_holder_weight: float = 40.0
    grade_min_samples: int = 5
    grade_confidence_target: int = 20
    insufficient_confidence: float = 0.1
    grade_cutoffs: Mapping[str, float] = field(
        default_factory=lambda: {"A": 90.0, "B": 80.0, "C": 70.0, "D": 60.0}
    )
    extended_cutoff: float = 80.0


class MomentumScorer:
    """Stateless scorer over an asset's metric history."""

    def __init__(self, weights: ScoringWeights | None = None) -> None:
        self.weights = weights or ScoringWeights()

    def score(
        self, history: Sequence[HistorySample], previous_score: float | None = None
    ) -> MomentumResult:
        """Score the latest sample against its immediate predecessor."""

        w = self.weights
        if len(history) < 2:
            return MomentumResult(score=w.neutral_score, change=0.0, velocity=0.0, trend=Trend.NEUTRAL)

        latest, prev = history[-1], history[-2]
        price_delta = _growth(latest.price, prev.price)
        volume_delta = _growth(latest.volume, prev.volume)
        holder_delta = _growth(latest.holders, prev.holders, floor=1.0)

        raw = w.neutral_score + 100.0 * (
            w.price_weight * price_delta
            + w.volume_weight * volume_delta
            + w.holder_weight * holder_delta
        )
        current = float(round(clamp(raw, 0.0, 100.0)))
        baseline = w.neutral_score if previous_score is None else previous_score
        change = float(round(current - baseline))

        elapsed_min = (latest.timestamp - prev.timestamp) / 60.0
        velocity = round(change / elapsed_min, 2) if elapsed_min > 0 else 0.0

        if change > w.trend_band:
            trend = Trend.BULLISH
        elif change < -w.trend_band:
            trend = Trend.BEARISH
        else:
            trend = Trend.NEUTRAL
        return MomentumResult(score=current, change=change, velocity=velocity, trend=trend)

    def confidence(self, samples: int, phase_elapsed: float, phase_duration: float) -> float:
        w = self.weights
        phase_fraction = clamp(phase_elapsed / phase_duration, 0.0, 1.0) if phase_duration > 0 else 1.0
        sample_fraction = min(1.0, samples / max(1, w.confidence_sample_target))
        blended = w.confidence_phase_weight * phase_fraction + w.confidence_sample_weight * sample_fraction
        return round(min(1.0, blended), 4)

    def letter(self, score: float) -> str:
        for letter, cutoff in sorted(
            self.weights.grade_cutoffs.items(), key=lambda item: item[1], reverse=True
        ):
            if score >= cutoff:
                return letter
        return "F"

    def grade(self, history: Sequence[HistorySample]) -> GradeResult:
        """Grade 24h performance from the first and latest samples."""

        w = self.weights
        if len(history) < w.grade_min_samples:
            return GradeResult(letter="F", score=0.0, confidence=w.insufficient_confidence)

        initial, latest = history[0], history[-1]
        price_growth = _growth(latest.price, initial.price)
        volume_growth = _growth(latest.volume, initial.volume, floor=1.0)
        holder_growth = _growth(latest.holders, initial.holders, floor=1.0)

        composite = clamp(
            w.grade_base
            + w.grade_price_weight * price_growth
            + w.grade_volume_weight * volume_growth
            + w.grade_holder_weight * holder_growth,
            0.0,
            100.0,
        )
        score = float(round(composite))
        confidence = min(1.0, len(history) / max(1, w.grade_confidence_target))
        return GradeResult(letter=self.letter(score), score=score, confidence=confidence)

    def qualifies_for_extended(self, result: GradeResult) -> bool:
        return result.score >= self.weights.extended_cutoff


__all__ = ["ScoringWeights", "MomentumScorer", "clamp"]
