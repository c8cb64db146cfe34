"""Typed records used by the lifecycle tracking engine."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from .errors import InvalidError


class Phase(str, Enum):
    """Lifecycle stage of a tracked asset."""

    INTENSIVE = "intensive"
    ACTIVE = "active"
    EVALUATION = "evaluation"
    EXTENDED = "extended"
    ARCHIVED = "archived"

    @property
    def rank(self) -> int:
        return _PHASE_RANK[self]

    @property
    def terminal(self) -> bool:
        return self is Phase.ARCHIVED


# Archived is reachable straight from evaluation or after extended tracking.
_PHASE_RANK: Dict[Phase, int] = {
    Phase.INTENSIVE: 0,
    Phase.ACTIVE: 1,
    Phase.EVALUATION: 2,
    Phase.EXTENDED: 3,
    Phase.ARCHIVED: 4,
}


class Trend(str, Enum):
    BULLISH = "bullish"
    BEARISH = "bearish"
    NEUTRAL = "neutral"


class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class AlertType(str, Enum):
    TRACKING_STARTED = "tracking_started"
    TRACKING_STOPPED = "tracking_stopped"
    MOMENTUM = "momentum"
    PHASE_TRANSITION = "phase_transition"
    EVALUATION = "24h_evaluation"
    ARCHIVED = "archived"
    DEGRADED_TRACKING = "degraded_tracking"


@dataclass(slots=True)
class MetricSnapshot:
    """Point-in-time market metrics for an asset."""

    price: float = 0.0
    volume: float = 0.0
    holders: int = 0
    liquidity: float = 0.0


@dataclass(slots=True)
class HistorySample:
    timestamp: float
    price: float
    volume: float
    holders: int
    liquidity: float

    @classmethod
    def from_metrics(cls, timestamp: float, metrics: MetricSnapshot) -> "HistorySample":
        return cls(
            timestamp=float(timestamp),
            price=float(metrics.price),
            volume=float(metrics.volume),
            holders=int(metrics.holders),
            liquidity=float(metrics.liquidity),
        )


@dataclass(slots=True)
class MomentumResult:
    """Output of :meth:`MomentumScorer.score`."""

    score: float
    change: float
    velocity: float
    trend: Trend


@dataclass(slots=True)
class GradeResult:
    letter: str
    score: float
    confidence: float


@dataclass
class TrackedAsset:
    """A discovered asset and everything the engine has learned about it.

    ``history`` is append-only while the asset is in an observation phase and
    is rewritten by the retention compactor on phase change.  ``version`` is
    bumped by the repository on every successful save.
    """

    id: str
    created_at: float
    name: Optional[str] = None
    symbol: Optional[str] = None
    creator: Optional[str] = None
    phase: Phase = Phase.INTENSIVE
    metrics: MetricSnapshot = field(default_factory=MetricSnapshot)
    history: List[HistorySample] = field(default_factory=list)
    score: float = 50.0
    confidence: float = 0.0
    grade: Optional[str] = None
    graded_at: Optional[float] = None
    active: bool = True
    updated_at: Optional[float] = None
    version: int = 0

    def age(self, now: float) -> float:
        """Return seconds elapsed since creation."""

        return max(0.0, now - self.created_at)

    def latest_sample(self) -> Optional[HistorySample]:
        return self.history[-1] if self.history else None

    def append_sample(self, sample: HistorySample) -> None:
        last = self.latest_sample()
        if last is not None and sample.timestamp < last.timestamp:
            raise InvalidError(
                f"sample at {sample.timestamp} precedes last sample at {last.timestamp} for {self.id}"
            )
        self.history.append(sample)

    def advance_phase(self, phase: Phase) -> None:
        if phase.rank <= self.phase.rank:
            raise InvalidError(
                f"cannot move {self.id} from {self.phase.value} to {phase.value}"
            )
        self.phase = phase

    def assign_grade(self, letter: str, at: float) -> None:
        if self.grade is not None:
            raise InvalidError(f"{self.id} already graded {self.grade}")
        self.grade = letter
        self.graded_at = at

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["phase"] = self.phase.value
        return payload

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "TrackedAsset":
        metrics_raw = data.get("metrics") or {}
        history_raw = data.get("history") or []
        return cls(
            id=str(data["id"]),
            created_at=float(data["created_at"]),
            name=data.get("name"),
            symbol=data.get("symbol"),
            creator=data.get("creator"),
            phase=Phase(data.get("phase", Phase.INTENSIVE.value)),
            metrics=MetricSnapshot(**dict(metrics_raw)),
            history=[HistorySample(**dict(item)) for item in history_raw],
            score=float(data.get("score", 50.0)),
            confidence=float(data.get("confidence", 0.0)),
            grade=data.get("grade"),
            graded_at=data.get("graded_at"),
            active=bool(data.get("active", True)),
            updated_at=data.get("updated_at"),
            version=int(data.get("version", 0)),
        )


@dataclass(slots=True)
class Alert:
    type: AlertType
    asset_id: str
    timestamp: float
    priority: Priority = Priority.LOW
    payload: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "asset_id": self.asset_id,
            "timestamp": self.timestamp,
            "priority": self.priority.value,
            "payload": dict(self.payload),
        }


@dataclass(slots=True)
class SignatureInfo:
    """Entry returned by ``getSignaturesForAddress``."""

    signature: str
    slot: int = 0
    block_time: Optional[float] = None
    err: Any = None


@dataclass(slots=True)
class ChainEvent:
    signature: str
    slot: int
    block_time: Optional[float]


@dataclass(slots=True)
class AssetCreatedEvent(ChainEvent):
    mint: str
    creator: Optional[str] = None
    name: Optional[str] = None
    symbol: Optional[str] = None


@dataclass(slots=True)
class TransferEvent(ChainEvent):
    mint: Optional[str]
    source: Optional[str]
    destination: Optional[str]
    amount: float


@dataclass(slots=True)
class UnclassifiedEvent(ChainEvent):
    programs: List[str] = field(default_factory=list)


NewAssetEvent = AssetCreatedEvent


__all__ = [
    "Phase",
    "Trend",
    "Priority",
    "AlertType",
    "MetricSnapshot",
    "HistorySample",
    "MomentumResult",
    "GradeResult",
    "TrackedAsset",
    "Alert",
    "SignatureInfo",
    "ChainEvent",
    "AssetCreatedEvent",
    "TransferEvent",
    "UnclassifiedEvent",
    "NewAssetEvent",
]
