"""Per-phase polling cadence, alert thresholds and retention windows."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, Iterator, Mapping, Optional

from .errors import ConfigurationError
from .types import Phase

HOUR = 3600.0
MINUTE = 60.0

OBSERVATION_PHASES: tuple[Phase, ...] = (
    Phase.INTENSIVE,
    Phase.ACTIVE,
    Phase.EVALUATION,
    Phase.EXTENDED,
)


@dataclass(frozen=True, slots=True)
class PhasePolicy:
    """One row of the policy table.

    ``starts_at`` and ``ends_at`` are ages in seconds measured from the
    asset's ``created_at``.
    """

    phase: Phase
    interval: float
    alert_threshold: float
    retention: float
    starts_at: float
    ends_at: float

    @property
    def duration(self) -> float:
        return max(0.0, self.ends_at - self.starts_at)


DEFAULT_POLICIES: Mapping[Phase, PhasePolicy] = {
    Phase.INTENSIVE: PhasePolicy(Phase.INTENSIVE, 2 * MINUTE, 10.0, 2 * HOUR, 0.0, 2 * HOUR),
    Phase.ACTIVE: PhasePolicy(Phase.ACTIVE, 15 * MINUTE, 15.0, 12 * HOUR, 2 * HOUR, 12 * HOUR),
    Phase.EVALUATION: PhasePolicy(
        Phase.EVALUATION, 30 * MINUTE, 20.0, 24 * HOUR, 12 * HOUR, 24 * HOUR
    ),
    Phase.EXTENDED: PhasePolicy(
        Phase.EXTENDED, 2 * HOUR, 25.0, 168 * HOUR, 24 * HOUR, 168 * HOUR
    ),
}


class PhasePolicyTable:
    """Immutable lookup of :class:`PhasePolicy` rows keyed by phase."""

    def __init__(self, policies: Mapping[Phase, PhasePolicy] | Iterable[PhasePolicy]) -> None:
        if isinstance(policies, Mapping):
            rows = dict(policies)
        else:
            rows = {row.phase: row for row in policies}
        missing = [phase.value for phase in OBSERVATION_PHASES if phase not in rows]
        if missing:
            raise ConfigurationError(f"missing phase policy for: {', '.join(missing)}")
        for phase, row in rows.items():
            if row.interval <= 0:
                raise ConfigurationError(f"{phase.value}: interval must be positive")
            if row.ends_at <= row.starts_at:
                raise ConfigurationError(f"{phase.value}: window must end after it starts")
        self._rows: Dict[Phase, PhasePolicy] = rows

    @classmethod
    def default(cls) -> "PhasePolicyTable":
        return cls(DEFAULT_POLICIES)

    def __getitem__(self, phase: Phase) -> PhasePolicy:
        try:
            return self._rows[phase]
        except KeyError:
            raise ConfigurationError(f"no policy for phase {phase.value}") from None

    def __iter__(self) -> Iterator[PhasePolicy]:
        return iter(self._rows[phase] for phase in OBSERVATION_PHASES)

    def get(self, phase: Phase) -> Optional[PhasePolicy]:
        return self._rows.get(phase)

    @property
    def evaluation_age(self) -> float:
        """Age at which the 24h grade is assigned."""

        return self._rows[Phase.EVALUATION].ends_at

    @property
    def extended_until(self) -> float:
        return self._rows[Phase.EXTENDED].ends_at

    def phase_for_age(self, age: float) -> Optional[Phase]:
        """Return the pre-evaluation phase that covers ``age``.

        ``None`` means the asset is past the evaluation boundary and its next
        phase depends on its grade.
        """

        for phase in (Phase.INTENSIVE, Phase.ACTIVE, Phase.EVALUATION):
            if age < self._rows[phase].ends_at:
                return phase
        return None

    def next_phase(self, phase: Phase) -> Optional[Phase]:
        if phase is Phase.INTENSIVE:
            return Phase.ACTIVE
        if phase is Phase.ACTIVE:
            return Phase.EVALUATION
        if phase is Phase.EXTENDED:
            return Phase.ARCHIVED
        return None


__all__ = [
    "HOUR",
    "MINUTE",
    "OBSERVATION_PHASES",
    "PhasePolicy",
    "PhasePolicyTable",
    "DEFAULT_POLICIES",
]
