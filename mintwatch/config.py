"""Settings schema and loader.

Settings come from an optional TOML or YAML file, then ``MINTWATCH_*``
environment variables override individual values.  Durations are seconds.
"""

from __future__ import annotations

import os
import tomllib
from pathlib import Path
from typing import Any, Dict, Mapping, MutableMapping

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .tracking.errors import ConfigurationError
from .tracking.ledger import DEFAULT_RPC_URL, PUMP_FUN_PROGRAM_ID
from .tracking.collector import DEFAULT_BASE_URL
from .tracking.policy import DEFAULT_POLICIES, OBSERVATION_PHASES, PhasePolicy, PhasePolicyTable
from .tracking.scoring import ScoringWeights
from .tracking.types import Phase

_PHASE_NAMES = {phase.value for phase in OBSERVATION_PHASES}


def _check_url(value: str) -> str:
    if not value.startswith(("http://", "https://")):
        raise ValueError(f"expected an http(s) url, got {value!r}")
    return value.rstrip("/")


class PhasePolicyModel(BaseModel):
    model_config = ConfigDict(extra="forbid")

    interval: float = Field(gt=0)
    alert_threshold: float = Field(ge=0)
    retention: float = Field(gt=0)
    starts_at: float = Field(ge=0)
    ends_at: float = Field(gt=0)

    @model_validator(mode="after")
    def _window_order(self) -> "PhasePolicyModel":
        if self.ends_at <= self.starts_at:
            raise ValueError("ends_at must be greater than starts_at")
        return self

    def to_policy(self, phase: Phase) -> PhasePolicy:
        return PhasePolicy(
            phase=phase,
            interval=self.interval,
            alert_threshold=self.alert_threshold,
            retention=self.retention,
            starts_at=self.starts_at,
            ends_at=self.ends_at,
        )


def _default_phases() -> Dict[str, PhasePolicyModel]:
    return {
        phase.value: PhasePolicyModel(
            interval=row.interval,
            alert_threshold=row.alert_threshold,
            retention=row.retention,
            starts_at=row.starts_at,
            ends_at=row.ends_at,
        )
        for phase, row in DEFAULT_POLICIES.items()
    }


class PollerSettings(BaseModel):
    rpc_url: str = DEFAULT_RPC_URL
    program_id: str = PUMP_FUN_PROGRAM_ID
    signature_limit: int = Field(default=25, ge=1, le=1000)
    dedup_ttl: float = Field(default=300.0, gt=0)
    max_seen: int = Field(default=10_000, ge=1)
    backoff_base: float = Field(default=1.0, gt=0)
    backoff_factor: float = Field(default=2.0, ge=1)
    backoff_ceiling: float = Field(default=300.0, gt=0)
    request_timeout: float = Field(default=10.0, gt=0)

    @field_validator("rpc_url")
    @classmethod
    def _rpc_url(cls, value: str) -> str:
        return _check_url(value)

    @field_validator("program_id")
    @classmethod
    def _program_id_non_empty(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("program_id must be a non-empty string")
        return value

    @model_validator(mode="after")
    def _ceiling_above_base(self) -> "PollerSettings":
        if self.backoff_ceiling < self.backoff_base:
            raise ValueError("backoff_ceiling must be >= backoff_base")
        return self


class CollectorSettings(BaseModel):
    base_url: str = DEFAULT_BASE_URL
    timeout: float = Field(default=5.0, gt=0)
    requests_per_second: float = Field(default=1.0, ge=0)
    count_holders: bool = True

    @field_validator("base_url")
    @classmethod
    def _base_url(cls, value: str) -> str:
        return _check_url(value)


class ScoringSettings(BaseModel):
    neutral_score: float = 50.0
    price_weight: float = 0.3
    volume_weight: float = 0.2
    holder_weight: float = 0.5
    trend_band: float = Field(default=5.0, ge=0)
    confidence_sample_target: int = Field(default=10, ge=1)
    grade_base: float = 30.0
    grade_price_weight: float = 30.0
    grade_volume_weight: float = 20.0
    grade_holder_weight: float = 40.0
    grade_min_samples: int = Field(default=5, ge=1)
    grade_confidence_target: int = Field(default=20, ge=1)
    grade_cutoffs: Dict[str, float] = Field(
        default_factory=lambda: {"A": 90.0, "B": 80.0, "C": 70.0, "D": 60.0}
    )
    extended_cutoff: float = Field(default=80.0, ge=0, le=100)

    @field_validator("grade_cutoffs")
    @classmethod
    def _cutoffs_in_range(cls, value: Dict[str, float]) -> Dict[str, float]:
        for letter, cutoff in value.items():
            if not 0 <= cutoff <= 100:
                raise ValueError(f"grade cutoff {letter}={cutoff} outside [0, 100]")
        return value

    def weights(self) -> ScoringWeights:
        return ScoringWeights(**self.model_dump())


class AlertSettings(BaseModel):
    buffer_size: int = Field(default=1000, ge=1)
    subscriber_queue: int = Field(default=256, ge=1)
    degraded_after: int = Field(default=3, ge=1)
    retention_days: float = Field(default=7.0, gt=0)


class LoggingSettings(BaseModel):
    level: str = "INFO"
    json_logs: bool = False
    console: bool = True
    logfile: str | None = None


class TrackerSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    poller: PollerSettings = Field(default_factory=PollerSettings)
    collector: CollectorSettings = Field(default_factory=CollectorSettings)
    scoring: ScoringSettings = Field(default_factory=ScoringSettings)
    alerts: AlertSettings = Field(default_factory=AlertSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    phases: Dict[str, PhasePolicyModel] = Field(default_factory=_default_phases)

    @field_validator("phases")
    @classmethod
    def _all_phases_present(cls, value: Dict[str, PhasePolicyModel]) -> Dict[str, PhasePolicyModel]:
        unknown = sorted(set(value) - _PHASE_NAMES)
        if unknown:
            raise ValueError(f"unknown phase(s): {', '.join(unknown)}")
        missing = sorted(_PHASE_NAMES - set(value))
        if missing:
            raise ValueError(f"missing phase policy for: {', '.join(missing)}")
        return value

    def policy_table(self) -> PhasePolicyTable:
        return PhasePolicyTable(
            [model.to_policy(Phase(name)) for name, model in self.phases.items()]
        )


# (env var, section, key, converter)
_ENV_OVERRIDES: tuple[tuple[str, str, str, type], ...] = (
    ("MINTWATCH_RPC_URL", "poller", "rpc_url", str),
    ("MINTWATCH_PROGRAM_ID", "poller", "program_id", str),
    ("MINTWATCH_SIGNATURE_LIMIT", "poller", "signature_limit", int),
    ("MINTWATCH_DEDUP_TTL", "poller", "dedup_ttl", float),
    ("MINTWATCH_BACKOFF_BASE", "poller", "backoff_base", float),
    ("MINTWATCH_BACKOFF_CEILING", "poller", "backoff_ceiling", float),
    ("MINTWATCH_REQUEST_TIMEOUT", "poller", "request_timeout", float),
    ("MINTWATCH_DEXSCREENER_URL", "collector", "base_url", str),
    ("MINTWATCH_LOG_LEVEL", "logging", "level", str),
)


def _read_file(path: Path) -> Dict[str, Any]:
    if not path.is_file():
        raise ConfigurationError(f"config file not found: {path}")
    suffix = path.suffix.lower()
    try:
        if suffix == ".toml":
            with path.open("rb") as fh:
                data = tomllib.load(fh)
        elif suffix in {".yaml", ".yml"}:
            with path.open("r", encoding="utf-8") as fh:
                data = yaml.safe_load(fh) or {}
        else:
            raise ConfigurationError(f"unsupported config format: {path.suffix or path.name}")
    except (tomllib.TOMLDecodeError, yaml.YAMLError) as exc:
        raise ConfigurationError(f"cannot parse {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigurationError(f"{path} must contain a mapping at the top level")
    return data


def _apply_env(data: MutableMapping[str, Any], env: Mapping[str, str]) -> None:
    for name, section, key, convert in _ENV_OVERRIDES:
        raw = env.get(name)
        if raw is None or raw.strip() == "":
            continue
        try:
            value = convert(raw.strip())
        except ValueError as exc:
            raise ConfigurationError(f"{name}={raw!r} is not a valid {convert.__name__}") from exc
        block = data.setdefault(section, {})
        if not isinstance(block, dict):
            raise ConfigurationError(f"config section {section!r} must be a mapping")
        block[key] = value


def load_settings(
    path: str | Path | None = None, env: Mapping[str, str] | None = None
) -> TrackerSettings:
    """Build :class:`TrackerSettings` from ``path`` and the environment.

    ``path`` defaults to ``$MINTWATCH_CONFIG`` when set.  Every problem is
    reported as :class:`ConfigurationError`.
    """

    env = os.environ if env is None else env
    if path is None:
        path = env.get("MINTWATCH_CONFIG") or None
    data: Dict[str, Any] = _read_file(Path(path)) if path else {}
    _apply_env(data, env)
    try:
        settings = TrackerSettings.model_validate(data)
    except ValidationError as exc:
        raise ConfigurationError(str(exc)) from exc
    settings.policy_table()
    return settings


__all__ = [
    "PhasePolicyModel",
    "PollerSettings",
    "CollectorSettings",
    "ScoringSettings",
    "AlertSettings",
    "LoggingSettings",
    "TrackerSettings",
    "load_settings",
]
