"""Lifecycle tracking engine and upstream chain poller."""

from .alerts import AlertBus, Subscription
from .clock import Clock, ManualClock, SystemClock, TimerHandle
from .collector import DexScreenerCollector, MetricCollector
from .errors import (
    ConfigurationError,
    ConflictError,
    InvalidError,
    NotFoundError,
    TrackingError,
    TransientError,
)
from .ledger import LedgerClient, SolanaRpcClient
from .lifecycle import LifecycleStateMachine, TrackingRegistry
from .policy import PhasePolicy, PhasePolicyTable
from .poller import Backoff, ChainPoller
from .retention import RetentionCompactor
from .scoring import MomentumScorer, ScoringWeights
from .service import TrackingService
from .store import AssetRepository, InMemoryAssetRepository
from .types import (
    Alert,
    AlertType,
    AssetCreatedEvent,
    HistorySample,
    MetricSnapshot,
    NewAssetEvent,
    Phase,
    Priority,
    TrackedAsset,
    TransferEvent,
)

__all__ = [
    "Alert",
    "AlertBus",
    "AlertType",
    "AssetCreatedEvent",
    "AssetRepository",
    "Backoff",
    "ChainPoller",
    "Clock",
    "ConfigurationError",
    "ConflictError",
    "DexScreenerCollector",
    "HistorySample",
    "InMemoryAssetRepository",
    "InvalidError",
    "LedgerClient",
    "LifecycleStateMachine",
    "ManualClock",
    "MetricCollector",
    "MetricSnapshot",
    "MomentumScorer",
    "NewAssetEvent",
    "NotFoundError",
    "Phase",
    "PhasePolicy",
    "PhasePolicyTable",
    "Priority",
    "RetentionCompactor",
    "ScoringWeights",
    "SolanaRpcClient",
    "Subscription",
    "SystemClock",
    "TimerHandle",
    "TrackedAsset",
    "TrackingError",
    "TrackingRegistry",
    "TrackingService",
    "TransferEvent",
    "TransientError",
]
