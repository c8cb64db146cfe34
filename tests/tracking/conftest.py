from __future__ import annotations

import pytest

from mintwatch.tracking.alerts import AlertBus
from mintwatch.tracking.clock import ManualClock
from mintwatch.tracking.lifecycle import LifecycleStateMachine
from mintwatch.tracking.store import InMemoryAssetRepository
from tests.tracking.fakes import T0, FakeCollector, FakeLedger


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock(start=T0)


@pytest.fixture
def repository() -> InMemoryAssetRepository:
    return InMemoryAssetRepository()


@pytest.fixture
def bus() -> AlertBus:
    return AlertBus()


@pytest.fixture
def collector() -> FakeCollector:
    return FakeCollector()


@pytest.fixture
def ledger() -> FakeLedger:
    return FakeLedger()


@pytest.fixture
def engine(repository, collector, bus, clock) -> LifecycleStateMachine:
    return LifecycleStateMachine(repository, collector, bus, clock)

