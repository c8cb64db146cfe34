from __future__ import annotations

import pytest

from mintwatch.tracking.errors import InvalidError
from mintwatch.tracking.types import HistorySample, MetricSnapshot, Phase
from tests.tracking.fakes import T0, make_asset


def _sample(ts: float) -> HistorySample:
    return HistorySample.from_metrics(ts, MetricSnapshot(1.0, 100.0, 10, 1000.0))


def test_phase_only_moves_forward() -> None:
    asset = make_asset(phase=Phase.ACTIVE)

    with pytest.raises(InvalidError):
        asset.advance_phase(Phase.INTENSIVE)
    with pytest.raises(InvalidError):
        asset.advance_phase(Phase.ACTIVE)
    assert asset.phase is Phase.ACTIVE

    asset.advance_phase(Phase.ARCHIVED)
    assert asset.phase is Phase.ARCHIVED
    with pytest.raises(InvalidError):
        asset.advance_phase(Phase.EXTENDED)


def test_history_rejects_out_of_order_samples() -> None:
    asset = make_asset()
    asset.append_sample(_sample(T0 + 60))

    with pytest.raises(InvalidError):
        asset.append_sample(_sample(T0 + 30))
    assert [s.timestamp for s in asset.history] == [T0, T0 + 60]

    asset.append_sample(_sample(T0 + 60))
    assert len(asset.history) == 3


def test_grade_is_assigned_once() -> None:
    asset = make_asset()
    asset.assign_grade("B", T0 + 86_400)

    with pytest.raises(InvalidError):
        asset.assign_grade("A", T0 + 90_000)
    assert (asset.grade, asset.graded_at) == ("B", T0 + 86_400)
