# Tests for DiaLoop.agents.peak_estimator

import pytest

from DiaLoop.agents.peak_estimator import PeakEstimator, classify_peak, iob_damping
from DiaLoop.core.engine_config import EngineConfig
from DiaLoop.sdk.data_types import MealState, PeakCategory, PeakState


@pytest.fixture
def config():
    return EngineConfig().for_time_of_day(False)


def test_classify_peak_thresholds():
    assert classify_peak(8.0) == PeakCategory.NONE
    assert classify_peak(9.8) == PeakCategory.MILD
    assert classify_peak(12.0) == PeakCategory.MEAL
    assert classify_peak(15.0) == PeakCategory.HIGH
    assert classify_peak(18.0) == PeakCategory.EXTREME


def test_iob_damping_curve():
    assert iob_damping(0.2, 0.35, 1.05, 0.05, 2.0) == 1.0
    assert iob_damping(1.2, 0.35, 1.05, 0.05, 2.0) == pytest.approx(0.05)
    mid = iob_damping(0.7, 0.35, 1.05, 0.05, 2.0)
    assert 0.05 < mid < 1.0
    assert iob_damping(0.9, 0.35, 1.05, 0.05, 2.0) < mid


def test_prediction_never_below_current_bg(make_ctx, config):
    estimator = PeakEstimator()
    for slope in (-3.0, -0.5, 0.0, 1.0):
        ctx = make_ctx(bg=9.0, slope=slope, acceleration=-0.3)
        assert estimator.predict(ctx, config, rise=0.0) >= 9.0


def test_prediction_capped_at_maximum(make_ctx, config):
    estimator = PeakEstimator()
    ctx = make_ctx(bg=15.0, slope=12.0, acceleration=1.0)
    assert estimator.predict(ctx, config, rise=0.0) == pytest.approx(config.peak_prediction_max_mmol)


def test_watch_then_confirm_over_consecutive_cycles(make_ctx, config):
    """A steep, consistent rise moves IDLE -> WATCHING -> CONFIRMED."""
    estimator = PeakEstimator()
    first = make_ctx(minute=0, bg=9.0, slope=6.0, acceleration=0.1)
    assert PeakEstimator.should_activate(first, MealState.NONE)
    estimator.start(first)

    states = [estimator.update(first, config).state]
    for minute, bg in ((5, 9.5), (10, 10.0)):
        ctx = make_ctx(minute=minute, bg=bg, slope=6.0, acceleration=0.1)
        states.append(estimator.update(ctx, config).state)

    assert states == [PeakState.IDLE, PeakState.WATCHING, PeakState.CONFIRMED]
    print("test_watch_then_confirm_over_consecutive_cycles: PASSED")


def test_watching_falls_back_to_idle_when_rise_fades(make_ctx, config):
    estimator = PeakEstimator()
    estimator.start(make_ctx(minute=0, bg=9.0, slope=6.0))
    estimator.update(make_ctx(minute=0, bg=9.0, slope=6.0), config)
    assert estimator.update(make_ctx(minute=5, bg=9.5, slope=6.0), config).state == PeakState.WATCHING

    faded = estimator.update(make_ctx(minute=10, bg=9.5, slope=0.0, consistency=0.3), config)
    assert faded.state == PeakState.IDLE
    assert faded.confirm_counter == 0


def test_should_exit_on_fall_or_settle(make_ctx):
    assert PeakEstimator.should_exit(make_ctx(bg=9.0, slope=-1.0))
    assert PeakEstimator.should_exit(make_ctx(bg=5.6, slope=0.1, acceleration=-0.01))
    assert not PeakEstimator.should_exit(make_ctx(bg=9.0, slope=1.0, acceleration=0.1))


def test_stop_returns_to_idle(make_ctx, config):
    estimator = PeakEstimator()
    estimator.start(make_ctx(bg=9.0, slope=6.0))
    estimator.stop()
    assert not estimator.active
    assert estimator.update(make_ctx(minute=5, bg=9.0), config).state == PeakState.IDLE
