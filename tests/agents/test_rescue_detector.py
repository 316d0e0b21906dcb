# Tests for DiaLoop.agents.rescue_detector

from datetime import timedelta

import pytest

from DiaLoop.agents.rescue_detector import RescueDetector
from DiaLoop.sdk.data_types import RescueState


@pytest.fixture
def armed_detector(make_ctx):
    detector = RescueDetector()
    signal = detector.update(make_ctx(minute=0, bg=5.0, slope=-1.0, iob_ratio=0.4), 4.0, [], 0.0)
    assert signal.state == RescueState.ARMED
    return detector


def test_idle_without_low_risk(make_ctx):
    detector = RescueDetector()
    signal = detector.update(make_ctx(bg=7.0), 7.0, [], 0.0)
    assert signal.state == RescueState.IDLE
    assert signal.confidence == 0.0


def test_unreliable_data_never_arms(make_ctx):
    detector = RescueDetector()
    signal = detector.update(make_ctx(bg=5.0, slope=-1.0, consistency=0.2), 4.0, [], 0.0)
    assert signal.state == RescueState.IDLE


def test_rebound_without_insulin_confirms(armed_detector, make_ctx):
    signal = armed_detector.update(make_ctx(minute=10, bg=4.8, slope=0.3, acceleration=0.2), 5.0, [], 0.0)
    assert signal.confirmed
    assert 0.0 < signal.confidence <= 1.0
    print("test_rebound_without_insulin_confirms: PASSED")


def test_delivered_insulin_blocks_confirmation(armed_detector, make_ctx, t0):
    history = [(t0 + timedelta(minutes=2), 0.5)]
    signal = armed_detector.update(make_ctx(minute=10, bg=4.8, slope=0.3, acceleration=0.2), 5.0, history, 0.0)
    assert signal.state == RescueState.ARMED


def test_disarms_after_confirm_window(armed_detector, make_ctx):
    still = armed_detector.update(make_ctx(minute=20, bg=4.6, slope=-0.5), 4.0, [], 0.0)
    assert still.state == RescueState.ARMED
    signal = armed_detector.update(make_ctx(minute=35, bg=4.5, slope=-0.5), 4.0, [], 0.0)
    assert signal.state == RescueState.IDLE
    assert signal.reason == "RESCUE disarmed"


def test_confirmed_holds_through_cooldown(armed_detector, make_ctx):
    armed_detector.update(make_ctx(minute=10, bg=4.8, slope=0.3, acceleration=0.2), 5.0, [], 0.0)
    during = armed_detector.update(make_ctx(minute=30, bg=6.0), 6.0, [], 0.0)
    assert during.confirmed
    after = armed_detector.update(make_ctx(minute=60, bg=6.0), 6.0, [], 0.0)
    assert after.state == RescueState.IDLE


def test_engine_consistency_floor_decides_arming(make_ctx):
    ctx = make_ctx(bg=5.0, slope=-1.0, iob_ratio=0.4, consistency=0.42)
    assert RescueDetector().update(ctx, 4.0, [], 0.0).state == RescueState.IDLE
    assert RescueDetector().update(ctx, 4.0, [], 0.0, min_consistency=0.40).state == RescueState.ARMED
