# Tests for DiaLoop.agents.downtrend_gate

import pytest

from DiaLoop.agents.downtrend_gate import DowntrendGate
from DiaLoop.sdk.data_types import DowntrendState


@pytest.fixture
def gate():
    return DowntrendGate()


def _locked_gate(gate, make_ctx):
    gate.update(make_ctx(minute=0, bg=7.5, recent_slope=-0.8, recent_delta5m=-0.07))
    decision = gate.update(make_ctx(minute=5, bg=7.4, recent_slope=-0.8, recent_delta5m=-0.07))
    assert decision.locked
    return gate


def test_soft_fall_pauses_without_locking(gate, make_ctx):
    decision = gate.update(make_ctx(bg=7.5, recent_slope=-0.3, recent_delta5m=-0.03))
    assert decision.pause_this_cycle
    assert decision.state == DowntrendState.OFF


def test_locks_after_repeated_hard_falls(gate, make_ctx):
    first = gate.update(make_ctx(minute=0, bg=7.5, recent_slope=-0.8))
    assert first.state == DowntrendState.OFF
    assert first.pause_this_cycle
    second = gate.update(make_ctx(minute=5, bg=7.4, recent_slope=-0.8))
    assert second.locked
    assert second.reason == "DOWNTREND LOCKED"


def test_hard_fall_counter_resets_on_interruption(gate, make_ctx):
    gate.update(make_ctx(minute=0, bg=7.5, recent_slope=-0.8))
    gate.update(make_ctx(minute=5, bg=7.5))
    assert not gate.update(make_ctx(minute=10, bg=7.4, recent_slope=-0.8)).locked


def test_no_lock_near_target(gate, make_ctx):
    for minute in (0, 5, 10):
        decision = gate.update(make_ctx(minute=minute, bg=5.7, recent_slope=-0.9))
        assert not decision.locked
        assert not decision.pause_this_cycle


def test_unlocks_immediately_on_renewed_rise(gate, make_ctx):
    _locked_gate(gate, make_ctx)
    decision = gate.update(make_ctx(minute=10, bg=7.3, recent_slope=0.3, recent_delta5m=0.03))
    assert decision.state == DowntrendState.OFF
    assert "rising" in decision.reason


def test_unlocks_after_plateau_hysteresis(gate, make_ctx):
    _locked_gate(gate, make_ctx)
    held = gate.update(make_ctx(minute=10, bg=7.3))
    assert held.locked
    released = gate.update(make_ctx(minute=15, bg=7.3))
    assert released.state == DowntrendState.OFF
    assert "plateau" in released.reason


def test_noisy_plateau_does_not_unlock(gate, make_ctx):
    _locked_gate(gate, make_ctx)
    for minute in (10, 15, 20):
        assert gate.update(make_ctx(minute=minute, bg=7.3, consistency=0.3)).locked


def test_caller_consistency_floor_applies(gate, make_ctx):
    # 0.42 is below the gate's own floor but above the engine's.
    assert not gate.update(make_ctx(bg=7.5, recent_slope=-0.3, consistency=0.42)).pause_this_cycle
    decision = gate.update(make_ctx(bg=7.5, recent_slope=-0.3, consistency=0.42), min_consistency=0.40)
    assert decision.pause_this_cycle
