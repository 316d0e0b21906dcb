# Tests for DiaLoop.agents.persistent_correction

import pytest

from DiaLoop.agents.persistent_correction import PersistentCorrectionController
from DiaLoop.core.engine_config import EngineConfig


@pytest.fixture
def config():
    return EngineConfig().for_time_of_day(False)


def test_fires_after_confirm_cycles_then_cools_down(make_ctx, config):
    controller = PersistentCorrectionController()
    building = controller.update(make_ctx(minute=0, bg=8.5), config)
    assert not building.active
    assert "building" in building.reason

    fired = controller.update(make_ctx(minute=5, bg=8.5), config)
    assert fired.active and fired.fired
    assert fired.dose_u == pytest.approx(0.3375)
    assert fired.dose_u <= config.max_smb * controller.settings.max_bolus_fraction

    cooling = controller.update(make_ctx(minute=10, bg=8.5), config)
    assert cooling.active
    assert not cooling.fired
    assert cooling.cooldown_left == 2


def test_holds_when_iob_is_high(make_ctx, config):
    controller = PersistentCorrectionController()
    result = controller.update(make_ctx(bg=8.5, iob_ratio=0.5), config)
    assert result.active
    assert not result.fired
    assert result.dose_u == 0.0


def test_inactive_while_rising(make_ctx, config):
    controller = PersistentCorrectionController()
    assert not controller.update(make_ctx(bg=8.5, slope=1.0), config).active


def test_night_threshold_is_higher(make_ctx):
    controller = PersistentCorrectionController()
    day_delta, _ = controller.thresholds(False, 1.0)
    night_delta, _ = controller.thresholds(True, 1.0)
    assert night_delta > day_delta
