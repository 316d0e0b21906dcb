# Tests for DiaLoop.sdk.delivery_executor

import pytest

from DiaLoop.sdk.delivery_executor import DeliveryExecutor, DeliverySettings, ceil_to_step, floor_to_step


@pytest.fixture
def executor():
    return DeliveryExecutor()


def test_zero_and_invalid_doses_cancel_basal(executor):
    for dose in (0.0, -0.3, float("nan")):
        result = executor.execute(dose)
        assert result.bolus_u == 0.0
        assert result.basal_rate_u_h == 0.0
        assert result.delivered_total_u == 0.0


def test_negative_cycle_length_rejected():
    with pytest.raises(ValueError):
        DeliveryExecutor(DeliverySettings(cycle_minutes=-5.0)).execute(0.5)


def test_small_dose_goes_to_basal(executor):
    result = executor.execute(0.2)
    assert result.bolus_u == 0.0
    assert result.basal_rate_u_h == pytest.approx(2.4)
    assert result.delivered_total_u == pytest.approx(0.2)


def test_hybrid_split_for_larger_dose(executor):
    result = executor.execute(1.0)
    assert result.bolus_u == pytest.approx(0.5)
    assert result.basal_rate_u_h == pytest.approx(6.0)
    assert result.delivered_total_u == pytest.approx(1.0)


def test_basal_cap_overflow_goes_to_bolus():
    settings = DeliverySettings(hybrid_percentage=100.0, max_temp_basal_rate=3.0)
    result = DeliveryExecutor(settings).execute(1.0)
    assert result.basal_rate_u_h <= 3.0
    assert result.bolus_u == pytest.approx(0.75)
    assert result.delivered_total_u <= 1.0 + 1e-9


def test_delivered_never_exceeds_dose_and_is_monotone(executor):
    """Delivered total grows with the commanded dose and never exceeds it."""
    previous = 0.0
    for i in range(1, 61):
        dose = 0.05 * i
        delivered = executor.execute(dose).delivered_total_u
        assert delivered <= dose + 1e-9
        assert delivered >= previous - 1e-9
        previous = delivered
    print("test_delivered_never_exceeds_dose_and_is_monotone: PASSED")


def test_step_rounding_helpers():
    assert floor_to_step(0.37, 0.05) == pytest.approx(0.35)
    assert ceil_to_step(0.31, 0.05) == pytest.approx(0.35)
    assert floor_to_step(-1.0, 0.05) == 0.0
    assert floor_to_step(0.37, 0.0) == pytest.approx(0.37)
