# Shared fixtures for the DiaLoop test suite

from datetime import timedelta

import pytest

from DiaLoop.sdk.data_types import EngineContext
from tests.helpers import T0, bg_series


@pytest.fixture
def t0():
    return T0


@pytest.fixture
def make_ctx():
    """Factory for EngineContext with quiet, in-range defaults."""
    def _make(minute=0, bg=5.5, slope=0.0, acceleration=0.0, consistency=0.9,
              recent_slope=0.0, recent_delta5m=0.0, iob=0.0, iob_ratio=0.0,
              target=5.5, isf=2.5, is_night=False):
        return EngineContext(
            now=T0 + timedelta(minutes=minute),
            bg=bg,
            slope=slope,
            acceleration=acceleration,
            consistency=consistency,
            recent_slope=recent_slope,
            recent_delta5m=recent_delta5m,
            iob=iob,
            iob_ratio=iob_ratio,
            delta_to_target=bg - target,
            effective_isf=isf,
            target_bg=target,
            is_night=is_night,
        )
    return _make


@pytest.fixture
def series():
    return bg_series
