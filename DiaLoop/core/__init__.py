"""Core components shared by the DiaLoop dosing engine and learning chain.

Key Contents:
    - `EngineConfig`: Every dosing tunable, the style enums and their
      preset multipliers, built per cycle from a preference mapping.
    - `TrendEstimator`: Smoothed slope, acceleration and consistency from
      a raw glucose series.
    - `BaseGlucoseHistoryProvider`, `BaseInsulinDeliveryProvider`,
      `BaseLearningStore`: ABCs for the host-supplied collaborators.
"""

from .base_classes import (
    BaseGlucoseHistoryProvider,
    BaseInsulinDeliveryProvider,
    BaseLearningStore,
    BgPoint,
    InsulinDelivery,
)
from .engine_config import (
    CorrectionStyle,
    DoseDistributionStyle,
    EngineConfig,
    MealDetectSpeed,
    ProfileStyle,
)
from .trends import TrendEstimator, TrendResult

__all__ = [
    "BaseGlucoseHistoryProvider",
    "BaseInsulinDeliveryProvider",
    "BaseLearningStore",
    "BgPoint",
    "InsulinDelivery",
    "EngineConfig",
    "ProfileStyle",
    "MealDetectSpeed",
    "CorrectionStyle",
    "DoseDistributionStyle",
    "TrendEstimator",
    "TrendResult",
]
