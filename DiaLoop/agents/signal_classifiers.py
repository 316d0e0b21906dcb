"""
Signal Classifiers
Stateless per-cycle classification of meal likelihood, rising trend,
glucose zone and dose access tier.
"""

import math
from dataclasses import dataclass

from ..core.engine_config import EngineConfig
from ..sdk.data_types import AccessLevel, BgZone, EngineContext, MealState, TrendState
from ..utils.numeric import clamp01, lerp, safe_ratio

ZONE_COMMIT_FACTOR = {
    BgZone.LOW: 0.0,
    BgZone.IN_RANGE: 0.55,
    BgZone.MID: 0.75,
    BgZone.HIGH: 1.0,
    BgZone.EXTREME: 1.10,
}


@dataclass(frozen=True)
class MealSignal:
    state: MealState
    confidence: float
    reason: str


@dataclass(frozen=True)
class TrendSignal:
    state: TrendState
    persistent: bool
    reason: str

    @property
    def allows_large_actions(self) -> bool:
        return self.state == TrendState.RISING_CONFIRMED and self.persistent


def detect_meal_signal(ctx: EngineContext, config: EngineConfig) -> MealSignal:
    """Scores slope, acceleration and delta against profile-scaled thresholds.

    CONFIRMED needs all three conditions and the confirm confidence;
    UNCERTAIN needs two of three and the lower uncertain confidence.
    """
    if ctx.consistency < config.min_consistency:
        return MealSignal(MealState.NONE, 0.0, "Low consistency")

    mul = config.meal_detect_threshold_mul
    slope_min = config.meal_slope_min * mul
    accel_min = config.meal_accel_min * mul
    delta_min = config.meal_delta_min * mul

    slope_score = clamp01(safe_ratio(ctx.slope - slope_min, config.meal_slope_span))
    accel_score = clamp01(safe_ratio(ctx.acceleration - accel_min, config.meal_accel_span))
    delta_score = clamp01(safe_ratio(ctx.delta_to_target - delta_min, config.meal_delta_span))

    confidence = clamp01(
        (0.45 * slope_score + 0.35 * accel_score + 0.20 * delta_score)
        * config.meal_confidence_speed_mul
    )

    rising = ctx.slope >= slope_min
    accelerating = ctx.acceleration >= accel_min
    above = ctx.delta_to_target >= delta_min
    held = sum((rising, accelerating, above))

    if held == 3 and confidence >= config.meal_confirm_confidence:
        return MealSignal(MealState.CONFIRMED, confidence, f"Meal confirmed conf={confidence:.2f}")
    if held >= 2 and confidence >= config.meal_uncertain_confidence:
        return MealSignal(MealState.UNCERTAIN, confidence, f"Meal uncertain conf={confidence:.2f}")
    return MealSignal(MealState.NONE, confidence, "No meal pattern")


def meal_commit_fraction(signal: MealSignal, config: EngineConfig) -> float:
    """Fraction of the maximum single dose a meal signal may commit."""
    if signal.state == MealState.UNCERTAIN:
        t = safe_ratio(signal.confidence - config.meal_uncertain_confidence,
                       config.meal_confirm_confidence - config.meal_uncertain_confidence)
        return lerp(config.uncertain_min_fraction, config.uncertain_max_fraction, t)
    if signal.state == MealState.CONFIRMED:
        t = safe_ratio(signal.confidence - config.meal_confirm_confidence,
                       1.0 - config.meal_confirm_confidence)
        return lerp(config.confirm_min_fraction, config.confirm_max_fraction, t)
    return 0.0


def classify_trend(ctx: EngineContext, config: EngineConfig) -> TrendSignal:
    if ctx.consistency < config.min_consistency:
        return TrendSignal(TrendState.NONE, False, "TREND none: low consistency")
    if ctx.slope <= 0.15 and ctx.acceleration <= 0.05:
        return TrendSignal(TrendState.NONE, False, "TREND none: flat")
    if ctx.slope >= 0.95 and ctx.acceleration >= 0.18 and ctx.delta_to_target >= 1.8:
        return TrendSignal(TrendState.RISING_CONFIRMED, True, "TREND rising confirmed")
    if ctx.slope >= 0.45 and ctx.acceleration >= 0.10:
        return TrendSignal(TrendState.RISING_WEAK, False, "TREND rising weak")
    return TrendSignal(TrendState.NONE, False, "TREND none")


def classify_zone(ctx: EngineContext) -> BgZone:
    if ctx.bg <= 4.4:
        return BgZone.LOW
    delta = ctx.delta_to_target
    if delta <= 0.6:
        return BgZone.IN_RANGE
    if delta <= 2.0:
        return BgZone.MID
    if delta <= 4.5:
        return BgZone.HIGH
    return BgZone.EXTREME


def access_level(zone: BgZone, ctx: EngineContext, meal_like: bool) -> AccessLevel:
    """Dose tier for the zone and slope; meal-like context lifts BLOCKED to MICRO_ONLY."""
    if zone == BgZone.LOW:
        level = AccessLevel.BLOCKED
    elif zone == BgZone.IN_RANGE:
        if ctx.slope >= 0.6 and ctx.acceleration >= 0.10:
            level = AccessLevel.MICRO_ONLY
        else:
            level = AccessLevel.BLOCKED
    elif zone == BgZone.MID:
        if ctx.slope < 0.5:
            level = AccessLevel.MICRO_ONLY
        elif ctx.slope < 0.9:
            level = AccessLevel.SMALL
        else:
            level = AccessLevel.NORMAL
    else:
        level = AccessLevel.NORMAL

    if meal_like and level == AccessLevel.BLOCKED and zone != BgZone.LOW:
        level = AccessLevel.MICRO_ONLY
    return level


def access_cap(level: AccessLevel, config: EngineConfig) -> float:
    if level == AccessLevel.BLOCKED:
        return 0.0
    if level == AccessLevel.MICRO_ONLY:
        return max(0.05, config.micro_cap_frac_of_max_smb * config.max_smb)
    if level == AccessLevel.SMALL:
        return max(0.10, config.small_cap_frac_of_max_smb * config.max_smb)
    return math.inf
