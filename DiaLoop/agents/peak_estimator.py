"""
Peak Estimator
Predicts the top of an in-progress glucose rise and tracks a watch/confirm state machine
"""

import logging
import math
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from ..core.engine_config import EngineConfig
from ..sdk.data_types import EngineContext, MealState, PeakCategory, PeakState
from ..utils.numeric import clamp

logger = logging.getLogger(__name__)

PEAK_CATEGORY_THRESHOLDS = (
    (17.5, PeakCategory.EXTREME),
    (14.5, PeakCategory.HIGH),
    (11.8, PeakCategory.MEAL),
    (9.8, PeakCategory.MILD),
)

# IOB ratio divisors; a more severe predicted peak tolerates more insulin on board.
PEAK_IOB_BOOST = {
    PeakCategory.EXTREME: 1.55,
    PeakCategory.HIGH: 1.40,
    PeakCategory.MEAL: 1.25,
    PeakCategory.MILD: 1.10,
    PeakCategory.NONE: 1.0,
}


def classify_peak(predicted_peak: float) -> PeakCategory:
    for threshold, category in PEAK_CATEGORY_THRESHOLDS:
        if predicted_peak >= threshold:
            return category
    return PeakCategory.NONE


def iob_damping(iob_ratio: float, start: float, end: float,
                min_factor: float, power: float) -> float:
    """Power-curve damping factor from the IOB ratio.

    Returns 1.0 up to `start`, `min_factor` from `end` on, and
    `min + (1 - min) * (1 - x ** power)` in between.
    """
    r = clamp(iob_ratio, 0.0, 2.0)
    if r <= start:
        return 1.0
    if r >= end:
        return min_factor
    span = end - start
    if span <= 0.0:
        return min_factor
    x = clamp((r - start) / span, 0.0, 1.0)
    return min_factor + (1.0 - min_factor) * (1.0 - math.pow(x, power))


@dataclass
class PeakEstimate:
    """Result of one peak estimator update."""
    predicted_peak: float
    state: PeakState
    confirm_counter: int
    category: PeakCategory
    active: bool
    momentum: float
    rise: float


class PeakEstimator:
    """Per-episode peak prediction state.

    The engine owns one instance; nothing here is process-global.
    """

    def __init__(self):
        self.active = False
        self.started_at: Optional[datetime] = None
        self.start_bg = 0.0
        self.max_slope = 0.0
        self.max_accel = 0.0
        self.area = 0.0
        self.momentum = 0.0
        self.last_at: Optional[datetime] = None
        self.state = PeakState.IDLE
        self.confirm_counter = 0

    def reset(self) -> None:
        self.__init__()

    @staticmethod
    def should_activate(ctx: EngineContext, meal: MealState) -> bool:
        if meal != MealState.NONE:
            return True
        return ctx.consistency >= 0.45 and (
            ctx.delta_to_target >= 0.6
            or (ctx.acceleration >= 0.12 and ctx.slope >= 0.15)
        )

    @staticmethod
    def should_exit(ctx: EngineContext) -> bool:
        """Clear deceleration or return close to target."""
        falling = ctx.slope <= -0.6 and ctx.consistency >= 0.55
        settled = ctx.delta_to_target < 0.2 and ctx.acceleration <= 0.0
        return falling or settled

    def start(self, ctx: EngineContext) -> None:
        self.active = True
        self.started_at = ctx.now
        self.start_bg = ctx.bg
        self.max_slope = max(0.0, ctx.slope)
        self.max_accel = max(0.0, ctx.acceleration)
        self.area = 0.0
        self.momentum = 0.0
        self.last_at = ctx.now
        self.state = PeakState.IDLE
        self.confirm_counter = 0
        logger.debug(f"Peak episode started at bg={ctx.bg:.1f}")

    def stop(self) -> None:
        self.active = False
        self.state = PeakState.IDLE
        self.confirm_counter = 0

    def update(self, ctx: EngineContext, config: EngineConfig) -> PeakEstimate:
        """Accumulates episode memory and advances the watch/confirm machine."""
        now = ctx.now
        dt_min = 0.0
        if self.last_at is not None:
            dt_min = max(0.0, (now - self.last_at).total_seconds() / 60.0)
        dt_h = min(dt_min / 60.0, 0.2)
        self.last_at = now

        positive_area = 0.0
        if self.active and dt_h > 0.0:
            self.max_slope = max(self.max_slope, ctx.slope)
            self.max_accel = max(self.max_accel, ctx.acceleration)
            positive_area = max(0.0, ctx.slope) * dt_h
            self.area += positive_area
        half_life = max(config.peak_momentum_half_life_min, 1.0)
        self.momentum = self.momentum * math.pow(0.5, dt_min / half_life) + positive_area

        rise = max(0.0, ctx.bg - self.start_bg) if self.active else 0.0
        predicted = self.predict(ctx, config, rise)

        qualifies = (
            predicted >= config.peak_prediction_threshold
            and ctx.consistency >= config.peak_min_consistency
            and self.momentum >= config.peak_min_momentum
        )
        slope_ok = max(0.0, ctx.slope) >= config.peak_min_slope or self.max_slope >= config.peak_min_slope

        previous = self.state
        if self.state == PeakState.IDLE:
            if qualifies and slope_ok:
                self.state = PeakState.WATCHING
                self.confirm_counter = 1
        elif self.state == PeakState.WATCHING:
            if qualifies:
                self.confirm_counter += 1
                if self.confirm_counter >= config.peak_confirm_cycles:
                    self.state = PeakState.CONFIRMED
            else:
                self.state = PeakState.IDLE
                self.confirm_counter = 0
        elif self.state == PeakState.CONFIRMED:
            if ctx.acceleration < config.peak_exit_accel or ctx.slope < config.peak_exit_slope:
                self.state = PeakState.IDLE
                self.confirm_counter = 0
        if previous != self.state:
            logger.debug(f"Peak state {previous.name} -> {self.state.name} (pred={predicted:.1f})")

        return PeakEstimate(
            predicted_peak=predicted,
            state=self.state,
            confirm_counter=self.confirm_counter,
            category=classify_peak(predicted),
            active=self.active,
            momentum=self.momentum,
            rise=rise,
        )

    def predict(self, ctx: EngineContext, config: EngineConfig, rise: float) -> float:
        """Max of four conservative extrapolations, clamped to [bg, max]."""
        h = config.peak_prediction_horizon_h
        bg = ctx.bg
        v = max(0.0, ctx.slope)
        a = max(0.0, ctx.acceleration)
        local = bg + v * h + 0.5 * a * h * h

        v_mem = max(v, config.peak_use_max_slope_frac * self.max_slope)
        a_mem = max(a, config.peak_use_max_accel_frac * self.max_accel)
        memory = bg + v_mem * h + 0.5 * a_mem * h * h

        momentum_carry = bg + config.peak_momentum_gain * self.momentum
        rise_carry = bg + config.peak_rise_gain * rise

        predicted = max(local, memory, momentum_carry, rise_carry)
        upper = max(bg, config.peak_prediction_max_mmol)
        return clamp(predicted, bg, upper)
