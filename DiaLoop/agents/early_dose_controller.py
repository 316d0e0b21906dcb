"""
Early Dose Controller
Two-stage probe/boost dosing at the start of a rise, plus the tiered
micro-ramp floor driven by short-horizon signals.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from ..core.engine_config import EngineConfig
from ..sdk.data_types import BgZone, EngineContext, MealState, PeakState
from ..utils.numeric import clamp, clamp01, inv_smooth01, lerp, smooth01
from .peak_estimator import PeakEstimate
from .signal_classifiers import TrendSignal

logger = logging.getLogger(__name__)

EARLY_MIN_CONSISTENCY = 0.45
STAGE2_MIN_MINUTES_AFTER_STAGE1 = 5.0


@dataclass(frozen=True)
class EarlyDecision:
    """Outcome of one early-dose evaluation.

    `stage_to_fire` is 0 when nothing fires this cycle.
    """
    stage_to_fire: int
    target_u: float
    confidence: float
    reason: str
    blocked: bool = False


class EarlyDoseController:
    """Stage state for one rise episode.

    Stage 1 is a probe dose, stage 2 a boost that additionally needs the
    trend classifier to report a confirmed and persistent rise.
    """

    def __init__(self):
        self.stage = 0
        self.last_fire_at: Optional[datetime] = None
        self.last_confidence = 0.0

    def reset(self) -> None:
        self.stage = 0
        self.last_fire_at = None
        self.last_confidence = 0.0

    def protection_active(self, ctx: EngineContext, peak_state: PeakState) -> bool:
        return self.stage > 0 and ctx.acceleration >= 0.0 and peak_state != PeakState.CONFIRMED

    def evaluate(self, ctx: EngineContext, zone: BgZone, peak: PeakEstimate,
                 meal_state: MealState, trend: TrendSignal, config: EngineConfig) -> EarlyDecision:
        cons = ctx.consistency
        if cons < EARLY_MIN_CONSISTENCY:
            return EarlyDecision(0, 0.0, 0.0, "EARLY blocked: low consistency", blocked=True)
        if ctx.recent_delta5m <= -0.06 or ctx.recent_slope <= -0.2:
            return EarlyDecision(0, 0.0, 0.0, "EARLY blocked: short-term fall", blocked=True)
        if zone in (BgZone.LOW, BgZone.IN_RANGE) and ctx.iob_ratio >= 0.55:
            return EarlyDecision(0, 0.0, 0.0, "EARLY blocked: IOB in range", blocked=True)
        if peak.state == PeakState.CONFIRMED:
            return EarlyDecision(0, 0.0, 0.0, "EARLY blocked: peak confirmed", blocked=True)

        slope_score = smooth01((ctx.slope - 0.2) / 1.0)
        accel_score = smooth01((ctx.acceleration + 0.02) / 0.17)
        delta_score = smooth01(ctx.delta_to_target / 1.6)
        cons_score = smooth01((cons - 0.45) / 0.35)
        room_score = inv_smooth01((ctx.iob_ratio - 0.2) / 0.5)

        confidence = (
            0.32 * slope_score
            + 0.30 * accel_score
            + 0.18 * delta_score
            + 0.10 * cons_score
            + 0.10 * room_score
        )
        if peak.state == PeakState.WATCHING:
            confidence += 0.10
        if meal_state == MealState.CONFIRMED:
            confidence += 0.18
        elif meal_state == MealState.UNCERTAIN:
            confidence += 0.10
        if peak.predicted_peak >= 12.5 and ctx.iob_ratio <= 0.45:
            confidence += config.early_peak_escalation_bonus
        confidence = clamp01(confidence)

        stage2_min = 0.48 if peak.predicted_peak >= 16.0 else 0.55
        fast_onset = 0.75 if (ctx.acceleration >= 0.35 and ctx.iob_ratio <= 0.25) else 1.0
        stage1_min = clamp(0.28 * fast_onset * config.early_stage1_threshold_mul, 0.12, 0.45)
        if (ctx.slope >= 0.8 and ctx.acceleration >= 0.25
                and ctx.delta_to_target >= 2.5):
            stage1_min = clamp(stage1_min / max(config.meal_confidence_speed_mul, 1e-6), 0.10, 0.50)

        stage_to_fire = 0
        reason = f"EARLY idle conf={confidence:.2f}"
        if self.stage == 0 and confidence >= stage1_min:
            stage_to_fire = 1
        elif self.stage == 1 and confidence >= stage2_min:
            since = _minutes(self.last_fire_at, ctx.now)
            if since >= STAGE2_MIN_MINUTES_AFTER_STAGE1:
                if trend.allows_large_actions:
                    stage_to_fire = 2
                else:
                    reason = "EARLY: stage2 blocked (trend not confirmed)"

        if stage_to_fire == 0:
            return EarlyDecision(0, 0.0, confidence, reason)

        r = ctx.iob_ratio
        if stage_to_fire == 1:
            factor = lerp(0.40, 0.70, confidence)
        else:
            factor = lerp(0.55, 0.90, confidence)
        factor *= 1.0 - 0.35 * smooth01((r - 0.35) / 0.40)

        min_early_frac = 0.0
        if stage_to_fire == 1 and ctx.delta_to_target >= 0.8 and ctx.slope >= 0.35:
            min_early_frac = 0.2 + 0.1 * smooth01((ctx.slope - 0.35) / 0.65)
        min_early_u = 0.0
        if min_early_frac > 0.0:
            min_early_u = clamp(config.max_smb * min_early_frac, 0.10, config.max_smb * 0.35)

        target = max(config.max_smb * factor * config.dose_strength_mul, min_early_u)
        return EarlyDecision(
            stage_to_fire,
            target,
            confidence,
            f"EARLY stage{stage_to_fire} conf={confidence:.2f} target={target:.2f}",
        )

    def mark_fired(self, decision: EarlyDecision, now: datetime) -> None:
        if decision.stage_to_fire <= 0:
            return
        self.stage = max(self.stage, decision.stage_to_fire)
        self.last_fire_at = now
        self.last_confidence = decision.confidence
        logger.debug(f"Early stage {self.stage} fired (conf={decision.confidence:.2f})")


@dataclass(frozen=True)
class MicroRampTier:
    name: str
    rise_delta5m: float
    rise_slope: float
    rise_accel: float
    abort_delta5m: float
    abort_slope: float
    abort_accel: float
    dose_min: float
    dose_max: float
    ramp_from: float
    ramp_to: float


MEAL_TIER = MicroRampTier("MEAL", 0.06, 1.0, 0.08, -0.04, -0.15, -0.06, 0.05, 0.12, 0.06, 0.35)
FAST_TIER = MicroRampTier("FAST", 0.20, 2.8, 0.14, -0.03, -0.12, -0.05, 0.08, 0.15, 0.20, 0.55)

MICRO_IOB_MAX = 0.45
MICRO_MIN_CONSISTENCY = 0.45


@dataclass(frozen=True)
class MicroRampResult:
    active: bool
    dose_u: float
    tier: str
    reason: str


def _aborts(ctx: EngineContext, tier: MicroRampTier) -> bool:
    return (
        ctx.recent_delta5m <= tier.abort_delta5m
        or ctx.recent_slope <= tier.abort_slope
        or ctx.acceleration <= tier.abort_accel
    )


def micro_ramp(ctx: EngineContext, config: EngineConfig) -> MicroRampResult:
    """Tiny floor dose while a rise is just starting.

    Any short-horizon reversal cancels the ramp for the cycle.
    """
    if _aborts(ctx, MEAL_TIER):
        return MicroRampResult(False, 0.0, "", "MICRO abort")

    rd5 = ctx.recent_delta5m
    rs = ctx.recent_slope
    acc = ctx.acceleration
    mul = config.micro_ramp_threshold_mul

    safe = ctx.consistency >= MICRO_MIN_CONSISTENCY and ctx.iob_ratio <= MICRO_IOB_MAX and rd5 > 0.0
    if not safe:
        return MicroRampResult(False, 0.0, "", "MICRO unsafe")

    fast = rd5 >= FAST_TIER.rise_delta5m * mul or (
        rs >= FAST_TIER.rise_slope * mul and acc >= FAST_TIER.rise_accel * mul
    )
    meal = ctx.delta_to_target >= 0.8 * mul and (
        rd5 >= MEAL_TIER.rise_delta5m * mul
        or rs >= 0.6 * mul
        or (rs >= MEAL_TIER.rise_slope * mul and acc >= MEAL_TIER.rise_accel * mul)
    )

    tier = None
    if fast and not _aborts(ctx, FAST_TIER):
        tier = FAST_TIER
    elif meal:
        tier = MEAL_TIER
    if tier is None:
        return MicroRampResult(False, 0.0, "", "MICRO idle")

    t = smooth01((rd5 - tier.ramp_from) / (tier.ramp_to - tier.ramp_from))
    dose = (tier.dose_min + (tier.dose_max - tier.dose_min) * t) * config.micro_dose_mul
    dose = clamp(dose, tier.dose_min * 0.5, tier.dose_max * 1.5)
    return MicroRampResult(True, dose, tier.name, f"MICRO {tier.name} dose={dose:.2f}")


def _minutes(since: Optional[datetime], now: datetime) -> float:
    if since is None:
        return float("inf")
    return (now - since).total_seconds() / 60.0
