"""
DiaLoop SDK - Dose Shaper
Ordered, named dose-shaping stages over an immutable dose-in-progress record,
plus the pure numeric building blocks those stages use.
"""

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Callable, List, Optional, Sequence, Tuple

from ..core.engine_config import EngineConfig
from .data_types import (
    AccessLevel, BgZone, DiagnosticEntry, EngineContext, MealState, PeakState, ReserveCause,
)
from ..utils.numeric import clamp, clamp01, inv_smooth01, is_finite, lerp, smooth01

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DoseRecord:
    """Dose-in-progress passed from stage to stage.

    Attributes:
        dose: Current commanded dose in units.
        hard_stop: Name of the hard stop that forces the final dose to 0.
        halted: True when a stage ended the pipeline early.
        persistent_authority: True when the persistent-correction
            controller owns this cycle's dose.
        committed: True when a meal commit fired this cycle.
        diagnostics: Ordered (stage, key, value) entries.
    """
    dose: float = 0.0
    hard_stop: Optional[str] = None
    halted: bool = False
    persistent_authority: bool = False
    committed: bool = False
    diagnostics: Tuple[DiagnosticEntry, ...] = ()

    def note(self, stage: str, key: str, value: object = None) -> "DoseRecord":
        return replace(self, diagnostics=self.diagnostics + (DiagnosticEntry(stage, key, value),))

    def with_dose(self, dose: float, stage: str, key: str, value: object = None) -> "DoseRecord":
        return replace(self, dose=dose).note(stage, key, value if value is not None else dose)


Stage = Callable[[DoseRecord], DoseRecord]


class DoseShaper:
    """Runs named stages in order; stops after a stage sets `halted`."""

    def __init__(self, stages: Sequence[Tuple[str, Stage]]):
        self.stages: List[Tuple[str, Stage]] = list(stages)

    @property
    def stage_names(self) -> List[str]:
        return [name for name, _ in self.stages]

    def run(self, record: DoseRecord) -> DoseRecord:
        for name, stage in self.stages:
            record = stage(record)
            if record.halted:
                logger.debug(f"Dose pipeline halted at stage '{name}'")
                break
        return record


# --- energy model and decision layer ---------------------------------------------------

@dataclass(frozen=True)
class EnergyResult:
    energy: float
    stagnation_boost: float
    exhausted: bool
    raw_dose: float


def compute_energy(ctx: EngineContext, config: EngineConfig) -> EnergyResult:
    cons = max(ctx.consistency, config.min_consistency)
    base = (
        ctx.delta_to_target * config.k_delta
        + ctx.slope * config.k_slope
        + ctx.acceleration * config.k_accel
    )
    energy = base * cons ** config.consistency_exp

    reliable = ctx.consistency >= config.min_consistency
    exhausted = (
        ctx.delta_to_target >= 4.5
        and -0.05 <= ctx.acceleration <= 0.05
        and ctx.slope >= 0.8
        and ctx.iob_ratio >= 0.55
        and reliable
    )

    boost = 0.0
    if (ctx.delta_to_target >= config.stagnation_delta_min
            and config.stagnation_slope_max_neg < ctx.slope < config.stagnation_slope_max_pos
            and abs(ctx.acceleration) <= config.stagnation_accel_max_abs
            and reliable):
        boost = config.stagnation_energy_boost * ctx.delta_to_target
    energy += boost

    raw = 0.0
    if energy > 0.0 and ctx.effective_isf > 0.0:
        raw = energy / ctx.effective_isf * config.gain
    return EnergyResult(energy, boost, exhausted, raw)


class DecisionType(Enum):
    HARD_STOP = "hard_stop"
    FORCE = "force"
    SOFT = "soft"


@dataclass(frozen=True)
class Decision:
    kind: DecisionType
    dose: float
    reason: str

    @property
    def allowed(self) -> bool:
        return self.kind != DecisionType.HARD_STOP


HARD_STOP_MIN_CONSISTENCY = 0.2
HARD_STOP_IOB_RATIO = 1.1


def decide(ctx: EngineContext, raw_dose: float, config: EngineConfig) -> Decision:
    if ctx.consistency < HARD_STOP_MIN_CONSISTENCY:
        return Decision(DecisionType.HARD_STOP, 0.0, "Hard stop: unreliable data")
    if ctx.iob_ratio >= HARD_STOP_IOB_RATIO:
        return Decision(DecisionType.HARD_STOP, 0.0, "Hard stop: IOB saturated")
    if ctx.slope > 2.0 and ctx.acceleration > 0.5 and ctx.consistency > 0.6:
        return Decision(DecisionType.FORCE, raw_dose, "Force: strong confirmed rise")
    night = config.night_decision_factor if ctx.is_night else 1.0
    damping = night * clamp(ctx.consistency, 0.3, 1.0)
    return Decision(DecisionType.SOFT, raw_dose * damping, f"Soft allow damping={damping:.2f}")


# --- post-peak and trajectory -----------------------------------------------------------

@dataclass(frozen=True)
class PostPeakState:
    in_absorption: bool = False
    suppress: bool = False
    lockout: bool = False
    commit_blocked: bool = False
    commit_factor: float = 1.0
    no_stash: bool = False


def evaluate_post_peak(ctx: EngineContext, minutes_since_commit: Optional[float],
                       episode_like: bool, config: EngineConfig) -> PostPeakState:
    """Absorption-phase suppression, lockout and commit damping after a commit."""
    reliable = ctx.consistency >= config.min_consistency
    in_absorption = (
        minutes_since_commit is not None
        and 0.0 <= minutes_since_commit <= config.absorption_window_minutes
    )
    suppress = in_absorption and reliable and (
        ctx.slope <= config.peak_slope_threshold
        or ctx.acceleration <= config.peak_accel_threshold
    )
    lockout_iob = clamp(0.30 + 0.07 * ctx.delta_to_target, 0.3, 0.7)
    lockout = suppress and ctx.iob_ratio >= lockout_iob
    commit_blocked = ctx.acceleration < -0.05 and ctx.iob_ratio >= 0.45 and reliable

    high_iob = ctx.iob_ratio >= 0.55
    flattening = ctx.acceleration <= 0.05
    not_rising = ctx.slope < 0.6
    commit_factor = 1.0
    if episode_like and high_iob and flattening and not_rising and reliable:
        severity = (
            0.45 * smooth01((ctx.iob_ratio - 0.55) / 0.35)
            + 0.35 * smooth01((0.05 - ctx.acceleration) / 0.15)
            + 0.20 * smooth01((0.6 - ctx.slope) / 0.8)
        )
        commit_factor = clamp(1.0 - 0.65 * severity, 0.35, 1.0)
    no_stash = high_iob and flattening and reliable and ctx.recent_slope <= 0.2

    return PostPeakState(in_absorption, suppress, lockout, commit_blocked, commit_factor, no_stash)


MEAL_RELAX = {MealState.NONE: 1.0, MealState.UNCERTAIN: 0.75, MealState.CONFIRMED: 0.55}


def trajectory_damping(ctx: EngineContext, zone: BgZone, meal: MealState,
                       config: EngineConfig) -> float:
    """Continuous [0, 1] factor from IOB, slope and acceleration penalties."""
    if ctx.consistency < config.min_consistency:
        return 1.0

    delta_score = smooth01(ctx.delta_to_target / 6.0)
    iob_pen = smooth01((ctx.iob_ratio - 0.35) / 0.5)
    if zone in (BgZone.HIGH, BgZone.EXTREME):
        slope_pen = inv_smooth01((ctx.slope + 0.8) / 2.0)
        accel_pen = inv_smooth01((ctx.acceleration + 0.15) / 0.35)
    elif zone == BgZone.MID:
        slope_pen = inv_smooth01((ctx.slope + 0.6) / 1.6)
        accel_pen = inv_smooth01((ctx.acceleration + 0.1) / 0.25)
    else:
        slope_pen = inv_smooth01((ctx.slope + 0.2) / 0.8)
        accel_pen = inv_smooth01((ctx.acceleration + 0.02) / 0.10)

    penalty = clamp01(0.2 * iob_pen + 0.45 * slope_pen + 0.35 * accel_pen)
    factor = clamp01(1.0 - penalty)
    factor = clamp01(factor + 0.35 * delta_score)
    factor = min(factor / MEAL_RELAX[meal], 1.0)
    if meal == MealState.NONE and ctx.iob_ratio >= 0.65 and ctx.slope < 0.8:
        factor *= 0.25
    if zone == BgZone.LOW and ctx.slope <= 0.0:
        factor = 0.0
    return factor


def hard_trajectory_block(ctx: EngineContext, in_absorption: bool,
                          protection_active: bool, meal: MealState) -> bool:
    if (in_absorption and ctx.acceleration <= -0.10
            and ctx.iob_ratio >= 0.35 and ctx.consistency >= 0.45):
        return True
    if protection_active or meal != MealState.NONE:
        return False
    return (
        ctx.iob_ratio >= 0.7
        and ctx.slope < 0.6
        and ctx.acceleration <= -0.05
        and ctx.consistency >= 0.5
    )


# --- floors ----------------------------------------------------------------------------

PRE_MEAL_ZONE_FRACTION = {BgZone.MID: 0.07, BgZone.HIGH: 0.12, BgZone.EXTREME: 0.20}


def pre_meal_floor(ctx: EngineContext, zone: BgZone, access: AccessLevel, meal: MealState,
                   suppress_for_peak: bool, stagnation_boost: float, config: EngineConfig) -> float:
    """Small floor for a clear rise that has not yet been classified as a meal."""
    if meal == MealState.CONFIRMED or suppress_for_peak or stagnation_boost > 0.0:
        return 0.0
    if ctx.recent_delta5m <= -0.06 or ctx.recent_slope <= -0.20:
        return 0.0
    if access == AccessLevel.BLOCKED:
        return 0.0
    reliable = ctx.consistency >= 0.45
    rising = reliable and (
        (ctx.delta_to_target >= 1.2 and ctx.slope >= 0.3)
        or (zone == BgZone.EXTREME and ctx.delta_to_target >= 2.0
            and ctx.slope >= 0.6 and ctx.acceleration >= 0.2)
    )
    fraction = PRE_MEAL_ZONE_FRACTION.get(zone, 0.0)
    if not rising or fraction <= 0.0:
        return 0.0
    return clamp(config.max_smb * fraction, 0.05, 0.5)


def pre_reserve_split(ctx: EngineContext, zone: BgZone, meal: MealState,
                      dose: float) -> Tuple[float, float]:
    """Splits an uncertain-meal dose into (deliver_now, reserve).

    Larger doses deliver a smaller share now; a steep rise in the
    EXTREME zone delivers almost everything.
    """
    if meal != MealState.UNCERTAIN or dose < 0.5:
        return dose, 0.0
    if ctx.iob_ratio >= 0.35 or ctx.acceleration < 0.0:
        return dose, 0.0
    if (zone == BgZone.EXTREME and ctx.slope >= 0.9 and ctx.acceleration >= 0.3
            and ctx.consistency >= 0.45 and ctx.iob_ratio < 0.6):
        fraction = 0.85
    else:
        fraction = lerp(0.65, 0.50, (dose - 0.8) / 0.4)
    deliver_now = clamp(dose * fraction, 0.0, dose)
    return deliver_now, dose - deliver_now


# --- reserve pool ----------------------------------------------------------------------

@dataclass
class ReservePool:
    """Withheld insulin waiting for a safe moment to be delivered."""
    units: float = 0.0
    added_at: Optional[datetime] = None
    cause: Optional[ReserveCause] = None
    ttl_minutes: float = 25.0

    def clear(self) -> None:
        self.units = 0.0
        self.added_at = None
        self.cause = None

    def expire(self, now: datetime) -> bool:
        if self.units > 0.0 and self.added_at is not None:
            if (now - self.added_at).total_seconds() / 60.0 > self.ttl_minutes:
                logger.debug(f"Reserve of {self.units:.2f} U expired")
                self.clear()
                return True
        return False

    def stash(self, units: float, cause: ReserveCause, now: datetime) -> None:
        if units <= 0.0 or not is_finite(units):
            return
        self.units += units
        self.added_at = now
        self.cause = cause

    def release(self, headroom: float) -> float:
        if self.units <= 0.0 or headroom <= 0.0:
            return 0.0
        amount = min(self.units, headroom)
        self.units -= amount
        if self.units <= 1e-9:
            self.clear()
        return amount
