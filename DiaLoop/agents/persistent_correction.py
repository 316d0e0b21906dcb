"""
Persistent Correction Controller
Takes over dosing when glucose stays elevated and flat for several cycles.
While it holds authority the cycle's dose is either its own fire dose or zero.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from ..core.engine_config import EngineConfig
from ..sdk.data_types import EngineContext
from ..utils.numeric import clamp, smooth01


@dataclass(frozen=True)
class PersistentCorrectionSettings:
    min_delta_day: float = 1.5
    min_delta_night: float = 1.7
    base_confirm_cycles: float = 2.0
    stable_slope_abs: float = 0.25
    stable_accel_abs: float = 0.06
    min_consistency: float = 0.45
    min_dose_u: float = 0.05
    iob_ratio_hard_stop: float = 0.45
    cooldown_cycles: int = 3
    max_bolus_fraction: float = 0.30


@dataclass(frozen=True)
class PersistentCorrectionResult:
    active: bool
    fired: bool
    dose_u: float
    cooldown_left: int
    reason: str


class PersistentCorrectionController:
    """Stable-high correction with confirm cycles and a post-fire cooldown."""

    def __init__(self, settings: Optional[PersistentCorrectionSettings] = None):
        self.settings = settings or PersistentCorrectionSettings()
        self.logger = logging.getLogger(__name__)
        self.confirm_counter = 0
        self.cooldown_left = 0

    def reset(self) -> None:
        self.confirm_counter = 0
        self.cooldown_left = 0

    def thresholds(self, is_night: bool, aggression: float):
        """Returns (min_delta, confirm_cycles) scaled by the correction style."""
        s = self.settings
        mul = max(aggression, 0.1)
        base = s.min_delta_night if is_night else s.min_delta_day
        min_delta = clamp(base / mul, 0.8, base)
        cycles = max(1, int(round(s.base_confirm_cycles / mul)))
        return min_delta, cycles

    def update(self, ctx: EngineContext, config: EngineConfig) -> PersistentCorrectionResult:
        s = self.settings
        min_delta, cycles = self.thresholds(ctx.is_night, config.persistent_aggression_mul)

        stable_high = (
            ctx.delta_to_target >= min_delta
            and abs(ctx.slope) <= s.stable_slope_abs
            and abs(ctx.acceleration) <= s.stable_accel_abs
            and ctx.consistency >= s.min_consistency
        )

        if self.cooldown_left > 0:
            self.cooldown_left -= 1
            self.confirm_counter = 0
            if stable_high:
                return PersistentCorrectionResult(
                    True, False, 0.0, self.cooldown_left,
                    f"PERSIST cooldown ({self.cooldown_left} left)",
                )
            return PersistentCorrectionResult(
                False, False, 0.0, self.cooldown_left, "PERSIST released"
            )

        if not stable_high:
            self.confirm_counter = 0
            return PersistentCorrectionResult(False, False, 0.0, 0, "PERSIST inactive")

        if ctx.iob_ratio >= s.iob_ratio_hard_stop:
            self.confirm_counter = 0
            return PersistentCorrectionResult(True, False, 0.0, 0, "PERSIST HOLD (IOB)")

        self.confirm_counter += 1
        if self.confirm_counter < cycles:
            return PersistentCorrectionResult(
                False, False, 0.0, 0, f"PERSIST building {self.confirm_counter}/{cycles}"
            )

        severity = smooth01((ctx.delta_to_target - min_delta) / 3.0)
        room = clamp(1.0 - ctx.iob_ratio / s.iob_ratio_hard_stop, 0.0, 1.0)
        cap = config.max_smb * s.max_bolus_fraction
        dose = cap * (0.5 + 0.5 * severity) * room * config.persistent_aggression_mul
        dose = min(dose, cap)

        self.confirm_counter = 0
        if dose < s.min_dose_u:
            return PersistentCorrectionResult(True, False, 0.0, 0, "PERSIST HOLD (dose below minimum)")

        self.cooldown_left = s.cooldown_cycles
        self.logger.info(f"Persistent correction fired {dose:.2f} U (delta={ctx.delta_to_target:.1f})")
        return PersistentCorrectionResult(True, True, dose, self.cooldown_left, f"PERSIST fire {dose:.2f}U")
