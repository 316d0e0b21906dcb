"""
Downtrend Gate
Hysteresis latch that pauses or locks dosing while glucose is falling
"""

import logging
from dataclasses import dataclass
from typing import Optional

from ..sdk.data_types import DowntrendState, EngineContext

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DowntrendDecision:
    state: DowntrendState
    pause_this_cycle: bool
    reason: str

    @property
    def locked(self) -> bool:
        return self.state == DowntrendState.LOCKED


class DowntrendGate:
    """Soft pause on a mild fall, hard lock after repeated strong falls.

    Once LOCKED the gate only opens on a renewed rise or after
    `plateau_confirm_cycles` consecutive plateau ticks.
    """

    def __init__(self, min_consistency: float = 0.45, lock_confirm_cycles: int = 2,
                 plateau_confirm_cycles: int = 2):
        self.min_consistency = min_consistency
        self.lock_confirm_cycles = lock_confirm_cycles
        self.plateau_confirm_cycles = plateau_confirm_cycles
        self.state = DowntrendState.OFF
        self.confirm_counter = 0
        self.plateau_counter = 0

    def reset(self) -> None:
        self.state = DowntrendState.OFF
        self.confirm_counter = 0
        self.plateau_counter = 0

    def update(self, ctx: EngineContext, min_consistency: Optional[float] = None) -> DowntrendDecision:
        rs = ctx.recent_slope
        rd = ctx.recent_delta5m
        floor = self.min_consistency if min_consistency is None else min_consistency
        reliable = ctx.consistency >= floor
        above = ctx.delta_to_target > 0.3

        falling_hard = reliable and above and (rs <= -0.60 or rd <= -0.20)
        falling_soft = reliable and above and (rs <= -0.25 or rd <= -0.10)
        plateau = reliable and abs(rs) <= 0.15 and abs(rd) <= 0.05
        rising_again = reliable and (rs >= 0.20 or rd >= 0.06)

        if self.state == DowntrendState.OFF:
            if falling_hard:
                self.confirm_counter += 1
                if self.confirm_counter >= self.lock_confirm_cycles:
                    self.state = DowntrendState.LOCKED
                    self.plateau_counter = 0
                    logger.info("Downtrend locked")
                    return DowntrendDecision(self.state, False, "DOWNTREND LOCKED")
            else:
                self.confirm_counter = 0
            if falling_soft:
                return DowntrendDecision(self.state, True, "DOWNTREND PAUSE")
            return DowntrendDecision(self.state, False, "DOWNTREND off")

        if rising_again:
            self.reset()
            logger.info("Downtrend unlocked: rising again")
            return DowntrendDecision(self.state, False, "DOWNTREND unlocked (rising)")
        if plateau:
            self.plateau_counter += 1
            if self.plateau_counter >= self.plateau_confirm_cycles:
                self.reset()
                logger.info("Downtrend unlocked: plateau")
                return DowntrendDecision(self.state, False, "DOWNTREND unlocked (plateau)")
        else:
            self.plateau_counter = 0
        return DowntrendDecision(self.state, False, "DOWNTREND LOCKED (hold)")
