"""
Rescue Detector
Recognises an impending low that recovered without insulin, i.e. a likely
carbohydrate rescue. Informational only; it feeds episode exclusion.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional, Tuple

from ..sdk.data_types import EngineContext, RescueState
from ..utils.numeric import clamp01


@dataclass(frozen=True)
class RescueConfig:
    arm_pred60: float = 4.6
    arm_bg: float = 5.2
    arm_slope: float = -0.9
    min_iob_ratio: float = 0.25
    min_consistency: float = 0.45
    confirm_min_minutes: float = 8.0
    confirm_max_minutes: float = 30.0
    rebound_accel: float = 0.18
    rebound_slope: float = 0.25
    max_delivered_u: float = 0.10
    risk_gone_minutes: float = 10.0
    cooldown_minutes: float = 45.0


@dataclass(frozen=True)
class RescueSignal:
    state: RescueState
    confidence: float
    reason: str

    @property
    def confirmed(self) -> bool:
        return self.state == RescueState.CONFIRMED


class RescueDetector:
    """IDLE -> ARMED -> CONFIRMED -> (cooldown) -> IDLE."""

    def __init__(self, config: Optional[RescueConfig] = None):
        self.config = config or RescueConfig()
        self.logger = logging.getLogger(__name__)
        self.state = RescueState.IDLE
        self.armed_at: Optional[datetime] = None
        self.armed_pred60 = 0.0
        self.confirmed_at: Optional[datetime] = None
        self.confidence = 0.0

    def reset(self) -> None:
        self.state = RescueState.IDLE
        self.armed_at = None
        self.armed_pred60 = 0.0
        self.confirmed_at = None
        self.confidence = 0.0

    def update(self, ctx: EngineContext, pred60: float,
               delivery_history: Iterable[Tuple[datetime, float]],
               delivered_this_cycle: float, min_consistency: Optional[float] = None) -> RescueSignal:
        """Advances the detector by one cycle.

        Args:
            ctx: Current context.
            pred60: Linear 60-minute glucose projection.
            delivery_history: Recent (time, units) deliveries.
            delivered_this_cycle: Units delivered in the current cycle.
            min_consistency: Engine reliability floor, overrides the config value.
        """
        cfg = self.config
        now = ctx.now

        if self.state == RescueState.CONFIRMED:
            elapsed = _minutes(self.confirmed_at, now)
            if elapsed >= cfg.cooldown_minutes:
                self.reset()
            else:
                return RescueSignal(self.state, self.confidence, "RESCUE cooldown")

        floor = cfg.min_consistency if min_consistency is None else min_consistency
        reliable = ctx.consistency >= floor
        low_dynamics = (
            ctx.bg <= cfg.arm_bg
            and ctx.slope <= cfg.arm_slope
            and ctx.iob_ratio >= cfg.min_iob_ratio
        )
        should_arm = reliable and (pred60 <= cfg.arm_pred60 or low_dynamics)

        if self.state == RescueState.IDLE:
            if should_arm:
                self.state = RescueState.ARMED
                self.armed_at = now
                self.armed_pred60 = pred60
                self.confidence = 0.35
                self.logger.debug(f"Rescue armed (pred60={pred60:.2f})")
                return RescueSignal(self.state, self.confidence, f"RESCUE armed pred60={pred60:.1f}")
            return RescueSignal(self.state, 0.0, "RESCUE idle")

        # ARMED
        dt = _minutes(self.armed_at, now)
        risk_gone = pred60 > cfg.arm_bg and ctx.slope > -0.2 and dt >= cfg.risk_gone_minutes
        if risk_gone or dt > cfg.confirm_max_minutes:
            self.reset()
            return RescueSignal(self.state, 0.0, "RESCUE disarmed")

        rebounding = ctx.acceleration >= cfg.rebound_accel and ctx.slope >= cfg.rebound_slope
        delivered = sum(u for t, u in delivery_history if t >= self.armed_at) + max(0.0, delivered_this_cycle)
        in_window = cfg.confirm_min_minutes <= dt <= cfg.confirm_max_minutes

        if in_window and rebounding and delivered <= cfg.max_delivered_u:
            self.confidence = clamp01(
                0.45 * clamp01(cfg.arm_pred60 - self.armed_pred60)
                + 0.35 * clamp01((ctx.acceleration - cfg.rebound_accel) / 0.25)
                + 0.20 * clamp01(1.0 - delivered / cfg.max_delivered_u)
            )
            self.state = RescueState.CONFIRMED
            self.confirmed_at = now
            self.logger.info(f"Rescue confirmed (conf={self.confidence:.2f})")
            return RescueSignal(self.state, self.confidence, "RESCUE confirmed")
        return RescueSignal(self.state, self.confidence, "RESCUE armed")


def _minutes(since: Optional[datetime], now: datetime) -> float:
    if since is None:
        return 0.0
    return (now - since).total_seconds() / 60.0
