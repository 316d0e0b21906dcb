"""
DiaLoop SDK - Delivery Executor
Splits a commanded dose into a pump bolus and a temporary basal rate
"""

import math
import logging
from dataclasses import dataclass

from .data_types import ExecutionResult
from ..utils.numeric import clamp, is_finite

_EPS = 1e-9


@dataclass(frozen=True)
class DeliverySettings:
    """Pump constraints for one delivery cycle."""
    hybrid_percentage: float = 50.0
    cycle_minutes: float = 5.0
    max_temp_basal_rate: float = 25.0
    bolus_step: float = 0.05
    basal_rate_step: float = 0.05
    min_smb_unit: float = 0.05
    small_dose_threshold_u: float = 0.40


def floor_to_step(x: float, step: float) -> float:
    if step <= 0.0:
        return max(0.0, x)
    return max(0.0, math.floor(x / step + _EPS) * step)


def ceil_to_step(x: float, step: float) -> float:
    if step <= 0.0:
        return max(0.0, x)
    return max(0.0, math.ceil(x / step - _EPS) * step)


class DeliveryExecutor:
    """Honors pump step sizes and per-cycle basal caps.

    Guarantees: the delivered total never exceeds the commanded dose and
    grows monotonically with it; a dose of zero always yields an
    explicit zero basal rate so any running temp basal is cancelled.
    Small doses go entirely to basal; larger doses are split by the
    hybrid percentage (the basal share), and whatever the basal cap
    cannot absorb in this cycle is routed to the bolus.
    """

    def __init__(self, settings: DeliverySettings = None):
        self.settings = settings or DeliverySettings()
        self.logger = logging.getLogger(__name__)

    def execute(self, dose: float) -> ExecutionResult:
        s = self.settings
        if s.cycle_minutes < 0:
            raise ValueError("cycle_minutes must not be negative")
        if not is_finite(dose) or dose <= 0.0:
            return ExecutionResult(bolus_u=0.0, basal_rate_u_h=0.0, delivered_total_u=0.0)

        cycle_h = max(s.cycle_minutes / 60.0, 1.0 / 60.0)
        max_basal_units = max(0.0, s.max_temp_basal_rate) * cycle_h

        if dose < s.small_dose_threshold_u or s.hybrid_percentage <= 0.0:
            wanted_bolus = 0.0
        else:
            basal_share = clamp(s.hybrid_percentage, 0.0, 100.0) / 100.0
            wanted_bolus = dose * (1.0 - basal_share)
            if wanted_bolus < s.min_smb_unit:
                wanted_bolus = 0.0

        bolus = floor_to_step(wanted_bolus, s.bolus_step)
        if bolus > 0.0:
            bolus = max(bolus, s.min_smb_unit)

        overflow = dose - bolus - max_basal_units
        if overflow > _EPS:
            bolus += ceil_to_step(overflow, s.bolus_step)
        bolus = min(bolus, floor_to_step(dose, s.bolus_step))

        basal_units = min(max(0.0, dose - bolus), max_basal_units)
        rate = floor_to_step(basal_units / cycle_h, s.basal_rate_step)
        rate = min(rate, max(0.0, s.max_temp_basal_rate))
        delivered = bolus + rate * cycle_h

        self.logger.debug(
            f"Delivery split dose={dose:.3f} bolus={bolus:.2f} rate={rate:.2f} delivered={delivered:.3f}"
        )
        return ExecutionResult(
            bolus_u=round(bolus, 4),
            basal_rate_u_h=round(rate, 4),
            delivered_total_u=delivered,
        )
