"""
DiaLoop Learning - Insulin Delivery Gate
Cross-checks commanded insulin against the observed change in insulin on board.

The gate never blocks delivery. It only lowers the weight the learning
chain gives to episodes observed while deliveries did not show up in IOB.
"""

import logging
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from ..utils.numeric import clamp01, is_finite


@dataclass(frozen=True)
class DeliveryCheck:
    ok: bool
    confidence_multiplier: float
    expected_delta_iob: float = 0.0
    observed_delta_iob: float = 0.0
    reason: Optional[str] = None


@dataclass(frozen=True)
class _GateTick:
    time: datetime
    iob: float
    commanded: float


class InsulinDeliveryGate:
    """Rolling-window comparison of commanded units against IOB change.

    Expected IOB change over the window is the commanded sum minus a
    linear decay estimate (average IOB times elapsed minutes over DIA).
    A relative mismatch up to `tol_ok` keeps full confidence, from
    `tol_fail` on the confidence is zero, with a linear ramp in between.
    """

    def __init__(self, window_ticks: int = 3, min_window_u: float = 0.5,
                 tol_ok: float = 0.40, tol_fail: float = 1.00,
                 dia_minutes: float = 540.0, cycle_minutes: float = 5.0):
        self.window_ticks = max(2, int(window_ticks))
        self.min_window_u = min_window_u
        self.tol_ok = tol_ok
        self.tol_fail = max(tol_fail, tol_ok + 1e-6)
        self.dia_minutes = dia_minutes
        self.cycle_minutes = cycle_minutes
        self.logger = logging.getLogger(__name__)
        self._buffer = deque(maxlen=self.window_ticks)

    def reset(self) -> None:
        self._buffer.clear()

    def record_cycle(self, now: datetime, commanded_u: float, current_iob: float) -> DeliveryCheck:
        commanded = max(0.0, commanded_u) if is_finite(commanded_u) else 0.0
        if not is_finite(current_iob):
            return DeliveryCheck(ok=True, confidence_multiplier=1.0, reason="IOB unavailable")
        self._buffer.append(_GateTick(now, current_iob, commanded))

        if len(self._buffer) < self.window_ticks:
            return DeliveryCheck(ok=True, confidence_multiplier=1.0)

        sum_commanded = sum(t.commanded for t in self._buffer)
        if sum_commanded < self.min_window_u:
            return DeliveryCheck(ok=True, confidence_multiplier=1.0)

        first, last = self._buffer[0], self._buffer[-1]
        elapsed = (last.time - first.time).total_seconds() / 60.0
        if elapsed <= 0.0:
            elapsed = (len(self._buffer) - 1) * self.cycle_minutes
        avg_iob = sum(t.iob for t in self._buffer) / len(self._buffer)
        decay = 0.0
        if self.dia_minutes > 0.0:
            decay = max(0.0, avg_iob) * min(elapsed / self.dia_minutes, 0.5)

        expected = sum_commanded - decay
        observed = last.iob - first.iob
        mismatch = abs(observed - expected) / sum_commanded

        if mismatch <= self.tol_ok:
            multiplier = 1.0
        elif mismatch >= self.tol_fail:
            multiplier = 0.0
        else:
            multiplier = clamp01(1.0 - (mismatch - self.tol_ok) / (self.tol_fail - self.tol_ok))

        reason = None
        if multiplier < 1.0:
            reason = (
                f"IOB mismatch {mismatch * 100:.0f}% "
                f"(obs={observed:.2f} exp={expected:.2f} cmd={sum_commanded:.2f}U)"
            )
            self.logger.debug(f"Delivery gate: {reason}")
        return DeliveryCheck(
            ok=multiplier > 0.0,
            confidence_multiplier=multiplier,
            expected_delta_iob=expected,
            observed_delta_iob=observed,
            reason=reason,
        )
