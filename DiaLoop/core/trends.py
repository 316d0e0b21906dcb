# DiaLoop Trend Estimation
# Turns a raw glucose series into smoothed slope, acceleration and
# consistency signals for the dosing engine.

from dataclasses import dataclass
from datetime import datetime
from typing import List, Sequence, Tuple

import numpy as np
import pandas as pd

from ..utils.numeric import clamp01


@dataclass(frozen=True)
class TrendResult:
    """Trend signals at the newest reading.

    Attributes:
        slope (float): First derivative of the filtered series, mmol/L/h.
        acceleration (float): Change of slope (mmol/L/h) per 5-minute
            cycle, taken from the curvature of the filtered series.
        consistency (float): Fit quality in [0, 1]; 0 on sparse data.
        recent_slope (float): Slope of the last raw segment, mmol/L/h.
        recent_delta5m (float): Last raw change normalised to 5 minutes.
    """
    slope: float = 0.0
    acceleration: float = 0.0
    consistency: float = 0.0
    recent_slope: float = 0.0
    recent_delta5m: float = 0.0


class TrendEstimator:
    """Exponential smoothing plus a local quadratic fit.

    The estimator is stateless: the same history always yields the
    same `TrendResult`.
    """

    def __init__(self, window_minutes: float = 30.0, noise_scale_mmol: float = 0.20,
                 full_coverage_points: int = 6):
        self.window_minutes = window_minutes
        self.noise_scale_mmol = noise_scale_mmol
        self.full_coverage_points = full_coverage_points

    def estimate(self, history: Sequence[Tuple[datetime, float]], alpha: float) -> TrendResult:
        """Computes trend signals for a (timestamp, glucose) series.

        Args:
            history: Readings in any order; non-finite values are dropped.
            alpha: Exponential smoothing factor in (0, 1].

        Returns:
            TrendResult: Zero slope, acceleration and consistency when
                fewer than two usable points exist.
        """
        points = sorted(
            ((t, float(bg)) for t, bg in history if bg is not None and np.isfinite(bg)),
            key=lambda p: p[0],
        )
        if len(points) < 2:
            return TrendResult()

        series = pd.Series(
            [bg for _, bg in points],
            index=pd.DatetimeIndex([t for t, _ in points]),
        )
        alpha = min(max(alpha, 0.01), 1.0)
        filtered = series.ewm(alpha=alpha, adjust=False).mean()

        recent_slope, recent_delta5m = self._recent_segment(points)

        newest = points[-1][0]
        hours = np.array([(t - newest).total_seconds() / 3600.0 for t, _ in points])
        in_window = hours >= -self.window_minutes / 60.0
        t = hours[in_window]
        y_filtered = filtered.to_numpy()[in_window]
        y_raw = series.to_numpy()[in_window]

        if len(t) < 2:
            # Only the newest point is inside the window; fall back to the last segment.
            return TrendResult(
                slope=recent_slope,
                acceleration=0.0,
                consistency=0.0,
                recent_slope=recent_slope,
                recent_delta5m=recent_delta5m,
            )

        if len(t) >= 3:
            a, b, _ = np.polyfit(t, y_filtered, 2)
            slope = float(b)
            acceleration = float(2.0 * a) * (5.0 / 60.0)
            raw_fit = np.polyval(np.polyfit(t, y_raw, 2), t)
        else:
            b, _ = np.polyfit(t, y_filtered, 1)
            slope = float(b)
            acceleration = 0.0
            raw_fit = np.polyval(np.polyfit(t, y_raw, 1), t)

        rmse = float(np.sqrt(np.mean((y_raw - raw_fit) ** 2)))
        coverage = min(1.0, len(t) / float(self.full_coverage_points))
        consistency = clamp01(coverage / (1.0 + (rmse / self.noise_scale_mmol) ** 2))

        return TrendResult(
            slope=slope,
            acceleration=acceleration,
            consistency=consistency,
            recent_slope=recent_slope,
            recent_delta5m=recent_delta5m,
        )

    @staticmethod
    def _recent_segment(points: List[Tuple[datetime, float]]) -> Tuple[float, float]:
        (t0, bg0), (t1, bg1) = points[-2], points[-1]
        dt_min = (t1 - t0).total_seconds() / 60.0
        if dt_min <= 0.0:
            return 0.0, 0.0
        delta = bg1 - bg0
        return delta / (dt_min / 60.0), delta * (5.0 / dt_min)
