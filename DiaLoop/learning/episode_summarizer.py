"""
DiaLoop Learning - Episode Summarizer
Reduces a closed episode to plain facts: no judgment, no learning.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from ..core.base_classes import (
    BaseGlucoseHistoryProvider,
    BaseInsulinDeliveryProvider,
    BgPoint,
)
from ..utils.numeric import is_finite
from .episode_tracker import Episode

HIGH_BG_THRESHOLD = 10.0
MEANINGFUL_INSULIN_U = 0.10
REBOUND_RISE_MMOL = 0.5


@dataclass(frozen=True)
class EpisodeSummary:
    """Facts about one closed episode. Every glucose fact is None when no readings exist."""
    episode_id: int
    is_night: bool

    start: datetime
    end: datetime
    duration_minutes: int

    start_bg: Optional[float]
    peak_bg: Optional[float]
    peak_time: Optional[datetime]
    time_to_peak_minutes: Optional[int]
    nadir_bg: Optional[float]
    nadir_time: Optional[datetime]
    time_above_high_minutes: int
    post_peak_minutes: Optional[int]
    rebound_detected: bool

    total_insulin_u: float
    first_meaningful_insulin_at: Optional[datetime]
    minutes_to_first_insulin: Optional[int]

    predicted_peak_at_start: Optional[float]
    peak_prediction_error: Optional[float]


def _whole_minutes(a: datetime, b: datetime) -> int:
    return int((b - a).total_seconds() // 60)


class EpisodeSummarizer:
    """Pulls glucose and insulin history inside [start, end] and computes episode facts."""

    def __init__(self, bg_provider: BaseGlucoseHistoryProvider,
                 insulin_provider: BaseInsulinDeliveryProvider,
                 high_bg_threshold: float = HIGH_BG_THRESHOLD):
        self.bg_provider = bg_provider
        self.insulin_provider = insulin_provider
        self.high_bg_threshold = high_bg_threshold

    def summarize(self, episode: Episode, predicted_peak_at_start: Optional[float] = None) -> EpisodeSummary:
        """
        Builds the summary for a finished episode.

        Args:
            episode (Episode): A closed episode.
            predicted_peak_at_start (Optional[float]): Peak the engine predicted
                when the episode began, used for the prediction error.

        Returns:
            EpisodeSummary: The facts of the episode.

        Raises:
            ValueError: If the episode has no end time yet.
        """
        if episode.end is None:
            raise ValueError(f"Episode #{episode.id} must be finished before summarizing")
        start, end = episode.start, episode.end

        bg = sorted(
            (p for p in self.bg_provider.get_bg_between(start, end)
             if start <= p.time <= end and is_finite(p.bg_mmol)),
            key=lambda p: p.time,
        )
        insulin = sorted(
            (d for d in self.insulin_provider.get_deliveries_between(start, end)
             if start <= d.time <= end),
            key=lambda d: d.time,
        )

        peak = max(bg, key=lambda p: p.bg_mmol) if bg else None
        nadir = min(bg, key=lambda p: p.bg_mmol) if bg else None

        first_meaningful = next((d.time for d in insulin if d.units >= MEANINGFUL_INSULIN_U), None)

        if predicted_peak_at_start is not None and not is_finite(predicted_peak_at_start):
            predicted_peak_at_start = None
        prediction_error = None
        if predicted_peak_at_start is not None and peak is not None:
            prediction_error = peak.bg_mmol - predicted_peak_at_start

        return EpisodeSummary(
            episode_id=episode.id,
            is_night=episode.is_night,
            start=start,
            end=end,
            duration_minutes=_whole_minutes(start, end),
            start_bg=bg[0].bg_mmol if bg else None,
            peak_bg=peak.bg_mmol if peak else None,
            peak_time=peak.time if peak else None,
            time_to_peak_minutes=_whole_minutes(start, peak.time) if peak else None,
            nadir_bg=nadir.bg_mmol if nadir else None,
            nadir_time=nadir.time if nadir else None,
            time_above_high_minutes=self.time_above(bg, self.high_bg_threshold),
            post_peak_minutes=_whole_minutes(peak.time, end) if peak else None,
            rebound_detected=self.rebound_after_peak(bg, peak.time if peak else None),
            total_insulin_u=sum(d.units for d in insulin),
            first_meaningful_insulin_at=first_meaningful,
            minutes_to_first_insulin=(
                _whole_minutes(start, first_meaningful) if first_meaningful else None
            ),
            predicted_peak_at_start=predicted_peak_at_start,
            peak_prediction_error=prediction_error,
        )

    @staticmethod
    def time_above(bg: List[BgPoint], threshold: float) -> int:
        """Minutes above threshold, counting each interval whose endpoint mean exceeds it."""
        minutes = 0
        for a, b in zip(bg, bg[1:]):
            dt = _whole_minutes(a.time, b.time)
            if dt <= 0:
                continue
            if (a.bg_mmol + b.bg_mmol) / 2.0 > threshold:
                minutes += dt
        return minutes

    @staticmethod
    def rebound_after_peak(bg: List[BgPoint], peak_time: Optional[datetime]) -> bool:
        """True when glucose climbs again by REBOUND_RISE_MMOL within 5 to 30 minutes after the peak."""
        if peak_time is None:
            return False
        post_peak = [p for p in bg if 5 <= _whole_minutes(peak_time, p.time) <= 30]
        if len(post_peak) < 2:
            return False
        low = min(p.bg_mmol for p in post_peak)
        return post_peak[-1].bg_mmol - low >= REBOUND_RISE_MMOL
