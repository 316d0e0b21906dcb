"""
DiaLoop Learning - Axis Scorer
Maps the facts of one episode onto the TIMING, HEIGHT and PERSISTENCE axes.

A late first dose only counts as LATE when the realized peak actually
went above the high threshold. HEIGHT is judged on the realized peak;
the predicted peak only shows up as a tag.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

from ..utils.numeric import clamp01
from .episode_summarizer import EpisodeSummary
from .episode_tracker import Episode


class Axis(Enum):
    TIMING = "timing"
    HEIGHT = "height"
    PERSISTENCE = "persistence"


class AxisOutcome(Enum):
    OK = "ok"
    EARLY = "early"
    LATE = "late"
    TOO_HIGH = "too_high"
    TOO_STRONG = "too_strong"
    TOO_SHORT = "too_short"
    TOO_LONG = "too_long"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class AxisObservation:
    episode_id: int
    axis: Axis
    outcome: AxisOutcome
    signal_strength: float
    reason: str
    tags: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class AxisScorerConfig:
    high_bg_threshold: float = 10.0
    hypo_threshold: float = 3.9
    late_min_minutes_to_first_insulin: int = 20
    early_max_minutes_to_first_insulin: int = 8
    early_nadir_safety: float = 4.2
    too_short_time_above_minutes: int = 45
    too_long_requires_low_nadir: bool = True
    predicted_peak_mismatch_abs: float = 2.0


class AxisScorer:
    """Stateless scorer; the same (episode, summary) always yields the same observations."""

    def __init__(self, config: Optional[AxisScorerConfig] = None):
        self.config = config or AxisScorerConfig()

    def score(self, episode: Episode, summary: EpisodeSummary) -> List[AxisObservation]:
        if episode.excluded:
            reason = episode.exclusion_reason.name if episode.exclusion_reason else "unknown"
            return [AxisObservation(episode.id, Axis.HEIGHT, AxisOutcome.UNKNOWN, 0.0,
                                    f"EXCLUDED: {reason}")]

        cfg = self.config
        quality = clamp01(episode.quality_score)
        peak = summary.peak_bg

        tags = {}
        predicted = summary.predicted_peak_at_start
        if predicted is not None and peak is not None:
            err = abs(predicted - peak)
            if err >= cfg.predicted_peak_mismatch_abs:
                tags["PRED_MISMATCH"] = f"absErr={err:.2f} pred={predicted:.2f} act={peak:.2f}"
        if summary.peak_prediction_error is not None:
            tags["PRED_ERR"] = f"act-pred={summary.peak_prediction_error:.2f}"

        return [
            self._score_timing(episode.id, quality, summary, tags),
            self._score_height(episode.id, quality, summary, tags),
            self._score_persistence(episode.id, quality, summary, tags),
        ]

    def _peak_signal(self, peak: float) -> float:
        return clamp01((peak - self.config.high_bg_threshold) / 4.0)

    def _score_timing(self, episode_id: int, quality: float, summary: EpisodeSummary,
                      tags: Dict[str, str]) -> AxisObservation:
        cfg = self.config
        peak = summary.peak_bg
        nadir = summary.nadir_bg
        minutes = summary.minutes_to_first_insulin

        if peak is None:
            return AxisObservation(episode_id, Axis.TIMING, AxisOutcome.UNKNOWN, 0.0,
                                   "TIMING unknown: peak missing", dict(tags))
        if peak <= cfg.high_bg_threshold:
            return AxisObservation(episode_id, Axis.TIMING, AxisOutcome.OK, clamp01(0.65 * quality),
                                   f"TIMING OK: peak={peak:.2f} <= {cfg.high_bg_threshold:.2f}", dict(tags))
        if minutes is None:
            strength = clamp01(0.70 * quality + 0.30 * self._peak_signal(peak))
            return AxisObservation(episode_id, Axis.TIMING, AxisOutcome.LATE, strength,
                                   "TIMING LATE: high peak without meaningful insulin", dict(tags))

        if minutes <= cfg.early_max_minutes_to_first_insulin and nadir is not None \
                and nadir <= cfg.early_nadir_safety:
            depth = clamp01(cfg.early_nadir_safety - nadir)
            return AxisObservation(
                episode_id, Axis.TIMING, AxisOutcome.EARLY, clamp01(0.55 * quality + 0.45 * depth),
                f"TIMING EARLY: first insulin after {minutes}m, nadir={nadir:.2f}", dict(tags),
            )

        late = minutes >= cfg.late_min_minutes_to_first_insulin
        lateness = clamp01((minutes - cfg.late_min_minutes_to_first_insulin) / 30.0) if late else 0.30
        strength = clamp01(0.55 * quality + 0.25 * self._peak_signal(peak) + 0.20 * lateness)
        outcome = AxisOutcome.LATE if late else AxisOutcome.OK
        return AxisObservation(
            episode_id, Axis.TIMING, outcome, strength,
            f"TIMING {outcome.name}: peak={peak:.2f} first insulin after {minutes}m", dict(tags),
        )

    def _score_height(self, episode_id: int, quality: float, summary: EpisodeSummary,
                      tags: Dict[str, str]) -> AxisObservation:
        cfg = self.config
        peak = summary.peak_bg
        nadir = summary.nadir_bg

        if peak is None:
            return AxisObservation(episode_id, Axis.HEIGHT, AxisOutcome.UNKNOWN, 0.0,
                                   "HEIGHT unknown: peak missing", dict(tags))
        if nadir is not None and nadir < cfg.hypo_threshold:
            severity = clamp01(cfg.hypo_threshold - nadir)
            return AxisObservation(
                episode_id, Axis.HEIGHT, AxisOutcome.TOO_STRONG, clamp01(0.55 * quality + 0.45 * severity),
                f"HEIGHT TOO_STRONG: nadir={nadir:.2f} < {cfg.hypo_threshold:.2f}", dict(tags),
            )
        if peak > cfg.high_bg_threshold:
            return AxisObservation(
                episode_id, Axis.HEIGHT, AxisOutcome.TOO_HIGH,
                clamp01(0.60 * quality + 0.40 * self._peak_signal(peak)),
                f"HEIGHT TOO_HIGH: peak={peak:.2f} > {cfg.high_bg_threshold:.2f}", dict(tags),
            )
        nadir_text = f"{nadir:.2f}" if nadir is not None else "?"
        return AxisObservation(episode_id, Axis.HEIGHT, AxisOutcome.OK, clamp01(0.65 * quality),
                               f"HEIGHT OK: peak={peak:.2f} nadir={nadir_text}", dict(tags))

    def _score_persistence(self, episode_id: int, quality: float, summary: EpisodeSummary,
                           tags: Dict[str, str]) -> AxisObservation:
        cfg = self.config
        peak = summary.peak_bg
        nadir = summary.nadir_bg
        above = summary.time_above_high_minutes

        if peak is None:
            return AxisObservation(episode_id, Axis.PERSISTENCE, AxisOutcome.UNKNOWN, 0.0,
                                   "PERSISTENCE unknown: peak missing", dict(tags))
        if peak <= cfg.high_bg_threshold:
            return AxisObservation(episode_id, Axis.PERSISTENCE, AxisOutcome.OK, clamp01(0.65 * quality),
                                   f"PERSISTENCE OK: peak={peak:.2f} stayed low", dict(tags))

        low_nadir = nadir is not None and nadir <= cfg.early_nadir_safety
        if summary.rebound_detected and (low_nadir or not cfg.too_long_requires_low_nadir):
            depth = clamp01(cfg.early_nadir_safety - nadir) if nadir is not None else 0.5
            return AxisObservation(
                episode_id, Axis.PERSISTENCE, AxisOutcome.TOO_LONG, clamp01(0.55 * quality + 0.45 * depth),
                "PERSISTENCE TOO_LONG: rebound after low nadir", dict(tags),
            )

        too_short = above >= cfg.too_short_time_above_minutes
        above_strength = (
            clamp01((above - cfg.too_short_time_above_minutes) / 60.0) if too_short else 0.30
        )
        strength = clamp01(0.55 * quality + 0.25 * self._peak_signal(peak) + 0.20 * above_strength)
        outcome = AxisOutcome.TOO_SHORT if too_short else AxisOutcome.OK
        return AxisObservation(
            episode_id, Axis.PERSISTENCE, outcome, strength,
            f"PERSISTENCE {outcome.name}: {above}m above {cfg.high_bg_threshold:.0f}", dict(tags),
        )
