"""
DiaLoop Learning - Episode Tracker
Detects meal-like glucose episodes from the per-cycle engine signals.

States run IDLE -> CANDIDATE -> ACTIVE -> TAIL -> IDLE. An episode start
is back-dated to the last dip or stable point in the tick buffer, the
TAIL keeps the episode open while insulin is still acting, and a fresh
rise during TAIL splits the episode in two.
"""

import logging
from collections import deque
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import List, Optional, Union

from ..utils.numeric import clamp01, is_finite


class ExclusionReason(Enum):
    RESCUE_CONFIRMED = "rescue_confirmed"
    DOWNTREND_LOCKED = "downtrend_locked"
    MANUAL_BOLUS = "manual_bolus"
    DATA_INSUFFICIENT = "data_insufficient"


@dataclass(frozen=True)
class Episode:
    """One detected glucose excursion.

    `end` stays None while the tracker owns the episode; closed episodes
    are handed out by value and never change afterwards.
    """
    id: int
    start: datetime
    end: Optional[datetime]
    is_night: bool
    excluded: bool = False
    exclusion_reason: Optional[ExclusionReason] = None
    quality_score: float = 0.0

    @property
    def duration_minutes(self) -> Optional[float]:
        if self.end is None:
            return None
        return (self.end - self.start).total_seconds() / 60.0


@dataclass(frozen=True)
class EpisodeStarted:
    episode: Episode


@dataclass(frozen=True)
class EpisodeFinished:
    episode: Episode


EpisodeEvent = Union[EpisodeStarted, EpisodeFinished]


class TrackerState(Enum):
    IDLE = "idle"
    CANDIDATE = "candidate"
    ACTIVE = "active"
    TAIL = "tail"


@dataclass(frozen=True)
class EpisodeTrackerSettings:
    buffer_max_ticks: int = 40
    max_episode_minutes: float = 360.0
    min_episode_minutes: float = 15.0
    end_inactive_ticks: int = 3
    stable_slope: float = 0.30
    detect_slope: float = 0.80
    meal_slope: float = 1.20
    confirm_minutes: float = 20.0
    rise_min_mmol: float = 0.7
    iob_end_threshold: float = 0.20
    near_hypo_mmol: float = 4.4


@dataclass(frozen=True)
class _Tick:
    time: datetime
    bg: float
    slope: float
    iob: float
    delta_to_target: float


def _minutes(a: datetime, b: datetime) -> float:
    return (b - a).total_seconds() / 60.0


class EpisodeTracker:
    """State machine that opens and closes learning episodes, one tick per cycle."""

    def __init__(self, settings: Optional[EpisodeTrackerSettings] = None):
        self.settings = settings or EpisodeTrackerSettings()
        self.logger = logging.getLogger(__name__)
        self.state = TrackerState.IDLE
        self.active_episode: Optional[Episode] = None
        self._next_id = 1
        self._buffer = deque(maxlen=self.settings.buffer_max_ticks)
        self._candidate_since: Optional[datetime] = None
        self._candidate_retro_start: Optional[datetime] = None
        self._tail_since: Optional[datetime] = None
        self._inactive_ticks = 0

    @property
    def total_episodes(self) -> int:
        return self._next_id - 1

    @property
    def has_active_episode(self) -> bool:
        return self.active_episode is not None

    @property
    def active_episode_start(self) -> Optional[datetime]:
        return self.active_episode.start if self.active_episode else None

    def on_five_minute_tick(
        self,
        now: datetime,
        is_night: bool,
        peak_active: bool,
        meal_signal_active: bool,
        pre_peak_commit_window: bool,
        rescue_confirmed: bool,
        downtrend_locked: bool,
        force_meal_confirm: bool,
        manual_bolus_detected: bool,
        bg: float,
        target: float,
        iob: float,
        slope: float,
        acceleration: float,
        delta_to_target: float,
        consistency: float,
    ) -> Optional[EpisodeEvent]:
        """Advances the state machine by one cycle.

        Returns an EpisodeStarted or EpisodeFinished event when the cycle
        opens or closes an episode, otherwise None. At most one event is
        produced per tick; after a split the new episode is already
        active when the Finished event for the old one is returned.
        """
        s = self.settings
        exclusion = self._detect_exclusion(rescue_confirmed, downtrend_locked, manual_bolus_detected)

        has_bg = is_finite(bg)
        has_iob = is_finite(iob)
        if has_bg:
            self._buffer.append(_Tick(now, bg, slope, iob if has_iob else float("nan"), delta_to_target))

        any_start_signal = peak_active or meal_signal_active or pre_peak_commit_window
        self._inactive_ticks = 0 if any_start_signal else self._inactive_ticks + 1

        if exclusion is not None:
            if self.active_episode is not None:
                finished = replace(
                    self.active_episode,
                    end=max(now, self.active_episode.start),
                    excluded=True,
                    exclusion_reason=exclusion,
                )
                self.logger.info(f"Episode #{finished.id} excluded ({exclusion.name})")
                self._reset_all()
                return EpisodeFinished(finished)
            self._reset_candidate()
            return None

        if self.state == TrackerState.IDLE:
            if not has_bg:
                # Degraded mode: no glucose to back-date with, start on engine signals alone.
                if any_start_signal:
                    return self._open(now, is_night, consistency)
                return None

            if force_meal_confirm:
                return self._open(self._find_retro_start(now) or now, is_night, consistency)

            if self._is_meal_candidate(slope, meal_signal_active):
                self.state = TrackerState.CANDIDATE
                self._candidate_since = now
                self._candidate_retro_start = self._find_retro_start(now)
                self.logger.debug(f"Episode candidate at {now} slope={slope:.2f}")
            return None

        if self.state == TrackerState.CANDIDATE:
            if not has_bg:
                self._reset_all()
                return None

            if not self._is_meal_candidate(slope, meal_signal_active):
                # One tick of tolerance before dropping the candidate.
                if self._inactive_ticks >= 2:
                    self._reset_all()
                return None

            if force_meal_confirm or self._is_meal_confirmed(now, slope, meal_signal_active):
                return self._open(self._candidate_retro_start or now, is_night, consistency)
            return None

        episode = self.active_episode
        if episode is None:
            self._reset_all()
            return None

        if _minutes(episode.start, now) > s.max_episode_minutes:
            end = episode.start + timedelta(minutes=s.max_episode_minutes)
            self.logger.info(f"Episode #{episode.id} closed by max duration")
            self._reset_all()
            return EpisodeFinished(replace(episode, end=end))

        if self.state == TrackerState.ACTIVE:
            go_tail = (has_bg and self._should_enter_tail()) or (
                not has_bg
                and self._inactive_ticks >= s.end_inactive_ticks
                and _minutes(episode.start, now) >= s.min_episode_minutes
            )
            if go_tail:
                self.state = TrackerState.TAIL
                self._tail_since = now
                self.logger.debug(f"Episode #{episode.id} entered tail")
            return None

        # TAIL
        if has_bg and self._is_reentry_confirmed(now, slope, meal_signal_active):
            split = self._find_split_point(now) or now
            split = min(max(split, episode.start), now)
            finished = replace(episode, end=split)
            self.active_episode = Episode(
                id=self._take_id(),
                start=split,
                end=None,
                is_night=is_night,
                quality_score=clamp01(consistency),
            )
            self.state = TrackerState.ACTIVE
            self._candidate_since = None
            self._candidate_retro_start = None
            self._tail_since = None
            self.logger.info(
                f"Episode #{finished.id} split at {split}, episode #{self.active_episode.id} started"
            )
            return EpisodeFinished(finished)

        can_end = (
            has_bg
            and has_iob
            and iob < s.iob_end_threshold
            and self._is_stable()
            and self._is_safe_zone(bg, target, delta_to_target)
        )
        if can_end:
            finished = replace(episode, end=now)
            self.logger.info(f"Episode #{finished.id} finished ({finished.duration_minutes:.0f} min)")
            self._reset_all()
            return EpisodeFinished(finished)
        return None

    def _open(self, start: datetime, is_night: bool, consistency: float) -> EpisodeStarted:
        episode = Episode(
            id=self._take_id(),
            start=start,
            end=None,
            is_night=is_night,
            quality_score=clamp01(consistency),
        )
        self.active_episode = episode
        self.state = TrackerState.ACTIVE
        self._candidate_since = None
        self._candidate_retro_start = None
        self.logger.info(f"Episode #{episode.id} started at {start}")
        return EpisodeStarted(episode)

    def _take_id(self) -> int:
        episode_id = self._next_id
        self._next_id += 1
        return episode_id

    def _is_meal_candidate(self, slope: float, meal_signal_active: bool) -> bool:
        s = self.settings
        return slope >= s.detect_slope or (meal_signal_active and slope >= s.detect_slope * 0.8)

    def _is_meal_confirmed(self, now: datetime, slope: float, meal_signal_active: bool) -> bool:
        s = self.settings
        if self._candidate_since is None:
            return False
        slope_ok = slope >= s.meal_slope or (meal_signal_active and slope >= s.detect_slope)
        return (
            _minutes(self._candidate_since, now) >= s.confirm_minutes
            and slope_ok
            and self._amplitude_rise_ok(now)
        )

    def _is_reentry_confirmed(self, now: datetime, slope: float, meal_signal_active: bool) -> bool:
        s = self.settings
        slope_ok = slope >= s.meal_slope or (meal_signal_active and slope >= s.meal_slope * 0.9)
        return slope_ok and self._amplitude_rise_ok(now)

    def _amplitude_rise_ok(self, now: datetime) -> bool:
        if len(self._buffer) < 6:
            return False
        window = [t.bg for t in self._buffer if _minutes(t.time, now) <= 45]
        if len(window) < 4:
            return False
        return max(window) - min(window) >= self.settings.rise_min_mmol

    def _last(self, n: int) -> List[_Tick]:
        """Newest tick first."""
        return list(self._buffer)[-n:][::-1]

    def _should_enter_tail(self) -> bool:
        last = self._last(3)
        if len(last) < 2:
            return False
        stable = all(abs(t.slope) < self.settings.stable_slope for t in last)
        falling = len(last) >= 3 and last[0].bg < last[1].bg < last[2].bg
        return stable or falling

    def _is_stable(self) -> bool:
        last = self._last(2)
        if len(last) < 2:
            return False
        return all(abs(t.slope) < self.settings.stable_slope for t in last)

    def _is_safe_zone(self, bg: float, target: float, delta_to_target: float) -> bool:
        if bg < self.settings.near_hypo_mmol:
            return False
        if is_finite(target):
            return bg <= target + 1.0
        return abs(delta_to_target) <= 1.0

    def _find_retro_start(self, now: datetime) -> Optional[datetime]:
        """Last dip or stable point 10 to 90 minutes back, None without enough history."""
        stable_slope = self.settings.stable_slope
        window = [t for t in self._buffer if 10 <= _minutes(t.time, now) <= 90]
        if len(window) < 4:
            return None
        idx = min(range(len(window)), key=lambda i: window[i].bg)
        if idx > 1:
            before = window[max(0, idx - 3): idx + 1]
            for t in before:
                if abs(t.slope) < stable_slope:
                    return t.time
        return window[idx].time

    def _find_split_point(self, now: datetime) -> Optional[datetime]:
        if self._tail_since is None:
            return self._find_retro_start(now)
        lower = self._tail_since - timedelta(minutes=5)
        window = [t for t in self._buffer if lower < t.time <= now]
        if len(window) < 3:
            return None
        low = min(window, key=lambda t: t.bg)
        stable = [t for t in window if abs(t.slope) < self.settings.stable_slope]
        if stable:
            return min(stable, key=lambda t: abs(t.bg - low.bg)).time
        return low.time

    @staticmethod
    def _detect_exclusion(rescue_confirmed: bool, downtrend_locked: bool,
                          manual_bolus_detected: bool) -> Optional[ExclusionReason]:
        if rescue_confirmed:
            return ExclusionReason.RESCUE_CONFIRMED
        if downtrend_locked:
            return ExclusionReason.DOWNTREND_LOCKED
        if manual_bolus_detected:
            return ExclusionReason.MANUAL_BOLUS
        return None

    def _reset_candidate(self) -> None:
        self.state = TrackerState.IDLE
        self._candidate_since = None
        self._candidate_retro_start = None
        self._inactive_ticks = 0

    def _reset_all(self) -> None:
        # The tick buffer is kept so a restart can back-date right away.
        self.active_episode = None
        self._tail_since = None
        self._reset_candidate()
