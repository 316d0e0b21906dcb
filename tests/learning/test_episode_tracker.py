# Tests for DiaLoop.learning.episode_tracker

from datetime import timedelta

import pytest

from DiaLoop.learning.episode_tracker import (
    EpisodeFinished, EpisodeStarted, EpisodeTracker, ExclusionReason, TrackerState,
)
from tests.helpers import T0


def tick(tracker, minute, bg, slope, iob=1.0, meal=False, peak=False, force=False,
         rescue=False, downtrend=False, manual=False, target=5.5, is_night=False):
    return tracker.on_five_minute_tick(
        now=T0 + timedelta(minutes=minute),
        is_night=is_night,
        peak_active=peak,
        meal_signal_active=meal,
        pre_peak_commit_window=False,
        rescue_confirmed=rescue,
        downtrend_locked=downtrend,
        force_meal_confirm=force,
        manual_bolus_detected=manual,
        bg=bg,
        target=target,
        iob=iob,
        slope=slope,
        acceleration=0.0,
        delta_to_target=bg - target,
        consistency=0.9,
    )


def meal_rise(tracker):
    """Dip before the meal, then a clean rise. Returns (events, start minute of the episode)."""
    events = []
    for i, minute in enumerate(range(-60, 0, 5)):
        events.append(tick(tracker, minute, 6.2 - 0.1 * i, -0.5, iob=0.0))
    for minute in range(0, 45, 5):
        events.append(tick(tracker, minute, 6.0 + 0.5 * minute / 5, 1.5, meal=minute >= 10, peak=True))
    return events


def fall_into_tail(tracker):
    events = []
    for i, minute in enumerate(range(45, 85, 5)):
        events.append(tick(tracker, minute, 9.5 - 0.5 * i, -1.0, peak=False))
    return events


@pytest.fixture
def tracker():
    return EpisodeTracker()


def test_meal_episode_lifecycle(tracker):
    """Candidate, back-dated start, tail and a clean finish."""
    events = [e for e in meal_rise(tracker) if e is not None]
    assert len(events) == 1
    started = events[0]
    assert isinstance(started, EpisodeStarted)
    assert started.episode.id == 1
    assert started.episode.start == T0 - timedelta(minutes=10)
    assert tracker.state == TrackerState.ACTIVE

    assert all(e is None for e in fall_into_tail(tracker))
    assert tracker.state == TrackerState.TAIL

    assert tick(tracker, 85, 5.8, 0.0, iob=0.1) is None
    finished = tick(tracker, 90, 5.8, 0.0, iob=0.1)
    assert isinstance(finished, EpisodeFinished)
    assert finished.episode.end == T0 + timedelta(minutes=90)
    assert finished.episode.end >= finished.episode.start
    assert finished.episode.duration_minutes == pytest.approx(100.0)
    assert not finished.episode.excluded
    assert tracker.state == TrackerState.IDLE
    assert not tracker.has_active_episode
    print("test_meal_episode_lifecycle: PASSED")


def test_tail_waits_for_insulin_to_clear(tracker):
    meal_rise(tracker)
    fall_into_tail(tracker)
    for minute in (85, 90, 95):
        assert tick(tracker, minute, 5.8, 0.0, iob=0.8) is None
    assert tracker.state == TrackerState.TAIL


def test_exclusion_closes_active_episode(tracker):
    meal_rise(tracker)
    event = tick(tracker, 45, 10.0, 0.0, downtrend=True)
    assert isinstance(event, EpisodeFinished)
    episode = event.episode
    assert episode.excluded
    assert episode.exclusion_reason == ExclusionReason.DOWNTREND_LOCKED
    assert episode.end >= episode.start
    assert tracker.state == TrackerState.IDLE


def test_exclusion_priority(tracker):
    meal_rise(tracker)
    event = tick(tracker, 45, 10.0, 0.0, rescue=True, downtrend=True, manual=True)
    assert event.episode.exclusion_reason == ExclusionReason.RESCUE_CONFIRMED


def test_exclusion_while_idle_drops_candidate(tracker):
    tick(tracker, 0, 6.0, 1.5)
    assert tracker.state == TrackerState.CANDIDATE
    assert tick(tracker, 5, 6.5, 1.5, manual=True) is None
    assert tracker.state == TrackerState.IDLE
    assert tracker.total_episodes == 0


def test_candidate_dropped_without_rise(tracker):
    tick(tracker, 0, 6.0, 1.5)
    tick(tracker, 5, 6.1, 0.1)
    tick(tracker, 10, 6.1, 0.1)
    assert tracker.state == TrackerState.IDLE


def test_force_confirm_opens_immediately(tracker):
    event = tick(tracker, 0, 7.0, 0.2, force=True)
    assert isinstance(event, EpisodeStarted)
    assert event.episode.start == T0
    assert tracker.has_active_episode


def test_max_duration_caps_episode(tracker):
    tick(tracker, 0, 7.0, 1.5, force=True)
    event = None
    minute = 0
    while event is None and minute < 500:
        minute += 5
        event = tick(tracker, minute, 8.0 + 0.001 * minute, 1.5)
    assert isinstance(event, EpisodeFinished)
    assert event.episode.duration_minutes == pytest.approx(360.0)
    assert minute == 365


def test_renewed_rise_in_tail_splits_episode(tracker):
    meal_rise(tracker)
    fall_into_tail(tracker)
    event = tick(tracker, 85, 6.5, 1.5, meal=True)
    assert isinstance(event, EpisodeFinished)
    first = event.episode
    assert first.id == 1
    assert first.end == T0 + timedelta(minutes=80)
    assert first.start <= first.end <= T0 + timedelta(minutes=85)
    assert tracker.has_active_episode
    assert tracker.active_episode.id == 2
    assert tracker.active_episode_start == first.end
    assert tracker.total_episodes == 2


def test_missing_glucose_starts_on_engine_signals(tracker):
    assert tick(tracker, 0, float("nan"), 0.0) is None
    event = tick(tracker, 5, float("nan"), 0.0, peak=True)
    assert isinstance(event, EpisodeStarted)
    assert event.episode.start == T0 + timedelta(minutes=5)
