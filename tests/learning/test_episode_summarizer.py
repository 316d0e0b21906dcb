# Tests for DiaLoop.learning.episode_summarizer

from datetime import timedelta

import pytest

from DiaLoop.core.base_classes import BgPoint, InsulinDelivery
from DiaLoop.learning.delivery_providers import InMemoryGlucoseHistoryProvider, InMemoryInsulinDeliveryProvider
from DiaLoop.learning.episode_summarizer import EpisodeSummarizer
from DiaLoop.learning.episode_tracker import Episode
from tests.helpers import T0

EPISODE_BG = [6.0, 7.0, 8.0, 9.0, 10.0, 11.0, 12.0, 11.0, 10.0, 9.5, 9.0, 9.2, 9.8]


def at(minute):
    return T0 + timedelta(minutes=minute)


@pytest.fixture
def providers():
    bg = InMemoryGlucoseHistoryProvider()
    bg.record(BgPoint(at(-5), 5.0))
    for i, value in enumerate(EPISODE_BG):
        bg.record(BgPoint(at(5 * i), value))
    bg.record(BgPoint(at(65), 13.0))

    insulin = InMemoryInsulinDeliveryProvider()
    insulin.record(InsulinDelivery(at(-10), 1.0))
    insulin.record(InsulinDelivery(at(5), 0.05))
    insulin.record(InsulinDelivery(at(15), 0.5))
    return bg, insulin


@pytest.fixture
def episode():
    return Episode(id=7, start=at(0), end=at(60), is_night=False, quality_score=0.9)


def test_summary_facts(providers, episode):
    summary = EpisodeSummarizer(*providers).summarize(episode, predicted_peak_at_start=10.0)
    assert summary.episode_id == 7
    assert summary.duration_minutes == 60
    assert summary.start_bg == 6.0
    assert summary.peak_bg == 12.0
    assert summary.peak_time == at(30)
    assert summary.time_to_peak_minutes == 30
    assert summary.nadir_bg == 6.0
    assert summary.post_peak_minutes == 30
    assert summary.time_above_high_minutes == 20
    assert summary.rebound_detected
    assert summary.total_insulin_u == pytest.approx(0.55)
    assert summary.first_meaningful_insulin_at == at(15)
    assert summary.minutes_to_first_insulin == 15
    assert summary.peak_prediction_error == pytest.approx(2.0)
    print("test_summary_facts: PASSED")


def test_unfinished_episode_rejected(providers):
    open_episode = Episode(id=1, start=at(0), end=None, is_night=False)
    with pytest.raises(ValueError):
        EpisodeSummarizer(*providers).summarize(open_episode)


def test_no_history_gives_empty_facts(episode):
    summarizer = EpisodeSummarizer(InMemoryGlucoseHistoryProvider(), InMemoryInsulinDeliveryProvider())
    summary = summarizer.summarize(episode, predicted_peak_at_start=float("nan"))
    assert summary.peak_bg is None
    assert summary.time_to_peak_minutes is None
    assert summary.time_above_high_minutes == 0
    assert not summary.rebound_detected
    assert summary.total_insulin_u == 0.0
    assert summary.minutes_to_first_insulin is None
    assert summary.predicted_peak_at_start is None
    assert summary.peak_prediction_error is None


def test_time_above_counts_interval_means():
    points = [BgPoint(at(0), 9.0), BgPoint(at(5), 11.5), BgPoint(at(10), 10.5), BgPoint(at(20), 9.0)]
    # means: 10.25, 11.0, 9.75
    assert EpisodeSummarizer.time_above(points, 10.0) == 10


def test_rebound_needs_a_rise_after_the_post_peak_low():
    falling = [BgPoint(at(m), 12.0 - 0.3 * m / 5) for m in range(0, 35, 5)]
    assert not EpisodeSummarizer.rebound_after_peak(falling, at(0))
    assert not EpisodeSummarizer.rebound_after_peak(falling, None)
