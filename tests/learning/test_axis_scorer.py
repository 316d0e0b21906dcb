# Tests for DiaLoop.learning.axis_scorer

from dataclasses import replace
from datetime import timedelta

import pytest

from DiaLoop.learning.axis_scorer import Axis, AxisOutcome, AxisScorer
from DiaLoop.learning.episode_summarizer import EpisodeSummary
from DiaLoop.learning.episode_tracker import Episode, ExclusionReason
from tests.helpers import T0


@pytest.fixture
def scorer():
    return AxisScorer()


@pytest.fixture
def episode():
    return Episode(id=3, start=T0, end=T0 + timedelta(minutes=150), is_night=False, quality_score=0.8)


@pytest.fixture
def summary():
    return EpisodeSummary(
        episode_id=3, is_night=False, start=T0, end=T0 + timedelta(minutes=150), duration_minutes=150,
        start_bg=6.0, peak_bg=12.0, peak_time=T0 + timedelta(minutes=60), time_to_peak_minutes=60,
        nadir_bg=5.5, nadir_time=T0, time_above_high_minutes=50, post_peak_minutes=90,
        rebound_detected=False, total_insulin_u=3.0, first_meaningful_insulin_at=T0 + timedelta(minutes=25),
        minutes_to_first_insulin=25, predicted_peak_at_start=9.5, peak_prediction_error=2.5,
    )


def by_axis(observations):
    return {o.axis: o for o in observations}


def test_high_late_episode(scorer, episode, summary):
    obs = by_axis(scorer.score(episode, summary))
    assert set(obs) == {Axis.TIMING, Axis.HEIGHT, Axis.PERSISTENCE}
    assert obs[Axis.TIMING].outcome == AxisOutcome.LATE
    assert obs[Axis.HEIGHT].outcome == AxisOutcome.TOO_HIGH
    assert obs[Axis.PERSISTENCE].outcome == AxisOutcome.TOO_SHORT
    for o in obs.values():
        assert 0.0 <= o.signal_strength <= 1.0
        assert o.episode_id == 3
        assert "PRED_MISMATCH" in o.tags
        assert o.tags["PRED_ERR"] == "act-pred=2.50"


def test_late_insulin_with_low_peak_is_ok(scorer, episode, summary):
    """Late first insulin only counts as LATE when the peak actually went high."""
    low_peak = replace(summary, peak_bg=9.5, minutes_to_first_insulin=40)
    obs = by_axis(scorer.score(episode, low_peak))
    assert obs[Axis.TIMING].outcome == AxisOutcome.OK
    assert obs[Axis.HEIGHT].outcome == AxisOutcome.OK
    assert obs[Axis.PERSISTENCE].outcome == AxisOutcome.OK


def test_high_peak_without_insulin_is_late(scorer, episode, summary):
    no_insulin = replace(summary, minutes_to_first_insulin=None, first_meaningful_insulin_at=None)
    assert by_axis(scorer.score(episode, no_insulin))[Axis.TIMING].outcome == AxisOutcome.LATE


def test_early_insulin_with_low_nadir(scorer, episode, summary):
    early = replace(summary, minutes_to_first_insulin=5, nadir_bg=4.0)
    assert by_axis(scorer.score(episode, early))[Axis.TIMING].outcome == AxisOutcome.EARLY


def test_hypo_nadir_is_too_strong(scorer, episode, summary):
    strong = replace(summary, nadir_bg=3.5)
    assert by_axis(scorer.score(episode, strong))[Axis.HEIGHT].outcome == AxisOutcome.TOO_STRONG


def test_rebound_after_low_nadir_is_too_long(scorer, episode, summary):
    rebound = replace(summary, rebound_detected=True, nadir_bg=4.0)
    assert by_axis(scorer.score(episode, rebound))[Axis.PERSISTENCE].outcome == AxisOutcome.TOO_LONG


def test_missing_peak_is_unknown(scorer, episode, summary):
    empty = replace(summary, peak_bg=None, nadir_bg=None, predicted_peak_at_start=None,
                    peak_prediction_error=None)
    observations = scorer.score(episode, empty)
    assert all(o.outcome == AxisOutcome.UNKNOWN for o in observations)
    assert all(o.signal_strength == 0.0 for o in observations)


def test_excluded_episode_single_unknown(scorer, episode, summary):
    excluded = replace(episode, excluded=True, exclusion_reason=ExclusionReason.MANUAL_BOLUS)
    observations = scorer.score(excluded, summary)
    assert len(observations) == 1
    assert observations[0].axis == Axis.HEIGHT
    assert observations[0].outcome == AxisOutcome.UNKNOWN
    assert observations[0].reason == "EXCLUDED: MANUAL_BOLUS"


def test_scoring_is_pure(scorer, episode, summary):
    assert scorer.score(episode, summary) == scorer.score(episode, summary)
