# Tests for DiaLoop.learning.orchestrator

import logging
from datetime import timedelta

import pytest

from DiaLoop.core.base_classes import BgPoint, InsulinDelivery
from DiaLoop.learning.axis_scorer import Axis, AxisScorer
from DiaLoop.learning.confidence_accumulator import ConfidenceAccumulator
from DiaLoop.learning.delivery_providers import InMemoryGlucoseHistoryProvider, InMemoryInsulinDeliveryProvider
from DiaLoop.learning.episode_summarizer import EpisodeSummarizer
from DiaLoop.learning.learning_store import InMemoryLearningStore, LearningStoreError
from DiaLoop.learning.orchestrator import LearningOrchestrator
from DiaLoop.learning.snapshot import SnapshotStatus
from tests.helpers import T0


class RecordingScorer(AxisScorer):
    def __init__(self):
        super().__init__()
        self.summaries = []

    def score(self, episode, summary):
        self.summaries.append(summary)
        return super().score(episode, summary)


class FailingStore(InMemoryLearningStore):
    def save(self, state):
        raise LearningStoreError("disk full")


class BrokenLoadStore(InMemoryLearningStore):
    def load(self):
        raise LearningStoreError("corrupt")


def meal_day():
    """(minute, bg, slope, iob, meal, peak) for one meal that finishes at minute 90."""
    ticks = [(m, 6.2 - 0.1 * i, -0.5, 0.0, False, False) for i, m in enumerate(range(-60, 0, 5))]
    ticks += [(m, 6.0 + 0.6 * m / 5, 1.5, 1.0, m >= 10, True) for m in range(0, 45, 5)]
    ticks += [(m, 10.3 - 0.6 * i, -1.0, 1.0, False, False) for i, m in enumerate(range(45, 85, 5))]
    ticks += [(85, 5.8, 0.0, 0.1, False, False), (90, 5.8, 0.0, 0.1, False, False)]
    return ticks


class Harness:
    def __init__(self, store=None, scorer=None):
        self.bg = InMemoryGlucoseHistoryProvider()
        self.insulin = InMemoryInsulinDeliveryProvider()
        self.insulin.record(InsulinDelivery(T0 + timedelta(minutes=5), 0.5))
        self.scorer = scorer or RecordingScorer()
        self.orchestrator = LearningOrchestrator(EpisodeSummarizer(self.bg, self.insulin), scorer=self.scorer)
        if store is not None:
            self.orchestrator.attach_learning_store(store)

    def tick(self, minute, bg, slope, iob, meal, peak, commanded=0.0, predicted=None,
             downtrend=False, delivery_confidence=1.0):
        now = T0 + timedelta(minutes=minute)
        self.bg.record(BgPoint(now, bg))
        return self.orchestrator.on_five_minute_tick(
            now=now, is_night=False, peak_active=peak, meal_signal_active=meal,
            pre_peak_commit_window=False, rescue_confirmed=False, downtrend_locked=downtrend,
            bg=bg, target=5.5, iob=iob, slope=slope, acceleration=0.0, delta_to_target=bg - 5.5,
            consistency=0.9, predicted_peak=predicted, delivery_confidence=delivery_confidence,
            commanded_u=commanded, max_bolus_u=1.5,
        )

    def run(self, ticks, predicted_before=11.0, predicted_after=14.0):
        results = []
        for minute, bg, slope, iob, meal, peak in ticks:
            predicted = predicted_before if minute <= 20 else predicted_after
            results.append((minute, self.tick(minute, bg, slope, iob, meal, peak, predicted=predicted)))
        return results


def test_finished_episode_is_scored_and_saved():
    store = InMemoryLearningStore()
    harness = Harness(store=store)
    results = harness.run(meal_day())

    bundles = [(m, b) for m, b in results if b is not None]
    assert [m for m, _ in bundles] == [90]
    bundle = bundles[0][1]
    assert bundle.advices == []
    assert bundle.debug_summary.startswith("[OBS] Episode #1 finished. Buckets:")
    assert " - HEIGHT: top=TOO_HIGH" in bundle.debug_summary
    assert " - TIMING: (no evidence)" in bundle.debug_summary
    assert store.save_count == 1

    summary = harness.scorer.summaries[0]
    assert summary.peak_bg == pytest.approx(10.8)
    assert summary.predicted_peak_at_start == 11.0
    assert summary.minutes_to_first_insulin == 15
    print("test_finished_episode_is_scored_and_saved: PASSED")


def test_snapshot_status_progression():
    harness = Harness()
    ticks = meal_day()
    harness.run(ticks[:-1])
    snap = harness.orchestrator.current_snapshot()
    assert snap.status == SnapshotStatus.INIT
    assert snap.active_episode
    assert snap.active_episode_started_at == T0 - timedelta(minutes=10)

    harness.run(ticks[-1:])
    snap = harness.orchestrator.current_snapshot()
    assert snap.status == SnapshotStatus.OBSERVING
    assert not snap.active_episode
    assert snap.total_episodes == 1
    assert snap.last_episode_end == T0 + timedelta(minutes=90)
    assert snap.axis(Axis.HEIGHT).episodes_seen == 1
    assert snap.delivery_gate_status.confidence == 1.0
    assert "OBS OBSERVING" in snap.describe()


def test_excluded_episode_is_not_learned():
    store = InMemoryLearningStore()
    harness = Harness(store=store)
    harness.run([t for t in meal_day() if t[0] <= 40])
    assert harness.tick(45, 10.3, -1.0, 1.0, False, False, downtrend=True) is None
    assert harness.orchestrator.last_finished_episode.excluded
    assert store.save_count == 0
    assert harness.scorer.summaries == []


def test_store_failure_does_not_break_learning(caplog):
    harness = Harness(store=FailingStore())
    with caplog.at_level(logging.ERROR, logger="DiaLoop.learning.orchestrator"):
        results = harness.run(meal_day())
    assert "Learning state save failed" in caplog.text
    assert results[-1][1] is not None
    assert harness.orchestrator.accumulator.evidence_count(Axis.HEIGHT) == 1


def test_attach_restores_saved_evidence():
    source = ConfidenceAccumulator()
    source.restore_state({"version": 1, "buckets": [{"axis": "height", "outcome": "too_high", "evidence": [
        {"time": T0.isoformat(), "episode_id": 1, "strength": 0.6, "weight": 1.0},
        {"time": T0.isoformat(), "episode_id": 2, "strength": 0.7, "weight": 1.0},
    ]}]})
    store = InMemoryLearningStore()
    store.save(source.export_state())

    harness = Harness()
    assert harness.orchestrator.attach_learning_store(store) == 2
    assert harness.orchestrator.accumulator.evidence_count(Axis.HEIGHT) == 2
    assert Harness().orchestrator.attach_learning_store(BrokenLoadStore()) == 0


def test_large_delivery_force_confirms_episode():
    assert LearningOrchestrator.force_confirm_threshold(1.5) == pytest.approx(0.45)
    assert LearningOrchestrator.force_confirm_threshold(0.4) == pytest.approx(0.20)

    harness = Harness()
    harness.tick(0, 7.0, 0.2, 0.5, False, False, commanded=0.5)
    assert harness.orchestrator.tracker.has_active_episode


def test_gate_multiplier_scales_evidence_weight():
    harness = Harness()
    ticks = meal_day()
    for minute, bg, slope, iob, meal, peak in ticks:
        # IOB falls while insulin is being commanded.
        commanded = 0.3 if minute >= 80 else 0.0
        harness.tick(minute, bg, slope, iob, meal, peak, commanded=commanded, predicted=11.0)
    state = harness.orchestrator.accumulator.export_state()
    weights = [ev["weight"] for b in state["buckets"] for ev in b["evidence"]]
    assert weights and all(w < 1.0 for w in weights)
