"""
DiaLoop Learning - Orchestrator
The single per-cycle entry point of the observational learning chain.

Each tick feeds the delivery gate and the episode tracker. When an
episode finishes (and was not excluded) it runs summarizer, axis scorer,
confidence accumulator and advice emitter, then persists the evidence.
Nothing here can raise into, or change, the dosing path.
"""

import logging
from datetime import datetime
from typing import Optional

from ..core.base_classes import BaseLearningStore
from ..utils.numeric import clamp01, is_finite
from .advice_emitter import AdviceBundle, AdviceEmitter
from .axis_scorer import Axis, AxisScorer
from .confidence_accumulator import ConfidenceAccumulator
from .delivery_gate import InsulinDeliveryGate
from .episode_summarizer import EpisodeSummarizer
from .episode_tracker import Episode, EpisodeFinished, EpisodeStarted, EpisodeTracker
from .snapshot import AxisStatus, DeliveryGateStatus, ObsSnapshot, SnapshotStatus

BOLUS_TRIGGER_FRACTION = 0.30
MIN_TRIGGER_U = 0.20


class LearningOrchestrator:
    """Wires tracker, summarizer, scorer, accumulator and emitter together."""

    def __init__(self, summarizer: EpisodeSummarizer,
                 tracker: Optional[EpisodeTracker] = None,
                 scorer: Optional[AxisScorer] = None,
                 accumulator: Optional[ConfidenceAccumulator] = None,
                 emitter: Optional[AdviceEmitter] = None,
                 delivery_gate: Optional[InsulinDeliveryGate] = None):
        self.summarizer = summarizer
        self.tracker = tracker or EpisodeTracker()
        self.scorer = scorer or AxisScorer()
        self.accumulator = accumulator or ConfidenceAccumulator()
        self.emitter = emitter or AdviceEmitter()
        self.delivery_gate = delivery_gate or InsulinDeliveryGate()
        self.logger = logging.getLogger(__name__)

        self.learning_store: Optional[BaseLearningStore] = None
        self.last_finished_episode: Optional[Episode] = None
        self._snapshot: Optional[ObsSnapshot] = None
        self._delivery_confidence = 1.0
        self._gate_status: Optional[DeliveryGateStatus] = None
        self._episode_predicted_peak: Optional[float] = None
        self._finished_count = 0

    @staticmethod
    def force_confirm_threshold(max_bolus_u: float) -> float:
        return max(MIN_TRIGGER_U, max_bolus_u * BOLUS_TRIGGER_FRACTION)

    def attach_learning_store(self, store: BaseLearningStore) -> int:
        """Attaches persistence and restores any saved evidence.

        Returns the number of restored evidence items. A store that fails
        to load leaves the accumulator empty.
        """
        self.learning_store = store
        try:
            state = store.load()
        except Exception:
            self.logger.exception("Could not load learning state, starting empty")
            return 0
        if not state:
            return 0
        restored = self.accumulator.restore_state(state)
        self.logger.info(f"Restored {restored} evidence items from learning store")
        return restored

    def current_snapshot(self) -> Optional[ObsSnapshot]:
        return self._snapshot

    def on_five_minute_tick(
        self,
        now: datetime,
        is_night: bool,
        peak_active: bool,
        meal_signal_active: bool,
        pre_peak_commit_window: bool,
        rescue_confirmed: bool,
        downtrend_locked: bool,
        bg: float,
        target: float,
        iob: float,
        slope: float,
        acceleration: float,
        delta_to_target: float,
        consistency: float,
        predicted_peak: Optional[float],
        delivery_confidence: float,
        commanded_u: float,
        max_bolus_u: float,
        manual_bolus_detected: bool = False,
    ) -> Optional[AdviceBundle]:
        """
        Runs one learning cycle.

        Args:
            predicted_peak (Optional[float]): The engine's current peak
                prediction. The value seen when an episode starts is kept
                and used for that episode's prediction error.
            delivery_confidence (float): Host-side confidence in the
                delivery record, combined with the delivery gate's multiplier.
            commanded_u (float): Units delivered this cycle. A large
                delivery force-confirms an episode.

        Returns:
            Optional[AdviceBundle]: None unless a non-excluded episode
                finished this tick. Then either emitted advices or a debug
                bundle listing the current buckets.
        """
        self._delivery_confidence = clamp01(delivery_confidence) if is_finite(delivery_confidence) else 0.0

        check = self.delivery_gate.record_cycle(now, commanded_u, iob)
        self._gate_status = DeliveryGateStatus(
            confidence=check.confidence_multiplier, ok=check.ok, reason=check.reason
        )

        force = (
            is_finite(commanded_u)
            and is_finite(max_bolus_u)
            and commanded_u >= self.force_confirm_threshold(max_bolus_u)
        )

        event = self.tracker.on_five_minute_tick(
            now=now,
            is_night=is_night,
            peak_active=peak_active,
            meal_signal_active=meal_signal_active,
            pre_peak_commit_window=pre_peak_commit_window,
            rescue_confirmed=rescue_confirmed,
            downtrend_locked=downtrend_locked,
            force_meal_confirm=force,
            manual_bolus_detected=manual_bolus_detected,
            bg=bg,
            target=target,
            iob=iob,
            slope=slope,
            acceleration=acceleration,
            delta_to_target=delta_to_target,
            consistency=consistency,
        )

        if isinstance(event, EpisodeStarted):
            self._episode_predicted_peak = predicted_peak
            self._rebuild_snapshot(now)
            return None
        if not isinstance(event, EpisodeFinished):
            self._rebuild_snapshot(now)
            return None

        episode = event.episode
        episode_predicted_peak = self._episode_predicted_peak
        # After a split the tracker already holds the follow-up episode.
        self._episode_predicted_peak = predicted_peak if self.tracker.has_active_episode else None
        self.last_finished_episode = episode
        self._finished_count += 1

        if episode.excluded:
            self._rebuild_snapshot(now)
            return None

        if episode_predicted_peak is None:
            episode_predicted_peak = predicted_peak
        summary = self.summarizer.summarize(episode, episode_predicted_peak)
        observations = self.scorer.score(episode, summary)
        weight = self._delivery_confidence * self._gate_status.confidence
        self.accumulator.ingest(now, episode.is_night, observations, weight)
        self.logger.info(
            f"Episode #{episode.id} scored: "
            + ", ".join(f"{o.axis.name}={o.outcome.name}" for o in observations)
        )

        if self.learning_store is not None:
            try:
                self.learning_store.save(self.accumulator.export_state())
            except Exception:
                self.logger.exception("Learning state save failed, continuing in memory")

        self._rebuild_snapshot(now)

        top = self.accumulator.get_top_signals(now)
        if top:
            return self.emitter.emit(now, top)

        snapshot = self.accumulator.build_snapshot(now)
        lines = [f"[OBS] Episode #{episode.id} finished. Buckets:"]
        for axis in Axis:
            items = snapshot.per_axis.get(axis)
            if items:
                best = items[0]
                lines.append(
                    f" - {axis.name}: top={best.outcome.name} conf={best.confidence:.2f} n={best.support_count}"
                )
            else:
                lines.append(f" - {axis.name}: (no evidence)")
        return AdviceBundle(created_at=now, advices=[], debug_summary="\n".join(lines))

    def _rebuild_snapshot(self, now: datetime) -> None:
        axes = [self.accumulator.build_axis_snapshot(axis, now) for axis in Axis]
        if self._finished_count == 0 and not any(a.episodes_seen for a in axes):
            status = SnapshotStatus.INIT
        elif any(a.status == AxisStatus.STRUCTURAL_SIGNAL for a in axes):
            status = SnapshotStatus.SIGNAL_PRESENT
        else:
            status = SnapshotStatus.OBSERVING

        last = self.last_finished_episode
        self._snapshot = ObsSnapshot(
            created_at=now,
            total_episodes=self.tracker.total_episodes,
            active_episode=self.tracker.has_active_episode,
            active_episode_started_at=self.tracker.active_episode_start,
            delivery_confidence=self._delivery_confidence,
            status=status,
            axes=axes,
            last_episode_start=last.start if last else None,
            last_episode_end=last.end if last else None,
            delivery_gate_status=self._gate_status,
        )
