"""
DiaLoop Learning - Confidence Accumulator
Builds structural confidence per (axis, outcome) over many episodes.

Only non-OK outcomes are stored as evidence. Night episodes weigh less,
older evidence decays with a half-life, and an outcome loses ground to
the opposite outcome on the same axis.
"""

import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Deque, Dict, FrozenSet, List, Optional, Tuple

from ..utils.numeric import clamp01, half_life_decay, sigmoid
from .axis_scorer import Axis, AxisObservation, AxisOutcome
from .snapshot import AxisSnapshot, AxisStatus

logger = logging.getLogger(__name__)

STATE_VERSION = 1

OPPOSITES = {
    AxisOutcome.EARLY: AxisOutcome.LATE,
    AxisOutcome.LATE: AxisOutcome.EARLY,
    AxisOutcome.TOO_HIGH: AxisOutcome.TOO_STRONG,
    AxisOutcome.TOO_STRONG: AxisOutcome.TOO_HIGH,
    AxisOutcome.TOO_SHORT: AxisOutcome.TOO_LONG,
    AxisOutcome.TOO_LONG: AxisOutcome.TOO_SHORT,
}


@dataclass(frozen=True)
class ConfidenceAccumulatorConfig:
    max_evidence_per_bucket: int = 80
    night_weight_mul: float = 0.65
    min_support_count: int = 3
    min_total_count_in_axis: int = 6
    half_life_hours: float = 72.0
    sigmoid_k: float = 1.35
    emit_min_confidence: float = 0.70
    weak_min_confidence: float = 0.35
    immature_damping: float = 0.55
    stored_outcomes: FrozenSet[AxisOutcome] = field(default_factory=lambda: frozenset(OPPOSITES))


@dataclass(frozen=True)
class Evidence:
    time: datetime
    episode_id: int
    strength: float
    weight: float


@dataclass(frozen=True)
class AxisOutcomeConfidence:
    axis: Axis
    outcome: AxisOutcome
    confidence: float
    support_score: float
    support_count: int
    last_seen_at: Optional[datetime]
    notes: str


@dataclass(frozen=True)
class ConfidenceSnapshot:
    updated_at: datetime
    per_axis: Dict[Axis, List[AxisOutcomeConfidence]]


BucketKey = Tuple[Axis, AxisOutcome]


class ConfidenceAccumulator:
    """Owns the bounded evidence queues, newest evidence first."""

    def __init__(self, config: Optional[ConfidenceAccumulatorConfig] = None):
        self.config = config or ConfidenceAccumulatorConfig()
        self._buckets: Dict[BucketKey, Deque[Evidence]] = {}

    @property
    def emit_threshold(self) -> float:
        return self.config.emit_min_confidence

    def evidence_count(self, axis: Axis, outcome: Optional[AxisOutcome] = None) -> int:
        return sum(
            len(q) for (a, o), q in self._buckets.items()
            if a == axis and (outcome is None or o == outcome)
        )

    def ingest(self, now: datetime, is_night: bool, observations: List[AxisObservation],
               delivery_confidence: float) -> int:
        """
        Adds the observations of one finished, non-excluded episode.

        Args:
            now (datetime): Timestamp stored on the evidence.
            is_night (bool): Night episodes get a lower weight.
            observations (List[AxisObservation]): Scorer output for the episode.
            delivery_confidence (float): Delivery gate multiplier in [0, 1].

        Returns:
            int: Number of evidence items actually stored.
        """
        cfg = self.config
        base = cfg.night_weight_mul if is_night else 1.0
        weight = clamp01(base * clamp01(delivery_confidence))

        stored = 0
        for obs in observations:
            if obs.outcome not in cfg.stored_outcomes or obs.signal_strength <= 0.0:
                continue
            queue = self._buckets.setdefault((obs.axis, obs.outcome), deque())
            queue.appendleft(Evidence(now, obs.episode_id, clamp01(obs.signal_strength), weight))
            while len(queue) > cfg.max_evidence_per_bucket:
                queue.pop()
            stored += 1
        logger.debug(f"Ingested {stored} evidence items (weight={weight:.2f})")
        return stored

    def build_snapshot(self, now: datetime) -> ConfidenceSnapshot:
        per_axis: Dict[Axis, List[AxisOutcomeConfidence]] = {}
        totals = {axis: self.evidence_count(axis) for axis in Axis}
        for (axis, outcome), queue in self._buckets.items():
            per_axis.setdefault(axis, []).append(
                self._bucket_confidence(now, axis, outcome, queue, totals[axis])
            )
        for items in per_axis.values():
            items.sort(key=lambda c: c.confidence, reverse=True)
        return ConfidenceSnapshot(updated_at=now, per_axis=per_axis)

    def confidence_for(self, now: datetime, axis: Axis, outcome: AxisOutcome) -> AxisOutcomeConfidence:
        queue = self._buckets.get((axis, outcome), deque())
        return self._bucket_confidence(now, axis, outcome, queue, self.evidence_count(axis))

    def get_top_signals(self, now: datetime, max_items: int = 6) -> List[AxisOutcomeConfidence]:
        snapshot = self.build_snapshot(now)
        candidates = [
            c for items in snapshot.per_axis.values() for c in items
            if c.confidence >= self.config.emit_min_confidence
        ]
        candidates.sort(key=lambda c: c.confidence, reverse=True)
        return candidates[:max_items]

    def build_axis_snapshot(self, axis: Axis, now: datetime) -> AxisSnapshot:
        """Per-axis view: outcome shares, dominant outcome and its status."""
        cfg = self.config
        confidences = [
            self._bucket_confidence(now, a, o, q, self.evidence_count(axis))
            for (a, o), q in self._buckets.items() if a == axis and q
        ]

        mass = {c.outcome: c.support_score * c.support_count for c in confidences}
        total_mass = sum(mass.values())
        percentages = {}
        if total_mass > 0.0:
            percentages = {o: 100.0 * m / total_mass for o, m in mass.items()}

        dominant = max(confidences, key=lambda c: c.confidence, default=None)
        dominant_conf = dominant.confidence if dominant else 0.0
        if dominant_conf >= cfg.emit_min_confidence:
            status = AxisStatus.STRUCTURAL_SIGNAL
        elif dominant_conf >= cfg.weak_min_confidence:
            status = AxisStatus.WEAK_SIGNAL
        else:
            status = AxisStatus.NO_DIRECTION

        episodes = set()
        last_seen = None
        for (a, _), queue in self._buckets.items():
            if a != axis:
                continue
            for ev in queue:
                episodes.add(ev.episode_id)
                if last_seen is None or ev.time > last_seen:
                    last_seen = ev.time

        return AxisSnapshot(
            axis=axis,
            percentages=percentages,
            dominant_outcome=dominant.outcome if dominant and dominant_conf > 0.0 else None,
            dominant_confidence=dominant_conf,
            status=status,
            episodes_seen=len(episodes),
            last_episode_at=last_seen,
        )

    def _support(self, now: datetime, queue) -> float:
        """Time-decayed, weight-averaged strength of a bucket."""
        num = 0.0
        den = 0.0
        for ev in queue:
            age_h = max(0.0, (now - ev.time).total_seconds() / 3600.0)
            w = ev.weight * half_life_decay(age_h, self.config.half_life_hours)
            num += w * ev.strength
            den += w
        if den <= 0.0:
            return 0.0
        return num / den

    def _bucket_confidence(self, now: datetime, axis: Axis, outcome: AxisOutcome,
                           queue, total_axis_count: int) -> AxisOutcomeConfidence:
        cfg = self.config
        if not queue:
            return AxisOutcomeConfidence(axis, outcome, 0.0, 0.0, 0, None, "no evidence")

        support = self._support(now, queue)
        opposite = OPPOSITES.get(outcome)
        opposition = 0.0
        if opposite is not None:
            opposite_queue = self._buckets.get((axis, opposite))
            if opposite_queue:
                opposition = self._support(now, opposite_queue)

        net = clamp01(support - opposition)
        k = max(0.1, cfg.sigmoid_k)
        raw = sigmoid(k * (2.0 * net - 1.0))

        mature = len(queue) >= cfg.min_support_count and total_axis_count >= cfg.min_total_count_in_axis
        confidence = clamp01(raw if mature else raw * cfg.immature_damping)

        notes = (
            f"support={support:.2f} opp={opposition:.2f} net={net:.2f} n={len(queue)} "
            f"axisTotal={total_axis_count}" + ("" if mature else " (immature)")
        )
        return AxisOutcomeConfidence(
            axis=axis,
            outcome=outcome,
            confidence=confidence,
            support_score=support,
            support_count=len(queue),
            last_seen_at=queue[0].time,
            notes=notes,
        )

    def export_state(self) -> Dict[str, Any]:
        """Plain-data copy of all evidence, suitable for YAML."""
        buckets = []
        for (axis, outcome), queue in self._buckets.items():
            buckets.append({
                "axis": axis.value,
                "outcome": outcome.value,
                "evidence": [
                    {
                        "time": ev.time.isoformat(),
                        "episode_id": ev.episode_id,
                        "strength": float(ev.strength),
                        "weight": float(ev.weight),
                    }
                    for ev in queue
                ],
            })
        return {"version": STATE_VERSION, "buckets": buckets}

    def restore_state(self, state: Dict[str, Any]) -> int:
        """Replaces the evidence with a previously exported state.

        Malformed buckets or items are skipped. Returns the number of
        evidence items restored.
        """
        restored: Dict[BucketKey, Deque[Evidence]] = {}
        count = 0
        for bucket in (state or {}).get("buckets", []) or []:
            try:
                key = (Axis(bucket["axis"]), AxisOutcome(bucket["outcome"]))
            except (KeyError, TypeError, ValueError):
                logger.warning(f"Skipping malformed evidence bucket: {bucket!r}")
                continue
            if key[1] not in self.config.stored_outcomes:
                continue
            queue = deque()
            for item in bucket.get("evidence", []) or []:
                try:
                    queue.append(Evidence(
                        time=datetime.fromisoformat(str(item["time"])),
                        episode_id=int(item["episode_id"]),
                        strength=clamp01(float(item["strength"])),
                        weight=clamp01(float(item["weight"])),
                    ))
                except (KeyError, TypeError, ValueError):
                    logger.warning(f"Skipping malformed evidence item in {key[0].name}/{key[1].name}")
            while len(queue) > self.config.max_evidence_per_bucket:
                queue.pop()
            if queue:
                restored[key] = queue
                count += len(queue)
        self._buckets = restored
        return count

    def clear(self) -> None:
        self._buckets.clear()
