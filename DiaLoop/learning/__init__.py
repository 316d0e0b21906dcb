"""Observational learning: scores finished episodes, never changes dosing."""

from .advice_emitter import Advice, AdviceBundle, AdviceEmitter
from .axis_scorer import Axis, AxisObservation, AxisOutcome, AxisScorer
from .confidence_accumulator import AxisOutcomeConfidence, ConfidenceAccumulator
from .delivery_gate import DeliveryCheck, InsulinDeliveryGate
from .delivery_providers import (
    InMemoryGlucoseHistoryProvider,
    InMemoryInsulinDeliveryProvider,
    MgdlGlucoseHistoryAdapter,
)
from .episode_summarizer import EpisodeSummarizer, EpisodeSummary
from .episode_tracker import Episode, EpisodeFinished, EpisodeStarted, EpisodeTracker, ExclusionReason
from .learning_store import InMemoryLearningStore, LearningStoreError, YamlLearningStore
from .orchestrator import LearningOrchestrator
from .snapshot import AxisSnapshot, AxisStatus, DeliveryGateStatus, ObsSnapshot, SnapshotStatus

__all__ = [
    "Advice", "AdviceBundle", "AdviceEmitter",
    "Axis", "AxisObservation", "AxisOutcome", "AxisScorer",
    "AxisOutcomeConfidence", "ConfidenceAccumulator",
    "DeliveryCheck", "InsulinDeliveryGate",
    "InMemoryGlucoseHistoryProvider", "InMemoryInsulinDeliveryProvider", "MgdlGlucoseHistoryAdapter",
    "EpisodeSummarizer", "EpisodeSummary",
    "Episode", "EpisodeFinished", "EpisodeStarted", "EpisodeTracker", "ExclusionReason",
    "InMemoryLearningStore", "LearningStoreError", "YamlLearningStore",
    "LearningOrchestrator",
    "AxisSnapshot", "AxisStatus", "DeliveryGateStatus", "ObsSnapshot", "SnapshotStatus",
]
