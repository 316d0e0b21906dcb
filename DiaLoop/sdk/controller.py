"""
DiaLoop SDK - Loop Controller
Runs one complete five-minute tick: dosing decision, delivery record and
the observational learning chain.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from ..core.base_classes import (
    BaseGlucoseHistoryProvider,
    BaseInsulinDeliveryProvider,
    BaseLearningStore,
    BgPoint,
    InsulinDelivery,
)
from ..core.engine_config import EngineConfig
from ..learning.advice_emitter import AdviceBundle
from ..learning.delivery_providers import InMemoryGlucoseHistoryProvider, InMemoryInsulinDeliveryProvider
from ..learning.episode_summarizer import EpisodeSummarizer
from ..learning.learning_store import YamlLearningStore
from ..learning.orchestrator import LearningOrchestrator
from ..learning.snapshot import ObsSnapshot
from ..utils.config import ConfigManager
from ..utils.numeric import is_finite
from .data_types import DoseAdvice, EngineInput
from .engine import ClosedLoopEngine


@dataclass
class TickResult:
    """Everything one tick produced."""
    advice: DoseAdvice
    delivered_u: float
    advice_bundle: Optional[AdviceBundle] = None
    snapshot: Optional[ObsSnapshot] = None


class LoopController:
    """
    Owns one engine and one learning orchestrator and runs them in order.

    The learning chain only reads what the engine exports per cycle
    (`DoseAdvice.signals` and the cycle context). Any failure inside it is
    logged and swallowed so the dosing decision is always returned.
    """

    def __init__(self, engine: Optional[ClosedLoopEngine] = None,
                 config_manager: Optional[ConfigManager] = None,
                 bg_provider: Optional[BaseGlucoseHistoryProvider] = None,
                 delivery_provider: Optional[BaseInsulinDeliveryProvider] = None,
                 orchestrator: Optional[LearningOrchestrator] = None,
                 learning_store: Optional[BaseLearningStore] = None):
        self.logger = logging.getLogger(__name__)
        self.engine = engine or ClosedLoopEngine()
        self.config_manager = config_manager

        self._own_bg_history = bg_provider is None
        self.bg_provider = bg_provider or InMemoryGlucoseHistoryProvider()
        self._own_deliveries = delivery_provider is None
        self.delivery_provider = delivery_provider or InMemoryInsulinDeliveryProvider()

        self.orchestrator = orchestrator or LearningOrchestrator(
            EpisodeSummarizer(self.bg_provider, self.delivery_provider)
        )
        if learning_store is None and config_manager is not None:
            store_path = config_manager.get("learning.store_path")
            if store_path:
                learning_store = YamlLearningStore(store_path)
        if learning_store is not None:
            self.orchestrator.attach_learning_store(learning_store)

    def config_for(self, is_night: bool) -> EngineConfig:
        """Effective engine configuration for this cycle, re-read from preferences."""
        if self.config_manager is None:
            return self.engine.config.for_time_of_day(is_night)
        return EngineConfig.from_preferences(self.config_manager.get_section("engine"), is_night)

    def tick(self, engine_input: EngineInput, manual_bolus_detected: bool = False,
             delivery_confidence: float = 1.0) -> TickResult:
        config = self.config_for(engine_input.is_night)
        ctx = self.engine.build_context(engine_input, config)
        advice = self.engine.advise(ctx, config)

        cycle_h = config.delivery_cycle_minutes / 60.0
        delivered = 0.0
        if advice.should_deliver:
            delivered = advice.bolus_amount + advice.basal_rate * cycle_h

        if self._own_bg_history:
            for t, bg in sorted(engine_input.bg_history, key=lambda p: p[0]):
                if is_finite(bg):
                    self.bg_provider.record(BgPoint(t, bg))
        if self._own_deliveries and delivered > 0.0:
            if advice.bolus_amount > 0.0:
                self.delivery_provider.record(InsulinDelivery(ctx.now, advice.bolus_amount, "SMB"))
            basal_u = advice.basal_rate * cycle_h
            if basal_u > 0.0:
                self.delivery_provider.record(InsulinDelivery(ctx.now, basal_u, "BASAL"))

        signals = advice.signals
        bundle = None
        try:
            bundle = self.orchestrator.on_five_minute_tick(
                now=ctx.now,
                is_night=ctx.is_night,
                peak_active=signals.peak_active,
                meal_signal_active=signals.meal_signal_active,
                pre_peak_commit_window=signals.pre_peak_commit_window,
                rescue_confirmed=signals.rescue_confirmed,
                downtrend_locked=signals.downtrend_locked,
                bg=ctx.bg,
                target=ctx.target_bg,
                iob=ctx.iob,
                slope=ctx.slope,
                acceleration=ctx.acceleration,
                delta_to_target=ctx.delta_to_target,
                consistency=ctx.consistency,
                predicted_peak=signals.predicted_peak,
                delivery_confidence=delivery_confidence,
                commanded_u=delivered,
                max_bolus_u=config.max_smb,
                manual_bolus_detected=manual_bolus_detected,
            )
        except Exception:
            self.logger.exception("Learning tick failed; dosing decision unaffected")

        if bundle is not None and bundle.advices:
            for item in bundle.advices:
                self.logger.info(f"Advice: {item.title} ({item.confidence:.2f})")

        return TickResult(
            advice=advice,
            delivered_u=delivered,
            advice_bundle=bundle,
            snapshot=self.orchestrator.current_snapshot(),
        )
