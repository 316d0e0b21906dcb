"""
DiaLoop SDK - Closed-Loop Dosing

Quick Start:
    from DiaLoop.sdk import ClosedLoopEngine, EngineInput

    engine = ClosedLoopEngine()
    advice = engine.get_advice(EngineInput(
        bg_now=9.4,
        bg_history=history,      # [(datetime, mmol/L), ...] oldest first
        current_iob=0.8,
        max_iob=6.0,
        effective_isf=2.5,
        target_bg=5.5,
    ))

    if advice.should_deliver:
        pump.deliver(advice.bolus_amount, advice.basal_rate)
    print(advice.status_text)

`LoopController` additionally records deliveries and drives the
observational learning chain each tick.
"""

# data_types first: the agents import it while the engine is loading.
from .data_types import (
    AccessLevel,
    BgZone,
    DiagnosticEntry,
    DoseAdvice,
    EngineContext,
    EngineInput,
    ExecutionResult,
    LearningSignals,
    MealState,
    PeakState,
)
from .delivery_executor import DeliveryExecutor, DeliverySettings
from .dose_shaper import DoseRecord, DoseShaper
from .engine import ClosedLoopEngine
from .controller import LoopController, TickResult

__all__ = [
    'ClosedLoopEngine',
    'LoopController',
    'TickResult',
    'DeliveryExecutor',
    'DeliverySettings',
    'DoseRecord',
    'DoseShaper',
    'EngineInput',
    'EngineContext',
    'DoseAdvice',
    'DiagnosticEntry',
    'ExecutionResult',
    'LearningSignals',
    'AccessLevel',
    'BgZone',
    'MealState',
    'PeakState',
]
