"""
DiaLoop: Closed-Loop Insulin Dosing Engine with Observational Learning

Every five minutes the dosing engine turns a glucose history, insulin on
board and a target into a bolus/basal decision. Alongside it a read-only
learning chain scores finished meal-like episodes on three axes (timing,
height, persistence) and emits advisories once a bias is structural. The
learning side never changes a dosing decision.

Example usage:
    >>> from DiaLoop import LoopController, EngineInput
    >>>
    >>> controller = LoopController()
    >>> result = controller.tick(EngineInput(
    ...     bg_now=7.2, bg_history=history, current_iob=0.4, max_iob=6.0,
    ...     effective_isf=2.5, target_bg=5.5))
    >>> result.advice.bolus_amount, result.advice.basal_rate
"""

__version__ = "1.0.0"
__author__ = "DiaLoop Team"
__license__ = "MIT"

# Load order matters: the sdk package pulls in the engine and its agents.
from .core.engine_config import EngineConfig
from .sdk.data_types import DoseAdvice, EngineContext, EngineInput
from .sdk.engine import ClosedLoopEngine
from .sdk.controller import LoopController, TickResult
from .learning.orchestrator import LearningOrchestrator
from .utils.config import ConfigManager

__all__ = [
    # Dosing
    "ClosedLoopEngine",
    "EngineConfig",
    "EngineInput",
    "EngineContext",
    "DoseAdvice",

    # Loop and learning
    "LoopController",
    "TickResult",
    "LearningOrchestrator",

    # Configuration
    "ConfigManager",

    # Metadata
    "__version__",
    "__author__",
    "__license__",
]
