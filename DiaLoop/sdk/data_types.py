"""
DiaLoop SDK Data Types
Data structures exchanged with the closed-loop dosing engine
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional, Sequence, Tuple


class BgZone(Enum):
    """Glucose zone relative to target."""
    LOW = "low"
    IN_RANGE = "in_range"
    MID = "mid"
    HIGH = "high"
    EXTREME = "extreme"


class AccessLevel(Enum):
    """Dose size tier the current zone and slope allow."""
    BLOCKED = "blocked"
    MICRO_ONLY = "micro_only"
    SMALL = "small"
    NORMAL = "normal"


class PeakCategory(Enum):
    """Severity class of the predicted peak, ordered by `rank`."""
    NONE = "none"
    MILD = "mild"
    MEAL = "meal"
    HIGH = "high"
    EXTREME = "extreme"

    @property
    def rank(self) -> int:
        return list(PeakCategory).index(self)


class PeakState(Enum):
    IDLE = "idle"
    WATCHING = "watching"
    CONFIRMED = "confirmed"


class MealState(Enum):
    NONE = "none"
    UNCERTAIN = "uncertain"
    CONFIRMED = "confirmed"


class TrendState(Enum):
    NONE = "none"
    RISING_WEAK = "rising_weak"
    RISING_CONFIRMED = "rising_confirmed"


class DowntrendState(Enum):
    OFF = "off"
    LOCKED = "locked"


class RescueState(Enum):
    IDLE = "idle"
    ARMED = "armed"
    CONFIRMED = "confirmed"


class ReserveCause(Enum):
    SHORT_TERM_DIP = "short_term_dip"
    POST_PEAK_TOP = "post_peak_top"
    PRE_UNCERTAIN_MEAL = "pre_uncertain_meal"


@dataclass
class EngineInput:
    """Raw per-cycle input supplied by the host.

    Glucose values are mmol/L, insulin values are units. `bg_history`
    holds (timestamp, glucose) pairs, oldest first. When `now` is None
    the timestamp of the newest history point is used.
    """
    bg_now: float
    bg_history: Sequence[Tuple[datetime, float]]
    current_iob: float
    max_iob: float
    effective_isf: float
    target_bg: float
    is_night: bool = False
    now: Optional[datetime] = None

    def resolve_now(self) -> datetime:
        if self.now is not None:
            return self.now
        if self.bg_history:
            return max(t for t, _ in self.bg_history)
        return datetime.now()


@dataclass(frozen=True)
class EngineContext:
    """Per-cycle derived signals; slopes are mmol/L/h."""
    now: datetime
    bg: float
    slope: float
    acceleration: float
    consistency: float
    recent_slope: float
    recent_delta5m: float
    iob: float
    iob_ratio: float
    delta_to_target: float
    effective_isf: float
    target_bg: float
    is_night: bool = False


@dataclass(frozen=True)
class DiagnosticEntry:
    """One structured diagnostic: which stage said what."""
    stage: str
    key: str
    value: object = None

    def render(self) -> str:
        if self.value is None or self.value == "":
            return f"{self.stage}: {self.key}"
        if isinstance(self.value, float):
            return f"{self.stage}: {self.key}={self.value:.2f}"
        return f"{self.stage}: {self.key}={self.value}"


def render_diagnostics(entries: Sequence[DiagnosticEntry]) -> str:
    """Human-readable projection of a diagnostics list, one line per entry."""
    return "\n".join(entry.render() for entry in entries)


@dataclass(frozen=True)
class ExecutionResult:
    """One cycle's delivery split."""
    bolus_u: float
    basal_rate_u_h: float
    delivered_total_u: float


@dataclass(frozen=True)
class LearningSignals:
    """Engine outputs the observational learning chain is allowed to read."""
    peak_active: bool = False
    meal_signal_active: bool = False
    pre_peak_commit_window: bool = False
    rescue_confirmed: bool = False
    downtrend_locked: bool = False
    predicted_peak: Optional[float] = None
    commanded_u: float = 0.0


@dataclass
class DoseAdvice:
    """Dosing decision for one cycle."""
    bolus_amount: float
    basal_rate: float
    should_deliver: bool
    effective_isf: float
    target_adjustment: float = 0.0
    commanded_dose: float = 0.0
    status_text: str = ""
    diagnostics: List[DiagnosticEntry] = field(default_factory=list)
    signals: LearningSignals = field(default_factory=LearningSignals)

    def has_diagnostic(self, stage: str, key: Optional[str] = None) -> bool:
        return any(
            d.stage == stage and (key is None or d.key == key)
            for d in self.diagnostics
        )
