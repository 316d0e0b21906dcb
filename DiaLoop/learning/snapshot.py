"""
DiaLoop Learning - Snapshot Types
Read-only views of the learning state for display and logging.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from .axis_scorer import Axis, AxisOutcome


class SnapshotStatus(Enum):
    INIT = "init"                      # no finished episode yet
    OBSERVING = "observing"
    SIGNAL_PRESENT = "signal_present"  # at least one axis with a structural signal


class AxisStatus(Enum):
    NO_DIRECTION = "no_direction"
    WEAK_SIGNAL = "weak_signal"
    STRUCTURAL_SIGNAL = "structural_signal"


@dataclass(frozen=True)
class DeliveryGateStatus:
    confidence: float
    ok: bool
    reason: Optional[str] = None


@dataclass(frozen=True)
class AxisSnapshot:
    axis: Axis
    percentages: Dict[AxisOutcome, float]  # 0..100, sums to 100 when any evidence exists
    dominant_outcome: Optional[AxisOutcome]
    dominant_confidence: float
    status: AxisStatus
    episodes_seen: int
    last_episode_at: Optional[datetime]


@dataclass(frozen=True)
class ObsSnapshot:
    created_at: datetime
    total_episodes: int
    active_episode: bool
    active_episode_started_at: Optional[datetime]
    delivery_confidence: float
    status: SnapshotStatus
    axes: List[AxisSnapshot] = field(default_factory=list)
    last_episode_start: Optional[datetime] = None
    last_episode_end: Optional[datetime] = None
    delivery_gate_status: Optional[DeliveryGateStatus] = None

    def axis(self, axis: Axis) -> Optional[AxisSnapshot]:
        return next((a for a in self.axes if a.axis == axis), None)

    def describe(self) -> str:
        lines = [f"OBS {self.status.name}: episodes={self.total_episodes} active={self.active_episode}"
                 f" delivery={self.delivery_confidence:.2f}"]
        for a in self.axes:
            dominant = a.dominant_outcome.name if a.dominant_outcome else "-"
            lines.append(f"  {a.axis.name}: {a.status.name} {dominant} conf={a.dominant_confidence:.2f}"
                         f" n={a.episodes_seen}")
        return "\n".join(lines)
