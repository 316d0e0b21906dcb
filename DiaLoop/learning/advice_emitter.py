"""
DiaLoop Learning - Advice Emitter
Turns high-confidence axis signals into read-only, human-readable advisories.
Nothing emitted here is ever fed back into dosing.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from .axis_scorer import Axis, AxisOutcome
from .confidence_accumulator import AxisOutcomeConfidence

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Advice:
    created_at: datetime
    axis: Axis
    outcome: AxisOutcome
    confidence: float
    title: str
    message: str
    debug: str


@dataclass(frozen=True)
class AdviceBundle:
    created_at: datetime
    advices: List[Advice] = field(default_factory=list)
    debug_summary: str = ""


@dataclass(frozen=True)
class AdviceEmitterConfig:
    min_confidence_to_emit: float = 0.70
    max_advices: int = 4
    strong_confidence: float = 0.85


# (strong title, weak title, message body) per axis and outcome
_ADVICE_TEXT: Dict[Tuple[Axis, AxisOutcome], Tuple[str, str, str]] = {
    (Axis.TIMING, AxisOutcome.EARLY): (
        "Timing: often too early",
        "Timing: possibly too early",
        "Episodes repeatedly show the first meaningful insulin arriving too early. "
        "Check whether this coincides with post-meal dips or fast drops after early dosing.",
    ),
    (Axis.TIMING, AxisOutcome.LATE): (
        "Timing: often too late",
        "Timing: possibly too late",
        "Episodes repeatedly show insulin starting late relative to the rise and the peak. "
        "Watch the time above 10 mmol/L and the time to peak.",
    ),
    (Axis.HEIGHT, AxisOutcome.TOO_HIGH): (
        "Height: peaks too high",
        "Height: peaks possibly too high",
        "Realized peaks repeatedly end up too high, often above 10 mmol/L. "
        "The total insulin response over the episode may be too weak, "
        "or peak prediction and commits may be too conservative.",
    ),
    (Axis.HEIGHT, AxisOutcome.TOO_STRONG): (
        "Height: response too strong",
        "Height: response possibly too strong",
        "Episodes point to a total insulin response that is too strong, with overshoot and post-peak dips. "
        "Watch rescue events and fast drops after the peak.",
    ),
    (Axis.PERSISTENCE, AxisOutcome.TOO_SHORT): (
        "Persistence: too short",
        "Persistence: possibly too short",
        "Dosing and correction repeatedly stop too soon: glucose stays above target too long "
        "or comes down too slowly. Look at persistent correction and tail dosing.",
    ),
    (Axis.PERSISTENCE, AxisOutcome.TOO_LONG): (
        "Persistence: too long",
        "Persistence: possibly too long",
        "Dosing and correction repeatedly continue too long, with post-peak drops and low drift. "
        "Look at lockouts, post-peak suppression and reserve release.",
    ),
}

_AXIS_FALLBACK = {
    Axis.TIMING: ("Timing", "No clear timing signal."),
    Axis.HEIGHT: ("Height", "No clear height signal."),
    Axis.PERSISTENCE: ("Persistence", "No clear persistence signal."),
}


class AdviceEmitter:
    """Stateless mapping from top confidence signals to an advice bundle."""

    def __init__(self, config: Optional[AdviceEmitterConfig] = None):
        self.config = config or AdviceEmitterConfig()

    def emit(self, now: datetime, top_signals: List[AxisOutcomeConfidence]) -> AdviceBundle:
        cfg = self.config
        eligible = sorted(
            (s for s in top_signals if s.confidence >= cfg.min_confidence_to_emit),
            key=lambda s: s.confidence,
            reverse=True,
        )[:max(0, cfg.max_advices)]

        advices = []
        for s in eligible:
            title, message = self.text_for(s.axis, s.outcome, s.confidence)
            last_seen = s.last_seen_at.strftime("%d-%m %H:%M") if s.last_seen_at else "n/a"
            advices.append(Advice(
                created_at=now,
                axis=s.axis,
                outcome=s.outcome,
                confidence=s.confidence,
                title=title,
                message=message,
                debug=(
                    f"conf={s.confidence:.2f} supportScore={s.support_score:.2f} "
                    f"supportCount={s.support_count} lastSeen={last_seen} notes={s.notes}"
                ),
            ))

        if advices:
            summary = "OBS-ADVICES: emitted={} -> {}".format(
                len(advices),
                " | ".join(f"{a.axis.name}/{a.outcome.name} conf={a.confidence:.2f}" for a in advices),
            )
            logger.info(summary)
        else:
            summary = f"OBS-ADVICES: emitted=0 (none >= {cfg.min_confidence_to_emit:.2f})"
        return AdviceBundle(created_at=now, advices=advices, debug_summary=summary)

    def text_for(self, axis: Axis, outcome: AxisOutcome, confidence: float) -> Tuple[str, str]:
        strong = confidence >= self.config.strong_confidence
        suffix = f"(confidence {confidence:.2f})"
        entry = _ADVICE_TEXT.get((axis, outcome))
        if entry is None:
            title, body = _AXIS_FALLBACK[axis]
            return title, f"{body} {suffix}"
        strong_title, weak_title, body = entry
        return (strong_title if strong else weak_title), f"{body} {suffix}"
