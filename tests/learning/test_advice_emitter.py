# Tests for DiaLoop.learning.advice_emitter

import pytest

from DiaLoop.learning.advice_emitter import AdviceEmitter, AdviceEmitterConfig
from DiaLoop.learning.axis_scorer import Axis, AxisOutcome
from DiaLoop.learning.confidence_accumulator import AxisOutcomeConfidence
from tests.helpers import T0


def signal(axis, outcome, confidence):
    return AxisOutcomeConfidence(axis, outcome, confidence, 0.8, 6, T0, "test")


@pytest.fixture
def emitter():
    return AdviceEmitter()


def test_no_signals_gives_empty_bundle(emitter):
    bundle = emitter.emit(T0, [])
    assert bundle.advices == []
    assert bundle.debug_summary == "OBS-ADVICES: emitted=0 (none >= 0.70)"


def test_emits_sorted_and_filtered(emitter):
    bundle = emitter.emit(T0, [
        signal(Axis.TIMING, AxisOutcome.LATE, 0.75),
        signal(Axis.HEIGHT, AxisOutcome.TOO_HIGH, 0.9),
        signal(Axis.PERSISTENCE, AxisOutcome.TOO_SHORT, 0.5),
    ])
    assert [a.outcome for a in bundle.advices] == [AxisOutcome.TOO_HIGH, AxisOutcome.LATE]
    assert bundle.advices[0].title == "Height: peaks too high"
    assert bundle.advices[1].title == "Timing: possibly too late"
    assert bundle.advices[0].message.endswith("(confidence 0.90)")
    assert bundle.debug_summary.startswith("OBS-ADVICES: emitted=2 -> HEIGHT/TOO_HIGH conf=0.90")
    assert "supportCount=6" in bundle.advices[0].debug


def test_max_advices_limit():
    emitter = AdviceEmitter(AdviceEmitterConfig(max_advices=1))
    bundle = emitter.emit(T0, [
        signal(Axis.TIMING, AxisOutcome.LATE, 0.8),
        signal(Axis.HEIGHT, AxisOutcome.TOO_HIGH, 0.9),
    ])
    assert len(bundle.advices) == 1
    assert bundle.advices[0].axis == Axis.HEIGHT


def test_fallback_text_for_unknown_outcome(emitter):
    title, message = emitter.text_for(Axis.TIMING, AxisOutcome.UNKNOWN, 0.72)
    assert title == "Timing"
    assert message == "No clear timing signal. (confidence 0.72)"
