"""
DiaLoop SDK - Closed Loop Engine
Five-minute dosing decisions from glucose trend, insulin on board and target
"""

import logging
import math
from collections import deque
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Deque, Optional, Tuple

from ..agents.downtrend_gate import DowntrendDecision, DowntrendGate
from ..agents.early_dose_controller import EarlyDecision, EarlyDoseController, micro_ramp
from ..agents.peak_estimator import PEAK_IOB_BOOST, PeakEstimate, PeakEstimator, iob_damping
from ..agents.persistent_correction import PersistentCorrectionController
from ..agents.rescue_detector import RescueDetector, RescueSignal
from ..agents.signal_classifiers import (
    ZONE_COMMIT_FACTOR, MealSignal, TrendSignal, access_cap, access_level, classify_trend,
    classify_zone, detect_meal_signal, meal_commit_fraction,
)
from ..core.engine_config import EngineConfig
from ..core.trends import TrendEstimator
from ..utils.numeric import clamp, is_finite
from .data_types import (
    AccessLevel, BgZone, DoseAdvice, EngineContext, EngineInput, LearningSignals, MealState,
    PeakCategory, PeakState, ReserveCause, render_diagnostics,
)
from .delivery_executor import DeliveryExecutor, DeliverySettings
from .dose_shaper import (
    Decision, DoseRecord, DoseShaper, EnergyResult, PostPeakState, ReservePool, compute_energy,
    decide, evaluate_post_peak, hard_trajectory_block, pre_meal_floor, pre_reserve_split,
    trajectory_damping,
)

HYPO_GUARD_PRED60 = 4.4
RESERVE_RELEASE_CAP_FRAC = 0.35
DELIVERY_HISTORY_SIZE = 6


@dataclass
class CycleSignals:
    """Everything classified for the current cycle before dose shaping."""
    ctx: EngineContext
    config: EngineConfig
    pred60: float
    zone: BgZone
    energy: EnergyResult
    decision: Decision
    meal: MealSignal
    peak: PeakEstimate
    downtrend: DowntrendDecision
    trend: TrendSignal
    pre_peak_window: bool
    iob_factor: float
    commit_iob_factor: float
    access: AccessLevel
    cap: float
    early: EarlyDecision
    protection_active: bool
    post_peak: PostPeakState


class ClosedLoopEngine:
    """
    Closed-loop insulin dosing engine.

    One instance owns every piece of cross-cycle state (peak estimator,
    downtrend latch, early-dose stages, reserve pool, commit timers,
    rescue detector and recent delivery history). Cycles must be run
    one after another; `get_advice` is not re-entrant.
    """

    def __init__(self, config: Optional[EngineConfig] = None,
                 trend_estimator: Optional[TrendEstimator] = None):
        self.config = config or EngineConfig()
        self.logger = logging.getLogger(__name__)
        self.trend_estimator = trend_estimator or TrendEstimator()

        self.peak_estimator = PeakEstimator()
        self.downtrend_gate = DowntrendGate()
        self.early = EarlyDoseController()
        self.persistent = PersistentCorrectionController()
        self.rescue = RescueDetector()
        self.reserve = ReservePool()

        self.last_commit_at: Optional[datetime] = None
        self.last_reentry_commit_at: Optional[datetime] = None
        self.last_small_correction_at: Optional[datetime] = None
        self.early_confirm_done = False
        self.delivery_history: Deque[Tuple[datetime, float]] = deque(maxlen=DELIVERY_HISTORY_SIZE)
        self.last_rescue: Optional[RescueSignal] = None
        self._persist_active = False
        self._persist_fired = False

    # ------------------------------------------------------------------ context

    def build_context(self, engine_input: EngineInput, config: Optional[EngineConfig] = None) -> EngineContext:
        """Derives the per-cycle context from raw input."""
        config = (config or self.config).for_time_of_day(engine_input.is_night)
        trend = self.trend_estimator.estimate(engine_input.bg_history, config.bg_smoothing_alpha)
        max_iob = engine_input.max_iob
        iob_ratio = 0.0
        if max_iob > 0.0 and is_finite(engine_input.current_iob):
            iob_ratio = clamp(engine_input.current_iob / max_iob, 0.0, 1.5)
        return EngineContext(
            now=engine_input.resolve_now(),
            bg=engine_input.bg_now,
            slope=trend.slope,
            acceleration=trend.acceleration,
            consistency=trend.consistency,
            recent_slope=trend.recent_slope,
            recent_delta5m=trend.recent_delta5m,
            iob=engine_input.current_iob,
            iob_ratio=iob_ratio,
            delta_to_target=engine_input.bg_now - engine_input.target_bg,
            effective_isf=engine_input.effective_isf,
            target_bg=engine_input.target_bg,
            is_night=engine_input.is_night,
        )

    def get_advice(self, engine_input: EngineInput, config: Optional[EngineConfig] = None) -> DoseAdvice:
        """Runs one five-minute cycle for raw input."""
        ctx = self.build_context(engine_input, config)
        return self.advise(ctx, config)

    # ------------------------------------------------------------------ cycle

    def advise(self, ctx: EngineContext, config: Optional[EngineConfig] = None) -> DoseAdvice:
        """Runs one cycle for an already derived context."""
        config = (config or self.config).for_time_of_day(ctx.is_night)
        signals = self._classify(ctx, config)

        shaper = DoseShaper(self._stages(signals))
        record = shaper.run(DoseRecord())
        record = self._safety_gates(record, signals)

        executor = DeliveryExecutor(DeliverySettings(
            hybrid_percentage=config.hybrid_percentage,
            cycle_minutes=config.delivery_cycle_minutes,
            max_temp_basal_rate=config.max_temp_basal_rate,
            bolus_step=config.bolus_step,
            basal_rate_step=config.basal_rate_step,
            min_smb_unit=config.min_smb_unit,
            small_dose_threshold_u=config.small_dose_threshold_u,
        ))
        result = executor.execute(record.dose)
        bolus, rate, delivered = result.bolus_u, result.basal_rate_u_h, result.delivered_total_u
        if delivered < config.min_deliver_dose:
            bolus, rate, delivered = 0.0, 0.0, 0.0
        record = record.note("delivery", "split", f"bolus={bolus:.2f}U basal={rate:.2f}U/h")

        should_deliver = delivered >= config.min_deliver_dose and delivered > 0.0
        if self._persist_active:
            should_deliver = should_deliver and self._persist_fired

        if not record.halted:
            self.last_rescue = self.rescue.update(ctx, signals.pred60, self.delivery_history, delivered,
                                                config.min_consistency)
            record = record.note("rescue", self.last_rescue.state.name, round(self.last_rescue.confidence, 2))
        if delivered > 0.0:
            self.delivery_history.append((ctx.now, delivered))

        rescue_confirmed = self.last_rescue is not None and self.last_rescue.confirmed
        learning = LearningSignals(
            peak_active=self.peak_estimator.active,
            meal_signal_active=signals.meal.state != MealState.NONE,
            pre_peak_commit_window=signals.pre_peak_window,
            rescue_confirmed=rescue_confirmed,
            downtrend_locked=signals.downtrend.locked,
            predicted_peak=signals.peak.predicted_peak if self.peak_estimator.active else None,
            commanded_u=record.dose,
        )

        diagnostics = list(record.diagnostics)
        self.logger.debug(
            f"Cycle {ctx.now:%H:%M} bg={ctx.bg:.1f} dose={record.dose:.2f} delivered={delivered:.2f}"
        )
        return DoseAdvice(
            bolus_amount=bolus,
            basal_rate=rate,
            should_deliver=should_deliver,
            effective_isf=ctx.effective_isf,
            target_adjustment=0.0,
            commanded_dose=record.dose,
            status_text=render_diagnostics(diagnostics),
            diagnostics=diagnostics,
            signals=learning,
        )

    # ------------------------------------------------------------------ classification

    def _classify(self, ctx: EngineContext, config: EngineConfig) -> CycleSignals:
        pred60 = ctx.bg + ctx.slope + 0.5 * ctx.acceleration
        zone = classify_zone(ctx)
        energy = compute_energy(ctx, config)
        decision = decide(ctx, energy.raw_dose, config)
        meal = detect_meal_signal(ctx, config)

        peak_estimator = self.peak_estimator
        # Noisy ticks only hold back the watch/confirm transitions, never end the episode.
        episode_should_be_active = PeakEstimator.should_activate(ctx, meal.state)
        if not peak_estimator.active and episode_should_be_active:
            peak_estimator.start(ctx)
            self._reset_episode_context()
        elif peak_estimator.active and not episode_should_be_active and PeakEstimator.should_exit(ctx):
            peak_estimator.stop()
            self._reset_episode_context()
        peak = peak_estimator.update(ctx, config)

        downtrend = self.downtrend_gate.update(ctx, config.min_consistency)
        trend = classify_trend(ctx, config)

        reliable = ctx.consistency >= 0.55
        pre_peak_window = (
            peak.state == PeakState.WATCHING
            and peak.predicted_peak >= 15.0
            and reliable
            and ctx.iob_ratio <= 0.5
            and ctx.acceleration >= 0.0
        )

        power = config.iob_power_night if ctx.is_night else config.iob_power_day
        boosted_ratio = ctx.iob_ratio / PEAK_IOB_BOOST[peak.category]
        iob_factor = iob_damping(boosted_ratio, config.iob_start, config.iob_max,
                                 config.iob_min_factor, power)
        commit_iob_factor = iob_damping(ctx.iob_ratio, config.iob_start, config.iob_max,
                                        config.iob_min_factor, config.commit_iob_power)

        meal_like = meal.state != MealState.NONE or pre_peak_window
        access = access_level(zone, ctx, meal_like)
        cap = access_cap(access, config)

        early = self.early.evaluate(ctx, zone, peak, meal.state, trend, config)
        candidate_stage = max(self.early.stage, early.stage_to_fire)
        protection_active = (
            candidate_stage > 0 and ctx.acceleration >= 0.0 and peak.state != PeakState.CONFIRMED
        )

        episode_like = meal.state != MealState.NONE or peak_estimator.active or peak.state != PeakState.IDLE
        post_peak = evaluate_post_peak(ctx, self._minutes_since(self.last_commit_at, ctx.now),
                                       episode_like, config)

        return CycleSignals(
            ctx=ctx, config=config, pred60=pred60, zone=zone, energy=energy, decision=decision,
            meal=meal, peak=peak, downtrend=downtrend, trend=trend, pre_peak_window=pre_peak_window,
            iob_factor=iob_factor, commit_iob_factor=commit_iob_factor, access=access, cap=cap,
            early=early, protection_active=protection_active, post_peak=post_peak,
        )

    def _reset_episode_context(self) -> None:
        self.early.reset()
        self.early_confirm_done = False

    @staticmethod
    def _minutes_since(then: Optional[datetime], now: datetime) -> Optional[float]:
        if then is None:
            return None
        return (now - then).total_seconds() / 60.0

    # ------------------------------------------------------------------ stages

    def _stages(self, s: CycleSignals):
        self._persist_active = False
        self._persist_fired = False
        return [
            ("context", lambda r: self._stage_context(r, s)),
            ("energy", lambda r: self._stage_energy(r, s)),
            ("decision", lambda r: self._stage_decision(r, s)),
            ("hard_no_delivery", lambda r: self._stage_hard_no_delivery(r, s)),
            ("iob_damping", lambda r: self._stage_iob_damping(r, s)),
            ("access", lambda r: self._stage_access(r, s)),
            ("correction_hold", lambda r: self._stage_correction_hold(r, s)),
            ("micro_ramp", lambda r: self._stage_micro_ramp(r, s)),
            ("pre_meal_floor", lambda r: self._stage_pre_meal_floor(r, s)),
            ("trajectory", lambda r: self._stage_trajectory(r, s)),
            ("early_dose", lambda r: self._stage_early_dose(r, s)),
            ("persistent", lambda r: self._stage_persistent(r, s)),
            ("early_confirm", lambda r: self._stage_early_confirm(r, s)),
            ("max_dose", lambda r: self._stage_max_dose(r, s)),
            ("anti_drip", lambda r: self._stage_anti_drip(r, s)),
            ("absorption", lambda r: self._stage_absorption(r, s)),
            ("commit", lambda r: self._stage_commit(r, s)),
            ("reserve", lambda r: self._stage_reserve(r, s)),
        ]

    def _stage_context(self, r: DoseRecord, s: CycleSignals) -> DoseRecord:
        ctx = s.ctx
        r = r.note("context", "bg", round(ctx.bg, 2))
        r = r.note("context", "slope", round(ctx.slope, 2))
        r = r.note("context", "accel", round(ctx.acceleration, 3))
        r = r.note("context", "consistency", round(ctx.consistency, 2))
        r = r.note("context", "iob_ratio", round(ctx.iob_ratio, 2))
        r = r.note("context", "zone", s.zone.name)
        r = r.note("meal", s.meal.state.name, round(s.meal.confidence, 2))
        r = r.note("peak", s.peak.state.name, round(s.peak.predicted_peak, 2))
        r = r.note("peak", "category", s.peak.category.name)
        return r.note("trend", s.trend.state.name, s.trend.reason)

    def _stage_energy(self, r: DoseRecord, s: CycleSignals) -> DoseRecord:
        e = s.energy
        if e.exhausted:
            r = r.note("energy", "exhausted")
        if e.stagnation_boost > 0.0:
            r = r.note("energy", "stagnation_boost", round(e.stagnation_boost, 3))
        r = r.note("energy", "energy", round(e.energy, 3))
        return r.with_dose(e.raw_dose, "energy", "raw_dose", round(e.raw_dose, 3))

    def _stage_decision(self, r: DoseRecord, s: CycleSignals) -> DoseRecord:
        d = s.decision
        r = r.with_dose(d.dose, "decision", d.kind.name, d.reason)
        if not d.allowed:
            r = replace(r, hard_stop=d.reason)
        return r

    def _stage_hard_no_delivery(self, r: DoseRecord, s: CycleSignals) -> DoseRecord:
        ctx = s.ctx
        strong_fall = ctx.slope <= -1.0 and ctx.delta_to_target <= 3.0 and ctx.consistency >= 0.55
        if s.downtrend.pause_this_cycle or strong_fall:
            reason = s.downtrend.reason if s.downtrend.pause_this_cycle else "strong fall"
            r = r.with_dose(0.0, "hard_no_delivery", "HARD NO DELIVERY", reason)
            return replace(r, halted=True)
        return r

    def _stage_iob_damping(self, r: DoseRecord, s: CycleSignals) -> DoseRecord:
        ctx, config = s.ctx, s.config
        dose = max(0.0, r.dose * s.iob_factor * config.dose_strength_mul)
        r = r.with_dose(dose, "iob_damping", "factor", round(s.iob_factor, 3))
        if (s.meal.state == MealState.NONE and ctx.acceleration > 0.2 and ctx.iob_ratio >= 0.75):
            capped = min(r.dose, 0.6 * config.max_smb)
            if capped < r.dose:
                r = r.with_dose(capped, "iob_damping", "rising_iob_cap")
        return r

    def _stage_access(self, r: DoseRecord, s: CycleSignals) -> DoseRecord:
        r = r.note("access", s.access.name, s.cap if math.isfinite(s.cap) else "unlimited")
        if r.dose > s.cap:
            r = r.with_dose(s.cap, "access", "capped")
        return r

    def _stage_correction_hold(self, r: DoseRecord, s: CycleSignals) -> DoseRecord:
        ctx, config = s.ctx, s.config
        hold = (
            not s.protection_active
            and s.meal.state == MealState.NONE
            and s.peak.category.rank < PeakCategory.MEAL.rank
            and ctx.slope <= config.correction_hold_slope_max
            and ctx.acceleration <= config.correction_hold_accel_max
            and ctx.consistency >= config.min_consistency
            and ctx.delta_to_target <= config.correction_hold_delta_max
        )
        if hold and r.dose > 0.0:
            return r.with_dose(0.0, "correction_hold", "HOLD", "micro-correction postponed")
        return r

    def _stage_micro_ramp(self, r: DoseRecord, s: CycleSignals) -> DoseRecord:
        if s.post_peak.suppress or s.post_peak.lockout:
            return r
        micro = micro_ramp(s.ctx, s.config)
        if not micro.active:
            return r
        floor = min(micro.dose_u, s.cap)
        if floor > r.dose:
            r = r.with_dose(floor, "micro_ramp", micro.tier)
        return r

    def _stage_pre_meal_floor(self, r: DoseRecord, s: CycleSignals) -> DoseRecord:
        floor = pre_meal_floor(s.ctx, s.zone, s.access, s.meal.state, s.post_peak.suppress,
                               s.energy.stagnation_boost, s.config)
        floor = min(floor, s.cap)
        if floor > r.dose:
            r = r.with_dose(floor, "pre_meal_floor", "floor")
        return r

    def _stage_trajectory(self, r: DoseRecord, s: CycleSignals) -> DoseRecord:
        if hard_trajectory_block(s.ctx, s.post_peak.in_absorption, s.protection_active, s.meal.state):
            return r.with_dose(0.0, "trajectory", "HARD BLOCK", 0.0)
        factor = trajectory_damping(s.ctx, s.zone, s.meal.state, s.config)
        return r.with_dose(r.dose * factor, "trajectory", "factor", round(factor, 3))

    def _stage_early_dose(self, r: DoseRecord, s: CycleSignals) -> DoseRecord:
        early = s.early
        r = r.note("early", "stage", self.early.stage)
        if early.stage_to_fire == 0:
            return r.note("early", "decision", early.reason)
        if s.ctx.acceleration < 0.0:
            return r.note("early", "skipped", "negative acceleration")
        floor = min(early.target_u, s.cap)
        r = r.with_dose(max(r.dose, floor), "early", f"stage{early.stage_to_fire}", round(floor, 3))
        self.early.mark_fired(early, s.ctx.now)
        return r

    def _stage_persistent(self, r: DoseRecord, s: CycleSignals) -> DoseRecord:
        result = self.persistent.update(s.ctx, s.config)
        self._persist_active = result.active
        self._persist_fired = result.fired
        if not result.active:
            return r.note("persistent", "inactive", result.reason)
        dose = result.dose_u if result.fired else 0.0
        r = r.with_dose(dose, "persistent", "FIRE" if result.fired else "PERSIST HOLD", result.reason)
        return replace(r, persistent_authority=True)

    def _stage_early_confirm(self, r: DoseRecord, s: CycleSignals) -> DoseRecord:
        ctx, config = s.ctx, s.config
        fire = (
            not self.early_confirm_done
            and self.early.stage >= 2
            and s.trend.allows_large_actions
            and ctx.slope >= 1.0
            and ctx.acceleration >= 0.20
            and ctx.delta_to_target >= 2.0
            and ctx.iob_ratio <= 0.45
            and ctx.consistency >= config.min_consistency
            and s.peak.state != PeakState.CONFIRMED
        )
        if not fire:
            return r
        impulse = clamp(0.6 * config.max_smb, 0.3, config.max_smb)
        self.early_confirm_done = True
        return r.with_dose(max(r.dose, impulse), "early_confirm", "impulse", round(impulse, 3))

    def _stage_max_dose(self, r: DoseRecord, s: CycleSignals) -> DoseRecord:
        if r.dose > s.config.max_smb:
            r = r.with_dose(s.config.max_smb, "max_dose", "capped")
        return r

    def _stage_anti_drip(self, r: DoseRecord, s: CycleSignals) -> DoseRecord:
        config, now = s.config, s.ctx.now
        if r.persistent_authority:
            return r
        if (0.0 < r.dose <= config.small_correction_max_u
                and s.meal.state == MealState.NONE and self.early.stage == 0):
            since = self._minutes_since(self.last_small_correction_at, now)
            if since is not None and since < config.small_correction_cooldown_minutes:
                return r.with_dose(0.0, "anti_drip", "cooldown", round(since, 1))
            self.last_small_correction_at = now
        return r

    def _stage_absorption(self, r: DoseRecord, s: CycleSignals) -> DoseRecord:
        if s.post_peak.suppress and not r.persistent_authority:
            dose = max(0.0, r.dose * s.config.absorption_dose_factor)
            r = r.with_dose(dose, "absorption", "suppressed")
        return r

    def _is_reentry(self, s: CycleSignals) -> bool:
        ctx, config = s.ctx, s.config
        since_commit = self._minutes_since(self.last_commit_at, ctx.now)
        if since_commit is None or since_commit < config.reentry_min_minutes_since_commit:
            return False
        since_reentry = self._minutes_since(self.last_reentry_commit_at, ctx.now)
        if since_reentry is not None and since_reentry < config.reentry_cooldown_minutes:
            return False
        return (
            ctx.slope >= config.reentry_slope_min
            and ctx.acceleration >= config.reentry_accel_min
            and ctx.delta_to_target >= config.reentry_delta_min
            and ctx.consistency >= config.min_consistency
        )

    def _stage_commit(self, r: DoseRecord, s: CycleSignals) -> DoseRecord:
        ctx, config, now = s.ctx, s.config, s.ctx.now
        reentry = self._is_reentry(s)
        if reentry:
            self._reset_episode_context()
            r = r.note("commit", "re-entry")

        commit_blocked = s.post_peak.commit_blocked and not reentry
        allow_path = (not s.post_peak.suppress or reentry) and not commit_blocked
        fast_carb = (
            config.enable_fast_carb_override
            and s.peak.predicted_peak >= 12.0
            and ctx.slope >= 1.5
            and ctx.acceleration >= 0.25
            and ctx.consistency >= config.min_consistency
        )
        effective_meal = s.meal.state != MealState.NONE or fast_carb

        if s.downtrend.locked:
            return r.note("commit", "skipped", "downtrend locked")
        if not (allow_path and effective_meal):
            return r
        allow_boost = s.trend.allows_large_actions or s.pre_peak_window
        since_commit = self._minutes_since(self.last_commit_at, now)
        cooldown_ok = since_commit is None or since_commit >= config.commit_cooldown_minutes
        if not (reentry or cooldown_ok):
            return r.note("commit", "observe", "cooldown")

        fraction = clamp(
            meal_commit_fraction(s.meal, config) * ZONE_COMMIT_FACTOR[s.zone] * config.max_commit_fraction_mul,
            0.0, 1.0,
        )
        commit_dose = 0.0
        if allow_boost and s.access == AccessLevel.NORMAL:
            pre_peak_mul = 0.85 if s.pre_peak_window else 1.0
            commit_dose = min(
                config.max_smb,
                config.max_smb * fraction * s.commit_iob_factor * pre_peak_mul * s.post_peak.commit_factor,
            )
        if s.peak.category.rank >= PeakCategory.HIGH.rank:
            commit_dose *= 1.15
        committed = min(config.max_smb, max(r.dose, commit_dose))
        if committed < config.min_commit_dose:
            return r.note("commit", "skipped", "below minimum")

        self.last_commit_at = now
        if reentry:
            self.last_reentry_commit_at = now
        self.logger.info(f"Meal commit {committed:.2f} U ({s.meal.state.name}, frac={fraction:.2f})")
        r = r.with_dose(committed, "commit", "COMMIT", round(committed, 3))
        return replace(r, committed=True)

    def _stage_reserve(self, r: DoseRecord, s: CycleSignals) -> DoseRecord:
        ctx, config, now = s.ctx, s.config, s.ctx.now
        reserve = self.reserve
        if r.committed and reserve.units > 0.0:
            reserve.clear()
            r = r.note("reserve", "reset", "commit")
        if reserve.expire(now):
            r = r.note("reserve", "expired")

        reliable = ctx.consistency >= config.min_consistency
        meal_like = s.meal.state != MealState.NONE or s.pre_peak_window or self.early.stage > 0
        strong_rising = ctx.recent_delta5m >= 0.10 or ctx.recent_slope >= 0.45
        short_term_dip = (
            (ctx.recent_delta5m <= -0.06 or ctx.recent_slope <= -0.2)
            and ctx.acceleration <= 0.0 and reliable
        )
        peak_top_forming = (
            s.peak.state == PeakState.WATCHING and ctx.acceleration <= -0.02
            and ctx.iob_ratio >= 0.35 and s.peak.predicted_peak >= ctx.bg + 0.6 and reliable
        )
        top_forming = (
            ctx.iob_ratio >= 0.6 and ctx.acceleration <= 0.1 and ctx.delta_to_target >= 1.2
            and reliable and ctx.recent_slope <= 0.35
        )

        if (r.dose > 0.0 and meal_like and not s.post_peak.no_stash
                and (short_term_dip or peak_top_forming or top_forming) and not strong_rising):
            cause = ReserveCause.POST_PEAK_TOP if (top_forming or peak_top_forming) else ReserveCause.SHORT_TERM_DIP
            reserve.stash(r.dose, cause, now)
            return r.with_dose(0.0, "reserve", f"STASH {cause.name}", round(reserve.units, 3))

        rising = ctx.recent_delta5m >= 0.06 or ctx.recent_slope >= 0.2
        if reserve.units > 0.0 and rising and ctx.acceleration >= 0.0 and ctx.bg >= 4.8 and reliable:
            per_cycle_cap = max(0.05, RESERVE_RELEASE_CAP_FRAC * config.max_smb)
            released = reserve.release(per_cycle_cap - r.dose)
            if released > 0.0:
                r = r.with_dose(r.dose + released, "reserve", "RELEASE", round(released, 3))

        deliver_now, stash = pre_reserve_split(ctx, s.zone, s.meal.state, r.dose)
        if stash > 0.0:
            reserve.stash(stash, ReserveCause.PRE_UNCERTAIN_MEAL, now)
            r = r.with_dose(deliver_now, "reserve", "PRE-RESERVE SPLIT", round(stash, 3))
        return r

    # ------------------------------------------------------------------ gates

    def _safety_gates(self, r: DoseRecord, s: CycleSignals) -> DoseRecord:
        """Final gates; each one forces the dose to 0 regardless of earlier stages."""
        if r.halted:
            return r
        if s.pred60 <= HYPO_GUARD_PRED60:
            r = r.with_dose(0.0, "safety", "HYPO GUARD", f"pred60={s.pred60:.1f}")
        if s.post_peak.lockout:
            self.early_confirm_done = False
            r = r.with_dose(0.0, "safety", "POST-PEAK LOCKOUT", 0.0)
        if s.downtrend.locked:
            self.early_confirm_done = False
            r = r.with_dose(0.0, "safety", "DOWNTREND LOCKED", 0.0)
        if r.hard_stop is not None:
            r = r.with_dose(0.0, "safety", "HARD STOP", r.hard_stop)
        if not is_finite(r.dose):
            self.logger.warning("Non-finite commanded dose replaced by 0")
            r = r.with_dose(0.0, "safety", "NaN guard", 0.0)
        if r.dose > s.config.max_smb:
            r = r.with_dose(s.config.max_smb, "safety", "max_dose")
        return r
