"""
DiaLoop Engine Configuration
Tunables for the closed-loop dosing engine and the style presets that scale them.

The engine reads an `EngineConfig` once per cycle. `EngineConfig.from_preferences`
builds one from a flat preference mapping (usually the `engine` section of a
`ConfigManager` document): defaults first, then the four style presets, then
explicit numeric overrides, then the day/night selection of gain and maximum
single dose.
"""

from dataclasses import dataclass, fields, replace
from enum import Enum
from typing import Any, Dict, Mapping, Optional
import logging

logger = logging.getLogger(__name__)


class ProfileStyle(Enum):
    """Overall dosing aggressiveness."""
    VERY_STRICT = "very_strict"
    STRICT = "strict"
    BALANCED = "balanced"
    AGGRESSIVE = "aggressive"
    VERY_AGGRESSIVE = "very_aggressive"


class MealDetectSpeed(Enum):
    """How early a rise is treated as a meal."""
    VERY_SLOW = "very_slow"
    SLOW = "slow"
    MODERATE = "moderate"
    FAST = "fast"
    VERY_FAST = "very_fast"


class CorrectionStyle(Enum):
    """How hard a persistent high without a meal is corrected."""
    VERY_CAUTIOUS = "very_cautious"
    CAUTIOUS = "cautious"
    NORMAL = "normal"
    PERSISTENT = "persistent"
    VERY_PERSISTENT = "very_persistent"


class DoseDistributionStyle(Enum):
    """Bolus versus temp-basal share of each delivered dose."""
    VERY_SMOOTH = "very_smooth"
    SMOOTH = "smooth"
    BALANCED = "balanced"
    PULSED = "pulsed"
    VERY_PULSED = "very_pulsed"


# Multipliers per style, each tuple ordered like the enum members.
PROFILE_PRESETS: Dict[ProfileStyle, Dict[str, float]] = {
    ProfileStyle.VERY_STRICT: {"dose_strength_mul": 0.75, "max_commit_fraction_mul": 0.80, "micro_dose_mul": 0.80},
    ProfileStyle.STRICT: {"dose_strength_mul": 0.88, "max_commit_fraction_mul": 0.90, "micro_dose_mul": 0.90},
    ProfileStyle.BALANCED: {"dose_strength_mul": 1.00, "max_commit_fraction_mul": 1.00, "micro_dose_mul": 1.00},
    ProfileStyle.AGGRESSIVE: {"dose_strength_mul": 1.12, "max_commit_fraction_mul": 1.10, "micro_dose_mul": 1.10},
    ProfileStyle.VERY_AGGRESSIVE: {"dose_strength_mul": 1.25, "max_commit_fraction_mul": 1.20, "micro_dose_mul": 1.20},
}

MEAL_DETECT_PRESETS: Dict[MealDetectSpeed, Dict[str, float]] = {
    MealDetectSpeed.VERY_SLOW: {"meal_detect_threshold_mul": 1.25, "meal_confidence_speed_mul": 0.85,
                                "early_stage1_threshold_mul": 1.20, "micro_ramp_threshold_mul": 1.20},
    MealDetectSpeed.SLOW: {"meal_detect_threshold_mul": 1.12, "meal_confidence_speed_mul": 0.93,
                           "early_stage1_threshold_mul": 1.10, "micro_ramp_threshold_mul": 1.10},
    MealDetectSpeed.MODERATE: {"meal_detect_threshold_mul": 1.00, "meal_confidence_speed_mul": 1.00,
                               "early_stage1_threshold_mul": 1.00, "micro_ramp_threshold_mul": 1.00},
    MealDetectSpeed.FAST: {"meal_detect_threshold_mul": 0.90, "meal_confidence_speed_mul": 1.10,
                           "early_stage1_threshold_mul": 0.90, "micro_ramp_threshold_mul": 0.90},
    MealDetectSpeed.VERY_FAST: {"meal_detect_threshold_mul": 0.80, "meal_confidence_speed_mul": 1.20,
                                "early_stage1_threshold_mul": 0.80, "micro_ramp_threshold_mul": 0.80},
}

CORRECTION_PRESETS: Dict[CorrectionStyle, Dict[str, float]] = {
    CorrectionStyle.VERY_CAUTIOUS: {"persistent_aggression_mul": 0.70},
    CorrectionStyle.CAUTIOUS: {"persistent_aggression_mul": 0.85},
    CorrectionStyle.NORMAL: {"persistent_aggression_mul": 1.00},
    CorrectionStyle.PERSISTENT: {"persistent_aggression_mul": 1.20},
    CorrectionStyle.VERY_PERSISTENT: {"persistent_aggression_mul": 1.40},
}

DISTRIBUTION_PRESETS: Dict[DoseDistributionStyle, Dict[str, float]] = {
    DoseDistributionStyle.VERY_SMOOTH: {"hybrid_percentage": 90.0, "small_dose_threshold_u": 0.60},
    DoseDistributionStyle.SMOOTH: {"hybrid_percentage": 70.0, "small_dose_threshold_u": 0.50},
    DoseDistributionStyle.BALANCED: {"hybrid_percentage": 50.0, "small_dose_threshold_u": 0.40},
    DoseDistributionStyle.PULSED: {"hybrid_percentage": 30.0, "small_dose_threshold_u": 0.30},
    DoseDistributionStyle.VERY_PULSED: {"hybrid_percentage": 10.0, "small_dose_threshold_u": 0.20},
}


@dataclass(frozen=True)
class EngineConfig:
    """Effective tunables for one dosing cycle (mmol/L, hours, units)."""

    profile: ProfileStyle = ProfileStyle.BALANCED
    meal_detect_speed: MealDetectSpeed = MealDetectSpeed.MODERATE
    correction_style: CorrectionStyle = CorrectionStyle.NORMAL
    dose_distribution_style: DoseDistributionStyle = DoseDistributionStyle.BALANCED

    # Energy model
    min_consistency: float = 0.40
    consistency_exp: float = 1.2
    k_delta: float = 1.0
    k_slope: float = 0.6
    k_accel: float = 0.4
    gain: float = 0.35
    gain_day: float = 0.35
    gain_night: float = 0.28
    night_decision_factor: float = 0.90
    stagnation_delta_min: float = 2.0
    stagnation_slope_max_neg: float = -0.30
    stagnation_slope_max_pos: float = 0.30
    stagnation_accel_max_abs: float = 0.06
    stagnation_energy_boost: float = 0.15

    # Peak estimator
    peak_prediction_horizon_h: float = 1.0
    peak_prediction_max_mmol: float = 22.0
    peak_prediction_threshold: float = 10.5
    peak_min_momentum: float = 0.35
    peak_min_consistency: float = 0.50
    peak_min_slope: float = 0.60
    peak_confirm_cycles: int = 2
    peak_exit_accel: float = -0.05
    peak_exit_slope: float = 0.30
    peak_use_max_slope_frac: float = 0.60
    peak_use_max_accel_frac: float = 0.50
    peak_momentum_gain: float = 1.30
    peak_rise_gain: float = 0.50
    peak_momentum_half_life_min: float = 25.0

    # Meal signal
    meal_slope_min: float = 0.60
    meal_slope_span: float = 1.20
    meal_accel_min: float = 0.05
    meal_accel_span: float = 0.30
    meal_delta_min: float = 0.80
    meal_delta_span: float = 3.00
    meal_detect_threshold_mul: float = 1.0
    meal_confidence_speed_mul: float = 1.0
    meal_confirm_confidence: float = 0.60
    meal_uncertain_confidence: float = 0.30
    uncertain_min_fraction: float = 0.25
    uncertain_max_fraction: float = 0.45
    confirm_min_fraction: float = 0.50
    confirm_max_fraction: float = 0.80

    # IOB damping
    max_iob: float = 6.0
    iob_start: float = 0.35
    iob_max: float = 1.05
    iob_min_factor: float = 0.05
    iob_power_day: float = 2.1
    iob_power_night: float = 2.3
    commit_iob_power: float = 1.6

    # Dose sizes
    max_smb: float = 1.5
    max_bolus_day: float = 1.5
    max_bolus_night: float = 1.0
    dose_strength_mul: float = 1.0
    micro_cap_frac_of_max_smb: float = 0.08
    small_cap_frac_of_max_smb: float = 0.25
    micro_ramp_threshold_mul: float = 1.0
    micro_dose_mul: float = 1.0
    early_stage1_threshold_mul: float = 1.0
    early_peak_escalation_bonus: float = 0.08

    # Commit / absorption
    commit_cooldown_minutes: float = 15.0
    absorption_window_minutes: float = 60.0
    peak_slope_threshold: float = 0.30
    peak_accel_threshold: float = -0.10
    correction_hold_slope_max: float = -0.20
    correction_hold_accel_max: float = 0.05
    correction_hold_delta_max: float = 1.50
    reentry_min_minutes_since_commit: float = 30.0
    reentry_cooldown_minutes: float = 45.0
    reentry_slope_min: float = 1.20
    reentry_accel_min: float = 0.15
    reentry_delta_min: float = 2.0
    small_correction_max_u: float = 0.15
    small_correction_cooldown_minutes: float = 15.0
    absorption_dose_factor: float = 0.30
    min_commit_dose: float = 0.30
    max_commit_fraction_mul: float = 1.0
    enable_fast_carb_override: bool = True

    # Delivery
    hybrid_percentage: float = 50.0
    delivery_cycle_minutes: float = 5.0
    max_temp_basal_rate: float = 25.0
    bolus_step: float = 0.05
    basal_rate_step: float = 0.05
    min_smb_unit: float = 0.05
    small_dose_threshold_u: float = 0.40
    min_deliver_dose: float = 0.05

    # Persistent correction
    persistent_aggression_mul: float = 1.0

    # Trend estimation
    bg_smoothing_alpha: float = 0.40

    @classmethod
    def field_names(cls):
        return [f.name for f in fields(cls)]

    def for_time_of_day(self, is_night: bool) -> "EngineConfig":
        """Selects the day or night gain and maximum single dose."""
        return replace(
            self,
            gain=self.gain_night if is_night else self.gain_day,
            max_smb=self.max_bolus_night if is_night else self.max_bolus_day,
        )

    @classmethod
    def from_preferences(cls, prefs: Optional[Mapping[str, Any]] = None,
                         is_night: bool = False) -> "EngineConfig":
        """Builds the effective configuration from a flat preference mapping.

        Args:
            prefs: Preference values keyed by field name. Style keys
                (`profile`, `meal_detect_speed`, `correction_style`,
                `dose_distribution_style`) accept enum names or values.
                Numeric keys override the style presets.
            is_night: Selects `gain_night`/`max_bolus_night`.

        Returns:
            EngineConfig: The configuration for one cycle.

        Raises:
            ValueError: If a style name is not recognised.
        """
        prefs = dict(prefs or {})
        profile = _parse_style(ProfileStyle, prefs.pop("profile", None), ProfileStyle.BALANCED)
        meal_speed = _parse_style(MealDetectSpeed, prefs.pop("meal_detect_speed", None),
                                  MealDetectSpeed.MODERATE)
        correction = _parse_style(CorrectionStyle, prefs.pop("correction_style", None),
                                  CorrectionStyle.NORMAL)
        distribution = _parse_style(DoseDistributionStyle, prefs.pop("dose_distribution_style", None),
                                    DoseDistributionStyle.BALANCED)

        values: Dict[str, Any] = {
            "profile": profile,
            "meal_detect_speed": meal_speed,
            "correction_style": correction,
            "dose_distribution_style": distribution,
        }
        values.update(PROFILE_PRESETS[profile])
        values.update(MEAL_DETECT_PRESETS[meal_speed])
        values.update(CORRECTION_PRESETS[correction])
        values.update(DISTRIBUTION_PRESETS[distribution])

        known = set(cls.field_names())
        for key, value in prefs.items():
            if key not in known:
                logger.debug(f"Ignoring unknown engine preference '{key}'")
                continue
            values[key] = value

        return cls(**values).for_time_of_day(is_night)


def _parse_style(enum_cls, raw, default):
    if raw is None:
        return default
    if isinstance(raw, enum_cls):
        return raw
    text = str(raw).strip()
    for member in enum_cls:
        if text.upper() == member.name or text.lower() == member.value:
            return member
    raise ValueError(f"Unknown {enum_cls.__name__} '{raw}'")
