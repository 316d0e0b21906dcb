# DiaLoop numeric helpers
# Small scalar functions shared by the dosing pipeline and the learning chain.

import math

import numpy as np


def is_finite(x: float) -> bool:
    return x is not None and math.isfinite(x)


def clamp(x: float, lo: float, hi: float) -> float:
    """Clamps `x` into [lo, hi]. Non-finite input maps to `lo`."""
    if not is_finite(x):
        return lo
    return max(lo, min(hi, x))


def clamp01(x: float) -> float:
    return clamp(x, 0.0, 1.0)


def smooth01(x: float) -> float:
    """Smoothstep of `x` clamped to [0, 1]: 0 below 0, 1 above 1."""
    t = clamp01(x)
    return t * t * (3.0 - 2.0 * t)


def inv_smooth01(x: float) -> float:
    return 1.0 - smooth01(x)


def lerp(a: float, b: float, t: float) -> float:
    return a + (b - a) * clamp01(t)


def safe_ratio(num: float, den: float, default: float = 0.0) -> float:
    """Returns num / den, or `default` when the denominator is not positive."""
    if not is_finite(num) or not is_finite(den) or den <= 0.0:
        return default
    return num / den


def sigmoid(x: float) -> float:
    return float(1.0 / (1.0 + np.exp(-x)))


def half_life_decay(age: float, half_life: float) -> float:
    """Exponential decay weight 0.5 ** (age / half_life), 1.0 for age <= 0."""
    if age <= 0.0:
        return 1.0
    return float(np.power(0.5, age / max(half_life, 1e-9)))
