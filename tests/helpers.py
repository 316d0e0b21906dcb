# Test data builders shared across the DiaLoop test suite

from datetime import datetime, timedelta

T0 = datetime(2024, 3, 14, 12, 0)


def bg_series(start_bg, step_per_5min, points=7, end=T0):
    """(time, bg) pairs every 5 minutes ending at `end`, oldest first."""
    first = end - timedelta(minutes=5 * (points - 1))
    return [
        (first + timedelta(minutes=5 * i), start_bg + step_per_5min * i)
        for i in range(points)
    ]
