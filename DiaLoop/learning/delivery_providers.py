"""
DiaLoop Learning - History Providers
In-memory insulin delivery history and a mg/dL glucose adapter for the
episode summarizer.
"""

from collections import deque
from datetime import datetime, timedelta
from typing import List

from ..core.base_classes import (
    BaseGlucoseHistoryProvider,
    BaseInsulinDeliveryProvider,
    BgPoint,
    InsulinDelivery,
)

MGDL_PER_MMOL = 18.0


class InMemoryInsulinDeliveryProvider(BaseInsulinDeliveryProvider):
    """Time-bounded store of effectively delivered insulin.

    Only positive amounts are kept. Records older than the retention
    window (relative to the newest recorded or queried time) are dropped.
    """

    def __init__(self, retention_minutes: int = 8 * 60):
        self.retention_minutes = max(1, int(retention_minutes))
        self._records = deque()

    def record(self, delivery: InsulinDelivery) -> None:
        if delivery.units <= 0.0:
            return
        self._records.append(delivery)
        self._cleanup(delivery.time)

    def get_deliveries_between(self, start: datetime, end: datetime) -> List[InsulinDelivery]:
        self._cleanup(end)
        return sorted(
            (d for d in self._records if start <= d.time <= end),
            key=lambda d: d.time,
        )

    def __len__(self):
        return len(self._records)

    def _cleanup(self, now: datetime) -> None:
        cutoff = now - timedelta(minutes=self.retention_minutes)
        while self._records and self._records[0].time < cutoff:
            self._records.popleft()


class MgdlGlucoseHistoryAdapter(BaseGlucoseHistoryProvider):
    """Wraps a provider reporting mg/dL and converts its readings to mmol/L."""

    def __init__(self, source: BaseGlucoseHistoryProvider):
        self.source = source

    def get_bg_between(self, start: datetime, end: datetime) -> List[BgPoint]:
        return [
            BgPoint(time=p.time, bg_mmol=p.bg_mmol / MGDL_PER_MMOL)
            for p in self.source.get_bg_between(start, end)
        ]


class InMemoryGlucoseHistoryProvider(BaseGlucoseHistoryProvider):
    """Glucose readings kept in memory, used when the host has no history store."""

    def __init__(self, retention_minutes: int = 8 * 60):
        self.retention_minutes = max(1, int(retention_minutes))
        self._points = deque()

    def record(self, point: BgPoint) -> None:
        """Appends a reading. Readings not newer than the newest stored one are ignored."""
        if self._points and point.time <= self._points[-1].time:
            return
        self._points.append(point)
        cutoff = self._points[-1].time - timedelta(minutes=self.retention_minutes)
        while self._points and self._points[0].time < cutoff:
            self._points.popleft()

    def get_bg_between(self, start: datetime, end: datetime) -> List[BgPoint]:
        return [p for p in self._points if start <= p.time <= end]
