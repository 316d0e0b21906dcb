# DiaLoop Base Classes
# Defines abstract base classes (ABCs) for the external collaborators the
# dosing engine and the learning subsystem consume, so hosts can plug in
# their own data sources and storage.

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional


@dataclass(frozen=True)
class BgPoint:
    """One glucose reading in mmol/L."""
    time: datetime
    bg_mmol: float


@dataclass(frozen=True)
class InsulinDelivery:
    """One delivered amount of insulin.

    `phase` tags where the amount came from (e.g. "SMB", "BASAL",
    "MANUAL").
    """
    time: datetime
    units: float
    phase: str = "SMB"


class BaseGlucoseHistoryProvider(ABC):
    """Abstract source of glucose history for the learning chain."""

    @abstractmethod
    def get_bg_between(self, start: datetime, end: datetime) -> List[BgPoint]:
        """Returns readings with start <= time <= end, oldest first.

        Args:
            start (datetime): Inclusive lower bound.
            end (datetime): Inclusive upper bound.

        Returns:
            List[BgPoint]: Readings in mmol/L. Empty when none exist.
        """
        pass


class BaseInsulinDeliveryProvider(ABC):
    """Abstract source of delivered insulin records."""

    @abstractmethod
    def get_deliveries_between(self, start: datetime, end: datetime) -> List[InsulinDelivery]:
        """Returns deliveries with start <= time <= end, oldest first."""
        pass


class BaseLearningStore(ABC):
    """Opaque persistence for the confidence accumulator's state.

    The learning chain calls `save` after every ingested episode and
    `load` once on attach. Implementations may raise on I/O failure;
    callers are expected to contain those errors.
    """

    @abstractmethod
    def save(self, state: Dict[str, Any]) -> None:
        pass

    @abstractmethod
    def load(self) -> Optional[Dict[str, Any]]:
        """Returns the previously saved state, or None if nothing is stored."""
        pass
