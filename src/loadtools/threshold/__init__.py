from .manager import AtomicCounter, ThresholdCounters, ThresholdManager
from .policy import Decision, ThresholdAction, ThresholdPolicy

__all__ = [
    "AtomicCounter",
    "ThresholdCounters",
    "ThresholdManager",
    "Decision",
    "ThresholdAction",
    "ThresholdPolicy",
]
