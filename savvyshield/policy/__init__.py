# Policy Engine Module
from .engine import DecisionEngine, ProcessResult
from .rules import (
    BandThresholds,
    DecisionCell,
    DecisionTable,
    DEFAULT_DECISION_TABLE,
    load_decision_table,
)

__all__ = [
    "DecisionEngine",
    "ProcessResult",
    "BandThresholds",
    "DecisionCell",
    "DecisionTable",
    "DEFAULT_DECISION_TABLE",
    "load_decision_table",
]
