# Scoring Module
from .risk_scorer import EVENT_TYPE_WEIGHTS, calculate_risk_score, score_event

__all__ = ["EVENT_TYPE_WEIGHTS", "calculate_risk_score", "score_event"]
