"""
Risk Scoring

Heuristic, rule-based scorer for shield events. There is no model
behind it: the score is a base value plus an event-type weight plus
context adjustments, clamped to 1.0.

The scorer is a pure function of (event_type, context) so that a
given event always scores the same.
"""

from typing import Any, Mapping, Optional

from ..schemas import EventType, ShieldEvent


BASE_SCORE = 0.1
UNKNOWN_TYPE_WEIGHT = 0.3

EVENT_TYPE_WEIGHTS: dict[EventType, float] = {
    EventType.FRAUD_SIGNAL: 0.8,
    EventType.CHEAT_SIGNAL: 0.7,
    EventType.USER_REPORT: 0.6,
    EventType.PAYMENT_RISK: 0.9,
    EventType.BEHAVIORAL_ANOMALY: 0.5,
    EventType.DEVICE_REUSE: 0.8,
    EventType.VELOCITY_SPIKE: 0.6,
    EventType.IMPOSSIBLE_TRAVEL: 0.7,
    EventType.BOT_DETECTION: 0.8,
    EventType.CHARGEBACK_SIGNAL: 0.9,
    EventType.IP_REPUTATION: 0.6,
    EventType.WIN_RATE_ANOMALY: 0.7,
}

# (threshold, increment) pairs; increments are cumulative
VALUE_ESCALATION: tuple[tuple[float, float], ...] = (
    (1000, 0.2),
    (5000, 0.1),
    (10000, 0.1),
)

DEVICE_REUSE_COUNT_THRESHOLD = 5
DEVICE_REUSE_INCREMENT = 0.2
VELOCITY_SPIKE_THRESHOLD = 10
VELOCITY_SPIKE_INCREMENT = 0.15
IMPOSSIBLE_TRAVEL_INCREMENT = 0.2


def _as_number(value: Any) -> Optional[float]:
    """Numeric view of a context value; None for anything non-numeric."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return None
    return None


def calculate_risk_score(
    event_type: EventType | str,
    context: Optional[Mapping[str, Any]] = None,
) -> float:
    """
    Score an event in [0, 1].

    Args:
        event_type: Event type (unknown types get a low default weight)
        context: Event context mapping

    Returns:
        Risk score clamped to 1.0
    """
    context = context or {}

    try:
        weight = EVENT_TYPE_WEIGHTS.get(EventType(event_type), UNKNOWN_TYPE_WEIGHT)
    except ValueError:
        weight = UNKNOWN_TYPE_WEIGHT

    score = BASE_SCORE + weight

    # =========================================================================
    # Value escalation
    # =========================================================================
    value = _as_number(context.get("value"))
    if value is not None:
        for threshold, increment in VALUE_ESCALATION:
            if value > threshold:
                score += increment

    # =========================================================================
    # Context adjustments
    # =========================================================================
    device_reuse_count = _as_number(context.get("device_reuse_count"))
    if device_reuse_count is not None and device_reuse_count > DEVICE_REUSE_COUNT_THRESHOLD:
        score += DEVICE_REUSE_INCREMENT

    velocity_spike = _as_number(context.get("velocity_spike"))
    if velocity_spike is not None and velocity_spike > VELOCITY_SPIKE_THRESHOLD:
        score += VELOCITY_SPIKE_INCREMENT

    if context.get("impossible_travel"):
        score += IMPOSSIBLE_TRAVEL_INCREMENT

    return min(score, 1.0)


def score_event(event: ShieldEvent) -> float:
    """Score a ShieldEvent from its type and context."""
    return calculate_risk_score(event.event_type, event.context)
