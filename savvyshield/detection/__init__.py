# Detection Module
from .detector import BaseInvestigator, Candidate, InvestigationFinding
from .device_reuse import DeviceReuseInvestigator
from .velocity import VelocitySpikeInvestigator
from .geo import ImpossibleTravelInvestigator, calculate_distance_km
from .win_rate import WinRateInvestigator
from .payment import PaymentRiskInvestigator
from .bot import BotBehaviorInvestigator
from .ip_reputation import IPReputationInvestigator, StaticIPReputation
from .behavioral import BehavioralPatternInvestigator
from .investigation import (
    FINDING_THRESHOLD,
    InvestigationOutcome,
    ProactiveInvestigationService,
    SweepResult,
    build_default_investigators,
)

__all__ = [
    "BaseInvestigator",
    "Candidate",
    "InvestigationFinding",
    "DeviceReuseInvestigator",
    "VelocitySpikeInvestigator",
    "ImpossibleTravelInvestigator",
    "calculate_distance_km",
    "WinRateInvestigator",
    "PaymentRiskInvestigator",
    "BotBehaviorInvestigator",
    "IPReputationInvestigator",
    "StaticIPReputation",
    "BehavioralPatternInvestigator",
    "FINDING_THRESHOLD",
    "InvestigationOutcome",
    "ProactiveInvestigationService",
    "SweepResult",
    "build_default_investigators",
]
