# Metrics Module
from .prometheus import metrics, ShieldMetrics

__all__ = ["metrics", "ShieldMetrics"]
