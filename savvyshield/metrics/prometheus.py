"""
Prometheus Metrics

Defines all metrics exposed by the shield service:
- Ingest and decision volume
- Enforcement and webhook delivery outcomes
- Proactive investigation activity
- Storage latency and errors
"""

import logging

from prometheus_client import Counter, Histogram, Gauge

logger = logging.getLogger("savvyshield.metrics")


class ShieldMetrics:
    """
    Container for all Prometheus metrics.

    Organized by category:
    - Ingest metrics
    - Decision metrics
    - Webhook metrics
    - Investigation metrics
    - System metrics
    """

    def __init__(self):
        """Initialize all metrics."""

        # =====================================================================
        # Ingest Metrics
        # =====================================================================
        self.events_ingested = Counter(
            "shield_events_ingested_total",
            "Total number of shield events ingested",
            labelnames=["app", "event_type"],
        )

        self.errors_total = Counter(
            "shield_errors_total",
            "Total number of errors",
            labelnames=["error_type"],
        )

        self.ingest_latency = Histogram(
            "shield_ingest_latency_ms",
            "Ingest processing latency in milliseconds",
            buckets=[5, 10, 25, 50, 100, 250, 500, 1000],
        )

        # =====================================================================
        # Decision Metrics
        # =====================================================================
        self.decisions_total = Counter(
            "shield_decisions_total",
            "Total number of decisions by action and tier",
            labelnames=["action", "tier"],
        )

        self.enforcements_created = Counter(
            "shield_enforcements_created_total",
            "Total number of enforcements created",
            labelnames=["action"],
        )

        self.enforcements_expired = Counter(
            "shield_enforcements_expired_total",
            "Total number of enforcements expired by the sweep",
        )

        self.risk_score_distribution = Histogram(
            "shield_risk_score",
            "Distribution of risk scores",
            buckets=[0.1, 0.2, 0.3, 0.4, 0.5, 0.6, 0.7, 0.8, 0.9, 1.0],
        )

        # =====================================================================
        # Webhook Metrics
        # =====================================================================
        self.webhook_deliveries = Counter(
            "shield_webhook_deliveries_total",
            "Webhook delivery attempts by outcome",
            labelnames=["app", "outcome"],
        )

        self.webhook_latency = Histogram(
            "shield_webhook_latency_ms",
            "Webhook POST latency in milliseconds",
            buckets=[10, 25, 50, 100, 250, 500, 1000, 2500, 5000, 10000],
        )

        self.webhook_queue_depth = Gauge(
            "shield_webhook_queue_depth",
            "Enforcements waiting for webhook delivery",
        )

        # =====================================================================
        # Investigation Metrics
        # =====================================================================
        self.detector_triggers = Counter(
            "shield_detector_triggers_total",
            "Number of times each detector produced a finding",
            labelnames=["detector"],
        )

        self.detector_errors = Counter(
            "shield_detector_errors_total",
            "Number of detector failures",
            labelnames=["detector"],
        )

        self.investigation_cases = Counter(
            "shield_investigation_cases_total",
            "Proactive investigation cases opened",
        )

        self.sweep_duration = Histogram(
            "shield_sweep_duration_seconds",
            "Duration of a proactive investigation sweep",
            buckets=[0.1, 0.5, 1, 2.5, 5, 10, 30, 60, 120],
        )

        self.sweeps_skipped = Counter(
            "shield_sweeps_skipped_total",
            "Sweep ticks skipped because a sweep was still running",
        )

        # =====================================================================
        # System Metrics
        # =====================================================================
        self.postgres_latency = Histogram(
            "shield_postgres_latency_ms",
            "PostgreSQL operation latency in milliseconds",
            buckets=[5, 10, 25, 50, 100, 250],
        )

        # Component health
        self.component_health = Gauge(
            "shield_component_health",
            "Component health status (1=healthy, 0=unhealthy)",
            labelnames=["component"],
        )

        self.proactive_running = Gauge(
            "shield_proactive_running",
            "Whether the proactive sweep timer is running (1/0)",
        )


# Global metrics instance
metrics = ShieldMetrics()
