"""Prometheus-backed quality telemetry for the insight layer."""

from __future__ import annotations

import logging
from typing import Dict, Iterable, Optional

from prometheus_client import CollectorRegistry, Counter, Histogram, Summary, start_http_server

logger = logging.getLogger(__name__)

CONFIDENCE_BUCKETS = (0.1, 0.2, 0.3, 0.4, 0.5, 0.6, 0.7, 0.8, 0.9, 1.0)


class QualityRecorder:
    """
    Record contract quality, lifecycle outcomes and provider latency.

    Metrics live on a private CollectorRegistry so several recorders (one per
    orchestrator, one per test) never collide. Telemetry must never break a
    request: every recording failure is logged and swallowed.
    """

    def __init__(
        self,
        enabled: bool = True,
        port: int = 9108,
        registry: Optional[CollectorRegistry] = None,
    ) -> None:
        self._enabled = bool(enabled)
        self._port = port
        self._started = False
        self.registry = registry or CollectorRegistry()

        self._last_quality: Optional[Dict[str, object]] = None
        self._outcome_counts: Dict[str, int] = {}

        if not self._enabled:
            self._contracts_counter = None
            self._confidence_histogram = None
            self._verdict_counter = None
            self._reasons_counter = None
            self._outcome_counter = None
            self._provider_latency = None
            return

        self._contracts_counter = Counter(
            "insight_contracts_total",
            "Normalized insight contracts by feature and status",
            labelnames=("feature", "status"),
            registry=self.registry,
        )
        self._confidence_histogram = Histogram(
            "insight_contract_confidence",
            "Confidence of normalized contracts",
            labelnames=("feature",),
            buckets=CONFIDENCE_BUCKETS,
            registry=self.registry,
        )
        self._verdict_counter = Counter(
            "insight_policy_verdicts_total",
            "Policy verdicts by feature",
            labelnames=("feature", "verdict"),
            registry=self.registry,
        )
        self._reasons_counter = Counter(
            "insight_policy_reasons_total",
            "Policy block reasons by feature",
            labelnames=("feature", "reason"),
            registry=self.registry,
        )
        self._outcome_counter = Counter(
            "insight_request_outcomes_total",
            "Request lifecycle outcomes (provider_call, cache_hit, budget_exceeded, ...)",
            labelnames=("feature", "outcome"),
            registry=self.registry,
        )
        self._provider_latency = Summary(
            "insight_provider_latency_seconds",
            "Latency of text-generation provider calls",
            labelnames=("feature", "provider"),
            registry=self.registry,
        )

    def is_enabled(self) -> bool:
        return self._enabled

    def start(self) -> None:
        """Expose the private registry over HTTP."""
        if not self._enabled or self._started:
            return
        try:
            start_http_server(self._port, registry=self.registry)
        except OSError as exc:
            logger.error(f"Failed to start insight metrics exporter on port {self._port}: {exc}")
            return
        self._started = True
        logger.info(f"Insight metrics exporter listening on 0.0.0.0:{self._port}")

    def record_quality(
        self,
        feature: str,
        contract_status: str,
        confidence: float,
        verdict: str,
        policy_reasons: Iterable[str],
    ) -> None:
        reasons = list(policy_reasons)
        self._last_quality = {
            "feature": feature,
            "contract_status": contract_status,
            "confidence": confidence,
            "verdict": verdict,
            "policy_reasons": reasons,
        }
        if not self._enabled:
            return
        try:
            assert self._contracts_counter and self._confidence_histogram
            assert self._verdict_counter and self._reasons_counter
            self._contracts_counter.labels(feature=feature, status=contract_status).inc()
            self._confidence_histogram.labels(feature=feature).observe(float(confidence))
            self._verdict_counter.labels(feature=feature, verdict=verdict).inc()
            for reason in reasons:
                self._reasons_counter.labels(feature=feature, reason=reason).inc()
        except Exception as exc:
            logger.warning(f"Failed to record insight quality for {feature}: {exc}")

    def record_outcome(self, feature: str, outcome: str) -> None:
        self._outcome_counts[outcome] = self._outcome_counts.get(outcome, 0) + 1
        if not self._enabled:
            return
        try:
            assert self._outcome_counter
            self._outcome_counter.labels(feature=feature, outcome=outcome).inc()
        except Exception as exc:
            logger.warning(f"Failed to record outcome {outcome} for {feature}: {exc}")

    def record_provider_latency(self, feature: str, provider: str, latency_ms: float) -> None:
        if not self._enabled:
            return
        try:
            assert self._provider_latency
            self._provider_latency.labels(feature=feature, provider=provider).observe(latency_ms / 1000.0)
        except Exception as exc:
            logger.warning(f"Failed to record provider latency for {feature}: {exc}")

    def last_quality(self) -> Optional[Dict[str, object]]:
        return self._last_quality

    def outcome_snapshot(self) -> Dict[str, int]:
        return dict(self._outcome_counts)

    def sample_value(self, name: str, labels: Optional[Dict[str, str]] = None) -> Optional[float]:
        """Read one sample from the private registry (tests and diagnostics)."""
        return self.registry.get_sample_value(name, labels or {})


__all__ = ["QualityRecorder"]
