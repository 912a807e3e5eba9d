"""Tests for Prometheus-backed insight quality telemetry."""

from unittest.mock import patch

from infra.metrics import QualityRecorder


class TestQualityRecorder:
    def test_records_quality_samples(self, metrics):
        metrics.record_quality("overview_pulse", "validated", 0.8, "block", ["low_confidence", "stale_context"])

        assert metrics.sample_value(
            "insight_contracts_total", {"feature": "overview_pulse", "status": "validated"}
        ) == 1.0
        assert metrics.sample_value(
            "insight_policy_verdicts_total", {"feature": "overview_pulse", "verdict": "block"}
        ) == 1.0
        assert metrics.sample_value(
            "insight_policy_reasons_total", {"feature": "overview_pulse", "reason": "stale_context"}
        ) == 1.0
        assert metrics.sample_value(
            "insight_contract_confidence_count", {"feature": "overview_pulse"}
        ) == 1.0
        assert metrics.last_quality() == {
            "feature": "overview_pulse",
            "contract_status": "validated",
            "confidence": 0.8,
            "verdict": "block",
            "policy_reasons": ["low_confidence", "stale_context"],
        }

    def test_records_outcomes_and_latency(self, metrics):
        metrics.record_outcome("futures_risk", "cache_hit")
        metrics.record_outcome("futures_risk", "cache_hit")
        metrics.record_provider_latency("futures_risk", "mock", 250.0)

        assert metrics.outcome_snapshot() == {"cache_hit": 2}
        assert metrics.sample_value(
            "insight_request_outcomes_total", {"feature": "futures_risk", "outcome": "cache_hit"}
        ) == 2.0
        assert metrics.sample_value(
            "insight_provider_latency_seconds_sum", {"feature": "futures_risk", "provider": "mock"}
        ) == 0.25

    def test_recorders_do_not_share_registries(self):
        first = QualityRecorder()
        second = QualityRecorder()
        first.record_outcome("overview_pulse", "provider_call")
        assert second.sample_value(
            "insight_request_outcomes_total", {"feature": "overview_pulse", "outcome": "provider_call"}
        ) is None

    def test_disabled_recorder_keeps_local_snapshot(self):
        recorder = QualityRecorder(enabled=False)
        recorder.record_quality("overview_pulse", "fallback", 0.5, "warn", [])
        recorder.record_outcome("overview_pulse", "budget_exceeded")
        recorder.record_provider_latency("overview_pulse", "mock", 10.0)
        assert recorder.is_enabled() is False
        assert recorder.last_quality()["contract_status"] == "fallback"
        assert recorder.outcome_snapshot() == {"budget_exceeded": 1}
        assert recorder.sample_value("insight_contracts_total", {"feature": "overview_pulse", "status": "fallback"}) is None

    def test_bad_values_are_swallowed(self, metrics):
        metrics.record_quality("overview_pulse", "validated", "not-a-number", "allow", [])
        assert metrics.last_quality()["verdict"] == "allow"

    def test_start_is_idempotent_and_tolerates_port_errors(self):
        recorder = QualityRecorder(port=9999)
        with patch("infra.metrics.start_http_server", side_effect=OSError("in use")) as server:
            recorder.start()
            recorder.start()
        assert server.call_count == 2

        with patch("infra.metrics.start_http_server") as server:
            recorder.start()
            recorder.start()
        server.assert_called_once_with(9999, registry=recorder.registry)
