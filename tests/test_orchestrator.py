"""
Tests for the insight orchestrator lifecycle.

Covers gating (runtime switch, rollout, budget), cache reuse with verdict
re-evaluation, single-flight dedupe, provider failures and streaming.
"""

import asyncio

import pytest

from ai.model_client import MockClient
from ai.orchestrator import GATED_PROVIDER, InsightOrchestrator, create_orchestrator, rollout_bucket, utc_day
from ai.registry import build_registry
from ai.schemas import InsightRequest
from ai.settings import AppSettings
from core.exceptions import GenerationAborted, GenerationTimeout, ProviderError, UnknownFeatureError
from infra.state_store import InsightStore, JsonFileBackend
from tests.helpers import BASE_MS, MINUTE_MS, balanced_context, concentrated_context, contract_json


def request(feature="overview_pulse", context=None):
    return InsightRequest(feature=feature, context=context if context is not None else concentrated_context())


async def collect(stream):
    return [event async for event in stream]


class TestProviderPath:
    def test_fresh_request_calls_provider(self, make_orchestrator, mock_client, store):
        orchestrator = make_orchestrator()

        response = asyncio.run(orchestrator.run(request()))

        assert response.outcome == "provider_call"
        assert response.cached is False
        assert response.provider == "mock"
        assert response.contract_status == "validated"
        assert response.content == "Risk: BTC is 60% of tracked value.\nAction: Trim BTC toward a 40% cap."
        assert response.signal_meta.verdict == "warn"
        assert response.signal_meta.policy.reasons == []
        assert response.context_meta.snapshot_ts == BASE_MS
        assert response.context_meta.source_ids == ["coinbase"]
        assert mock_client.call_count == 1
        assert store.get_budget_count("overview_pulse", utc_day(BASE_MS)) == 1

    def test_generation_request_shape(self, make_orchestrator, mock_client):
        orchestrator = make_orchestrator(forced_providers={"futures_risk": "anthropic"})
        asyncio.run(orchestrator.run(InsightRequest(feature="futures_risk", context={"a": 1}, max_tokens=50)))

        sent = mock_client.requests[0]
        assert sent.feature == "futures_risk"
        assert sent.provider == "anthropic"
        assert sent.max_tokens == 50
        assert sent.json_mode is True
        assert [m.role for m in sent.messages] == ["system", "user"]
        assert '"a":1' in sent.messages[1].content

    def test_unusable_output_falls_back_but_is_served(self, make_orchestrator, clock):
        orchestrator = make_orchestrator(client=MockClient(default_response="ok"))
        response = asyncio.run(orchestrator.run(request()))
        assert response.contract_status == "fallback"
        assert response.structured.risk
        assert response.outcome == "provider_call"

    def test_unknown_feature(self, make_orchestrator):
        orchestrator = make_orchestrator()
        with pytest.raises(UnknownFeatureError):
            asyncio.run(orchestrator.run(InsightRequest(feature="nope")))

    def test_audit_entry(self, make_orchestrator):
        orchestrator = make_orchestrator()
        asyncio.run(orchestrator.run(request()))
        entry = orchestrator.recent_audit(1)[0]
        assert entry["feature"] == "overview_pulse"
        assert entry["outcome"] == "provider_call"
        assert entry["provider"] == "mock"
        assert entry["contract_status"] == "validated"
        assert entry["verdict"] == "warn"
        assert entry["severity"] == "warning"
        assert entry["reasons"] == []
        assert entry["cached"] is False
        assert entry["requested_at"] == BASE_MS
        assert entry["source_ids"] == ["coinbase"]
        assert len(entry["context_hash"]) == 16

    def test_metrics_are_recorded(self, make_orchestrator, metrics):
        orchestrator = make_orchestrator(metrics=metrics)
        asyncio.run(orchestrator.run(request()))
        assert metrics.outcome_snapshot() == {"provider_call": 1}
        assert metrics.last_quality()["verdict"] == "warn"
        assert metrics.sample_value(
            "insight_provider_latency_seconds_count", {"feature": "overview_pulse", "provider": "mock"}
        ) == 1.0
        assert orchestrator.latency.get_stats("provider:overview_pulse").count == 1


class TestCache:
    def test_second_request_hits_cache(self, make_orchestrator, mock_client, store):
        orchestrator = make_orchestrator()

        async def scenario():
            first = await orchestrator.run(request())
            second = await orchestrator.run(request())
            return first, second

        first, second = asyncio.run(scenario())
        assert second.cached is True
        assert second.outcome == "cache_hit"
        assert second.structured == first.structured
        assert mock_client.call_count == 1
        # cache hits do not consume budget
        assert store.get_budget_count("overview_pulse", utc_day(BASE_MS)) == 1
        assert orchestrator.recent_audit(1)[0]["outcome"] == "cache_hit"

    def test_cached_entry_has_no_policy_outcome(self, make_orchestrator, store):
        orchestrator = make_orchestrator()
        response = asyncio.run(orchestrator.run(request()))
        key = InsightStore.cache_key("overview_pulse", response.context_meta.context_hash)
        cached = store.get_cache_entry(key)["response"]
        assert "signal_meta" not in cached
        assert "cached" not in cached
        assert cached["structured"]["risk"] == response.structured.risk

    def test_cache_expires_after_ttl(self, make_orchestrator, mock_client, clock):
        orchestrator = make_orchestrator()

        async def scenario():
            await orchestrator.run(request())
            clock.advance(2 * MINUTE_MS)
            return await orchestrator.run(request())

        response = asyncio.run(scenario())
        assert response.outcome == "provider_call"
        assert mock_client.call_count == 2

    def test_cached_verdict_is_recomputed_as_snapshot_ages(self, make_orchestrator, mock_client, clock):
        """A contract cached while fresh is blocked once its snapshot goes stale"""
        registry = build_registry({"overview_pulse": {"ttl_ms": 30 * MINUTE_MS}})
        orchestrator = make_orchestrator(registry=registry)

        async def scenario():
            first = await orchestrator.run(request())
            clock.advance(13 * MINUTE_MS)
            return first, await orchestrator.run(request())

        first, later = asyncio.run(scenario())
        assert first.signal_meta.verdict == "warn"
        assert later.cached is True
        assert later.structured == first.structured
        assert later.signal_meta.verdict == "block"
        assert later.signal_meta.policy.reasons == ["stale_context"]
        assert mock_client.call_count == 1

    def test_different_context_misses_cache(self, make_orchestrator, mock_client):
        orchestrator = make_orchestrator()

        async def scenario():
            await orchestrator.run(request())
            await orchestrator.run(request(context=concentrated_context(dataCoverage=0.8)))

        asyncio.run(scenario())
        assert mock_client.call_count == 2


class TestGates:
    def test_runtime_switch_off(self, make_orchestrator, mock_client, store):
        store.set_runtime_enabled(False)
        orchestrator = make_orchestrator()

        response = asyncio.run(orchestrator.run(request()))

        assert response.provider == GATED_PROVIDER
        assert response.model == "disabled"
        assert response.outcome == "runtime_disabled"
        assert response.contract_status == "fallback"
        assert response.signal_meta.verdict == "block"
        assert response.signal_meta.policy.reasons == ["rollout_disabled"]
        assert "BTC" in response.structured.risk
        assert mock_client.call_count == 0

    def test_configured_runtime_switch(self, make_orchestrator, mock_client):
        orchestrator = make_orchestrator(runtime_enabled=False)
        response = asyncio.run(orchestrator.run(request()))
        assert response.outcome == "runtime_disabled"
        assert orchestrator.is_runtime_enabled() is False
        assert mock_client.call_count == 0

    def test_feature_switch_off(self, make_orchestrator, mock_client, store):
        store.set_feature_enabled("overview_pulse", False)
        orchestrator = make_orchestrator()
        response = asyncio.run(orchestrator.run(request()))
        assert response.model == "disabled"
        assert orchestrator.is_feature_enabled("overview_pulse") is False
        assert orchestrator.is_feature_enabled("futures_risk") is True

    def test_runtime_switch_beats_cache(self, make_orchestrator, store):
        orchestrator = make_orchestrator()

        async def scenario():
            await orchestrator.run(request())
            store.set_runtime_enabled(False)
            return await orchestrator.run(request())

        response = asyncio.run(scenario())
        assert response.outcome == "runtime_disabled"

    def test_rollout_zero_blocks(self, make_orchestrator, mock_client, store):
        store.set_rollout_percent("overview_pulse", 0)
        orchestrator = make_orchestrator()
        response = asyncio.run(orchestrator.run(request()))
        assert response.model == "rollout"
        assert response.outcome == "rollout_blocked"
        assert response.signal_meta.policy.reasons[0] == "rollout_disabled"
        assert mock_client.call_count == 0

    def test_rollout_percent_sources(self, make_orchestrator, store):
        registry = build_registry({
            "journal_reflection": {"rollout": {"percent": 30}},
            "wallet_health": {"rollout": {"enabled_by_default": False}},
        })
        orchestrator = make_orchestrator(registry=registry)
        assert orchestrator.rollout_percent(registry.lookup("journal_reflection")) == 30
        assert orchestrator.rollout_percent(registry.lookup("wallet_health")) == 0
        store.set_rollout_percent("wallet_health", 75)
        assert orchestrator.rollout_percent(registry.lookup("wallet_health")) == 75

    def test_rollout_bucket_is_deterministic(self, make_orchestrator):
        orchestrator = make_orchestrator(registry=build_registry({"journal_reflection": {"rollout": {"percent": 50}}}))
        config = orchestrator.registry.lookup("journal_reflection")
        hashes = [f"{i:016x}" for i in range(64)]
        buckets = [rollout_bucket("journal_reflection", h) for h in hashes]
        assert buckets == [rollout_bucket("journal_reflection", h) for h in hashes]
        assert all(0 <= b < 100 for b in buckets)
        allowed = [orchestrator.is_rollout_allowed(config, h) for h in hashes]
        assert allowed == [b < 50 for b in buckets]
        assert any(allowed) and not all(allowed)

    def test_kill_switch_from_another_process(self, tmp_path, mock_client, clock):
        path = str(tmp_path / "state.json")
        server_store = InsightStore(JsonFileBackend(path))
        operator_store = InsightStore(JsonFileBackend(path))
        orchestrator = InsightOrchestrator(
            registry=build_registry(), store=server_store, client=mock_client, clock=clock,
        )

        operator_store.set_runtime_enabled(False)
        response = asyncio.run(orchestrator.run(request()))

        assert response.outcome == "runtime_disabled"
        assert mock_client.call_count == 0
        assert operator_store.is_runtime_enabled() is False

    def test_daily_budget(self, make_orchestrator, mock_client, store, clock):
        orchestrator = make_orchestrator(registry=build_registry({"overview_pulse": {"max_per_day": 2}}))

        async def scenario():
            responses = []
            for coverage in (0.81, 0.82, 0.83):
                responses.append(await orchestrator.run(request(context=concentrated_context(dataCoverage=coverage))))
            return responses

        responses = asyncio.run(scenario())
        assert [r.outcome for r in responses] == ["provider_call", "provider_call", "budget_exceeded"]
        exceeded = responses[-1]
        assert exceeded.model == "budget"
        assert exceeded.provider == GATED_PROVIDER
        assert "rollout_disabled" not in exceeded.signal_meta.policy.reasons
        assert mock_client.call_count == 2

        # next UTC day restores the budget
        clock.advance(24 * 60 * MINUTE_MS)
        response = asyncio.run(orchestrator.run(request(context=concentrated_context(dataCoverage=0.84))))
        assert response.outcome == "provider_call"


class TestSingleFlight:
    def test_concurrent_requests_share_one_call(self, make_orchestrator, store):
        client = MockClient(default_response=contract_json(), delay_s=0.05)
        orchestrator = make_orchestrator(client=client)

        async def scenario():
            return await asyncio.gather(*(orchestrator.run(request()) for _ in range(3)))

        responses = asyncio.run(scenario())
        assert client.call_count == 1
        assert sorted(r.outcome for r in responses) == ["provider_call", "single_flight", "single_flight"]
        assert len({r.structured.risk for r in responses}) == 1
        assert store.get_budget_count("overview_pulse", utc_day(BASE_MS)) == 1
        assert orchestrator.inflight_count() == 0

    def test_provider_error_reaches_every_waiter(self, make_orchestrator, store):
        client = MockClient(responses=[ProviderError("mock", "upstream down")], delay_s=0.05)
        orchestrator = make_orchestrator(client=client)

        async def scenario():
            return await asyncio.gather(
                orchestrator.run(request()), orchestrator.run(request()), return_exceptions=True
            )

        results = asyncio.run(scenario())
        assert all(isinstance(r, ProviderError) for r in results)
        assert client.call_count == 1
        assert orchestrator.inflight_count() == 0


class TestProviderFailure:
    def test_error_propagates_and_is_not_cached(self, make_orchestrator, metrics):
        client = MockClient(responses=[ProviderError("mock", "timeout")], default_response=contract_json())
        orchestrator = make_orchestrator(client=client, metrics=metrics)

        with pytest.raises(ProviderError):
            asyncio.run(orchestrator.run(request()))
        assert metrics.outcome_snapshot() == {"provider_error": 1}
        assert orchestrator.inflight_count() == 0

        response = asyncio.run(orchestrator.run(request()))
        assert response.outcome == "provider_call"
        assert client.call_count == 2


class TestStreaming:
    def test_deltas_then_final(self, make_orchestrator):
        client = MockClient(default_response=contract_json(), chunk_size=16)
        orchestrator = make_orchestrator(client=client)

        events = asyncio.run(collect(orchestrator.stream(request())))

        deltas = [e for e in events if e.kind == "delta"]
        assert len(deltas) > 1
        assert "".join(e.text for e in deltas) == contract_json()
        final = events[-1]
        assert final.kind == "final"
        assert sum(1 for e in events if e.kind == "final") == 1
        assert final.response.outcome == "stream"
        assert final.text == final.response.content
        assert final.response.contract_status == "validated"
        assert orchestrator.latency.last("provider:overview_pulse").metadata == {"stream": True}

    def test_streamed_result_is_cached(self, make_orchestrator, mock_client):
        orchestrator = make_orchestrator()

        async def scenario():
            await collect(orchestrator.stream(request()))
            return await orchestrator.run(request())

        response = asyncio.run(scenario())
        assert response.outcome == "cache_hit"
        assert mock_client.call_count == 1

    def test_gated_stream_yields_fallback(self, make_orchestrator, store, mock_client):
        store.set_runtime_enabled(False)
        orchestrator = make_orchestrator()
        events = asyncio.run(collect(orchestrator.stream(request())))
        assert [e.kind for e in events] == ["delta", "final"]
        assert events[0].text == events[1].text
        assert events[1].response.outcome == "runtime_disabled"
        assert mock_client.call_count == 0

    def test_cancel_aborts_stream(self, make_orchestrator, metrics, store):
        client = MockClient(default_response=contract_json(), chunk_size=4, chunk_delay_s=0.01)
        orchestrator = make_orchestrator(client=client, metrics=metrics)
        cancel = asyncio.Event()
        seen = []

        async def scenario():
            async for event in orchestrator.stream(request(), cancel=cancel):
                seen.append(event)
                cancel.set()

        with pytest.raises(GenerationAborted):
            asyncio.run(scenario())
        assert len(seen) == 1
        assert metrics.outcome_snapshot().get("stream_aborted") == 1
        assert orchestrator.recent_audit() == []

    def test_stream_timeout(self, make_orchestrator, metrics):
        client = MockClient(default_response=contract_json(), delay_s=1.0)
        orchestrator = make_orchestrator(client=client, metrics=metrics, stream_timeout_s=0.05)

        with pytest.raises(GenerationTimeout):
            asyncio.run(collect(orchestrator.stream(request())))
        assert metrics.outcome_snapshot().get("stream_aborted") == 1

    def test_stream_provider_error(self, make_orchestrator):
        client = MockClient(responses=[ProviderError("mock", "bad gateway")])
        orchestrator = make_orchestrator(client=client)
        with pytest.raises(ProviderError):
            asyncio.run(collect(orchestrator.stream(request())))


class TestFactory:
    def test_create_from_settings(self, clock):
        settings = AppSettings.model_validate({
            "ai": {"provider": "mock", "stream_timeout_s": 5, "failure_cooldown_s": 3, "runtime_enabled": False},
            "features": {"wallet_health": {"max_per_day": 4}},
        })
        orchestrator = create_orchestrator(settings, clock=clock)
        assert orchestrator.client.name == "mock"
        assert orchestrator.stream_timeout_s == 5
        assert orchestrator.failure_cooldown_s == 3
        assert orchestrator.runtime_enabled is False
        assert orchestrator.registry.lookup("wallet_health").max_per_day == 4
        assert orchestrator.metrics is None

    def test_metrics_exporter_started(self, monkeypatch):
        started = []
        monkeypatch.setattr("infra.metrics.start_http_server", lambda port, registry=None: started.append(port))
        settings = AppSettings.model_validate({"metrics": {"enabled": True, "port": 9555}})

        orchestrator = create_orchestrator(settings)

        assert started == [9555]
        assert orchestrator.metrics.is_enabled()

    def test_forced_providers_build_router(self, monkeypatch):
        monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-ant-test")
        settings = AppSettings.model_validate({"ai": {"forced_providers": {"futures_risk": "anthropic"}}})
        orchestrator = create_orchestrator(settings)
        assert orchestrator.client.name == "router"
        assert orchestrator.client.forced_provider("futures_risk") == "anthropic"
        assert orchestrator.forced_providers == {"futures_risk": "anthropic"}
        assert set(orchestrator.client.providers) == {"mock", "anthropic"}

    def test_balanced_context_allows(self, make_orchestrator):
        client = MockClient(default_response=contract_json(
            risk="Balances are spread evenly.", action="Keep the allocation.",
        ))
        orchestrator = make_orchestrator(client=client)
        response = asyncio.run(orchestrator.run(request("wallet_health", balanced_context())))
        assert response.signal_meta.verdict == "allow"
