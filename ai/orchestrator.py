"""
Insight Orchestrator

Runs one insight request through the governance lifecycle:

    runtime switch -> rollout bucket -> cache -> single-flight join
        -> daily budget -> provider call -> normalizer -> cache -> policy -> audit

Every gated outcome still returns a usable response (a deterministic fallback
contract) so callers never need a special path for "AI unavailable". Provider
failures are the one thing that propagates: the calling layer owns retries.
"""

import asyncio
import hashlib
import logging
import os
import time
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Callable, Dict, List, Mapping, Optional

from core.exceptions import GenerationAborted, GenerationTimeout, ProviderError
from infra.latency_tracker import LatencyTracker
from infra.metrics import QualityRecorder
from infra.state_store import InsightStore, create_insight_store_from_config

from .context_meta import build_context_meta, fingerprint_context, now_ms
from .model_client import (
    DEFAULT_API_KEY_ENV,
    GenerationClient,
    ProviderRouter,
    create_generation_client,
)
from .normalizer import build_fallback_contract, normalize_contract
from .policy import evaluate_policy
from .registry import FEATURE_REGISTRY, FeatureRegistry, build_registry
from .schemas import (
    ChatMessage,
    Context,
    ContextMeta,
    FeatureConfig,
    GenerationRequest,
    InsightRequest,
    InsightResponse,
    StreamEvent,
)

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are a portfolio risk desk assistant. Respond with exactly one JSON object and nothing else. "
    'Use only the keys "risk", "action", "confidence", "evidence", "expiresAt". '
    "No prose outside the object, no markdown, no code fences, no disclaimers, no mention of AI."
)

DEFAULT_STREAM_TIMEOUT_S = 22.0
DEFAULT_FAILURE_COOLDOWN_S = 15.0
GATED_PROVIDER = "local"

Clock = Callable[[], int]


def rollout_bucket(feature: str, context_hash: str) -> int:
    """Deterministic 0..99 bucket for a (feature, context) pair."""
    digest = hashlib.sha256(f"{feature}:{context_hash}:rollout".encode("utf-8")).hexdigest()
    return int(digest[:8], 16) % 100


def utc_day(epoch_ms: int) -> str:
    return datetime.fromtimestamp(epoch_ms / 1000, tz=timezone.utc).strftime("%Y-%m-%d")


@dataclass
class _Prepared:
    """Per-request values computed once up front."""
    config: FeatureConfig
    context: Context
    context_hash: str
    context_meta: ContextMeta
    cache_key: str
    requested_at: int


class InsightOrchestrator:
    """
    Governance lifecycle for insight requests.

    One instance owns its store, in-flight map and telemetry, so several
    orchestrators can run side by side (tests, multiple dashboards) without
    sharing state.
    """

    def __init__(
        self,
        registry: Optional[FeatureRegistry] = None,
        store: Optional[InsightStore] = None,
        client: Optional[GenerationClient] = None,
        metrics: Optional[QualityRecorder] = None,
        clock: Optional[Clock] = None,
        latency_tracker: Optional[LatencyTracker] = None,
        stream_timeout_s: float = DEFAULT_STREAM_TIMEOUT_S,
        system_prompt: str = SYSTEM_PROMPT,
        forced_providers: Optional[Mapping[str, str]] = None,
        runtime_enabled: bool = True,
        failure_cooldown_s: float = DEFAULT_FAILURE_COOLDOWN_S,
    ):
        """
        Args:
            registry: Feature registry (defaults to the built-in table)
            store: Cache/budget/audit/flag store (defaults to in-memory)
            client: Generation client (defaults to the offline mock)
            metrics: Quality telemetry sink (optional)
            clock: Epoch-ms clock, injectable for tests
            latency_tracker: Provider latency samples
            stream_timeout_s: Deadline for a streamed generation
            system_prompt: System instruction sent with every request
            forced_providers: feature -> provider name pinned per feature
            runtime_enabled: Configured master switch (ANDed with the store flag)
            failure_cooldown_s: Default retry cooldown for sessions built on this orchestrator
        """
        self.registry = registry or FEATURE_REGISTRY
        self.store = store or InsightStore()
        self.client = client or create_generation_client("mock")
        self.metrics = metrics
        self.clock = clock or now_ms
        self.latency = latency_tracker or LatencyTracker()
        self.stream_timeout_s = stream_timeout_s
        self.system_prompt = system_prompt
        self.forced_providers: Dict[str, str] = dict(forced_providers or {})
        self.runtime_enabled = runtime_enabled
        self.failure_cooldown_s = failure_cooldown_s
        self._inflight: Dict[str, "asyncio.Future[InsightResponse]"] = {}

    # ─── Flags and gates ───────────────────────────────────────────────────

    def is_runtime_enabled(self) -> bool:
        return self.runtime_enabled and self.store.is_runtime_enabled()

    def is_feature_enabled(self, feature: str) -> bool:
        override = self.store.feature_enabled_override(feature)
        return True if override is None else override

    def rollout_percent(self, config: FeatureConfig) -> float:
        override = self.store.rollout_percent_override(config.feature)
        if override is not None:
            return override
        return config.rollout.percent if config.rollout.enabled_by_default else 0.0

    def is_rollout_allowed(self, config: FeatureConfig, context_hash: str) -> bool:
        return rollout_bucket(config.feature, context_hash) < self.rollout_percent(config)

    def inflight_count(self) -> int:
        return len(self._inflight)

    def recent_audit(self, limit: int = 20) -> List[Dict[str, Any]]:
        """Newest audit entries first."""
        return self.store.recent_audit(limit)

    # ─── Lifecycle ─────────────────────────────────────────────────────────

    def _prepare(self, request: InsightRequest) -> _Prepared:
        config = self.registry.lookup(request.feature)
        context = request.context if isinstance(request.context, dict) else {}
        requested_at = self.clock()
        context_hash = fingerprint_context(config.feature, context)
        return _Prepared(
            config=config,
            context=context,
            context_hash=context_hash,
            context_meta=build_context_meta(context, context_hash, requested_at),
            cache_key=InsightStore.cache_key(config.feature, context_hash),
            requested_at=requested_at,
        )

    def _pre_cache_gates(self, prep: _Prepared) -> Optional[InsightResponse]:
        """Runtime switch, rollout bucket, then cache."""
        feature = prep.config.feature
        if not self.is_runtime_enabled() or not self.is_feature_enabled(feature):
            logger.debug(f"{feature}: insight runtime disabled")
            return self._gated_response(prep, model="disabled", outcome="runtime_disabled", rollout_allowed=False)
        if not self.is_rollout_allowed(prep.config, prep.context_hash):
            logger.debug(f"{feature}: context {prep.context_hash} outside rollout bucket")
            return self._gated_response(prep, model="rollout", outcome="rollout_blocked", rollout_allowed=False)
        return self._cache_lookup(prep)

    def _budget_gate(self, prep: _Prepared) -> Optional[InsightResponse]:
        """Consume one unit of today's budget, or return the budget fallback."""
        config = prep.config
        day = utc_day(prep.requested_at)
        used = self.store.get_budget_count(config.feature, day)
        if used >= config.max_per_day:
            logger.info(f"{config.feature}: daily budget exhausted ({used}/{config.max_per_day})")
            return self._gated_response(prep, model="budget", outcome="budget_exceeded", rollout_allowed=True)
        self.store.increment_budget(config.feature, day)
        return None

    def _cache_lookup(self, prep: _Prepared) -> Optional[InsightResponse]:
        entry = self.store.get_cache_entry(prep.cache_key)
        if entry is None:
            return None
        now = self.clock()
        try:
            created_at = int(entry.get("created_at", 0))
            response = InsightResponse.from_dict(entry["response"])
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"{prep.config.feature}: discarding unreadable cache entry ({e})")
            return None
        if not 0 <= now - created_at < prep.config.ttl_ms:
            return None
        if not response.structured.risk.strip() or not response.structured.action.strip():
            return None

        # Contract content is frozen; the verdict is recomputed against the current clock.
        response.cached = True
        response.outcome = "cache_hit"
        response.signal_meta = evaluate_policy(
            prep.config,
            response.structured,
            prep.context,
            response.context_meta,
            rollout_allowed=True,
            now=now,
        )
        logger.debug(f"{prep.config.feature}: cache hit (age {now - created_at}ms)")
        self._audit(prep, response)
        self._record(prep.config.feature, response)
        return response

    def _gated_response(
        self,
        prep: _Prepared,
        model: str,
        outcome: str,
        rollout_allowed: bool,
    ) -> InsightResponse:
        now = self.clock()
        contract = build_fallback_contract(prep.config, prep.context, now)
        response = InsightResponse(
            content=contract.render(),
            provider=GATED_PROVIDER,
            model=model,
            created_at=now,
            structured=contract,
            contract_status="fallback",
            context_meta=prep.context_meta,
            outcome=outcome,
        )
        response.signal_meta = evaluate_policy(
            prep.config, contract, prep.context, prep.context_meta, rollout_allowed, now=now
        )
        self._audit(prep, response)
        self._record(prep.config.feature, response)
        return response

    def _generation_request(self, prep: _Prepared, request: InsightRequest) -> GenerationRequest:
        config = prep.config
        return GenerationRequest(
            feature=config.feature,
            messages=[
                ChatMessage(role="system", content=self.system_prompt),
                ChatMessage(role="user", content=config.prompt(prep.context)),
            ],
            max_tokens=request.max_tokens or config.max_tokens,
            temperature=config.temperature if request.temperature is None else request.temperature,
            json_mode=True,
            provider=self.forced_providers.get(config.feature),
        )

    def _finalize(
        self,
        prep: _Prepared,
        raw: str,
        provider: str,
        model: str,
        usage: Any,
        outcome: str,
    ) -> InsightResponse:
        """Normalize provider text, cache it, evaluate policy, audit."""
        now = self.clock()
        contract, status = normalize_contract(raw, prep.config, prep.context, now)
        response = InsightResponse(
            content=contract.render(),
            provider=provider,
            model=model,
            created_at=now,
            structured=contract,
            contract_status=status,
            context_meta=prep.context_meta,
            usage=usage,
            outcome=outcome,
        )
        self.store.put_cache_entry(prep.cache_key, now, response.to_dict())
        response.signal_meta = evaluate_policy(
            prep.config, contract, prep.context, prep.context_meta, rollout_allowed=True, now=now
        )
        self._audit(prep, response)
        self._record(prep.config.feature, response)
        return response

    async def _call_provider(self, prep: _Prepared, request: InsightRequest) -> InsightResponse:
        feature = prep.config.feature
        gen_request = self._generation_request(prep, request)
        start = time.perf_counter()
        try:
            with self.latency.measure(f"provider:{feature}"):
                result = await self.client.generate(gen_request)
        except Exception as e:
            logger.error(f"{feature}: provider call failed: {e}", exc_info=True)
            self._record_outcome(feature, "provider_error")
            raise
        latency_ms = (time.perf_counter() - start) * 1000
        logger.info(f"{feature}: provider call completed via {result.provider} in {latency_ms:.1f}ms")
        if self.metrics is not None:
            self.metrics.record_provider_latency(feature, result.provider, latency_ms)
        return self._finalize(prep, result.content, result.provider, result.model, result.usage, "provider_call")

    def _release(self, key: str, task: "asyncio.Future[InsightResponse]") -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]
        if not task.cancelled():
            # Mark the exception retrieved; owners and joiners re-raise it themselves.
            task.exception()

    async def run(self, request: InsightRequest) -> InsightResponse:
        """
        Run one request through the full lifecycle.

        Raises:
            UnknownFeatureError: If the feature is not declared
            ProviderError: If the provider call fails (no retry is attempted)
        """
        prep = self._prepare(request)
        gated = self._pre_cache_gates(prep)
        if gated is not None:
            return gated

        existing = self._inflight.get(prep.cache_key)
        if existing is not None:
            logger.debug(f"{prep.config.feature}: joining in-flight request {prep.cache_key}")
            self._record_outcome(prep.config.feature, "single_flight")
            # Shield so a cancelled joiner never cancels the shared call.
            shared = await asyncio.shield(existing)
            return replace(shared, outcome="single_flight")

        gated = self._budget_gate(prep)
        if gated is not None:
            return gated

        task = asyncio.ensure_future(self._call_provider(prep, request))
        self._inflight[prep.cache_key] = task
        task.add_done_callback(lambda t, key=prep.cache_key: self._release(key, t))
        return await asyncio.shield(task)

    async def stream(
        self,
        request: InsightRequest,
        cancel: Optional[asyncio.Event] = None,
    ) -> AsyncIterator[StreamEvent]:
        """
        Streamed variant of ``run``.

        Yields ``delta`` events as provider text arrives, then exactly one
        ``final`` event whose content is the normalized contract. The final
        event replaces everything streamed before it. Gated outcomes yield one
        delta with the fallback or cached content, then the final event.

        Raises:
            GenerationAborted: ``cancel`` was set before the stream finished
            GenerationTimeout: The stream exceeded ``stream_timeout_s``
            ProviderError: The provider failed
        """
        prep = self._prepare(request)
        gated = self._pre_cache_gates(prep) or self._budget_gate(prep)
        if gated is not None:
            yield StreamEvent(kind="delta", text=gated.content)
            yield StreamEvent(kind="final", text=gated.content, response=gated)
            return

        feature = prep.config.feature
        provider_name = self.forced_providers.get(feature) or self.client.name
        queue: "asyncio.Queue[str]" = asyncio.Queue()
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.stream_timeout_s
        start = time.perf_counter()
        task = asyncio.ensure_future(
            self.client.generate_stream(self._generation_request(prep, request), queue.put_nowait, cancel)
        )
        parts: List[str] = []
        try:
            while True:
                if cancel is not None and cancel.is_set():
                    raise GenerationAborted(provider_name, "stream cancelled by caller")
                remaining = deadline - loop.time()
                if remaining <= 0:
                    raise GenerationTimeout(provider_name, f"stream exceeded {self.stream_timeout_s}s")

                getter = asyncio.ensure_future(queue.get())
                waiters = {getter, task}
                cancel_waiter = None
                if cancel is not None:
                    cancel_waiter = asyncio.ensure_future(cancel.wait())
                    waiters.add(cancel_waiter)
                done, _ = await asyncio.wait(waiters, timeout=remaining, return_when=asyncio.FIRST_COMPLETED)
                if cancel_waiter is not None and not cancel_waiter.done():
                    cancel_waiter.cancel()

                if getter in done:
                    text = getter.result()
                    parts.append(text)
                    yield StreamEvent(kind="delta", text=text)
                    continue
                getter.cancel()
                if task in done:
                    while not queue.empty():
                        if cancel is not None and cancel.is_set():
                            raise GenerationAborted(provider_name, "stream cancelled by caller")
                        text = queue.get_nowait()
                        parts.append(text)
                        yield StreamEvent(kind="delta", text=text)
                    break
                # Loop head raises abort/timeout.
        except (GenerationAborted, ProviderError) as e:
            logger.warning(f"{feature}: stream ended early: {e}")
            self._record_outcome(feature, "stream_aborted" if isinstance(e, GenerationAborted) else "provider_error")
            raise
        finally:
            if not task.done():
                task.cancel()
            elif not task.cancelled():
                task.exception()

        try:
            result = task.result()
        except Exception as e:
            logger.error(f"{feature}: provider stream failed: {e}", exc_info=True)
            self._record_outcome(feature, "stream_aborted" if isinstance(e, GenerationAborted) else "provider_error")
            raise
        latency_ms = (time.perf_counter() - start) * 1000
        self.latency.record(f"provider:{feature}", latency_ms, {"stream": True})
        if self.metrics is not None:
            self.metrics.record_provider_latency(feature, result.provider, latency_ms)
        logger.info(f"{feature}: provider stream completed via {result.provider} in {latency_ms:.1f}ms")

        raw = result.content or "".join(parts)
        response = self._finalize(prep, raw, result.provider, result.model, result.usage, "stream")
        yield StreamEvent(kind="final", text=response.content, response=response)

    # ─── Audit and telemetry ───────────────────────────────────────────────

    def _audit(self, prep: _Prepared, response: InsightResponse) -> None:
        signal = response.signal_meta
        self.store.append_audit({
            "feature": prep.config.feature,
            "requested_at": prep.requested_at,
            "created_at": response.created_at,
            "provider": response.provider,
            "model": response.model,
            "cached": response.cached,
            "outcome": response.outcome,
            "contract_status": response.contract_status,
            "confidence": response.structured.confidence,
            "severity": signal.severity if signal else None,
            "verdict": signal.verdict if signal else None,
            "reasons": list(signal.policy.reasons) if signal else [],
            "context_hash": response.context_meta.context_hash,
            "snapshot_ts": response.context_meta.snapshot_ts,
            "source_ids": list(response.context_meta.source_ids),
        })

    def _record_outcome(self, feature: str, outcome: str) -> None:
        if self.metrics is not None:
            self.metrics.record_outcome(feature, outcome)

    def _record(self, feature: str, response: InsightResponse) -> None:
        self._record_outcome(feature, response.outcome)
        if self.metrics is None or response.signal_meta is None:
            return
        self.metrics.record_quality(
            feature,
            response.contract_status,
            response.structured.confidence,
            response.signal_meta.verdict,
            response.signal_meta.policy.reasons,
        )


def _build_client(ai_settings: Any) -> GenerationClient:
    """Default client plus one client per forced provider, behind a router when needed."""

    def make(provider: str, model: Optional[str]) -> GenerationClient:
        if provider == "mock":
            return create_generation_client("mock", model=model)
        env_name = (
            ai_settings.api_key_env
            if provider == ai_settings.provider and ai_settings.api_key_env
            else DEFAULT_API_KEY_ENV.get(provider, "")
        )
        api_key = os.getenv(env_name) if env_name else None
        return create_generation_client(provider, api_key=api_key, model=model, timeout=ai_settings.request_timeout_s)

    default = make(ai_settings.provider, ai_settings.model)
    forced = dict(ai_settings.forced_providers)
    if not forced:
        return default
    providers = {default.name: default}
    for provider in sorted(set(forced.values())):
        if provider not in providers:
            providers[provider] = make(provider, None)
    return ProviderRouter(default, providers, forced)


def create_orchestrator(
    settings: Any = None,
    client: Optional[GenerationClient] = None,
    store: Optional[InsightStore] = None,
    metrics: Optional[QualityRecorder] = None,
    clock: Optional[Clock] = None,
) -> InsightOrchestrator:
    """
    Build an orchestrator from application settings.

    Args:
        settings: AppSettings (defaults to ``load_settings()``)
        client: Override the configured generation client
        store: Override the configured state store
        metrics: Override the configured telemetry sink
        clock: Injectable epoch-ms clock
    """
    if settings is None:
        from .settings import load_settings
        settings = load_settings()

    ai_settings = settings.ai
    registry = build_registry({
        feature: override.model_dump(exclude_none=True)
        for feature, override in settings.features.items()
    })
    if store is None:
        store = create_insight_store_from_config(settings.state.model_dump())
    if client is None:
        client = _build_client(ai_settings)
    if metrics is None and settings.metrics.enabled:
        metrics = QualityRecorder(enabled=True, port=settings.metrics.port)
        metrics.start()

    logger.info(
        f"Insight orchestrator ready: provider={client.name} features={len(registry)} "
        f"runtime_enabled={ai_settings.runtime_enabled}"
    )
    return InsightOrchestrator(
        registry=registry,
        store=store,
        client=client,
        metrics=metrics,
        clock=clock,
        stream_timeout_s=ai_settings.stream_timeout_s,
        system_prompt=ai_settings.system_prompt or SYSTEM_PROMPT,
        forced_providers=ai_settings.forced_providers,
        runtime_enabled=ai_settings.runtime_enabled,
        failure_cooldown_s=ai_settings.failure_cooldown_s,
    )
