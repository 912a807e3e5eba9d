"""
Insight session - the calling layer a dashboard widget talks to.

Wraps an orchestrator for one feature and decides whether a refresh should
reach the orchestrator at all: disabled features are skipped, a context that
already produced a response is not re-requested, and a context whose last
attempt failed waits out a cooldown before it is retried. Provider failures
stop here and become session state; caller-initiated aborts are not treated
as failures.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, replace
from typing import Callable, Optional

from core.exceptions import GenerationAborted, GenerationTimeout, ProviderError

from .context_meta import fingerprint_context
from .orchestrator import DEFAULT_FAILURE_COOLDOWN_S, InsightOrchestrator
from .schemas import Context, InsightRequest, InsightResponse, Urgency

logger = logging.getLogger(__name__)

FAILED_REQUEST_COOLDOWN_S = DEFAULT_FAILURE_COOLDOWN_S


@dataclass
class SessionState:
    """What the widget renders after a refresh."""
    data: Optional[InsightResponse] = None
    error: Optional[str] = None
    partial: str = ""                 # text streamed so far (replaced by data.content on final)
    skipped: Optional[str] = None     # disabled | in_flight | unchanged | cooldown
    aborted: bool = False


class InsightSession:
    """
    Per-feature calling layer with failure cooldown.

    Usage:
        session = InsightSession(orchestrator, "overview_pulse")
        state = await session.refresh(context)
    """

    def __init__(
        self,
        orchestrator: InsightOrchestrator,
        feature: str,
        cooldown_s: Optional[float] = None,
        stream: bool = False,
        enabled: bool = True,
        on_delta: Optional[Callable[[str], None]] = None,
        clock: Optional[Callable[[], float]] = None,
        urgency: Urgency = "normal",
    ):
        orchestrator.registry.lookup(feature)  # fail fast on unknown features
        self.orchestrator = orchestrator
        self.feature = feature
        self.cooldown_s = orchestrator.failure_cooldown_s if cooldown_s is None else cooldown_s
        self.stream = stream
        self.enabled = enabled
        self.on_delta = on_delta
        self.clock = clock or time.monotonic
        self.urgency = urgency
        self.state = SessionState()

        self._busy = False
        self._last_key: Optional[str] = None
        self._last_failure: Optional[tuple] = None  # (key, at)
        self._cancel: Optional[asyncio.Event] = None

    @property
    def in_flight(self) -> bool:
        return self._busy

    def cooldown_remaining(self, context: Context) -> float:
        """Seconds until ``context`` may be retried after a failure (0 when allowed)."""
        if self._last_failure is None:
            return 0.0
        key, at = self._last_failure
        if key != fingerprint_context(self.feature, context):
            return 0.0
        return max(0.0, self.cooldown_s - (self.clock() - at))

    def cancel(self) -> None:
        """Abort a streaming refresh at the next delta boundary."""
        if self._cancel is not None:
            self._cancel.set()

    def _skip(self, reason: str) -> SessionState:
        # Copy so a skip never marks the state of a request still running.
        return replace(self.state, skipped=reason)

    async def refresh(self, context: Context) -> SessionState:
        """
        Request an insight for ``context`` unless a guard says not to.

        Failures never raise: they set ``error`` and start the retry cooldown
        for this context. A cancelled stream sets ``aborted`` only.
        """
        key = fingerprint_context(self.feature, context)
        if not self.enabled or not self.orchestrator.is_feature_enabled(self.feature):
            return self._skip("disabled")
        if self._busy:
            return self._skip("in_flight")
        if self._last_key == key:
            return self._skip("unchanged")
        if self.cooldown_remaining(context) > 0:
            logger.debug(f"{self.feature}: retry suppressed, context {key} still cooling down")
            return self._skip("cooldown")

        self._busy = True
        self._cancel = asyncio.Event()
        self.state = SessionState(data=self.state.data)
        request = InsightRequest(feature=self.feature, context=context, urgency=self.urgency)
        try:
            response = await self._issue(request)
        except GenerationAborted as e:
            if isinstance(e, GenerationTimeout):
                self._last_failure = (key, self.clock())
                self.state.error = str(e)
            self.state.aborted = True
            logger.info(f"{self.feature}: insight request aborted: {e}")
        except ProviderError as e:
            self._last_failure = (key, self.clock())
            self.state.error = str(e)
            logger.warning(f"{self.feature}: insight request failed, cooling down {self.cooldown_s:.0f}s: {e}")
        except Exception as e:
            self._last_failure = (key, self.clock())
            self.state.error = str(e) or type(e).__name__
            logger.exception(f"{self.feature}: insight request raised unexpectedly, cooling down {self.cooldown_s:.0f}s")
        else:
            self._last_failure = None
            self._last_key = key
            self.state.data = response
        finally:
            self._busy = False
            self._cancel = None
        return self.state

    async def _issue(self, request: InsightRequest) -> InsightResponse:
        if not self.stream:
            return await self.orchestrator.run(request)

        final: Optional[InsightResponse] = None
        async for event in self.orchestrator.stream(request, cancel=self._cancel):
            if event.kind == "delta":
                self.state.partial += event.text
                if self.on_delta is not None:
                    self.on_delta(event.text)
            else:
                final = event.response
                self.state.partial = event.text
        if final is None:
            raise ProviderError(self.orchestrator.client.name, "stream ended without a final event")
        return final
