"""
Generation client abstraction for text providers (OpenAI, Anthropic, mock).

The orchestrator treats every provider as untrusted and slow: clients only
move text across the boundary and wrap SDK failures in ProviderError. Parsing
and validation happen in ai.normalizer.
"""

import asyncio
import json
import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Mapping, Optional

from core.exceptions import GenerationAborted, ProviderError

from .schemas import GenerationRequest, GenerationResult

log = logging.getLogger(__name__)

DeltaCallback = Callable[[str], None]

DEFAULT_MODELS = {
    "openai": "gpt-4o-mini",
    "anthropic": "claude-3-5-haiku-latest",
    "mock": "mock-insight-1",
}

DEFAULT_API_KEY_ENV = {
    "openai": "OPENAI_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
}


def _check_cancel(provider: str, cancel: Optional[asyncio.Event]) -> None:
    if cancel is not None and cancel.is_set():
        raise GenerationAborted(provider, "generation cancelled by caller")


class GenerationClient(ABC):
    """Abstract base class for text-generation providers."""

    name: str = "unknown"
    model: str = "unknown"

    @abstractmethod
    async def generate(self, request: GenerationRequest) -> GenerationResult:
        """
        Run one completion.

        Raises:
            ProviderError: On any SDK, network or API failure
        """

    async def generate_stream(
        self,
        request: GenerationRequest,
        on_delta: DeltaCallback,
        cancel: Optional[asyncio.Event] = None,
    ) -> GenerationResult:
        """
        Stream a completion, calling ``on_delta`` for every text chunk.

        Providers without native streaming deliver the whole text as one delta.

        Raises:
            GenerationAborted: When ``cancel`` is set between chunks
            ProviderError: On provider failure
        """
        _check_cancel(self.name, cancel)
        result = await self.generate(request)
        _check_cancel(self.name, cancel)
        if result.content:
            on_delta(result.content)
        return result


class OpenAIClient(GenerationClient):
    """OpenAI chat completions client (async SDK)."""

    name = "openai"

    def __init__(
        self,
        api_key: str,
        model: str = DEFAULT_MODELS["openai"],
        base_url: Optional[str] = None,
        timeout: float = 20.0,
    ):
        """
        Args:
            api_key: OpenAI API key
            model: Model name
            base_url: Optional custom base URL (proxies, compatible servers)
            timeout: Per-request timeout in seconds
        """
        # Lazy import so the SDK is only loaded when this provider is configured
        from openai import AsyncOpenAI

        self.model = model
        self.client = AsyncOpenAI(api_key=api_key, base_url=base_url, timeout=timeout)

    def _build_kwargs(self, request: GenerationRequest) -> Dict[str, Any]:
        kwargs: Dict[str, Any] = {
            "model": self.model,
            "messages": [{"role": m.role, "content": m.content} for m in request.messages],
            "max_tokens": request.max_tokens,
            "temperature": request.temperature,
        }
        if request.json_mode:
            kwargs["response_format"] = {"type": "json_object"}
        return kwargs

    async def generate(self, request: GenerationRequest) -> GenerationResult:
        start = time.perf_counter()
        try:
            response = await self.client.chat.completions.create(**self._build_kwargs(request))
        except Exception as e:
            elapsed = time.perf_counter() - start
            log.error(f"OpenAI call failed after {elapsed*1000:.1f}ms: {e}")
            raise ProviderError(self.name, str(e), e) from e

        content = response.choices[0].message.content if response.choices else None
        usage = response.usage.model_dump() if getattr(response, "usage", None) else None
        log.debug(f"OpenAI call completed in {(time.perf_counter() - start)*1000:.1f}ms")
        return GenerationResult(content=content or "", provider=self.name, model=self.model, usage=usage)

    async def generate_stream(
        self,
        request: GenerationRequest,
        on_delta: DeltaCallback,
        cancel: Optional[asyncio.Event] = None,
    ) -> GenerationResult:
        parts: List[str] = []
        try:
            stream = await self.client.chat.completions.create(**self._build_kwargs(request), stream=True)
            async for chunk in stream:
                _check_cancel(self.name, cancel)
                delta = chunk.choices[0].delta.content if chunk.choices else None
                if delta:
                    parts.append(delta)
                    on_delta(delta)
        except ProviderError:
            raise
        except Exception as e:
            log.error(f"OpenAI stream failed: {e}")
            raise ProviderError(self.name, str(e), e) from e
        return GenerationResult(content="".join(parts), provider=self.name, model=self.model)


class AnthropicClient(GenerationClient):
    """Anthropic messages client (async SDK)."""

    name = "anthropic"

    def __init__(self, api_key: str, model: str = DEFAULT_MODELS["anthropic"], timeout: float = 20.0):
        from anthropic import AsyncAnthropic

        self.model = model
        self.client = AsyncAnthropic(api_key=api_key, timeout=timeout)

    def _build_kwargs(self, request: GenerationRequest) -> Dict[str, Any]:
        system = "\n\n".join(m.content for m in request.messages if m.role == "system")
        return {
            "model": self.model,
            "max_tokens": request.max_tokens,
            "temperature": request.temperature,
            "system": system,
            "messages": [
                {"role": m.role, "content": m.content}
                for m in request.messages
                if m.role != "system"
            ],
        }

    @staticmethod
    def _usage(message: Any) -> Optional[Dict[str, Any]]:
        usage = getattr(message, "usage", None)
        if usage is None:
            return None
        return {"input_tokens": usage.input_tokens, "output_tokens": usage.output_tokens}

    async def generate(self, request: GenerationRequest) -> GenerationResult:
        start = time.perf_counter()
        try:
            message = await self.client.messages.create(**self._build_kwargs(request))
        except Exception as e:
            elapsed = time.perf_counter() - start
            log.error(f"Anthropic call failed after {elapsed*1000:.1f}ms: {e}")
            raise ProviderError(self.name, str(e), e) from e

        content = "".join(
            block.text for block in message.content if getattr(block, "type", None) == "text"
        )
        log.debug(f"Anthropic call completed in {(time.perf_counter() - start)*1000:.1f}ms")
        return GenerationResult(content=content, provider=self.name, model=self.model, usage=self._usage(message))

    async def generate_stream(
        self,
        request: GenerationRequest,
        on_delta: DeltaCallback,
        cancel: Optional[asyncio.Event] = None,
    ) -> GenerationResult:
        parts: List[str] = []
        try:
            async with self.client.messages.stream(**self._build_kwargs(request)) as stream:
                async for text in stream.text_stream:
                    _check_cancel(self.name, cancel)
                    if text:
                        parts.append(text)
                        on_delta(text)
                final = await stream.get_final_message()
        except ProviderError:
            raise
        except Exception as e:
            log.error(f"Anthropic stream failed: {e}")
            raise ProviderError(self.name, str(e), e) from e
        return GenerationResult(
            content="".join(parts), provider=self.name, model=self.model, usage=self._usage(final)
        )


DEFAULT_MOCK_RESPONSE = json.dumps({
    "risk": "Portfolio exposure looks balanced in this offline reading.",
    "action": "Keep monitoring positions and refresh the dashboard later.",
    "confidence": 0.7,
    "evidence": ["Offline mock provider response"],
})


class MockClient(GenerationClient):
    """
    Scripted client for tests and offline runs.

    Responses are served in order; once exhausted every call returns
    ``default_response``. Exceptions in ``responses`` are raised instead of
    returned.
    """

    name = "mock"

    def __init__(
        self,
        responses: Optional[List[Any]] = None,
        default_response: str = DEFAULT_MOCK_RESPONSE,
        chunk_size: int = 24,
        delay_s: float = 0.0,
        chunk_delay_s: float = 0.0,
        model: str = DEFAULT_MODELS["mock"],
    ):
        self.responses = list(responses or [])
        self.default_response = default_response
        self.chunk_size = max(1, chunk_size)
        self.delay_s = delay_s
        self.chunk_delay_s = chunk_delay_s
        self.model = model
        self.requests: List[GenerationRequest] = []

    @property
    def call_count(self) -> int:
        return len(self.requests)

    def _next(self) -> str:
        item = self.responses.pop(0) if self.responses else self.default_response
        if isinstance(item, BaseException):
            raise item
        return str(item)

    async def generate(self, request: GenerationRequest) -> GenerationResult:
        self.requests.append(request)
        if self.delay_s:
            await asyncio.sleep(self.delay_s)
        content = self._next()
        return GenerationResult(
            content=content,
            provider=self.name,
            model=self.model,
            usage={"completion_chars": len(content)},
        )

    async def generate_stream(
        self,
        request: GenerationRequest,
        on_delta: DeltaCallback,
        cancel: Optional[asyncio.Event] = None,
    ) -> GenerationResult:
        self.requests.append(request)
        if self.delay_s:
            await asyncio.sleep(self.delay_s)
        content = self._next()
        for start in range(0, len(content), self.chunk_size):
            _check_cancel(self.name, cancel)
            if self.chunk_delay_s:
                await asyncio.sleep(self.chunk_delay_s)
            on_delta(content[start:start + self.chunk_size])
        return GenerationResult(content=content, provider=self.name, model=self.model)


class ProviderRouter(GenerationClient):
    """
    Dispatch to a forced provider for configured features, else the default.

    A request's explicit ``provider`` field wins over the feature mapping.
    """

    name = "router"

    def __init__(
        self,
        default: GenerationClient,
        providers: Optional[Mapping[str, GenerationClient]] = None,
        forced: Optional[Mapping[str, str]] = None,
    ):
        self.default = default
        self.providers: Dict[str, GenerationClient] = dict(providers or {})
        self.providers.setdefault(default.name, default)
        self.forced: Dict[str, str] = dict(forced or {})
        self.model = default.model

    def forced_provider(self, feature: str) -> Optional[str]:
        return self.forced.get(feature)

    def resolve(self, request: GenerationRequest) -> GenerationClient:
        target = request.provider or self.forced.get(request.feature)
        if not target:
            return self.default
        client = self.providers.get(target)
        if client is None:
            log.warning(f"Forced provider '{target}' not configured for {request.feature}, using {self.default.name}")
            return self.default
        return client

    async def generate(self, request: GenerationRequest) -> GenerationResult:
        return await self.resolve(request).generate(request)

    async def generate_stream(
        self,
        request: GenerationRequest,
        on_delta: DeltaCallback,
        cancel: Optional[asyncio.Event] = None,
    ) -> GenerationResult:
        return await self.resolve(request).generate_stream(request, on_delta, cancel)


def create_generation_client(
    provider: str,
    api_key: Optional[str] = None,
    model: Optional[str] = None,
    **kwargs
) -> GenerationClient:
    """
    Factory function to create a generation client.

    Args:
        provider: "openai", "anthropic", or "mock"
        api_key: API key for the provider
        model: Model name (provider-specific)
        **kwargs: Additional provider-specific args

    Raises:
        ValueError: If provider is unknown or a required key is missing
    """
    provider = provider.lower()

    if provider == "openai":
        if not api_key:
            raise ValueError("OpenAI requires api_key")
        return OpenAIClient(api_key=api_key, model=model or DEFAULT_MODELS["openai"], **kwargs)

    elif provider == "anthropic":
        if not api_key:
            raise ValueError("Anthropic requires api_key")
        return AnthropicClient(api_key=api_key, model=model or DEFAULT_MODELS["anthropic"], **kwargs)

    elif provider == "mock":
        return MockClient(model=model or DEFAULT_MODELS["mock"], **kwargs)

    else:
        raise ValueError(f"Unknown provider: {provider}. Use 'openai', 'anthropic', or 'mock'")
