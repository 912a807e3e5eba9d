"""Shared exception types for the insight governance layer."""

from typing import Optional


class InsightError(RuntimeError):
    """Base class for errors raised by the insight layer."""


class UnknownFeatureError(InsightError, KeyError):
    """Raised when a feature id is not declared in the registry."""

    def __init__(self, feature: str):
        super().__init__(feature)
        self.feature = feature

    def __str__(self) -> str:
        return f"Unknown AI feature: {self.feature}"


class ConfigError(InsightError):
    """Raised when configuration files cannot be loaded or validated."""


class ProviderError(InsightError):
    """Raised when the text-generation provider fails."""

    def __init__(self, provider: str, message: str, original: Optional[Exception] = None):
        super().__init__(f"{provider}: {message}")
        self.provider = provider
        self.original = original


class GenerationAborted(ProviderError):
    """Raised when a streaming generation was cancelled by the caller."""


class GenerationTimeout(GenerationAborted):
    """Raised when a streaming generation exceeded its deadline."""
