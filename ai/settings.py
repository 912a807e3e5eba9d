"""
Application settings for the insight layer.

config/app.yaml is loaded with yaml.safe_load and validated with pydantic.
A missing file means defaults; an invalid file raises ConfigError listing
every validation problem. API keys never live in YAML: ``ai.api_key_env``
names the environment variable to read.
"""

from __future__ import annotations

import logging
import os
from dataclasses import fields
from pathlib import Path
from typing import Dict, List, Literal, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from core.exceptions import ConfigError
from core.risk_engine import RiskThresholds

from .registry import ALL_FEATURES

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path("config/app.yaml")
CONFIG_ENV_VAR = "INSIGHT_CONFIG"

ProviderName = Literal["openai", "anthropic", "mock"]


class PolicyOverride(BaseModel):
    model_config = ConfigDict(extra="forbid")

    min_confidence: Optional[float] = Field(default=None, ge=0, le=1)
    max_context_age_ms: Optional[int] = Field(default=None, ge=1000)
    min_evidence_items: Optional[int] = Field(default=None, ge=0, le=4)
    min_data_coverage: Optional[float] = Field(default=None, ge=0, le=1)


class RolloutOverride(BaseModel):
    model_config = ConfigDict(extra="forbid")

    enabled_by_default: Optional[bool] = None
    percent: Optional[float] = Field(default=None, ge=0, le=100)


class FeatureOverride(BaseModel):
    model_config = ConfigDict(extra="forbid")

    ttl_ms: Optional[int] = Field(default=None, gt=0)
    max_per_day: Optional[int] = Field(default=None, ge=0)
    max_tokens: Optional[int] = Field(default=None, gt=0)
    temperature: Optional[float] = Field(default=None, ge=0, le=2)
    rollout: Optional[RolloutOverride] = None
    policy: Optional[PolicyOverride] = None


class AISettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    runtime_enabled: bool = True
    provider: ProviderName = "mock"
    model: Optional[str] = None
    api_key_env: Optional[str] = None
    request_timeout_s: float = Field(default=20.0, gt=0)
    stream_timeout_s: float = Field(default=22.0, gt=0)
    failure_cooldown_s: float = Field(default=15.0, ge=0)
    forced_providers: Dict[str, ProviderName] = Field(default_factory=dict)
    system_prompt: Optional[str] = None


class StateSettings(BaseModel):
    model_config = ConfigDict(extra="allow")

    store: Literal["memory", "json"] = "memory"
    path: str = "data/.insight_state.json"


class MetricsSettings(BaseModel):
    model_config = ConfigDict(extra="allow")

    enabled: bool = False
    port: int = Field(default=9108, ge=0, le=65535)


class LoggingSettings(BaseModel):
    model_config = ConfigDict(extra="allow")

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"


_RISK_FIELDS = {f.name for f in fields(RiskThresholds)}


class AppSettings(BaseModel):
    model_config = ConfigDict(extra="allow")

    ai: AISettings = Field(default_factory=AISettings)
    features: Dict[str, FeatureOverride] = Field(default_factory=dict)
    risk_engine: Dict[str, Union[int, float]] = Field(default_factory=dict)
    state: StateSettings = Field(default_factory=StateSettings)
    metrics: MetricsSettings = Field(default_factory=MetricsSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    @field_validator("features")
    @classmethod
    def _known_features(cls, value: Dict[str, FeatureOverride]) -> Dict[str, FeatureOverride]:
        unknown = sorted(set(value) - set(ALL_FEATURES))
        if unknown:
            raise ValueError(f"undeclared feature(s): {', '.join(unknown)}")
        return value

    @field_validator("risk_engine")
    @classmethod
    def _known_thresholds(cls, value: Dict[str, Union[int, float]]) -> Dict[str, Union[int, float]]:
        unknown = sorted(set(value) - _RISK_FIELDS)
        if unknown:
            raise ValueError(f"unknown risk threshold(s): {', '.join(unknown)}")
        return value

    @model_validator(mode="after")
    def _forced_features_declared(self) -> "AppSettings":
        unknown = sorted(set(self.ai.forced_providers) - set(ALL_FEATURES))
        if unknown:
            raise ValueError(f"ai.forced_providers references undeclared feature(s): {', '.join(unknown)}")
        return self

    def risk_thresholds(self) -> RiskThresholds:
        return RiskThresholds.from_dict(self.risk_engine)


def load_yaml(path: Path) -> dict:
    with path.open("r", encoding="utf-8") as fh:
        data = yaml.safe_load(fh) or {}
    if not isinstance(data, dict):
        raise TypeError(f"Expected mapping at root of {path}, got {type(data).__name__}")
    return data


def format_validation_error(exc: ValidationError) -> List[str]:
    return [f"  - {'.'.join(str(p) for p in err['loc']) or '<root>'}: {err['msg']}" for err in exc.errors()]


def resolve_config_path(path: Optional[Union[str, Path]] = None) -> Path:
    if path is not None:
        return Path(path)
    return Path(os.getenv(CONFIG_ENV_VAR, str(DEFAULT_CONFIG_PATH)))


def load_settings(path: Optional[Union[str, Path]] = None) -> AppSettings:
    """
    Load and validate application settings.

    Args:
        path: YAML file (default: $INSIGHT_CONFIG or config/app.yaml)

    Returns:
        AppSettings (defaults when the file does not exist)

    Raises:
        ConfigError: If the file cannot be parsed or fails validation
    """
    config_path = resolve_config_path(path)
    if not config_path.exists():
        logger.debug(f"No config file at {config_path}, using defaults")
        return AppSettings()

    try:
        data = load_yaml(config_path)
    except (OSError, TypeError, yaml.YAMLError) as e:
        raise ConfigError(f"{config_path}: {e}") from e

    try:
        settings = AppSettings.model_validate(data)
    except ValidationError as e:
        details = "\n".join(format_validation_error(e))
        raise ConfigError(f"{config_path} invalid:\n{details}") from e

    logger.debug(f"Loaded settings from {config_path}")
    return settings


def configure_logging(settings: AppSettings, level: Optional[str] = None) -> None:
    """Root logging setup for CLI entry points."""
    logging.basicConfig(
        level=getattr(logging, (level or settings.logging.level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
