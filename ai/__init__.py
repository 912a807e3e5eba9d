"""
AI Insight Module

Turns untrusted, free-form provider text into validated advisory contracts
(one risk, one action, evidence, expiry) and gates them through caching,
daily budgets, staged rollout and deterministic guardrail policy.

Core principle: the provider can only suggest. The policy engine and the
deterministic risk engine decide what the dashboard is allowed to show.
"""

from .orchestrator import InsightOrchestrator, create_orchestrator  # noqa: F401
from .registry import FEATURE_REGISTRY, build_registry, lookup  # noqa: F401
from .schemas import InsightContract, InsightRequest, InsightResponse, StreamEvent  # noqa: F401
from .session import InsightSession  # noqa: F401

__all__ = [
    "InsightOrchestrator",
    "create_orchestrator",
    "FEATURE_REGISTRY",
    "build_registry",
    "lookup",
    "InsightContract",
    "InsightRequest",
    "InsightResponse",
    "StreamEvent",
    "InsightSession",
]
