"""
AI Insight schemas and data structures.

Defines the contract between dashboard callers, the text-generation provider
and the governance layer. Everything that crosses the cache boundary can be
converted to and from plain dicts so it survives a JSON-backed store.
"""

from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, List, Literal, Optional

Severity = Literal["info", "warning", "critical"]
Verdict = Literal["allow", "warn", "block"]
ContractStatus = Literal["validated", "repaired", "fallback"]
Urgency = Literal["low", "normal", "high"]
PolicyReason = Literal[
    "rollout_disabled",
    "low_confidence",
    "stale_context",
    "missing_evidence",
    "incomplete_coverage",
]

SEVERITY_RANK: Dict[str, int] = {"info": 0, "warning": 1, "critical": 2}

SCHEMA_VERSION = 1
CONTEXT_VERSION = 1
MAX_EVIDENCE_ITEMS = 4

Context = Dict[str, Any]


def max_severity(a: Severity, b: Severity) -> Severity:
    """Return the more severe of two severities (ties keep ``a``)."""
    return a if SEVERITY_RANK[a] >= SEVERITY_RANK[b] else b


def severity_to_verdict(severity: Severity) -> Verdict:
    return "allow" if severity == "info" else "warn"


@dataclass(frozen=True)
class PolicyThresholds:
    """Guardrail thresholds applied by the policy engine."""
    min_confidence: float = 0.56
    max_context_age_ms: int = 12 * 60 * 1000
    min_evidence_items: int = 1
    min_data_coverage: float = 0.5

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class RolloutDefaults:
    enabled_by_default: bool = True
    percent: float = 100.0  # 0..100


@dataclass(frozen=True)
class FeatureConfig:
    """Static per-feature configuration. Built once, never mutated."""
    feature: str
    title: str
    ttl_ms: int
    max_per_day: int
    max_tokens: int
    temperature: float
    prompt: Callable[[Context], str]
    fallback: Callable[[Context], str]
    rollout: RolloutDefaults = field(default_factory=RolloutDefaults)
    policy: PolicyThresholds = field(default_factory=PolicyThresholds)
    badge: str = "AI-Pulse"
    variant: Literal["neutral", "risk", "action"] = "neutral"


@dataclass
class InsightContract:
    """Canonical structured advisory: one risk, one action, evidence, expiry."""
    risk: str
    action: str
    confidence: float        # 0..1
    evidence: List[str]      # at most MAX_EVIDENCE_ITEMS
    expires_at: int          # epoch ms
    schema_version: int = SCHEMA_VERSION

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "InsightContract":
        return cls(
            risk=str(data.get("risk", "")),
            action=str(data.get("action", "")),
            confidence=float(data.get("confidence", 0.0)),
            evidence=[str(e) for e in data.get("evidence", [])],
            expires_at=int(data.get("expires_at", 0)),
            schema_version=int(data.get("schema_version", SCHEMA_VERSION)),
        )

    def render(self) -> str:
        """Plain-text rendering used as response content."""
        return f"Risk: {self.risk}\nAction: {self.action}"


@dataclass
class ContextMeta:
    snapshot_ts: int
    context_hash: str
    source_ids: List[str]
    context_version: int = CONTEXT_VERSION

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ContextMeta":
        return cls(
            snapshot_ts=int(data.get("snapshot_ts", 0)),
            context_hash=str(data.get("context_hash", "")),
            source_ids=[str(s) for s in data.get("source_ids", [])],
            context_version=int(data.get("context_version", CONTEXT_VERSION)),
        )


@dataclass
class PolicyDecision:
    verdict: Verdict
    reasons: List[PolicyReason]
    threshold_snapshot: PolicyThresholds

    def to_dict(self) -> Dict[str, Any]:
        return {
            "verdict": self.verdict,
            "reasons": list(self.reasons),
            "threshold_snapshot": self.threshold_snapshot.to_dict(),
        }


@dataclass
class SignalMeta:
    """Policy outcome attached to a response."""
    severity: Severity
    verdict: Verdict
    policy: PolicyDecision

    def to_dict(self) -> Dict[str, Any]:
        return {
            "severity": self.severity,
            "verdict": self.verdict,
            "policy": self.policy.to_dict(),
        }


@dataclass
class InsightRequest:
    feature: str
    context: Context = field(default_factory=dict)
    max_tokens: Optional[int] = None
    temperature: Optional[float] = None
    urgency: Urgency = "normal"


@dataclass
class InsightResponse:
    """Enriched response returned to callers and stored in the cache."""
    content: str
    provider: str
    model: str
    created_at: int
    structured: InsightContract
    contract_status: ContractStatus
    context_meta: ContextMeta
    signal_meta: Optional[SignalMeta] = None
    usage: Optional[Any] = None
    cached: bool = False
    outcome: str = "provider_call"

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for the cache. Signal meta is never persisted."""
        return {
            "content": self.content,
            "provider": self.provider,
            "model": self.model,
            "created_at": self.created_at,
            "structured": self.structured.to_dict(),
            "contract_status": self.contract_status,
            "context_meta": self.context_meta.to_dict(),
            "usage": self.usage,
            "outcome": self.outcome,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "InsightResponse":
        return cls(
            content=str(data.get("content", "")),
            provider=str(data.get("provider", "unknown")),
            model=str(data.get("model", "unknown")),
            created_at=int(data.get("created_at", 0)),
            structured=InsightContract.from_dict(data.get("structured") or {}),
            contract_status=data.get("contract_status", "fallback"),
            context_meta=ContextMeta.from_dict(data.get("context_meta") or {}),
            usage=data.get("usage"),
            outcome=str(data.get("outcome", "provider_call")),
        )

    def describe(self) -> Dict[str, Any]:
        """Full view including policy outcome, for CLIs and logs."""
        out = self.to_dict()
        out["cached"] = self.cached
        out["signal_meta"] = self.signal_meta.to_dict() if self.signal_meta else None
        return out


# ─── Provider boundary ─────────────────────────────────────────────────────

@dataclass
class ChatMessage:
    role: Literal["system", "user", "assistant"]
    content: str


@dataclass
class GenerationRequest:
    """Request passed to the text-generation provider."""
    feature: str
    messages: List[ChatMessage]
    max_tokens: int
    temperature: float
    json_mode: bool = True
    provider: Optional[str] = None  # forced provider override


@dataclass
class GenerationResult:
    content: str
    provider: str
    model: str
    usage: Optional[Any] = None


@dataclass
class StreamEvent:
    """One event of a streamed insight: text deltas, then one final event."""
    kind: Literal["delta", "final"]
    text: str
    response: Optional[InsightResponse] = None
