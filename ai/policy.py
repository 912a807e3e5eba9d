"""
Policy Engine - deterministic guardrails over an insight contract.

Pure functions only. The verdict is recomputed on every read (including cache
hits) so that ageing context flips an allow into a block without touching the
cached contract.
"""

import logging
import re
from typing import Any, Iterable, List, Optional

from .context_meta import get_path, now_ms, read_coverage
from .schemas import (
    SEVERITY_RANK,
    Context,
    ContextMeta,
    FeatureConfig,
    InsightContract,
    PolicyDecision,
    PolicyReason,
    Severity,
    SignalMeta,
    Verdict,
    max_severity,
)

logger = logging.getLogger(__name__)

# Policy result shares the response's signal-meta shape.
PolicyResult = SignalMeta

# Best-effort floor only: keyword hits can raise severity, never lower it.
CRITICAL_KEYWORDS = re.compile(r"\b(liquidation|insolvency|exploit|critical|halt)\b", re.IGNORECASE)
WARNING_KEYWORDS = re.compile(r"\b(risk|drawdown|leverage|funding|concentration|stop)\b", re.IGNORECASE)

REASON_LABELS = {
    "rollout_disabled": "Feature rollout currently disabled",
    "low_confidence": "Confidence below guardrail threshold",
    "stale_context": "Snapshot context is stale",
    "missing_evidence": "Evidence requirements not satisfied",
    "incomplete_coverage": "Data coverage is incomplete",
}


def format_policy_reason(reason: str) -> str:
    return REASON_LABELS.get(reason, "Policy blocked")


def _as_severity(value: Any) -> Optional[Severity]:
    if isinstance(value, str) and value.lower() in SEVERITY_RANK:
        return value.lower()  # type: ignore[return-value]
    return None


def _max_signal_severity(signals: Any) -> Optional[Severity]:
    if not isinstance(signals, list):
        return None
    found: Optional[Severity] = None
    for signal in signals:
        severity = _as_severity(signal.get("severity")) if isinstance(signal, dict) else None
        if severity is not None:
            found = severity if found is None else max_severity(found, severity)
    return found


def severity_from_context(context: Context) -> Optional[Severity]:
    """Severity the caller already computed (risk engine output), if any."""
    for path in (("riskSeverity",), ("riskEngine", "severity")):
        severity = _as_severity(get_path(context, path))
        if severity is not None:
            return severity
    for path in (("riskSignals",), ("riskEngine", "signals")):
        severity = _max_signal_severity(get_path(context, path))
        if severity is not None:
            return severity
    return None


def severity_from_text(*texts: str) -> Severity:
    blob = " ".join(t for t in texts if t)
    if CRITICAL_KEYWORDS.search(blob):
        return "critical"
    if WARNING_KEYWORDS.search(blob):
        return "warning"
    return "info"


def infer_severity(contract: InsightContract, context: Context) -> Severity:
    """Max of context-declared severity and keyword-inferred severity."""
    inferred = severity_from_text(contract.risk, contract.action)
    declared = severity_from_context(context)
    return inferred if declared is None else max_severity(declared, inferred)


def _dedupe(reasons: Iterable[PolicyReason]) -> List[PolicyReason]:
    out: List[PolicyReason] = []
    for reason in reasons:
        if reason not in out:
            out.append(reason)
    return out


def evaluate_policy(
    config: FeatureConfig,
    contract: InsightContract,
    context: Context,
    context_meta: ContextMeta,
    rollout_allowed: bool,
    now: Optional[int] = None,
) -> PolicyResult:
    """
    Evaluate guardrails for a contract.

    Every failing check contributes a reason; any reason blocks. Without
    reasons the verdict follows severity (info -> allow, otherwise warn).
    """
    current = now if now is not None else now_ms()
    thresholds = config.policy
    severity = infer_severity(contract, context)
    age_ms = max(0, current - context_meta.snapshot_ts)
    coverage = read_coverage(context)
    if coverage is None:
        coverage = 1.0

    reasons: List[PolicyReason] = []
    if not rollout_allowed:
        reasons.append("rollout_disabled")
    if contract.confidence < thresholds.min_confidence:
        reasons.append("low_confidence")
    if age_ms > thresholds.max_context_age_ms:
        reasons.append("stale_context")
    if coverage < thresholds.min_data_coverage:
        reasons.append("incomplete_coverage")
    if severity != "info" and len(contract.evidence) < thresholds.min_evidence_items:
        reasons.append("missing_evidence")
    reasons = _dedupe(reasons)

    verdict: Verdict
    if reasons:
        verdict = "block"
    elif severity == "info":
        verdict = "allow"
    else:
        verdict = "warn"

    if reasons:
        logger.debug(f"{config.feature}: policy block ({', '.join(reasons)})")

    return PolicyResult(
        severity=severity,
        verdict=verdict,
        policy=PolicyDecision(
            verdict=verdict,
            reasons=reasons,
            threshold_snapshot=thresholds,
        ),
    )
