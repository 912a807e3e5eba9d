"""
Contract Normalizer - turns raw provider text into an InsightContract.

Provider output is untrusted. Normalization walks a three-tier ladder and the
first tier that succeeds wins:

1. validated - a JSON object (bare, fenced, or embedded in prose) with string
   ``risk``/``action`` fields.
2. repaired  - ``risk:``/``action:``/``evidence:`` lines, or the first two
   sentences of the text.
3. fallback  - the feature's static fallback template, repaired the same way,
   or canonical generic text.

The ladder never raises: every input yields a contract with non-empty
risk/action, confidence in [0, 1], at most 4 evidence items and an expiry that
is not in the past.
"""

import json
import logging
import math
import re
from typing import Any, Dict, List, Optional, Tuple

from .context_meta import collect_source_ids, coerce_epoch_ms, get_path, now_ms, read_coverage
from .schemas import (
    MAX_EVIDENCE_ITEMS,
    SEVERITY_RANK,
    Context,
    ContractStatus,
    FeatureConfig,
    InsightContract,
)

logger = logging.getLogger(__name__)

CANONICAL_RISK = "Risk is unclear."
CANONICAL_ACTION = "Review exposure and risk controls."

MAX_TEXT_LENGTH = 280
MAX_EVIDENCE_LENGTH = 160

GENERIC_EVIDENCE = (
    "Derived from the latest dashboard snapshot",
    "Deterministic guardrails applied to this signal",
    "Context fingerprint recorded for audit",
    "No additional supporting data supplied",
)

_FENCE_RE = re.compile(r"```[A-Za-z0-9_-]*\s*(.*?)```", re.DOTALL)
_LABEL_RE = re.compile(
    r"""^[\s>*\-•#`"'{,]*(risk|action|evidence)\s*\**\s*["']?\s*[:=]\s*(.*)$""",
    re.IGNORECASE,
)
_QUOTED_RE = re.compile(r'^\s*"((?:[^"\\]|\\.)*)"?')
_BULLET_RE = re.compile(r"^\s*(?:[-*•]|\d+[.)])\s+(.*)$")
_SENTENCE_SPLIT_RE = re.compile(r"(?<=[.!?])\s+")
_WORD_RE = re.compile(r"[A-Za-z]{2,}")


# ─── Text helpers ──────────────────────────────────────────────────────────

def _clean_text(value: Any, limit: int = MAX_TEXT_LENGTH) -> str:
    if not isinstance(value, str):
        return ""
    text = " ".join(value.replace("**", "").split())
    text = text.strip(" \t\"'`,{}")
    return text[:limit].rstrip()


def _clean_evidence(raw: Any) -> List[str]:
    if isinstance(raw, str):
        raw = [raw]
    if not isinstance(raw, (list, tuple)):
        return []
    items: List[str] = []
    for entry in raw:
        if isinstance(entry, (int, float)) and not isinstance(entry, bool):
            entry = str(entry)
        text = _clean_text(entry, MAX_EVIDENCE_LENGTH)
        if text and text not in items:
            items.append(text)
        if len(items) >= MAX_EVIDENCE_ITEMS:
            break
    return items


def _clamp(value: float, lo: float, hi: float) -> float:
    return min(hi, max(lo, value))


def _coerce_confidence(raw: Any, default: float) -> float:
    if isinstance(raw, bool):
        return default
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return default
    if not math.isfinite(value):
        return default
    return _clamp(value, 0.0, 1.0)


def _coerce_expires_at(raw: Any, config: FeatureConfig, now: int) -> int:
    value = coerce_epoch_ms(raw)
    if value is None or value < now:
        return now + config.ttl_ms
    return value


# ─── Evidence synthesis ────────────────────────────────────────────────────

def _first_list(context: Any, *paths: Tuple[str, ...]) -> List[Any]:
    for path in paths:
        value = get_path(context, path)
        if isinstance(value, list) and value:
            return value
    return []


def _signal_description(signal: Any) -> Optional[str]:
    if not isinstance(signal, dict):
        return None
    evidence = signal.get("evidence")
    if isinstance(evidence, list):
        for item in evidence:
            text = _clean_text(item, MAX_EVIDENCE_LENGTH)
            if text:
                return text
    for key in ("description", "summary", "message"):
        text = _clean_text(signal.get(key), MAX_EVIDENCE_LENGTH)
        if text:
            return text
    rule = signal.get("rule") or signal.get("id")
    severity = signal.get("severity")
    if isinstance(rule, str) and isinstance(severity, str):
        return f"{rule} signal is {severity}"
    return None


def synthesize_evidence(config: FeatureConfig, context: Context) -> List[str]:
    """
    Build evidence from context facts when the provider supplied none.

    Priority: top holding allocation, up to two risk-signal descriptions, data
    coverage, up to two provenance tokens, then generic filler until
    ``max(1, min(4, min_evidence_items))`` items exist.
    """
    target = max(1, min(MAX_EVIDENCE_ITEMS, config.policy.min_evidence_items))
    items: List[str] = []

    def add(text: Optional[str]) -> None:
        if text and text not in items and len(items) < target:
            items.append(text[:MAX_EVIDENCE_LENGTH])

    holdings = _first_list(context, ("topHoldings",), ("top_holdings",), ("holdings",))
    top = holdings[0] if holdings else None
    if isinstance(top, dict) and top.get("symbol"):
        symbol = str(top["symbol"]).strip()[:24]
        alloc = None
        for key in ("allocPct", "alloc_pct", "allocationPct", "weightPct", "allocation"):
            alloc = _finite_number(top.get(key))
            if alloc is not None:
                break
        if alloc is not None:
            add(f"Top holding {symbol} is {alloc:.1f}% of portfolio")
        else:
            add(f"Top holding is {symbol}")

    signals = _first_list(
        context,
        ("riskEngine", "signals"),
        ("risk_engine", "signals"),
        ("riskSignals",),
        ("risk_signals",),
    )
    ranked = sorted(
        (s for s in signals if isinstance(s, dict)),
        key=lambda s: SEVERITY_RANK.get(str(s.get("severity")), -1),
        reverse=True,
    )
    for signal in ranked[:2]:
        add(_signal_description(signal))

    coverage = read_coverage(context)
    if coverage is not None:
        add(f"Data coverage is {coverage * 100:.0f}%")

    for source_id in collect_source_ids(context)[:2]:
        add(f"Source: {source_id}")

    filler = 0
    while len(items) < target:
        add(GENERIC_EVIDENCE[filler % len(GENERIC_EVIDENCE)])
        filler += 1
    return items


def _finite_number(raw: Any) -> Optional[float]:
    """Finite float or None (no clamping)."""
    if isinstance(raw, bool):
        return None
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return None
    return value if math.isfinite(value) else None


# ─── Tier 1: structured parse ──────────────────────────────────────────────

def extract_json_object(raw: str) -> Optional[Dict[str, Any]]:
    """Parse a JSON object from bare text, a fenced block, or the outermost braces."""
    text = (raw or "").strip()
    if not text:
        return None
    candidates = [text]
    fence = _FENCE_RE.search(text)
    if fence:
        candidates.append(fence.group(1).strip())
    start, end = text.find("{"), text.rfind("}")
    if start != -1 and end > start:
        candidates.append(text[start:end + 1])
    for candidate in candidates:
        try:
            value = json.loads(candidate)
        except ValueError:
            continue
        if isinstance(value, dict):
            return value
    return None


def _parse_structured(
    raw: str,
    config: FeatureConfig,
    context: Context,
    now: int,
) -> Optional[InsightContract]:
    payload = extract_json_object(raw)
    if payload is None:
        return None
    risk_raw, action_raw = payload.get("risk"), payload.get("action")
    if not isinstance(risk_raw, str) or not isinstance(action_raw, str):
        return None
    risk, action = _clean_text(risk_raw), _clean_text(action_raw)
    if not risk or not action:
        # Empty strings fall through to line repair rather than validating.
        logger.debug(f"{config.feature}: structured payload had empty risk/action")
        return None

    default_confidence = _clamp(max(0.6, config.policy.min_confidence), 0.0, 1.0)
    evidence = _clean_evidence(payload.get("evidence"))
    if not evidence:
        evidence = synthesize_evidence(config, context)
    expires_raw = payload.get("expiresAt", payload.get("expires_at"))
    return InsightContract(
        risk=risk,
        action=action,
        confidence=_coerce_confidence(payload.get("confidence"), default_confidence),
        evidence=evidence,
        expires_at=_coerce_expires_at(expires_raw, config, now),
    )


# ─── Tier 2: line-based repair ─────────────────────────────────────────────

def _split_evidence_line(text: str) -> List[str]:
    return [part for part in re.split(r"[;|]", text) if part.strip()]


def _label_value(rest: str) -> str:
    """Text after a label; a JSON-style quoted value stops at its closing quote."""
    quoted = _QUOTED_RE.match(rest)
    if quoted:
        return _clean_text(quoted.group(1).replace('\\"', '"'))
    return _clean_text(rest)


def _scan_labelled_lines(raw: str) -> Tuple[str, str, List[str]]:
    risk, action = "", ""
    evidence: List[str] = []
    in_evidence = False
    for line in raw.splitlines():
        match = _LABEL_RE.match(line)
        if match:
            label, rest = match.group(1).lower(), match.group(2)
            in_evidence = label == "evidence"
            if label == "risk" and not risk:
                risk = _label_value(rest)
            elif label == "action" and not action:
                action = _label_value(rest)
            elif label == "evidence":
                evidence.extend(_split_evidence_line(rest.strip(" []")))
            continue
        bullet = _BULLET_RE.match(line)
        if in_evidence and bullet:
            evidence.append(bullet.group(1))
        elif line.strip():
            in_evidence = False
    return risk, action, _clean_evidence(evidence)


def _prose_sentences(raw: str) -> List[str]:
    text = _FENCE_RE.sub(" ", raw or "")
    flattened = " ".join(text.split())
    sentences = []
    for sentence in _SENTENCE_SPLIT_RE.split(flattened):
        cleaned = _clean_text(sentence)
        if len(_WORD_RE.findall(cleaned)) >= 2:
            sentences.append(cleaned)
    return sentences


def repair_contract(
    raw: str,
    config: FeatureConfig,
    context: Context,
    confidence: float,
    now: int,
) -> Optional[InsightContract]:
    """Recover risk/action from a partial JSON object, labelled lines or leading sentences."""
    payload = extract_json_object(raw or "")
    if payload is not None:
        risk = _clean_text(payload.get("risk"))
        action = _clean_text(payload.get("action"))
        evidence = _clean_evidence(payload.get("evidence"))
    else:
        risk, action, evidence = _scan_labelled_lines(raw or "")
    if not risk and not action and payload is None:
        sentences = _prose_sentences(raw)
        if sentences:
            risk = sentences[0]
            action = sentences[1] if len(sentences) > 1 else ""
    if not risk and not action:
        return None
    return InsightContract(
        risk=risk or CANONICAL_RISK,
        action=action or CANONICAL_ACTION,
        confidence=confidence,
        evidence=evidence or synthesize_evidence(config, context),
        expires_at=now + config.ttl_ms,
    )


# ─── Tier 3: deterministic fallback ────────────────────────────────────────

def build_fallback_contract(
    config: FeatureConfig,
    context: Context,
    now: Optional[int] = None,
) -> InsightContract:
    """Contract built only from the feature's static fallback template."""
    current = now if now is not None else now_ms()
    confidence = _clamp(max(0.45, config.policy.min_confidence), 0.45, 0.75)
    try:
        template = config.fallback(context)
    except Exception as e:
        logger.warning(f"{config.feature}: fallback template failed ({e}), using canonical text")
        template = ""
    contract = repair_contract(template, config, context, confidence, current)
    if contract is None:
        contract = InsightContract(
            risk=CANONICAL_RISK,
            action=CANONICAL_ACTION,
            confidence=confidence,
            evidence=synthesize_evidence(config, context),
            expires_at=current + config.ttl_ms,
        )
    return contract


def normalize_contract(
    raw: Optional[str],
    config: FeatureConfig,
    context: Context,
    now: Optional[int] = None,
) -> Tuple[InsightContract, ContractStatus]:
    """
    Normalize raw provider text into a contract.

    Args:
        raw: Provider output (may be None, prose, fenced JSON, truncated JSON)
        config: Feature config supplying TTL and policy thresholds
        context: Request context used for evidence synthesis

    Returns:
        (contract, status) where status is validated, repaired or fallback
    """
    current = now if now is not None else now_ms()
    text = raw if isinstance(raw, str) else ""

    contract = _parse_structured(text, config, context, current)
    if contract is not None:
        return contract, "validated"

    repair_confidence = _clamp(max(0.52, config.policy.min_confidence), 0.4, 0.75)
    contract = repair_contract(text, config, context, repair_confidence, current)
    if contract is not None:
        logger.debug(f"{config.feature}: provider output repaired from plain text")
        return contract, "repaired"

    logger.info(f"{config.feature}: provider output unusable, using fallback contract")
    return build_fallback_contract(config, context, current), "fallback"
