"""
AI feature registry.

Static table of every dashboard feature that can request an insight: cache
lifetime, daily budget, generation parameters, prompt/fallback builders and
guardrail thresholds. Configs are built once at startup (optionally overlaid
from config/app.yaml) and never mutated afterwards.
"""

import json
import math
import logging
from dataclasses import replace
from typing import Any, Dict, Iterator, List, Mapping, Optional

from core.exceptions import UnknownFeatureError

from .schemas import Context, FeatureConfig, PolicyThresholds, RolloutDefaults

logger = logging.getLogger(__name__)

MINUTE_MS = 60 * 1000

CONTRACT_INSTRUCTION = (
    'Return JSON only with keys {"risk","action","confidence","evidence","expiresAt"}. '
    "Use concise strings for risk/action, confidence as 0..1, evidence as short string array, "
    "expiresAt as unix ms."
)

DEFAULT_ROLLOUT = RolloutDefaults(enabled_by_default=True, percent=100.0)
DEFAULT_POLICY = PolicyThresholds(
    min_confidence=0.56,
    max_context_age_ms=12 * MINUTE_MS,
    min_evidence_items=1,
    min_data_coverage=0.5,
)


def _to_short_json(value: Any) -> str:
    try:
        return json.dumps(value, separators=(",", ":"), default=str)
    except (TypeError, ValueError):
        return "{}"


def _prompt(instruction: str):
    def build(context: Context) -> str:
        return f"{instruction}\n{CONTRACT_INSTRUCTION}\nContext: {_to_short_json(context)}"
    return build


def _static(text: str):
    def build(context: Context) -> str:
        return text
    return build


def _overview_fallback(context: Context) -> str:
    holdings = context.get("topHoldings") if isinstance(context, dict) else None
    top = holdings[0] if isinstance(holdings, list) and holdings else None
    symbol = top.get("symbol") if isinstance(top, dict) else None
    if symbol:
        return (
            f"Risk: {symbol} concentration may dominate portfolio swings.\n"
            "Action: Rebalance or hedge top exposure."
        )
    return (
        "Risk: Portfolio risk profile is unclear.\n"
        "Action: Review top holdings and exposure limits."
    )


# feature id -> table row. Missing rollout/policy keys fall back to the defaults above.
_FEATURE_TABLE: Dict[str, Dict[str, Any]] = {
    "overview_pulse": {
        "title": "Portfolio Pulse",
        "ttl_ms": 2 * MINUTE_MS, "max_per_day": 60, "max_tokens": 120, "temperature": 0.2,
        "policy": {"min_evidence_items": 2, "min_data_coverage": 0.65},
        "prompt": _prompt("Summarize top 3 portfolio risks and 1 priority action."),
        "fallback": _overview_fallback,
        "badge": "AI-Pulse", "variant": "risk",
    },
    "feed_summary_overview": {
        "title": "Feed Summary (Overview)",
        "ttl_ms": 3 * MINUTE_MS, "max_per_day": 80, "max_tokens": 160, "temperature": 0.2,
        "policy": {"min_evidence_items": 2, "min_data_coverage": 0.7, "max_context_age_ms": 8 * MINUTE_MS},
        "prompt": _prompt(
            "Explain deterministic risk signals for overview scope. Use only context facts. "
            "Call out one concrete advisory action."
        ),
        "fallback": _static(
            "Risk: Overview signal quality is currently insufficient.\n"
            "Action: Refresh portfolio data and verify top risk drivers."
        ),
        "badge": "AI-Feed", "variant": "risk",
    },
    "feed_summary_markets": {
        "title": "Feed Summary (Markets)",
        "ttl_ms": 3 * MINUTE_MS, "max_per_day": 80, "max_tokens": 160, "temperature": 0.2,
        "policy": {"min_evidence_items": 2, "min_data_coverage": 0.65, "max_context_age_ms": 8 * MINUTE_MS},
        "prompt": _prompt(
            "Explain deterministic market risk signals for scanner/volatility context. "
            "Use only context facts. Call out one concrete advisory action."
        ),
        "fallback": _static(
            "Risk: Market signal reliability is below threshold.\n"
            "Action: Re-run scanner filters and confirm liquidity before acting."
        ),
        "badge": "AI-Feed", "variant": "action",
    },
    "feed_summary_spot": {
        "title": "Feed Summary (Spot)",
        "ttl_ms": 3 * MINUTE_MS, "max_per_day": 80, "max_tokens": 160, "temperature": 0.2,
        "policy": {"min_evidence_items": 2, "min_data_coverage": 0.7, "max_context_age_ms": 8 * MINUTE_MS},
        "prompt": _prompt(
            "Explain deterministic spot exposure risk signals. Use only context facts. "
            "Call out one concrete advisory action."
        ),
        "fallback": _static(
            "Risk: Spot risk signal quality is insufficient.\n"
            "Action: Verify position sizing and stop coverage before adding exposure."
        ),
        "badge": "AI-Feed", "variant": "risk",
    },
    "feed_summary_balances": {
        "title": "Feed Summary (Balances)",
        "ttl_ms": 3 * MINUTE_MS, "max_per_day": 80, "max_tokens": 160, "temperature": 0.2,
        "policy": {"min_evidence_items": 2, "min_data_coverage": 0.7, "max_context_age_ms": 8 * MINUTE_MS},
        "prompt": _prompt(
            "Explain deterministic balances and transfer risk signals. Use only context facts. "
            "Call out one concrete advisory action."
        ),
        "fallback": _static(
            "Risk: Balance/transfer context is incomplete.\n"
            "Action: Reconcile balances and route flows before large reallocation."
        ),
        "badge": "AI-Feed", "variant": "risk",
    },
    "session_advisory": {
        "title": "Session Advisory",
        "ttl_ms": 2 * MINUTE_MS, "max_per_day": 120, "max_tokens": 120, "temperature": 0.2,
        "policy": {"min_evidence_items": 1, "min_data_coverage": 0.55, "max_context_age_ms": 15 * MINUTE_MS},
        "prompt": _prompt(
            "Given current market session timing and economic event risk, return one concise advisory. "
            "Prioritize risk-first sizing guidance and event timing discipline."
        ),
        "fallback": _static(
            "Risk: Session conditions can shift quickly around event windows.\n"
            "Action: Keep normal size and wait for confirmed setups."
        ),
        "badge": "AI-Session", "variant": "risk",
    },
    "markets_scanner_summary": {
        "title": "Scanner Summary",
        "ttl_ms": 3 * MINUTE_MS, "max_per_day": 40, "max_tokens": 120, "temperature": 0.3,
        "prompt": _prompt("Highlight top 3 tradeable setups based on current filters."),
        "fallback": _static(
            "Risk: Screener filters may be too broad.\n"
            "Action: Narrow to 2-3 catalysts and confirm liquidity."
        ),
        "badge": "AI-Pulse", "variant": "action",
    },
    "spot_position_risk": {
        "title": "Spot Risk Notes",
        "ttl_ms": 4 * MINUTE_MS, "max_per_day": 40, "max_tokens": 160, "temperature": 0.2,
        "policy": {"min_evidence_items": 2, "min_data_coverage": 0.65},
        "prompt": _prompt("From the positions list, call out top risk-heavy spot exposure."),
        "fallback": _static(
            "Risk: Position sizing may be uneven.\n"
            "Action: Cap single-asset exposure and add defined exits."
        ),
        "badge": "AI-Pulse", "variant": "risk",
    },
    "balances_stablecoin_risk": {
        "title": "Stablecoin Risk",
        "ttl_ms": 5 * MINUTE_MS, "max_per_day": 30, "max_tokens": 100, "temperature": 0.2,
        "policy": {"min_evidence_items": 2, "min_data_coverage": 0.65},
        "prompt": _prompt("Evaluate stablecoin allocation vs total portfolio."),
        "fallback": _static(
            "Risk: Stablecoin allocation could be too high.\n"
            "Action: Set a target deploy range for risk assets."
        ),
        "badge": "AI-Pulse", "variant": "neutral",
    },
    "futures_risk": {
        "title": "Perp Risk",
        "ttl_ms": 2 * MINUTE_MS, "max_per_day": 60, "max_tokens": 120, "temperature": 0.2,
        "policy": {"min_evidence_items": 2, "min_data_coverage": 0.7},
        "prompt": _prompt("Identify highest leverage or no-stop positions."),
        "fallback": _static(
            "Risk: Leverage exposure may be elevated.\n"
            "Action: Add stop-loss orders on the highest leverage positions."
        ),
        "badge": "AI-Pulse", "variant": "risk",
    },
    "journal_reflection": {
        "title": "Journal Reflection",
        "ttl_ms": 6 * MINUTE_MS, "max_per_day": 20, "max_tokens": 120, "temperature": 0.4,
        "policy": {"min_confidence": 0.5, "min_evidence_items": 1, "min_data_coverage": 0.4},
        "prompt": _prompt("Write a 2-line reflection on missing notes or patterns."),
        "fallback": _static(
            "Risk: Missing trade notes reduce edge clarity.\n"
            "Action: Log 2 key decisions from today's trades."
        ),
        "badge": "AI-Pulse", "variant": "neutral",
    },
    "playbook_alignment": {
        "title": "Playbook Alignment",
        "ttl_ms": 4 * MINUTE_MS, "max_per_day": 20, "max_tokens": 120, "temperature": 0.2,
        "policy": {"min_evidence_items": 2, "min_data_coverage": 0.6},
        "prompt": _prompt("Check if live orders match playbook levels."),
        "fallback": _static(
            "Risk: Orders may not align with playbook levels.\n"
            "Action: Sync open orders with your defined entries and stops."
        ),
        "badge": "AI-Pulse", "variant": "risk",
    },
    "activity_anomaly": {
        "title": "Activity Anomaly",
        "ttl_ms": 4 * MINUTE_MS, "max_per_day": 30, "max_tokens": 100, "temperature": 0.25,
        "policy": {"min_evidence_items": 2, "min_data_coverage": 0.6},
        "prompt": _prompt("Identify unusual account activity."),
        "fallback": _static(
            "Risk: Recent activity has outlier volume.\n"
            "Action: Verify transfers and reconcile balances."
        ),
        "badge": "AI-Pulse", "variant": "neutral",
    },
    "activity_route_health": {
        "title": "Route Health",
        "ttl_ms": 3 * MINUTE_MS, "max_per_day": 40, "max_tokens": 120, "temperature": 0.2,
        "policy": {"min_evidence_items": 2, "min_data_coverage": 0.7},
        "prompt": _prompt(
            "Assess route health across wallet and exchange transfers. Mention exact route key."
        ),
        "fallback": _static(
            "Risk: One route is carrying oversized notional.\n"
            "Action: Split flow across a secondary route and verify address labels."
        ),
        "badge": "AI-Pulse", "variant": "risk",
    },
    "activity_fee_drift": {
        "title": "Fee Drift",
        "ttl_ms": 3 * MINUTE_MS, "max_per_day": 40, "max_tokens": 120, "temperature": 0.15,
        "policy": {"min_evidence_items": 2, "min_data_coverage": 0.7},
        "prompt": _prompt(
            "Identify fee drift by route versus baseline. Mention route and current vs baseline bps."
        ),
        "fallback": _static(
            "Risk: Fees are drifting above baseline on one route.\n"
            "Action: Switch route/network window and recheck transfer timing."
        ),
        "badge": "AI-Pulse", "variant": "action",
    },
    "activity_memory_signal": {
        "title": "Memory Signal",
        "ttl_ms": 5 * MINUTE_MS, "max_per_day": 30, "max_tokens": 120, "temperature": 0.2,
        "policy": {"min_evidence_items": 2, "min_data_coverage": 0.6},
        "prompt": _prompt(
            "Use recurrence memory to flag unusual repeated movements. "
            "Mention route and recurrence gap."
        ),
        "fallback": _static(
            "Risk: A movement pattern is repeating faster than normal.\n"
            "Action: Confirm intent and destination before next transfer."
        ),
        "badge": "AI-Pulse", "variant": "neutral",
    },
    "transfers_risk": {
        "title": "Transfers Risk",
        "ttl_ms": 4 * MINUTE_MS, "max_per_day": 30, "max_tokens": 100, "temperature": 0.2,
        "policy": {"min_evidence_items": 2, "min_data_coverage": 0.65},
        "prompt": _prompt("Analyze transfers for unusual size or timing."),
        "fallback": _static(
            "Risk: Transfer size may be atypical.\n"
            "Action: Confirm destination and chain before rebalancing."
        ),
        "badge": "AI-Pulse", "variant": "neutral",
    },
    "wallet_health": {
        "title": "Wallet Health",
        "ttl_ms": 6 * MINUTE_MS, "max_per_day": 20, "max_tokens": 100, "temperature": 0.2,
        "policy": {"min_evidence_items": 1, "min_data_coverage": 0.5},
        "prompt": _prompt("Detect idle wallets or dust accumulation."),
        "fallback": _static(
            "Risk: Wallets show dust or idle capital.\n"
            "Action: Consolidate small balances or move idle funds."
        ),
        "badge": "AI-Pulse", "variant": "neutral",
    },
}

ALL_FEATURES: List[str] = list(_FEATURE_TABLE.keys())


def _clamp(value: float, lo: float, hi: float) -> float:
    return min(hi, max(lo, value))


def _number(value: Any, default: float) -> float:
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return default
    if not math.isfinite(parsed):
        return default
    return parsed


def _sanitize_rollout(raw: Optional[Mapping[str, Any]]) -> RolloutDefaults:
    raw = raw or {}
    percent = _number(raw.get("percent", DEFAULT_ROLLOUT.percent), 0.0)
    return RolloutDefaults(
        enabled_by_default=bool(raw.get("enabled_by_default", DEFAULT_ROLLOUT.enabled_by_default)),
        percent=_clamp(percent, 0.0, 100.0),
    )


def _sanitize_policy(raw: Optional[Mapping[str, Any]]) -> PolicyThresholds:
    raw = raw or {}
    return PolicyThresholds(
        min_confidence=_clamp(_number(raw.get("min_confidence"), DEFAULT_POLICY.min_confidence), 0.0, 1.0),
        max_context_age_ms=int(max(1000, _number(raw.get("max_context_age_ms"), DEFAULT_POLICY.max_context_age_ms))),
        min_evidence_items=int(max(0, _number(raw.get("min_evidence_items"), DEFAULT_POLICY.min_evidence_items))),
        min_data_coverage=_clamp(_number(raw.get("min_data_coverage"), DEFAULT_POLICY.min_data_coverage), 0.0, 1.0),
    )


def _build_config(feature: str, row: Mapping[str, Any]) -> FeatureConfig:
    return FeatureConfig(
        feature=feature,
        title=row["title"],
        ttl_ms=int(row["ttl_ms"]),
        max_per_day=int(row["max_per_day"]),
        max_tokens=int(row["max_tokens"]),
        temperature=float(row["temperature"]),
        prompt=row["prompt"],
        fallback=row["fallback"],
        rollout=_sanitize_rollout(row.get("rollout")),
        policy=_sanitize_policy(row.get("policy")),
        badge=row.get("badge", "AI-Pulse"),
        variant=row.get("variant", "neutral"),
    )


def _apply_override(config: FeatureConfig, override: Mapping[str, Any]) -> FeatureConfig:
    """Overlay YAML overrides on a base config (policy/rollout merged key by key)."""
    changes: Dict[str, Any] = {}
    for key in ("ttl_ms", "max_per_day", "max_tokens"):
        if override.get(key) is not None:
            changes[key] = int(override[key])
    if override.get("temperature") is not None:
        changes["temperature"] = float(override["temperature"])
    if override.get("policy"):
        merged = {**config.policy.to_dict(), **{k: v for k, v in override["policy"].items() if v is not None}}
        changes["policy"] = _sanitize_policy(merged)
    if override.get("rollout"):
        base = {"enabled_by_default": config.rollout.enabled_by_default, "percent": config.rollout.percent}
        merged = {**base, **{k: v for k, v in override["rollout"].items() if v is not None}}
        changes["rollout"] = _sanitize_rollout(merged)
    return replace(config, **changes) if changes else config


class FeatureRegistry:
    """Immutable lookup table of feature configs."""

    def __init__(self, configs: Mapping[str, FeatureConfig]):
        self._configs: Dict[str, FeatureConfig] = dict(configs)

    def lookup(self, feature: str) -> FeatureConfig:
        try:
            return self._configs[feature]
        except KeyError:
            raise UnknownFeatureError(feature) from None

    def __contains__(self, feature: object) -> bool:
        return feature in self._configs

    def __iter__(self) -> Iterator[str]:
        return iter(self._configs)

    def __len__(self) -> int:
        return len(self._configs)

    @property
    def features(self) -> List[str]:
        return list(self._configs)


def build_registry(overrides: Optional[Mapping[str, Mapping[str, Any]]] = None) -> FeatureRegistry:
    """
    Build the feature registry.

    Args:
        overrides: Optional feature id -> override mapping (from config/app.yaml)

    Returns:
        FeatureRegistry with every declared feature
    """
    configs = {feature: _build_config(feature, row) for feature, row in _FEATURE_TABLE.items()}
    for feature, override in (overrides or {}).items():
        if feature not in configs:
            logger.warning(f"Ignoring override for undeclared feature '{feature}'")
            continue
        configs[feature] = _apply_override(configs[feature], override or {})
        logger.debug(f"Applied config override for {feature}")
    return FeatureRegistry(configs)


FEATURE_REGISTRY = build_registry()


def lookup(feature: str) -> FeatureConfig:
    """Look up a feature in the default (un-overridden) registry."""
    return FEATURE_REGISTRY.lookup(feature)
