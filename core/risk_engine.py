"""
Deterministic Risk Engine

Six independent, explainable risk rules computed from a portfolio snapshot
(assets, open positions, recent activity). Output is folded back into insight
context so the policy engine can block or escalate provider text that
understates known risk.

Every rule is pure and total: inputs are untrusted dashboard rows, coerced to
finite numbers with safe defaults. Nothing here raises on bad data.
"""

import logging
import math
import re
import time
from collections import Counter
from dataclasses import asdict, dataclass, field, fields
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

logger = logging.getLogger(__name__)

STABLE_SYMBOLS = frozenset({"USDT", "USDC", "DAI", "USDE", "FDUSD"})
DAY_MS = 24 * 60 * 60 * 1000
WEEK_MS = 7 * DAY_MS

RULES = (
    "concentration",
    "leverage_stress",
    "stop_coverage",
    "funding_drag",
    "transfer_anomaly",
    "route_health",
)

_SEVERITY_RANK = {"info": 0, "warning": 1, "critical": 2}


@dataclass(frozen=True)
class RiskThresholds:
    """Rule breakpoints. Overridable from the ``risk_engine`` section of app.yaml."""
    concentration_top_warning_pct: float = 35.0
    concentration_top_critical_pct: float = 55.0
    concentration_hhi_warning: float = 0.24
    concentration_hhi_critical: float = 0.38
    leverage_warning: float = 6.0
    leverage_critical: float = 12.0
    liq_distance_warning_pct: float = 20.0
    liq_distance_critical_pct: float = 10.0
    stop_high_leverage: float = 3.0
    stop_missing_warning_pct: float = 30.0
    stop_missing_critical_pct: float = 60.0
    funding_warning_bps: float = 15.0
    funding_critical_bps: float = 40.0
    transfer_min_sample: int = 3
    transfer_ratio_warning: float = 2.5
    transfer_amount_warning_usd: float = 250.0
    transfer_ratio_critical: float = 4.0
    transfer_amount_critical_usd: float = 500.0
    route_share_warning_pct: float = 60.0
    route_share_critical_pct: float = 80.0
    route_fee_warning_bps: float = 45.0
    route_fee_critical_bps: float = 80.0
    stale_after_ms: int = 12 * 60 * 1000

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> "RiskThresholds":
        known = {f.name for f in fields(cls)}
        values: Dict[str, Any] = {}
        for key, value in (data or {}).items():
            if key not in known:
                logger.warning(f"Ignoring unknown risk threshold '{key}'")
                continue
            if value is not None:
                values[key] = value
        return cls(**values)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class RiskSignal:
    rule: str
    severity: str
    verdict: str
    score: int               # 0..100
    confidence: float        # 0..1
    coverage: float          # 0..1
    evidence: List[str] = field(default_factory=list)
    metrics: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class RiskSnapshot:
    """Aggregate of all six rules for one evaluation."""
    generated_at: int
    snapshot_ts: int
    stale: bool
    coverage: float
    severity: str
    verdict: str
    signals: List[RiskSignal]
    top_signals: List[RiskSignal]

    def signal(self, rule: str) -> Optional[RiskSignal]:
        for s in self.signals:
            if s.rule == rule:
                return s
        return None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def to_context(self, top_only: bool = False, evidence_limit: int = 2) -> Dict[str, Any]:
        """Compact ``riskEngine`` block for insight context."""
        source = self.top_signals if top_only else self.signals
        return {
            "severity": self.severity,
            "verdict": self.verdict,
            "coverage": self.coverage,
            "stale": self.stale,
            "snapshotTs": self.snapshot_ts,
            "signals": [
                {
                    "rule": s.rule,
                    "severity": s.severity,
                    "verdict": s.verdict,
                    "score": s.score,
                    "evidence": s.evidence[:evidence_limit],
                }
                for s in source
            ],
        }


# ─── Coercion helpers ──────────────────────────────────────────────────────

def _to_finite(value: Any, default: float = 0.0) -> float:
    if value is None or isinstance(value, bool):
        return default
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return default
    return parsed if math.isfinite(parsed) else default


def _round(value: float) -> int:
    """Half-up rounding (Python's round() is half-even)."""
    return int(math.floor(value + 0.5))


def _clamp(value: float, lo: float, hi: float) -> float:
    return min(hi, max(lo, value))


def _score(value: float) -> int:
    return int(_clamp(_round(value), 0, 100))


def _get(row: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in row and row[key] is not None:
            return row[key]
    return None


def _rows(value: Any) -> List[Mapping[str, Any]]:
    if not isinstance(value, (list, tuple)):
        return []
    return [row for row in value if isinstance(row, Mapping)]


def _safe_symbol(value: Any) -> str:
    text = re.sub(r"[^A-Z0-9]", "", str(value or "").upper())
    return text or "UNKNOWN"


def _verdict(severity: str) -> str:
    return "allow" if severity == "info" else "warn"


def _tiered(critical: bool, warning: bool) -> str:
    if critical:
        return "critical"
    if warning:
        return "warning"
    return "info"


def _signal(rule: str, severity: str, score: int, confidence: float, coverage: float,
            evidence: List[str], metrics: Dict[str, Any]) -> RiskSignal:
    return RiskSignal(
        rule=rule,
        severity=severity,
        verdict=_verdict(severity),
        score=score,
        confidence=confidence,
        coverage=coverage,
        evidence=evidence,
        metrics=metrics,
    )


# ─── Rules ─────────────────────────────────────────────────────────────────

def _concentration(assets: Sequence[Mapping[str, Any]], t: RiskThresholds) -> RiskSignal:
    scoped = []
    for asset in assets:
        value = max(0.0, _to_finite(_get(asset, "valueUsd", "value_usd")))
        if value > 0:
            scoped.append((_safe_symbol(asset.get("symbol")), value))
    total = sum(v for _, v in scoped)
    if total <= 0:
        return _signal(
            "concentration", "warning", 50, 0.45, 0.35,
            ["No asset valuation coverage available"],
            {"totalValueUsd": 0, "topWeightPct": 0, "hhi": 0},
        )

    scoped.sort(key=lambda item: item[1], reverse=True)
    top_symbol, top_value = scoped[0]
    top_pct = top_value / total * 100
    hhi = sum((v / total) ** 2 for _, v in scoped)
    severity = _tiered(
        top_pct >= t.concentration_top_critical_pct or hhi >= t.concentration_hhi_critical,
        top_pct >= t.concentration_top_warning_pct or hhi >= t.concentration_hhi_warning,
    )
    return _signal(
        "concentration", severity, _score(max(top_pct, hhi * 100)), 0.94, 1.0,
        [
            f"Top holding {top_symbol} is {top_pct:.1f}% of tracked value",
            f"Portfolio concentration index (HHI) is {hhi:.3f}",
        ],
        {
            "totalValueUsd": _round(total),
            "topSymbol": top_symbol,
            "topWeightPct": round(top_pct, 2),
            "hhi": round(hhi, 4),
        },
    )


def _open_positions(positions: Sequence[Mapping[str, Any]]) -> List[Mapping[str, Any]]:
    return [p for p in positions if abs(_to_finite(p.get("size"))) > 0]


def _liquidation_distance_pct(position: Mapping[str, Any]) -> float:
    mark = _to_finite(_get(position, "markPrice", "mark_price")) or _to_finite(
        _get(position, "entryPrice", "entry_price")
    )
    liq = _to_finite(_get(position, "liquidationPrice", "liquidation_price"))
    if mark <= 0 or liq <= 0:
        return math.inf
    if str(position.get("side") or "").lower() == "short":
        return (liq - mark) / mark * 100
    return (mark - liq) / mark * 100


def _leverage_stress(positions: Sequence[Mapping[str, Any]], t: RiskThresholds) -> RiskSignal:
    scoped = _open_positions(positions)
    if not scoped:
        return _signal(
            "leverage_stress", "info", 0, 0.92, 1.0,
            ["No open leveraged positions detected"],
            {"maxLeverage": 0, "minLiqDistancePct": 0, "openPositions": 0},
        )

    max_leverage = max([1.0] + [_to_finite(p.get("leverage"), 1.0) for p in scoped])
    distances = [d for d in (_liquidation_distance_pct(p) for p in scoped) if math.isfinite(d) and d > 0]
    min_distance = min(distances) if distances else 999.0
    severity = _tiered(
        max_leverage >= t.leverage_critical or min_distance <= t.liq_distance_critical_pct,
        max_leverage >= t.leverage_warning or min_distance <= t.liq_distance_warning_pct,
    )
    return _signal(
        "leverage_stress", severity,
        _score(max(max_leverage / 15 * 100, 100 - min_distance)), 0.9, 0.95,
        [
            f"Max leverage across positions is {max_leverage:.1f}x",
            f"Closest liquidation distance is {min_distance:.1f}%",
        ],
        {
            "maxLeverage": round(max_leverage, 2),
            "minLiqDistancePct": round(min_distance, 2),
            "openPositions": len(scoped),
        },
    )


def _stop_coverage(positions: Sequence[Mapping[str, Any]], t: RiskThresholds) -> RiskSignal:
    scoped = _open_positions(positions)
    if not scoped:
        return _signal(
            "stop_coverage", "info", 0, 0.9, 1.0,
            ["No open positions requiring stop checks"],
            {"missingStopCount": 0, "missingStopPct": 0, "highLevMissingStops": 0},
        )

    missing = 0
    high_lev_missing = 0
    for position in scoped:
        if _to_finite(_get(position, "stopLoss", "stop_loss")) > 0:
            continue
        missing += 1
        if _to_finite(position.get("leverage"), 1.0) >= t.stop_high_leverage:
            high_lev_missing += 1
    missing_pct = missing / len(scoped) * 100
    severity = _tiered(
        high_lev_missing > 0 or missing_pct >= t.stop_missing_critical_pct,
        missing_pct >= t.stop_missing_warning_pct,
    )
    return _signal(
        "stop_coverage", severity, _score(missing_pct), 0.88, 0.8,
        [
            f"{missing}/{len(scoped)} open positions have no mapped stop",
            f"{high_lev_missing} high-leverage positions are uncovered",
        ],
        {
            "missingStopCount": missing,
            "missingStopPct": round(missing_pct, 2),
            "highLevMissingStops": high_lev_missing,
            "openPositions": len(scoped),
        },
    )


def _in_window(row: Mapping[str, Any], now: int, window_ms: int) -> bool:
    ts = _to_finite(row.get("timestamp"))
    return now - window_ms < ts <= now


def _funding_drag(activities: Sequence[Mapping[str, Any]], equity_usd: float, now: int,
                  t: RiskThresholds) -> RiskSignal:
    rows = [
        a for a in activities
        if _in_window(a, now, DAY_MS)
        and "funding" in str(_get(a, "feeType", "fee_type") or a.get("type") or "").lower()
    ]
    if not rows:
        return _signal(
            "funding_drag", "info", 0, 0.72, 0.6,
            ["No recent funding fee events observed"],
            {"funding24hUsd": 0, "funding24hBpsOfEquity": 0},
        )

    funding_usd = sum(abs(_to_finite(_get(r, "feeUsd", "fee_usd"))) for r in rows)
    if equity_usd > 0:
        bps = funding_usd / equity_usd * 10000
    else:
        bps = 999.0 if funding_usd > 0 else 0.0
    severity = _tiered(bps >= t.funding_critical_bps, bps >= t.funding_warning_bps)
    return _signal(
        "funding_drag", severity, _score(bps), 0.86, 0.75,
        [
            f"Funding fees in 24h are {funding_usd:.2f} USD",
            f"Funding drag equals {bps:.1f} bps of tracked equity",
        ],
        {"funding24hUsd": round(funding_usd, 2), "funding24hBpsOfEquity": round(bps, 2)},
    )


def _median(values: List[float]) -> float:
    if not values:
        return 0.0
    ordered = sorted(values)
    mid = len(ordered) // 2
    if len(ordered) % 2 == 0:
        return (ordered[mid - 1] + ordered[mid]) / 2
    return ordered[mid]


def _transfer_amount_usd(row: Mapping[str, Any]) -> float:
    explicit = abs(_to_finite(_get(row, "amountUsd", "amount_usd")))
    return explicit if explicit > 0 else abs(_to_finite(row.get("amount")))


def _route_key(row: Mapping[str, Any]) -> str:
    source = str(row.get("from") or "unknown").strip()
    dest = str(row.get("to") or "unknown").strip()
    chain = str(row.get("chain") or "").strip()
    return f"{source}->{dest}@{chain}" if chain else f"{source}->{dest}"


def _recent_transfers(activities: Sequence[Mapping[str, Any]], now: int) -> List[Mapping[str, Any]]:
    return [
        a for a in activities
        if str(_get(a, "activityType", "activity_type") or "").lower() in ("transfer", "internal")
        and _in_window(a, now, WEEK_MS)
    ]


def _transfer_anomaly(activities: Sequence[Mapping[str, Any]], now: int, t: RiskThresholds) -> RiskSignal:
    transfers = _recent_transfers(activities, now)
    if len(transfers) < t.transfer_min_sample:
        return _signal(
            "transfer_anomaly", "info", 0, 0.62, 0.5 if transfers else 0.3,
            ["Not enough recent transfer history to score anomalies robustly"],
            {"transferCount7d": len(transfers), "anomalyRatio": 0, "latestAmountUsd": 0},
        )

    baseline = _median([amt for amt in (_transfer_amount_usd(r) for r in transfers) if amt > 0])
    recent = [r for r in transfers if _to_finite(r.get("timestamp")) >= now - DAY_MS]
    latest = max(recent, key=_transfer_amount_usd) if recent else None
    latest_usd = _transfer_amount_usd(latest) if latest is not None else 0.0
    if baseline > 0:
        ratio = latest_usd / baseline
    else:
        ratio = 999.0 if latest_usd > 0 else 0.0
    severity = _tiered(
        ratio >= t.transfer_ratio_critical and latest_usd >= t.transfer_amount_critical_usd,
        ratio >= t.transfer_ratio_warning and latest_usd >= t.transfer_amount_warning_usd,
    )
    route = _route_key(latest) if latest is not None else None
    return _signal(
        "transfer_anomaly", severity, _score(ratio * 20), 0.84, 0.85,
        [
            f"Largest transfer in 24h is {latest_usd:.2f} USD",
            f"Size is {ratio:.2f}x the 7d median transfer size",
            f"Route {route} carried the latest outlier" if route else "No route context",
        ],
        {
            "transferCount7d": len(transfers),
            "latestAmountUsd": round(latest_usd, 2),
            "medianAmountUsd": round(baseline, 2),
            "anomalyRatio": round(ratio, 3),
            "routeKey": route or "n/a",
        },
    )


def _route_health(activities: Sequence[Mapping[str, Any]], now: int, t: RiskThresholds) -> RiskSignal:
    transfers = _recent_transfers(activities, now)
    if not transfers:
        return _signal(
            "route_health", "info", 0, 0.58, 0.3,
            ["No transfer routes observed in the scoring window"],
            {"routeCount": 0, "topRouteSharePct": 0, "feeBps": 0},
        )

    counts: Counter = Counter()
    total_amount = 0.0
    total_fee = 0.0
    for row in transfers:
        counts[_route_key(row)] += 1
        total_amount += _transfer_amount_usd(row)
        total_fee += max(0.0, _to_finite(_get(row, "feeUsd", "fee_usd")))

    # most_common keeps first-seen order among ties
    top_route, top_count = counts.most_common(1)[0]
    share_pct = top_count / len(transfers) * 100
    fee_bps = total_fee / total_amount * 10000 if total_amount > 0 else 0.0
    severity = _tiered(
        share_pct >= t.route_share_critical_pct or fee_bps >= t.route_fee_critical_bps,
        share_pct >= t.route_share_warning_pct or fee_bps >= t.route_fee_warning_bps,
    )
    return _signal(
        "route_health", severity, _score(max(share_pct, fee_bps)), 0.87, 0.9,
        [
            f"Top route {top_route} carries {share_pct:.1f}% of recent transfer flow",
            f"Observed route fee load is {fee_bps:.1f} bps",
        ],
        {
            "routeCount": len(counts),
            "topRouteKey": top_route,
            "topRouteSharePct": round(share_pct, 2),
            "feeBps": round(fee_bps, 2),
            "transferCount7d": len(transfers),
        },
    )


# ─── Aggregation ───────────────────────────────────────────────────────────

def _tracked_assets(assets: Iterable[Mapping[str, Any]]) -> List[Mapping[str, Any]]:
    """Keep stablecoins (even at zero value) and anything valued or allocated."""
    kept = []
    for asset in assets:
        if _safe_symbol(asset.get("symbol")) in STABLE_SYMBOLS:
            kept.append(asset)
        elif _to_finite(_get(asset, "valueUsd", "value_usd")) > 0 or _to_finite(asset.get("allocations")) > 0:
            kept.append(asset)
    return kept


def evaluate_risk_snapshot(
    assets: Any = None,
    positions: Any = None,
    activities: Any = None,
    now_ms: Optional[int] = None,
    snapshot_ts: Optional[int] = None,
    thresholds: Optional[RiskThresholds] = None,
) -> RiskSnapshot:
    """
    Run all six rules over a portfolio snapshot.

    Args:
        assets: Holdings rows ({symbol, valueUsd, allocations})
        positions: Derivative positions ({symbol, size, entryPrice, markPrice,
            leverage, liquidationPrice, side, stopLoss})
        activities: Activity rows ({activityType, type, amount, amountUsd,
            feeUsd, feeType, timestamp, from, to, chain})
        now_ms: Evaluation time (defaults to wall clock)
        snapshot_ts: When the inputs were observed (defaults to now)
        thresholds: Rule breakpoints

    Returns:
        RiskSnapshot with signals in fixed rule order
    """
    t = thresholds or RiskThresholds()
    now = int(_to_finite(now_ms, time.time() * 1000))
    observed = int(_to_finite(snapshot_ts, now))
    tracked = _tracked_assets(_rows(assets))
    open_rows = _rows(positions)
    activity_rows = _rows(activities)
    equity_usd = sum(max(0.0, _to_finite(_get(a, "valueUsd", "value_usd"))) for a in tracked)

    signals = [
        _concentration(tracked, t),
        _leverage_stress(open_rows, t),
        _stop_coverage(open_rows, t),
        _funding_drag(activity_rows, equity_usd, now, t),
        _transfer_anomaly(activity_rows, now, t),
        _route_health(activity_rows, now, t),
    ]

    severity = "info"
    for s in signals:
        if _SEVERITY_RANK[s.severity] > _SEVERITY_RANK[severity]:
            severity = s.severity
    coverage = _clamp(sum(s.coverage for s in signals) / len(signals), 0.0, 1.0)
    top_signals = sorted(signals, key=lambda s: s.score, reverse=True)[:3]

    snapshot = RiskSnapshot(
        generated_at=now,
        snapshot_ts=observed,
        stale=now - observed > t.stale_after_ms,
        coverage=coverage,
        severity=severity,
        verdict=_verdict(severity),
        signals=signals,
        top_signals=top_signals,
    )
    logger.debug(
        f"Risk snapshot: severity={severity} coverage={coverage:.2f} "
        f"top={[s.rule for s in top_signals]}"
    )
    return snapshot


def enrich_context(
    context: Optional[Mapping[str, Any]],
    now_ms: Optional[int] = None,
    thresholds: Optional[RiskThresholds] = None,
) -> Dict[str, Any]:
    """
    Return a copy of ``context`` with risk engine output folded in.

    Reads ``assets``/``positions``/``activities`` from the context. Sets
    ``snapshotTs`` (from ``snapshotAgeMs`` when absent), ``riskEngine``,
    ``dataCoverage``, ``riskSeverity`` and ``riskSignals``; values already
    supplied by the caller are left untouched.
    """
    enriched: Dict[str, Any] = dict(context or {})
    now = int(_to_finite(now_ms, time.time() * 1000))
    if not enriched.get("snapshotTs"):
        age = max(0.0, _to_finite(enriched.get("snapshotAgeMs")))
        enriched["snapshotTs"] = int(now - age)

    snapshot = evaluate_risk_snapshot(
        assets=enriched.get("assets"),
        positions=enriched.get("positions"),
        activities=enriched.get("activities"),
        now_ms=now,
        snapshot_ts=int(_to_finite(enriched.get("snapshotTs"), now)),
        thresholds=thresholds,
    )
    if not enriched.get("riskEngine"):
        enriched["riskEngine"] = snapshot.to_context()
    if not math.isfinite(_to_finite(enriched.get("dataCoverage"), math.nan)):
        enriched["dataCoverage"] = snapshot.coverage
    if not enriched.get("riskSeverity"):
        enriched["riskSeverity"] = snapshot.severity
    if not enriched.get("riskSignals"):
        engine = enriched.get("riskEngine")
        enriched["riskSignals"] = engine.get("signals", []) if isinstance(engine, Mapping) else []
    return enriched
