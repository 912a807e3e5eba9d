#!/usr/bin/env python3
"""Offline replay of insight guardrails against fixture scenarios.

Each scenario supplies a feature, a context (optionally with ``snapshotAgeMs``
to simulate an old snapshot), a contract (or ``raw`` provider text that is
normalized offline) and the expected verdict. The context is enriched with the
deterministic risk engine, the policy engine is run, and quality gates decide
the exit code. No network calls are made.

Usage:
    python -m tools.ai_eval                          # docs/ai-evals/*.json
    python -m tools.ai_eval --fixtures path/to/dir --json
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from ai.context_meta import MAX_SOURCE_IDS, now_ms
from ai.normalizer import normalize_contract
from ai.policy import evaluate_policy
from ai.registry import FEATURE_REGISTRY, FeatureRegistry, build_registry
from ai.schemas import ContextMeta, ContractStatus, FeatureConfig, InsightContract
from ai.settings import configure_logging, load_settings
from core.exceptions import ConfigError
from core.risk_engine import RiskThresholds, enrich_context
from infra.latency_tracker import LatencyTracker

logger = logging.getLogger(__name__)

DEFAULT_FIXTURES = Path("docs/ai-evals")
LATENCY_OPERATION = "policy_eval"

GATES = {
    "contract_valid_rate": 0.95,
    "stale_correctness": 1.0,
    "block_recall": 0.9,
    "evidence_completeness": 0.9,
}


@dataclass
class EvalScenario:
    id: str
    feature: str
    context: Dict[str, Any]
    expected_verdict: str
    contract: Optional[Dict[str, Any]] = None
    raw: Optional[str] = None
    contract_status: Optional[ContractStatus] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EvalScenario":
        if not isinstance(data, dict):
            raise ValueError("scenario must be an object")
        missing = [k for k in ("id", "feature", "expectedVerdict") if not data.get(k)]
        if data.get("contract") is None and data.get("raw") is None:
            missing.append("contract|raw")
        if missing:
            raise ValueError(f"scenario {data.get('id', '?')} missing {', '.join(missing)}")
        context = data.get("context") or {}
        if not isinstance(context, dict):
            raise ValueError(f"scenario {data['id']} context must be an object")
        contract = data.get("contract")
        if contract is not None:
            if not isinstance(contract, dict):
                raise ValueError(f"scenario {data['id']} contract must be an object")
            offset = contract.get("expiresAtOffsetMs")
            if offset is not None:
                try:
                    int(offset)
                except (TypeError, ValueError):
                    raise ValueError(f"scenario {data['id']} expiresAtOffsetMs must be a number") from None
        raw = data.get("raw")
        if raw is not None and not isinstance(raw, str):
            raise ValueError(f"scenario {data['id']} raw must be a string")
        return cls(
            id=str(data["id"]),
            feature=str(data["feature"]),
            context=context,
            expected_verdict=str(data["expectedVerdict"]),
            contract=contract,
            raw=raw,
            contract_status=data.get("contractStatus"),
        )


@dataclass
class EvalSummary:
    total: int = 0
    contract_valid: int = 0
    fallback_count: int = 0
    blocked_count: int = 0
    expected_blocked_count: int = 0
    true_block_count: int = 0
    false_block_count: int = 0
    stale_checks: int = 0
    stale_correct: int = 0
    evidence_severe_checks: int = 0
    evidence_complete: int = 0
    verdict_matches: int = 0
    mismatches: List[str] = field(default_factory=list)


@dataclass
class EvalReport:
    scenarios: int
    contract_valid_rate: float
    block_precision: float
    block_recall: float
    stale_correctness: float
    evidence_completeness: float
    avg_latency_ms: float
    p95_latency_ms: float
    fallback_rate: float
    verdict_accuracy: float
    mismatches: List[str]

    @property
    def passed(self) -> bool:
        return all(getattr(self, name) >= floor for name, floor in GATES.items())

    def to_dict(self) -> Dict[str, Any]:
        out = asdict(self)
        out["passed"] = self.passed
        return out


def load_scenarios(root: Path) -> List[EvalScenario]:
    """Read every ``*.json`` file under ``root`` shaped ``{"scenarios": [...]}``."""
    scenarios: List[EvalScenario] = []
    if not root.is_dir():
        logger.warning(f"Fixture directory not found: {root}")
        return scenarios
    for path in sorted(root.glob("*.json")):
        try:
            with path.open("r", encoding="utf-8") as fh:
                parsed = json.load(fh)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Skipping unreadable fixture {path}: {e}")
            continue
        items = parsed.get("scenarios") if isinstance(parsed, dict) else None
        if not isinstance(items, list):
            continue
        for item in items:
            try:
                scenarios.append(EvalScenario.from_dict(item))
            except (TypeError, ValueError) as e:
                logger.warning(f"Skipping invalid scenario in {path.name}: {e}")
    return scenarios


def build_eval_context_meta(scenario: EvalScenario, now: int) -> ContextMeta:
    age = scenario.context.get("snapshotAgeMs") or 0
    try:
        age = max(0, int(age))
    except (TypeError, ValueError):
        age = 0
    sources = scenario.context.get("sources")
    source_ids = [str(s) for s in sources][:MAX_SOURCE_IDS] if isinstance(sources, list) else ["eval-fixture"]
    return ContextMeta(snapshot_ts=now - age, context_hash=scenario.id, source_ids=source_ids)


def _as_float(value: Any) -> float:
    """Fixture numbers may be missing or malformed; NaN marks the contract invalid."""
    try:
        return float(value)
    except (TypeError, ValueError):
        return float("nan")


def build_contract(
    scenario: EvalScenario,
    config: FeatureConfig,
    context: Dict[str, Any],
    now: int,
) -> Tuple[InsightContract, ContractStatus]:
    if scenario.raw is not None:
        return normalize_contract(scenario.raw, config, context, now)
    payload = scenario.contract or {}
    evidence = payload.get("evidence")
    contract = InsightContract(
        risk=str(payload.get("risk", "")),
        action=str(payload.get("action", "")),
        confidence=_as_float(payload.get("confidence")),
        evidence=[str(e) for e in evidence] if isinstance(evidence, list) else [],
        expires_at=now + int(payload.get("expiresAtOffsetMs") or config.ttl_ms),
    )
    return contract, scenario.contract_status or "validated"


def is_contract_valid(contract: InsightContract) -> bool:
    if not contract.risk.strip() or not contract.action.strip():
        return False
    if not 0.0 <= contract.confidence <= 1.0:  # NaN fails too
        return False
    return isinstance(contract.evidence, list) and isinstance(contract.expires_at, int)


def evaluate_scenarios(
    scenarios: List[EvalScenario],
    registry: Optional[FeatureRegistry] = None,
    thresholds: Optional[RiskThresholds] = None,
    tracker: Optional[LatencyTracker] = None,
    clock=now_ms,
) -> EvalReport:
    registry = registry or FEATURE_REGISTRY
    tracker = tracker or LatencyTracker(retention_per_operation=max(1, len(scenarios)))
    summary = EvalSummary()

    for scenario in scenarios:
        if scenario.feature not in registry:
            logger.warning(f"Skipping scenario {scenario.id}: unknown feature {scenario.feature}")
            continue
        now = clock()
        config = registry.lookup(scenario.feature)
        context = enrich_context(scenario.context, now, thresholds)
        meta = build_eval_context_meta(scenario, now)
        contract, status = build_contract(scenario, config, context, now)

        summary.total += 1
        if is_contract_valid(contract):
            summary.contract_valid += 1
        if status == "fallback":
            summary.fallback_count += 1

        start = time.perf_counter()
        result = evaluate_policy(config, contract, context, meta, rollout_allowed=True, now=now)
        tracker.record(LATENCY_OPERATION, (time.perf_counter() - start) * 1000)

        expected_blocked = scenario.expected_verdict == "block"
        actual_blocked = result.verdict == "block"
        summary.expected_blocked_count += expected_blocked
        summary.blocked_count += actual_blocked
        summary.true_block_count += expected_blocked and actual_blocked
        summary.false_block_count += actual_blocked and not expected_blocked
        if result.verdict == scenario.expected_verdict:
            summary.verdict_matches += 1
        else:
            summary.mismatches.append(
                f"{scenario.id}: expected {scenario.expected_verdict}, got {result.verdict} "
                f"({', '.join(result.policy.reasons) or 'no reasons'})"
            )

        if now - meta.snapshot_ts > config.policy.max_context_age_ms:
            summary.stale_checks += 1
            if actual_blocked and "stale_context" in result.policy.reasons:
                summary.stale_correct += 1

        if result.severity in ("warning", "critical") and not actual_blocked:
            summary.evidence_severe_checks += 1
            if len(contract.evidence) >= config.policy.min_evidence_items:
                summary.evidence_complete += 1

    stats = tracker.get_stats(LATENCY_OPERATION)
    total = summary.total
    return EvalReport(
        scenarios=total,
        contract_valid_rate=summary.contract_valid / total if total else 0.0,
        block_precision=summary.true_block_count / summary.blocked_count if summary.blocked_count else 1.0,
        block_recall=(
            summary.true_block_count / summary.expected_blocked_count if summary.expected_blocked_count else 1.0
        ),
        stale_correctness=summary.stale_correct / summary.stale_checks if summary.stale_checks else 1.0,
        evidence_completeness=(
            summary.evidence_complete / summary.evidence_severe_checks if summary.evidence_severe_checks else 1.0
        ),
        avg_latency_ms=stats.mean_ms if stats else 0.0,
        p95_latency_ms=stats.p95_ms if stats else 0.0,
        fallback_rate=summary.fallback_count / total if total else 0.0,
        verdict_accuracy=summary.verdict_matches / total if total else 0.0,
        mismatches=summary.mismatches,
    )


def format_report(report: EvalReport) -> List[str]:
    lines = [
        "AI eval replay summary",
        f"- scenarios: {report.scenarios}",
        f"- contract valid rate: {report.contract_valid_rate * 100:.1f}%",
        f"- guardrail block precision: {report.block_precision * 100:.1f}%",
        f"- guardrail block recall: {report.block_recall * 100:.1f}%",
        f"- stale-data block correctness: {report.stale_correctness * 100:.1f}%",
        f"- evidence completeness: {report.evidence_completeness * 100:.1f}%",
        f"- avg latency: {report.avg_latency_ms:.2f}ms",
        f"- p95 latency: {report.p95_latency_ms:.2f}ms",
        f"- fallback rate: {report.fallback_rate * 100:.1f}%",
        f"- verdict accuracy: {report.verdict_accuracy * 100:.1f}%",
    ]
    lines.extend(f"  ! {m}" for m in report.mismatches)
    return lines


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Replay insight guardrails against eval fixtures")
    parser.add_argument("--fixtures", default=str(DEFAULT_FIXTURES), help="Directory of *.json scenario files")
    parser.add_argument("--config", default=None, help="App config (feature overrides, risk thresholds)")
    parser.add_argument("--json", action="store_true", help="Print the report as JSON")
    args = parser.parse_args(argv)

    try:
        settings = load_settings(args.config)
    except ConfigError as e:
        print(f"AI eval failed: {e}", file=sys.stderr)
        return 1
    configure_logging(settings, "WARNING")

    scenarios = load_scenarios(Path(args.fixtures))
    if not scenarios:
        print(f"No AI eval scenarios found under {args.fixtures}/*.json", file=sys.stderr)
        return 1

    registry = build_registry({
        feature: override.model_dump(exclude_none=True) for feature, override in settings.features.items()
    })
    report = evaluate_scenarios(scenarios, registry=registry, thresholds=settings.risk_thresholds())

    if args.json:
        print(json.dumps(report.to_dict(), indent=2))
    else:
        for line in format_report(report):
            print(line)

    if not report.passed:
        print("AI eval failed quality gates.", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
