"""
Tests for the contract normalizer ladder (validated -> repaired -> fallback).
"""

import json
import math
from dataclasses import replace

import pytest

from ai.normalizer import (
    CANONICAL_ACTION,
    CANONICAL_RISK,
    GENERIC_EVIDENCE,
    build_fallback_contract,
    extract_json_object,
    normalize_contract,
    synthesize_evidence,
)
from ai.registry import lookup
from tests.helpers import BASE_MS, contract_json

NOW = BASE_MS


@pytest.fixture
def overview():
    return lookup("overview_pulse")


@pytest.fixture
def journal():
    return lookup("journal_reflection")


class TestStructuredParse:
    """Tier 1: JSON payloads"""

    def test_bare_json_validates(self, overview):
        contract, status = normalize_contract(contract_json(), overview, {}, NOW)
        assert status == "validated"
        assert contract.risk == "BTC is 60% of tracked value."
        assert contract.action == "Trim BTC toward a 40% cap."
        assert contract.confidence == 0.8
        assert len(contract.evidence) == 2
        assert contract.expires_at == NOW + overview.ttl_ms

    def test_fenced_json_validates(self, overview):
        raw = "Here you go:\n```json\n" + contract_json(confidence=0.66) + "\n```\nThanks"
        contract, status = normalize_contract(raw, overview, {}, NOW)
        assert status == "validated"
        assert contract.confidence == 0.66

    def test_embedded_json_validates(self, overview):
        raw = "Sure. " + contract_json() + " Let me know."
        _, status = normalize_contract(raw, overview, {}, NOW)
        assert status == "validated"

    def test_confidence_is_clamped_and_defaulted(self, overview):
        contract, _ = normalize_contract(contract_json(confidence=7), overview, {}, NOW)
        assert contract.confidence == 1.0
        contract, _ = normalize_contract(contract_json(confidence="high"), overview, {}, NOW)
        assert contract.confidence == 0.6

    def test_future_expiry_is_kept_and_past_expiry_replaced(self, overview):
        future = NOW + 10 * 60 * 1000
        contract, _ = normalize_contract(contract_json(expiresAt=future), overview, {}, NOW)
        assert contract.expires_at == future
        contract, _ = normalize_contract(contract_json(expiresAt=NOW - 1), overview, {}, NOW)
        assert contract.expires_at == NOW + overview.ttl_ms

    def test_evidence_is_cleaned_and_capped(self, overview):
        evidence = ["  a  ", "a", "", 12, "b", "c", "d", "e"]
        contract, _ = normalize_contract(contract_json(evidence=evidence), overview, {}, NOW)
        assert contract.evidence == ["a", "12", "b", "c"]

    def test_text_fields_are_truncated(self, overview):
        contract, _ = normalize_contract(contract_json(risk="x" * 1000), overview, {}, NOW)
        assert len(contract.risk) == 280

    def test_empty_risk_does_not_validate(self, overview):
        raw = json.dumps({"risk": "", "action": "Do a thing"})
        _, status = normalize_contract(raw, overview, {}, NOW)
        assert status != "validated"

    def test_extract_json_object(self):
        assert extract_json_object('{"a": 1}') == {"a": 1}
        assert extract_json_object("[1, 2]") is None
        assert extract_json_object('{"a": ') is None
        assert extract_json_object("") is None


class TestRepair:
    """Tier 2: labelled lines and prose"""

    def test_labelled_lines(self, overview):
        raw = "Risk: ETH is 45% of spot value.\nAction: Rebalance ETH.\nEvidence: ETH 45%; HHI 0.355"
        contract, status = normalize_contract(raw, overview, {}, NOW)
        assert status == "repaired"
        assert contract.risk == "ETH is 45% of spot value."
        assert contract.action == "Rebalance ETH."
        assert contract.evidence == ["ETH 45%", "HHI 0.355"]
        assert contract.confidence == pytest.approx(0.56)

    def test_markdown_labels_and_bulleted_evidence(self, overview):
        raw = "**Risk:** Funding is elevated.\n- **Action**: Reduce perp size.\nEvidence:\n- 42 bps funding\n- 3 perps open"
        contract, status = normalize_contract(raw, overview, {}, NOW)
        assert status == "repaired"
        assert contract.risk == "Funding is elevated."
        assert contract.action == "Reduce perp size."
        assert contract.evidence == ["42 bps funding", "3 perps open"]

    def test_truncated_json_is_repaired_from_lines(self, overview):
        raw = '{\n"risk": "Leverage is high",\n"action": "Cut size",\n"confidence": 0.'
        contract, status = normalize_contract(raw, overview, {}, NOW)
        assert status == "repaired"
        assert contract.risk == "Leverage is high"
        assert contract.action == "Cut size"

    def test_json_with_empty_risk_keeps_the_given_action(self, overview):
        raw = '{"risk": "", "action": "Trim BTC toward a 40% cap.", "confidence": 0.8}'
        contract, status = normalize_contract(raw, overview, {}, NOW)
        assert status == "repaired"
        assert contract.risk == CANONICAL_RISK
        assert contract.action == "Trim BTC toward a 40% cap."
        assert contract.confidence == pytest.approx(0.56)

    def test_truncated_single_line_json_stops_at_closing_quote(self, overview):
        raw = '{"risk": "Leverage is 4.2x", "action": "Cut size", "confid'
        contract, status = normalize_contract(raw, overview, {}, NOW)
        assert status == "repaired"
        assert contract.risk == "Leverage is 4.2x"
        assert contract.action == CANONICAL_ACTION

    def test_prose_sentences(self, overview):
        raw = "Your book leans heavily on BTC. Consider moving some into stablecoins. Extra words here."
        contract, status = normalize_contract(raw, overview, {}, NOW)
        assert status == "repaired"
        assert contract.risk == "Your book leans heavily on BTC."
        assert contract.action == "Consider moving some into stablecoins."

    def test_single_sentence_gets_canonical_action(self, overview):
        contract, status = normalize_contract("Exposure looks heavy today.", overview, {}, NOW)
        assert status == "repaired"
        assert contract.action == CANONICAL_ACTION

    def test_repair_confidence_respects_feature_floor(self, journal):
        contract, _ = normalize_contract("Risk: Notes missing.\nAction: Add notes.", journal, {}, NOW)
        # journal min_confidence is 0.5, so the 0.52 repair floor applies
        assert contract.confidence == pytest.approx(0.52)


class TestFallback:
    """Tier 3: deterministic fallback"""

    @pytest.mark.parametrize("raw", [None, "", "   ", "{}", '{"risk": ""}', "ok", "12 34 !!"])
    def test_unusable_input_falls_back(self, overview, raw):
        contract, status = normalize_contract(raw, overview, {}, NOW)
        assert status == "fallback"
        assert contract.risk
        assert contract.action
        assert 0 <= contract.confidence <= 1
        assert contract.expires_at == NOW + overview.ttl_ms

    def test_fallback_uses_feature_template(self, overview):
        contract = build_fallback_contract(overview, {"topHoldings": [{"symbol": "SOL"}]}, NOW)
        assert "SOL" in contract.risk
        assert contract.action == "Rebalance or hedge top exposure."

    def test_fallback_confidence_band(self, overview, journal):
        assert build_fallback_contract(overview, {}, NOW).confidence == pytest.approx(0.56)
        assert build_fallback_contract(journal, {}, NOW).confidence == pytest.approx(0.5)

    def test_broken_template_uses_canonical_text(self, overview):
        def explode(context):
            raise RuntimeError("template bug")

        broken = replace(overview, fallback=explode)
        contract = build_fallback_contract(broken, {}, NOW)
        assert contract.risk == CANONICAL_RISK
        assert contract.action == CANONICAL_ACTION


class TestEvidenceSynthesis:
    def test_priority_order(self, overview):
        context = {
            "topHoldings": [{"symbol": "BTC", "allocPct": 61.234}],
            "riskSignals": [
                {"rule": "funding_drag", "severity": "info", "evidence": ["Funding is flat"]},
                {"rule": "concentration", "severity": "critical", "evidence": ["BTC dominates"]},
            ],
            "dataCoverage": 0.8,
            "venue": "coinbase",
        }
        items = synthesize_evidence(overview, context)
        # overview needs 2 items
        assert items == ["Top holding BTC is 61.2% of portfolio", "BTC dominates"]

    def test_filler_when_context_is_empty(self, overview):
        assert synthesize_evidence(overview, {}) == list(GENERIC_EVIDENCE[:2])

    def test_coverage_and_sources(self):
        config = lookup("overview_pulse")
        config = replace(config, policy=replace(config.policy, min_evidence_items=4))
        items = synthesize_evidence(config, {"dataCoverage": 0.5, "sources": ["a", "b", "c"]})
        assert items == ["Data coverage is 50%", "Source: a", "Source: b", GENERIC_EVIDENCE[0]]

    def test_missing_evidence_is_synthesized_on_validate(self, overview):
        raw = json.dumps({"risk": "r text", "action": "a text", "confidence": 0.9})
        contract, status = normalize_contract(raw, overview, {"topHoldings": [{"symbol": "ETH"}]}, NOW)
        assert status == "validated"
        assert contract.evidence[0] == "Top holding is ETH"
        assert len(contract.evidence) == 2

    def test_confidence_never_nan(self, overview):
        contract, _ = normalize_contract(contract_json(confidence=float("nan")), overview, {}, NOW)
        assert math.isfinite(contract.confidence)
