"""
Tests for the offline guardrail eval replay.
"""

import json
from pathlib import Path

from ai.schemas import InsightContract
from tools.ai_eval import (
    EvalScenario,
    evaluate_scenarios,
    format_report,
    is_contract_valid,
    load_scenarios,
    main,
)
from tests.helpers import BASE_MS, MINUTE_MS

REPO_ROOT = Path(__file__).resolve().parents[1]
FIXTURES = REPO_ROOT / "docs" / "ai-evals"

GOOD_CONTRACT = {
    "risk": "BTC is 60% of tracked value.",
    "action": "Trim BTC toward a 40% cap.",
    "confidence": 0.8,
    "evidence": ["BTC 60% of tracked value", "HHI 0.46"],
}


def write_fixture(directory: Path, name: str, scenarios) -> Path:
    path = directory / name
    path.write_text(json.dumps({"scenarios": scenarios}))
    return path


def scenario(**overrides):
    data = {
        "id": "s1",
        "feature": "overview_pulse",
        "context": {"dataCoverage": 0.9, "riskSeverity": "warning"},
        "contract": dict(GOOD_CONTRACT),
        "expectedVerdict": "warn",
    }
    data.update(overrides)
    return data


class TestShippedFixtures:
    def test_all_gates_pass(self):
        scenarios = load_scenarios(FIXTURES)
        assert len(scenarios) == 16

        report = evaluate_scenarios(scenarios, clock=lambda: BASE_MS)

        assert report.mismatches == []
        assert report.verdict_accuracy == 1.0
        assert report.passed
        assert 0 < report.fallback_rate < 1

    def test_main_exit_code(self, capsys, tmp_path):
        code = main(["--fixtures", str(FIXTURES), "--config", str(tmp_path / "none.yaml"), "--json"])
        out = json.loads(capsys.readouterr().out)
        assert code == 0
        assert out["passed"] is True
        assert out["scenarios"] == 16


class TestLoading:
    def test_invalid_entries_are_skipped(self, tmp_path):
        write_fixture(tmp_path, "a.json", [
            scenario(id="ok"),
            scenario(id="no-feature", feature=""),
            scenario(id="bad-context", context=[1, 2]),
            {"id": "no-contract", "feature": "overview_pulse", "expectedVerdict": "warn"},
        ])
        (tmp_path / "b.json").write_text("{broken")
        (tmp_path / "c.json").write_text(json.dumps({"description": "no scenarios key"}))

        scenarios = load_scenarios(tmp_path)

        assert [s.id for s in scenarios] == ["ok"]

    def test_malformed_contracts_are_skipped(self, tmp_path, caplog):
        write_fixture(tmp_path, "a.json", [
            scenario(id="bad-offset", contract=dict(GOOD_CONTRACT, expiresAtOffsetMs="soon")),
            scenario(id="list-contract", contract=["risk", "action"]),
            scenario(id="numeric-raw", contract=None, raw=42),
            "not a scenario",
            scenario(id="ok", contract=dict(GOOD_CONTRACT, expiresAtOffsetMs=60000)),
        ])

        with caplog.at_level("WARNING"):
            scenarios = load_scenarios(tmp_path)

        assert [s.id for s in scenarios] == ["ok"]
        assert "bad-offset expiresAtOffsetMs must be a number" in caplog.text
        assert "list-contract contract must be an object" in caplog.text

        report = evaluate_scenarios(scenarios, clock=lambda: BASE_MS)
        assert report.scenarios == 1
        assert report.contract_valid_rate == 1.0

    def test_missing_directory(self, tmp_path):
        assert load_scenarios(tmp_path / "absent") == []

    def test_from_dict_raw(self):
        parsed = EvalScenario.from_dict({"id": "r", "feature": "wallet_health", "raw": "x", "expectedVerdict": "warn"})
        assert parsed.raw == "x"
        assert parsed.contract is None
        assert parsed.context == {}


class TestEvaluation:
    def test_stale_snapshot_is_checked(self):
        scenarios = [EvalScenario.from_dict(scenario(
            id="stale",
            context={"dataCoverage": 0.9, "riskSeverity": "warning", "snapshotAgeMs": 13 * MINUTE_MS},
            expectedVerdict="block",
        ))]
        report = evaluate_scenarios(scenarios, clock=lambda: BASE_MS)
        assert report.stale_correctness == 1.0
        assert report.block_recall == 1.0
        assert report.verdict_accuracy == 1.0

    def test_invalid_contract_is_counted(self):
        bad = dict(GOOD_CONTRACT, confidence=1.7)
        scenarios = [EvalScenario.from_dict(scenario(contract=bad, expectedVerdict="warn"))]
        report = evaluate_scenarios(scenarios, clock=lambda: BASE_MS)
        assert report.contract_valid_rate == 0.0
        assert not report.passed

    def test_unknown_feature_is_skipped(self):
        scenarios = [EvalScenario.from_dict(scenario(feature="not_a_feature"))]
        report = evaluate_scenarios(scenarios)
        assert report.scenarios == 0

    def test_missed_block_fails_gates(self, tmp_path, capsys):
        write_fixture(tmp_path, "miss.json", [scenario(id="should-block", expectedVerdict="block")])

        code = main(["--fixtures", str(tmp_path), "--config", str(tmp_path / "none.yaml")])

        captured = capsys.readouterr()
        assert code == 1
        assert "should-block: expected block, got warn" in captured.out
        assert "failed quality gates" in captured.err

    def test_no_scenarios(self, tmp_path, capsys):
        assert main(["--fixtures", str(tmp_path), "--config", str(tmp_path / "none.yaml")]) == 1
        assert "No AI eval scenarios" in capsys.readouterr().err

    def test_bad_config(self, tmp_path, capsys):
        config = tmp_path / "bad.yaml"
        config.write_text("ai:\n  provider: llama\n")
        assert main(["--fixtures", str(FIXTURES), "--config", str(config)]) == 1
        assert "AI eval failed" in capsys.readouterr().err

    def test_format_report(self):
        report = evaluate_scenarios([EvalScenario.from_dict(scenario())], clock=lambda: BASE_MS)
        lines = format_report(report)
        assert lines[0] == "AI eval replay summary"
        assert "- scenarios: 1" in lines


def test_contract_validity():
    contract = InsightContract(risk="r", action="a", confidence=0.5, evidence=[], expires_at=1)
    assert is_contract_valid(contract)
    assert not is_contract_valid(InsightContract(risk=" ", action="a", confidence=0.5, evidence=[], expires_at=1))
    nan = InsightContract(risk="r", action="a", confidence=float("nan"), evidence=[], expires_at=1)
    assert not is_contract_valid(nan)
