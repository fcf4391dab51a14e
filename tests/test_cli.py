"""
tests/test_cli.py

The chipsettle command line, driven through click's CliRunner.
"""

import json

import pytest
from click.testing import CliRunner

from chipsettle.cli import cli

from helpers.session_builder import SessionBuilder


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def snapshot(tmp_path):
    builder = (
        SessionBuilder("scenario-b")
        .player("alice",   buy_in=100, chips=180)
        .player("bob",     buy_in=100, chips=150)
        .player("charlie", buy_in=100, chips=20)
        .player("diana",   buy_in=100, chips=50)
    )
    return builder.write_snapshot(tmp_path / "game.json")


@pytest.fixture
def unbalanced(tmp_path):
    return SessionBuilder("lopsided").player("solo", buy_in=100, chips=150).write_snapshot(tmp_path / "bad.json")


def _invoke(runner, *args):
    return runner.invoke(cli, ["--no-color", "--log-level", "ERROR", *map(str, args)])


class TestOptimize:

    def test_human_output(self, runner, snapshot):
        result = _invoke(runner, "optimize", snapshot)
        assert result.exit_code == 0, result.output
        assert "Charlie" in result.output
        assert "2 instead of 4" in result.output
        assert "VALID" in result.output

    def test_json_output(self, runner, snapshot):
        result = _invoke(runner, "optimize", snapshot, "--algorithm", "minimal", "--format", "json")
        assert result.exit_code == 0, result.output
        body = json.loads(result.stdout)["chipsettle_optimize"]
        assert body["valid"] is True
        assert body["result"]["algorithm_used"] == "minimal"
        assert len(body["result"]["optimized_payments"]) == 2
        assert len(body["validation"]["steps"]) == 6

    def test_unbalanced_session_is_an_error(self, runner, unbalanced):
        result = _invoke(runner, "optimize", unbalanced, "--format", "json")
        assert result.exit_code == 2
        body = json.loads(result.stdout)["chipsettle_optimize"]
        assert body["valid"] is False
        assert body["error"]

    def test_several_sessions_need_a_choice(self, runner, tmp_path):
        first = SessionBuilder("one").player("a", buy_in=10, chips=10)
        second = SessionBuilder("two").player("b", buy_in=10, chips=10)
        docs = [
            json.loads(first.write_snapshot(tmp_path / "one.json").read_text(encoding="utf-8")),
            json.loads(second.write_snapshot(tmp_path / "two.json").read_text(encoding="utf-8")),
        ]
        both = tmp_path / "both.json"
        both.write_text(json.dumps(docs), encoding="utf-8")

        assert _invoke(runner, "optimize", both).exit_code == 2
        chosen = _invoke(runner, "optimize", both, "--session", "two", "--format", "json")
        assert chosen.exit_code == 0, chosen.output
        assert json.loads(chosen.stdout)["chipsettle_optimize"]["result"]["session_id"] == "two"

    def test_not_json(self, runner, tmp_path):
        garbage = tmp_path / "garbage.json"
        garbage.write_text("{nope", encoding="utf-8")
        assert _invoke(runner, "optimize", garbage).exit_code == 2

    def test_config_file(self, runner, snapshot, tmp_path):
        bad = tmp_path / "bad.yaml"
        bad.write_text("settlement:\n  rake: 5\n", encoding="utf-8")
        result = runner.invoke(cli, ["--config", str(bad), "optimize", str(snapshot)])
        assert result.exit_code == 2


class TestCompare:

    def test_json_recommendation(self, runner, snapshot):
        result = _invoke(runner, "compare", snapshot, "--format", "json")
        assert result.exit_code == 0, result.output
        body = json.loads(result.stdout)["chipsettle_compare"]
        assert body["valid"] is True
        assert len(body["alternatives"]) == 5
        assert body["recommendation"]["option_id"] in {a["option_id"] for a in body["alternatives"]}

    def test_human_table(self, runner, snapshot):
        result = _invoke(runner, "compare", snapshot)
        assert result.exit_code == 0, result.output
        assert "Recommended" in result.output
        assert "Hub-Based" in result.output


class TestProveAndVerify:

    def test_narrative_to_stdout(self, runner, snapshot):
        result = _invoke(runner, "prove", snapshot)
        assert result.exit_code == 0, result.output
        assert "SETTLEMENT PROOF" in result.output

    def test_structured_export_verifies(self, runner, snapshot, tmp_path):
        out = tmp_path / "proof.json"
        proved = _invoke(runner, "prove", snapshot, "--export", "structured", "-o", out)
        assert proved.exit_code == 0, proved.output
        assert "written to" in proved.output
        assert json.loads(out.read_text(encoding="utf-8"))["type"] == "chipsettle-proof"

        verified = _invoke(runner, "verify", out, "--format", "json")
        assert verified.exit_code == 0, verified.output
        body = json.loads(verified.stdout)["chipsettle_verify"]
        assert body["valid"] is True
        assert all(body["assertions"].values())
        assert body["integrity"]["signature_valid"] is True

    def test_tampered_export_fails(self, runner, snapshot, tmp_path):
        out = tmp_path / "proof.json"
        _invoke(runner, "prove", snapshot, "--export", "structured", "-o", out)
        doc = json.loads(out.read_text(encoding="utf-8"))
        doc["proof"]["payments"][0]["amount"] = "1.00"
        out.write_text(json.dumps(doc), encoding="utf-8")

        result = _invoke(runner, "verify", out)
        assert result.exit_code == 1
        assert "INVALID" in result.output

        only = _invoke(runner, "verify", out, "--assertions-only", "--format", "json")
        body = json.loads(only.stdout)["chipsettle_verify"]
        assert body["integrity"] is None
        assert body["assertions"]["checksum"] is False

    def test_export_without_assertions_fails(self, runner, snapshot, tmp_path):
        out = tmp_path / "proof.json"
        _invoke(runner, "prove", snapshot, "--export", "structured", "-o", out)
        doc = json.loads(out.read_text(encoding="utf-8"))
        doc["proof"]["payments"][0]["amount"] = "999.00"
        del doc["assertions"]
        out.write_text(json.dumps(doc), encoding="utf-8")

        result = _invoke(runner, "verify", out, "--assertions-only", "--format", "json")
        assert result.exit_code == 1
        body = json.loads(result.stdout)["chipsettle_verify"]
        assert body["valid"] is False
        assert body["assertions"]["checksum"] is False

    def test_persistent_key(self, runner, snapshot, tmp_path):
        key = tmp_path / "settle.key"
        signers = []
        for name in ("a.json", "b.json"):
            out = tmp_path / name
            assert _invoke(runner, "prove", snapshot, "--export", "structured", "--key", key, "-o", out).exit_code == 0
            signers.append(json.loads(out.read_text(encoding="utf-8"))["proof"]["signature"]["signer_public_key"])
        assert key.exists()
        assert signers[0] == signers[1]

    def test_compact_export(self, runner, snapshot):
        result = _invoke(runner, "prove", snapshot, "--export", "compact")
        assert result.exit_code == 0
        assert "Settlement scenario-b" in result.output

    def test_verify_missing_file(self, runner, tmp_path):
        assert _invoke(runner, "verify", tmp_path / "absent.json").exit_code == 2

    def test_verify_rejects_non_proof(self, runner, tmp_path):
        other = tmp_path / "other.json"
        other.write_text(json.dumps({"hello": "world"}), encoding="utf-8")
        assert _invoke(runner, "verify", other).exit_code == 2

    def test_prove_unbalanced(self, runner, unbalanced):
        assert _invoke(runner, "prove", unbalanced).exit_code == 2
