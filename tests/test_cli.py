"""Tests for CLI parser options and commands."""

import json
from datetime import date
from pathlib import Path

import pytest

from voc_loop.cli import build_parser, main
from voc_loop.models import LLMUsage
from voc_loop.store import ClusterStore, Database


def test_cluster_parser_accepts_period_flags():
    args = build_parser().parse_args(
        ["cluster", "--app-id", "app-1", "--scope", "Tech_Bug", "--week", "40", "--year", "2025"]
    )
    assert args.command == "cluster"
    assert args.app_id == "app-1"
    assert args.scope == "Tech_Bug"
    assert args.week == 40
    assert args.year == 2025
    assert args.start_date is None


def test_cluster_all_parser_accepts_repeated_scopes():
    args = build_parser().parse_args(
        ["cluster-all", "--scope", "Tech_Bug", "--scope", "all", "--month", "10"]
    )
    assert args.scope == ["Tech_Bug", "all"]
    assert args.month == 10


def test_verify_create_parser_parses_dates():
    args = build_parser().parse_args(
        [
            "verify-create",
            "--app-id",
            "app-1",
            "--issue-type",
            "keyword",
            "--issue-value",
            "crash",
            "--go-live-date",
            "2025-10-15",
        ]
    )
    assert args.go_live_date == date(2025, 10, 15)
    assert args.baseline_start is None


def test_verify_create_parser_rejects_unknown_issue_type():
    with pytest.raises(SystemExit):
        build_parser().parse_args(
            ["verify-create", "--app-id", "a", "--issue-type", "sentiment", "--issue-value", "x"]
        )


def test_global_flags_precede_command():
    args = build_parser().parse_args(["--json", "--log-level", "INFO", "groups"])
    assert args.json is True
    assert args.log_level == "INFO"
    assert args.command == "groups"


@pytest.fixture
def workspace(tmp_path: Path, monkeypatch) -> Path:
    monkeypatch.chdir(tmp_path)
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        f"openai_api_key: ''\ndatabase_path: '{tmp_path / 'voc.sqlite3'}'\n",
        encoding="utf-8",
    )
    feedback_path = tmp_path / "feedback.jsonl"
    rows = []
    for index in range(20):
        day = 5 if index < 10 else 20
        rows.append(
            {
                "id": index,
                "app_id": "app-1",
                "category": "Payment" if index in {0, 1, 2, 3, 10} else "Other",
                "risk_level": "High",
                "process_status": "analyzed",
                "timestamp": f"2025-10-{day:02d}T09:00:00Z",
                "text": "payment failed" if index in {0, 1, 2, 3, 10} else "ok",
            }
        )
    feedback_path.write_text("\n".join(json.dumps(row) for row in rows) + "\n", encoding="utf-8")
    return tmp_path


def _run(workspace: Path, *argv: str) -> None:
    main(["--config", str(workspace / "config.yaml"), *argv])


def test_import_create_run_and_history(workspace: Path, capsys):
    _run(workspace, "import-feedback", "--input", str(workspace / "feedback.jsonl"))
    assert "Imported 20 feedback records" in capsys.readouterr().out

    _run(
        workspace,
        "--json",
        "verify-create",
        "--app-id",
        "app-1",
        "--issue-type",
        "category",
        "--issue-value",
        "Payment",
        "--baseline-start",
        "2025-10-01",
        "--baseline-end",
        "2025-10-14",
        "--verify-start",
        "2025-10-15",
        "--verify-end",
        "2025-10-31",
    )
    config = json.loads(capsys.readouterr().out)
    assert config["status"] == "monitoring"

    _run(workspace, "--json", "verify-run", "--config-id", str(config["id"]))
    result = json.loads(capsys.readouterr().out)
    assert result["baseline_count"] == 4
    assert result["verify_count"] == 1
    assert result["change_percent"] == -75.0
    assert result["conclusion"] == "resolved"
    marker = ClusterStore(Database(workspace / "voc.sqlite3")).get_marker(
        "verification", f"config:{config['id']}"
    )
    assert marker.outcome == "success"

    _run(workspace, "verify-history", "--config-id", str(config["id"]))
    assert "resolved" in capsys.readouterr().out

    _run(workspace, "--json", "summary", "--app-id", "app-1", "--year", "2025", "--month", "10")
    summary = json.loads(capsys.readouterr().out)
    assert summary["verifications"][0]["conclusion_text"] == "Resolved (down 75.0%)"


def test_verify_create_requires_windows_or_go_live(workspace: Path, capsys):
    with pytest.raises(SystemExit) as excinfo:
        _run(
            workspace,
            "verify-create",
            "--app-id",
            "app-1",
            "--issue-type",
            "keyword",
            "--issue-value",
            "crash",
            "--baseline-start",
            "2025-10-01",
        )
    assert excinfo.value.code == 1
    assert "missing" in capsys.readouterr().out


def test_verify_create_reports_invalid_windows(workspace: Path, capsys):
    with pytest.raises(SystemExit) as excinfo:
        _run(
            workspace,
            "verify-create",
            "--app-id",
            "app-1",
            "--issue-type",
            "keyword",
            "--issue-value",
            "crash",
            "--baseline-start",
            "2025-10-01",
            "--baseline-end",
            "2025-10-20",
            "--verify-start",
            "2025-10-15",
        )
    assert excinfo.value.code == 1
    assert "Invalid verification config" in capsys.readouterr().out


def test_verify_run_missing_config_exits(workspace: Path, capsys):
    with pytest.raises(SystemExit) as excinfo:
        _run(workspace, "verify-run", "--config-id", "77")
    assert excinfo.value.code == 1
    assert "does not exist" in capsys.readouterr().out


def test_cluster_without_api_key_exits(workspace: Path, capsys):
    with pytest.raises(SystemExit) as excinfo:
        _run(workspace, "cluster", "--app-id", "app-1", "--month", "10", "--year", "2025")
    assert excinfo.value.code == 2
    assert "OPENAI_API_KEY" in capsys.readouterr().out


def test_groups_reports_empty_store(workspace: Path, capsys):
    _run(workspace, "groups", "--app-id", "app-1")
    assert "No review groups found." in capsys.readouterr().out


def test_verify_run_all_writes_report(workspace: Path, capsys):
    _run(workspace, "import-feedback", "--input", str(workspace / "feedback.jsonl"))
    _run(
        workspace,
        "verify-create",
        "--app-id",
        "app-1",
        "--issue-type",
        "keyword",
        "--issue-value",
        "payment",
        "--go-live-date",
        "2025-10-15",
    )
    capsys.readouterr()

    report_path = workspace / "reports" / "verify.json"
    _run(workspace, "verify-run-all", "--report-json", str(report_path))

    out = capsys.readouterr().out
    assert "Success: 1" in out
    report = json.loads(report_path.read_text(encoding="utf-8"))
    assert report["kind"] == "verification"
    assert report["success"] == 1


def test_usage_reports_recorded_totals(workspace: Path, capsys):
    _run(workspace, "usage")
    assert "No LLM usage recorded." in capsys.readouterr().out

    store = ClusterStore(Database(workspace / "voc.sqlite3"))
    store.record_usage(
        operation="clustering",
        unit="app-1|all|2025-10",
        model="gpt-test",
        usage=LLMUsage(request_count=1, prompt_tokens=900, completion_tokens=100, total_tokens=1000),
    )

    _run(workspace, "--json", "usage", "--since", "2000-01-01")
    totals = json.loads(capsys.readouterr().out)
    assert totals["clustering"]["runs"] == 1
    assert totals["clustering"]["total_tokens"] == 1000


def test_usage_parser_parses_since():
    args = build_parser().parse_args(["usage", "--since", "2025-10-01"])
    assert args.since == date(2025, 10, 1)
