from __future__ import annotations

import json
import re
from pathlib import Path

import allure
from click.testing import CliRunner

from workflow_pilot.main import workflow_pilot

pytestmark = [
    allure.epic("CLI"),
    allure.feature("Run, Escalate, Resume"),
]

PICK_DB = """\
name: pick-db
variables:
  service: orders
steps:
  - type: action
    name: draft
    provider: codex
    model: gpt-test
    prompt: "Draft schema for {{service}}"
    output: draft
  - type: decision
    name: choose
    question: "Which database should the {{service}} service use?"
    output: database
  - type: action
    name: provision
    prompt: "Provision {{database}}"
    output: provisioned
"""


def _write_workflow(directory: Path, name: str, text: str) -> Path:
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / name
    path.write_text(text, "utf-8")
    return path


def test_cli_run_escalate_respond_and_inspect(tmp_path: Path, echo_agent_env: Path) -> None:
    runner = CliRunner()
    workflow = _write_workflow(tmp_path / "workflows", "pick-db.yaml", PICK_DB)

    started = runner.invoke(
        workflow_pilot,
        ["run", str(workflow), "--var", "service=billing", "--run-id", "run-cli"],
    )

    assert started.exit_code == 0, started.output
    assert "Run: run-cli" in started.output
    assert "Status: paused" in started.output
    assert "Stop reason: escalation" in started.output
    match = re.search(r"Pending escalation: (esc-[0-9a-f]+)", started.output)
    assert match is not None
    escalation_id = match.group(1)

    listed = runner.invoke(workflow_pilot, ["runs", "list"])
    assert listed.exit_code == 0, listed.output
    assert "Runs: 1" in listed.output
    assert "run-cli workflow=pick-db status=paused next_step=1" in listed.output

    pending = runner.invoke(workflow_pilot, ["escalations", "list", "--status", "pending", "--format", "json"])
    assert pending.exit_code == 0, pending.output
    [record] = json.loads(pending.output)
    assert record["id"] == escalation_id
    assert record["runId"] == "run-cli"
    assert record["question"] == "Which database should the billing service use?"
    assert record["aiConfidence"] == 0.5
    assert "response" not in record

    answered = runner.invoke(workflow_pilot, ["escalations", "respond", escalation_id, "PostgreSQL"])
    assert answered.exit_code == 0, answered.output
    assert f"Escalation {escalation_id}: resolved" in answered.output
    assert "Status: completed" in answered.output

    shown = runner.invoke(workflow_pilot, ["runs", "show", "run-cli"])
    assert shown.exit_code == 0, shown.output
    assert "Status: completed" in shown.output
    assert '"provisioned": "Provision PostgreSQL"' in shown.output
    assert "Task activity: 2" in shown.output
    assert "step=0 draft codex/gpt-test status=completed attempt=1" in shown.output

    metrics = runner.invoke(workflow_pilot, ["escalations", "metrics"])
    assert metrics.exit_code == 0, metrics.output
    assert "Escalations: 1" in metrics.output
    assert "Resolved: 1" in metrics.output
    assert "  pick-db: 1" in metrics.output

    assert runner.invoke(workflow_pilot, ["runs", "list"]).output.startswith("Runs: 0")
    archived = runner.invoke(workflow_pilot, ["runs", "list", "--all"])
    assert "run-cli workflow=pick-db status=completed" in archived.output


def test_cli_validate_reports_steps_and_errors(tmp_path: Path, echo_agent_env: Path) -> None:
    runner = CliRunner()
    valid = _write_workflow(tmp_path / "defs", "pick-db.yaml", PICK_DB)
    broken = _write_workflow(
        tmp_path / "broken",
        "broken.yaml",
        "name: broken\nsteps:\n  - type: action\n    prompt: 'Use {{missing}}'\n",
    )
    caller = _write_workflow(
        tmp_path / "callers",
        "caller.yaml",
        "name: caller\nsteps:\n  - type: invoke-workflow\n    workflow: ghost\n",
    )

    ok = runner.invoke(workflow_pilot, ["validate", str(valid)])
    assert ok.exit_code == 0, ok.output
    assert "Workflow valid: pick-db (3 steps)" in ok.output
    assert "decision" in ok.output

    failed = runner.invoke(workflow_pilot, ["validate", str(broken)])
    assert failed.exit_code == 1
    assert "undefined variable 'missing'" in failed.output

    unresolved = runner.invoke(workflow_pilot, ["validate", str(caller), "--catalog", str(tmp_path / "defs")])
    assert unresolved.exit_code == 1
    assert "Unknown workflow 'ghost'" in unresolved.output


def test_cli_rejects_malformed_variables(tmp_path: Path, echo_agent_env: Path) -> None:
    workflow = _write_workflow(tmp_path / "workflows", "pick-db.yaml", PICK_DB)

    result = CliRunner().invoke(workflow_pilot, ["run", str(workflow), "--var", "novalue"])

    assert result.exit_code == 1
    assert "expected key=value" in result.output


def test_cli_inspection_commands_on_empty_data_dir(echo_agent_env: Path) -> None:
    runner = CliRunner()

    assert runner.invoke(workflow_pilot, ["runs", "show", "run-missing"]).output.strip() == (
        "Run not found: run-missing"
    )
    assert runner.invoke(workflow_pilot, ["escalations", "list"]).output.strip() == "Escalations: 0"
    assert runner.invoke(workflow_pilot, ["workspaces", "list"]).output.strip() == "Workspaces: 0"
    metrics = runner.invoke(workflow_pilot, ["escalations", "metrics"])
    assert "Average time to response: -" in metrics.output
