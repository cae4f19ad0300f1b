import re

import pytest
from typer.testing import CliRunner

import autoflow.cli as cli
from autoflow.cli import app

WORKFLOW_YAML = """
id: wf-cli
name: Lead nurture
steps:
  - id: start
    type: trigger
    config:
      event_type: contact_created
    edges:
      next: tag
  - id: tag
    type: action
    config:
      action_type: add_tag
      params:
        tag: nurtured
    edges:
      next: wait
  - id: wait
    type: delay
    config:
      amount: 2
      unit: days
"""

BROKEN_YAML = """
id: wf-broken
name: Broken
steps:
  - id: start
    type: trigger
    config:
      event_type: contact_created
    edges:
      next: call
  - id: call
    type: action
    config:
      action_type: send_fax
"""


@pytest.fixture
def runner(engine, monkeypatch):
    monkeypatch.setattr(cli, "_engine", engine)
    return CliRunner()


@pytest.fixture
def saved(runner, tmp_path):
    path = tmp_path / "nurture.yaml"
    path.write_text(WORKFLOW_YAML)
    result = runner.invoke(app, ["workflow", "save", str(path)])
    assert result.exit_code == 0, result.stdout
    return path


def test_workflow_lifecycle_commands(runner, saved):
    result = runner.invoke(app, ["workflow", "list"])
    assert result.exit_code == 0, result.stdout
    assert "wf-cli\tdraft\tLead nurture" in result.stdout

    result = runner.invoke(app, ["workflow", "validate", "wf-cli"])
    assert result.exit_code == 0
    assert "Workflow is valid" in result.stdout

    result = runner.invoke(app, ["workflow", "activate", "wf-cli"])
    assert result.exit_code == 0
    assert "Workflow wf-cli: active" in result.stdout

    result = runner.invoke(app, ["workflow", "list", "--status", "draft"])
    assert "No workflows found" in result.stdout

    result = runner.invoke(app, ["workflow", "show", "wf-cli"])
    assert result.exit_code == 0
    assert "- tag [action] (next -> wait)" in result.stdout

    result = runner.invoke(app, ["workflow", "pause", "wf-cli"])
    assert "Workflow wf-cli: paused" in result.stdout


def test_workflow_show_missing(runner):
    result = runner.invoke(app, ["workflow", "show", "missing-id"])
    assert result.exit_code == 1
    assert "Workflow not found" in result.stdout


def test_activation_reports_validation_issues(runner, tmp_path):
    path = tmp_path / "broken.yaml"
    path.write_text(BROKEN_YAML)
    assert runner.invoke(app, ["workflow", "save", str(path)]).exit_code == 0

    result = runner.invoke(app, ["workflow", "activate", "wf-broken"])

    assert result.exit_code == 1
    assert "call: No executor registered for action type 'send_fax'" in result.stdout


def test_save_rejects_malformed_definition(runner, tmp_path):
    path = tmp_path / "bad.yaml"
    path.write_text("name: no steps\nsteps:\n  - id: x\n    type: teleport\n")

    result = runner.invoke(app, ["workflow", "save", str(path)])

    assert result.exit_code == 2
    assert "Invalid workflow definition" in result.stdout


def test_enroll_show_and_stats(runner, saved):
    runner.invoke(app, ["workflow", "activate", "wf-cli"])

    result = runner.invoke(app, ["enrollment", "enroll", "wf-cli", "c1", "--vars", '{"source": "cli"}'])
    assert result.exit_code == 0, result.stdout
    match = re.search(r"Enrollment (\S+): waiting", result.stdout)
    assert match
    enrollment_id = match.group(1)

    result = runner.invoke(app, ["enrollment", "enroll", "wf-cli", "c1"])
    assert "already enrolled" in result.stdout

    result = runner.invoke(app, ["enrollment", "show", enrollment_id])
    assert result.exit_code == 0
    assert "- tag: completed" in result.stdout
    assert "- wait: suspended" in result.stdout
    assert "Resumes at: 2024-03-06T10:00:00+00:00" in result.stdout
    assert '"source": "cli"' in result.stdout

    result = runner.invoke(app, ["enrollment", "list", "--workflow-id", "wf-cli"])
    assert enrollment_id in result.stdout

    result = runner.invoke(app, ["enrollment", "stats", "wf-cli"])
    assert "Workflow wf-cli: 1 enrolled" in result.stdout
    assert "waiting: 1" in result.stdout

    result = runner.invoke(app, ["enrollment", "cancel", enrollment_id])
    assert f"Enrollment {enrollment_id}: canceled" in result.stdout


def test_enrollment_errors(runner, saved):
    result = runner.invoke(app, ["enrollment", "show", "nope"])
    assert result.exit_code == 1
    assert "Not found" in result.stdout

    result = runner.invoke(app, ["enrollment", "enroll", "wf-cli", "c1", "--vars", "{oops"])
    assert result.exit_code == 2


def test_simulate_prints_trace(runner, records, saved):
    result = runner.invoke(app, ["simulate", "wf-cli", "c2"])

    assert result.exit_code == 0, result.stdout
    assert "Simulation of wf-cli for contact:c2: completed" in result.stdout
    assert "- tag [action]: simulated (simulated)" in result.stdout
    assert "- wait [delay]: completed" in result.stdout


def test_retarget_delay_command(runner, saved):
    runner.invoke(app, ["workflow", "activate", "wf-cli"])
    runner.invoke(app, ["enrollment", "enroll", "wf-cli", "c1"])

    result = runner.invoke(
        app, ["workflow", "retarget-delay", "wf-cli", "wait", "--amount", "5", "--unit", "days"]
    )

    assert result.exit_code == 0, result.stdout
    assert "Delay wait now waits 5 days" in result.stdout
    assert "Rescheduled 1 enrollment(s)" in result.stdout
    assert "2024-03-09T10:00:00+00:00" in result.stdout

    result = runner.invoke(app, ["workflow", "retarget-delay", "wf-cli", "wait", "--mode", "until_time"])
    assert result.exit_code == 2
