import asyncio
import json
from pathlib import Path

import pytest
from typer.testing import CliRunner

import opscrew.persistence as persistence
from opscrew.cli import app
from opscrew.models import AuditLogEntry, LogCategory, LogLevel
from opscrew.persistence import InMemoryRepository

FIXTURES = Path(__file__).parent.parent / "fixtures"


@pytest.fixture(autouse=True)
def repo():
    repo = InMemoryRepository()
    persistence._repository_instance = repo
    yield repo
    persistence._repository_instance = None


def _add_log(repo, message, level=LogLevel.INFO, category=LogCategory.SYSTEM):
    asyncio.run(repo.append_log(AuditLogEntry(level=level, category=category, message=message)))


def test_agent_register_list_and_status(repo):
    runner = CliRunner()
    result = runner.invoke(app, ["agent", "register", str(FIXTURES / "definitions")])
    assert result.exit_code == 0, result.stdout
    assert "Registered agent agent-intake (Intake Agent)" in result.stdout
    assert len(asyncio.run(repo.list_agents())) == 3

    result = runner.invoke(app, ["agent", "list"])
    assert result.exit_code == 0
    assert "agent-research\tresearch\tResearch Agent\t1.2.0\tactive" in result.stdout

    result = runner.invoke(app, ["agent", "status", "agent-pm"])
    assert result.exit_code == 0
    assert "Agent agent-pm: idle (healthy)" in result.stdout

    result = runner.invoke(app, ["agent", "status", "ghost"])
    assert result.exit_code == 1
    assert "Agent not found" in result.stdout


def test_agent_register_rejects_invalid_agent(tmp_path, repo):
    definition = tmp_path / "broken.yaml"
    definition.write_text("id: agent-broken\nname: Broken\nversion: one\n")
    result = CliRunner().invoke(app, ["agent", "register", str(definition)])
    assert result.exit_code == 1
    assert "agent-broken: Agent persona is required" in result.stdout
    assert asyncio.run(repo.list_agents()) == []


def test_audit_logs_filters(repo):
    _add_log(repo, "engine started")
    _add_log(repo, "agent crashed", level=LogLevel.ERROR, category=LogCategory.ERROR)

    runner = CliRunner()
    result = runner.invoke(app, ["audit", "logs"])
    assert result.exit_code == 0
    assert "engine started" in result.stdout
    assert "agent crashed" in result.stdout

    result = runner.invoke(app, ["audit", "logs", "--level", "error"])
    assert "agent crashed" in result.stdout
    assert "engine started" not in result.stdout


def test_audit_export_formats(tmp_path, repo):
    _add_log(repo, "engine started")
    runner = CliRunner()

    result = runner.invoke(app, ["audit", "export", "--format", "csv"])
    assert result.exit_code == 0
    assert result.stdout.startswith("id,timestamp,level,category")

    output = tmp_path / "audit.json"
    result = runner.invoke(app, ["audit", "export", "--output", str(output)])
    assert result.exit_code == 0
    assert '"engine started"' in output.read_text()

    result = runner.invoke(app, ["audit", "export", "--format", "xml"])
    assert result.exit_code == 1


def test_audit_export_is_not_paged(repo):
    for n in range(120):
        _add_log(repo, f"event {n}")
    runner = CliRunner()

    result = runner.invoke(app, ["audit", "export"])
    assert result.exit_code == 0
    assert len(json.loads(result.stdout)) == 120

    result = runner.invoke(app, ["audit", "export", "--limit", "5"])
    assert len(json.loads(result.stdout)) == 5


def test_audit_cleanup(repo):
    _add_log(repo, "recent")
    result = CliRunner().invoke(app, ["audit", "cleanup", "--days", "30"])
    assert result.exit_code == 0
    assert "Removed 0 audit entries" in result.stdout
    assert len(asyncio.run(repo.list_logs())) == 1
