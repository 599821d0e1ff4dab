"""Command line interface for managing opscrew workflows and agents."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Optional

import typer

from opscrew.audit import AuditLogger
from opscrew.cli_utils.definitions import (
    _format_definition_path,
    load_agents,
    load_workflows,
)
from opscrew.cli_utils.fs import _iter_definition_files
from opscrew.config import load_config
from opscrew.contracts import LogQuery
from opscrew.definitions import WorkflowStore
from opscrew.errors import AgentValidationError, WorkflowValidationError
from opscrew.models import LogCategory, LogLevel, WorkflowStatus
from opscrew.persistence import get_repository
from opscrew.registry import AgentRegistry
from opscrew.scheduler import DependencyScheduler

app = typer.Typer(help="CLI for opscrew workflows")

# Command groups
agent_app = typer.Typer(help="Commands for managing agents")
workflow_app = typer.Typer(help="Commands for managing workflows")
audit_app = typer.Typer(help="Commands for inspecting the audit trail")

app.add_typer(agent_app, name="agent")
app.add_typer(workflow_app, name="workflow")
app.add_typer(audit_app, name="audit")


@app.callback()
def main(
    config_path: Optional[Path] = typer.Option(
        None, "--config", help="Path to a YAML configuration file"
    ),
) -> None:
    """opscrew CLI entry point."""
    config = load_config(str(config_path) if config_path else None)
    logging.basicConfig(
        level=config.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _resolve_search_path(path: Optional[Path]) -> Path:
    search_path = (path or Path.cwd()).expanduser().resolve()
    if not search_path.exists():
        typer.secho("Specified path does not exist", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    return search_path


def _report_load_errors(errors, search_path: Path) -> None:
    for path, message in errors:
        display_path = _format_definition_path(path, search_path)
        typer.secho(f"{display_path}: {message}", fg=typer.colors.RED)


# ----------------------------------------------------------------------
# Workflows


@workflow_app.command("validate")
def workflow_validate(
    path: Optional[Path] = typer.Argument(None),
    respect_gitignore: bool = typer.Option(
        True, help="Skip files and directories specified in .gitignore files"
    ),
) -> None:
    """
    Validate workflow definition files without storing them.

    Loads every YAML file under PATH and checks each workflow for missing
    fields, unknown dependencies, dependency cycles and parallel steps that
    write the same variable.

    Example:
        opscrew workflow validate ./workflows
        # Output: ./onboarding.yaml - onboarding: valid
        #         ./broken.yaml - broken: Step b depends on non-existent step: x
    """
    search_path = _resolve_search_path(path)
    files = list(_iter_definition_files(search_path, respect_gitignore=respect_gitignore))
    if not files:
        typer.echo("No definition files found.")
        return

    loaded, errors = load_workflows(files)
    _report_load_errors(errors, search_path)

    store = WorkflowStore(get_repository())
    invalid = bool(errors)
    for file_path, workflow in loaded:
        display_path = _format_definition_path(file_path, search_path)
        result = store.validate_workflow(workflow)
        if result.is_valid:
            typer.echo(f"{display_path} - {workflow.id}: valid")
            continue
        invalid = True
        for error in result.errors:
            typer.secho(f"{display_path} - {workflow.id}: {error}", fg=typer.colors.RED)

    if invalid:
        raise typer.Exit(code=1)


@workflow_app.command("register")
def workflow_register(
    path: Path,
    respect_gitignore: bool = typer.Option(
        True, help="Skip files and directories specified in .gitignore files"
    ),
) -> None:
    """
    Validate and store workflow definitions.

    Valid workflows are saved to the configured repository; invalid ones are
    reported and the command exits with code 1.

    Example:
        opscrew workflow register ./workflows/onboarding.yaml
        # Output: Registered workflow onboarding (3 steps)
    """
    search_path = _resolve_search_path(path)
    files = list(_iter_definition_files(search_path, respect_gitignore=respect_gitignore))
    loaded, errors = load_workflows(files)
    _report_load_errors(errors, search_path)

    store = WorkflowStore(get_repository())
    failed = bool(errors)
    for _, workflow in loaded:
        try:
            asyncio.run(store.create_workflow(workflow))
        except WorkflowValidationError as e:
            failed = True
            for error in e.errors:
                typer.secho(f"{workflow.id}: {error}", fg=typer.colors.RED)
            continue
        typer.echo(f"Registered workflow {workflow.id} ({len(workflow.steps)} steps)")

    if failed:
        raise typer.Exit(code=1)


@workflow_app.command("list")
def workflow_list() -> None:
    """
    List stored workflow definitions.

    Example:
        opscrew workflow list
        # Output: onboarding    Client onboarding    active    3 steps
    """
    store = WorkflowStore(get_repository())
    workflows = asyncio.run(store.list_workflows())
    if not workflows:
        typer.echo("No workflows found")
        return
    for wf in workflows:
        typer.echo(f"{wf.id}\t{wf.name}\t{wf.status.value}\t{len(wf.steps)} steps")


@workflow_app.command("show")
def workflow_show(workflow_id: str) -> None:
    """
    Show the steps of one workflow definition in execution order.

    Example:
        opscrew workflow show onboarding
        # Output: Workflow onboarding: Client onboarding (active)
        #         - intake [agent-intake]
        #         - kickoff [agent-pm] after intake
    """
    store = WorkflowStore(get_repository())
    wf = asyncio.run(store.get_workflow(workflow_id))
    if wf is None:
        typer.echo("Workflow not found")
        raise typer.Exit(code=1)
    typer.echo(f"Workflow {wf.id}: {wf.name} ({wf.status.value})")
    if wf.description:
        typer.echo(wf.description)
    if wf.variables:
        typer.echo(f"Variables: {wf.variables}")
    for step in wf.sorted_steps():
        line = f"- {step.id} [{step.agent_id}]"
        if step.dependencies:
            line += f" after {', '.join(step.dependencies)}"
        if step.is_parallel:
            line += " (parallel)"
        if step.requires_approval:
            line += " (approval)"
        typer.echo(line)


@workflow_app.command("executions")
def workflow_executions(
    workflow_id: Optional[str] = typer.Option(None, help="Only show runs of this workflow"),
    status: Optional[WorkflowStatus] = typer.Option(None, help="Only show runs in this status"),
) -> None:
    """
    List workflow executions with their status.

    Example:
        opscrew workflow executions --status paused
        # Output: exec_1a2b    onboarding    paused
    """
    repo = get_repository()
    executions = asyncio.run(
        repo.list_executions(
            workflow_id=workflow_id, statuses=[status] if status is not None else None
        )
    )
    if not executions:
        typer.echo("No executions found")
        return
    for execution in executions:
        typer.echo(f"{execution.id}\t{execution.workflow_id}\t{execution.status.value}")


@workflow_app.command("status")
def workflow_status(execution_id: str) -> None:
    """
    Show the progress of one workflow execution.

    Example:
        opscrew workflow status exec_1a2b
        # Output: Execution exec_1a2b (onboarding): paused, 33% complete
        #         - intake: completed
        #         - kickoff: waiting_approval
    """
    repo = get_repository()
    execution = asyncio.run(repo.get_execution(execution_id))
    if execution is None:
        typer.echo("Execution not found")
        raise typer.Exit(code=1)

    scheduler = DependencyScheduler(WorkflowStore(repo))
    progress = asyncio.run(scheduler.get_execution_progress(execution))
    typer.echo(
        f"Execution {execution.id} ({execution.workflow_id}): "
        f"{execution.status.value}, {progress}% complete"
    )
    for step_execution in execution.step_executions:
        line = f"- {step_execution.step_id}: {step_execution.status.value}"
        if step_execution.error is not None:
            line += f" ({step_execution.error.message})"
        typer.echo(line)
    for approval_id in execution.pending_approval_ids():
        typer.echo(f"Pending approval: {approval_id}")


# ----------------------------------------------------------------------
# Agents


@agent_app.command("register")
def agent_register(
    path: Path,
    respect_gitignore: bool = typer.Option(
        True, help="Skip files and directories specified in .gitignore files"
    ),
) -> None:
    """
    Validate and store agent definitions.

    Example:
        opscrew agent register ./agents
        # Output: Registered agent agent-intake (Intake Agent)
    """
    search_path = _resolve_search_path(path)
    files = list(_iter_definition_files(search_path, respect_gitignore=respect_gitignore))
    loaded, errors = load_agents(files)
    _report_load_errors(errors, search_path)

    registry = AgentRegistry(get_repository())
    failed = bool(errors)
    for _, agent in loaded:
        try:
            asyncio.run(registry.create_agent(agent, validate=True))
        except AgentValidationError as e:
            failed = True
            for error in e.errors:
                typer.secho(f"{agent.id}: {error}", fg=typer.colors.RED)
            continue
        typer.echo(f"Registered agent {agent.id} ({agent.name})")

    if failed:
        raise typer.Exit(code=1)


@agent_app.command("list")
def agent_list(
    active_only: bool = typer.Option(False, "--active", help="Only list active agents"),
) -> None:
    """
    List registered agents.

    Example:
        opscrew agent list --active
        # Output: agent-intake    intake    Intake Agent    1.0.0    active
    """
    registry = AgentRegistry(get_repository())
    agents = asyncio.run(
        registry.get_active_agents() if active_only else registry.list_agents()
    )
    if not agents:
        typer.echo("No agents found")
        return
    for agent in agents:
        state = "active" if agent.is_active else "inactive"
        typer.echo(f"{agent.id}\t{agent.type.value}\t{agent.name}\t{agent.version}\t{state}")


@agent_app.command("status")
def agent_status(agent_id: str) -> None:
    """
    Show the health of one agent.

    Example:
        opscrew agent status agent-intake
        # Output: Agent agent-intake: idle (healthy)
    """
    repo = get_repository()
    registry = AgentRegistry(repo, activity=AuditLogger(repo))
    report = asyncio.run(registry.get_agent_status(agent_id))
    if report.agent is None:
        typer.echo("Agent not found")
        raise typer.Exit(code=1)
    health = "healthy" if report.is_healthy else "unhealthy"
    typer.echo(f"Agent {agent_id}: {report.status.value} ({health})")
    typer.echo(f"Current executions: {report.current_executions}")
    typer.echo(f"Queue length: {report.queue_length}")
    typer.echo(f"Error rate: {report.error_rate:.2f}")
    if report.last_activity is not None:
        typer.echo(f"Last activity: {report.last_activity.isoformat()}")


# ----------------------------------------------------------------------
# Audit


def _build_query(
    agent_id: Optional[str],
    execution_id: Optional[str],
    workflow_id: Optional[str],
    category: Optional[LogCategory],
    level: Optional[LogLevel],
    limit: Optional[int] = None,
) -> LogQuery:
    fields = dict(
        agent_id=agent_id,
        execution_id=execution_id,
        workflow_id=workflow_id,
        category=category,
        level=level,
    )
    if limit is not None:
        fields["limit"] = limit
    return LogQuery(**fields)


@audit_app.command("logs")
def audit_logs(
    agent_id: Optional[str] = typer.Option(None, help="Filter by agent id"),
    execution_id: Optional[str] = typer.Option(None, help="Filter by execution id"),
    workflow_id: Optional[str] = typer.Option(None, help="Filter by workflow id"),
    category: Optional[LogCategory] = typer.Option(None, help="Filter by category"),
    level: Optional[LogLevel] = typer.Option(None, help="Filter by level"),
    limit: int = typer.Option(100, help="Maximum number of entries"),
) -> None:
    """
    Print audit entries, newest first.

    Example:
        opscrew audit logs --category workflow_execution --limit 20
    """
    config = load_config()
    audit = AuditLogger(get_repository(), retention_days=config.audit.retention_days)
    query = _build_query(agent_id, execution_id, workflow_id, category, level, limit)
    entries = asyncio.run(audit.get_logs(query))
    if not entries:
        typer.echo("No audit entries found")
        return
    for entry in entries:
        typer.echo(
            f"{entry.timestamp.isoformat()}\t{entry.level.value}\t"
            f"{entry.category.value}\t{entry.message}"
        )


@audit_app.command("export")
def audit_export(
    format: str = typer.Option("json", "--format", help="Export format: json or csv"),
    output: Optional[Path] = typer.Option(None, help="Write to this file instead of stdout"),
    agent_id: Optional[str] = typer.Option(None, help="Filter by agent id"),
    execution_id: Optional[str] = typer.Option(None, help="Filter by execution id"),
    workflow_id: Optional[str] = typer.Option(None, help="Filter by workflow id"),
    category: Optional[LogCategory] = typer.Option(None, help="Filter by category"),
    level: Optional[LogLevel] = typer.Option(None, help="Filter by level"),
    limit: Optional[int] = typer.Option(
        None, help="Maximum number of entries (defaults to the configured export limit)"
    ),
) -> None:
    """
    Export audit entries as JSON or CSV.

    Example:
        opscrew audit export --format csv --output audit.csv
    """
    if format not in ("json", "csv"):
        typer.secho(f"Unsupported export format: {format}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    config = load_config()
    audit = AuditLogger(get_repository(), export_limit=config.audit.export_limit)
    query = _build_query(
        agent_id, execution_id, workflow_id, category, level, limit or config.audit.export_limit
    )
    document = asyncio.run(audit.export_logs(query, format=format))
    if output is None:
        typer.echo(document)
        return
    output.write_text(document, encoding="utf-8")
    typer.echo(f"Exported audit log to {output}")


@audit_app.command("cleanup")
def audit_cleanup(
    days: Optional[int] = typer.Option(
        None, help="Retention window in days (default: configured retention)"
    ),
) -> None:
    """
    Delete audit entries older than the retention window.

    Example:
        opscrew audit cleanup --days 30
        # Output: Removed 12 audit entries
    """
    config = load_config()
    audit = AuditLogger(get_repository(), retention_days=config.audit.retention_days)
    deleted = asyncio.run(audit.cleanup_logs(days))
    typer.echo(f"Removed {deleted} audit entries")


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
