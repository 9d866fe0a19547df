"""CLI entry point for the agentflow workflow engine.

Commands:
- agentflow init: Create .agentflow/ with a default config and database
- agentflow validate: Check a workflow file
- agentflow visualize: Show a workflow graph as a tree
- agentflow run: Start a workflow and drive it
- agentflow status: List executions or show one in detail
- agentflow approve / reject: Decide a pending approval
- agentflow pause / resume / cancel: Control a running execution
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any

import click
import pydantic
import yaml
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from agentflow.cli_ui.graph_renderer import (
    StatusTableRenderer,
    TerminalGraphRenderer,
    node_statuses,
)
from agentflow.core.approval import ApprovalDecision, ApprovalError
from agentflow.core.config import CONFIG_DIR, CONFIG_FILE, DEFAULT_CONFIG, EngineConfig
from agentflow.core.graph_engine import GraphOrchestrator, InvalidTransitionError
from agentflow.core.graph_schema import ErrorHandlingConfig, GraphError, WorkflowGraph
from agentflow.core.models import ExecutionStatus
from agentflow.core.state import Database, ExecutionNotFoundError, TerminalStateError
from agentflow.core.worker import WorkflowWorker

console = Console()

STATUS_COLORS = {
    "running": "blue",
    "paused": "yellow",
    "completed": "green",
    "failed": "red",
    "cancelled": "yellow",
}


def get_repo_path() -> Path:
    """Get the project path (current directory)."""
    return Path.cwd()


def _config_dir() -> Path:
    return get_repo_path() / CONFIG_DIR


def _open_database(config: EngineConfig) -> Database | None:
    db_path = config.database_path(_config_dir())
    if not db_path.exists():
        console.print("[yellow]No agentflow database found. Run 'agentflow init' first.[/yellow]")
        return None
    return Database(db_path)


def _load_config() -> EngineConfig:
    try:
        return EngineConfig.load(_config_dir())
    except (yaml.YAMLError, pydantic.ValidationError, ValueError) as e:
        console.print(f"[red]Invalid {CONFIG_DIR}/{CONFIG_FILE}:[/red] {escape(str(e))}")
        sys.exit(1)


def _build_orchestrator(config: EngineConfig, db: Database) -> GraphOrchestrator:
    return GraphOrchestrator(
        db,
        config.build_client(),
        router=config.build_router(),
        max_parallel=config.max_parallel,
    )


def load_workflow(workflow_file: str) -> WorkflowGraph:
    """Load a workflow from YAML or JSON, exiting with a readable error on failure.

    A file with a ``steps`` list instead of ``nodes`` describes a linear
    workflow and is expanded into the equivalent single-branch graph.
    """
    try:
        with open(workflow_file) as f:
            data = yaml.safe_load(f)
        if not isinstance(data, dict):
            console.print(
                f"[red]Error: Invalid content in '{escape(workflow_file)}'. "
                f"Expected a mapping, got {type(data).__name__}.[/red]"
            )
            sys.exit(1)
        if "steps" in data and "nodes" not in data:
            return WorkflowGraph.from_steps(
                workflow_id=data.get("id") or Path(workflow_file).stem,
                name=data.get("name") or Path(workflow_file).stem,
                steps=data["steps"],
                error_handling=ErrorHandlingConfig(**data.get("error_handling", {})),
            )
        return WorkflowGraph(**data)
    except yaml.YAMLError as e:
        console.print(f"[red]Error parsing YAML file '{escape(workflow_file)}':[/red]")
        console.print(f"  {escape(str(e))}")
        sys.exit(1)
    except pydantic.ValidationError as e:
        console.print("[red]Error validating workflow schema:[/red]")
        for err in e.errors():
            loc = ".".join(str(x) for x in err["loc"])
            console.print(f"  - {escape(loc)}: {escape(err['msg'])}")
        sys.exit(1)
    except GraphError as e:
        console.print("[red]Validation errors:[/red]")
        for error in e.errors:
            console.print(f"  - {escape(error)}")
        sys.exit(1)
    except (ValueError, TypeError) as e:
        console.print("[red]Error validating workflow:[/red]")
        console.print(f"  {escape(str(e))}")
        sys.exit(1)


def _parse_json_option(value: str | None, name: str) -> Any:
    if value is None:
        return None
    try:
        return json.loads(value)
    except json.JSONDecodeError as e:
        raise click.BadParameter(f"not valid JSON: {e}", param_hint=name) from e


def _print_outcome(record) -> None:
    color = STATUS_COLORS.get(record.status.value, "white")
    console.print(f"[{color}]Execution {escape(record.id)}: {record.status.value}[/]")
    if record.status == ExecutionStatus.COMPLETED and record.final_output is not None:
        console.print(
            Panel(
                escape(json.dumps(record.final_output, indent=2, default=str)),
                title="Final output",
            )
        )
    elif record.status == ExecutionStatus.FAILED and record.error:
        console.print(f"[red]Error:[/red] {escape(record.error)}")
    elif record.pending_approvals:
        console.print(StatusTableRenderer(console).render_approvals_table(record))
        console.print("[dim]Use 'agentflow approve' or 'agentflow reject' to continue.[/dim]")


async def _drive(
    orchestrator: GraphOrchestrator,
    execution_id: str,
    poll_interval: float,
    wait: bool,
    interactive: bool,
):
    """Run an execution until it stops, prompting for approvals if asked to."""
    worker = WorkflowWorker(orchestrator, poll_interval=poll_interval)
    while True:
        await worker.run_until_complete(execution_id, wait_for_approvals=wait and not interactive)
        record = await orchestrator.get_status(execution_id)
        if not interactive or record.status != ExecutionStatus.RUNNING:
            return record
        if not record.pending_approvals:
            return record
        for pending in record.pending_approvals:
            decision = await asyncio.to_thread(orchestrator.approval_gate.prompt_cli, pending)
            approver = pending.approvers[0] if pending.approvers else None
            await orchestrator.resolve_approval(
                execution_id, pending.node_id, decision, approver=approver
            )


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
def main(verbose: bool) -> None:
    """agentflow - workflow graph execution engine.

    Runs declarative graphs of agent, condition, parallel, loop and approval
    nodes with retries, pause/resume and human approval gates.
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@main.command()
def init() -> None:
    """Initialize project for agentflow."""
    config_dir = _config_dir()

    if config_dir.exists():
        console.print("[yellow]Project already initialized[/yellow]")
        return

    config_dir.mkdir(parents=True)
    (config_dir / CONFIG_FILE).write_text(DEFAULT_CONFIG)

    config = EngineConfig.load(config_dir)
    Database(config.database_path(config_dir))

    console.print(
        Panel(
            "[green]Project initialized![/green]\n\n"
            f"Created: {escape(str(config_dir))}\n"
            "- config.yaml: Engine and agent configuration\n"
            "- state.db: Execution state database",
            title="agentflow Initialized",
        )
    )


@main.command()
@click.argument("workflow_file", type=click.Path(exists=True))
def validate(workflow_file: str) -> None:
    """Validate a workflow file without running it."""
    workflow = load_workflow(workflow_file)
    errors = workflow.validate_graph()
    if errors:
        console.print("[red]Validation errors:[/red]")
        for error in errors:
            console.print(f"  - {escape(error)}")
        sys.exit(1)

    console.print("[green]Workflow validation passed[/green]")
    console.print(f"  Nodes: {len(workflow.nodes)}")
    console.print(f"  Edges: {len(workflow.edges)}")


@main.command()
@click.argument("workflow_file", type=click.Path(exists=True))
def visualize(workflow_file: str) -> None:
    """Visualize a workflow graph in the terminal."""
    workflow = load_workflow(workflow_file)

    renderer = TerminalGraphRenderer(console)
    console.print(renderer.render_as_tree(workflow))

    console.print()
    console.print(f"[bold]Nodes:[/] {len(workflow.nodes)}")
    console.print(f"[bold]Edges:[/] {len(workflow.edges)}")
    console.print(f"[bold]Entry:[/] {escape(workflow.entry_point or '(ambiguous)')}")
    ends = sorted(workflow.get_terminal_nodes())
    console.print(f"[bold]Ends:[/] {', '.join(escape(e) for e in ends) or '(none)'}")

    errors = workflow.validate_graph()
    if errors:
        console.print("\n[red bold]Validation Errors:[/]")
        for error in errors:
            console.print(f"  [red]• {escape(str(error))}[/]")
    else:
        console.print("\n[green]✓ Graph is valid[/]")


@main.command()
@click.argument("workflow_file", type=click.Path(exists=True))
@click.option("--input", "input_json", help="Initial input as JSON")
@click.option(
    "--input-file", type=click.Path(exists=True), help="Initial input from a JSON/YAML file"
)
@click.option("--execution-id", "-e", help="Execution ID (auto-generated if not provided)")
@click.option("--wait", is_flag=True, help="Keep polling while approvals are pending")
@click.option("--interactive", "-i", is_flag=True, help="Prompt for approvals in the terminal")
def run(
    workflow_file: str,
    input_json: str | None,
    input_file: str | None,
    execution_id: str | None,
    wait: bool,
    interactive: bool,
) -> None:
    """Start a workflow and drive it until it finishes or waits for approval."""
    workflow = load_workflow(workflow_file)
    initial_input = _parse_json_option(input_json, "--input")
    if input_file:
        with open(input_file) as f:
            initial_input = yaml.safe_load(f)

    config = _load_config()
    db = _open_database(config)
    if db is None:
        sys.exit(1)
    orchestrator = _build_orchestrator(config, db)

    async def _run():
        exec_id = await orchestrator.start(workflow, initial_input, execution_id=execution_id)
        console.print(f"[blue]Started execution: {escape(exec_id)}[/blue]")
        return await _drive(orchestrator, exec_id, config.poll_interval, wait, interactive)

    try:
        record = asyncio.run(_run())
    except GraphError as e:
        console.print("[red]Validation errors:[/red]")
        for error in e.errors:
            console.print(f"  - {escape(error)}")
        sys.exit(1)

    _print_outcome(record)
    if record.status in (ExecutionStatus.FAILED, ExecutionStatus.CANCELLED):
        sys.exit(1)


@main.command()
@click.argument("execution_id", required=False)
def status(execution_id: str | None) -> None:
    """Show execution status (all executions, or one in detail)."""
    config = _load_config()
    db = _open_database(config)
    if db is None:
        return

    if not execution_id:
        rows = db.list_executions()
        table = Table(title="Executions")
        table.add_column("Execution", style="cyan")
        table.add_column("Workflow")
        table.add_column("Status")
        for exec_id, graph_id, exec_status in rows:
            color = STATUS_COLORS.get(exec_status, "white")
            table.add_row(escape(exec_id), escape(graph_id), f"[{color}]{exec_status}[/]")
        console.print(table)
        return

    try:
        record = db.load_execution(execution_id)
        workflow = db.load_graph(record.graph_id)
    except (ExecutionNotFoundError, KeyError) as e:
        console.print(f"[red]{escape(str(e))}[/]")
        sys.exit(1)

    color = STATUS_COLORS.get(record.status.value, "white")
    safe_error = escape(record.error) if record.error else "-"
    console.print(
        Panel(
            f"[bold]Workflow:[/] {escape(record.workflow_name)}\n"
            f"[bold]Status:[/] [{color}]{record.status.value}[/]\n"
            f"[bold]Started:[/] {record.created_at.isoformat(timespec='seconds')}\n"
            f"[bold]Completed:[/] "
            f"{record.completed_at.isoformat(timespec='seconds') if record.completed_at else '-'}\n"
            f"[bold]Error:[/] {safe_error}",
            title=f"Execution: {escape(record.id[:8])}...",
        )
    )
    console.print(TerminalGraphRenderer(console).render_as_tree(workflow, node_statuses(record)))
    console.print(StatusTableRenderer(console).render_status_table(workflow, record))
    if record.pending_approvals:
        console.print(StatusTableRenderer(console).render_approvals_table(record))
    if record.loop_counters:
        counters = ", ".join(f"{k}={v}" for k, v in record.loop_counters.items())
        console.print(f"[bold]Loop iterations:[/] {escape(counters)}")


def _decide(
    execution_id: str,
    node_id: str,
    decision: ApprovalDecision,
    approver: str | None,
    data_json: str | None,
    comment: str | None,
    wait: bool,
) -> None:
    data = _parse_json_option(data_json, "--data")
    config = _load_config()
    db = _open_database(config)
    if db is None:
        sys.exit(1)
    orchestrator = _build_orchestrator(config, db)

    async def _resolve():
        await orchestrator.resolve_approval(
            execution_id, node_id, decision, approver=approver, data=data, comment=comment
        )
        return await _drive(orchestrator, execution_id, config.poll_interval, wait, False)

    try:
        record = asyncio.run(_resolve())
    except (ApprovalError, ExecutionNotFoundError, TerminalStateError) as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        sys.exit(1)
    _print_outcome(record)


@main.command()
@click.argument("execution_id")
@click.argument("node_id")
@click.option("--approver", "-a", help="Who is approving")
@click.option("--data", "data_json", help="Edited payload (JSON) to continue with")
@click.option("--comment", "-m", help="Comment recorded with the decision")
@click.option("--wait", is_flag=True, help="Keep polling while approvals are pending")
def approve(
    execution_id: str,
    node_id: str,
    approver: str | None,
    data_json: str | None,
    comment: str | None,
    wait: bool,
) -> None:
    """Approve a pending approval node and continue the execution."""
    _decide(execution_id, node_id, ApprovalDecision.APPROVE, approver, data_json, comment, wait)


@main.command()
@click.argument("execution_id")
@click.argument("node_id")
@click.option("--approver", "-a", help="Who is rejecting")
@click.option("--comment", "-m", help="Reason recorded with the decision")
def reject(execution_id: str, node_id: str, approver: str | None, comment: str | None) -> None:
    """Reject a pending approval node and continue the execution."""
    _decide(execution_id, node_id, ApprovalDecision.REJECT, approver, None, comment, False)


def _control(execution_id: str, action: str, drive: bool = False) -> None:
    config = _load_config()
    db = _open_database(config)
    if db is None:
        sys.exit(1)
    orchestrator = _build_orchestrator(config, db)

    async def _apply():
        await getattr(orchestrator, action)(execution_id)
        if drive:
            return await _drive(orchestrator, execution_id, config.poll_interval, False, False)
        return await orchestrator.get_status(execution_id)

    try:
        record = asyncio.run(_apply())
    except (ExecutionNotFoundError, TerminalStateError, InvalidTransitionError) as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        sys.exit(1)
    _print_outcome(record)


@main.command()
@click.argument("execution_id")
def pause(execution_id: str) -> None:
    """Pause a running execution."""
    _control(execution_id, "pause")


@main.command()
@click.argument("execution_id")
def resume(execution_id: str) -> None:
    """Resume a paused execution and drive it."""
    _control(execution_id, "resume", drive=True)


@main.command()
@click.argument("execution_id")
def cancel(execution_id: str) -> None:
    """Cancel an execution."""
    _control(execution_id, "cancel")


@main.command()
def version() -> None:
    """Show version information."""
    from agentflow import __version__

    console.print(f"agentflow v{__version__}")
    console.print("Workflow graph execution engine")


if __name__ == "__main__":
    main()
