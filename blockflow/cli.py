"""CLI entry point for the Blockflow engine.

Commands:
- blockflow validate: Validate a workflow graph file
- blockflow run: Execute a workflow graph file
- blockflow workflows add: Store a workflow for scheduling and sub-workflow use
- blockflow schedules add/list/run-due: Manage recurring schedules
- blockflow version: Show the installed version
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
import uuid
from pathlib import Path
from typing import Any

import click
import pydantic
import yaml
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.table import Table

from blockflow import __version__
from blockflow.core.config import EngineConfig, load_config
from blockflow.core.context import ExecutionResult
from blockflow.core.errors import ConfigError, StructuralError
from blockflow.core.executor import Executor, ExecutorOptions
from blockflow.core.graph_schema import WorkflowGraph
from blockflow.core.handlers import HandlerServices
from blockflow.core.scheduler import RecurringScheduler, ScheduleTimeValues
from blockflow.core.state import Database
from blockflow.core.worker import ScheduleWorker

console = Console()


def _load_graph_data(workflow_file: str) -> dict[str, Any]:
    """Read a YAML or JSON graph file; exits on unreadable content."""
    try:
        with open(workflow_file) as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        console.print(f"[red]Error parsing workflow file '{escape(workflow_file)}':[/red]")
        console.print(f"  {escape(str(e))}")
        sys.exit(1)
    if not isinstance(data, dict):
        console.print(
            f"[red]Error: Invalid content in '{escape(workflow_file)}'. "
            f"Expected a mapping, got {type(data).__name__}.[/red]"
        )
        sys.exit(1)
    return data


def _load_graph(workflow_file: str) -> WorkflowGraph:
    data = _load_graph_data(workflow_file)
    try:
        return WorkflowGraph.model_validate(data)
    except pydantic.ValidationError as e:
        console.print("[red]Error validating workflow schema:[/red]")
        for err in e.errors():
            loc = ".".join(str(x) for x in err["loc"])
            console.print(f"  - {escape(loc)}: {escape(err['msg'])}")
        sys.exit(1)


def _open_db(config: EngineConfig, db_path: str | None) -> Database:
    return Database(db_path or config.db_path)


def _print_logs(result: ExecutionResult) -> None:
    table = Table(title="Block Executions")
    table.add_column("Block", style="cyan")
    table.add_column("Kind", style="white")
    table.add_column("Status")
    table.add_column("Duration", justify="right")
    table.add_column("Error", style="red")

    for log in result.logs:
        status = "[green]ok[/green]" if log.success else "[red]error[/red]"
        table.add_row(
            escape(log.iteration_key or log.block_id),
            log.block_kind,
            status,
            f"{log.duration_ms:.1f}ms",
            escape(log.error or ""),
        )
    console.print(table)


@click.group()
@click.version_option(version=__version__)
@click.option("--verbose", "-v", is_flag=True, help="Show engine logs")
@click.option(
    "--config",
    "config_path",
    type=click.Path(),
    default=None,
    help="Config file (default: .blockflow/config.yaml)",
)
@click.pass_context
def main(ctx: click.Context, verbose: bool, config_path: str | None) -> None:
    """Blockflow - block-based workflow execution engine."""
    if verbose:
        logging.basicConfig(
            level=logging.INFO,
            format="%(message)s",
            handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        )
    try:
        ctx.obj = load_config(config_path)
    except ConfigError as e:
        console.print(f"[red]{escape(str(e))}[/red]")
        sys.exit(1)


@main.command()
def version() -> None:
    """Show the installed version."""
    console.print(f"blockflow {__version__}")


@main.command()
@click.argument("workflow_file", type=click.Path(exists=True))
def validate(workflow_file: str) -> None:
    """Validate a workflow graph (YAML or JSON)."""
    graph = _load_graph(workflow_file)

    errors = graph.validate_graph()
    if errors:
        console.print("[red bold]Validation Errors:[/]")
        for error in errors:
            console.print(f"  [red]• {escape(str(error))}[/]")
        sys.exit(1)

    console.print("[green]✓ Graph is valid[/]")
    console.print(f"[bold]Blocks:[/] {len(graph.blocks)}")
    console.print(f"[bold]Connections:[/] {len(graph.connections)}")
    for i, level in enumerate(graph.analyze_parallelism()):
        console.print(f"  Wave {i}: {escape(', '.join(level))}")


@main.command()
@click.argument("workflow_file", type=click.Path(exists=True))
@click.option("--input", "input_json", default=None, help="Workflow input as JSON")
@click.option("--workflow-id", default=None, help="Run id (default: random)")
@click.option("--debug", is_flag=True, help="Step through the run one wave at a time")
@click.option("--db", "db_path", default=None, help="Database for sub-workflow lookups")
@click.pass_obj
def run(
    config: EngineConfig,
    workflow_file: str,
    input_json: str | None,
    workflow_id: str | None,
    debug: bool,
    db_path: str | None,
) -> None:
    """Execute a workflow graph and print its block logs and output."""
    graph = _load_graph(workflow_file)

    workflow_input: Any = None
    if input_json:
        try:
            workflow_input = json.loads(input_json)
        except json.JSONDecodeError as e:
            console.print(f"[red]Invalid --input JSON: {escape(str(e))}[/red]")
            sys.exit(1)

    loader = None
    if db_path or Path(config.db_path).exists():
        loader = _open_db(config, db_path)
    services = HandlerServices(
        workflow_loader=loader,
        max_subworkflow_depth=config.max_subworkflow_depth,
    )
    options = ExecutorOptions(
        workflow_input=workflow_input,
        debug=debug,
        max_parallel=config.max_parallel,
        services=services,
    )
    try:
        executor = Executor(graph, options)
    except StructuralError as e:
        console.print("[red]Workflow is not runnable:[/red]")
        for error in e.errors:
            console.print(f"  - {escape(error)}")
        sys.exit(1)

    run_id = workflow_id or str(uuid.uuid4())

    async def execute() -> ExecutionResult:
        result = await executor.execute(run_id)
        step = 1
        while debug and result.pending_blocks:
            console.print(
                f"[blue]Step {step}: running {escape(', '.join(result.pending_blocks))}[/blue]"
            )
            result = await executor.continue_execution(result.pending_blocks, result.context)
            step += 1
        return result

    result = asyncio.run(execute())
    _print_logs(result)
    console.print_json(json.dumps(result.output, default=str))

    if result.success:
        console.print("[green]Workflow completed successfully[/green]")
    else:
        console.print(f"[red]Workflow failed: {escape(result.error or 'unknown error')}[/red]")
        sys.exit(1)


@main.group()
def workflows() -> None:
    """Manage stored workflows."""
    pass


@workflows.command("add")
@click.argument("workflow_file", type=click.Path(exists=True))
@click.option("--id", "workflow_id", required=True, help="Workflow id")
@click.option("--name", default=None, help="Display name (default: the id)")
@click.option("--owner", default=None, help="Owner id (selects the environment)")
@click.option("--db", "db_path", default=None, help="Database path")
@click.pass_obj
def workflows_add(
    config: EngineConfig,
    workflow_file: str,
    workflow_id: str,
    name: str | None,
    owner: str | None,
    db_path: str | None,
) -> None:
    """Store a validated workflow graph."""
    data = _load_graph_data(workflow_file)
    graph = _load_graph(workflow_file)
    errors = graph.structural_errors()
    if errors:
        console.print("[red]Workflow is not runnable:[/red]")
        for error in errors:
            console.print(f"  - {escape(error)}")
        sys.exit(1)

    db = _open_db(config, db_path)
    db.save_workflow(workflow_id, name or workflow_id, data, owner_id=owner)
    console.print(f"[green]Stored workflow {escape(workflow_id)}[/green]")


@main.group()
def schedules() -> None:
    """Manage recurring schedules."""
    pass


@schedules.command("add")
@click.option("--workflow-id", required=True, help="Workflow to run")
@click.option("--cron", default=None, help="Cron expression")
@click.option("--every-minutes", type=int, default=None, help="Run every N minutes")
@click.option(
    "--type",
    "schedule_type",
    type=click.Choice(["minutes", "hourly", "daily", "weekly", "monthly"]),
    default="daily",
    help="Interval rule when no cron expression is given",
)
@click.option("--db", "db_path", default=None, help="Database path")
@click.pass_obj
def schedules_add(
    config: EngineConfig,
    workflow_id: str,
    cron: str | None,
    every_minutes: int | None,
    schedule_type: str,
    db_path: str | None,
) -> None:
    """Create an active schedule for a stored workflow."""
    db = _open_db(config, db_path)
    if db.get_workflow(workflow_id) is None:
        console.print(f"[red]Workflow {escape(workflow_id)} not found[/red]")
        sys.exit(1)

    values = ScheduleTimeValues()
    if every_minutes is not None:
        schedule_type = "minutes"
        values = ScheduleTimeValues(minutes_interval=every_minutes)

    try:
        schedule = db.create_schedule(
            workflow_id, cron_expression=cron, schedule_type=schedule_type, time_values=values
        )
    except (ValueError, pydantic.ValidationError) as e:
        console.print(f"[red]Invalid schedule: {escape(str(e))}[/red]")
        sys.exit(1)

    console.print(
        f"[green]Created schedule {schedule.id}[/green] "
        f"(next run {schedule.next_run_at.isoformat()})"
    )


@schedules.command("list")
@click.option("--db", "db_path", default=None, help="Database path")
@click.pass_obj
def schedules_list(config: EngineConfig, db_path: str | None) -> None:
    """List schedules."""
    db = _open_db(config, db_path)
    table = Table(title="Schedules")
    table.add_column("ID", style="cyan")
    table.add_column("Workflow", style="white")
    table.add_column("Rule")
    table.add_column("Next Run")
    table.add_column("Failures", justify="right")
    table.add_column("Status")

    for schedule in db.list_schedules():
        rule = schedule.cron_expression or schedule.schedule_type
        status = schedule.status.value
        style = "green" if status == "active" else "red"
        table.add_row(
            schedule.id,
            escape(schedule.workflow_id),
            escape(rule),
            schedule.next_run_at.isoformat() if schedule.next_run_at else "-",
            str(schedule.failed_count),
            f"[{style}]{status}[/{style}]",
        )
    console.print(table)


@schedules.command("run-due")
@click.option("--loop", "loop_forever", is_flag=True, help="Keep polling (daemon mode)")
@click.option("--max-cycles", type=int, default=None, help="Stop the daemon after N cycles")
@click.option("--db", "db_path", default=None, help="Database path")
@click.pass_obj
def schedules_run_due(
    config: EngineConfig, loop_forever: bool, max_cycles: int | None, db_path: str | None
) -> None:
    """Execute all due schedules once, or keep polling with --loop."""
    db = _open_db(config, db_path)
    scheduler = RecurringScheduler(
        store=db,
        loader=db,
        log_store=db,
        config=config.scheduler,
        services=HandlerServices(
            workflow_loader=db, max_subworkflow_depth=config.max_subworkflow_depth
        ),
        max_parallel=config.max_parallel,
    )
    worker = ScheduleWorker(scheduler, poll_interval=config.scheduler.poll_interval)

    if loop_forever:
        console.print(
            f"[blue]Polling schedules every {config.scheduler.poll_interval:g}s[/blue]"
        )
        try:
            asyncio.run(worker.start_daemon(max_cycles=max_cycles))
        except KeyboardInterrupt:
            worker.stop()
        return

    outcomes = asyncio.run(worker.run_once())
    if not outcomes:
        console.print("[yellow]No schedules due[/yellow]")
        return

    table = Table(title="Schedule Runs")
    table.add_column("Schedule", style="cyan")
    table.add_column("Workflow")
    table.add_column("Outcome")
    table.add_column("Next Run")
    table.add_column("Error", style="red")
    for outcome in outcomes:
        table.add_row(
            outcome.schedule_id,
            escape(outcome.workflow_id),
            outcome.status,
            outcome.next_run_at.isoformat() if outcome.next_run_at else "-",
            escape(outcome.error or ""),
        )
    console.print(table)


if __name__ == "__main__":
    main()
