"""
CLI interface for the dagrun scheduler.

Provides commands to run the scheduler, inspect graphs and runs, and act on
runs by hand (trigger, backfill, clear, cancel).

Graphs are defined as YAML/JSON files in the configured definitions
directory; run state lives in the configured store directory.
"""

import json
from pathlib import Path
from typing import Optional

import click

from dagrun import __version__
from dagrun.config import ConfigError, DagrunConfig
from dagrun.errors import DagrunError, DefinitionError
from dagrun.schemas import GraphDefinition, RunState
from dagrun.utils import format_duration, parse_datetime


@click.group()
@click.version_option(version=__version__, prog_name="dagrun")
@click.option(
    "--config", "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    help="Path to config.yaml (default: $DAGRUN_HOME/config.yaml)",
)
@click.pass_context
def main(ctx, config_path: Optional[Path]):
    """
    dagrun - DAG scheduler.

    Materializes scheduled runs of task graphs and executes their tasks in
    dependency order.
    """
    from dagrun.config import load_config

    ctx.ensure_object(dict)
    try:
        ctx.obj["config"] = load_config(config_path)
    except (FileNotFoundError, ConfigError) as e:
        # init works without a config; the other commands check for one
        ctx.obj["config_error"] = str(e)


def _config(ctx) -> DagrunConfig:
    config = ctx.obj.get("config")
    if config is None:
        click.echo(f"✗ Config not loaded: {ctx.obj.get('config_error', 'Unknown error')}", err=True)
        click.echo("Run 'dagrun init' to create a configuration file.", err=True)
        raise SystemExit(1)
    return config


def _store(config: DagrunConfig):
    from dagrun.run_store import FileRunStore
    return FileRunStore(config.store_path)


def _registry(config: DagrunConfig):
    from dagrun.registry import GraphRegistry
    return GraphRegistry(config.definitions_path)


def _load_graph(config: DagrunConfig, graph_id: str) -> GraphDefinition:
    from dagrun.registry import GraphNotFoundError

    registry = _registry(config)
    try:
        return registry.load(graph_id)
    except GraphNotFoundError:
        click.echo(f"✗ Unknown graph: {graph_id}", err=True)
        available = registry.list_graphs()
        if available:
            click.echo("\nAvailable graphs:", err=True)
            for gid in available:
                click.echo(f"  {gid}", err=True)
        raise SystemExit(1)
    except DefinitionError as e:
        click.echo(f"✗ {e}", err=True)
        raise SystemExit(1)


def _parse_slot(value: Optional[str], name: str):
    if value is None:
        return None
    try:
        return parse_datetime(value)
    except ValueError:
        raise click.BadParameter(f"'{value}' is not an ISO 8601 datetime", param_hint=name)


@main.command("init")
@click.option("--force", is_flag=True, help="Overwrite existing configuration")
def init(force: bool):
    """Initialize dagrun configuration."""
    from dagrun.config import CONFIG_FILENAME, get_dagrun_home
    import yaml

    home = get_dagrun_home()
    if not home.exists():
        home.mkdir(parents=True)

    cfg_path = home / CONFIG_FILENAME
    if cfg_path.exists() and not force:
        click.echo(f"Config already exists at {cfg_path}. Use --force to overwrite.", err=True)
        raise SystemExit(1)

    config = DagrunConfig.default(home)
    cfg_path.write_text(yaml.safe_dump(config.to_dict(), sort_keys=False))
    config.definitions_path.mkdir(parents=True, exist_ok=True)

    click.echo(f"Initialized dagrun config at {cfg_path}")
    click.echo(f"Put graph definitions in {config.definitions_path}")


@main.command("scheduler")
@click.option("--max-ticks", type=int, default=None, help="Stop after this many ticks")
@click.option("--once", is_flag=True, help="Run a single tick and exit")
@click.option(
    "--executor",
    type=click.Choice(["sequential", "local"]),
    default=None,
    help="Override the configured executor backend",
)
@click.pass_context
def scheduler(ctx, max_ticks: Optional[int], once: bool, executor: Optional[str]):
    """Run the scheduler loop."""
    from dagrun.scheduler import SchedulerLoop
    from dagrun.utils import setup_logging

    config = _config(ctx)
    if executor is not None:
        config.executor = executor
    setup_logging(config.log_level, config.log_format, config.log_file)

    loop = SchedulerLoop.from_config(config)
    try:
        ticks = loop.run(max_ticks=1 if once else max_ticks)
    except KeyboardInterrupt:
        loop.stop()
        click.echo("Scheduler interrupted")
        return
    except DagrunError as e:
        click.echo(f"✗ Scheduler halted: {e}", err=True)
        raise SystemExit(1)
    click.echo(f"✓ Scheduler ran {ticks} tick(s)")


@main.group("graphs")
def graphs_group():
    """Inspect graph definitions."""
    pass


@graphs_group.command("list")
@click.pass_context
def list_graphs(ctx):
    """List graph definitions and whether they load."""
    config = _config(ctx)
    result = _registry(config).load_all()

    if not result.graphs and not result.errors:
        click.echo("No graph definitions found.")
        return

    for graph_id in sorted(set(result.graphs) | set(result.errors)):
        if graph_id in result.errors:
            click.echo(f"✗ {graph_id}: {result.errors[graph_id]}")
            continue
        graph = result.graphs[graph_id]
        schedule = graph.schedule.to_value() or "manual"
        click.echo(f"✓ {graph_id}  schedule={schedule}  tasks={len(graph.tasks)}")


@graphs_group.command("show")
@click.argument("graph_id")
@click.pass_context
def show_graph(ctx, graph_id: str):
    """Show a graph's tasks in dependency order."""
    from dagrun.graph import topological_order

    config = _config(ctx)
    graph = _load_graph(config, graph_id)

    click.echo(f"Graph: {graph.graph_id}")
    if graph.description:
        click.echo(f"Description: {graph.description}")
    click.echo(f"Schedule: {graph.schedule.to_value() or 'manual'}")
    click.echo(f"Catchup: {graph.catchup}")
    if graph.start_date:
        click.echo(f"Start: {graph.start_date.isoformat()}")
    if graph.end_date:
        click.echo(f"End: {graph.end_date.isoformat()}")
    click.echo()
    click.echo("Tasks:")
    for key in topological_order(graph):
        task = graph.tasks[key]
        upstream = ", ".join(sorted(task.upstream)) or "-"
        click.echo(f"  {key} [{task.operator}] <- {upstream}")


@main.command("trigger")
@click.argument("graph_id")
@click.option("--slot", help="Logical slot (ISO 8601, default: now)")
@click.pass_context
def trigger(ctx, graph_id: str, slot: Optional[str]):
    """Create a manual run of a graph."""
    from dagrun.commands import trigger_run

    config = _config(ctx)
    graph = _load_graph(config, graph_id)
    run = trigger_run(_store(config), graph, _parse_slot(slot, "--slot"))
    click.echo(f"✓ Triggered {graph_id}: run {run.run_id} at {run.logical_slot.isoformat()}")


@main.command("backfill")
@click.argument("graph_id")
@click.option("--start", required=True, help="First slot (ISO 8601)")
@click.option("--end", required=True, help="Last slot (ISO 8601)")
@click.pass_context
def backfill_cmd(ctx, graph_id: str, start: str, end: str):
    """Create runs for every slot between --start and --end."""
    from dagrun.commands import backfill

    config = _config(ctx)
    graph = _load_graph(config, graph_id)
    try:
        runs = backfill(_store(config), graph, _parse_slot(start, "--start"), _parse_slot(end, "--end"))
    except ValueError as e:
        click.echo(f"✗ {e}", err=True)
        raise SystemExit(1)

    click.echo(f"✓ Backfilled {len(runs)} run(s) of {graph_id}")
    for run in runs:
        click.echo(f"  {run.logical_slot.isoformat()}  {run.run_id}  {run.state.value}")


@main.command("clear")
@click.argument("run_id")
@click.argument("task_key")
@click.pass_context
def clear(ctx, run_id: str, task_key: str):
    """Reset a task instance so it runs again."""
    from dagrun.commands import clear_task

    config = _config(ctx)
    try:
        keys = clear_task(_store(config), run_id, task_key)
    except DagrunError as e:
        click.echo(f"✗ {e}", err=True)
        raise SystemExit(1)
    click.echo(f"✓ Cleared {', '.join(keys)} in run {run_id}")


@main.command("cancel")
@click.argument("run_id")
@click.pass_context
def cancel(ctx, run_id: str):
    """Cancel a run."""
    from dagrun.commands import cancel_run

    config = _config(ctx)
    try:
        run = cancel_run(_store(config), run_id)
    except DagrunError as e:
        click.echo(f"✗ {e}", err=True)
        raise SystemExit(1)

    pending = sorted(k for k, ti in run.task_instances.items() if ti.cancel_requested and not ti.is_terminal)
    click.echo(f"✓ Cancellation requested for run {run_id} ({run.state.value})")
    if pending:
        click.echo(f"  Waiting on: {', '.join(pending)}")


@main.group("runs")
def runs_group():
    """Inspect runs."""
    pass


@runs_group.command("list")
@click.option("--graph", "graph_id", help="Only runs of this graph")
@click.option(
    "--state", "states",
    multiple=True,
    type=click.Choice([s.value for s in RunState]),
    help="Only runs in this state (repeatable)",
)
@click.pass_context
def list_runs(ctx, graph_id: Optional[str], states: tuple[str, ...]):
    """List runs, oldest slot first."""
    config = _config(ctx)
    wanted = [RunState(s) for s in states] if states else None
    runs = _store(config).list_runs(graph_id, wanted)

    if not runs:
        click.echo("No runs found.")
        return

    for run in runs:
        click.echo(
            f"{run.run_id}  {run.graph_id}  {run.logical_slot.isoformat()}  "
            f"{run.run_type}  {run.state.value}"
        )


@runs_group.command("show")
@click.argument("run_id")
@click.option("--json", "as_json", is_flag=True, help="Print the stored run document")
@click.pass_context
def show_run(ctx, run_id: str, as_json: bool):
    """Show a run and its task instances."""
    config = _config(ctx)
    try:
        run = _store(config).get_run(run_id)
    except DagrunError as e:
        click.echo(f"✗ {e}", err=True)
        raise SystemExit(1)

    if as_json:
        click.echo(json.dumps(run.to_dict(), indent=2))
        return

    click.echo(f"Run: {run.run_id}")
    click.echo(f"Graph: {run.graph_id}")
    click.echo(f"Slot: {run.logical_slot.isoformat()}")
    click.echo(f"Type: {run.run_type}")
    click.echo(f"State: {run.state.value}")
    if run.cancel_requested_at:
        click.echo(f"Cancel requested: {run.cancel_requested_at.isoformat()}")
    click.echo()
    click.echo("Tasks:")
    for ti in sorted(run.task_instances.values(), key=lambda t: t.task_key):
        line = f"  {ti.task_key}: {ti.state.value} (attempts {ti.attempts}/{ti.max_attempts})"
        if ti.duration_ms is not None:
            line += f" {format_duration(ti.duration_ms / 1000)}"
        if ti.skip_reason is not None:
            line += f" [{ti.skip_reason.value}]"
        if ti.error:
            line += f" - {ti.error.get('message', '')}"
        click.echo(line)


if __name__ == "__main__":
    main()
