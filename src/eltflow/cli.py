"""CLI for eltflow."""

import logging
import sys
import time
from pathlib import Path
from typing import List, Optional

import typer
import yaml
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from eltflow.config import PROJECT_FILE
from eltflow.executor import Executor
from eltflow.exceptions import EltflowError, ParseError, ProjectNotFoundError, RunNotFoundError
from eltflow.models import NodeResult, NodeStatus, RunRecord, RunStatus
from eltflow.project import Project
from eltflow.runner import ProjectRunner, build_scheduler

app = typer.Typer(name='eltflow', help='eltflow - SQL model orchestration and scheduling')
console = Console()

STATUS_STYLES = {
    'pending': 'dim',
    'running': 'cyan',
    'success': 'green',
    'failed': 'red',
    'failed_test': 'red',
    'skipped': 'yellow',
    'cancelled': 'yellow',
}

ProjectDirOption = typer.Option(None, '--project-dir', help='Project directory (default: current directory)')


def _styled(status: str) -> str:
    style = STATUS_STYLES.get(status, 'white')
    return f'[{style}]{status}[/{style}]'


def _fail(e: Exception) -> None:
    if isinstance(e, ProjectNotFoundError):
        console.print(f'[bold red]Error:[/bold red] {e}')
        console.print('Run [bold]eltflow init[/bold] to initialize a project')
    elif isinstance(e, ParseError):
        console.print(f'[bold red]Parse Error:[/bold red] {e}')
    else:
        console.print(f'[bold red]Error:[/bold red] {e}')
    sys.exit(1)


def _load_project(project_dir: Optional[Path], target: Optional[str] = None) -> Project:
    project = Project(project_dir, target=target)
    if not (project.project_root / PROJECT_FILE).exists():
        raise ProjectNotFoundError(f'No {PROJECT_FILE} found in {project.project_root}')
    return project


@app.callback()
def main_callback(verbose: bool = typer.Option(False, '--verbose', '-v', help='Enable debug logging')):
    """eltflow - SQL model orchestration and scheduling."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format='%(message)s',
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


@app.command()
def init(
    project_name: Optional[str] = typer.Argument(None, help='Project name (default: current directory name)'),
    project_dir: Optional[Path] = ProjectDirOption,
):
    """Initialize a new eltflow project."""
    project_dir = Path.cwd() if project_dir is None else Path(project_dir).resolve()
    project_name = project_name or project_dir.name

    console.print(f'[bold green]Initializing eltflow project:[/bold green] {project_name}')

    models_dir = project_dir / 'models'
    (models_dir / 'staging').mkdir(parents=True, exist_ok=True)
    (models_dir / 'marts').mkdir(parents=True, exist_ok=True)
    (project_dir / 'macros').mkdir(parents=True, exist_ok=True)

    project_config = {
        'name': project_name,
        'version': '1.0.0',
        'model-paths': ['models'],
        'vars': {},
        'models': {'materialized': 'view'},
        'schedule': {
            'interval': '@daily',
            'catchup': False,
            'max_concurrent_models': 4,
        },
    }
    profiles = {
        'target': 'dev',
        'outputs': {
            'dev': {'type': 'sqlite', 'path': 'warehouse.db', 'schema': 'main'},
        },
    }

    files = {
        project_dir / PROJECT_FILE: yaml.dump(project_config, default_flow_style=False, sort_keys=False),
        project_dir / 'profiles.yml': yaml.dump(profiles, default_flow_style=False, sort_keys=False),
        project_dir / '.gitignore': '# eltflow\n.eltflow/\nwarehouse.db\n',
        models_dir / 'staging' / 'sources.yml': SOURCES_TEMPLATE,
        models_dir / 'staging' / 'stg_orders.sql': STG_ORDERS_TEMPLATE,
        models_dir / 'marts' / 'fct_orders.sql': FCT_ORDERS_TEMPLATE,
    }
    for path, content in files.items():
        if path.exists():
            console.print(f'  [yellow]⚠[/yellow] {path} already exists, skipping')
            continue
        path.write_text(content)
        console.print(f'  [green]✓[/green] Created {path}')

    console.print('\n[bold green]✓ Project initialized successfully![/bold green]')
    console.print('\nNext steps:')
    console.print(f'  1. Edit models in {models_dir}/')
    console.print('  2. Run [bold]eltflow compile[/bold] to check dependencies')
    console.print('  3. Run [bold]eltflow run[/bold] to build models')


@app.command(name='list')
def list_nodes(
    select: Optional[List[str]] = typer.Option(None, '--select', '-s', help='Glob or tag:<tag> selector'),
    project_dir: Optional[Path] = ProjectDirOption,
):
    """List all models and sources in the project."""
    try:
        project = _load_project(project_dir)
        graph = project.load_graph()
        names = project.select(graph, select) if select else graph.get_all_nodes()

        if not names:
            console.print('[yellow]No models found[/yellow]')
            return

        table = Table(title='Nodes')
        table.add_column('Name', style='cyan')
        table.add_column('Kind')
        table.add_column('Materialization')
        table.add_column('Tests', justify='right')
        table.add_column('Path', style='dim')

        for name in graph.topological_sort():
            if name not in names:
                continue
            node = graph.get_node(name)
            materialization = node.materialization.value if node.kind == 'model' else '-'
            table.add_row(name, node.kind, materialization, str(len(node.tests)), node.path or '-')

        console.print(table)
    except EltflowError as e:
        _fail(e)


@app.command()
def compile(
    select: Optional[List[str]] = typer.Option(None, '--select', '-s', help='Glob or tag:<tag> selector'),
    show_sql: bool = typer.Option(False, '--show-sql', help='Show compiled SQL'),
    target: Optional[str] = typer.Option(None, '--target', '-t', help='Profile output to compile for'),
    project_dir: Optional[Path] = ProjectDirOption,
):
    """Compile models and show dependencies and execution order."""
    try:
        project = _load_project(project_dir, target)
        graph = project.load_graph()
        if select:
            graph = graph.select(project.select(graph, select))

        if not graph.models():
            console.print('[yellow]No models found to compile[/yellow]')
            return

        output = project.output()
        default_schema = 'main' if output['type'] == 'sqlite' else None
        schema, database = output.get('schema', default_schema), output.get('database')

        relations = {
            name: Executor.relation_for(graph.get_node(name), database, schema) for name in graph.get_all_nodes()
        }
        name_table = {name: relation.render() for name, relation in relations.items()}

        table = Table(title='Compilation Results')
        table.add_column('Model', style='cyan')
        table.add_column('Relation', style='green')
        table.add_column('Dependencies', style='yellow')

        order = graph.topological_sort()
        compiled = {}
        for name in order:
            node = graph.get_node(name)
            if node.kind != 'model':
                continue
            compiled[name] = project.compiler.resolve(node.sql, name_table, model_name=name, this=name_table[name])
            deps = sorted(graph.get_dependencies(name))
            table.add_row(name, name_table[name], ', '.join(deps) if deps else 'None')

        console.print(table)
        console.print(f'\n[bold]Execution order:[/bold] {" → ".join(n for n in order if n in compiled)}')

        if show_sql:
            console.print('\n[bold]Compiled SQL:[/bold]\n')
            for name, sql in compiled.items():
                console.print(f'[bold cyan]{name}:[/bold cyan]')
                console.print(f'[dim]{sql}[/dim]\n', markup=False, highlight=False)
    except EltflowError as e:
        _fail(e)


def _print_node(result: NodeResult) -> None:
    duration = f'{result.duration:.2f}s' if result.duration is not None else ''
    console.print(f'  {_styled(result.status.value)} {result.kind} [cyan]{result.name}[/cyan] [dim]{duration}[/dim]')
    if result.error and result.status != NodeStatus.SKIPPED:
        console.print(f'    [dim]{result.error}[/dim]', highlight=False)


def _print_results(record: RunRecord) -> None:
    table = Table(title=f'Run {record.run_id}')
    table.add_column('Node', style='cyan')
    table.add_column('Kind')
    table.add_column('Status')
    table.add_column('Tests', justify='right')
    table.add_column('Duration', justify='right', style='dim')

    for name, result in record.results.items():
        passed = sum(1 for t in result.test_results if t.passed)
        tests = f'{passed}/{len(result.test_results)}' if result.test_results else '-'
        duration = f'{result.duration:.2f}s' if result.duration is not None else '-'
        table.add_row(name, result.kind, _styled(result.status.value), tests, duration)

    console.print(table)
    errors = record.errors()
    if errors:
        console.print('\n[bold]Errors:[/bold]')
        for name, error in errors.items():
            console.print(f'  [red]{name}[/red]: {error}', highlight=False)


@app.command()
def run(
    select: Optional[List[str]] = typer.Option(None, '--select', '-s', help='Glob or tag:<tag> selector'),
    threads: Optional[int] = typer.Option(None, '--threads', help='Models to run concurrently'),
    target: Optional[str] = typer.Option(None, '--target', '-t', help='Profile output to build into'),
    force: bool = typer.Option(False, '--force', help='Start even if another run is recorded as running'),
    dry_run: bool = typer.Option(False, '--dry-run', help='Show what would be executed without running'),
    project_dir: Optional[Path] = ProjectDirOption,
):
    """Execute models in dependency order as a manual run."""
    try:
        project = _load_project(project_dir, target)
        schedule = project.scheduler_config()
        max_workers = threads or schedule.max_concurrent_models

        if dry_run:
            graph = project.load_graph()
            selected = project.select(graph, select) if select else None
            order = graph.get_execution_order(selected)
            console.print('[bold yellow]Dry run mode - showing execution plan[/bold yellow]\n')
            table = Table(title='Execution Plan')
            table.add_column('Order', style='cyan')
            table.add_column('Node', style='green')
            table.add_column('Dependencies', style='yellow')
            for idx, name in enumerate(order, 1):
                deps = sorted(graph.get_dependencies(name))
                table.add_row(str(idx), name, ', '.join(deps) if deps else 'None')
            console.print(table)
            console.print(f'\n[dim]Would execute {len(order)} nodes with {max_workers} worker(s)[/dim]')
            return

        runner = ProjectRunner(
            project,
            max_workers=max_workers,
            retry_config=schedule.retry,
            select=select,
            on_node_complete=_print_node,
        )
        console.print(f'[bold]Running {project.name} with {max_workers} worker(s)...[/bold]\n')
        record = runner.run_once(project.state_database(), force=force)

        console.print()
        _print_results(record)
        if record.status == RunStatus.SUCCESS:
            console.print(f'\n[bold green]✓ Run {record.run_id} succeeded[/bold green]')
        else:
            console.print(f'\n[bold red]✗ Run {record.run_id} failed:[/bold red] {record.error}')
            sys.exit(1)
    except EltflowError as e:
        _fail(e)


@app.command()
def runs(
    limit: int = typer.Option(20, '--limit', '-n', help='Number of runs to show'),
    project_dir: Optional[Path] = ProjectDirOption,
):
    """List recent runs."""
    try:
        project = _load_project(project_dir)
        records = project.state_database().list_runs(limit=limit)

        if not records:
            console.print('[yellow]No runs recorded yet[/yellow]')
            console.print('Run [bold]eltflow run[/bold] to execute models')
            return

        table = Table(title='Runs')
        table.add_column('Run ID', style='cyan')
        table.add_column('Trigger')
        table.add_column('Logical Date', style='dim')
        table.add_column('Status')
        table.add_column('Started', style='dim')
        table.add_column('Nodes', justify='right')

        for record in records:
            ok = sum(1 for r in record.results.values() if r.status == NodeStatus.SUCCESS)
            table.add_row(
                record.run_id,
                record.trigger.value,
                record.logical_date.strftime('%Y-%m-%d %H:%M') if record.logical_date else '-',
                _styled(record.status.value),
                record.started_at.strftime('%Y-%m-%d %H:%M:%S') if record.started_at else '-',
                f'{ok}/{len(record.results)}',
            )

        console.print(table)
    except EltflowError as e:
        _fail(e)


@app.command()
def status(
    run_id: str = typer.Argument(..., help='Run ID'),
    project_dir: Optional[Path] = ProjectDirOption,
):
    """Show the status and per-node outcomes of a run."""
    try:
        project = _load_project(project_dir)
        record = project.state_database().get_run(run_id)
        if record is None:
            raise RunNotFoundError(run_id)

        console.print(f'Run [cyan]{record.run_id}[/cyan] ({record.trigger.value}): {_styled(record.status.value)}')
        if record.logical_date:
            console.print(f'Logical date: {record.logical_date.isoformat()}')
        if record.results:
            console.print()
            _print_results(record)
        elif record.error:
            console.print(f'[red]{record.error}[/red]', highlight=False)
    except EltflowError as e:
        _fail(e)


@app.command()
def schedule(
    target: Optional[str] = typer.Option(None, '--target', '-t', help='Profile output to build into'),
    run_now: bool = typer.Option(False, '--run-now', help='Trigger a manual run on startup'),
    project_dir: Optional[Path] = ProjectDirOption,
):
    """Run the scheduler in the foreground until interrupted."""
    try:
        project = _load_project(project_dir, target)
        config = project.scheduler_config()
        scheduler = build_scheduler(project, config, state_db=project.state_database(), on_node_complete=_print_node)

        console.print(f'[bold]Scheduling {project.name}[/bold]')
        console.print(
            f'[dim]Cadence {scheduler.cadence.expression}, catchup={config.catchup}, '
            f'max_concurrent_models={config.max_concurrent_models}. Press Ctrl+C to stop.[/dim]\n'
        )

        if run_now:
            scheduler.trigger_now()
        scheduler.start()
        try:
            while True:
                time.sleep(1)
        except KeyboardInterrupt:
            console.print('\n[yellow]Stopping scheduler, cancelling active run[/yellow]')
            active = scheduler.active_run
            scheduler.stop(cancel_active=True)
            if active is not None:
                scheduler.wait(active.run_id)
    except EltflowError as e:
        _fail(e)


SOURCES_TEMPLATE = """version: 2

sources:
  - name: raw
    schema: main
    tables:
      - name: orders
        columns:
          - name: order_id
            tests:
              - unique
              - not_null
"""

STG_ORDERS_TEMPLATE = """{{ config(materialized='view') }}

SELECT
    order_id,
    customer_id,
    amount
FROM {{ source('raw', 'orders') }}
"""

FCT_ORDERS_TEMPLATE = """{{ config(materialized='table') }}

SELECT
    customer_id,
    COUNT(*) AS order_count,
    SUM(amount) AS total_amount
FROM {{ ref('stg_orders') }}
GROUP BY customer_id
"""


def main():
    """Entry point for CLI."""
    app()


if __name__ == '__main__':
    main()
