"""Command-line interface with Rich formatting."""

import asyncio
import json
import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Dict, List

import click
from rich.console import Console
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.prompt import Confirm
from rich.table import Table
import structlog

from .config import load_settings, create_example_config
from .database import Base, DatabaseManager
from .models import CalendarConnection, CalendarProvider, ConflictChoice, SyncResult
from .scheduler import SyncScheduler
from .services import CalendarServiceError, create_provider_client
from .task_store import JsonFileTaskStore

console = Console()
logger = structlog.get_logger()


def setup_logging(level: str, log_format: str, debug: bool = False) -> None:
    """Set up structured logging."""
    logging.basicConfig(level=getattr(logging, level), format=log_format)
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer() if debug else structlog.processors.JSONRenderer()
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def async_command(f):
    """Decorator to wrap async click commands."""
    @click.pass_context
    def wrapper(ctx, *args, **kwargs):
        return asyncio.run(f(ctx, *args, **kwargs))
    wrapper.__name__ = f.__name__
    wrapper.__doc__ = f.__doc__
    return wrapper


def _build_scheduler(settings) -> SyncScheduler:
    return SyncScheduler(settings, JsonFileTaskStore(settings.tasks_file))


def _require_settings(settings) -> None:
    missing_fields = settings.validate_required_settings()
    if missing_fields:
        console.print(Panel(
            "[red]Missing required configuration fields:[/red]\n" +
            "\n".join(f"• {field}" for field in missing_fields) +
            "\n\nSet these environment variables or create a configuration file.\n" +
            "Use [bold]taskcal-sync config create[/bold] to create an example file.",
            title="Configuration Error"
        ))
        sys.exit(1)


@click.group()
@click.version_option(version="1.0.0")
@click.option('--config', '-c', type=click.Path(exists=True),
              help='Path to configuration file')
@click.option('--debug', is_flag=True, help='Enable debug mode')
@click.option('--verbose', '-v', is_flag=True, help='Enable verbose output')
@click.pass_context
def cli(ctx, config, debug, verbose):
    """taskcal-sync - two-way sync between your task list and Google / Outlook calendars."""
    ctx.ensure_object(dict)

    try:
        settings = load_settings(config)
        if debug:
            settings.debug = True
        if verbose:
            settings.log_level = 'DEBUG'

        ctx.obj['settings'] = settings
        setup_logging(settings.log_level, settings.log_format, settings.debug)

    except Exception as e:
        console.print(f"[red]Error loading configuration: {e}[/red]")
        sys.exit(1)


@cli.group()
def config():
    """Configuration management commands."""
    pass


@config.command('create')
@click.option('--path', '-p', type=click.Path(), default='.env',
              help='Path to create config file')
@click.option('--force', '-f', is_flag=True,
              help='Overwrite existing file')
def create_config(path, force):
    """Create an example configuration file."""
    config_path = Path(path)

    if config_path.exists() and not force:
        if not Confirm.ask(f"File {path} already exists. Overwrite?"):
            console.print("[yellow]Configuration creation cancelled[/yellow]")
            return

    create_example_config(config_path)
    console.print(f"[green]Configuration file created at {path}[/green]")
    console.print("Please edit the file with your actual credentials.")


@config.command('validate')
@click.pass_context
def validate_config(ctx):
    """Validate the current configuration."""
    settings = ctx.obj['settings']
    _require_settings(settings)
    console.print(Panel(
        "[green]✓ All required configuration fields are present[/green]",
        title="Configuration Validation",
        border_style="green"
    ))


@cli.group()
def connect():
    """Connect a Google or Outlook calendar."""
    pass


@connect.command('auth-url')
@click.argument('provider', type=click.Choice([p.value for p in CalendarProvider]))
@click.option('--state', help='Opaque state echoed back to the redirect URI')
@async_command
async def connect_auth_url(ctx, provider, state):
    """Print the authorization URL for PROVIDER."""
    settings = ctx.obj['settings']
    client = create_provider_client(CalendarProvider(provider), settings)
    try:
        console.print(client.get_auth_url(state))
    finally:
        await client.close()


@connect.command('exchange')
@click.argument('provider', type=click.Choice([p.value for p in CalendarProvider]))
@click.argument('code')
@click.option('--calendar', 'calendar_id', default='primary', help='Remote calendar ID')
@click.option('--name', help='Display name for the connection')
@async_command
async def connect_exchange(ctx, provider, code, calendar_id, name):
    """Exchange an authorization CODE and store the connection."""
    settings = ctx.obj['settings']
    provider = CalendarProvider(provider)
    client = create_provider_client(provider, settings)
    try:
        credentials = await client.exchange_code_for_tokens(code)
        user_info = await client.get_user_info(credentials)
    except CalendarServiceError as e:
        console.print(f"[red]Failed to connect {provider.value}: {e}[/red]")
        sys.exit(1)
    finally:
        await client.close()

    db_manager = DatabaseManager(settings)
    db_manager.init_db()
    connection = CalendarConnection(
        user_id=settings.user_id,
        provider=provider,
        calendar_id=calendar_id,
        name=name or f"{provider.value.title()} {calendar_id}",
        account_email=user_info.get('email'),
        credentials=credentials,
    )
    with db_manager.get_session() as session:
        row = db_manager.save_connection(session, connection)
        connection_id = row.id
    console.print(f"[green]✓ Connected {user_info.get('email') or provider.value} as {connection_id}[/green]")


@cli.command()
@click.pass_context
def connections(ctx):
    """List connected calendars."""
    settings = ctx.obj['settings']
    db_manager = DatabaseManager(settings)
    db_manager.init_db()

    with db_manager.get_session() as session:
        rows = [row.to_model() for row in db_manager.get_connections(session)]

    if not rows:
        console.print("[yellow]No calendars connected. Use 'taskcal-sync connect' first.[/yellow]")
        return

    table = Table(show_header=True, header_style="bold magenta", title="Connections")
    table.add_column("ID", style="cyan")
    table.add_column("Provider")
    table.add_column("Calendar")
    table.add_column("Account")
    table.add_column("Enabled", justify="center")
    table.add_column("Re-auth", justify="center")
    for connection in rows:
        table.add_row(
            connection.id,
            connection.provider.value,
            connection.calendar_id,
            connection.account_email or "",
            "✓" if connection.enabled else "✗",
            "[red]needed[/red]" if connection.needs_reauth else "",
        )
    console.print(table)


@cli.command()
@click.option('--calendar', '-c', 'calendar_ids', multiple=True,
              help='Connection ID to sync (repeatable, default: all enabled)')
@async_command
async def sync(ctx, calendar_ids):
    """Synchronize tasks with connected calendars."""
    settings = ctx.obj['settings']
    _require_settings(settings)

    try:
        async with _build_scheduler(settings) as scheduler:
            with Progress(
                SpinnerColumn(),
                TextColumn("[progress.description]{task.description}"),
                console=console,
                transient=True
            ) as progress:
                progress.add_task("Synchronizing...", total=None)
                if calendar_ids:
                    results = await scheduler.sync_calendar(list(calendar_ids))
                else:
                    results = await scheduler.sync_all()
    except KeyboardInterrupt:
        console.print("[yellow]Sync cancelled by user[/yellow]")
        sys.exit(1)
    except Exception as e:
        console.print(f"[red]Sync failed: {e}[/red]")
        if settings.debug:
            console.print_exception()
        sys.exit(1)

    _display_sync_results(results)


@cli.command()
@async_command
async def status(ctx):
    """Show per-calendar sync status."""
    settings = ctx.obj['settings']
    scheduler = _build_scheduler(settings)
    await scheduler.sync_manager.initialize()
    try:
        sync_status = scheduler.get_sync_status()
        pending = scheduler.get_conflicts()
        with scheduler.db_manager.get_session() as session:
            stats = scheduler.db_manager.get_sync_statistics(session)
    finally:
        await scheduler.stop()

    table = Table(show_header=True, header_style="bold magenta", title="Sync Status")
    table.add_column("Connection", style="cyan")
    table.add_column("Provider")
    table.add_column("Last run")
    table.add_column("Last error", style="red")
    table.add_column("Re-auth", justify="center")
    for connection_id, info in sync_status.items():
        last_run = info['last_run_at'].strftime('%Y-%m-%d %H:%M:%S') if info['last_run_at'] else "never"
        table.add_row(
            connection_id,
            info['provider'],
            last_run,
            info['last_error'] or "",
            "needed" if info['needs_reauth'] else "",
        )
    console.print(table)

    stats_table = Table(title="Statistics")
    stats_table.add_column("Metric", style="cyan")
    stats_table.add_column("Value", justify="right")
    stats_table.add_row("Total runs", str(stats['total_runs']))
    stats_table.add_row("Completed", str(stats['completed_runs']))
    stats_table.add_row("Failed", str(stats['failed_runs']))
    stats_table.add_row("Remote changes", str(stats['remote_changes']))
    stats_table.add_row("Local changes", str(stats['local_changes']))
    console.print(stats_table)

    if pending:
        console.print(f"[yellow]⚠️  {len(pending)} conflicts pending, see 'taskcal-sync conflicts list'[/yellow]")


@cli.command()
@click.option('--calendar', '-c', 'calendar_ids', multiple=True, help='Connection ID to test')
@async_command
async def test(ctx, calendar_ids):
    """Test connected calendars."""
    settings = ctx.obj['settings']
    scheduler = _build_scheduler(settings)
    await scheduler.sync_manager.initialize()
    try:
        ids = list(calendar_ids) or list(scheduler.get_sync_status())
        results = {cid: await scheduler.test_connection(cid) for cid in ids}
    finally:
        await scheduler.stop()

    for connection_id, ok in results.items():
        if ok:
            console.print(f"[green]✓ {connection_id}[/green]")
        else:
            console.print(f"[red]✗ {connection_id}[/red]")
    if not all(results.values()):
        sys.exit(1)


@cli.command()
@click.option('--interval', '-i', type=int,
              help='Sync interval in minutes (overrides config)')
@click.option('--max-runs', type=int,
              help='Maximum number of sync runs (default: infinite)')
@async_command
async def daemon(ctx, interval, max_runs):
    """Run taskcal-sync continuously as a daemon."""
    settings = ctx.obj['settings']
    _require_settings(settings)

    sync_interval = interval * 60 if interval else settings.sync_config.sync_interval_seconds
    console.print(f"[green]Starting taskcal-sync daemon[/green] - interval: {sync_interval:.0f} seconds")

    runs = 0
    async with _build_scheduler(settings) as scheduler:
        try:
            while True:
                if max_runs and runs >= max_runs:
                    console.print(f"[yellow]Reached maximum runs ({max_runs}), stopping daemon[/yellow]")
                    break

                console.print(f"\n[blue]--- Sync Run {runs + 1} at {datetime.now().strftime('%Y-%m-%d %H:%M:%S')} ---[/blue]")
                try:
                    results = await scheduler.sync_all()
                    _display_sync_results(results, compact=True)
                except Exception as e:
                    console.print(f"[red]Sync run failed: {e}[/red]")
                    if settings.debug:
                        console.print_exception()
                runs += 1

                if max_runs and runs >= max_runs:
                    break
                await asyncio.sleep(sync_interval)
        except KeyboardInterrupt:
            console.print("\n[yellow]Daemon stopped by user[/yellow]")


@cli.group()
def conflicts():
    """Review and resolve sync conflicts."""
    pass


@conflicts.command('list')
@click.option('--calendar', '-c', 'calendar_id', help='Restrict to one connection')
@async_command
async def list_conflicts(ctx, calendar_id):
    """List pending conflicts."""
    settings = ctx.obj['settings']
    scheduler = _build_scheduler(settings)
    await scheduler.sync_manager.initialize()
    try:
        pending = scheduler.get_conflicts(calendar_id)
    finally:
        await scheduler.stop()

    if not pending:
        console.print("[green]No pending conflicts[/green]")
        return

    table = Table(show_header=True, header_style="bold magenta", title="Pending Conflicts")
    table.add_column("ID", style="cyan")
    table.add_column("Connection")
    table.add_column("Task")
    table.add_column("Local")
    table.add_column("Remote")
    table.add_column("Fields")
    for conflict in pending:
        table.add_row(
            conflict.id,
            conflict.connection_id,
            conflict.task_id or "",
            conflict.local_version.title if conflict.local_version else "[dim]deleted[/dim]",
            conflict.remote_version.title if conflict.remote_version else "[dim]deleted[/dim]",
            ", ".join(conflict.conflict_fields),
        )
    console.print(table)


@conflicts.command('resolve')
@click.argument('conflict_id')
@click.option('--resolution', '-r', required=True,
              type=click.Choice([ConflictChoice.LOCAL.value, ConflictChoice.REMOTE.value, ConflictChoice.MERGE.value]),
              help='Which side wins')
@click.option('--merged', help='JSON object of event fields overriding the merge result')
@async_command
async def resolve_conflict(ctx, conflict_id, resolution, merged):
    """Resolve a pending conflict."""
    settings = ctx.obj['settings']
    merged_data = json.loads(merged) if merged else None

    scheduler = _build_scheduler(settings)
    await scheduler.sync_manager.initialize()
    try:
        result = await scheduler.resolve_conflict(conflict_id, resolution, merged_data)
    except (KeyError, ValueError) as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)
    finally:
        await scheduler.stop()

    if result.success:
        console.print(f"[green]✓ Conflict {conflict_id} resolved ({resolution})[/green]")
    else:
        console.print(f"[red]Failed to resolve conflict: {result.last_error}[/red]")
        sys.exit(1)


@cli.command()
@click.confirmation_option(prompt='Are you sure you want to reset all sync data?')
@click.pass_context
def reset(ctx):
    """Reset links, cursors and conflicts (connections are kept)."""
    settings = ctx.obj['settings']

    db_manager = DatabaseManager(settings)
    tables = [
        Base.metadata.tables[name]
        for name in ('calendar_links', 'sync_cursors', 'sync_conflicts', 'sync_runs')
    ]
    Base.metadata.drop_all(bind=db_manager.engine, tables=tables)
    Base.metadata.create_all(bind=db_manager.engine)

    console.print("[green]✓ Sync data has been reset[/green]")
    console.print("[yellow]⚠️  Next sync will run a full enumeration[/yellow]")


def _display_sync_results(results: Dict[str, SyncResult], compact: bool = False) -> None:
    """Display sync results."""
    if not results:
        console.print("[yellow]Nothing was synced[/yellow]")
        return

    if compact:
        for connection_id, result in results.items():
            colour = "green" if result.success else "red"
            console.print(
                f"[{colour}]{connection_id}: {result.status.value}, {result.total_changes} changes, "
                f"{len(result.conflicts)} conflicts, {len(result.errors)} errors[/{colour}]"
            )
        return

    table = Table(show_header=True, header_style="bold magenta", title="Sync Results")
    table.add_column("Connection", style="cyan")
    table.add_column("Status")
    table.add_column("Remote +/~/-", justify="center")
    table.add_column("Local +/~/-", justify="center")
    table.add_column("Conflicts", justify="center")
    for connection_id, result in results.items():
        table.add_row(
            connection_id,
            result.status.value,
            f"{result.remote_created}/{result.remote_updated}/{result.remote_deleted}",
            f"{result.local_created}/{result.local_updated}/{result.local_deleted}",
            str(len(result.conflicts)),
        )
    console.print(table)

    errors: List[str] = [
        f"{cid}: {error.message}" for cid, result in results.items() for error in result.errors
    ]
    if errors:
        console.print(Panel(
            "\n".join(f"• {error}" for error in errors),
            title="[red]Errors[/red]",
            border_style="red"
        ))


if __name__ == '__main__':
    cli()
