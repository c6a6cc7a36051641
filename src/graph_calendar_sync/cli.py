"""
Command-line interface for Graph Calendar Sync.
"""

import logging
import os
from collections.abc import Iterator
from configparser import ConfigParser
from contextlib import contextmanager
from dataclasses import dataclass
from dataclasses import field
from datetime import date
from datetime import datetime
from pathlib import Path
from typing import Annotated
from zoneinfo import ZoneInfoNotFoundError

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.progress import BarColumn
from rich.progress import MofNCompleteColumn
from rich.progress import Progress
from rich.progress import SpinnerColumn
from rich.progress import TextColumn
from rich.table import Table
from rich.text import Text

from graph_calendar_sync.db import StateDatabase
from graph_calendar_sync.event_types import EventTypeStore
from graph_calendar_sync.graph_client import GraphCalendarSource
from graph_calendar_sync.graph_client import is_online
from graph_calendar_sync.models import DEFAULT_CONFIG
from graph_calendar_sync.models import DEFAULT_STATE_DB
from graph_calendar_sync.models import CalendarSyncError
from graph_calendar_sync.models import EventType
from graph_calendar_sync.models import EventTypeError
from graph_calendar_sync.models import InvalidRangeError
from graph_calendar_sync.models import RuleField
from graph_calendar_sync.models import RuleOperator
from graph_calendar_sync.models import SyncConfig
from graph_calendar_sync.models import SyncProgress
from graph_calendar_sync.models import SyncResult
from graph_calendar_sync.models import TypeRule
from graph_calendar_sync.remote import RemoteCalendarSource
from graph_calendar_sync.settings import SyncSettings
from graph_calendar_sync.store import EventStore
from graph_calendar_sync.sync.engine import SyncEngine
from graph_calendar_sync.sync.utils import resolve_timezone

# ---------------------------------------------------------------------------
# Typer app
# ---------------------------------------------------------------------------

app = typer.Typer(
    no_args_is_help=True,
    rich_markup_mode="rich",
    help="Differential sync of a Microsoft Graph calendar into a local store.",
)

console = Console()

TOKEN_ENV_VAR = "GRAPH_ACCESS_TOKEN"


# ---------------------------------------------------------------------------
# Global state shared across subcommands
# ---------------------------------------------------------------------------


@dataclass
class _State:
    config_path: Path = field(default_factory=lambda: DEFAULT_CONFIG)
    state_db: Path = field(default_factory=lambda: DEFAULT_STATE_DB)
    verbose: bool = False


state = _State()


@app.callback()
def _global(
    config: Annotated[
        Path,
        typer.Option("--config", "-c", help=f"Config file path (default: {DEFAULT_CONFIG})"),
    ] = DEFAULT_CONFIG,
    state_db: Annotated[
        Path,
        typer.Option("--db", "--state-db", help=f"State DB path (default: {DEFAULT_STATE_DB})"),
    ] = DEFAULT_STATE_DB,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Enable verbose debug output"),
    ] = False,
) -> None:
    state.config_path = config
    state.state_db = state_db
    state.verbose = verbose
    _setup_logging(verbose)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False, console=console)],
    )


def _load_config_file(config_path: Path) -> dict[str, str]:
    if not config_path.exists():
        return {}
    parser = ConfigParser()
    parser.read(config_path)
    if "calendar-sync" not in parser:
        return {}
    return dict(parser["calendar-sync"])


def _access_token(config_file: dict[str, str]) -> str | None:
    return os.environ.get(TOKEN_ENV_VAR) or config_file.get("access_token") or None


def _make_source(config_file: dict[str, str], token: str) -> RemoteCalendarSource:
    try:
        page_size = int(config_file.get("page_size", "100"))
    except ValueError:
        console.print(f"[bold red]Error:[/] Invalid page_size: {config_file['page_size']!r}")
        raise typer.Exit(1) from None
    return GraphCalendarSource(
        lambda: token,
        calendar_id=config_file.get("calendar_id", ""),
        page_size=page_size,
    )


def _timezone(config_file: dict[str, str]):
    name = config_file.get("timezone") or None
    try:
        return resolve_timezone(name)
    except (ZoneInfoNotFoundError, ValueError):
        console.print(f"[bold red]Error:[/] Unknown timezone: {name!r}")
        raise typer.Exit(1) from None


@contextmanager
def _open_store() -> Iterator[tuple[EventStore, SyncSettings]]:
    try:
        with StateDatabase(state.state_db) as db:
            store = EventStore(db)
            yield store, SyncSettings(db, store)
    except CalendarSyncError as e:
        console.print(f"[bold red]Error:[/] {e}")
        raise typer.Exit(1) from None


def _format_timestamp(value: str | None) -> str:
    if not value:
        return "—"
    try:
        return datetime.fromisoformat(value).astimezone().strftime("%Y-%m-%d %H:%M:%S")
    except ValueError:
        return value


def _window_text(config: SyncConfig) -> str:
    days = (config.end_date - config.start_date).days + 1
    return f"{config.start_date.isoformat()} → {config.end_date.isoformat()} ({days} days)"


def _wait_for_worker(engine: SyncEngine) -> None:
    """Block until the sync thread exits, ignoring further Ctrl-C presses.

    The caller closes the store on return, so the worker must be gone by then.
    """
    while True:
        try:
            if engine.wait(0.2):
                return
        except KeyboardInterrupt:
            console.print("[yellow]Still cancelling, waiting for the current page to finish...[/]")


def _run_with_progress(engine: SyncEngine, force_full: bool) -> tuple[SyncResult, bool]:
    """Start the engine and render progress until it finishes.

    Ctrl-C asks the engine to stop at the next page boundary.
    Returns (result, interrupted).
    """
    interrupted = False
    with Progress(
        SpinnerColumn(),
        TextColumn("{task.description}"),
        BarColumn(),
        MofNCompleteColumn(),
        console=console,
        transient=True,
    ) as progress:
        task = progress.add_task("Starting...", total=None)

        def on_progress(p: SyncProgress) -> None:
            description = f"[cyan]{p.stage.value.capitalize()}[/] {p.message}"
            if p.total:
                progress.update(task, description=description, completed=p.completed, total=p.total)
            else:
                progress.update(task, description=description)

        engine.set_callbacks(on_progress=on_progress)
        try:
            engine.start(force_full_sync=force_full, online=is_online())
            while not engine.wait(0.2):
                pass
        except KeyboardInterrupt:
            interrupted = True
            console.print("[yellow]Interrupted by user, cancelling...[/]")
            engine.cancel()
            _wait_for_worker(engine)
        finally:
            engine.clear_callbacks()

    return engine.last_result, interrupted


def _print_result(result: SyncResult) -> None:
    results = Table.grid(padding=(0, 2))
    results.add_column(style="bold")
    results.add_column(justify="right")
    results.add_row("Created", str(result.stats.created))
    results.add_row("Updated", str(result.stats.updated))
    results.add_row("Deleted", str(result.stats.deleted))
    results.add_row("Total", str(result.stats.total))
    error_val = Text(str(len(result.errors)))
    if not result.errors:
        error_val.append(" ✓", style="green")
    else:
        error_val.stylize("bold red")
    results.add_row("Errors", error_val)

    if result.success:
        title = "[bold]Results[/bold]"
    elif result.cancelled:
        title = "[bold yellow]Results (cancelled)[/bold yellow]"
    else:
        title = "[bold red]Results (failed)[/bold red]"
    console.print(Panel(results, title=title, expand=False))


_YES = Annotated[bool, typer.Option("--yes", "-y", help="Skip confirmation prompt")]


# ---------------------------------------------------------------------------
# Subcommand: sync
# ---------------------------------------------------------------------------


@app.command()
def sync(
    full: Annotated[
        bool,
        typer.Option("--full", help="Ignore the stored delta token and resync the whole window"),
    ] = False,
    yes: _YES = False,
) -> None:
    """Synchronise the remote calendar into the local store.

    Uses the stored delta token when there is one; otherwise (or with
    [cyan]--full[/]) fetches every event in the sync window.
    """
    from graph_calendar_sync.preflight import run_preflight_checks

    config_file = _load_config_file(state.config_path)
    token = _access_token(config_file)
    if not run_preflight_checks(token, state.state_db, console):
        raise typer.Exit(1)

    source = _make_source(config_file, token)
    tz = _timezone(config_file)

    with _open_store() as (store, settings):
        engine = SyncEngine(source, store, settings, tz=tz, event_types=EventTypeStore(store.db))
        window = engine.get_current_sync_config()
        status = engine.get_sync_status()
        full_run = full or not status.continuation_token

        # -- Info panel ------------------------------------------------------
        info = Text()
        info.append("  Calendar:  ", style="bold")
        info.append(f"{config_file.get('calendar_id') or 'default'}\n")
        info.append("  Window:    ", style="bold")
        info.append(f"{_window_text(window)}\n")
        info.append("  Last sync: ", style="bold")
        info.append(f"{_format_timestamp(status.last_sync_time)}\n")
        info.append("  Mode:      ", style="bold")
        if full_run:
            info.append("FULL (fetch whole window, remove vanished events)", style="bold yellow")
        else:
            info.append("DIFFERENTIAL (changes since last sync)", style="bold green")
        console.print(Panel(info, title="[bold]Graph Calendar Sync[/bold]"))

        # -- Confirmation ----------------------------------------------------
        if full and not yes:
            typer.confirm("Proceed?", abort=True)

        # -- Run -------------------------------------------------------------
        try:
            result, interrupted = _run_with_progress(engine, full)
        except CalendarSyncError as e:
            console.print(f"[bold red]Sync failed:[/] {e}")
            raise typer.Exit(1) from None

    _print_result(result)

    if result.success:
        console.print(f"[green]{result.message}[/]")
        return
    if result.cancelled:
        console.print(f"[yellow]{result.message}[/]")
        raise typer.Exit(130 if interrupted else 1)

    console.print(f"[bold red]Sync failed:[/] {result.message}")
    for error in result.errors:
        console.print(f"  [red]•[/] {error}")
    raise typer.Exit(1)


# ---------------------------------------------------------------------------
# Subcommand: status
# ---------------------------------------------------------------------------


@app.command()
def status() -> None:
    """Show sync configuration and state database summary."""
    config_exists = state.config_path.exists()
    db_exists = state.state_db.exists()

    cfg_info = Text()
    cfg_info.append("  Config:   ", style="bold")
    cfg_info.append(str(state.config_path) + " ")
    cfg_info.append(
        "✓" if config_exists else "(not found)", style="green" if config_exists else "red"
    )
    cfg_info.append("\n  State DB: ", style="bold")
    cfg_info.append(str(state.state_db) + " ")
    cfg_info.append("✓" if db_exists else "(not found)", style="green" if db_exists else "yellow")

    config_file = _load_config_file(state.config_path)
    cfg_info.append("\n  Calendar: ", style="bold")
    cfg_info.append(config_file.get("calendar_id") or "default")
    cfg_info.append("\n  Token:    ", style="bold")
    if _access_token(config_file):
        cfg_info.append("configured", style="green")
    else:
        cfg_info.append("missing", style="red")

    console.print(Panel(cfg_info, title="[bold]Graph Calendar Sync — Status[/bold]"))

    if not db_exists:
        console.print(
            "[yellow]No state database yet — run[/] "
            "[cyan]graph-calendar-sync sync[/] "
            "[yellow]to create it.[/]"
        )
        return

    with _open_store() as (store, settings):
        window = settings.get_sync_config()
        sync_status = settings.get_sync_status()
        total, synced = store.count()

    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column(style="bold")
    table.add_column()
    table.add_row("Window", _window_text(window))
    table.add_row("Last sync", _format_timestamp(sync_status.last_sync_time))
    table.add_row(
        "Delta token",
        Text("stored", style="green")
        if sync_status.continuation_token
        else Text("none (next sync is full)", style="yellow"),
    )
    table.add_row("Last remote change", _format_timestamp(sync_status.last_event_modified))
    table.add_row("Events", f"{total} ({synced} synced, {total - synced} local)")

    console.print(Panel(table, title="[bold]Sync state[/bold]", expand=False))


# ---------------------------------------------------------------------------
# Subcommand: window
# ---------------------------------------------------------------------------


def _parse_date(value: str | None, label: str) -> date | None:
    if value is None:
        return None
    try:
        return date.fromisoformat(value)
    except ValueError:
        console.print(f"[bold red]Error:[/] Invalid {label} date: {value!r}")
        raise typer.Exit(1) from None


@app.command()
def window(
    start: Annotated[
        str | None, typer.Option("--start", help="First day of the window, YYYY-MM-DD")
    ] = None,
    end: Annotated[
        str | None, typer.Option("--end", help="Last day of the window, YYYY-MM-DD")
    ] = None,
) -> None:
    """Show or change the date window fetched by a full sync.

    A changed window takes effect on the next [bold]full[/bold] sync.
    """
    start_date = _parse_date(start, "start")
    end_date = _parse_date(end, "end")

    with _open_store() as (_, settings):
        current = settings.get_sync_config()
        if start_date is None and end_date is None:
            console.print(f"[bold]Sync window:[/] {_window_text(current)}")
            return

        new = SyncConfig(
            start_date=start_date or current.start_date,
            end_date=end_date or current.end_date,
        )
        try:
            settings.set_sync_config(new)
        except InvalidRangeError as e:
            console.print(f"[bold red]Error:[/] {e}")
            raise typer.Exit(1) from None

    console.print(f"[green]Sync window set:[/] {_window_text(new)}")
    console.print(
        "[dim]Run [cyan]graph-calendar-sync sync --full[/] to apply it to stored events.[/dim]"
    )


# ---------------------------------------------------------------------------
# Subcommand: events
# ---------------------------------------------------------------------------


def _type_cell(event, type_names: dict[int, str]) -> Text:
    if event.type_id is None:
        return Text("—", style="dim")
    cell = Text(type_names.get(event.type_id, f"#{event.type_id}"))
    if event.type_manually_set:
        cell.append(" (manual)", style="dim")
    return cell


@app.command()
def events(
    limit: Annotated[
        int, typer.Option("--limit", "-n", help="Maximum number of events to list")
    ] = 50,
) -> None:
    """List events in the local store, earliest first."""
    with _open_store() as (store, _):
        rows = store.get_events()
        type_names = {t.id: t.name for t in EventTypeStore(store.db).get_types()}

    if not rows:
        console.print("[yellow]The local store is empty.[/]")
        return

    table = Table(show_header=True, header_style="bold cyan")
    table.add_column("Start")
    table.add_column("End")
    table.add_column("Title", overflow="fold")
    table.add_column("Show as")
    table.add_column("Categories")
    table.add_column("Type")
    table.add_column("Source")
    for event in rows[:limit]:
        if event.is_all_day:
            start_cell = Text(event.start)
            start_cell.append(" all day", style="dim")
            end_cell = event.end
        else:
            start_cell = Text(_format_timestamp(event.start))
            end_cell = _format_timestamp(event.end)
        table.add_row(
            start_cell,
            end_cell,
            event.title,
            event.show_as.value,
            ", ".join(sorted(event.categories)),
            _type_cell(event, type_names),
            Text("graph", style="green") if event.is_synced else Text("local", style="dim"),
        )
    console.print(table)
    if len(rows) > limit:
        console.print(f"[dim]… {len(rows) - limit} more (use --limit)[/dim]")


# ---------------------------------------------------------------------------
# Subcommands: event types and classification rules
# ---------------------------------------------------------------------------


def _require_type(types: EventTypeStore, name: str) -> EventType:
    event_type = types.get_type_by_name(name)
    if event_type is None:
        console.print(f"[bold red]Error:[/] Unknown event type: {name!r}")
        raise typer.Exit(1)
    return event_type


@app.command("types")
def list_types() -> None:
    """List event types and the rules that assign them, in evaluation order."""
    with _open_store() as (store, _):
        types = EventTypeStore(store.db)
        event_types = types.get_types()
        rules = types.get_rules()

    type_table = Table(show_header=True, header_style="bold cyan", title="Event types")
    type_table.add_column("ID", justify="right")
    type_table.add_column("Name")
    type_table.add_column("Color")
    type_table.add_column("Default")
    for event_type in event_types:
        type_table.add_row(
            str(event_type.id),
            event_type.name,
            event_type.color,
            Text("✓", style="green") if event_type.is_default else "",
        )
    console.print(type_table)

    if not rules:
        console.print("[dim]No rules; every synced event gets the default type.[/dim]")
        return
    names = {t.id: t.name for t in event_types}
    rule_table = Table(show_header=True, header_style="bold cyan", title="Rules")
    rule_table.add_column("ID", justify="right")
    rule_table.add_column("Priority", justify="right")
    rule_table.add_column("Name")
    rule_table.add_column("Match")
    rule_table.add_column("Type")
    for rule in rules:
        match = f"{rule.field_name} {rule.operator}"
        if rule.operator != RuleOperator.IS_EMPTY:
            match += f" {rule.value!r}"
        rule_table.add_row(
            str(rule.id),
            str(rule.priority),
            rule.name,
            match,
            names.get(rule.target_type_id, f"#{rule.target_type_id}"),
        )
    console.print(rule_table)


@app.command("add-type")
def add_type(
    name: Annotated[str, typer.Argument(help="Name of the new event type")],
    color: Annotated[str, typer.Option("--color", help="Display colour, e.g. #52c41a")] = "#1890ff",
    default: Annotated[
        bool, typer.Option("--default", help="Assign this type when no rule matches")
    ] = False,
) -> None:
    """Create an event type."""
    with _open_store() as (store, _):
        try:
            created = EventTypeStore(store.db).create_type(
                EventType(name=name, color=color, is_default=default)
            )
        except EventTypeError as e:
            console.print(f"[bold red]Error:[/] {e}")
            raise typer.Exit(1) from None
    console.print(f"[green]Created event type[/] {created.name} (id {created.id})")


@app.command("add-rule")
def add_rule(
    type_name: Annotated[str, typer.Argument(help="Event type assigned on match")],
    field_name: Annotated[RuleField, typer.Option("--field", help="Event field to test")],
    operator: Annotated[RuleOperator, typer.Option("--operator", help="How to compare")],
    value: Annotated[str, typer.Option("--value", help="Text to compare against")] = "",
    priority: Annotated[
        int | None, typer.Option("--priority", help="Lower runs first (default: last)")
    ] = None,
    name: Annotated[str | None, typer.Option("--name", help="Label for the rule")] = None,
) -> None:
    """Add a classification rule. Rules run in priority order; the first match wins.

    Run [cyan]reprocess-types[/] to apply new rules to stored events.
    """
    with _open_store() as (store, _):
        types = EventTypeStore(store.db)
        target = _require_type(types, type_name)
        if priority is None:
            priority = max((r.priority for r in types.get_rules()), default=0) + 1
        rule = TypeRule(
            name=name or f"{field_name.value} {operator.value} {value}".strip(),
            priority=priority,
            field_name=field_name.value,
            operator=operator.value,
            value=value,
            target_type_id=target.id,
        )
        try:
            created = types.add_rule(rule)
        except EventTypeError as e:
            console.print(f"[bold red]Error:[/] {e}")
            raise typer.Exit(1) from None
    console.print(f"[green]Added rule[/] {created.name!r} (id {created.id}, priority {priority})")


@app.command("remove-rule")
def remove_rule(rule_id: Annotated[int, typer.Argument(help="Rule id from `types`")]) -> None:
    """Delete a classification rule."""
    with _open_store() as (store, _):
        removed = EventTypeStore(store.db).delete_rule(rule_id)
    if not removed:
        console.print(f"[bold red]Error:[/] No rule with id {rule_id}")
        raise typer.Exit(1)
    console.print(f"[green]Removed rule {rule_id}.[/]")


@app.command("set-type")
def set_type(
    event_id: Annotated[int, typer.Argument(help="Local event id")],
    type_name: Annotated[str, typer.Argument(help="Event type to assign")],
) -> None:
    """Assign a type to one event by hand. Later syncs keep it."""
    with _open_store() as (store, _):
        types = EventTypeStore(store.db)
        target = _require_type(types, type_name)
        if not types.set_event_type(event_id, target.id):
            console.print(f"[bold red]Error:[/] No event with id {event_id}")
            raise typer.Exit(1)
    console.print(f"[green]Event {event_id} is now[/] {target.name}")


@app.command("reprocess-types")
def reprocess_types() -> None:
    """Re-run the rules over every stored event whose type was not set by hand."""
    with _open_store() as (store, _):
        processed, changed = EventTypeStore(store.db).reprocess(store.get_events())
    console.print(f"[green]Processed {processed} event(s), {changed} changed type.[/]")


# ---------------------------------------------------------------------------
# Subcommands: clear / clear-all
# ---------------------------------------------------------------------------


@app.command()
def clear(yes: _YES = False) -> None:
    """Forget the last sync and delta token; events are kept.

    The next sync will be a full sync.
    """
    if not yes:
        typer.confirm("Forget sync status? The next sync will be a full sync.", abort=True)
    with _open_store() as (_, settings):
        settings.clear_sync_data()
    console.print("[green]Sync data cleared.[/]")


@app.command("clear-all")
def clear_all(yes: _YES = False) -> None:
    """Delete every local event and the sync status."""
    if not yes:
        typer.confirm(
            "Delete ALL local events (including ones not from Graph)?", abort=True
        )
    with _open_store() as (_, settings):
        deleted = settings.clear_all_data()
    console.print(f"[green]Removed {deleted} event(s) and cleared sync data.[/]")


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main() -> None:
    app()
