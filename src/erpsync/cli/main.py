"""erpsync CLI: operator and scheduler entry point.

Inspects connections, sync state, order links and import batches in the
configured store, and runs the maintenance actions an external scheduler
needs (forced resync, cancellation, log retention).

Usage:
    erpsync db init                    Create tables
    erpsync connections list           List ERP connections
    erpsync sync attention             Connections that need an operator
    erpsync imports cleanup            Purge old closed import batches
"""

import json
import logging
from collections.abc import Generator
from contextlib import contextmanager
from pathlib import Path
from typing import Optional

import typer
from pydantic import ValidationError as PydanticValidationError
from rich.console import Console
from sqlalchemy.orm import Session

from erpsync import __version__
from erpsync.cli.output import (
    format_attention_table,
    format_check_result,
    format_connection_detail,
    format_connection_table,
    format_import_stats,
    format_import_table,
    format_link_table,
    format_sync_state,
    to_json,
)
from erpsync.config import ErpSyncConfig, load_config
from erpsync.db.connection import create_db_engine, create_session_factory, init_db
from erpsync.errors import DomainError, NotFoundError, format_error
from erpsync.services import (
    ConnectionRegistry,
    ImportBatchLog,
    OrderLinkRegistry,
    SyncStateTracker,
)
from erpsync.utils.logging_setup import configure_logging
from erpsync.utils.redaction import redact_connection_config

_log = logging.getLogger(__name__)

app = typer.Typer(
    name="erpsync",
    help="ERP synchronization core: connections, sync state, order links and imports",
    no_args_is_help=True,
)
db_app = typer.Typer(help="Manage the sync store")
connections_app = typer.Typer(help="Inspect and check ERP connections")
sync_app = typer.Typer(help="Per-connection sync state and health")
links_app = typer.Typer(help="External order links")
imports_app = typer.Typer(help="Import batch audit trail")

app.add_typer(db_app, name="db")
app.add_typer(connections_app, name="connections")
app.add_typer(sync_app, name="sync")
app.add_typer(links_app, name="links")
app.add_typer(imports_app, name="imports")

console = Console()

# --- Global state ---
_config_path: str | None = None


@app.callback()
def main(
    config: Optional[str] = typer.Option(
        None, "--config", help="Path to erpsync.yaml config file"
    ),
):
    """ERP synchronization core."""
    global _config_path
    _config_path = config


def _emit(output: str) -> None:
    """Print pre-rendered output without re-wrapping or markup parsing."""
    console.print(output, markup=False, highlight=False, emoji=False, soft_wrap=True)


def _load_settings() -> ErpSyncConfig:
    try:
        cfg = load_config(_config_path)
    except FileNotFoundError as e:
        console.print(f"[red]Config file not found:[/red] {e}")
        raise typer.Exit(1)
    except PydanticValidationError as e:
        console.print(f"[red]Config validation failed:[/red] {e}")
        raise typer.Exit(1)
    configure_logging(cfg.logging.level, cfg.logging.format)
    return cfg


@contextmanager
def _open_session(cfg: ErpSyncConfig) -> Generator[Session, None, None]:
    """Open a session on the configured store, ensuring the schema exists.

    Domain errors raised inside the block are printed with their code and
    remediation, and the command exits with status 1.
    """
    engine = create_db_engine(cfg.database.resolved_url(), echo=cfg.database.echo)
    init_db(engine)
    db = create_session_factory(engine)()
    try:
        yield db
    except DomainError as e:
        db.rollback()
        _log.debug("Command failed: %s", e)
        console.print(format_error(e), markup=False, highlight=False)
        raise typer.Exit(1)
    finally:
        db.close()
        engine.dispose()


# --- Version ---


@app.command()
def version():
    """Show the erpsync version."""
    console.print(f"[bold]erpsync[/bold] v{__version__}")


# --- Database ---


@db_app.command("init")
def db_init():
    """Create all tables in the configured store."""
    cfg = _load_settings()
    url = cfg.database.resolved_url()
    engine = create_db_engine(url, echo=cfg.database.echo)
    try:
        init_db(engine)
    finally:
        engine.dispose()
    console.print(f"[green]Database ready:[/green] {engine.url.render_as_string(hide_password=True)}")


# --- Connections ---


@connections_app.command("list")
def connections_list(
    active: Optional[bool] = typer.Option(
        None, "--active/--inactive", help="Filter by active flag"
    ),
    system_type: Optional[str] = typer.Option(None, "--type", help="Filter by ERP system type"),
    search: Optional[str] = typer.Option(None, "--search", help="Substring match on name"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """List configured ERP connections."""
    cfg = _load_settings()
    with _open_session(cfg) as db:
        rows = ConnectionRegistry(db).find_all(
            is_active=active, erp_system_type=system_type, search=search
        )
        rows = [
            {
                **row,
                "connection_config": redact_connection_config(row["connection_config"]),
            }
            for row in rows
        ]
        _emit(format_connection_table(rows, as_json=json_output))


@connections_app.command("show")
def connections_show(
    connection_id: str = typer.Argument(help="Connection ID"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """Show one connection (credentials redacted) with usage statistics."""
    cfg = _load_settings()
    with _open_session(cfg) as db:
        registry = ConnectionRegistry(db)
        connection = registry.find_by_id(connection_id)
        if connection is None:
            raise NotFoundError("Connection", connection_id)
        connection["connection_config"] = redact_connection_config(
            connection["connection_config"]
        )
        usage = registry.get_usage_stats(connection_id)
        _emit(format_connection_detail(connection, usage, as_json=json_output))


@connections_app.command("test")
def connections_test(
    connection_id: str = typer.Argument(help="Connection ID"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """Statically validate a stored connection (no network calls)."""
    cfg = _load_settings()
    with _open_session(cfg) as db:
        result = ConnectionRegistry(db).test(connection_id)
    _emit(format_check_result(result, "Connection Test", as_json=json_output))
    if result["status"] != "success":
        raise typer.Exit(1)


@connections_app.command("audit")
def connections_audit(
    file: Path = typer.Argument(help="JSON file with connection_config and import_settings"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """Score a connection payload's security posture."""
    if not file.exists():
        console.print(f"[red]File not found: {file}[/red]")
        raise typer.Exit(1)
    try:
        payload = json.loads(file.read_text())
    except json.JSONDecodeError as e:
        console.print(f"[red]Invalid JSON in {file}:[/red] {e}")
        raise typer.Exit(1)
    if not isinstance(payload, dict):
        console.print("[red]Connection payload must be a JSON object[/red]")
        raise typer.Exit(1)

    result = ConnectionRegistry.security_audit(payload)
    _emit(format_check_result(result, "Security Audit", as_json=json_output))


@connections_app.command("template")
def connections_template(
    system_type: str = typer.Argument(help="ERP system type, e.g. sap_rest"),
):
    """Print a configuration skeleton for a system type as JSON."""
    _emit(to_json(ConnectionRegistry.template_for(system_type)))


# --- Sync state ---


@sync_app.command("status")
def sync_status(
    connection_id: str = typer.Argument(help="Connection ID"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """Show a connection's sync state and health."""
    cfg = _load_settings()
    with _open_session(cfg) as db:
        tracker = SyncStateTracker(db)
        state = tracker.get(connection_id)
        if state is None:
            raise NotFoundError("Sync state", connection_id)
        stats = tracker.get_sync_stats(connection_id)
        _emit(format_sync_state(state, stats, as_json=json_output))


@sync_app.command("attention")
def sync_attention(
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """List connections whose sync needs an operator."""
    cfg = _load_settings()
    with _open_session(cfg) as db:
        states = SyncStateTracker(db).needing_attention()
        _emit(format_attention_table(states, as_json=json_output))


@sync_app.command("init")
def sync_init(
    connection_id: str = typer.Argument(help="Connection ID"),
    strategy: str = typer.Option(
        "timestamp", "--strategy", help="timestamp, cursor or incremental_id"
    ),
):
    """Create the sync state for a connection."""
    cfg = _load_settings()
    with _open_session(cfg) as db:
        SyncStateTracker(db).init(connection_id, strategy)
    console.print(f"[green]Sync state initialized for {connection_id} ({strategy}).[/green]")


@sync_app.command("record-success")
def sync_record_success(
    connection_id: str = typer.Argument(help="Connection ID"),
    cursor: Optional[str] = typer.Option(None, "--cursor", help="New sync cursor"),
    erp_timestamp: Optional[str] = typer.Option(
        None, "--erp-timestamp", help="Latest change timestamp reported by the ERP"
    ),
):
    """Record a successful sync run."""
    cfg = _load_settings()
    result = {}
    if cursor:
        result["sync_cursor"] = cursor
    if erp_timestamp:
        result["last_erp_timestamp"] = erp_timestamp
    with _open_session(cfg) as db:
        SyncStateTracker(db).record_success(connection_id, result)
    console.print(f"[green]Sync success recorded for {connection_id}.[/green]")


@sync_app.command("record-failure")
def sync_record_failure(
    connection_id: str = typer.Argument(help="Connection ID"),
    error: str = typer.Argument(help="Error message from the failed run"),
):
    """Record a failed sync run; enough failures in a row force a full resync."""
    cfg = _load_settings()
    with _open_session(cfg) as db:
        state = SyncStateTracker(db).record_failure(
            connection_id, error, cfg.sync.max_consecutive_failures
        )
    console.print(
        f"[red]Sync failure {state['consecutive_failures']} recorded for {connection_id}.[/red]"
    )
    if state["is_full_sync_required"]:
        console.print("[yellow]Full sync is now required.[/yellow]")


@sync_app.command("force-full")
def sync_force_full(
    connection_id: str = typer.Argument(help="Connection ID"),
    reason: str = typer.Option("Manual request", "--reason", help="Why a full sync is needed"),
):
    """Require a full resync on the next run."""
    cfg = _load_settings()
    with _open_session(cfg) as db:
        SyncStateTracker(db).force_full_sync(connection_id, reason)
    console.print(f"[yellow]Full sync required for {connection_id}.[/yellow]")


@sync_app.command("reset")
def sync_reset(
    connection_id: str = typer.Argument(help="Connection ID"),
    reason: str = typer.Option("Manual reset", "--reason", help="Why the state is reset"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
):
    """Clear cursor and timestamps and require a full resync."""
    if not yes:
        typer.confirm(
            f"Reset sync state for {connection_id}? Cursor and timestamps are cleared.",
            abort=True,
        )
    cfg = _load_settings()
    with _open_session(cfg) as db:
        SyncStateTracker(db).reset(connection_id, reason)
    console.print(f"[yellow]Sync state reset for {connection_id}.[/yellow]")


# --- Order links ---


@links_app.command("conflicts")
def links_conflicts(
    connection_id: Optional[str] = typer.Option(None, "--connection", help="Connection ID"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """List order links in conflict."""
    cfg = _load_settings()
    with _open_session(cfg) as db:
        links = OrderLinkRegistry(db).get_conflicts(connection_id)
        _emit(format_link_table(links, "Conflicts", as_json=json_output))


@links_app.command("needing-sync")
def links_needing_sync(
    connection_id: Optional[str] = typer.Option(None, "--connection", help="Connection ID"),
    limit: Optional[int] = typer.Option(None, "--limit", help="Maximum links to list"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """List pending and errored links, oldest first."""
    cfg = _load_settings()
    with _open_session(cfg) as db:
        links = OrderLinkRegistry(db).get_needing_sync(
            connection_id, limit or cfg.sync.needing_sync_limit
        )
        _emit(format_link_table(links, "Needing Sync", as_json=json_output))


# --- Imports ---


@imports_app.command("stats")
def imports_stats(
    connection_id: Optional[str] = typer.Option(None, "--connection", help="Connection ID"),
    days: Optional[int] = typer.Option(None, "--days", help="Trailing window in days"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """Summarize import outcomes over a trailing window."""
    cfg = _load_settings()
    with _open_session(cfg) as db:
        stats = ImportBatchLog(db).get_import_stats(
            connection_id, days or cfg.sync.stats_window_days
        )
        _emit(format_import_stats(stats, as_json=json_output))


@imports_app.command("running")
def imports_running(
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """List import batches still running."""
    cfg = _load_settings()
    with _open_session(cfg) as db:
        batches = ImportBatchLog(db).get_running_imports()
        _emit(format_import_table(batches, as_json=json_output))


@imports_app.command("cancel")
def imports_cancel(
    import_id: str = typer.Argument(help="Import log ID"),
    reason: str = typer.Option("Manual cancellation", "--reason", help="Cancellation reason"),
):
    """Mark a running import as cancelled. In-flight work is not interrupted."""
    cfg = _load_settings()
    with _open_session(cfg) as db:
        ImportBatchLog(db).cancel_import(import_id, reason)
    console.print(f"[yellow]Import {import_id} cancelled.[/yellow]")


@imports_app.command("cleanup")
def imports_cleanup(
    retention_days: Optional[int] = typer.Option(
        None, "--retention-days", help="Keep closed batches newer than this"
    ),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """Delete closed import batches older than the retention window."""
    cfg = _load_settings()
    days = retention_days or cfg.retention.import_log_days
    with _open_session(cfg) as db:
        result = ImportBatchLog(db).cleanup_old_logs(days)
    if json_output:
        _emit(to_json(result))
    else:
        console.print(
            f"[green]Deleted {result['deleted_logs']} import logs "
            f"and {result['deleted_details']} details older than {days} days.[/green]"
        )


if __name__ == "__main__":
    app()
