"""CLI output formatters for Rich tables and JSON.

Provides human-readable Rich table output (default) and machine-parseable
JSON output (--json flag). All formatting goes through these functions
so the CLI commands stay clean.
"""

import json
from typing import Any

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

console = Console()

# Status color map shared by link, import and health columns
STATUS_COLORS = {
    "synced": "green",
    "pending": "yellow",
    "conflict": "magenta",
    "error": "red",
    "running": "blue",
    "completed": "green",
    "failed": "red",
    "cancelled": "dim",
    "healthy": "green",
    "warning": "yellow",
    "critical": "red",
    "unknown": "dim",
    "success": "green",
    "failure": "red",
}


def _colored(status: str | None) -> str:
    if not status:
        return "—"
    color = STATUS_COLORS.get(status, "white")
    return f"[{color}]{status}[/{color}]"


def _short_ts(value: str | None) -> str:
    return value[:19] if value else "—"


def _render(renderable: Any) -> str:
    with console.capture() as capture:
        console.print(renderable)
    return capture.get()


def to_json(data: Any) -> str:
    """Serialize command output for --json."""
    return json.dumps(data, indent=2, default=str)


def format_connection_table(connections: list[dict], as_json: bool = False) -> str:
    """Format connections as a Rich table or JSON.

    Args:
        connections: Connection dicts from ConnectionRegistry.find_all.
        as_json: If True, return JSON string instead of Rich table.
    """
    if as_json:
        return to_json(connections)
    if not connections:
        return "No connections found."

    table = Table(title="ERP Connections", show_lines=True)
    table.add_column("Name", style="cyan", no_wrap=True)
    table.add_column("ID", style="dim")
    table.add_column("Type")
    table.add_column("Active")
    table.add_column("Last import")

    for conn in connections:
        table.add_row(
            conn["name"],
            conn["id"][:8],
            conn["erp_system_type"],
            "[green]yes[/green]" if conn["is_active"] else "[dim]no[/dim]",
            _short_ts(conn.get("last_successful_import")),
        )
    return _render(table)


def format_connection_detail(connection: dict, usage: dict, as_json: bool = False) -> str:
    """Format one connection with its usage summary.

    Credentials in the configuration are expected to be redacted by the
    caller.
    """
    if as_json:
        return to_json({**connection, "usage": usage})

    lines = [
        f"[bold]Name:[/bold]      {connection['name']}",
        f"[bold]ID:[/bold]        {connection['id']}",
        f"[bold]Type:[/bold]      {connection['erp_system_type']}",
        f"[bold]Active:[/bold]    {'yes' if connection['is_active'] else 'no'}",
        f"[bold]Auth:[/bold]      {connection['connection_config'].get('auth_type', '—')}",
        f"[bold]Base URL:[/bold]  {connection['connection_config'].get('base_url') or '—'}",
        "",
        f"[bold]Imports:[/bold]   {usage['total_imports']} "
        f"([green]{usage['successful_imports']}[/green] ok, "
        f"[red]{usage['failed_imports']}[/red] failed)",
        f"[bold]Linked:[/bold]    {usage['linked_orders']} orders, "
        f"{usage['active_conflicts']} in conflict",
        f"[bold]Last import:[/bold] {_short_ts(usage['last_import_date'])}",
    ]
    if connection.get("last_error"):
        lines.append("")
        lines.append(f"[bold red]Last error:[/bold red] {connection['last_error']}")

    return _render(Panel("\n".join(lines), title="Connection", border_style="cyan"))


def format_check_result(result: dict, title: str, as_json: bool = False) -> str:
    """Format a static test or security audit result."""
    if as_json:
        return to_json(result)

    lines = []
    if "status" in result:
        lines.append(f"[bold]Status:[/bold]  {_colored(result['status'])}")
        lines.append(result.get("message", ""))
    if "security_score" in result:
        score = result["security_score"]
        color = "green" if score >= 80 else "yellow" if score >= 50 else "red"
        lines.append(f"[bold]Score:[/bold]   [{color}]{score}/100[/{color}]")
    for error in result.get("errors", []):
        lines.append(f"[red]✗[/red] {error}")
    for warning in result.get("warnings", []):
        lines.append(f"[yellow]![/yellow] {warning}")
    for suggestion in result.get("suggestions", []):
        lines.append(f"[cyan]→[/cyan] {suggestion}")

    return _render(Panel("\n".join(lines), title=title, border_style="cyan"))


def format_sync_state(state: dict, stats: dict, as_json: bool = False) -> str:
    """Format one connection's sync state with its health."""
    if as_json:
        return to_json({**state, "stats": stats})

    hours = stats.get("hours_since_last_sync")
    lines = [
        f"[bold]Connection:[/bold]  {state.get('connection_name') or state['connection_id']}",
        f"[bold]Strategy:[/bold]    {state['sync_strategy']}",
        f"[bold]Health:[/bold]      {_colored(stats['sync_health'])}",
        f"[bold]Failures:[/bold]    {state['consecutive_failures']}",
        f"[bold]Full sync:[/bold]   {'required' if state['is_full_sync_required'] else 'no'}",
        f"[bold]Last success:[/bold] {_short_ts(state['last_successful_sync'])}"
        + (f" ({hours}h ago)" if hours is not None else ""),
        f"[bold]Cursor:[/bold]      {state['sync_cursor'] or '—'}",
    ]
    last_error = state["sync_metadata"].get("last_error")
    if last_error and state["consecutive_failures"]:
        lines.append("")
        lines.append(f"[bold red]Last error:[/bold red] {last_error}")
    return _render(Panel("\n".join(lines), title="Sync State", border_style="cyan"))


def format_attention_table(states: list[dict], as_json: bool = False) -> str:
    """Format the monitoring sweep."""
    if as_json:
        return to_json(states)
    if not states:
        return "All connections are healthy."

    table = Table(title="Connections Needing Attention", show_lines=True)
    table.add_column("Connection", style="cyan")
    table.add_column("Health")
    table.add_column("Failures", justify="right")
    table.add_column("Full sync")
    table.add_column("Last success")

    for state in states:
        table.add_row(
            state.get("connection_name") or state["connection_id"][:8],
            _colored(state["health"]),
            str(state["consecutive_failures"]),
            "yes" if state["is_full_sync_required"] else "no",
            _short_ts(state["last_successful_sync"]),
        )
    return _render(table)


def format_link_table(links: list[dict], title: str, as_json: bool = False) -> str:
    """Format order links as a Rich table or JSON."""
    if as_json:
        return to_json(links)
    if not links:
        return "No order links found."

    table = Table(title=title, show_lines=True)
    table.add_column("External ID", style="cyan")
    table.add_column("Order", justify="right")
    table.add_column("Status")
    table.add_column("Conflict")
    table.add_column("Updated")

    for link in links:
        conflict = link.get("conflict_data")
        conflict_type = conflict.get("conflict_type") if isinstance(conflict, dict) else None
        table.add_row(
            link["external_id"],
            str(link["order_id"]),
            _colored(link["sync_status"]),
            conflict_type or "—",
            _short_ts(link["updated_at"]),
        )
    return _render(table)


def format_import_table(imports: list[dict], as_json: bool = False) -> str:
    """Format import batches as a Rich table or JSON."""
    if as_json:
        return to_json(imports)
    if not imports:
        return "No imports found."

    table = Table(title="Imports", show_lines=True)
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Connection")
    table.add_column("Type")
    table.add_column("Status")
    table.add_column("Processed", justify="right")
    table.add_column("OK", justify="right", style="green")
    table.add_column("Fail", justify="right", style="red")
    table.add_column("Started")

    for batch in imports:
        table.add_row(
            batch["id"][:8],
            batch.get("connection_name") or "—",
            batch["import_type"],
            _colored(batch["status"]),
            f"{batch['processed_records']}/{batch['total_records']}",
            str(batch["successful_records"]),
            str(batch["failed_records"]),
            _short_ts(batch["started_at"]),
        )
    return _render(table)


def format_import_stats(stats: dict, as_json: bool = False) -> str:
    """Format the trailing-window import summary."""
    if as_json:
        return to_json(stats)

    lines = [
        f"[bold]Window:[/bold]      last {stats['days']} days",
        f"[bold]Imports:[/bold]     {stats['total_imports']} "
        f"([green]{stats['completed_imports']}[/green] completed, "
        f"[red]{stats['failed_imports']}[/red] failed, "
        f"[blue]{stats['running_imports']}[/blue] running)",
        f"[bold]Records:[/bold]     {stats['processed_records']} processed, "
        f"{stats['successful_records']} successful, {stats['failed_records']} failed",
        f"[bold]Success rate:[/bold] {stats['success_rate_percent']}% of batches, "
        f"{stats['record_success_rate_percent']}% of records",
        f"[bold]Avg duration:[/bold] {stats['avg_duration_minutes']} min",
    ]
    return _render(Panel("\n".join(lines), title="Import Statistics", border_style="cyan"))
