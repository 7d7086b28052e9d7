from __future__ import annotations

import json
import logging
import time
from pathlib import Path
from typing import Any, Callable

import typer
from rich.box import ROUNDED
from rich.console import Console
from rich.logging import RichHandler
from rich.markdown import Markdown
from rich.panel import Panel
from rich.table import Table

from rolescout import services
from rolescout.config import ConfigValidationError, get_settings, load_role_field_mappings_file
from rolescout.db import init_db, session_scope
from rolescout.engine import ResolutionAborted, resolve_roles
from rolescout.report import generate_resolution_report
from rolescout.taxonomy import normalize

app = typer.Typer(help="Resolve the buying role every contact plays on every CRM deal")
mappings_app = typer.Typer(help="Workspace CRM field -> buying role mappings")
app.add_typer(mappings_app, name="mappings")
console = Console()


def _configure_logging(*, verbose: int, json_output: bool) -> None:
    if verbose <= 0:
        level = getattr(logging, get_settings().log_level, logging.WARNING)
    elif verbose == 1:
        level = logging.INFO
    else:
        level = logging.DEBUG

    handlers: list[logging.Handler]
    if json_output:
        handlers = [logging.StreamHandler()]
        fmt = "%(levelname)s: %(message)s"
    else:
        handlers = [RichHandler(console=console, show_time=False, show_path=False, markup=False)]
        fmt = "%(message)s"

    logging.basicConfig(level=level, format=fmt, handlers=handlers, force=True)


@app.callback()
def app_callback(
    ctx: typer.Context,
    db_url: str | None = typer.Option(None, "--db-url", help="SQLAlchemy URL (defaults to ROLESCOUT_DATABASE_URL)."),
    json_output: bool = typer.Option(False, "--json", help="Output raw JSON for scripting."),
    verbose: int = typer.Option(0, "-v", "--verbose", count=True, help="Increase log verbosity."),
) -> None:
    ctx.obj = {"json_output": json_output, "verbose": verbose, "db_url": db_url}
    _configure_logging(verbose=verbose, json_output=json_output)


def _wants_json(ctx: typer.Context) -> bool:
    return bool(ctx.obj and ctx.obj.get("json_output"))


def _init(ctx: typer.Context) -> None:
    init_db(ctx.obj.get("db_url") if ctx.obj else None)


def _format_scalar(value: Any) -> str:
    if isinstance(value, float):
        return f"{value:.2f}"
    if value is None:
        return "-"
    return str(value)


def _render_table(title: str, rows: list[tuple[str, str]], *, border_style: str = "cyan") -> None:
    table = Table(show_header=True, header_style="bold cyan", box=ROUNDED)
    table.add_column("Metric", style="bold")
    table.add_column("Value")
    for metric, value in rows:
        table.add_row(metric, value)
    console.print(Panel(table, title=title, border_style=border_style))


def _print(title: str, payload: dict[str, Any], ctx: typer.Context) -> None:
    if _wants_json(ctx):
        typer.echo(json.dumps(payload, indent=2, ensure_ascii=False))
        return

    scalar_rows = [
        (key, _format_scalar(value)) for key, value in payload.items()
        if isinstance(value, (str, int, float, bool)) or value is None
    ]
    if scalar_rows:
        _render_table(title, scalar_rows)
    for key, value in payload.items():
        if isinstance(value, dict) and value:
            nested = [(k, _format_scalar(v)) for k, v in value.items() if not isinstance(v, dict)]
            if nested:
                _render_table(f"{title} · {key}", nested, border_style="magenta")


def _timed(ctx: typer.Context, label: str, runner: Callable[[], Any]) -> Any:
    if _wants_json(ctx):
        return runner()
    started = time.perf_counter()
    with console.status(f"[bold cyan]{label}[/bold cyan]", spinner="dots"):
        result = runner()
    console.print(f"[green]✓[/green] {label} ({time.perf_counter() - started:.2f}s)")
    return result


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@app.command("resolve")
def resolve_command(
    ctx: typer.Context,
    workspace_id: str = typer.Argument(..., help="Workspace to resolve."),
    deal_id: str | None = typer.Option(None, "--deal", help="Only resolve this deal."),
    include_closed: bool = typer.Option(False, "--include-closed", help="Also process closed deals."),
    concurrency: int | None = typer.Option(None, "--concurrency", min=1, help="Worker threads per stage."),
    report: bool = typer.Option(False, "--report", help="Print a markdown report instead of tables."),
) -> None:
    """Run the full role-resolution chain."""
    _init(ctx)
    try:
        result = _timed(
            ctx, "resolve contact roles",
            lambda: resolve_roles(
                workspace_id, deal_id, include_closed_deals=include_closed, concurrency=concurrency,
            ),
        )
    except ResolutionAborted as exc:
        payload = {"error": str(exc), "stage": exc.stage, "completed": exc.completed}
        if _wants_json(ctx):
            typer.echo(json.dumps(payload, indent=2))
        else:
            _render_table("resolution aborted", [(k, _format_scalar(v)) for k, v in exc.completed.items()],
                          border_style="red")
            console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1)

    if report:
        text = generate_resolution_report(result)
        if _wants_json(ctx):
            typer.echo(json.dumps({"report": text, "result": result.model_dump()}, indent=2))
        else:
            console.print(Markdown(text))
        return
    _print("resolve", result.model_dump(), ctx)


@app.command("deal-contacts")
def deal_contacts_command(
    ctx: typer.Context,
    workspace_id: str = typer.Argument(...),
    deal_id: str = typer.Argument(...),
) -> None:
    """List a deal's contacts with their roles, most confident first."""
    _init(ctx)
    with session_scope() as session:
        if not services.deal_exists(session, workspace_id, deal_id):
            raise typer.BadParameter(f"Deal {deal_id} not found in workspace {workspace_id}")
        contacts = services.get_deal_contacts(session, workspace_id, deal_id)

    if _wants_json(ctx):
        typer.echo(json.dumps([c.model_dump() for c in contacts], indent=2, ensure_ascii=False))
        return

    table = Table(show_header=True, header_style="bold cyan", box=ROUNDED)
    for column in ("Contact", "Title", "Role", "Confidence", "Source"):
        table.add_column(column)
    for c in contacts:
        table.add_row(
            c.name or c.contact_id, c.title or "-", c.buying_role or "-",
            _format_scalar(c.role_confidence), c.role_source or "-",
        )
    console.print(Panel(table, title=f"deal {deal_id}", border_style="cyan"))


@app.command("stats")
def stats_command(
    ctx: typer.Context,
    workspace_id: str = typer.Argument(...),
    deal_id: str | None = typer.Option(None, "--deal"),
    include_closed: bool = typer.Option(False, "--include-closed"),
) -> None:
    """Coverage statistics over current assignments (no resolution)."""
    _init(ctx)
    with session_scope() as session:
        stats = services.role_statistics(session, workspace_id, deal_id, include_closed)
    _print("stats", stats.model_dump(), ctx)


@app.command("normalize")
def normalize_command(
    ctx: typer.Context,
    labels: list[str] = typer.Argument(..., help="Raw CRM role labels."),
) -> None:
    """Show how raw CRM role labels map to canonical roles."""
    _print("normalize", {label: normalize(label) for label in labels}, ctx)


# ---------------------------------------------------------------------------
# Mappings
# ---------------------------------------------------------------------------


def _parse_pairs(pairs: list[str]) -> dict[str, str]:
    mappings: dict[str, str] = {}
    for pair in pairs:
        field, sep, role = pair.partition("=")
        if not sep:
            raise typer.BadParameter(f"Expected FIELD=ROLE, got {pair!r}")
        mappings[field.strip()] = role.strip()
    return mappings


@mappings_app.command("show")
def mappings_show_command(ctx: typer.Context, workspace_id: str = typer.Argument(...)) -> None:
    """Show built-in and custom field mappings."""
    _init(ctx)
    with session_scope() as session:
        payload = services.describe_mappings(session, workspace_id)
    if _wants_json(ctx):
        typer.echo(json.dumps(payload, indent=2))
        return
    _render_table(f"{workspace_id} · custom", sorted(payload["custom"].items()) or [("-", "-")])
    _render_table(
        "built-in",
        [(role, ", ".join(fields)) for role, fields in payload["built_in"].items()],
        border_style="magenta",
    )


@mappings_app.command("set")
def mappings_set_command(
    ctx: typer.Context,
    workspace_id: str = typer.Argument(...),
    pairs: list[str] | None = typer.Argument(None, help="FIELD=ROLE pairs."),
    file: Path | None = typer.Option(None, "--file", exists=True, dir_okay=False, help="YAML mapping file."),
    updated_by: str = typer.Option("cli", "--updated-by"),
) -> None:
    """Replace the workspace's custom mappings."""
    if not pairs and file is None:
        raise typer.BadParameter("Provide FIELD=ROLE pairs or --file")
    _init(ctx)
    try:
        mappings = load_role_field_mappings_file(file) if file is not None else {}
        mappings.update(_parse_pairs(pairs or []))
        with session_scope() as session:
            payload = services.update_mappings(session, workspace_id, mappings, updated_by=updated_by)
    except ConfigValidationError as exc:
        raise typer.BadParameter(str(exc)) from exc
    if _wants_json(ctx):
        typer.echo(json.dumps(payload, indent=2))
        return
    _render_table(f"{workspace_id} · custom", sorted(payload["custom"].items()) or [("-", "-")],
                  border_style="green")


def main() -> None:
    app()


if __name__ == "__main__":
    main()
