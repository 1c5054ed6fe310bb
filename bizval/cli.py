from __future__ import annotations

import asyncio
import json
import logging
import os
from pathlib import Path
from typing import Any

import typer
import yaml
from rich.box import ROUNDED
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from bizval.config import get_settings
from bizval.db import init_db, session_scope
from bizval.engine import evaluate
from bizval.errors import InsufficientDataError, ValidationFailure
from bizval.services import cap_opportunities, evaluation_summary, list_evaluations

app = typer.Typer(help="Business valuation and improvement-opportunity engine")
console = Console()
err_console = Console(stderr=True)

LOG_LEVELS = (logging.WARNING, logging.INFO, logging.DEBUG)
SQL_LOGGER = "sqlalchemy.engine"


def _configure_logging(*, verbose: int, json_output: bool) -> None:
    """Logs go to stderr; -v lifecycle events, -vv debug, -vvv adds SQL statements."""
    level = LOG_LEVELS[min(max(verbose, 0), len(LOG_LEVELS) - 1)]
    if json_output:
        handler: logging.Handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(levelname)s %(name)s: %(message)s"))
    else:
        handler = RichHandler(console=err_console, show_time=False, show_path=False)
    logging.basicConfig(level=level, handlers=[handler], force=True)
    logging.getLogger(SQL_LOGGER).setLevel(logging.INFO if verbose >= 3 else logging.WARNING)


@app.callback()
def app_callback(
    ctx: typer.Context,
    home: str | None = typer.Option(
        None,
        "--home",
        help="Directory holding config/ and data/ (overrides BIZVAL_HOME).",
    ),
    json_output: bool = typer.Option(False, "--json", help="Output raw JSON for scripting."),
    verbose: int = typer.Option(0, "-v", "--verbose", count=True, help="Increase log verbosity."),
) -> None:
    if home:
        os.environ["BIZVAL_HOME"] = str(Path(home).expanduser().resolve())
        get_settings.cache_clear()
    ctx.obj = {"json_output": json_output, "verbose": verbose}
    _configure_logging(verbose=verbose, json_output=json_output)


def _wants_json(ctx: typer.Context) -> bool:
    return bool(ctx.obj and ctx.obj.get("json_output"))


def _money(value: float | None, currency: str = "") -> str:
    if value is None:
        return "-"
    return f"{value:,.0f} {currency}".strip()


def _emit_json(payload: Any) -> None:
    typer.echo(json.dumps(payload, indent=2, ensure_ascii=False, default=str))


def _load_answers(path: Path) -> dict[str, Any]:
    """Answers file as JSON or YAML (YAML is a superset)."""
    with path.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise typer.BadParameter(f"{path} must contain a mapping of field -> answer")
    return data


@app.command("init-db")
def init_db_command(ctx: typer.Context) -> None:
    """Create the database and tables if missing."""
    path = init_db()
    if _wants_json(ctx):
        _emit_json({"database": str(path)})
        return
    console.print(f"[green]Database ready:[/green] {path}")


@app.command("evaluate")
def evaluate_command(
    ctx: typer.Context,
    answers_file: Path = typer.Argument(..., exists=True, dir_okay=False, help="JSON or YAML answers."),
    tier: str | None = typer.Option(None, "--tier", help="Apply this tier's opportunity cap."),
) -> None:
    """Value a questionnaire response without persisting it."""
    answers = _load_answers(answers_file)
    try:
        result = asyncio.run(evaluate(answers))
    except ValidationFailure as exc:
        if _wants_json(ctx):
            _emit_json({"error": "validation_failed", "issues": [i.to_dict() for i in exc.issues]})
        else:
            table = Table(title="Validation failed", box=ROUNDED, header_style="bold red")
            table.add_column("Field", style="bold")
            table.add_column("Code")
            table.add_column("Message")
            for issue in exc.issues:
                table.add_row(issue.field, issue.code, issue.message)
            console.print(table)
        raise typer.Exit(code=2)
    except InsufficientDataError as exc:
        if _wants_json(ctx):
            _emit_json({"error": "insufficient_data", "missing_fields": exc.missing_fields})
        else:
            console.print(Panel(
                "Missing essential fields: " + ", ".join(exc.missing_fields),
                title="Insufficient data", border_style="red",
            ))
        raise typer.Exit(code=2)

    opportunities = cap_opportunities(result.opportunities, tier)
    if _wants_json(ctx):
        payload = result.to_dict()
        payload["opportunities"] = [o.to_dict() for o in opportunities]
        _emit_json(payload)
        return

    currency = result.facts.currency
    valuation = result.valuation
    summary = Table(show_header=False, box=ROUNDED)
    summary.add_column("Metric", style="bold")
    summary.add_column("Value")
    if valuation is None:
        summary.add_row("Valuation", "[yellow]insufficient data[/yellow]")
    else:
        summary.add_row("Low", _money(valuation.low, currency))
        summary.add_row("Central", _money(valuation.central, currency))
        summary.add_row("High", _money(valuation.high, currency))
        summary.add_row("Methodology confidence", f"{valuation.aggregate_confidence:.2f}")
        summary.add_row("Dominant methodology", valuation.dominant.methodology_id)
    summary.add_row("Data confidence", f"{result.data_confidence:.2f}")
    if result.health is not None:
        for category, entry in result.health["categories"].items():
            score = "-" if entry["score"] is None else f"{entry['score']:.0f}/100"
            summary.add_row(f"Health: {category}", score)
    for excluded in result.excluded:
        summary.add_row(f"Excluded: {excluded['methodology_id']}", excluded["reason"])
    console.print(Panel(summary, title=f"Valuation ({result.facts.industry})", border_style="cyan"))

    if opportunities:
        table = Table(title="Improvement opportunities", box=ROUNDED, header_style="bold cyan")
        table.add_column("#", justify="right")
        table.add_column("Category")
        table.add_column("Opportunity")
        table.add_column("Impact", justify="right")
        table.add_column("Priority", justify="right")
        for i, opp in enumerate(opportunities, start=1):
            impact = f"{_money(opp.estimated_impact_low)} - {_money(opp.estimated_impact_high, currency)}"
            table.add_row(str(i), opp.category, opp.description, impact, f"{opp.priority_score:.3f}")
        console.print(table)


@app.command("list")
def list_command(
    ctx: typer.Context,
    owner_id: str = typer.Argument(..., help="Owner whose evaluations to list."),
    include_deleted: bool = typer.Option(False, "--include-deleted"),
) -> None:
    """List stored evaluations for an owner."""
    init_db()
    with session_scope() as session:
        rows = [evaluation_summary(session, ev)
                for ev in list_evaluations(session, owner_id, include_deleted=include_deleted)]

    if _wants_json(ctx):
        _emit_json(rows)
        return
    if not rows:
        console.print(f"No evaluations for {owner_id}")
        return
    table = Table(title=f"Evaluations for {owner_id}", box=ROUNDED, header_style="bold cyan")
    for col in ("ID", "Version", "Industry", "State", "Central", "Confidence", "Created"):
        table.add_column(col)
    for row in rows:
        valuation = row["valuation"] or {}
        confidence = valuation.get("aggregate_confidence")
        table.add_row(
            str(row["id"]), str(row["version"]), row["industry"], row["state"],
            _money(valuation.get("central"), row["currency"]),
            f"{confidence:.2f}" if confidence is not None else "-",
            row["created_at"] or "-",
        )
    console.print(table)


@app.command("serve")
def serve_command(
    host: str = typer.Option("127.0.0.1", "--host"),
    port: int = typer.Option(8000, "--port"),
) -> None:
    """Run the HTTP API with uvicorn."""
    import uvicorn

    uvicorn.run("bizval.app:app", host=host, port=port, reload=False)


if __name__ == "__main__":
    app()
