"""
QueryGovernor CLI - inspect signatures, saved plans and live query stats.

Usage:
    querygov signature "SELECT * FROM orders WHERE id = 42"
    querygov analyze-plan plan.txt --query "SELECT * FROM orders WHERE customer_id = 42"
    querygov run "SELECT * FROM orders WHERE customer_id = $1" --param 42 --repeat 5
    querygov config
"""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Annotated, Any, Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from querygovernor import __version__
from querygovernor.advisor import IndexAdvisor
from querygovernor.config import GovernorConfig, get_config
from querygovernor.db.connection import is_driver_available
from querygovernor.exceptions import AnalysisError, GovernorError
from querygovernor.governor import QueryGovernor
from querygovernor.models import IndexPriority, StatsSnapshot
from querygovernor.plan.parser import get_plan_parser
from querygovernor.recorder import get_query_type, is_read_query, normalize_signature

app = typer.Typer(
    name="querygov",
    help="Query performance governor: signatures, plan analysis and index advice",
    no_args_is_help=True,
)

console = Console()
error_console = Console(stderr=True)


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"QueryGovernor version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        Optional[bool],
        typer.Option(
            "--version",
            "-v",
            help="Show version and exit.",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", help="Show governor log output."),
    ] = False,
) -> None:
    """QueryGovernor - query performance governor."""
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(message)s",
            handlers=[RichHandler(console=error_console, show_path=False)],
        )


@app.command()
def signature(
    query: Annotated[str, typer.Argument(help="SQL text to normalise")],
) -> None:
    """Print the literal-free signature a query is grouped under."""
    config = get_config()
    console.print(normalize_signature(query, config.signature_max_length))
    console.print(
        f"[dim]type={get_query_type(query)} "
        f"cacheable={'yes' if is_read_query(query) else 'no'}[/dim]"
    )


@app.command("analyze-plan")
def analyze_plan(
    plan_file: Annotated[
        Path,
        typer.Argument(
            help="Path to text-format EXPLAIN output",
            exists=True,
            readable=True,
            resolve_path=True,
        ),
    ],
    query: Annotated[
        Optional[str],
        typer.Option("--query", "-q", help="The explained query, to derive index suggestions"),
    ] = None,
    dialect: Annotated[
        str,
        typer.Option("--dialect", "-d", help="Plan dialect"),
    ] = "postgresql",
    json_output: Annotated[
        bool,
        typer.Option("--json", "-j", help="Output results as JSON"),
    ] = False,
) -> None:
    """
    Parse a saved EXPLAIN and report costs, scans and index advice.

    Examples:

        $ psql -c "EXPLAIN ANALYZE SELECT * FROM orders WHERE customer_id = 42" > plan.txt
        $ querygov analyze-plan plan.txt --query "SELECT * FROM orders WHERE customer_id = 42"
    """
    config = get_config()
    try:
        parser = get_plan_parser(dialect, seq_scan_warning_rows=config.seq_scan_warning_rows)
    except KeyError as e:
        error_console.print(f"[red]Error:[/red] {e.args[0]}")
        raise typer.Exit(code=1)

    try:
        analysis = parser.parse(plan_file.read_text())
    except AnalysisError as e:
        error_console.print(f"[red]Error:[/red] {e.message}")
        raise typer.Exit(code=1)

    suggestions = IndexAdvisor().suggest(query, analysis) if query else []

    if json_output:
        output_data = {
            "analysis": analysis.to_dict(),
            "suggestions": [s.model_dump(mode="json") for s in suggestions],
        }
        console.print_json(json.dumps(output_data))
        return

    table = Table(title="Plan analysis", show_header=False)
    table.add_column("Metric", style="bold")
    table.add_column("Value")
    table.add_row("Cost", f"{analysis.startup_cost:.2f}..{analysis.total_cost:.2f}")
    table.add_row("Actual time", f"{analysis.actual_time:.3f} ms")
    table.add_row("Row estimate", str(analysis.row_estimate))
    table.add_row("Scan types", ", ".join(sorted(analysis.scan_types)) or "-")
    table.add_row("Indexes used", ", ".join(sorted(analysis.indexes_used)) or "-")
    if analysis.execution_time_ms is not None:
        table.add_row("Execution time", f"{analysis.execution_time_ms:.3f} ms")
    console.print(table)

    for warning in analysis.warnings:
        console.print(f"[yellow][WARNING][/yellow] {warning}")

    if not query:
        return

    if not suggestions:
        console.print(Panel("[green]No index suggestions.[/green]", border_style="green"))
        return

    console.print(f"\n[bold]{len(suggestions)} index suggestion(s):[/bold]\n")
    for suggestion in suggestions:
        style = "red bold" if suggestion.priority == IndexPriority.CRITICAL else "yellow"
        console.print(
            f"[{style}][{suggestion.priority.value.upper()}][/{style}] {suggestion.reason}"
        )
        console.print(f"   [dim]{suggestion.estimated_benefit}[/dim]")
        if suggestion.ddl_text.startswith("--"):
            console.print(f"   [dim]{suggestion.ddl_text}[/dim]")
        else:
            console.print(f"   [green]{suggestion.ddl_text}[/green]")


@app.command()
def run(
    query: Annotated[str, typer.Argument(help="SQL to execute")],
    dsn: Annotated[
        Optional[str],
        typer.Option("--dsn", help="Connection string (default: QUERYGOV_DSN / DATABASE_URL)"),
    ] = None,
    param: Annotated[
        Optional[list[str]],
        typer.Option("--param", "-p", help="Positional parameter; repeat for $2, $3..."),
    ] = None,
    repeat: Annotated[
        int,
        typer.Option("--repeat", "-n", min=1, help="Number of executions"),
    ] = 1,
    timeout_ms: Annotated[
        Optional[float],
        typer.Option("--timeout", help="Client-side deadline in ms"),
    ] = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", "-j", help="Output stats as JSON"),
    ] = False,
) -> None:
    """Execute a query through a live governor and print the resulting stats."""
    if not is_driver_available():
        error_console.print(
            "[red]Error:[/red] asyncpg is not installed. "
            "Install with: pip install querygovernor[postgres]"
        )
        raise typer.Exit(code=1)

    config = get_config()
    if dsn:
        config = config.model_copy(update={"dsn": dsn})
    if not config.dsn:
        error_console.print("[red]Error:[/red] No DSN given (use --dsn or QUERYGOV_DSN)")
        raise typer.Exit(code=1)

    params = [_coerce_param(p) for p in param or []]

    try:
        row_count, stats, suggestions = asyncio.run(
            _run_queries(config, query, params, repeat, timeout_ms)
        )
    except (GovernorError, TimeoutError, ConnectionError) as e:
        error_console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(code=1)

    if json_output:
        output_data = {
            "rows": row_count,
            "stats": stats.model_dump(mode="json"),
            "suggestions": [s.model_dump(mode="json") for s in suggestions],
        }
        console.print_json(json.dumps(output_data))
        return

    console.print(f"[bold]{row_count} row(s)[/bold] x {repeat} execution(s)\n")
    _print_stats(stats)
    for suggestion in suggestions:
        console.print(f"[yellow]{suggestion.ddl_text}[/yellow]")


@app.command("config")
def show_config() -> None:
    """Show the effective configuration (credentials redacted)."""
    console.print_json(json.dumps(get_config().redacted()))


async def _run_queries(
    config: GovernorConfig,
    query: str,
    params: list[Any],
    repeat: int,
    timeout_ms: float | None,
) -> tuple[int, StatsSnapshot, list]:
    async with QueryGovernor.create(config) as governor:
        rows: list = []
        for _ in range(repeat):
            rows = await governor.execute(query, params, timeout_ms=timeout_ms)
        await governor.drain()
        return len(rows), governor.snapshot(), governor.pending_suggestions()


def _coerce_param(value: str) -> Any:
    for cast in (int, float):
        try:
            return cast(value)
        except ValueError:
            pass
    return value


def _print_stats(stats: StatsSnapshot) -> None:
    table = Table(title="Governor stats", show_header=False)
    table.add_column("Metric", style="bold")
    table.add_column("Value")
    table.add_row("Total queries", str(stats.total_queries))
    table.add_row("Slow queries", str(stats.slow_queries))
    table.add_row("Avg query time", f"{stats.avg_query_time:.2f} ms")
    table.add_row("p95 / p99", f"{stats.p95_query_time:.2f} / {stats.p99_query_time:.2f} ms")
    table.add_row("Cache hit rate", f"{stats.cache_hit_rate:.2f}%")
    table.add_row("Signatures (slow)", f"{stats.signature_count} ({stats.slow_query_signature_count})")
    table.add_row("Suggestions", str(stats.suggestion_count))
    if stats.pool is not None:
        table.add_row(
            "Pool",
            f"{stats.pool.total}/{stats.pool.max} open, {stats.pool.idle} idle, "
            f"{stats.pool.waiting} waiting",
        )
    console.print(table)


if __name__ == "__main__":
    app()
