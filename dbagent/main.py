from __future__ import annotations

import asyncio
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

import typer

from dbagent.config import Settings, get_settings, load_queries
from dbagent.domain.models import EOF, QueryFailure, Row, RowShape
from dbagent.orchestrator import DBAgent
from dbagent.reporter import print_rows
from dbagent.utils.logging import configure_logging
from dbagent.utils.profiler import profile_block

app = typer.Typer(help="dbagent: run named queries on a pool of worker processes.")

CLI_ROUTE = "cli"


@dataclass
class QueryOutcome:
    rows: List[Row] = field(default_factory=list)
    failure: Optional[QueryFailure] = None
    completed: bool = False


def _resolve_queries(queries_file: Optional[Path], settings: Settings) -> Dict[str, str]:
    path = queries_file or settings.agent_queries_file
    if path is None:
        typer.echo("No query definitions: pass --queries-file or set AGENT_QUERIES_FILE.", err=True)
        raise typer.Exit(code=1)
    try:
        return load_queries(path)
    except (OSError, ValueError) as exc:
        typer.echo(f"Cannot load query definitions from {path}: {exc}", err=True)
        raise typer.Exit(code=1) from exc


async def _collect_rows(
    queries: Dict[str, str],
    name: str,
    params: List[str],
    *,
    count: Optional[int],
    timeout: float,
    row_shape: RowShape,
    throttle: bool,
) -> QueryOutcome:
    outcome = QueryOutcome()
    finished = asyncio.Event()

    def on_response(payload, correlation_id) -> None:
        del correlation_id
        if payload == EOF:
            outcome.completed = True
            finished.set()
        elif isinstance(payload, QueryFailure):
            outcome.failure = payload
        else:
            outcome.rows.append(payload)

    async with DBAgent(queries, {CLI_ROUTE: on_response}, count=count) as agent:
        agent.query(name, CLI_ROUTE, *params, row_shape=row_shape, throttle=throttle)
        try:
            await asyncio.wait_for(finished.wait(), timeout)
        except asyncio.TimeoutError:
            pass
    return outcome


@app.command()
def info(
    queries_file: Optional[Path] = typer.Option(
        None, "--queries-file", "-q", help="JSON file of query name -> SQL."
    ),
) -> None:
    """
    Show effective configuration values.
    """
    settings = get_settings()
    typer.echo(
        f"DB={settings.db_user}@{settings.db_host}:{settings.db_port}/{settings.db_name} | "
        f"workers={settings.agent_worker_count} debug={settings.agent_debug} "
        f"grace={settings.agent_shutdown_grace_seconds}s "
        f"dry_run_writes={settings.agent_dry_run_writes} "
        f"report_failures={settings.agent_report_failures}"
    )
    if queries_file or settings.agent_queries_file:
        queries = _resolve_queries(queries_file, settings)
        typer.echo(f"Queries ({len(queries)}): " + ", ".join(sorted(queries)))


@app.command()
def query(
    name: str = typer.Argument(..., help="Name of the query to run."),
    params: Optional[List[str]] = typer.Argument(None, help="Bind parameters, in order."),
    queries_file: Optional[Path] = typer.Option(
        None, "--queries-file", "-q", help="JSON file of query name -> SQL."
    ),
    named: bool = typer.Option(False, "--named", help="Return rows as column name -> value."),
    count: Optional[int] = typer.Option(
        None, "--count", "-c", min=1, help="Number of worker processes (default from settings)."
    ),
    timeout: float = typer.Option(
        30.0, "--timeout", "-t", help="Seconds to wait for the end of the result stream."
    ),
    throttle: bool = typer.Option(False, "--throttle", help="Ask the worker to pace rows."),
) -> None:
    """
    Run one named query through the worker pool and print its rows.
    """
    settings = get_settings()
    configure_logging(level=settings.log_level, json_logs=settings.log_json)
    queries = _resolve_queries(queries_file, settings)

    with profile_block(name) as stats:
        outcome = asyncio.run(
            _collect_rows(
                queries,
                name,
                params or [],
                count=count,
                timeout=timeout,
                row_shape=RowShape.NAMED if named else RowShape.POSITIONAL,
                throttle=throttle,
            )
        )

    print_rows(outcome.rows, title=name, stats=stats, failure=outcome.failure)
    if not outcome.completed:
        typer.echo(
            f"No end of results for '{name}' within {timeout}s "
            "(unknown query or failed execution?).",
            err=True,
        )
        raise typer.Exit(code=2)


def main() -> None:
    try:
        app()
    except KeyboardInterrupt:
        typer.echo("Cancelled by user.", err=True)
        sys.exit(130)


if __name__ == "__main__":
    main()
