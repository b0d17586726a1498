"""Selftest CLI: dev convenience tool for inspecting the API and its accounting tables."""

import asyncio
import json
import os

import httpx
import typer
from rich.console import Console
from rich.json import JSON
from rich.table import Table
from sqlalchemy import select

API_BASE = os.environ.get("SELFTEST_API_BASE", "http://localhost:8000/api")

app = typer.Typer(help="Selftest CLI: inspect stored tests, API events and rate limits.")
db_app = typer.Typer(help="Database operations.")
app.add_typer(db_app, name="db")

console = Console()


@app.command("list")
def list_tests(
    query: str = typer.Option("", "--query", "-q", help="Case-insensitive topic search"),
    limit: int = typer.Option(10, "--limit", "-n", help="Number of tests (max 10)"),
):
    """List the newest stored tests in a table."""
    try:
        resp = httpx.get(f"{API_BASE}/test", params={"q": query, "limit": limit}, timeout=10)
        resp.raise_for_status()
    except httpx.ConnectError:
        console.print("[red]Cannot connect to API. Is the backend running?[/red]")
        raise typer.Exit(1)
    except httpx.HTTPStatusError as e:
        console.print(f"[red]API error: {e.response.status_code}[/red]")
        raise typer.Exit(1)

    tests = resp.json().get("tests", [])
    if not tests:
        console.print("[dim]No tests found.[/dim]")
        return

    table = Table(title="Tests")
    table.add_column("ID", style="dim")
    table.add_column("Topic", style="cyan bold")
    table.add_column("Type")
    table.add_column("Difficulty")
    table.add_column("Questions", justify="right")
    table.add_column("Created")

    for t in tests:
        created = (t.get("created_at") or "")[:19].replace("T", " ")
        table.add_row(
            str(t["id"]),
            t["topic"],
            t.get("test_type") or "",
            t.get("difficulty") or "",
            str(t.get("num_questions") or ""),
            created,
        )

    console.print(table)


@app.command("get")
def get_test(test_id: int):
    """Show a stored test as pretty JSON."""
    try:
        resp = httpx.get(f"{API_BASE}/test", params={"id": test_id}, timeout=10)
        resp.raise_for_status()
    except httpx.ConnectError:
        console.print("[red]Cannot connect to API. Is the backend running?[/red]")
        raise typer.Exit(1)
    except httpx.HTTPStatusError as e:
        if e.response.status_code == 404:
            console.print(f"[red]Test {test_id} not found.[/red]")
        else:
            console.print(f"[red]API error: {e.response.status_code}[/red]")
        raise typer.Exit(1)

    console.print(JSON(json.dumps(resp.json(), indent=2, default=str)))


@app.command("events")
def list_events(
    route: str = typer.Option(None, "--route", "-r", help="Only show events for this route"),
    limit: int = typer.Option(20, "--limit", "-n"),
):
    """Show the most recent API request events."""
    from app.db import async_session, ensure_schema
    from app.models.api_event import ApiRequestEvent

    async def _load():
        await ensure_schema()
        stmt = select(ApiRequestEvent).order_by(ApiRequestEvent.created_at.desc()).limit(limit)
        if route:
            stmt = stmt.where(ApiRequestEvent.route == route)
        async with async_session() as session:
            result = await session.execute(stmt)
            return result.scalars().all()

    events = asyncio.run(_load())
    if not events:
        console.print("[dim]No events recorded.[/dim]")
        return

    table = Table(title="API events")
    table.add_column("When", style="dim")
    table.add_column("Route", style="cyan")
    table.add_column("Action")
    table.add_column("Status", justify="right")
    table.add_column("ms", justify="right")
    table.add_column("Error")

    for e in events:
        code = e.status_code or 0
        if code >= 500:
            status_str = f"[red]{code}[/red]"
        elif code == 429:
            status_str = f"[yellow]{code}[/yellow]"
        elif code:
            status_str = f"[green]{code}[/green]"
        else:
            status_str = ""
        table.add_row(
            str(e.created_at)[:19],
            e.route,
            e.action or "",
            status_str,
            str(e.duration_ms if e.duration_ms is not None else ""),
            (e.error_message or "")[:60],
        )

    console.print(table)


@app.command("hits")
def window_hits(
    client_key: str = typer.Option(..., "--client-key", "-k"),
    route: str = typer.Option(..., "--route", "-r"),
    window_ms: int = typer.Option(60_000, "--window-ms", "-w", min=1),
):
    """Count a client's attempts on a route inside the trailing window."""
    from app.core.rate_limit import get_rate_limiter

    window = asyncio.run(get_rate_limiter().peek(client_key, route, window_ms))
    console.print(f"[cyan]{window.count}[/cyan] hit(s) in the last {window_ms} ms")
    if window.count:
        console.print(f"[dim]Window resets at {window.reset_time} (epoch ms)[/dim]")


@db_app.command("init")
def db_init():
    """Create all tables."""
    from app.db import ensure_schema

    asyncio.run(ensure_schema())
    console.print("[green]Schema ready.[/green]")


@db_app.command("prune")
def db_prune(
    days: int = typer.Option(None, "--days", "-d", min=1, help="Override the retention horizon"),
):
    """Delete rate limit events older than the retention horizon."""
    from app.core.rate_limit import get_rate_limiter

    limiter = get_rate_limiter()
    if days is not None:
        limiter.retention_days = days
    deleted = asyncio.run(limiter.prune())
    console.print(
        f"[green]Deleted {deleted} rate limit event(s) older than {limiter.retention_days} day(s).[/green]"
    )


if __name__ == "__main__":
    app()
