"""Concord CLI — talks to the daemon over HTTP."""

import json
import time
from typing import Optional

import httpx
import typer
from rich.console import Console
from rich.table import Table

from concord import __version__
from concord.core.config import get_client_settings

app = typer.Typer(
    name="concord",
    help="Multi-tenant automation reconciliation",
    no_args_is_help=True,
)
console = Console()

_state: dict = {"tenant": None}

_STATUS_COLORS = {"completed": "green", "failed": "red", "running": "yellow"}


@app.callback()
def main(
    tenant: Optional[str] = typer.Option(
        None, "--tenant", "-t", help="Tenant id (default: CONCORD_TENANT, else system scope)"
    ),
):
    _state["tenant"] = tenant if tenant is not None else get_client_settings().tenant


def _client() -> httpx.Client:
    settings = get_client_settings()
    headers = {"Authorization": f"Bearer {settings.api_key}"}
    if _state["tenant"]:
        headers["X-Tenant-Id"] = _state["tenant"]
    return httpx.Client(base_url=settings.host, headers=headers, timeout=120)


def _api(method: str, path: str, **kwargs) -> dict:
    """Make an API call to the daemon."""
    with _client() as client:
        try:
            resp = client.request(method, f"/api/v1{path}", **kwargs)
        except httpx.ConnectError:
            settings = get_client_settings()
            console.print(f"[red]Error:[/red] Cannot connect to Concord daemon at {settings.host}")
            console.print("Start the daemon with: [bold]concordd[/bold]")
            raise typer.Exit(1)

        if resp.status_code >= 400:
            is_json = resp.headers.get("content-type", "").startswith("application/json")
            detail = resp.json().get("detail", resp.text) if is_json else resp.text
            if isinstance(detail, dict):
                detail = detail.get("message", detail)
            console.print(f"[red]Error {resp.status_code}:[/red] {detail}")
            raise typer.Exit(1)

        return resp.json()


def _colored(status: str) -> str:
    color = _STATUS_COLORS.get(status, "white")
    return f"[{color}]{status}[/{color}]"


def _print_run(run: dict) -> None:
    console.print(f"\n{_colored(run['status'])} run {run['id']} ({run['trigger']})")
    console.print(f"  Tenant: {run['tenant_id'] or 'system'}")
    console.print(f"  Started: {run['started_at']}")
    if run.get("completed_at"):
        console.print(f"  Completed: {run['completed_at']}")
    console.print(
        f"  Processed: {run['processed_count']}  created={run['created_count']}  "
        f"updated={run['updated_count']}  skipped={run['skipped_count']}  errors={run['error_count']}"
    )
    details = run.get("details") or {}
    if details.get("reason"):
        console.print(f"  [red]Reason:[/red] {details['reason']}")
    if details.get("error"):
        console.print(f"  [red]Error:[/red] {details['error'][:200]}")


def _runs_table(title: str, runs: list[dict]) -> Table:
    table = Table(title=title)
    table.add_column("ID", style="dim", max_width=8)
    table.add_column("Status")
    table.add_column("Trigger")
    table.add_column("Processed", justify="right")
    table.add_column("C/U/S/E")
    table.add_column("Started")

    for r in runs:
        table.add_row(
            r["id"][:8],
            _colored(r["status"]),
            r["trigger"],
            str(r["processed_count"]),
            f"{r['created_count']}/{r['updated_count']}/{r['skipped_count']}/{r['error_count']}",
            r.get("started_at") or "—",
        )
    return table


# ─── Run Commands ───


@app.command()
def run(
    wait: bool = typer.Option(False, "--wait", "-w", help="Poll until the run finishes"),
    poll: float = typer.Option(2.0, "--poll", help="Seconds between polls with --wait"),
):
    """Start a manual run for the tenant."""
    result = _api("POST", "/runs", json={"trigger": "manual"})
    console.print(f"Started run {result['id']}")
    if wait:
        while result["status"] == "running":
            time.sleep(poll)
            result = _api("GET", f"/runs/{result['id']}")
    _print_run(result)
    if result["status"] == "failed":
        raise typer.Exit(1)


@app.command()
def runs(
    last: int = typer.Option(10, "--last", "-l", help="Number of runs to show"),
    status: Optional[str] = typer.Option(None, "--status", "-s", help="Filter by status"),
):
    """Show recent runs for the tenant."""
    params = {"limit": last}
    if status:
        params["status"] = status
    result = _api("GET", "/runs", params=params)
    scope = _state["tenant"] or "system"
    console.print(_runs_table(f"Runs: {scope} ({result['total']} total)", result["runs"]))


@app.command()
def show(
    run_id: str = typer.Argument(..., help="Run id"),
    as_json: bool = typer.Option(False, "--json", help="Print the raw run record"),
):
    """Show one run with its details."""
    result = _api("GET", f"/runs/{run_id}")
    if as_json:
        console.print_json(json.dumps(result))
        return
    _print_run(result)
    sources = (result.get("details") or {}).get("sources", {})
    for name, entry in sources.items():
        console.print(
            f"  Source {name} ({entry.get('record_type')}): processed={entry.get('processed', 0)} "
            f"errors={entry.get('errors', 0)}"
        )
    for item in (result.get("details") or {}).get("errors", [])[:10]:
        console.print(f"    [yellow]{item.get('key') or '?'}[/yellow] {item.get('kind')}: {item.get('message')}")


@app.command()
def cancel(run_id: str = typer.Argument(..., help="Run id to cancel")):
    """Request cancellation of a running run."""
    result = _api("POST", f"/runs/{run_id}/cancel")
    if result["cancel_requested"]:
        console.print(f"[yellow]Cancel requested[/yellow] for run {run_id}")
    else:
        console.print(f"Run {run_id} was not running or already has a pending cancel")


@app.command()
def sweep():
    """Fail runs that stopped heartbeating."""
    result = _api("POST", "/runs/sweep")
    failed = result["failed_run_ids"]
    if failed:
        console.print(f"[red]Marked {len(failed)} stale run(s) failed[/red]")
        for run_id in failed:
            console.print(f"  {run_id}")
    else:
        console.print("No stale runs")


@app.command()
def version():
    """Show Concord version."""
    console.print(f"concord-automation v{__version__}")


@app.command()
def status():
    """Show daemon health and the tenant's run status."""
    with _client() as client:
        try:
            data = client.get("/health").json()
        except httpx.ConnectError:
            settings = get_client_settings()
            console.print(f"[red]●[/red] Daemon not running at {settings.host}")
            raise typer.Exit(1)

    console.print(f"[green]●[/green] Concord daemon v{data['version']} — running")
    jobs = data.get("scheduler_jobs", [])
    if jobs:
        console.print(f"  Scheduled jobs: {len(jobs)}")
        for j in jobs:
            console.print(f"    {j['id']} → next: {j.get('next_run', '—')}")
    else:
        console.print("  No scheduled jobs")

    summary = _api("GET", "/runs/status")
    console.print(f"\nScope: {summary['scope']}")
    counts = summary["counts"]
    console.print("  " + "  ".join(f"{k}={v}" for k, v in counts.items()))
    if summary.get("active_run"):
        active = summary["active_run"]
        console.print(f"  [yellow]Active:[/yellow] {active['id']} processed={active['processed_count']}")
    if summary.get("last_run"):
        last = summary["last_run"]
        console.print(f"  Last: {_colored(last['status'])} {last['id']} at {last.get('completed_at') or '—'}")


if __name__ == "__main__":
    app()
