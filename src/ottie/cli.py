"""Ottie CLI: the main entry point."""

from __future__ import annotations

import json
import logging
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from ottie import __version__

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(levelname)s - %(message)s",
    datefmt="%H:%M:%S",
)

app = typer.Typer(
    name="ottie",
    help="Turn a real-estate listing URL into a one-pager site config.",
    no_args_is_help=True,
)
console = Console()
log = logging.getLogger(__name__)

PHASE_LABELS = {
    "queue": "Waiting in queue",
    "scraping": "Scraping listing",
    "gallery": "Collecting gallery photos",
    "call1": "Generating config",
    "call2": "Writing title and highlights",
    "assembling": "Assembling site",
    "completed": "Done",
    "error": "Failed",
}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _bootstrap():
    """Common setup: load env, create dirs, init DB. Returns the scrape queue."""
    from ottie.config import ensure_dirs, load_env
    from ottie.queue import ScrapeQueue

    load_env()
    ensure_dirs()
    return ScrapeQueue().init()


def _version_callback(value: bool) -> None:
    if value:
        console.print(f"[bold]ottie[/bold] {__version__}")
        raise typer.Exit()


def _fail_on_error(result: dict) -> None:
    if "error" in result:
        console.print(f"[red]Error:[/red] {result['error']}")
        raise typer.Exit(code=1)


def _print_phase(snapshot: dict) -> None:
    phase = snapshot.get("phase")
    label = PHASE_LABELS.get(phase, phase)
    if phase == "queue" and snapshot.get("queuePosition"):
        label += f" (position {snapshot['queuePosition']})"
    console.print(f"  [cyan]{phase:<11}[/cyan] {label}")


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

@app.callback()
def main(
    version: bool = typer.Option(
        False, "--version", "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
) -> None:
    """Ottie: listing URL -> scrape -> two LLM calls -> site config."""


@app.command()
def submit(
    url: str = typer.Argument(..., help="Listing URL to import."),
    wait: bool = typer.Option(False, "--wait", "-w", help="Poll until the preview is done."),
) -> None:
    """Queue a listing URL for scraping and config generation."""
    queue = _bootstrap()

    from ottie.service import generate_preview, preview_status
    from ottie.status import poll_preview

    result = generate_preview(url, queue)
    _fail_on_error(result)
    preview_id = result["previewId"]
    console.print(f"[green]Queued[/green] {preview_id} at position {result['queuePosition']}")

    if not wait:
        console.print(f"[dim]Run 'ottie worker' to process it, 'ottie status {preview_id}' to check.[/dim]")
        return

    final = poll_preview(preview_id, lambda pid: preview_status(pid, queue),
                         on_phase=_print_phase)
    _fail_on_error(final)
    if final.get("phase") == "error":
        console.print(f"[red]Failed:[/red] {final.get('errorMessage')}")
        raise typer.Exit(code=1)
    console.print(f"[green]Done.[/green] Run 'ottie show {preview_id}' for the config.")


@app.command()
def status(preview_id: str = typer.Argument(..., help="Preview id.")) -> None:
    """Show the current phase of one preview."""
    queue = _bootstrap()

    from ottie.service import preview_status

    snapshot = preview_status(preview_id, queue)
    _fail_on_error(snapshot)

    console.print(f"\n[bold]Preview {preview_id}[/bold]")
    console.print(f"  Status:     {snapshot['status']}")
    console.print(f"  Phase:      {snapshot['phase']} ({PHASE_LABELS[snapshot['phase']]})")
    console.print(f"  Queue pos:  {snapshot['queuePosition'] if snapshot['queuePosition'] else '-'}")
    console.print(f"  Processing: {snapshot['processing']}")
    if snapshot.get("errorMessage"):
        console.print(f"  [red]Error:[/red]      {snapshot['errorMessage']}")
    console.print()


@app.command()
def show(
    preview_id: str = typer.Argument(..., help="Preview id."),
    full: bool = typer.Option(False, "--full", help="Print the whole record, not just the config."),
) -> None:
    """Print the generated config (or the full record) as JSON."""
    _bootstrap()

    from ottie.service import final_config, get_preview

    result = get_preview(preview_id)
    _fail_on_error(result)
    record = result["preview"]
    payload = record if full else final_config(record)
    console.print_json(json.dumps(payload, ensure_ascii=False, default=str))


@app.command()
def worker(
    once: bool = typer.Option(False, "--once", help="Drain the queue and exit instead of waiting."),
) -> None:
    """Run the scrape worker in this process."""
    queue = _bootstrap()

    from ottie.worker import Worker

    w = Worker(queue)
    if once:
        w.sweep()
        count = w.drain()
        console.print(f"[green]Processed {count} job(s).[/green]")
        return

    console.print("[bold blue]Worker running[/bold blue] (Ctrl+C to stop)")
    try:
        w.run_forever()
    except KeyboardInterrupt:
        console.print("\n[yellow]Stopping worker...[/yellow]")
    finally:
        queue.shutdown()


@app.command()
def serve(
    host: str = typer.Option("127.0.0.1", "--host", help="Bind address."),
    port: int = typer.Option(8000, "--port", "-p", help="Port."),
    no_worker: bool = typer.Option(False, "--no-worker", help="Do not run the embedded worker."),
) -> None:
    """Serve the HTTP API with an embedded worker."""
    queue = _bootstrap()

    import uvicorn

    from ottie.server import create_app
    from ottie.worker import Worker

    w = None if no_worker else Worker(queue)
    if w is not None:
        w.start()
    try:
        uvicorn.run(create_app(queue, w), host=host, port=port)
    finally:
        if w is not None:
            w.stop(timeout=30)
        queue.shutdown()


@app.command()
def rerun(
    stage: str = typer.Argument(..., help="json, html, gallery, call1, call2 or regenerate."),
    preview_id: str = typer.Argument(..., help="Preview id."),
) -> None:
    """Re-run one pipeline stage for a preview without re-scraping."""
    _bootstrap()

    from ottie.service import RERUN_STAGES
    from ottie.service import rerun as do_rerun

    if stage not in RERUN_STAGES:
        console.print(
            f"[red]Unknown stage:[/red] '{stage}'. Valid stages: {', '.join(RERUN_STAGES)}"
        )
        raise typer.Exit(code=1)

    result = do_rerun(stage, preview_id)
    _fail_on_error(result)
    summary = {k: v for k, v in result.items() if k not in ("success", "config", "images")}
    console.print(f"[green]{stage} done[/green] {summary if summary else ''}")


@app.command()
def claim(
    preview_id: str = typer.Argument(..., help="Completed preview id."),
    workspace: str = typer.Option(..., "--workspace", help="Workspace id."),
    user: str = typer.Option(..., "--user", help="Creating user id."),
) -> None:
    """Turn a completed preview into a draft site."""
    _bootstrap()

    from ottie.service import claim_preview

    result = claim_preview(preview_id, workspace, user)
    _fail_on_error(result)
    console.print(f"[green]Created site[/green] {result['siteId']} (slug: {result['slug']})")


@app.command()
def stats(
    recent: Optional[int] = typer.Option(10, "--recent", "-n", help="Recent previews to list."),
) -> None:
    """Show queue and preview statistics."""
    queue = _bootstrap()

    from ottie.database import get_stats, list_previews

    counts = get_stats()
    q = queue.stats()

    console.print("\n[bold]Ottie Pipeline Status[/bold]\n")

    summary = Table(title="Overview", show_header=True, header_style="bold cyan")
    summary.add_column("Metric", style="bold")
    summary.add_column("Count", justify="right")
    summary.add_row("Total previews", str(counts["total"]))
    for name, count in counts["by_status"].items():
        summary.add_row(f"  {name}", str(count))
    summary.add_row("Claimed as sites", str(counts["claimed"]))
    summary.add_row("In queue", str(q["queued"]))
    summary.add_row("Processing", str(q["processing"]))
    summary.add_row("Completed today", str(q["completed_today"]))
    summary.add_row("Failed today", str(q["failed_today"]))
    console.print(summary)

    if counts["by_source"]:
        source_table = Table(title="\nPreviews by Source", show_header=True, header_style="bold magenta")
        source_table.add_column("Source")
        source_table.add_column("Count", justify="right")
        for source, count in counts["by_source"]:
            source_table.add_row(source or "Unknown", str(count))
        console.print(source_table)

    if recent:
        rows = list_previews(limit=recent)
        if rows:
            recent_table = Table(title="\nRecent Previews", show_header=True, header_style="bold yellow")
            recent_table.add_column("Id")
            recent_table.add_column("Status")
            recent_table.add_column("URL", overflow="fold")
            recent_table.add_column("Error", overflow="fold")
            for row in rows:
                color = {"completed": "green", "error": "red"}.get(row["status"], "white")
                recent_table.add_row(row["id"][:8], f"[{color}]{row['status']}[/{color}]",
                                     row["external_url"], row["error_message"] or "")
            console.print(recent_table)

    console.print()


@app.command()
def doctor() -> None:
    """Check your setup and diagnose missing requirements."""
    import os

    from ottie.config import (
        DB_PATH, PROVIDER_KEYS, SITES_PATH, get_internal_token, get_scraper_provider, load_env,
    )
    from ottie.llm import llm_configured

    load_env()

    ok_mark = "[green]OK[/green]"
    fail_mark = "[red]MISSING[/red]"
    warn_mark = "[yellow]WARN[/yellow]"

    results: list[tuple[str, str, str]] = []  # (check, status, note)

    provider = get_scraper_provider()
    results.append(("Scrape provider", ok_mark, provider))
    for name, (env_var, label) in PROVIDER_KEYS.items():
        if os.environ.get(env_var):
            results.append((env_var, ok_mark, label))
        elif name == provider:
            results.append((env_var, fail_mark, f"Required by SCRAPER_PROVIDER={provider}"))
        elif name == "apify":
            results.append((env_var, warn_mark, "Needed for structured-JSON sites (zillow)"))
        else:
            results.append((env_var, "[dim]optional[/dim]", label))

    if provider == "browser":
        try:
            import playwright  # noqa: F401
            results.append(("Playwright", ok_mark, "Run 'playwright install chromium' once"))
        except ImportError:
            results.append(("Playwright", fail_mark, "pip install playwright"))

    if llm_configured():
        model = os.environ.get("LLM_MODEL") or (
            "gpt-4o-mini" if os.environ.get("OPENAI_API_KEY") else "provider default")
        results.append(("LLM API key", ok_mark, model))
    else:
        results.append(("LLM API key", fail_mark, "Set OPENAI_API_KEY, GEMINI_API_KEY or LLM_URL"))

    if get_internal_token():
        results.append(("INTERNAL_API_TOKEN", ok_mark, "Worker trigger endpoint enabled"))
    else:
        results.append(("INTERNAL_API_TOKEN", warn_mark, "Worker trigger endpoint will reject all calls"))

    results.append(("sites.yaml", ok_mark if SITES_PATH.exists() else fail_mark, str(SITES_PATH)))
    results.append(("Database", ok_mark if DB_PATH.exists() else warn_mark, str(DB_PATH)))

    console.print()
    console.print("[bold]Ottie Doctor[/bold]\n")

    col_w = max(len(r[0]) for r in results) + 2
    for check, state, note in results:
        pad = " " * (col_w - len(check))
        console.print(f"  {check}{pad}{state}  [dim]{note}[/dim]")

    console.print()


if __name__ == "__main__":
    app()
