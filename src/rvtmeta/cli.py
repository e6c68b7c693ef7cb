"""CLI entry point for the rvtmeta extraction tools.

Provides commands:
  - extract: Run the pipeline for one or more model files
  - extract-all: Run the pipeline for every .rvt file in a directory
  - results: List, show and locate extracted result files
  - jobs: Show the job ledger
  - config: Manage APS client credentials (system keyring)
  - serve: Run the HTTP service
"""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from rvtmeta.config import (
    CLIENT_ID_KEY,
    SERVICE_NAME,
    delete_client_credentials,
    load_pipeline_config,
    load_storage_paths,
    store_client_credentials,
)
from rvtmeta.exceptions import ConfigError
from rvtmeta.models import PipelineConfig, PipelineResult, RunStatus

logger = logging.getLogger(__name__)

app = typer.Typer(
    help="rvtmeta - Extract Revit model metadata through Autodesk Platform Services",
    rich_markup_mode="rich",
)
console = Console()

results_app = typer.Typer(help="Inspect extracted result files")
app.add_typer(results_app, name="results")

config_app = typer.Typer(help="Manage APS client credentials")
app.add_typer(config_app, name="config")


@app.callback()
def app_callback(
    ctx: typer.Context,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Show debug logging"),
    ] = False,
    config_path: Annotated[
        Path | None,
        typer.Option("--config", "-c", help="Pipeline config JSON file"),
    ] = None,
) -> None:
    """Configure logging and remember the config file for subcommands."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.obj = {"config_path": config_path}


def _load_config(ctx: typer.Context, **overrides: object) -> PipelineConfig:
    config_path = (ctx.obj or {}).get("config_path")
    try:
        return load_pipeline_config(config_path, **overrides)
    except ConfigError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(code=1)


def _storage_paths(ctx: typer.Context) -> tuple[Path, Path | None]:
    try:
        return load_storage_paths((ctx.obj or {}).get("config_path"))
    except ConfigError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(code=1)


def _result_store(ctx: typer.Context, results_dir: Path | None):
    from rvtmeta.store import ResultStore

    return ResultStore(results_dir or _storage_paths(ctx)[0])


def build_runner(config: PipelineConfig, progress=None):
    """Runner factory (replaced in tests)."""
    from rvtmeta.orchestrator import PipelineRunner

    return PipelineRunner.from_config(config, progress=progress)


def _run_pipeline(config: PipelineConfig, sources: list[str], force: bool) -> list[PipelineResult]:
    from rvtmeta.progress import PipelineProgressTracker

    progress = PipelineProgressTracker(total_jobs=len(sources))

    async def _run() -> list[PipelineResult]:
        cancel = asyncio.Event()
        async with build_runner(config, progress=progress) as runner:
            runner.setup_signal_handlers(cancel)
            with progress:
                return await runner.run_many(sources, cancel, force=force)

    return asyncio.run(_run())


def _print_summary(results: list[PipelineResult]) -> None:
    table = Table(title="Extraction Summary")
    table.add_column("Source", style="cyan", no_wrap=True)
    table.add_column("Status")
    table.add_column("Stage")
    table.add_column("Result / Diagnostic")

    for result in results:
        if result.ok:
            detail = result.result_file or ""
            if result.result is not None and result.result.is_partial:
                detail += f" [yellow]({len(result.result.errors)} node errors)[/yellow]"
            status = "[green]succeeded[/green]"
        else:
            detail = f"[dim]{result.operation_id}[/dim] {result.message or ''}"
            colour = "yellow" if result.status is RunStatus.CANCELLED else "red"
            status = f"[{colour}]{result.status.value}[/{colour}]"
        table.add_row(
            result.source,
            status,
            result.failed_stage.value if result.failed_stage else "",
            detail,
        )

    console.print(table)


def _finish(results: list[PipelineResult]) -> None:
    _print_summary(results)
    if any(not r.ok for r in results):
        raise typer.Exit(code=1)


@app.command()
def extract(
    ctx: typer.Context,
    files: Annotated[
        list[Path],
        typer.Argument(help="Model files to extract"),
    ],
    force: Annotated[
        bool,
        typer.Option("--force", help="Ask the service to regenerate existing derivatives"),
    ] = False,
) -> None:
    """Upload, translate and extract metadata for the given model files."""
    config = _load_config(ctx)
    _finish(_run_pipeline(config, [str(f) for f in files], force))


@app.command("extract-all")
def extract_all(
    ctx: typer.Context,
    models_dir: Annotated[
        Path | None,
        typer.Option("--models-dir", "-m", help="Directory of .rvt files"),
    ] = None,
    force: Annotated[
        bool,
        typer.Option("--force", help="Ask the service to regenerate existing derivatives"),
    ] = False,
) -> None:
    """Extract every .rvt file in the models directory concurrently."""
    config = _load_config(ctx, models_dir=str(models_dir) if models_dir else None)
    directory = Path(config.models_dir)
    if not directory.is_dir():
        console.print(f"[red]Error:[/red] Models directory not found: {directory}")
        raise typer.Exit(code=1)

    sources = [str(p) for p in sorted(directory.glob("*.rvt"))]
    if not sources:
        console.print(f"[yellow]No .rvt files in {directory}[/yellow]")
        return

    console.print(
        Panel(
            f"Extracting [bold]{len(sources)}[/bold] models from [bold]{directory}[/bold]\n"
            f"Bucket: {config.bucket_key} | Concurrency: {config.max_concurrent_jobs}",
            title="Extraction Pipeline",
        )
    )
    _finish(_run_pipeline(config, sources, force))


# ------------------------------------------------------------------
# results
# ------------------------------------------------------------------

ResultsDirOption = Annotated[
    Path | None,
    typer.Option("--results-dir", "-r", help="Directory of result files (default: from config)"),
]


@results_app.command("list")
def results_list(ctx: typer.Context, results_dir: ResultsDirOption = None) -> None:
    """List stored result files."""
    store = _result_store(ctx, results_dir)
    names = store.filenames()
    if not names:
        console.print(f"[yellow]No results in {store.directory}[/yellow]")
        return
    for name in names:
        console.print(name)


@results_app.command("show")
def results_show(
    ctx: typer.Context,
    name: Annotated[str, typer.Argument(help="Result filename")],
    results_dir: ResultsDirOption = None,
) -> None:
    """Print a stored result as JSON."""
    try:
        result = _result_store(ctx, results_dir).load(name)
    except (FileNotFoundError, ValueError) as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(code=1)

    console.print(
        f"[bold]{result.source}[/bold] view {result.view_name or result.view_guid}: "
        f"{len(result.nodes)} nodes, {len(result.errors)} errors"
    )
    console.print_json(json.dumps(result.to_dict()))


@results_app.command("path")
def results_path(
    ctx: typer.Context,
    name: Annotated[str, typer.Argument(help="Result filename")],
    results_dir: ResultsDirOption = None,
) -> None:
    """Print the absolute path of a stored result."""
    try:
        path = _result_store(ctx, results_dir).path_for(name)
    except FileNotFoundError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(code=1)
    typer.echo(str(path.resolve()))


# ------------------------------------------------------------------
# jobs
# ------------------------------------------------------------------


@app.command()
def jobs(
    ctx: typer.Context,
    ledger_path: Annotated[
        Path | None,
        typer.Option("--ledger", "-l", help="Path to the job ledger database (default: from config)"),
    ] = None,
    limit: Annotated[int, typer.Option("--limit", "-n", help="Rows to show")] = 50,
) -> None:
    """Show the most recently updated jobs from the ledger."""
    ledger_path = ledger_path or _storage_paths(ctx)[1]
    if ledger_path is None:
        console.print("[yellow]No ledger configured[/yellow]")
        return
    if not ledger_path.exists():
        console.print(f"[yellow]No ledger at {ledger_path}[/yellow]")
        return

    from rvtmeta.ledger import JobLedger

    async def _list() -> list[dict]:
        async with JobLedger(str(ledger_path)) as ledger:
            return await ledger.list_jobs(limit=limit)

    rows = asyncio.run(_list())

    table = Table(title=f"Jobs ({len(rows)})")
    table.add_column("Source", style="cyan", no_wrap=True)
    table.add_column("State")
    table.add_column("Failed Stage", style="red")
    table.add_column("URN", style="dim")
    table.add_column("Result")
    table.add_column("Updated", style="dim")
    for row in rows:
        table.add_row(
            row["source"],
            row["state"],
            row["failed_stage"] or "",
            row["urn"] or "",
            row["result_file"] or "",
            row["updated_at"][:19],
        )
    console.print(table)


# ------------------------------------------------------------------
# config
# ------------------------------------------------------------------


@config_app.command("set-credentials")
def set_credentials(
    client_id: Annotated[str, typer.Option(prompt=True, help="APS client id")],
    client_secret: Annotated[
        str, typer.Option(prompt=True, hide_input=True, help="APS client secret")
    ],
) -> None:
    """Store the APS client id/secret in the system keyring."""
    if not client_id.strip() or not client_secret.strip():
        console.print("[red]Error:[/red] Client id and secret cannot be empty")
        raise typer.Exit(code=1)

    store_client_credentials(client_id.strip(), client_secret.strip())
    console.print(
        f"[green]✓[/green] Credentials stored in system keyring (service: {SERVICE_NAME})"
    )


@config_app.command("show")
def show_config(ctx: typer.Context) -> None:
    """Show the effective configuration (secret masked)."""
    config = _load_config(ctx)
    table = Table(title="Pipeline Configuration")
    table.add_column("Setting", style="bold")
    table.add_column("Value")
    for name, value in vars(config).items():
        if name == "client_secret":
            value = "*" * 8
        elif name == CLIENT_ID_KEY and len(value) > 8:
            value = value[:8] + "*" * (len(value) - 8)
        table.add_row(name, str(value))
    console.print(table)


@config_app.command("remove-credentials")
def remove_credentials() -> None:
    """Delete stored APS credentials from the system keyring."""
    if not delete_client_credentials():
        console.print("[yellow]Warning:[/yellow] No credentials in keyring. Nothing to remove.")
        return
    console.print(
        f"[green]✓[/green] Credentials removed from system keyring (service: {SERVICE_NAME})"
    )


# ------------------------------------------------------------------
# serve
# ------------------------------------------------------------------


@app.command()
def serve(
    ctx: typer.Context,
    host: Annotated[str, typer.Option(help="Bind address")] = "127.0.0.1",
    port: Annotated[int, typer.Option(help="Port")] = 3000,
) -> None:
    """Run the HTTP service."""
    import uvicorn

    from rvtmeta.server import create_app

    config = _load_config(ctx)
    uvicorn.run(create_app(config), host=host, port=port)


if __name__ == "__main__":
    app()
