from pathlib import Path
from typing import Optional

import rich
import typer
from rich.table import Table
from typing_extensions import Annotated

from relock._src.config import Settings
from relock._src.exceptions import SolveCancelled
from relock._src.index import IndexCache, LocalIndexFetcher, StaticIndexFetcher
from relock._src.lock import write_lock_document
from relock._src.log import configure_logging
from relock._src.orchestrator import update_lock
from relock._src.solve import default_adapters
from relock._src.staleness import Fresh, check_lock_file
from relock.cli._common import load_workspace, run_cancellable
from relock.cli.prefix import prefix_command


app = typer.Typer(
    add_completion=False,
    no_args_is_help=True,
    rich_markup_mode="rich",
    context_settings={"help_option_names": ["-h", "--help"]},
)

app.add_typer(
    prefix_command,
    name="prefix",
    help="inspect and reconcile environment prefixes",
    rich_help_panel="Prefix",
)


@app.callback()
def main(
    verbose: Annotated[int, typer.Option(
        "--verbose", "-v",
        count=True,
        help="increase logging verbosity",
    )] = 0,
):
    """Solve and lock multi-environment, multi-platform workspaces"""
    configure_logging(verbose)


def _lock_path(workspace, settings: Settings, output: Optional[str]) -> Path:
    if output is not None:
        return Path(output)
    return workspace.root / settings.lock_file


@app.command()
def lock(
    manifest: str = typer.Option(
        None,
        help="path to the workspace manifest"
    ),
    output: str = typer.Option(
        None,
        help="path to output lockfile"
    ),
    concurrency: int = typer.Option(
        None,
        help="number of cells to solve at the same time"
    ),
    pypi_index: str = typer.Option(
        None,
        help="json file with pypi release metadata"
    ),
):
    """Update the lockfile, solving only what changed"""
    workspace = load_workspace(manifest)
    settings = Settings.from_env(concurrency=concurrency)
    lock_path = _lock_path(workspace, settings, output)

    staleness, previous = check_lock_file(workspace, lock_path)
    if isinstance(staleness, Fresh):
        rich.print(f"[green]{staleness}[/green]")
        return

    fetcher = LocalIndexFetcher(pypi_index) if pypi_index else StaticIndexFetcher()

    async def solve(token):
        index_cache = IndexCache(fetcher, settings)
        try:
            return await update_lock(
                workspace, previous, default_adapters(settings, root=workspace.root), index_cache,
                settings=settings, token=token, staleness=staleness,
            )
        finally:
            index_cache.close()

    try:
        result = run_cancellable(solve)
    except (SolveCancelled, KeyboardInterrupt):
        rich.print("[yellow]cancelled, the lockfile was not changed[/yellow]")
        raise typer.Exit(code=130)

    write_lock_document(result.document, lock_path)

    if result.failures:
        table = Table(title="Failed cells")
        table.add_column("environment", justify="left", no_wrap=True)
        table.add_column("platform", justify="left", no_wrap=True)
        table.add_column("error", justify="left")
        for failure in result.failures:
            table.add_row(failure.environment, failure.platform, failure.error.msg)
        rich.print(table)
        raise typer.Exit(code=1)

    rich.print(f"[green]solved {len(result.solved)} cells, wrote {lock_path}[/green]")


@app.command()
def status(
    manifest: str = typer.Option(
        None,
        help="path to the workspace manifest"
    ),
    lockfile: str = typer.Option(
        None,
        help="path to the lockfile"
    ),
):
    """Show whether the lockfile is up to date with the manifest"""
    workspace = load_workspace(manifest)
    settings = Settings.from_env()
    staleness, _ = check_lock_file(workspace, _lock_path(workspace, settings, lockfile))
    print(f"{staleness.kind.value}: {staleness}")
    if not isinstance(staleness, Fresh):
        raise typer.Exit(code=1)
