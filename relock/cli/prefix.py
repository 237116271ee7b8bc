import os

import rich
import typer
from rich.table import Table

from relock._src.conda_meta import read_installed_prefix
from relock._src.config import Settings
from relock._src.constants import ENVS_DIR
from relock._src.diff import plan_environment
from relock._src.exceptions import LockDocumentCorruption, RelockError
from relock._src.lock import read_lock_document
from relock._src.models.prefix import InstalledPrefixRecord
from relock.cli._common import load_workspace


prefix_command = typer.Typer(
    add_completion=False,
    no_args_is_help=True,
    rich_markup_mode="rich",
    context_settings={"help_option_names": ["-h", "--help"]},
)


def _read_prefix(prefix: str) -> InstalledPrefixRecord:
    if not os.path.exists(prefix):
        return InstalledPrefixRecord(prefix=prefix)
    try:
        return read_installed_prefix(prefix)
    except RelockError as err:
        rich.print(f"[red]{err}[/red]")
        raise typer.Exit(code=2)


@prefix_command.command()
def show(
    prefix: str = typer.Option(
        None,
        help="prefix to show"
    ),
):
    """List the packages installed in a prefix

    If no prefix is specified, assumes the current conda environment.
    """
    if prefix is None:
        prefix = os.environ.get("CONDA_PREFIX")
    if prefix is None:
        rich.print("[red]no prefix given and no conda environment is active[/red]")
        raise typer.Exit(code=2)

    record = _read_prefix(os.path.abspath(prefix))

    table = Table(title=record.prefix)
    table.add_column("ecosystem", justify="left", no_wrap=True)
    table.add_column("name", justify="left", no_wrap=True)
    table.add_column("version", justify="left", no_wrap=True)
    table.add_column("build", justify="left", no_wrap=True)

    for pkg in record.packages:
        table.add_row(pkg.ecosystem.value, pkg.name, pkg.version, pkg.build)

    rich.print(table)


@prefix_command.command()
def plan(
    environment: str = typer.Option(
        "default",
        help="environment to plan for"
    ),
    platform: str = typer.Option(
        None,
        help="platform of the prefix, defaults to the current one"
    ),
    prefix: str = typer.Option(
        None,
        help="prefix to reconcile, defaults to the environment's prefix in the workspace"
    ),
    manifest: str = typer.Option(
        None,
        help="path to the workspace manifest"
    ),
):
    """Show the operations that would bring a prefix in line with the lockfile"""
    workspace = load_workspace(manifest)
    settings = Settings.from_env()

    if platform is None:
        from rattler import Platform
        platform = str(Platform.current())
    if prefix is None:
        prefix = str(workspace.root / ENVS_DIR / environment)

    try:
        document = read_lock_document(workspace.root / settings.lock_file)
    except FileNotFoundError:
        rich.print("[red]no lockfile, run `relock lock` first[/red]")
        raise typer.Exit(code=2)
    except LockDocumentCorruption as err:
        rich.print(f"[red]{err}[/red]")
        raise typer.Exit(code=2)

    installed = _read_prefix(os.path.abspath(prefix))
    try:
        operations = plan_environment(document, environment, platform, installed)
    except RelockError as err:
        rich.print(f"[red]{err}[/red]")
        raise typer.Exit(code=2)

    if not operations:
        print(f"{prefix} is up to date")
        return

    print(f"operations for {environment} on {platform} in {prefix}")
    for operation in operations:
        print(operation)
