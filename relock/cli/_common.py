import asyncio
import os
import signal
from pathlib import Path
from typing import Optional

import rich
import typer

from relock._src.constants import DEFAULT_MANIFEST_FILE
from relock._src.exceptions import RelockError
from relock._src.orchestrator import CancellationToken
from relock._src.utils import get_project_root
from relock._src.workspace import Workspace


def find_manifest(manifest: Optional[str]) -> Path:
    """Use the given manifest, or look for one from the current directory up"""
    if manifest is not None:
        return Path(manifest).resolve()
    root = get_project_root(os.getcwd(), Path(DEFAULT_MANIFEST_FILE))
    if root is None:
        rich.print(f"[red]could not find {DEFAULT_MANIFEST_FILE} in this or any parent directory[/red]")
        raise typer.Exit(code=2)
    return root / DEFAULT_MANIFEST_FILE


def load_workspace(manifest: Optional[str]) -> Workspace:
    path = find_manifest(manifest)
    try:
        return Workspace.from_path(path)
    except RelockError as err:
        rich.print(f"[red]{err}[/red]")
        raise typer.Exit(code=2)


def run_cancellable(factory):
    """Run the coroutine built by ``factory(token)``; SIGINT cancels the token."""
    token = CancellationToken()

    async def main():
        loop = asyncio.get_running_loop()
        try:
            loop.add_signal_handler(signal.SIGINT, token.cancel)
        except (NotImplementedError, RuntimeError):
            # windows event loops have no signal handlers
            pass
        return await factory(token)

    return asyncio.run(main())
