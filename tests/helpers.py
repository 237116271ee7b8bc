"""Index entry builders and an in-memory conda solver for tests."""

from __future__ import annotations

import asyncio
from typing import Iterable

from relock._src.constants import Ecosystem
from relock._src.exceptions import SolveFailure
from relock._src.models.package import IndexEntry
from relock._src.solve.adapters import conda_dependency_name


def conda(name: str, version: str, build: str = "0", depends: Iterable[str] = (), sha256: str | None = None) -> IndexEntry:
    return IndexEntry(
        ecosystem=Ecosystem.CONDA,
        name=name,
        version=version,
        build=build,
        url=f"https://conda.example/linux-64/{name}-{version}-{build}.conda",
        sha256=sha256 or f"{name}-{version}-{build}".encode().hex(),
        depends=tuple(depends),
    )


def wheel(name: str, version: str, requires: Iterable[str] = (), requires_python: str | None = None) -> IndexEntry:
    return IndexEntry(
        ecosystem=Ecosystem.PYPI,
        name=name,
        version=version,
        url=f"https://files.example/{name}-{version}-py3-none-any.whl",
        depends=tuple(requires),
        requires_python=requires_python,
    )


class FakeCondaSolver:
    """Picks the last listed index entry for every requested name.

    Records each task it receives, can be told to fail for some cells and
    to wait before answering so that cells complete out of order.
    """

    def __init__(self, fail_cells=(), delays=None):
        self.calls = []
        self.fail_cells = set(fail_cells)
        self.delays = delays or {}

    async def __call__(self, task):
        self.calls.append(task)
        delay = self.delays.get((task.environment, task.platform))
        if delay:
            await asyncio.sleep(delay)
        if (task.environment, task.platform) in self.fail_cells:
            raise SolveFailure("nothing provides `missing`", conflicts=["missing >=1"])

        chosen = {}
        pending = [conda_dependency_name(spec) for spec in task.spec_strings()]
        while pending:
            name = pending.pop()
            if name in chosen:
                continue
            candidates = task.index.candidates(name)
            if not candidates:
                raise SolveFailure(f"nothing provides `{name}`")
            entry = candidates[-1]
            chosen[name] = entry
            pending.extend(conda_dependency_name(dep) for dep in entry.depends)
        return [list(chosen.values())]
