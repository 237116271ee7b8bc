"""Solves the workspace matrix and produces lock documents.

Cells are independent: they are solved concurrently, bounded by
``Settings.concurrency``, and one cell failing never stops its siblings.
Within a cell the conda ecosystem is solved first and the pypi solve is
layered on top of its result.
"""
import asyncio
import logging
import threading
from dataclasses import dataclass, field
from typing import Awaitable, Dict, List, Mapping, Optional, Sequence, Tuple, TypeVar

from relock._src.config import Settings
from relock._src.constants import Ecosystem
from relock._src.exceptions import IndexFetchError, SolveCancelled, SolveFailure
from relock._src.index import IndexCache
from relock._src.lock import build_lock_document
from relock._src.models.lock_file import LockDocument, LockedCell
from relock._src.models.package import ResolvedPackageRecord
from relock._src.solve.adapters import SolverAdapter
from relock._src.solve.task import ResolvedGraph, SolverTask
from relock._src.staleness import Fresh, FullyStale, Staleness, detect_staleness
from relock._src.workspace import SolveCell, Workspace

logger = logging.getLogger(__name__)

CellKey = Tuple[str, str]
T = TypeVar("T")


class CancellationToken:
    """Cooperative cancellation shared by every solve task of one run.

    Thread safe, so it can be cancelled from a signal handler or another
    thread. Work awaited through ``run`` is abandoned as soon as the token
    fires instead of at the next checkpoint.
    """

    def __init__(self):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._waiters: List[Tuple[asyncio.AbstractEventLoop, asyncio.Event]] = []

    def cancel(self):
        with self._lock:
            self._event.set()
            waiters, self._waiters = self._waiters, []
        for loop, event in waiters:
            try:
                loop.call_soon_threadsafe(event.set)
            except RuntimeError:
                # the loop already closed, nothing is waiting on it
                pass

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self):
        if self._event.is_set():
            raise SolveCancelled()

    async def wait(self):
        """Return once the token is cancelled"""
        event = asyncio.Event()
        with self._lock:
            if self._event.is_set():
                return
            self._waiters.append((asyncio.get_running_loop(), event))
        try:
            await event.wait()
        finally:
            with self._lock:
                self._waiters = [w for w in self._waiters if w[1] is not event]

    async def run(self, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable`` unless the token fires first.

        Raises ``SolveCancelled`` and cancels the pending work when it does.
        """
        if self.cancelled:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise SolveCancelled()
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
            finished = task.done()
            if not finished:
                task.cancel()
        if not finished:
            raise SolveCancelled()
        return task.result()


@dataclass
class CellFailure:
    environment: str
    platform: str
    error: SolveFailure

    def __str__(self):
        return str(self.error)

    @property
    def key(self) -> CellKey:
        return (self.environment, self.platform)


@dataclass
class LockResult:
    document: LockDocument
    failures: List[CellFailure] = field(default_factory=list)
    solved: List[CellKey] = field(default_factory=list)
    staleness: Optional[Staleness] = None

    @property
    def ok(self) -> bool:
        return not self.failures


def pick_canonical_graph(candidates: Sequence[ResolvedGraph]) -> ResolvedGraph:
    """Pick one of several equally valid graphs, independent of their order"""
    if not candidates:
        raise ValueError("no candidate graphs to pick from")
    return sorted(candidates, key=lambda graph: graph.canonical_key())[0]


async def solve_cell(
    cell: SolveCell,
    adapters: Mapping[Ecosystem, SolverAdapter],
    index_cache: IndexCache,
    token: CancellationToken,
    locked: Sequence[ResolvedPackageRecord] = (),
) -> List[ResolvedPackageRecord]:
    records: List[ResolvedPackageRecord] = []
    for ecosystem in cell.ecosystems():
        token.raise_if_cancelled()
        sources = cell.sources_for(ecosystem)
        try:
            index = await token.run(index_cache.get(ecosystem, sources, cell.platform))
            task = SolverTask(
                environment=cell.environment,
                platform=cell.platform,
                ecosystem=ecosystem,
                sources=sources,
                specs=cell.specs_for(ecosystem),
                index=index,
                installed=tuple(records),
                locked=tuple(r for r in locked if r.ecosystem == ecosystem),
                system_requirements=cell.system_requirements,
            )
            graphs = await token.run(adapters[ecosystem].solve(task))
        except IndexFetchError as err:
            raise SolveFailure(
                str(err),
                environment=cell.environment,
                platform=cell.platform,
                ecosystem=ecosystem.value,
            ) from err
        token.raise_if_cancelled()

        graph = pick_canonical_graph(graphs)
        clashes = set(graph.names()) & {record.name for record in records}
        if clashes:
            raise SolveFailure(
                f"packages resolved by more than one ecosystem: {', '.join(sorted(clashes))}",
                environment=cell.environment,
                platform=cell.platform,
                ecosystem=ecosystem.value,
            )
        records.extend(graph.records)
        logger.debug("solved %d %s packages for %s", len(graph.records), ecosystem.value, cell)
    return records


async def solve_cells(
    cells: Sequence[SolveCell],
    adapters: Mapping[Ecosystem, SolverAdapter],
    index_cache: IndexCache,
    settings: Settings,
    token: Optional[CancellationToken] = None,
    previous: Optional[LockDocument] = None,
) -> Tuple[Dict[CellKey, List[ResolvedPackageRecord]], List[CellFailure]]:
    """Solve ``cells`` concurrently.

    Returns the records of every solved cell and the failures of the
    others. Raises ``SolveCancelled`` when ``token`` fires, discarding any
    results computed so far.
    """
    token = token or CancellationToken()
    semaphore = asyncio.Semaphore(settings.concurrency)

    async def run(cell: SolveCell):
        token.raise_if_cancelled()
        async with semaphore:
            token.raise_if_cancelled()
            locked = ()
            if previous is not None and previous.cell(*cell.key) is not None:
                locked = previous.packages_for(*cell.key)
            logger.debug("solving %s", cell)
            return await solve_cell(cell, adapters, index_cache, token, locked)

    outcomes = await asyncio.gather(*(run(cell) for cell in cells), return_exceptions=True)

    if token.cancelled or any(isinstance(o, SolveCancelled) for o in outcomes):
        raise SolveCancelled()

    solved = {}
    failures = []
    for cell, outcome in zip(cells, outcomes):
        if isinstance(outcome, SolveFailure):
            logger.debug("failed to solve %s: %s", cell, outcome)
            failures.append(CellFailure(cell.environment, cell.platform, outcome))
        elif isinstance(outcome, BaseException):
            raise outcome
        else:
            solved[cell.key] = outcome
    return solved, failures


async def update_lock(
    workspace: Workspace,
    previous: Optional[LockDocument],
    adapters: Mapping[Ecosystem, SolverAdapter],
    index_cache: IndexCache,
    settings: Optional[Settings] = None,
    token: Optional[CancellationToken] = None,
    staleness: Optional[Staleness] = None,
) -> LockResult:
    """Bring ``previous`` up to date with ``workspace``.

    Only cells the staleness detector reports as stale are solved, the
    records of all other cells are carried over unchanged. A fresh
    document is returned as is without invoking any solver.
    """
    settings = settings or Settings()
    if staleness is None:
        staleness = detect_staleness(workspace, previous)

    if isinstance(staleness, Fresh):
        logger.info("lock file is up to date, nothing to solve")
        return LockResult(document=previous, staleness=staleness)

    cells = workspace.cells()
    if isinstance(staleness, FullyStale) or previous is None:
        to_solve = cells
        carried = {}
    else:
        to_solve = [cell for cell in cells if cell.key in staleness.cells]
        carried = {
            cell.key: previous.cell(*cell.key)
            for cell in cells
            if cell.key not in staleness.cells
        }

    logger.info("solving %d of %d cells", len(to_solve), len(cells))
    solved, failures = await solve_cells(
        to_solve, adapters, index_cache, settings, token=token, previous=previous,
    )

    locked_cells = dict(carried)
    for cell in to_solve:
        if cell.key in solved:
            locked_cells[cell.key] = LockedCell(
                fingerprint=cell.fingerprint(),
                channels=list(cell.channels),
                packages=solved[cell.key],
            )

    for failure in failures:
        logger.warning("%s", failure)

    document = build_lock_document(workspace.fingerprint(), locked_cells)
    return LockResult(
        document=document,
        failures=failures,
        solved=sorted(solved),
        staleness=staleness,
    )


async def lock_workspace(
    workspace: Workspace,
    adapters: Mapping[Ecosystem, SolverAdapter],
    index_cache: IndexCache,
    settings: Optional[Settings] = None,
    token: Optional[CancellationToken] = None,
) -> LockResult:
    """Solve every cell of ``workspace`` from scratch."""
    return await update_lock(
        workspace, None, adapters, index_cache,
        settings=settings, token=token, staleness=FullyStale("full solve requested"),
    )
