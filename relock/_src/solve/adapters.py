"""Uniform solver interface over the supported ecosystems.

The set of ecosystems is closed: one adapter class per ``Ecosystem``. An
adapter owns its ecosystem's version ordering and build tie-breaking, and
turns whatever its backend solver returns into ``ResolvedPackageRecord``
graphs of one shape.
"""
import logging
import re
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, ClassVar, Dict, Iterable, List, Optional, Sequence

from packaging.requirements import InvalidRequirement, Requirement
from packaging.utils import canonicalize_name
from packaging.version import InvalidVersion
from packaging.version import Version as PypiVersion
from rattler import Version as CondaVersion

from relock._src.constants import Ecosystem
from relock._src.exceptions import IndexFetchError, SolveCancelled, SolveFailure
from relock._src.models.package import IndexEntry, ResolvedPackageRecord
from relock._src.solve.task import ResolvedGraph, SolverTask

logger = logging.getLogger(__name__)

SolverBackend = Callable[[SolverTask], Awaitable[Sequence[Sequence[IndexEntry]]]]

_CONDA_NAME = re.compile(r"^\s*(?:[^\s:]+::)?([A-Za-z0-9_.\-]+)")


def conda_dependency_name(spec: str) -> Optional[str]:
    """Package name of a conda match spec such as ``python >=3.8``"""
    match = _CONDA_NAME.match(spec)
    if match is None:
        return None
    return match.group(1).lower()


def pypi_dependency_name(spec: str) -> Optional[str]:
    try:
        return canonicalize_name(Requirement(spec).name)
    except InvalidRequirement:
        return None


class SolverAdapter(ABC):
    ecosystem: ClassVar[Ecosystem]

    def __init__(self, backend: SolverBackend):
        self.backend = backend

    @abstractmethod
    def version_key(self, version: str):
        ...

    @abstractmethod
    def candidate_key(self, entry: IndexEntry):
        ...

    @abstractmethod
    def dependency_name(self, spec: str) -> Optional[str]:
        ...

    def name_key(self, name: str) -> str:
        """How this ecosystem compares package names"""
        return name

    async def solve(self, task: SolverTask) -> List[ResolvedGraph]:
        """Solve ``task``, returning every solution the backend offered.

        Raises ``SolveFailure`` when no solution exists. Fetch errors and
        cancellation propagate unchanged.
        """
        logger.debug(
            "solving %d %s specs for %s/%s",
            len(task.specs), self.ecosystem.value, task.environment, task.platform,
        )
        try:
            solutions = await self.backend(task)
            if not solutions:
                raise SolveFailure("the solver did not return a solution")
            return [self.to_graph(solution, task) for solution in solutions]
        except SolveFailure as err:
            raise err.for_cell(task.environment, task.platform, self.ecosystem.value) from err
        except (IndexFetchError, SolveCancelled):
            raise
        except Exception as err:
            raise SolveFailure(
                f"{type(err).__name__}: {err}",
                environment=task.environment,
                platform=task.platform,
                ecosystem=self.ecosystem.value,
            ) from err

    def to_graph(self, entries: Iterable[IndexEntry], task: SolverTask) -> ResolvedGraph:
        best: Dict[str, IndexEntry] = {}
        for entry in entries:
            current = best.get(entry.name)
            if current is None or self.candidate_key(entry) > self.candidate_key(current):
                best[entry.name] = entry

        # dependency names as spelled by the records that satisfy them
        known = {self.name_key(name): name for name in task.installed_names()}
        known.update({self.name_key(name): name for name in best})
        records = [self.to_record(best[name], known) for name in sorted(best)]
        return ResolvedGraph(ecosystem=self.ecosystem, records=tuple(records))

    def to_record(self, entry: IndexEntry, known: Dict[str, str]) -> ResolvedPackageRecord:
        depends = set()
        for spec in entry.depends:
            name = self.dependency_name(spec)
            if name is None:
                continue
            name = known.get(self.name_key(name))
            if name is not None and name != entry.name:
                depends.add(name)
        return ResolvedPackageRecord(
            ecosystem=self.ecosystem,
            name=entry.name,
            version=entry.version,
            build=entry.build,
            build_number=entry.build_number,
            subdir=entry.subdir,
            channel=entry.channel,
            url=entry.url,
            sha256=entry.sha256,
            md5=entry.md5,
            depends=tuple(sorted(depends)),
            extras=entry.extras,
            requires_python=entry.requires_python,
        )


class CondaSolverAdapter(SolverAdapter):
    ecosystem = Ecosystem.CONDA

    def version_key(self, version: str):
        return CondaVersion(version)

    def candidate_key(self, entry: IndexEntry):
        # higher build number wins, then the build string decides
        return (self.version_key(entry.version), entry.build_number, entry.build, entry.url or "")

    def dependency_name(self, spec: str) -> Optional[str]:
        return conda_dependency_name(spec)


class PypiSolverAdapter(SolverAdapter):
    ecosystem = Ecosystem.PYPI

    def version_key(self, version: str):
        try:
            return (1, PypiVersion(version))
        except InvalidVersion:
            return (0, version)

    def candidate_key(self, entry: IndexEntry):
        # wheels are preferred over source distributions of the same version
        return (self.version_key(entry.version), entry.is_wheel, entry.url or "")

    def dependency_name(self, spec: str) -> Optional[str]:
        return pypi_dependency_name(spec)

    def name_key(self, name: str) -> str:
        return canonicalize_name(name)


ADAPTER_TYPES = {
    Ecosystem.CONDA: CondaSolverAdapter,
    Ecosystem.PYPI: PypiSolverAdapter,
}


def default_adapters(settings=None, root=None) -> Dict[Ecosystem, SolverAdapter]:
    """Adapters backed by rattler for conda and resolvelib for pypi.

    ``root`` is the workspace directory local wheel paths are relative to.
    """
    from relock._src.solve.pypi_backend import ResolvelibSolver
    from relock._src.solve.rattler_backend import RattlerSolver

    backends = {
        Ecosystem.CONDA: RattlerSolver(settings=settings),
        Ecosystem.PYPI: ResolvelibSolver(root=root),
    }
    return {eco: ADAPTER_TYPES[eco](backend) for eco, backend in backends.items()}
