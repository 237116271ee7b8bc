"""Wheel ecosystem solver built on resolvelib.

The conda packages already resolved for the cell form the base layer:
requirements on them are satisfied up front and never re-resolved, and the
conda ``python`` record decides which interpreter markers and
``requires-python`` are evaluated against.
"""
import asyncio
import logging
import zipfile
from dataclasses import dataclass, field
from email.parser import HeaderParser
from pathlib import Path
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Optional
from urllib.parse import urlparse
from urllib.request import url2pathname

from packaging.markers import Marker
from packaging.requirements import InvalidRequirement, Requirement
from packaging.specifiers import InvalidSpecifier, SpecifierSet
from packaging.utils import InvalidWheelFilename, canonicalize_name, parse_wheel_filename
from packaging.version import InvalidVersion, Version
from resolvelib import BaseReporter, ResolutionImpossible, ResolutionTooDeep, Resolver
from resolvelib.providers import AbstractProvider

from relock._src import constants
from relock._src.constants import Ecosystem
from relock._src.exceptions import SolveFailure
from relock._src.index import AvailableIndex
from relock._src.models.manifest import SystemRequirements
from relock._src.models.package import IndexEntry
from relock._src.solve.task import SolverTask
from relock._src.utils import hash_file

logger = logging.getLogger(__name__)

MAX_ROUNDS = 2000


@dataclass(frozen=True)
class PypiRequirement:
    """A resolvelib requirement: a project name plus constraints"""
    name: str
    specifier: SpecifierSet = field(default_factory=SpecifierSet)
    extras: FrozenSet[str] = frozenset()
    url: Optional[str] = None
    parent: Optional[str] = None

    def __str__(self):
        text = self.name
        if self.extras:
            text += f"[{','.join(sorted(self.extras))}]"
        if self.url:
            return f"{text} @ {self.url}"
        return f"{text}{self.specifier}"

    @classmethod
    def from_string(cls, spec: str, parent: Optional[str] = None) -> "PypiRequirement":
        requirement = Requirement(spec)
        return cls(
            name=canonicalize_name(requirement.name),
            specifier=requirement.specifier,
            extras=frozenset(requirement.extras),
            url=requirement.url,
            parent=parent,
        )


@dataclass(frozen=True)
class PypiCandidate:
    """A resolvelib candidate: one concrete artifact, with the extras it has to provide"""
    entry: IndexEntry
    extras: FrozenSet[str] = frozenset()

    def __str__(self):
        return f"{self.entry.name}=={self.entry.version}"

    @property
    def name(self) -> str:
        return self.entry.name

    @property
    def version(self) -> Version:
        return Version(self.entry.version)


def marker_environment(
    platform: str,
    python_version: Version,
    system_requirements: Optional[SystemRequirements] = None,
) -> Dict[str, str]:
    """PEP 508 marker values for a conda platform and interpreter

    ``platform_release`` is the minimum kernel or macOS version from the
    system requirements, empty when none is declared.
    """
    env = dict(constants.PLATFORM_MARKERS[platform])
    release = ""
    if system_requirements is not None:
        if env["sys_platform"] == "linux":
            release = system_requirements.linux or ""
        elif env["sys_platform"] == "darwin":
            release = system_requirements.macos or ""
    env.update({
        "python_version": f"{python_version.major}.{python_version.minor}",
        "python_full_version": str(python_version),
        "implementation_name": "cpython",
        "platform_python_implementation": "CPython",
        "platform_release": release,
        "platform_version": "",
        "extra": "",
    })
    return env


def _marker_applies(marker: Optional[Marker], environment: Mapping[str, str], extras: Iterable[str]) -> bool:
    if marker is None:
        return True
    for extra in ("", *sorted(extras)):
        if marker.evaluate({**environment, "extra": extra}):
            return True
    return False


def wheel_path(source: str, root: Optional[Path] = None) -> Optional[Path]:
    """The local file a direct reference points at, None for remote urls"""
    if source.startswith("file:"):
        return Path(url2pathname(urlparse(source).path))
    if "://" in source:
        return None
    path = Path(source)
    if not path.is_absolute() and root is not None:
        path = Path(root) / path
    return path


def _wheel_metadata(path: Path):
    with zipfile.ZipFile(path) as wheel:
        for member in wheel.namelist():
            parts = member.split("/")
            if len(parts) == 2 and parts[0].endswith(".dist-info") and parts[1] == "METADATA":
                return HeaderParser().parsestr(wheel.read(member).decode("utf-8"))
    raise SolveFailure(f"`{path.name}` has no METADATA file")


def local_wheel_entry(source: str, root: Optional[Path] = None) -> Optional[IndexEntry]:
    """An index entry read from a wheel on disk, None when there is no such file"""
    path = wheel_path(source, root)
    if path is None or not path.is_file():
        return None
    try:
        name, version, _, _ = parse_wheel_filename(path.name)
        metadata = _wheel_metadata(path)
    except (InvalidWheelFilename, zipfile.BadZipFile) as err:
        raise SolveFailure(f"cannot read wheel `{source}`: {err}")
    return IndexEntry(
        ecosystem=Ecosystem.PYPI,
        name=canonicalize_name(name),
        version=str(version),
        url=source,
        sha256=hash_file(path),
        depends=tuple(metadata.get_all("Requires-Dist") or ()),
        requires_python=metadata.get("Requires-Python"),
    )


class PypiProvider(AbstractProvider):
    def __init__(
        self,
        index: AvailableIndex,
        environment: Mapping[str, str],
        python_version: Version,
        provided: Iterable[str] = (),
        locked: Optional[Mapping[str, str]] = None,
        root: Optional[Path] = None,
    ):
        self.index = index
        self.root = root
        self.environment = dict(environment)
        self.python_version = python_version
        self.provided = frozenset(provided)
        self.locked = dict(locked or {})

    def identify(self, requirement_or_candidate: Any) -> str:
        return requirement_or_candidate.name

    def get_preference(self, identifier, resolutions, candidates, information, backtrack_causes):
        # deterministic: pinned names first, then alphabetical
        return (identifier not in self.locked, identifier)

    def _python_compatible(self, entry: IndexEntry) -> bool:
        if not entry.requires_python:
            return True
        try:
            return SpecifierSet(entry.requires_python).contains(self.python_version, prereleases=True)
        except InvalidSpecifier:
            logger.debug("ignoring invalid requires-python on %s", entry)
            return True

    def find_matches(self, identifier, requirements, incompatibilities):
        reqs = list(requirements.get(identifier, iter(())))
        banned = {candidate.entry for candidate in incompatibilities.get(identifier, iter(()))}

        specifier = SpecifierSet()
        extras: FrozenSet[str] = frozenset()
        urls = set()
        for req in reqs:
            specifier &= req.specifier
            extras |= req.extras
            if req.url:
                urls.add(req.url)
        if len(urls) > 1:
            return []

        best: Dict[Version, IndexEntry] = {}
        for entry in self.index.candidates(identifier):
            if entry in banned:
                continue
            if urls and entry.url not in urls:
                continue
            try:
                version = Version(entry.version)
            except InvalidVersion:
                continue
            if not urls and not specifier.contains(version):
                continue
            if not self._python_compatible(entry):
                continue
            current = best.get(version)
            if current is None or (entry.is_wheel, entry.url or "") > (current.is_wheel, current.url or ""):
                best[version] = entry
        if urls and not best:
            best = self._local_wheel(identifier, urls.pop(), banned)

        ordered = sorted(best, reverse=True)
        pinned = self.locked.get(identifier)
        if pinned is not None:
            ordered.sort(key=lambda v: str(v) != pinned)
        return [PypiCandidate(entry=best[version], extras=extras) for version in ordered]

    def _local_wheel(self, identifier, source, banned) -> Dict[Version, IndexEntry]:
        entry = local_wheel_entry(source, self.root)
        if entry is None or entry in banned or not self._python_compatible(entry):
            return {}
        if entry.name != identifier:
            raise SolveFailure(f"`{source}` is a wheel of `{entry.name}`, not `{identifier}`")
        return {Version(entry.version): entry}

    def is_satisfied_by(self, requirement, candidate) -> bool:
        if candidate.name != requirement.name:
            return False
        if not requirement.extras <= candidate.extras:
            return False
        if requirement.url:
            return candidate.entry.url == requirement.url
        return requirement.specifier.contains(candidate.version, prereleases=True)

    def active_requirements(self, candidate: PypiCandidate) -> List[Requirement]:
        active = []
        for spec in candidate.entry.depends:
            try:
                requirement = Requirement(spec)
            except InvalidRequirement:
                logger.debug("skipping invalid requirement %r of %s", spec, candidate)
                continue
            if _marker_applies(requirement.marker, self.environment, candidate.extras):
                active.append(requirement)
        return active

    def get_dependencies(self, candidate) -> List[PypiRequirement]:
        dependencies = []
        for requirement in self.active_requirements(candidate):
            name = canonicalize_name(requirement.name)
            if name in self.provided:
                continue
            dependencies.append(PypiRequirement(
                name=name,
                specifier=requirement.specifier,
                extras=frozenset(requirement.extras),
                url=requirement.url,
                parent=candidate.name,
            ))
        return dependencies


def _describe_cause(cause) -> str:
    parent = cause.parent.name if cause.parent is not None else "the environment"
    return f"{cause.requirement} (required by {parent})"


class ResolvelibSolver:
    """Resolves PyPI requirements against an ``AvailableIndex``."""

    def __init__(self, max_rounds: int = MAX_ROUNDS, root: Optional[Path] = None):
        self.max_rounds = max_rounds
        # relative wheel paths resolve against this directory
        self.root = root

    async def __call__(self, task: SolverTask) -> List[List[IndexEntry]]:
        # resolving is CPU bound, keep it off the event loop
        return await asyncio.to_thread(self.resolve, task)

    def resolve(self, task: SolverTask) -> List[List[IndexEntry]]:
        provided = {canonicalize_name(name) for name in task.installed_names()}
        roots = []
        for spec in task.specs:
            if spec.source:
                requirement = PypiRequirement(
                    name=canonicalize_name(spec.name),
                    extras=frozenset(spec.extras),
                    url=spec.source,
                )
            else:
                try:
                    requirement = PypiRequirement.from_string(spec.to_spec_string())
                except InvalidRequirement as err:
                    raise SolveFailure(f"invalid requirement `{spec}`: {err}")
            if requirement.name not in provided:
                roots.append(requirement)
        if not roots:
            return [[]]

        python = _python_version(task)
        if task.platform not in constants.PLATFORM_MARKERS:
            raise SolveFailure(f"platform `{task.platform}` has no marker environment")
        environment = marker_environment(task.platform, python, task.system_requirements)
        provider = PypiProvider(
            index=task.index,
            environment=environment,
            python_version=python,
            provided=provided,
            locked={record.name: record.version for record in task.locked},
            root=self.root,
        )

        try:
            result = Resolver(provider, BaseReporter()).resolve(roots, max_rounds=self.max_rounds)
        except ResolutionImpossible as err:
            raise SolveFailure(
                "no set of pypi packages satisfies the requirements",
                conflicts=sorted({_describe_cause(cause) for cause in err.causes}),
            )
        except ResolutionTooDeep:
            raise SolveFailure(f"resolution did not finish within {self.max_rounds} rounds")

        entries = []
        for name in sorted(result.mapping):
            candidate = result.mapping[name]
            # only keep the requirements that applied to this environment
            active = tuple(str(req) for req in provider.active_requirements(candidate))
            entries.append(candidate.entry.model_copy(update={
                "depends": active,
                "extras": tuple(sorted(candidate.extras)),
            }))
        return [entries]


def _python_version(task: SolverTask) -> Version:
    for record in task.installed:
        if record.ecosystem == Ecosystem.CONDA and record.name == constants.PYTHON_PACKAGE:
            try:
                return Version(record.version)
            except InvalidVersion:
                raise SolveFailure(f"cannot interpret python version `{record.version}`")
    raise SolveFailure(
        "pypi dependencies require `python` to be a conda dependency of the environment"
    )
