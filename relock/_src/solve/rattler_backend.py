import logging
from typing import Dict, Iterable, List, Optional, Tuple

from rattler import GenericVirtualPackage, PackageName, PackageRecord, RepoDataRecord, Version, solve
from rattler.exceptions import FetchRepoDataError, GatewayError, InvalidMatchSpecError, SolverError

from relock._src.config import Settings
from relock._src.constants import Ecosystem
from relock._src.exceptions import IndexFetchError, SolveFailure
from relock._src.models.manifest import SystemRequirements
from relock._src.models.package import IndexEntry, ResolvedPackageRecord
from relock._src.retry import retry_async
from relock._src.solve.task import SolverTask

logger = logging.getLogger(__name__)


# virtual packages assumed for each platform family unless the workspace
# declares system requirements; the host machine is never inspected
DEFAULT_VIRTUAL_PACKAGES = {
    "linux": {"__unix": "0", "__linux": "4.18", "__glibc": "2.17"},
    "osx": {"__unix": "0", "__osx": "11.0"},
    "win": {"__win": "0"},
}


def virtual_package_specs(
    platform: str, requirements: Optional[SystemRequirements] = None
) -> List[Tuple[str, str, str]]:
    """(name, version, build) of the virtual packages a platform provides"""
    family = platform.split("-")[0]
    packages: Dict[str, str] = dict(DEFAULT_VIRTUAL_PACKAGES.get(family, {}))
    if requirements is not None:
        if family == "linux":
            if requirements.linux:
                packages["__linux"] = requirements.linux
            if requirements.libc:
                packages.pop("__glibc", None)
                packages[f"__{requirements.libc.family}"] = requirements.libc.version
        elif family == "osx" and requirements.macos:
            packages["__osx"] = requirements.macos
        if requirements.cuda and family in ("linux", "win"):
            packages["__cuda"] = requirements.cuda
    return [(name, version, "0") for name, version in sorted(packages.items())]


def virtual_packages_for(
    platform: str, requirements: Optional[SystemRequirements] = None
) -> List[GenericVirtualPackage]:
    return [
        GenericVirtualPackage(PackageName(name), Version(version), build)
        for name, version, build in virtual_package_specs(platform, requirements)
    ]


def _hex(value):
    if value is None:
        return None
    if isinstance(value, (bytes, bytearray)):
        return value.hex()
    return str(value)


def repodata_record_to_entry(record) -> IndexEntry:
    """Converts a rattler repodata record into an index entry."""
    return IndexEntry(
        ecosystem=Ecosystem.CONDA,
        name=record.name.normalized,
        version=str(record.version),
        build=record.build,
        build_number=record.build_number,
        subdir=record.subdir,
        channel=str(record.channel) if record.channel else None,
        url=record.url,
        sha256=_hex(record.sha256),
        md5=_hex(record.md5),
        depends=tuple(record.depends),
    )


def to_repodata_record(record: ResolvedPackageRecord) -> RepoDataRecord:
    """Converts a locked conda record into a rattler compatible repodata record."""
    pkg_record = PackageRecord(
        name=record.name, version=record.version, build=record.build,
        build_number=record.build_number, subdir=record.subdir, arch=None,
        platform=None,
    )
    return RepoDataRecord(
        package_record=pkg_record,
        file_name=record.url.split("/")[-1],
        channel=record.channel,
        url=record.url,
    )


def locked_repodata_records(records: Iterable[ResolvedPackageRecord]) -> List[RepoDataRecord]:
    """The previously locked conda records rattler can be asked to keep"""
    locked = []
    for record in records:
        if record.ecosystem != Ecosystem.CONDA:
            continue
        if not (record.url and record.subdir and record.channel):
            logger.debug("%s lacks channel metadata, not keeping it locked", record)
            continue
        locked.append(to_repodata_record(record))
    return locked


class RattlerSolver:
    """Solves conda specs with rattler.

    rattler fetches and caches channel repodata itself, so network errors
    surface here and are retried like any other index fetch. Records of
    the previous lock are passed on so unchanged specs keep their pins.
    """

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or Settings()

    async def __call__(self, task: SolverTask) -> List[List[IndexEntry]]:
        if not task.sources:
            raise SolveFailure("no channels are configured")

        records = await retry_async(
            lambda: self._solve(task),
            attempts=self.settings.max_fetch_attempts,
            base=self.settings.backoff_base,
            maximum=self.settings.backoff_max,
            describe=f"fetching repodata for {task.platform}",
        )
        return [[repodata_record_to_entry(record) for record in records]]

    async def _solve(self, task: SolverTask):
        try:
            # noarch packages install on every platform
            return await solve(
                list(task.sources),
                task.spec_strings(),
                platforms=[task.platform, "noarch"],
                locked_packages=locked_repodata_records(task.locked),
                virtual_packages=virtual_packages_for(task.platform, task.system_requirements),
            )
        except (FetchRepoDataError, GatewayError) as err:
            raise IndexFetchError(Ecosystem.CONDA.value, ", ".join(task.sources), err)
        except InvalidMatchSpecError as err:
            raise SolveFailure(f"invalid match spec: {err}")
        except SolverError as err:
            raise SolveFailure(str(err), conflicts=_conflicts_from(str(err)))


def _conflicts_from(message: str) -> List[str]:
    # rattler renders the unsat core as an indented tree, keep the lines
    # that name a requirement
    lines = []
    for line in message.splitlines():
        stripped = line.strip(" │├└─")
        if stripped and ("cannot be installed" in stripped or "requires" in stripped):
            lines.append(stripped)
    return lines
