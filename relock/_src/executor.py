"""Applies operation lists to environment prefixes.

Operations for one environment run strictly one after another; different
environments may be applied concurrently. The first failing operation
aborts the rest of its environment and leaves the prefix marked as
partially applied.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Protocol, Sequence, Union

from relock._src.config import Settings
from relock._src.exceptions import ChecksumMismatchError, InstallerOperationError
from relock._src.models.operation import Install, Relink, Remove
from relock._src.models.package import PackageIdentity, ResolvedPackageRecord
from relock._src.models.prefix import InstalledPrefixRecord
from relock._src.retry import retry_async
from relock._src.utils import hash_file

logger = logging.getLogger(__name__)


class ArtifactCache(Protocol):
    async def fetch(self, record: ResolvedPackageRecord) -> Path:
        """Make the artifact of ``record`` available locally.

        Raises ``ArtifactFetchError`` for retryable failures.
        """
        ...


class InstallerBackend(Protocol):
    async def install(self, record: ResolvedPackageRecord, artifact: Optional[Path], prefix: Path) -> None:
        ...

    async def remove(self, package: PackageIdentity, prefix: Path) -> None:
        ...

    async def relink(self, package: PackageIdentity, prefix: Path) -> None:
        ...


def verify_checksum(path: Path, sha256: Optional[str]) -> None:
    if not sha256:
        return
    actual = hash_file(path)
    if actual.lower() != sha256.lower():
        raise ChecksumMismatchError(path, sha256, actual)


@dataclass
class EnvironmentPlan:
    environment: str
    installed: InstalledPrefixRecord
    operations: List = field(default_factory=list)


@dataclass
class ExecutionReport:
    environment: str
    prefix: InstalledPrefixRecord
    applied: List = field(default_factory=list)


class OperationExecutor:
    def __init__(
        self,
        backend: InstallerBackend,
        cache: Optional[ArtifactCache] = None,
        settings: Optional[Settings] = None,
    ):
        self.backend = backend
        self.cache = cache
        self.settings = settings or Settings()
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock_for(self, environment: str) -> asyncio.Lock:
        return self._locks.setdefault(environment, asyncio.Lock())

    async def _fetch_artifact(self, record: ResolvedPackageRecord) -> Optional[Path]:
        if self.cache is None:
            return None
        path = await retry_async(
            lambda: self.cache.fetch(record),
            attempts=self.settings.max_fetch_attempts,
            base=self.settings.backoff_base,
            maximum=self.settings.backoff_max,
            describe=f"fetching {record.identity()}",
        )
        verify_checksum(path, record.sha256)
        return path

    async def _apply_one(self, operation, prefix: Path) -> None:
        if isinstance(operation, Install):
            artifact = await self._fetch_artifact(operation.record)
            await self.backend.install(operation.record, artifact, prefix)
        elif isinstance(operation, Remove):
            await self.backend.remove(operation.package, prefix)
        elif isinstance(operation, Relink):
            await self.backend.relink(operation.package, prefix)
        else:
            raise TypeError(f"unknown operation {operation!r}")

    async def apply(
        self,
        environment: str,
        installed: InstalledPrefixRecord,
        operations: Sequence,
    ) -> ExecutionReport:
        """Apply ``operations`` in order, updating ``installed`` as they succeed.

        Raises ``InstallerOperationError`` on the first failure; operations
        after it are not attempted.
        """
        prefix = Path(installed.prefix)
        operations = list(operations)
        async with self._lock_for(environment):
            applied = []
            for position, operation in enumerate(operations):
                logger.debug("%s: %s", environment, operation)
                try:
                    await self._apply_one(operation, prefix)
                except asyncio.CancelledError:
                    installed.partially_applied = bool(applied)
                    raise
                except Exception as err:
                    installed.partially_applied = True
                    raise InstallerOperationError(
                        environment, operation, applied, operations[position + 1:], err,
                    ) from err
                installed.apply(operation)
                applied.append(operation)

            installed.partially_applied = False
            logger.info("%s: applied %d operations", environment, len(applied))
            return ExecutionReport(environment=environment, prefix=installed, applied=applied)

    async def apply_many(
        self, plans: Sequence[EnvironmentPlan]
    ) -> Dict[str, Union[ExecutionReport, InstallerOperationError]]:
        """Apply several environments concurrently.

        A failing environment never aborts the others; its
        ``InstallerOperationError`` is returned in place of a report.
        """
        outcomes = await asyncio.gather(
            *(self.apply(plan.environment, plan.installed, plan.operations) for plan in plans),
            return_exceptions=True,
        )
        results = {}
        for plan, outcome in zip(plans, outcomes):
            if isinstance(outcome, InstallerOperationError):
                logger.error("%s", outcome)
            elif isinstance(outcome, BaseException):
                raise outcome
            results[plan.environment] = outcome
        return results
