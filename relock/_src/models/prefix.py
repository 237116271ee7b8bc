from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel, Field

from relock._src.constants import Ecosystem
from relock._src.models.operation import Install, Remove
from relock._src.models.package import PackageIdentity, ResolvedPackageRecord


class InstalledPackage(BaseModel):
    """A package as it is actually present in a prefix"""
    ecosystem: Ecosystem
    name: str
    version: str
    build: str = ""
    sha256: Optional[str] = None
    depends: Tuple[str, ...] = ()
    files: Tuple[str, ...] = ()

    def __str__(self):
        return f"{self.ecosystem.value}: {self.name} - {self.version}"

    @classmethod
    def from_record(cls, record: ResolvedPackageRecord, files=()) -> "InstalledPackage":
        return cls(
            ecosystem=record.ecosystem,
            name=record.name,
            version=record.version,
            build=record.build,
            sha256=record.sha256,
            depends=record.depends,
            files=tuple(files),
        )

    def key(self) -> Tuple[str, str]:
        return (self.ecosystem.value, self.name)

    def identity(self) -> PackageIdentity:
        return PackageIdentity(
            ecosystem=self.ecosystem,
            name=self.name,
            version=self.version,
            build=self.build,
        )

    def matches(self, record: ResolvedPackageRecord) -> bool:
        """Whether this installation already satisfies ``record``.

        Hashes are only compared when both sides know theirs.
        """
        if (self.version, self.build) != (record.version, record.build):
            return False
        if self.sha256 and record.sha256:
            return self.sha256.lower() == record.sha256.lower()
        return True


class InstalledPrefixRecord(BaseModel):
    """What is installed in an environment prefix.

    Only the operation executor mutates it.
    """
    prefix: str
    packages: List[InstalledPackage] = Field(default=[])
    partially_applied: bool = False

    def by_key(self) -> Dict[Tuple[str, str], InstalledPackage]:
        return {pkg.key(): pkg for pkg in self.packages}

    def get(self, ecosystem: Ecosystem, name: str) -> Optional[InstalledPackage]:
        return self.by_key().get((ecosystem.value, name))

    def apply(self, operation) -> None:
        """Record the effect of a successfully applied operation."""
        if isinstance(operation, Install):
            record = operation.record
            self.packages = [
                pkg for pkg in self.packages if pkg.key() != record.key()
            ]
            self.packages.append(InstalledPackage.from_record(record))
            self.packages.sort(key=lambda pkg: pkg.key())
        elif isinstance(operation, Remove):
            self.packages = [
                pkg for pkg in self.packages
                if pkg.key() != operation.package.key()
            ]
