from typing import Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from relock._src.constants import Ecosystem


class DependencySpec(BaseModel):
    """A requested package, as captured from the manifest for one solve cell."""
    model_config = ConfigDict(frozen=True)

    ecosystem: Ecosystem
    name: str
    # conda: a version spec such as ">=1.2,<2" or "1.2.*"
    # pypi: a PEP 440 specifier such as ">=1.2"
    version: Optional[str] = None
    # conda only
    build: Optional[str] = None
    # conda: channel override, pypi: url or path of a built wheel
    source: Optional[str] = None
    # pypi only
    extras: Tuple[str, ...] = ()

    def __str__(self):
        return self.to_spec_string()

    def key(self) -> Tuple[str, str]:
        return (self.ecosystem.value, self.name)

    def to_spec_string(self) -> str:
        if self.ecosystem == Ecosystem.CONDA:
            return self._conda_spec()
        return self._pypi_spec()

    def _conda_spec(self) -> str:
        spec = self.name
        if self.source:
            spec = f"{self.source}::{spec}"
        if self.version and self.version != "*":
            spec = f"{spec} {self.version}"
        elif self.build:
            spec = f"{spec} *"
        if self.build:
            spec = f"{spec} {self.build}"
        return spec

    def _pypi_spec(self) -> str:
        spec = self.name
        if self.extras:
            spec += f"[{','.join(sorted(self.extras))}]"
        if self.source:
            return f"{spec} @ {self.source}"
        version = (self.version or "").strip()
        if version and version != "*":
            # a bare version means an exact pin
            if version[0].isdigit():
                version = f"=={version}"
            spec += version
        return spec


class PackageIdentity(BaseModel):
    model_config = ConfigDict(frozen=True)

    ecosystem: Ecosystem
    name: str
    version: str
    build: str = ""

    def __str__(self):
        return f"{self.name}@{self.version}"

    def key(self) -> Tuple[str, str]:
        return (self.ecosystem.value, self.name)


class IndexEntry(BaseModel):
    """One installable artifact advertised by a package index."""
    model_config = ConfigDict(frozen=True)

    ecosystem: Ecosystem
    name: str
    version: str
    build: str = ""
    build_number: int = 0
    subdir: Optional[str] = None
    channel: Optional[str] = None
    url: Optional[str] = None
    sha256: Optional[str] = None
    md5: Optional[str] = None
    # conda: match specs, pypi: PEP 508 requirements
    depends: Tuple[str, ...] = ()
    requires_python: Optional[str] = None
    # pypi: the extras a solution activated on this entry
    extras: Tuple[str, ...] = ()

    def __str__(self):
        return f"{self.ecosystem.value}: {self.name} - {self.version}"

    @property
    def is_wheel(self) -> bool:
        return bool(self.url) and self.url.split("?")[0].endswith(".whl")


class ResolvedPackageRecord(BaseModel):
    """A package pinned by a solve.

    ``depends`` holds the names of the direct dependencies, each of which is
    resolved within the same (environment, platform) cell.
    """
    model_config = ConfigDict(frozen=True)

    ecosystem: Ecosystem
    name: str
    version: str
    build: str = ""
    # conda only
    build_number: int = 0
    subdir: Optional[str] = None
    channel: Optional[str] = None
    url: Optional[str] = None
    sha256: Optional[str] = None
    md5: Optional[str] = None
    depends: Tuple[str, ...] = Field(default=())
    # pypi only
    extras: Tuple[str, ...] = ()
    requires_python: Optional[str] = None

    def __str__(self):
        return f"{self.ecosystem.value}: {self.name} - {self.version}"

    def key(self) -> Tuple[str, str]:
        return (self.ecosystem.value, self.name)

    def sort_key(self) -> Tuple[str, str, str, str]:
        return (self.ecosystem.value, self.name, self.version, self.build)

    def identity(self) -> PackageIdentity:
        return PackageIdentity(
            ecosystem=self.ecosystem,
            name=self.name,
            version=self.version,
            build=self.build,
        )
