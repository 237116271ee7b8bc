from typing import Dict, Iterator, List, Optional, Tuple

from pydantic import BaseModel, Field

from relock._src.models.package import ResolvedPackageRecord


class LockedCell(BaseModel):
    """The solution for one (environment, platform) cell"""
    fingerprint: str
    channels: List[str] = Field(default=[])
    packages: List[ResolvedPackageRecord] = Field(default=[])


class LockDocument(BaseModel):
    """The persisted lock document

    ``fingerprint`` is the manifest fingerprint the document was produced
    from, ``content_hash`` covers every other field.
    """
    version: int
    fingerprint: str
    environments: Dict[str, Dict[str, LockedCell]] = Field(default={})
    content_hash: str = ""

    def cells(self) -> Iterator[Tuple[str, str, LockedCell]]:
        for environment in sorted(self.environments):
            platforms = self.environments[environment]
            for platform in sorted(platforms):
                yield environment, platform, platforms[platform]

    def cell_keys(self) -> List[Tuple[str, str]]:
        return [(env, platform) for env, platform, _ in self.cells()]

    def cell(self, environment: str, platform: str) -> Optional[LockedCell]:
        return self.environments.get(environment, {}).get(platform)

    def packages_for(self, environment: str, platform: str) -> List[ResolvedPackageRecord]:
        cell = self.cell(environment, platform)
        if cell is None:
            raise KeyError(f"`{environment}` is not locked for platform `{platform}`")
        return list(cell.packages)
