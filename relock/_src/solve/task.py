from dataclasses import dataclass, field
from typing import List, Tuple

from pydantic import BaseModel, ConfigDict, model_validator

from relock._src.constants import Ecosystem
from relock._src.index import AvailableIndex
from relock._src.models.manifest import SystemRequirements
from relock._src.models.package import DependencySpec, ResolvedPackageRecord


@dataclass(frozen=True)
class SolverTask:
    """Everything an ecosystem solver needs to solve one cell.

    ``installed`` holds the records already resolved for the cell by
    ecosystems solved earlier, ``locked`` the cell's records from the
    previous lock document which solvers should prefer when still valid.
    ``system_requirements`` describes the oldest machine the cell targets.
    """
    environment: str
    platform: str
    ecosystem: Ecosystem
    sources: Tuple[str, ...]
    specs: Tuple[DependencySpec, ...]
    index: AvailableIndex
    installed: Tuple[ResolvedPackageRecord, ...] = ()
    locked: Tuple[ResolvedPackageRecord, ...] = ()
    system_requirements: SystemRequirements = field(default_factory=SystemRequirements)

    def spec_strings(self) -> List[str]:
        return [spec.to_spec_string() for spec in self.specs]

    def installed_names(self) -> List[str]:
        return [record.name for record in self.installed]


class ResolvedGraph(BaseModel):
    """The solution of one ecosystem for one cell."""
    model_config = ConfigDict(frozen=True)

    ecosystem: Ecosystem
    records: Tuple[ResolvedPackageRecord, ...] = ()

    @model_validator(mode="after")
    def _unique_names(self):
        seen = set()
        for record in self.records:
            if record.name in seen:
                raise ValueError(f"package `{record.name}` is resolved more than once")
            seen.add(record.name)
        return self

    def canonical_key(self) -> Tuple[Tuple[str, str, str], ...]:
        return tuple(sorted(
            (record.ecosystem.value, record.name, record.version)
            for record in self.records
        ))

    def names(self) -> List[str]:
        return [record.name for record in self.records]
