import json
import logging
from pathlib import Path
from typing import List

from relock._src.constants import Ecosystem
from relock._src.exceptions import RelockError
from relock._src.models.prefix import InstalledPackage
from relock._src.solve.adapters import conda_dependency_name

logger = logging.getLogger(__name__)


class CondaRecords:
    @classmethod
    def detect(cls, prefix):
        """Detect if the given prefix has conda package records.
        If it does, it will return an instance of CondaRecords
        """
        if (Path(prefix) / "conda-meta").is_dir():
            return cls(prefix)
        return None

    def __init__(self, prefix):
        self.prefix = Path(prefix)
        self.conda_meta = self.prefix / "conda-meta"

    def installed_packages(self) -> List[InstalledPackage]:
        """Return every package with a record in conda-meta

        Returns
        -------
        packages: list[InstalledPackage]
            The installed conda packages, sorted by name
        """
        packages = []
        for path in sorted(self.conda_meta.glob("*.json")):
            try:
                record = json.loads(path.read_text(encoding="utf-8"))
                name = record["name"]
                version = record["version"]
            except (OSError, ValueError, KeyError, TypeError) as err:
                raise RelockError(f"invalid conda-meta record `{path}`: {err}")

            depends = set()
            for spec in record.get("depends") or []:
                dep = conda_dependency_name(spec)
                if dep is not None and dep != name:
                    depends.add(dep)

            packages.append(InstalledPackage(
                ecosystem=Ecosystem.CONDA,
                name=name,
                version=str(version),
                build=record.get("build", ""),
                sha256=record.get("sha256"),
                depends=tuple(sorted(depends)),
                files=tuple(record.get("files") or ()),
            ))
        packages.sort(key=lambda pkg: pkg.name)
        logger.debug("found %d conda packages in %s", len(packages), self.prefix)
        return packages
