import logging
from importlib.metadata import Distribution
from pathlib import Path
from typing import List

from packaging.requirements import InvalidRequirement, Requirement
from packaging.utils import canonicalize_name

from relock._src.constants import Ecosystem
from relock._src.models.prefix import InstalledPackage

logger = logging.getLogger(__name__)

# site-packages locations relative to a prefix
SITE_PACKAGES_GLOBS = ("lib/python*/site-packages", "Lib/site-packages")


class SitePackages:
    @classmethod
    def detect(cls, prefix):
        """Detect if the given prefix has a site-packages directory.
        If it does, it will return an instance of SitePackages
        """
        for pattern in SITE_PACKAGES_GLOBS:
            if any(Path(prefix).glob(pattern)):
                return cls(prefix)
        return None

    def __init__(self, prefix):
        self.prefix = Path(prefix)

    def _dist_info_dirs(self):
        for pattern in SITE_PACKAGES_GLOBS:
            for site_packages in sorted(self.prefix.glob(pattern)):
                yield from sorted(site_packages.glob("*.dist-info"))

    def installed_packages(self) -> List[InstalledPackage]:
        """Return every distribution installed by a wheel installer.

        Distributions that conda installed (their INSTALLER file says so)
        are already covered by the conda records.
        """
        packages = {}
        for dist_info in self._dist_info_dirs():
            installer = dist_info / "INSTALLER"
            if installer.exists() and installer.read_text().strip() == "conda":
                continue

            dist = Distribution.at(dist_info)
            name = dist.metadata["Name"]
            if not name:
                logger.debug("skipping %s without a name", dist_info)
                continue

            depends = set()
            for spec in dist.requires or []:
                try:
                    requirement = Requirement(spec)
                except InvalidRequirement:
                    continue
                if requirement.marker is not None and "extra" in str(requirement.marker):
                    continue
                depends.add(canonicalize_name(requirement.name))

            name = canonicalize_name(name)
            packages[name] = InstalledPackage(
                ecosystem=Ecosystem.PYPI,
                name=name,
                version=dist.version,
                depends=tuple(sorted(depends)),
                files=tuple(str(f) for f in dist.files or ()),
            )
        return [packages[name] for name in sorted(packages)]
