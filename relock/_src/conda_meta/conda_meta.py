# NOTE:
# Every flavour of installed package lives in its own module and
# exposes the same `detect` / `installed_packages` pair.

import os

from relock._src.conda_meta.conda import CondaRecords
from relock._src.conda_meta.pypi import SitePackages
from relock._src.exceptions import RelockError
from relock._src.models.prefix import InstalledPrefixRecord


class CondaMeta():
    def __init__(self, prefix):
        """CondaMeta provides a way of reading what is installed in
        an environment prefix: the conda-meta records conda, pixi and
        rattler keep for every linked package, and the dist-info
        directories of wheels installed on top of them.

        Parameters
        ----------
        prefix: str
            The path to the environment
        """
        self.prefix = str(prefix)

        if not os.path.exists(self.prefix):
            raise RelockError(f"prefix {self.prefix} does not exist")

        # detect which record flavours are present in the prefix
        self.sources = []
        for impl in [CondaRecords, SitePackages]:
            source = impl.detect(self.prefix)
            if source is not None:
                self.sources.append(source)

    def get_installed_prefix(self) -> InstalledPrefixRecord:
        """Return the installed prefix record of the environment.

        An empty prefix directory yields an empty record.

        Returns
        -------
        record: InstalledPrefixRecord
            Every installed package, conda records first.
        """
        packages = []
        for source in self.sources:
            packages.extend(source.installed_packages())
        return InstalledPrefixRecord(prefix=self.prefix, packages=packages)


def read_installed_prefix(prefix) -> InstalledPrefixRecord:
    return CondaMeta(prefix).get_installed_prefix()
