"""Package availability metadata consumed by the solvers.

An ``AvailableIndex`` is fetched once per (ecosystem, sources, platform)
and shared read-only by every cell that needs it.
"""
import asyncio
import json
import logging
from pathlib import Path
from types import MappingProxyType
from typing import Dict, Iterable, List, Protocol, Sequence, Tuple

from packaging.utils import canonicalize_name
from pydantic import ValidationError

from relock._src.config import Settings
from relock._src.constants import Ecosystem
from relock._src.exceptions import IndexFetchError
from relock._src.models.package import IndexEntry
from relock._src.retry import retry_async

logger = logging.getLogger(__name__)

IndexKey = Tuple[Ecosystem, Tuple[str, ...], str]


class AvailableIndex:
    def __init__(
        self,
        ecosystem: Ecosystem,
        platform: str,
        sources: Sequence[str] = (),
        entries: Iterable[IndexEntry] = (),
    ):
        self.ecosystem = ecosystem
        self.platform = platform
        self.sources = tuple(sources)
        grouped: Dict[str, List[IndexEntry]] = {}
        for entry in entries:
            if entry.ecosystem != ecosystem:
                continue
            grouped.setdefault(entry.name, []).append(entry)
        self._entries = MappingProxyType({
            name: tuple(grouped[name]) for name in sorted(grouped)
        })

    def __repr__(self):
        return (
            f"AvailableIndex({self.ecosystem.value}, {self.platform}, "
            f"{len(self._entries)} packages)"
        )

    def __len__(self):
        return len(self._entries)

    def __contains__(self, name):
        return name in self._entries

    def names(self) -> List[str]:
        return list(self._entries)

    def candidates(self, name: str) -> Tuple[IndexEntry, ...]:
        return self._entries.get(name, ())


class IndexFetcher(Protocol):
    async def fetch(
        self, ecosystem: Ecosystem, sources: Sequence[str], platform: str
    ) -> Iterable[IndexEntry]:
        ...


def _platform_matches(entry: IndexEntry, platform: str) -> bool:
    return entry.subdir is None or entry.subdir in (platform, "noarch")


class StaticIndexFetcher:
    """Serves entries that are already in memory."""

    def __init__(self, entries: Iterable[IndexEntry] = ()):
        self.entries = tuple(entries)

    async def fetch(self, ecosystem, sources, platform):
        return [
            entry for entry in self.entries
            if entry.ecosystem == ecosystem and _platform_matches(entry, platform)
        ]


class LocalIndexFetcher:
    """Reads PyPI release metadata from a JSON file.

    The file maps project names to a list of releases::

        {"requests": [{"version": "2.31.0", "url": "...", "sha256": "...",
                       "requires_dist": ["idna>=2.5"], "requires_python": ">=3.7"}]}

    Conda metadata is left to the conda solver, which fetches channels
    itself.
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)

    async def fetch(self, ecosystem, sources, platform):
        if ecosystem != Ecosystem.PYPI:
            return []
        return await asyncio.to_thread(self._read)

    def _read(self) -> List[IndexEntry]:
        try:
            payload = json.loads(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError as err:
            raise IndexFetchError(Ecosystem.PYPI.value, str(self.path), err, retryable=False)
        except (OSError, json.JSONDecodeError) as err:
            raise IndexFetchError(Ecosystem.PYPI.value, str(self.path), err)
        if not isinstance(payload, dict):
            raise IndexFetchError(
                Ecosystem.PYPI.value, str(self.path), "expected a JSON object", retryable=False
            )

        entries = []
        try:
            for project, releases in payload.items():
                for release in releases:
                    entries.append(IndexEntry(
                        ecosystem=Ecosystem.PYPI,
                        name=canonicalize_name(project),
                        version=release["version"],
                        url=release.get("url"),
                        sha256=release.get("sha256"),
                        depends=tuple(release.get("requires_dist") or ()),
                        requires_python=release.get("requires_python"),
                    ))
        except (KeyError, TypeError, ValidationError) as err:
            raise IndexFetchError(
                Ecosystem.PYPI.value, str(self.path), f"invalid release entry: {err}", retryable=False
            )
        return entries


class IndexCache:
    """Fetches each index once and shares it across concurrent cells.

    Retryable fetch errors are retried with backoff; the final error is
    shared by every cell waiting on the same key.
    """

    def __init__(self, fetcher: IndexFetcher, settings: Settings | None = None):
        self.fetcher = fetcher
        self.settings = settings or Settings()
        self._tasks: Dict[IndexKey, asyncio.Future] = {}

    async def get(self, ecosystem: Ecosystem, sources: Sequence[str], platform: str) -> AvailableIndex:
        key = (ecosystem, tuple(sources), platform)
        task = self._tasks.get(key)
        if task is None:
            task = asyncio.ensure_future(self._fetch(*key))
            self._tasks[key] = task
        # one waiter being cancelled must not cancel the shared fetch
        return await asyncio.shield(task)

    async def _fetch(self, ecosystem: Ecosystem, sources: Tuple[str, ...], platform: str) -> AvailableIndex:
        logger.debug("fetching %s metadata for %s from %s", ecosystem.value, platform, sources)
        entries = await retry_async(
            lambda: self.fetcher.fetch(ecosystem, sources, platform),
            attempts=self.settings.max_fetch_attempts,
            base=self.settings.backoff_base,
            maximum=self.settings.backoff_max,
            describe=f"fetching {ecosystem.value} metadata for {platform}",
        )
        index = AvailableIndex(ecosystem, platform, sources, entries)
        logger.debug("fetched %r", index)
        return index

    def close(self):
        for task in self._tasks.values():
            if not task.done():
                task.cancel()
        self._tasks.clear()
