"""Computes the operations that turn an installed prefix into a locked one.

Operations come out in three phases:

1. removes, dependents before the packages they depend on, so that no
   installed package ever loses a dependency while it is still present and
   so that every path a new package needs is vacated before it is written;
2. installs, dependencies before dependents, for installer backends that
   run post-link hooks expecting their dependencies to be present;
3. relinks of unchanged packages whose dependencies were replaced, again
   dependencies first.
"""
import heapq
import logging
from typing import Callable, Dict, Iterable, List, Mapping, Sequence, Tuple, TypeVar

from relock._src import constants
from relock._src.constants import Ecosystem
from relock._src.exceptions import RelockError
from relock._src.models.lock_file import LockDocument
from relock._src.models.operation import Install, Relink, Remove
from relock._src.models.package import ResolvedPackageRecord
from relock._src.models.prefix import InstalledPrefixRecord

logger = logging.getLogger(__name__)

Key = Tuple[str, str]
T = TypeVar("T")


def topological_order(
    items: Mapping[Key, T],
    depends: Callable[[T], Iterable[str]],
) -> List[T]:
    """Order ``items`` so that every item comes after its dependencies.

    Dependencies are referenced by name; names outside ``items`` are
    ignored. Ties are broken by key, and cycles are broken by emitting the
    smallest remaining key, so the result is fully deterministic.
    """
    by_name = {key[1]: key for key in items}
    pending: Dict[Key, set] = {}
    dependents: Dict[Key, List[Key]] = {key: [] for key in items}
    for key, item in items.items():
        deps = {by_name[name] for name in depends(item) if name in by_name and by_name[name] != key}
        pending[key] = deps
        for dep in deps:
            dependents[dep].append(key)

    ready = [key for key, deps in pending.items() if not deps]
    heapq.heapify(ready)
    ordered: List[T] = []
    done = set()
    while len(done) < len(items):
        if not ready:
            # everything left is on, or waiting for, a cycle
            remaining = sorted(k for k in items if k not in done)
            key = next((k for k in remaining if _on_cycle(k, pending)), remaining[0])
            logger.warning("dependency cycle involving `%s`, ordering it first", key[1])
            pending[key] = set()
            heapq.heappush(ready, key)
        key = heapq.heappop(ready)
        if key in done:
            continue
        done.add(key)
        ordered.append(items[key])
        for dependent in dependents[key]:
            deps = pending[dependent]
            if key in deps:
                deps.discard(key)
                if not deps and dependent not in done:
                    heapq.heappush(ready, dependent)
    return ordered


def _on_cycle(start: Key, pending: Mapping[Key, set]) -> bool:
    stack = list(pending[start])
    seen = set()
    while stack:
        key = stack.pop()
        if key == start:
            return True
        if key in seen:
            continue
        seen.add(key)
        stack.extend(pending[key])
    return False


def diff_prefix(
    records: Sequence[ResolvedPackageRecord],
    installed: InstalledPrefixRecord,
) -> List:
    """The ordered operation list that makes ``installed`` match ``records``.

    Neither argument is modified.
    """
    wanted: Dict[Key, ResolvedPackageRecord] = {record.key(): record for record in records}
    present = installed.by_key()

    to_install: Dict[Key, ResolvedPackageRecord] = {}
    to_remove = {}
    for key, record in wanted.items():
        current = present.get(key)
        if current is None:
            to_install[key] = record
        elif not current.matches(record):
            to_remove[key] = current
            to_install[key] = record
    for key, current in present.items():
        if key not in wanted:
            to_remove[key] = current

    changed = {key[1] for key in to_install} | {key[1] for key in to_remove}
    python_key = (Ecosystem.CONDA.value, constants.PYTHON_PACKAGE)
    python_changed = python_key in to_install or python_key in to_remove

    to_relink: Dict[Key, ResolvedPackageRecord] = {}
    for key, record in wanted.items():
        if key in to_install:
            continue
        if any(name in changed for name in record.depends):
            to_relink[key] = record
        elif python_changed and record.ecosystem == Ecosystem.PYPI:
            # wheels are bound to the interpreter they were installed for
            to_relink[key] = record

    removes = list(reversed(topological_order(to_remove, lambda pkg: pkg.depends)))
    installs = topological_order(to_install, lambda record: record.depends)
    relinks = topological_order(to_relink, lambda record: record.depends)

    operations = [Remove(package=pkg.identity()) for pkg in removes]
    operations += [Install(record=record) for record in installs]
    operations += [Relink(package=record.identity()) for record in relinks]

    logger.debug(
        "%s: %d to remove, %d to install, %d to relink",
        installed.prefix, len(removes), len(installs), len(relinks),
    )
    return operations


def plan_environment(
    document: LockDocument,
    environment: str,
    platform: str,
    installed: InstalledPrefixRecord,
) -> List:
    try:
        records = document.packages_for(environment, platform)
    except KeyError:
        raise RelockError(
            f"environment `{environment}` is not locked for platform `{platform}`"
        )
    return diff_prefix(records, installed)
