"""Decides whether a persisted lock document still matches the manifest.

Each locked cell records the fingerprint of the specification set it was
solved from. Comparing those against the workspace's cells tells exactly
which cells have to be solved again; everything else is carried over.
"""
import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import FrozenSet, Optional, Tuple, Union

from relock._src import constants
from relock._src.exceptions import LockDocumentCorruption
from relock._src.lock import read_lock_document
from relock._src.models.lock_file import LockDocument
from relock._src.workspace import Workspace

logger = logging.getLogger(__name__)

CellKey = Tuple[str, str]


class StalenessKind(str, Enum):
    FRESH = "fresh"
    PARTIALLY_STALE = "partially-stale"
    FULLY_STALE = "fully-stale"


@dataclass(frozen=True)
class Fresh:
    kind = StalenessKind.FRESH

    def __str__(self):
        return "lock file is up to date"


@dataclass(frozen=True)
class PartiallyStale:
    """Only ``cells`` need solving; ``removed`` cells are dropped."""
    cells: FrozenSet[CellKey] = field(default_factory=frozenset)
    removed: FrozenSet[CellKey] = field(default_factory=frozenset)
    kind = StalenessKind.PARTIALLY_STALE

    def __str__(self):
        stale = ", ".join(f"{env}/{platform}" for env, platform in sorted(self.cells)) or "none"
        return f"lock file is outdated (cells to solve: {stale})"


@dataclass(frozen=True)
class FullyStale:
    reason: str
    kind = StalenessKind.FULLY_STALE

    def __str__(self):
        return f"lock file must be regenerated: {self.reason}"


Staleness = Union[Fresh, PartiallyStale, FullyStale]


def detect_staleness(workspace: Workspace, document: Optional[LockDocument]) -> Staleness:
    if document is None:
        return FullyStale("no lock document")
    if document.version not in constants.SUPPORTED_LOCK_FORMAT_VERSIONS:
        return FullyStale(f"unsupported format version `{document.version}`")

    cells = workspace.cells()
    current_keys = {cell.key for cell in cells}
    locked_keys = set(document.cell_keys())

    if document.fingerprint == workspace.fingerprint() and locked_keys == current_keys:
        return Fresh()

    stale = set()
    for cell in cells:
        locked = document.cell(*cell.key)
        if locked is None or locked.fingerprint != cell.fingerprint():
            stale.add(cell.key)

    state = PartiallyStale(
        cells=frozenset(stale),
        removed=frozenset(locked_keys - current_keys),
    )
    logger.debug("%s", state)
    return state


def check_lock_file(workspace: Workspace, path: str | Path) -> Tuple[Staleness, Optional[LockDocument]]:
    """Read the lock file at ``path`` and decide how stale it is.

    A missing or corrupt file is fully stale, never an error.
    """
    try:
        document = read_lock_document(path)
    except FileNotFoundError:
        return FullyStale("lock file does not exist"), None
    except LockDocumentCorruption as err:
        logger.warning("discarding lock file: %s", err)
        return FullyStale(str(err)), None
    return detect_staleness(workspace, document), document
