"""Building, serializing and reading lock documents.

Serialization is canonical: records are sorted by (ecosystem, name,
version, build), mappings are emitted with sorted keys, and the content
hash is computed over the canonical JSON form. The same resolved inputs
therefore always produce byte-identical files, whatever order the cells
were solved in.
"""
import logging
from pathlib import Path
from typing import Iterable, List, Mapping, Tuple

import yaml
from pydantic import ValidationError

from relock._src import constants
from relock._src.exceptions import LockDocumentCorruption
from relock._src.models.lock_file import LockDocument, LockedCell
from relock._src.models.package import ResolvedPackageRecord
from relock._src.utils import atomic_write_text, hash_object

logger = logging.getLogger(__name__)


def canonical_records(records: Iterable[ResolvedPackageRecord]) -> List[ResolvedPackageRecord]:
    ordered = sorted(records, key=lambda record: record.sort_key())
    seen = set()
    for record in ordered:
        if record.name in seen:
            raise ValueError(f"package `{record.name}` appears more than once in a cell")
        seen.add(record.name)
    return ordered


def compute_content_hash(document: LockDocument) -> str:
    return hash_object(document.model_dump(mode="json", exclude={"content_hash"}))


def build_lock_document(
    fingerprint: str,
    cells: Mapping[Tuple[str, str], LockedCell],
) -> LockDocument:
    """Merge solved cells into one canonical lock document"""
    environments = {}
    for environment, platform in sorted(cells):
        cell = cells[(environment, platform)]
        environments.setdefault(environment, {})[platform] = LockedCell(
            fingerprint=cell.fingerprint,
            channels=list(cell.channels),
            packages=canonical_records(cell.packages),
        )

    document = LockDocument(
        version=constants.LOCK_FORMAT_VERSION,
        fingerprint=fingerprint,
        environments=environments,
    )
    return document.model_copy(update={"content_hash": compute_content_hash(document)})


def lock_document_to_dict(document: LockDocument) -> dict:
    # fields left at their default are implied, keeping pypi records short
    return document.model_dump(mode="json", exclude_defaults=True)


def serialize_lock_document(document: LockDocument) -> str:
    return yaml.safe_dump(
        lock_document_to_dict(document),
        sort_keys=True,
        default_flow_style=False,
        allow_unicode=True,
        width=4096,
    )


def parse_lock_document(raw: str, path=None) -> LockDocument:
    try:
        payload = yaml.safe_load(raw)
    except yaml.YAMLError as err:
        raise LockDocumentCorruption(f"invalid YAML: {err}", path=path)

    if not isinstance(payload, dict):
        raise LockDocumentCorruption("expected a mapping at the top level", path=path)

    version = payload.get("version")
    if version not in constants.SUPPORTED_LOCK_FORMAT_VERSIONS:
        raise LockDocumentCorruption(f"unsupported format version `{version}`", path=path)

    try:
        document = LockDocument.model_validate(payload)
    except ValidationError as err:
        raise LockDocumentCorruption(str(err), path=path)

    if compute_content_hash(document) != document.content_hash:
        raise LockDocumentCorruption("content hash does not match the document", path=path)
    return document


def read_lock_document(path: str | Path) -> LockDocument:
    """Read a lock document, raising ``FileNotFoundError`` when it is absent"""
    path = Path(path)
    return parse_lock_document(path.read_text(encoding="utf-8"), path=path)


def write_lock_document(document: LockDocument, path: str | Path) -> Path:
    path = atomic_write_text(path, serialize_lock_document(document))
    logger.info("wrote lock file %s", path)
    return path
