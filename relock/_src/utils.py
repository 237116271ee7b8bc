import hashlib
import json
import os
import tempfile
from pathlib import Path
from typing import Any


def hash_string(s: str) -> str:
    return hashlib.sha256(s.encode("utf-8")).hexdigest()


def canonical_json(obj: Any) -> str:
    """Serialize ``obj`` so that equal values always produce equal text."""
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def hash_object(obj: Any) -> str:
    return hash_string(canonical_json(obj))


def hash_file(path: str | Path, chunk_size: int = 1 << 20) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as file:
        for chunk in iter(lambda: file.read(chunk_size), b""):
            digest.update(chunk)
    return digest.hexdigest()


def ensure_dir(s: str | Path) -> None:
    """Recursively create a directory if it does not exist"""
    path = Path(s)
    path.mkdir(parents=True, exist_ok=True)


def atomic_write_text(path: str | Path, text: str) -> Path:
    """Write ``text`` to ``path`` through a temporary file in the same directory.

    Readers never observe a half written file.
    """
    path = Path(path)
    ensure_dir(path.parent)
    fd, tmp = tempfile.mkstemp(prefix=f".{path.name}.", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8", newline="\n") as file:
            file.write(text)
        os.replace(tmp, path)
    except BaseException:
        if os.path.exists(tmp):
            os.unlink(tmp)
        raise
    return path


def get_project_root(directory: str | Path, root_path: Path = Path("relock.yaml")) -> Path | None:
    """Identify the project root directory: the one that contains `root_path`.

    Parameters
    ----------
    directory : str | Path
        Directory which is a child of the root directory
    root_path : Path
        Path which identifies the root of the project. Usually this is
        the workspace manifest.

    Returns
    -------
    Path | None
        Path to the project root, or None if a root cannot be found
    """
    directory = Path(directory).resolve()

    for candidate in (directory, *directory.parents):
        if (candidate / root_path.name).exists():
            return candidate

    return None
