"""
File system helpers for index artifacts and content fingerprints.
"""

import hashlib
import json
import os
import shutil
import tempfile
from pathlib import Path
from typing import Any, Union

PathLike = Union[str, Path]


def ensure_directory(path: PathLike) -> Path:
    """Create directory (and parents) if missing and return it."""
    path = Path(path)
    path.mkdir(parents=True, exist_ok=True)
    return path


def compute_content_hash(content: Union[str, bytes], algorithm: str = "sha256") -> str:
    """Hex digest of text (UTF-8 encoded) or bytes."""
    if isinstance(content, str):
        content = content.encode("utf-8")
    return hashlib.new(algorithm, content).hexdigest()


def atomic_write_json(file_path: PathLike, data: Any, indent: int = 2) -> None:
    """
    Write ``data`` as JSON so readers see either the old file or the new
    one, never a partial write. Values JSON cannot encode are stringified.
    """
    target = Path(file_path)
    ensure_directory(target.parent)

    fd, tmp_name = tempfile.mkstemp(dir=target.parent, prefix=f".{target.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(data, handle, indent=indent, default=str)
        os.replace(tmp_name, target)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def read_json(file_path: PathLike) -> Any:
    with open(file_path, encoding="utf-8") as handle:
        return json.load(handle)


def remove_path(path: PathLike) -> bool:
    """Remove a file or directory tree if it exists. Returns True if removed."""
    path = Path(path)
    if path.is_dir():
        shutil.rmtree(path)
    elif path.exists():
        path.unlink()
    else:
        return False
    return True
