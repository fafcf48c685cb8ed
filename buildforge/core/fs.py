"""Small filesystem helpers shared by the tree, fetch and cache layers."""

from __future__ import annotations

import os
import shutil
import tempfile
from pathlib import Path


def create_directory(path: Path) -> Path:
    """Ensure ``path`` is a directory, replacing a file that is in the way."""
    path = Path(path)
    if path.exists() and not path.is_dir():
        path.unlink()
    path.mkdir(parents=True, exist_ok=True)
    return path


def remove_existing(path: Path) -> None:
    """Remove whatever exists at ``path``, file or directory."""
    path = Path(path)
    if path.is_symlink() or path.is_file():
        path.unlink()
    elif path.is_dir():
        shutil.rmtree(path)


def atomic_write_bytes(path: Path, data: bytes) -> None:
    """Write ``data`` so that readers see either the old file or the new one."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=path.parent)
    try:
        with os.fdopen(fd, "wb") as fh:
            fh.write(data)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise
