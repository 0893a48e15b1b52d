"""Filesystem helpers.

Every write that other readers may observe (manifests, changesets,
changelogs) goes through :func:`write_text_atomic`: the content is written
to a sibling temporary file, flushed to disk and renamed over the target,
so readers see either the old file or the complete new one.
"""

from __future__ import annotations

import os
import tempfile
from pathlib import Path

from .errors import AtomicWriteFailedError


def write_text_atomic(path: Path, content: str) -> None:
    """Replace ``path`` with ``content`` in a single rename.

    Raises:
        AtomicWriteFailedError: If any step fails. The target is left as it
            was and the temporary file is removed.
    """
    path = Path(path)
    data = content.encode("utf-8")
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            dir=path.parent, prefix=f".{path.name}.", suffix=".tmp"
        )
    except OSError as e:
        raise AtomicWriteFailedError(f"Cannot write {path}: {e}", path=path) from e

    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "wb") as fh:
            fh.write(data)
            fh.flush()
            os.fsync(fh.fileno())
        if path.exists():
            os.chmod(tmp_path, path.stat().st_mode & 0o777)
        os.replace(tmp_path, path)
    except OSError as e:
        tmp_path.unlink(missing_ok=True)
        raise AtomicWriteFailedError(f"Cannot write {path}: {e}", path=path) from e


def read_text_if_exists(path: Path) -> str | None:
    """Return the file content, or ``None`` when the file is missing."""
    try:
        return Path(path).read_text(encoding="utf-8")
    except FileNotFoundError:
        return None


def relative_posix(path: Path, root: Path) -> str:
    """Path of ``path`` relative to ``root`` with forward slashes ("." for root)."""
    rel = Path(os.path.relpath(path, root)).as_posix()
    return "." if rel in ("", ".") else rel
