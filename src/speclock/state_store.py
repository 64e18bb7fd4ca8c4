"""Filesystem primitives shared by the cache, checkpoint and index stores.

All writes go through temp-file-then-rename so readers never observe a
partially written file. Read-modify-write sequences additionally take an
``fcntl`` lock on a ``.lock`` sidecar so concurrent processes sharing a
project directory do not race.
"""

from __future__ import annotations

import fcntl
import os
import re
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

_LOCK_SUFFIX = ".lock"
_UNSAFE_SEGMENT_RE = re.compile(r"[^A-Za-z0-9_.-]+")


@contextmanager
def locked_file(path: Path) -> Iterator[None]:
    """Hold an exclusive lock on ``<path>.lock`` for the duration of the context.

    The lock lives on a sidecar so the data file itself can be replaced with
    ``os.replace`` while the lock is held.
    """
    lock_path = path.with_suffix(path.suffix + _LOCK_SUFFIX)
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    with lock_path.open("a+", encoding="utf-8") as lock_handle:
        fcntl.flock(lock_handle.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(lock_handle.fileno(), fcntl.LOCK_UN)


def atomic_write_text(path: Path, content: str) -> None:
    """Write ``content`` to ``path`` via a temp file in the same directory and ``os.replace``."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(
        dir=str(path.parent),
        prefix=f".{path.name}.",
        suffix=".tmp",
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as tmp_handle:
            tmp_handle.write(content)
            tmp_handle.flush()
            os.fsync(tmp_handle.fileno())
        os.replace(tmp_path, str(path))
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def create_exclusive_text(path: Path, content: str) -> bool:
    """Create ``path`` with ``content`` unless it already exists.

    The content is staged in a temp file and hard-linked into place, so the
    final name either does not exist or holds the complete content.

    Returns:
        True if this call created the file, False if it already existed.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as tmp_handle:
            tmp_handle.write(content)
            tmp_handle.flush()
            os.fsync(tmp_handle.fileno())
        try:
            os.link(tmp_path, str(path))
        except FileExistsError:
            return False
        return True
    finally:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass


def safe_read_text(path: Path, label: str) -> str:
    """Read a text file and raise a clear error if missing or unreadable.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the file is empty or contains non-UTF-8 data.
    """
    if not path.is_file():
        raise FileNotFoundError(f"{label} not found: {path}")
    try:
        text = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as exc:
        raise ValueError(f"{label} at {path} contains invalid UTF-8 data") from exc
    if not text.strip():
        raise ValueError(f"{label} at {path} is empty")
    return text


def safe_segment(value: str) -> str:
    """Filesystem-safe path segment.

    Raises:
        ValueError: If nothing filesystem-safe remains.
    """
    segment = _UNSAFE_SEGMENT_RE.sub("-", value.strip()).strip("-")
    if not segment or segment in {".", ".."}:
        raise ValueError(f"{value!r} contains no filesystem-safe characters")
    return segment


def unit_path(unit_id: str) -> Path:
    """``app.math/add`` -> ``app/math/add``."""
    module, _, name = unit_id.partition("/")
    if not module or not name:
        raise ValueError(f"unit id must look like 'module/name', got: {unit_id!r}")
    return Path(*(safe_segment(part) for part in module.split(".")), safe_segment(name))
