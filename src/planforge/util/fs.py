"""Filesystem helpers shared by the store, the capacity registry and log writers."""

from __future__ import annotations

import errno
import json
import os
import stat
from collections import deque
from contextlib import suppress
from pathlib import Path

from planforge.util.errors import StoreError


def is_symlink_path(path: Path, *, fail_closed: bool = True) -> bool:
    try:
        return path.is_symlink()
    except FileNotFoundError:
        return False
    except (OSError, RuntimeError):
        return fail_closed


def has_symlink_ancestor(path: Path) -> bool:
    current = path.parent
    while True:
        try:
            meta = current.lstat()
        except FileNotFoundError:
            pass
        except (OSError, RuntimeError):
            return True
        else:
            if stat.S_ISLNK(meta.st_mode):
                return True
        if current == current.parent:
            return False
        current = current.parent


def ensure_directory(path: Path) -> None:
    if is_symlink_path(path):
        raise OSError(f"path must not be symlink: {path}")
    try:
        path.mkdir(parents=True, exist_ok=True)
    except (OSError, RuntimeError) as exc:
        raise OSError(f"failed to create directory path: {path}") from exc
    if not path.is_dir():
        raise OSError(f"path must be directory: {path}")


def fsync_directory(path: Path) -> None:
    try:
        fd = os.open(str(path), os.O_RDONLY)
    except OSError:
        return
    try:
        os.fsync(fd)
    except OSError:
        pass
    finally:
        with suppress(OSError):
            os.close(fd)


def write_text_atomic(path: Path, payload: str, *, tmp_name: str | None = None) -> None:
    """Write through a temp file and rename it over the destination.

    Readers observe either the previous content or the new content, never a
    partial write. Text is UTF-8 without a byte-order mark.
    """
    tmp_path = path.with_name(tmp_name or f".{path.name}.tmp")
    flags = os.O_WRONLY | os.O_CREAT | os.O_TRUNC
    if hasattr(os, "O_NOFOLLOW"):
        flags |= os.O_NOFOLLOW
    try:
        fd = os.open(str(tmp_path), flags, 0o600)
    except OSError as exc:
        if exc.errno == errno.ELOOP:
            raise OSError(f"temporary path must not be symlink: {tmp_path}") from exc
        raise
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(payload)
            f.flush()
            os.fsync(f.fileno())
    except OSError:
        with suppress(OSError):
            tmp_path.unlink(missing_ok=True)
        raise
    try:
        os.replace(tmp_path, path)
    except OSError:
        with suppress(OSError):
            tmp_path.unlink(missing_ok=True)
        raise
    fsync_directory(path.parent)


def write_json_atomic(path: Path, data: object, *, tmp_name: str | None = None) -> None:
    payload = json.dumps(data, ensure_ascii=False, indent=2, sort_keys=True)
    write_text_atomic(path, payload + "\n", tmp_name=tmp_name)


def read_json(path: Path) -> object:
    """Read a JSON document; missing file raises FileNotFoundError, bad content StoreError."""
    if has_symlink_ancestor(path) or is_symlink_path(path):
        raise StoreError(f"path must not be symlink: {path}")
    try:
        with path.open("r", encoding="utf-8-sig") as f:
            return json.loads(f.read())
    except FileNotFoundError:
        raise
    except UnicodeError as exc:
        raise StoreError(f"failed to decode file as utf-8: {path}") from exc
    except json.JSONDecodeError as exc:
        raise StoreError(f"invalid json: {path}") from exc
    except OSError as exc:
        raise StoreError(f"failed to read file: {path}") from exc


def append_text_best_effort(path: Path, text: str) -> None:
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("a", encoding="utf-8") as f:
            f.write(text)
    except OSError:
        return


def tail_lines(path: Path, n: int) -> list[str]:
    """Read last N lines without loading the full file in memory."""
    if n <= 0 or is_symlink_path(path) or has_symlink_ancestor(path):
        return []
    flags = os.O_RDONLY
    if hasattr(os, "O_NONBLOCK"):
        flags |= os.O_NONBLOCK
    if hasattr(os, "O_NOFOLLOW"):
        flags |= os.O_NOFOLLOW
    fd: int | None = None
    try:
        fd = os.open(str(path), flags)
        opened_meta = os.fstat(fd)
        if not stat.S_ISREG(opened_meta.st_mode):
            return []
        with os.fdopen(fd, "r", encoding="utf-8", errors="replace") as f:
            fd = None
            return [line.rstrip("\n") for line in deque(f, maxlen=n)]
    except OSError:
        return []
    finally:
        if fd is not None:
            with suppress(OSError):
                os.close(fd)
