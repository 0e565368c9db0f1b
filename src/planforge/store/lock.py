from __future__ import annotations

import errno
import os
import stat
import time
from collections.abc import Iterator
from contextlib import contextmanager, suppress
from pathlib import Path

from planforge.util.errors import RunConflictError
from planforge.util.fs import has_symlink_ancestor, is_symlink_path


def _lock_owner_alive(lock_path: Path) -> bool:
    try:
        raw = lock_path.read_text(encoding="utf-8").strip()
    except (OSError, UnicodeError):
        return True
    if not raw.isdigit():
        return True
    pid = int(raw)
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError:
        return True
    return True


def _remove_stale(lock_path: Path) -> bool:
    try:
        lock_path.unlink(missing_ok=True)
    except OSError:
        return False
    return True


@contextmanager
def file_lock(
    lock_path: Path,
    stale_sec: float = 3600,
    *,
    retries: int = 0,
    retry_interval: float = 0.2,
) -> Iterator[None]:
    """Hold an advisory O_EXCL lock file for the duration of the block.

    The file records the owner pid. A lock older than ``stale_sec`` or whose
    owner pid is gone is taken over.
    """
    if has_symlink_ancestor(lock_path):
        raise OSError(f"lock path contains symlink component: {lock_path}")
    open_flags = os.O_CREAT | os.O_EXCL | os.O_WRONLY
    if hasattr(os, "O_NOFOLLOW"):
        open_flags |= os.O_NOFOLLOW
    lock_inode: int | None = None
    lock_dev: int | None = None

    def _is_stale() -> bool:
        try:
            lock_meta = lock_path.lstat()
        except (OSError, RuntimeError):
            return False
        if stat.S_ISLNK(lock_meta.st_mode) or not stat.S_ISREG(lock_meta.st_mode):
            return False
        if time.time() - lock_meta.st_mtime > stale_sec:
            return True
        return not _lock_owner_alive(lock_path)

    attempt = 0
    while True:
        if is_symlink_path(lock_path):
            raise OSError(f"lock path must not be symlink: {lock_path}")
        try:
            fd = os.open(lock_path, open_flags, 0o600)
        except FileExistsError as err:
            if _is_stale() and _remove_stale(lock_path):
                continue
            if attempt >= retries:
                raise RunConflictError(f"locked by another process: {lock_path}") from err
            attempt += 1
            time.sleep(retry_interval)
            continue
        except OSError as err:
            if err.errno == errno.ELOOP:
                raise OSError(f"lock path must not be symlink: {lock_path}") from err
            raise
        try:
            meta = os.fstat(fd)
            os.write(fd, str(os.getpid()).encode("utf-8"))
            lock_inode = meta.st_ino
            lock_dev = meta.st_dev
        except OSError:
            with suppress(OSError):
                lock_path.unlink(missing_ok=True)
            raise
        finally:
            with suppress(OSError):
                os.close(fd)
        break

    try:
        yield
    finally:
        current: os.stat_result | None
        try:
            current = lock_path.lstat()
        except (OSError, RuntimeError):
            current = None
        if (
            current is not None
            and stat.S_ISREG(current.st_mode)
            and current.st_ino == lock_inode
            and current.st_dev == lock_dev
        ):
            with suppress(OSError, RuntimeError):
                lock_path.unlink(missing_ok=True)


def plan_lock(plan_dir: Path, *, retries: int = 0, retry_interval: float = 0.2):
    """Lock held by the process that drives a plan's execution."""
    return file_lock(plan_dir / ".lock", retries=retries, retry_interval=retry_interval)


def plan_lock_held(plan_dir: Path) -> bool:
    lock_path = plan_dir / ".lock"
    if not lock_path.is_file():
        return False
    return _lock_owner_alive(lock_path)
