from __future__ import annotations

import asyncio
import os
import stat
from contextlib import suppress
from pathlib import Path

from planforge.util.fs import has_symlink_ancestor, is_symlink_path

CAPTURE_LIMIT_BYTES = 1024 * 1024


class OutputBuffer:
    """Keeps the last ``limit`` bytes of a stream for the process result."""

    def __init__(self, limit: int = CAPTURE_LIMIT_BYTES) -> None:
        self._limit = limit
        self._data = bytearray()

    def feed(self, chunk: bytes) -> None:
        self._data.extend(chunk)
        if len(self._data) > self._limit:
            del self._data[: len(self._data) - self._limit]

    def text(self) -> str:
        return self._data.decode("utf-8", errors="replace")


def _open_log(file_path: Path) -> int | None:
    if has_symlink_ancestor(file_path):
        return None
    try:
        file_path.parent.mkdir(parents=True, exist_ok=True)
    except (OSError, RuntimeError):
        return None
    if is_symlink_path(file_path.parent) or is_symlink_path(file_path):
        return None

    flags = os.O_WRONLY | os.O_CREAT | os.O_APPEND
    if hasattr(os, "O_NONBLOCK"):
        flags |= os.O_NONBLOCK
    if hasattr(os, "O_NOFOLLOW"):
        flags |= os.O_NOFOLLOW
    fd: int | None = None
    try:
        fd = os.open(str(file_path), flags, 0o600)
        opened_meta = os.fstat(fd)
        if not stat.S_ISREG(opened_meta.st_mode):
            with suppress(OSError, RuntimeError):
                os.close(fd)
            return None
    except (OSError, RuntimeError):
        if fd is not None:
            with suppress(OSError, RuntimeError):
                os.close(fd)
        return None
    return fd


async def stream_to_file(
    stream: asyncio.StreamReader | None,
    file_path: Path | None,
    buffer: OutputBuffer | None = None,
) -> None:
    """Copy a subprocess stream to an append-only log and an in-memory buffer.

    Log write failures stop logging but never stop draining the stream.
    """
    if stream is None:
        return
    fd = _open_log(file_path) if file_path is not None else None
    f = os.fdopen(fd, "ab") if fd is not None else None
    try:
        while True:
            chunk = await stream.read(4096)
            if not chunk:
                break
            if buffer is not None:
                buffer.feed(chunk)
            if f is not None:
                try:
                    f.write(chunk)
                    f.flush()
                except (OSError, RuntimeError):
                    with suppress(OSError, RuntimeError):
                        f.close()
                    f = None
    finally:
        if f is not None:
            with suppress(OSError, RuntimeError):
                f.close()
