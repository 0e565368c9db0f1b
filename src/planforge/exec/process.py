from __future__ import annotations

import asyncio
import logging
import os
import signal as signal_mod
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Protocol

from planforge.exec.capture import OutputBuffer, stream_to_file
from planforge.util.fs import append_text_best_effort

logger = logging.getLogger(__name__)

POLL_INTERVAL_SEC = 0.1
TERMINATE_GRACE_SEC = 1.0


@dataclass(slots=True)
class ProcessResult:
    exit_code: int | None
    stdout: str = ""
    stderr: str = ""
    pid: int | None = None
    timed_out: bool = False
    canceled: bool = False
    signal: str | None = None
    start_failed: bool = False

    @property
    def success(self) -> bool:
        return (
            self.exit_code == 0
            and not self.timed_out
            and not self.canceled
            and not self.start_failed
        )


class ProcessSpawner(Protocol):
    async def run(
        self,
        argv: Sequence[str],
        *,
        cwd: Path,
        env: Mapping[str, str] | None = None,
        timeout_ms: int | None = None,
        cancel_event: asyncio.Event | None = None,
        on_pid: Callable[[int], None] | None = None,
        log_path: Path | None = None,
    ) -> ProcessResult: ...


class ProcessTable(Protocol):
    def is_alive(self, pid: int) -> bool: ...


class OsProcessTable:
    def is_alive(self, pid: int) -> bool:
        if pid <= 0:
            return False
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            return True
        except OSError:
            return False
        return True


def _signal_name(returncode: int | None) -> str | None:
    if returncode is None or returncode >= 0:
        return None
    try:
        return signal_mod.Signals(-returncode).name
    except ValueError:
        return f"SIG{-returncode}"


async def _stop(proc: asyncio.subprocess.Process) -> None:
    proc.terminate()
    try:
        await asyncio.wait_for(proc.wait(), timeout=TERMINATE_GRACE_SEC)
    except TimeoutError:
        proc.kill()
        await proc.wait()


class SubprocessSpawner:
    """Runs argv with output teed to the attempt log; polls for cancel and timeout."""

    async def run(
        self,
        argv: Sequence[str],
        *,
        cwd: Path,
        env: Mapping[str, str] | None = None,
        timeout_ms: int | None = None,
        cancel_event: asyncio.Event | None = None,
        on_pid: Callable[[int], None] | None = None,
        log_path: Path | None = None,
    ) -> ProcessResult:
        merged_env = os.environ.copy()
        if env:
            merged_env.update(env)
        started = datetime.now().astimezone()
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                cwd=str(cwd),
                env=merged_env,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except (OSError, ValueError) as exc:
            if log_path is not None:
                append_text_best_effort(log_path, f"failed to start process: {exc}\n")
            return ProcessResult(
                exit_code=127,
                stderr=f"failed to start process: {exc}",
                start_failed=True,
            )

        logger.debug("spawned pid=%s argv=%s", proc.pid, argv[0])
        if on_pid is not None:
            on_pid(proc.pid)
        out_buf = OutputBuffer()
        err_buf = OutputBuffer()
        out_stream = asyncio.create_task(stream_to_file(proc.stdout, log_path, out_buf))
        err_stream = asyncio.create_task(stream_to_file(proc.stderr, log_path, err_buf))
        timed_out = False
        canceled = False
        exit_code: int | None = None

        while True:
            if proc.returncode is not None:
                exit_code = proc.returncode
                break
            if cancel_event is not None and cancel_event.is_set():
                canceled = True
                await _stop(proc)
                exit_code = proc.returncode
                break
            if timeout_ms is not None:
                elapsed = (datetime.now().astimezone() - started).total_seconds()
                if elapsed * 1000 > timeout_ms:
                    timed_out = True
                    await _stop(proc)
                    exit_code = None
                    break
            await asyncio.sleep(POLL_INTERVAL_SEC)

        await asyncio.gather(out_stream, err_stream, return_exceptions=True)
        return ProcessResult(
            exit_code=exit_code,
            stdout=out_buf.text(),
            stderr=err_buf.text(),
            pid=proc.pid,
            timed_out=timed_out,
            canceled=canceled,
            signal=_signal_name(proc.returncode) if not (timed_out or canceled) else None,
        )
