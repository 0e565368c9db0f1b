from __future__ import annotations

import asyncio


async def communicate_with_timeout(
    proc: asyncio.subprocess.Process, timeout_sec: float | None
) -> tuple[bool, int | None, bytes, bytes]:
    """Collect output; on timeout terminate, then kill after a 1s grace period."""
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout_sec)
        return False, proc.returncode, stdout or b"", stderr or b""
    except TimeoutError:
        proc.terminate()
        try:
            await asyncio.wait_for(proc.wait(), timeout=1.0)
        except TimeoutError:
            proc.kill()
            await proc.wait()
        return True, None, b"", b""
