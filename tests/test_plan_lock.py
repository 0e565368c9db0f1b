from __future__ import annotations

import os
import threading
import time
from pathlib import Path

import pytest

from planforge.exec.cancel import (
    clear_request,
    request_path,
    request_pending,
    take_request,
    write_request,
)
from planforge.store.lock import file_lock, plan_lock, plan_lock_held
from planforge.util.errors import RunConflictError


def _plan_dir(tmp_path: Path) -> Path:
    plan_dir = tmp_path / "plan"
    plan_dir.mkdir()
    return plan_dir


def test_plan_lock_creates_and_releases_lock_file(tmp_path: Path) -> None:
    plan_dir = _plan_dir(tmp_path)
    lock_path = plan_dir / ".lock"

    with plan_lock(plan_dir):
        assert lock_path.read_text(encoding="utf-8") == str(os.getpid())
        assert plan_lock_held(plan_dir)
    assert not lock_path.exists()
    assert not plan_lock_held(plan_dir)


def test_plan_lock_conflicts_with_live_holder(tmp_path: Path) -> None:
    plan_dir = _plan_dir(tmp_path)
    with plan_lock(plan_dir):
        with pytest.raises(RunConflictError, match="locked by another process"):
            with plan_lock(plan_dir):
                pass
    assert not (plan_dir / ".lock").exists()


def test_file_lock_takes_over_old_lock(tmp_path: Path) -> None:
    lock_path = _plan_dir(tmp_path) / ".lock"
    lock_path.write_text("stale-lock", encoding="utf-8")
    old = time.time() - 120
    os.utime(lock_path, (old, old))

    with file_lock(lock_path, stale_sec=1):
        assert lock_path.read_text(encoding="utf-8") == str(os.getpid())
    assert not lock_path.exists()


def test_file_lock_takes_over_lock_of_dead_pid(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    lock_path = _plan_dir(tmp_path) / ".lock"
    lock_path.write_text("999999", encoding="utf-8")
    original_kill = os.kill

    def fake_kill(pid: int, sig: int) -> None:
        if pid == 999999:
            raise ProcessLookupError(pid)
        original_kill(pid, sig)

    monkeypatch.setattr(os, "kill", fake_kill)

    assert not plan_lock_held(lock_path.parent)
    with file_lock(lock_path):
        assert lock_path.exists()


def test_file_lock_gives_up_when_stale_lock_cannot_be_removed(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    lock_path = _plan_dir(tmp_path) / ".lock"
    lock_path.write_text("stale-lock", encoding="utf-8")
    old = time.time() - 120
    os.utime(lock_path, (old, old))
    original_unlink = Path.unlink

    def deny_unlink(path_obj: Path, *args: object, **kwargs: object) -> None:
        if path_obj == lock_path:
            raise PermissionError("simulated unlink denied")
        original_unlink(path_obj, *args, **kwargs)

    monkeypatch.setattr(Path, "unlink", deny_unlink)

    with pytest.raises(RunConflictError), file_lock(lock_path, stale_sec=1):
        pass


def test_file_lock_acquires_after_retry_when_holder_leaves(tmp_path: Path) -> None:
    plan_dir = _plan_dir(tmp_path)
    lock_path = plan_dir / ".lock"
    lock_path.write_text("holder", encoding="utf-8")

    timer = threading.Timer(0.15, lambda: lock_path.unlink(missing_ok=True))
    timer.start()
    try:
        with plan_lock(plan_dir, retries=20, retry_interval=0.05):
            assert lock_path.exists()
    finally:
        timer.cancel()


def test_file_lock_releases_on_error_and_keeps_foreign_lock(tmp_path: Path) -> None:
    lock_path = _plan_dir(tmp_path) / ".lock"
    with pytest.raises(RuntimeError), file_lock(lock_path):
        raise RuntimeError("boom")
    assert not lock_path.exists()

    with file_lock(lock_path):
        lock_path.unlink()
        lock_path.write_text("foreign-holder", encoding="utf-8")
    assert lock_path.read_text(encoding="utf-8") == "foreign-holder"


def test_file_lock_removes_lock_when_pid_write_fails(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    lock_path = _plan_dir(tmp_path) / ".lock"
    original_write = os.write
    failed_once = False

    def flaky_write(fd: int, data: bytes) -> int:
        nonlocal failed_once
        if not failed_once:
            failed_once = True
            raise OSError("simulated write failure")
        return original_write(fd, data)

    monkeypatch.setattr(os, "write", flaky_write)

    with pytest.raises(OSError, match="simulated write failure"), file_lock(lock_path):
        pass
    assert not lock_path.exists()


def test_file_lock_rejects_symlinks(tmp_path: Path) -> None:
    plan_dir = _plan_dir(tmp_path)
    outside = tmp_path / "outside_lock"
    outside.write_text("outside\n", encoding="utf-8")
    (plan_dir / ".lock").symlink_to(outside)
    link_parent = tmp_path / "link_parent"
    link_parent.symlink_to(plan_dir, target_is_directory=True)

    with pytest.raises(OSError, match="lock path must not be symlink"), plan_lock(plan_dir):
        pass
    with pytest.raises(OSError, match="symlink component"), plan_lock(link_parent):
        pass
    assert outside.read_text(encoding="utf-8") == "outside\n"


def test_requests_are_written_and_consumed_once(tmp_path: Path) -> None:
    plan_dir = _plan_dir(tmp_path)
    assert not request_pending(plan_dir, "pause")

    write_request(plan_dir, "pause")
    write_request(plan_dir, "cancel")
    assert request_path(plan_dir, "pause").read_text(encoding="utf-8") == "pause requested\n"
    assert take_request(plan_dir, "pause") is True
    assert take_request(plan_dir, "pause") is False
    assert request_pending(plan_dir, "cancel")

    clear_request(plan_dir, "cancel")
    clear_request(plan_dir, "resume")
    assert not request_pending(plan_dir, "cancel")


def test_write_request_refuses_symlink_and_directory(tmp_path: Path) -> None:
    plan_dir = _plan_dir(tmp_path)
    outside = tmp_path / "outside"
    outside.write_text("keep\n", encoding="utf-8")
    request_path(plan_dir, "cancel").symlink_to(outside)
    request_path(plan_dir, "pause").mkdir()

    with pytest.raises(OSError, match="cancel request path must not be symlink"):
        write_request(plan_dir, "cancel")
    with pytest.raises(OSError, match="pause request path must be regular file"):
        write_request(plan_dir, "pause")
    assert outside.read_text(encoding="utf-8") == "keep\n"
    assert not request_pending(plan_dir, "cancel")

    clear_request(plan_dir, "pause")
    assert request_path(plan_dir, "pause").is_dir()
