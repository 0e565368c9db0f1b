from __future__ import annotations

import json
import re
from pathlib import Path

import pytest
from rich.console import Console
from typer.testing import CliRunner

from planforge import cli
from planforge.exec.cancel import request_path
from planforge.store.fs_store import FileSystemPlanStore
from planforge.store.lock import plan_lock

runner = CliRunner()

PLAN = """
name: demo
jobs:
  - producer_id: lib
    work: make lib
  - producer_id: app
    work: make app
    dependencies: [lib]
"""


def _write_plan(path: Path, content: str) -> Path:
    path.write_text(content.strip() + "\n", encoding="utf-8")
    return path


def _invoke(monkeypatch: pytest.MonkeyPatch, *args: str):
    monkeypatch.setattr(cli, "console", Console(width=200))
    return runner.invoke(cli.app, list(args))


def _extract_plan_id(output: str) -> str:
    match = re.search(r"plan_id:\s*([0-9]{8}_[0-9]{6}_[0-9a-f]{6})", output)
    assert match is not None, output
    return match.group(1)


def _create(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> tuple[Path, str]:
    storage = tmp_path / "store"
    repo = tmp_path / "repo"
    repo.mkdir()
    plan_path = _write_plan(tmp_path / "plan.yaml", PLAN)
    result = _invoke(
        monkeypatch, "create", str(plan_path), "--repo", str(repo), "--storage", str(storage)
    )
    assert result.exit_code == 0, result.output
    assert "jobs: 2" in result.output
    return storage, _extract_plan_id(result.output)


def _status(monkeypatch: pytest.MonkeyPatch, storage: Path, plan_id: str) -> dict:
    result = _invoke(monkeypatch, "status", plan_id, "--storage", str(storage), "--json")
    assert result.exit_code == 0, result.output
    return json.loads(result.output)


def test_dry_run_prints_order(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    plan_path = _write_plan(tmp_path / "plan.yaml", PLAN)
    result = _invoke(monkeypatch, "create", str(plan_path), "--dry-run")

    assert result.exit_code == 0
    assert "Dry Run - demo" in result.output
    assert result.output.index("lib") < result.output.index("app")


def test_invalid_plan_exits_two(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    plan_path = _write_plan(
        tmp_path / "plan.yaml",
        """
        jobs:
          - producer_id: a
            work: x
            dependencies: [b]
          - producer_id: b
            work: y
            dependencies: [a]
        """,
    )
    result = _invoke(monkeypatch, "create", str(plan_path), "--dry-run")
    assert result.exit_code == 2
    assert "Plan validation error" in result.output


def test_create_status_and_list(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    storage, plan_id = _create(monkeypatch, tmp_path)

    summary = _status(monkeypatch, storage, plan_id)
    assert summary["plan"]["id"] == plan_id
    assert summary["plan"]["status"] == "pending"
    assert [row["producer_id"] for row in summary["nodes"]] == ["lib", "app"]

    table = _invoke(monkeypatch, "status", plan_id, "--storage", str(storage))
    assert table.exit_code == 0
    assert "demo" in table.output

    listed = _invoke(monkeypatch, "list", "--storage", str(storage))
    assert listed.exit_code == 0
    assert plan_id in listed.output


def test_pause_resume_cancel_apply_directly(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    storage, plan_id = _create(monkeypatch, tmp_path)

    paused = _invoke(monkeypatch, "pause", plan_id, "--storage", str(storage))
    assert paused.exit_code == 0, paused.output
    assert f"pause: {plan_id}" in paused.output
    assert _status(monkeypatch, storage, plan_id)["plan"]["status"] == "paused"

    resumed = _invoke(monkeypatch, "resume", plan_id, "--storage", str(storage))
    assert resumed.exit_code == 0, resumed.output
    assert _status(monkeypatch, storage, plan_id)["plan"]["started_at"] is not None

    canceled = _invoke(monkeypatch, "cancel", plan_id, "--storage", str(storage))
    assert canceled.exit_code == 0, canceled.output
    assert _status(monkeypatch, storage, plan_id)["plan"]["status"] == "canceled"


def test_pause_while_locked_writes_request(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    storage, plan_id = _create(monkeypatch, tmp_path)
    plan_dir = FileSystemPlanStore(storage).plan_dir(plan_id)

    with plan_lock(plan_dir):
        result = _invoke(monkeypatch, "pause", plan_id, "--storage", str(storage))

    assert result.exit_code == 0, result.output
    assert f"pause requested: {plan_id}" in result.output
    assert request_path(plan_dir, "pause").is_file()


def test_retry_without_failures_exits_two(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    storage, plan_id = _create(monkeypatch, tmp_path)

    result = _invoke(monkeypatch, "retry", plan_id, "--storage", str(storage))
    assert result.exit_code == 2
    assert "No failed nodes to retry" in result.output

    no_node = _invoke(monkeypatch, "retry", plan_id, "--storage", str(storage), "--work", "x")
    assert no_node.exit_code == 2
    assert "need --node" in no_node.output

    ready = _invoke(monkeypatch, "retry", plan_id, "--storage", str(storage), "--node", "lib")
    assert ready.exit_code == 2
    assert "Node is not in failed state: ready" in ready.output


def test_force_fail_requires_running_node(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    storage, plan_id = _create(monkeypatch, tmp_path)

    result = _invoke(monkeypatch, "force-fail", plan_id, "lib", "--storage", str(storage))
    assert result.exit_code == 2
    assert "Node is not running: ready" in result.output

    unknown = _invoke(monkeypatch, "force-fail", plan_id, "nope", "--storage", str(storage))
    assert unknown.exit_code == 2
    assert "Unknown job" in unknown.output


def test_logs_without_attempts(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    storage, plan_id = _create(monkeypatch, tmp_path)
    result = _invoke(monkeypatch, "logs", plan_id, "--storage", str(storage), "--node", "app")
    assert result.exit_code == 0
    assert "(empty)" in result.output


def test_delete_then_status_exits_two(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    storage, plan_id = _create(monkeypatch, tmp_path)

    result = _invoke(monkeypatch, "delete", plan_id, "--storage", str(storage), "--yes")
    assert result.exit_code == 0, result.output
    assert f"deleted: {plan_id}" in result.output

    missing = _invoke(monkeypatch, "status", plan_id, "--storage", str(storage))
    assert missing.exit_code == 2
    assert "Plan not found" in missing.output


def test_invalid_plan_id_is_rejected(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    result = _invoke(monkeypatch, "status", "../escape", "--storage", str(tmp_path))
    assert result.exit_code == 2
    assert "Invalid plan_id" in result.output


@pytest.mark.parametrize(
    ("status", "code"),
    [
        ("succeeded", 0),
        ("paused", 0),
        ("failed", 3),
        ("partial", 3),
        ("canceled", 4),
        ("running", 2),
        (None, 2),
    ],
)
def test_exit_code_for_status(status: str | None, code: int) -> None:
    assert cli._exit_code_for_status(status) == code  # type: ignore[arg-type]
