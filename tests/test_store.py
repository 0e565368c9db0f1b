from __future__ import annotations

import json
from pathlib import Path

import pytest

from fakes import make_plan, node_id
from planforge.config.loader import parse_plan
from planforge.state.machine import PlanStateMachine
from planforge.store.fs_store import FileSystemPlanStore
from planforge.store.repository import PlanRepository
from planforge.util.errors import PlanNotFoundError, StoreError
from planforge.work.spec import AgentSpec, ShellSpec

_PLAN = {
    "name": "store",
    "max_parallel": 2,
    "jobs": [
        {"producer_id": "build", "work": "make", "postchecks": "make test"},
        {
            "producer_id": "docs",
            "work": "@agent write the changelog",
            "dependencies": ["build"],
            "group": "backend/api",
        },
    ],
}


def _repository(tmp_path: Path) -> tuple[PlanRepository, FileSystemPlanStore]:
    store = FileSystemPlanStore(tmp_path / "store")
    return PlanRepository(store), store


def test_create_writes_metadata_and_specs(tmp_path: Path) -> None:
    plan = make_plan(tmp_path, _PLAN)
    store = FileSystemPlanStore(tmp_path / "store")
    build, docs = node_id(plan, "build"), node_id(plan, "docs")

    assert store.exists(plan.id)
    assert plan.roots == [build]
    assert plan.leaves == [docs]
    assert plan.node_states[build].status == "ready"
    assert plan.node_states[docs].status == "pending"
    assert plan.target_branch == "main"
    assert plan.worktree_root == str((tmp_path / "repo").resolve() / ".worktrees")
    assert [entry.reason for entry in plan.state_history] == ["created"]

    assert store.read_node_spec(plan.id, build, "postchecks") == ShellSpec(command="make test")
    assert store.read_node_spec(plan.id, build, "prechecks") is None
    spec_file = store.draft_dir(plan.id, docs) / "work.json"
    stored = json.loads(spec_file.read_text(encoding="utf-8"))
    assert "instructions" not in stored
    assert stored["instructions_ref"] == "work_instructions.md"
    companion = spec_file.parent / "work_instructions.md"
    assert companion.read_text(encoding="utf-8") == "write the changelog"


def test_missing_instructions_file_keeps_the_reference(tmp_path: Path) -> None:
    plan = make_plan(tmp_path, _PLAN)
    store = FileSystemPlanStore(tmp_path / "store")
    docs = node_id(plan, "docs")
    (store.draft_dir(plan.id, docs) / "work_instructions.md").unlink()

    spec = store.read_node_spec(plan.id, docs, "work")

    assert isinstance(spec, AgentSpec)
    assert spec.instructions_file == "work_instructions.md"
    assert spec.instructions == ""


def test_load_rebuilds_the_same_plan(tmp_path: Path) -> None:
    created = make_plan(tmp_path, _PLAN)
    repository, _ = _repository(tmp_path)

    loaded = repository.load(created.id)
    docs = node_id(created, "docs")
    assert loaded.nodes.keys() == created.nodes.keys()
    assert loaded.nodes[docs].dependencies == [node_id(created, "build")]
    assert loaded.nodes[docs].dependents == []
    assert isinstance(loaded.nodes[docs].work, AgentSpec)
    assert loaded.nodes[docs].work.instructions == "write the changelog"
    assert loaded.max_parallel == 2
    assert loaded.group_path_to_id.keys() == {"backend", "backend/api"}
    api = loaded.groups[loaded.group_path_to_id["backend/api"]]
    assert api.parent_group_id == loaded.group_path_to_id["backend"]
    assert loaded.nodes[docs].group_id == api.id


def test_save_sync_persists_state_changes(tmp_path: Path) -> None:
    plan = make_plan(tmp_path, _PLAN)
    repository, _ = _repository(tmp_path)
    build = node_id(plan, "build")
    sm = PlanStateMachine(plan)
    sm.transition(build, "scheduled")
    sm.transition(build, "running")
    repository.save_sync(plan)

    reloaded = repository.load(plan.id)
    assert reloaded.node_states[build].status == "running"
    assert reloaded.state_version == plan.state_version
    assert reloaded.nodes[build].postchecks == ShellSpec(command="make test")


@pytest.mark.asyncio
async def test_save_keeps_specs_missing_from_memory(tmp_path: Path) -> None:
    plan = make_plan(tmp_path, _PLAN)
    repository, _ = _repository(tmp_path)
    build = node_id(plan, "build")
    plan.nodes[build].postchecks = None

    await repository.save(plan)

    assert repository.load(plan.id).nodes[build].postchecks == ShellSpec(command="make test")


def test_snapshot_freezes_each_attempt(tmp_path: Path) -> None:
    plan = make_plan(tmp_path, _PLAN)
    store = FileSystemPlanStore(tmp_path / "store")
    build = node_id(plan, "build")

    first = store.snapshot_specs_for_attempt(plan.id, build, 1)
    assert store.current_attempt(plan.id, build) == 1
    assert not store.draft_dir(plan.id, build).exists()
    assert (first / "work.json").is_file()

    store.write_node_spec(plan.id, build, "work", ShellSpec(command="make -j4"))
    store.delete_node_spec(plan.id, build, "postchecks")
    assert store.read_node_spec(plan.id, build, "work") == ShellSpec(command="make -j4")
    assert not store.has_node_spec(plan.id, build, "postchecks")

    second = store.snapshot_specs_for_attempt(plan.id, build, 2)
    assert store.current_attempt(plan.id, build) == 2
    assert not (second / "postchecks.json").exists()
    assert store.read_node_spec_for_attempt(plan.id, build, "work", 1) == ShellSpec(
        command="make"
    )
    assert store.read_node_spec_for_attempt(plan.id, build, "work", 2) == ShellSpec(
        command="make -j4"
    )
    assert store.read_node_spec_for_attempt(plan.id, build, "postchecks", 1) == ShellSpec(
        command="make test"
    )

    with pytest.raises(ValueError):
        store.snapshot_specs_for_attempt(plan.id, build, 0)


def test_corrupt_spec_pointer_is_a_store_error(tmp_path: Path) -> None:
    plan = make_plan(tmp_path, _PLAN)
    store = FileSystemPlanStore(tmp_path / "store")
    build = node_id(plan, "build")
    store.snapshot_specs_for_attempt(plan.id, build, 1)
    (store.node_spec_root(plan.id, build) / "current").write_text("latest", encoding="utf-8")

    with pytest.raises(StoreError, match="invalid spec pointer"):
        store.read_node_spec(plan.id, build, "work")


def test_delete_tombstones_and_removes_plan(tmp_path: Path) -> None:
    plan = make_plan(tmp_path, _PLAN)
    repository, store = _repository(tmp_path)

    repository.delete(plan.id)

    assert not store.plan_dir(plan.id).exists()
    assert repository.list_plans() == []
    with pytest.raises(PlanNotFoundError):
        repository.load(plan.id)


def test_tombstoned_plan_is_not_loaded(tmp_path: Path) -> None:
    plan = make_plan(tmp_path, _PLAN)
    repository, store = _repository(tmp_path)
    metadata = store.read_plan_metadata(plan.id)
    assert metadata is not None
    metadata.deleted = True
    store.write_plan_metadata(metadata)

    with pytest.raises(PlanNotFoundError):
        repository.load(plan.id)
    with pytest.raises(PlanNotFoundError):
        repository.definition(plan.id)
    assert repository.list_plans() == []


def test_list_plans_skips_unreadable_plans(tmp_path: Path) -> None:
    plan = make_plan(tmp_path, _PLAN)
    repository, store = _repository(tmp_path)
    broken = store.root / "broken"
    broken.mkdir()
    (broken / "plan.json").write_text("{oops", encoding="utf-8")

    assert [meta.id for meta in repository.list_plans()] == [plan.id]


def test_definition_reads_specs_by_node_and_producer(tmp_path: Path) -> None:
    plan = make_plan(tmp_path, {**_PLAN, "verify_ri": "make verify"})
    repository, _ = _repository(tmp_path)
    definition = repository.definition(plan.id)
    build = node_id(plan, "build")

    assert definition.name == "store"
    assert set(definition.node_ids) == set(plan.nodes)
    job = definition.get_node_by_producer_id("docs")
    assert job is not None
    assert definition.get_dependencies(job.id) == [build]
    assert definition.get_work_spec(build) == ShellSpec(command="make")
    assert definition.get_prechecks_spec(build) is None
    assert definition.get_verify_spec() == ShellSpec(command="make verify")


def test_duplicate_plan_id_is_refused(tmp_path: Path) -> None:
    repository, _ = _repository(tmp_path)
    repo = tmp_path / "repo"
    repo.mkdir()
    repository.create_from_file_spec(parse_plan(_PLAN), repo, plan_id="fixed")
    with pytest.raises(StoreError, match="already exists"):
        repository.create_from_file_spec(parse_plan(_PLAN), repo, plan_id="fixed")


def test_invalid_ids_never_reach_the_filesystem(tmp_path: Path) -> None:
    store = FileSystemPlanStore(tmp_path / "store")
    with pytest.raises(StoreError, match="invalid plan id"):
        store.plan_dir("../escape")
    with pytest.raises(StoreError, match="invalid node id"):
        store.node_spec_root("plan", "a/b")


def test_legacy_single_file_plan_is_migrated(tmp_path: Path) -> None:
    repository, store = _repository(tmp_path)
    store.root.mkdir(parents=True)
    legacy = {
        "id": "old1",
        "spec": {
            "name": "legacy",
            "jobs": [{"producer_id": "lint", "prechecks": "ruff --version"}],
        },
        "repo_path": str(tmp_path / "repo"),
        "base_branch": "main",
        "worktree_root": str(tmp_path / "repo" / ".worktrees"),
        "created_at": "2026-01-01T00:00:00+00:00",
        "nodes": [
            {"id": "n1", "producer_id": "lint", "task": "lint", "work": "ruff check ."},
            {
                "id": "n2",
                "producer_id": "fix",
                "work": {"type": "agent", "instructions": "fix findings"},
                "dependencies": ["n1"],
            },
        ],
        "node_states": {
            "n1": {
                "status": "succeeded",
                "attempt_history": [
                    {"attempt_number": 1, "trigger_type": "initial", "status": "succeeded"}
                ],
            },
            "n2": {"status": "ready"},
        },
    }
    store.legacy_path("old1").write_text(json.dumps(legacy), encoding="utf-8")

    assert store.list_plan_ids() == ["old1"]
    assert repository.migrate_all_legacy() == ["old1"]
    assert not store.legacy_path("old1").exists()

    plan = repository.load("old1")
    assert plan.name == "legacy"
    assert plan.nodes["n1"].work == ShellSpec(command="ruff check .")
    assert plan.nodes["n1"].prechecks == ShellSpec(command="ruff --version")
    assert plan.nodes["n2"].dependencies == ["n1"]
    assert plan.node_states["n1"].status == "succeeded"
    assert store.current_attempt("old1", "n1") == 1
    assert store.read_node_spec_for_attempt("old1", "n1", "work", 1) == ShellSpec(
        command="ruff check ."
    )
