"""Directory-per-plan storage.

Layout under the storage root::

    <plan_id>/plan.json
    <plan_id>/specs/<node_id>/current            names the active attempt dir
    <plan_id>/specs/<node_id>/attempts/<n>/<phase>.json
    <plan_id>/specs/<node_id>/attempts/<n>/<phase>_instructions.md
    <plan_id>/specs/<node_id>/draft/<phase>.json  pending edits, folded in by the next snapshot
    <plan_id>/logs/<node_id>/attempt-<n>.log
    plan-<plan_id>.json                           legacy single-file plans

Attempt directories are immutable once a later attempt has been snapshotted.
Spec writes always land in ``draft/``; reads see the draft first, then the
active attempt.
"""

from __future__ import annotations

import logging
import re
import shutil
from contextlib import suppress
from pathlib import Path

from planforge.store.metadata import StoredJobMetadata, StoredPlanMetadata
from planforge.util.coerce import (
    as_dict,
    as_list_str,
    as_optional_bool,
    as_optional_str,
    as_str,
    pick,
)
from planforge.util.errors import StoreError
from planforge.util.fs import (
    ensure_directory,
    is_symlink_path,
    read_json,
    write_json_atomic,
    write_text_atomic,
)
from planforge.work.spec import (
    AgentSpec,
    WorkSpec,
    normalize_work_spec,
    work_spec_from_dict,
    work_spec_to_dict,
)

logger = logging.getLogger(__name__)

SPEC_PHASES = ("work", "prechecks", "postchecks")
PLAN_FILE = "plan.json"
LEGACY_PREFIX = "plan-"
_PLAN_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


def _check_phase(phase: str) -> None:
    if phase not in SPEC_PHASES:
        raise ValueError(f"unknown spec phase: {phase}")


def _check_id(value: str, kind: str) -> None:
    if not _PLAN_ID_RE.fullmatch(value) or value in {".", ".."}:
        raise StoreError(f"invalid {kind}: {value!r}")


class FileSystemPlanStore:
    def __init__(self, root: Path) -> None:
        self.root = root

    # paths

    def plan_dir(self, plan_id: str) -> Path:
        _check_id(plan_id, "plan id")
        return self.root / plan_id

    def metadata_path(self, plan_id: str) -> Path:
        return self.plan_dir(plan_id) / PLAN_FILE

    def legacy_path(self, plan_id: str) -> Path:
        _check_id(plan_id, "plan id")
        return self.root / f"{LEGACY_PREFIX}{plan_id}.json"

    def node_spec_root(self, plan_id: str, node_id: str) -> Path:
        _check_id(node_id, "node id")
        return self.plan_dir(plan_id) / "specs" / node_id

    def attempt_dir(self, plan_id: str, node_id: str, attempt_number: int) -> Path:
        return self.node_spec_root(plan_id, node_id) / "attempts" / str(attempt_number)

    def draft_dir(self, plan_id: str, node_id: str) -> Path:
        return self.node_spec_root(plan_id, node_id) / "draft"

    def log_path(self, plan_id: str, node_id: str, attempt_number: int) -> Path:
        _check_id(node_id, "node id")
        return self.plan_dir(plan_id) / "logs" / node_id / f"attempt-{attempt_number}.log"

    def logs_dir(self, plan_id: str) -> Path:
        return self.plan_dir(plan_id) / "logs"

    def current_dir(self, plan_id: str, node_id: str) -> Path | None:
        pointer = self.node_spec_root(plan_id, node_id) / "current"
        try:
            name = pointer.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return None
        except (OSError, UnicodeError) as exc:
            raise StoreError(f"failed to read spec pointer: {pointer}") from exc
        if not name.isdigit():
            raise StoreError(f"invalid spec pointer: {pointer}")
        return self.attempt_dir(plan_id, node_id, int(name))

    def current_attempt(self, plan_id: str, node_id: str) -> int | None:
        current = self.current_dir(plan_id, node_id)
        return int(current.name) if current is not None else None

    # metadata

    def read_plan_metadata(self, plan_id: str) -> StoredPlanMetadata | None:
        try:
            raw = read_json(self.metadata_path(plan_id))
        except FileNotFoundError:
            return None
        if not isinstance(raw, dict):
            raise StoreError(f"plan metadata must be an object: {plan_id}")
        return StoredPlanMetadata.from_dict(as_dict(raw))

    def write_plan_metadata(self, metadata: StoredPlanMetadata) -> None:
        plan_dir = self.plan_dir(metadata.id)
        ensure_directory(plan_dir)
        write_json_atomic(plan_dir / PLAN_FILE, metadata.to_dict(), tmp_name=".plan.json.tmp")

    def write_plan_metadata_sync(self, metadata: StoredPlanMetadata) -> None:
        """Same as write_plan_metadata, for teardown paths; errors are logged and swallowed."""
        try:
            self.write_plan_metadata(metadata)
        except (OSError, StoreError) as exc:
            logger.error("failed to write plan metadata plan=%s error=%s", metadata.id, exc)

    # node specs

    def _resolve_spec_file(self, plan_id: str, node_id: str, phase: str) -> Path | None:
        draft = self.draft_dir(plan_id, node_id) / f"{phase}.json"
        if draft.is_file():
            return draft
        current = self.current_dir(plan_id, node_id)
        if current is not None:
            candidate = current / f"{phase}.json"
            if candidate.is_file():
                return candidate
        return None

    def _read_spec_file(self, spec_file: Path) -> WorkSpec | None:
        raw = read_json(spec_file)
        if raw is None:
            return None
        if isinstance(raw, str):
            return normalize_work_spec(raw)
        if not isinstance(raw, dict):
            raise StoreError(f"spec must be an object: {spec_file}")
        data = as_dict(raw)
        ref = data.pop("instructions_ref", None)
        if data.get("type") == "agent" and isinstance(ref, str):
            companion = spec_file.parent / ref
            try:
                data["instructions"] = companion.read_text(encoding="utf-8")
            except (OSError, UnicodeError):
                # Leave the reference unresolved rather than run generic instructions.
                logger.warning("agent instructions file missing: %s", companion)
                data.pop("instructions", None)
                data.setdefault("instructions_file", ref)
        return work_spec_from_dict(data)

    def read_node_spec(self, plan_id: str, node_id: str, phase: str) -> WorkSpec | None:
        _check_phase(phase)
        spec_file = self._resolve_spec_file(plan_id, node_id, phase)
        if spec_file is None:
            return None
        try:
            return self._read_spec_file(spec_file)
        except FileNotFoundError:
            return None

    def write_node_spec(self, plan_id: str, node_id: str, phase: str, spec: WorkSpec) -> None:
        _check_phase(phase)
        draft = self.draft_dir(plan_id, node_id)
        ensure_directory(draft)
        self._write_spec_file(draft, phase, spec)

    def _write_spec_file(self, directory: Path, phase: str, spec: WorkSpec) -> None:
        data = work_spec_to_dict(spec)
        if isinstance(spec, AgentSpec):
            companion = f"{phase}_instructions.md"
            write_text_atomic(directory / companion, spec.instructions)
            data.pop("instructions", None)
            data["instructions_ref"] = companion
        write_json_atomic(directory / f"{phase}.json", data)

    def delete_node_spec(self, plan_id: str, node_id: str, phase: str) -> None:
        """Hide a phase spec from the next attempt by writing an empty draft marker."""
        _check_phase(phase)
        draft = self.draft_dir(plan_id, node_id)
        ensure_directory(draft)
        write_json_atomic(draft / f"{phase}.json", None)

    def has_node_spec(self, plan_id: str, node_id: str, phase: str) -> bool:
        _check_phase(phase)
        spec_file = self._resolve_spec_file(plan_id, node_id, phase)
        if spec_file is None:
            return False
        try:
            return read_json(spec_file) is not None
        except (FileNotFoundError, StoreError):
            return False

    def delete_node_specs(self, plan_id: str, node_id: str) -> None:
        shutil.rmtree(self.node_spec_root(plan_id, node_id), ignore_errors=True)

    def snapshot_specs_for_attempt(self, plan_id: str, node_id: str, attempt_number: int) -> Path:
        """Freeze the spec set used by one attempt and make it the active one.

        The new directory starts as a copy of the currently active attempt
        (logs excluded), then pending draft files are moved over it.
        """
        if attempt_number < 1:
            raise ValueError("attempt_number must be >= 1")
        target = self.attempt_dir(plan_id, node_id, attempt_number)
        current = self.current_dir(plan_id, node_id)
        ensure_directory(target)
        if current is not None and current != target and current.is_dir():
            for item in sorted(current.iterdir()):
                if item.suffix == ".log" or not item.is_file() or is_symlink_path(item):
                    continue
                if not (target / item.name).exists():
                    shutil.copy2(item, target / item.name)
        draft = self.draft_dir(plan_id, node_id)
        if draft.is_dir():
            for item in sorted(draft.iterdir()):
                destination = target / item.name
                if item.suffix == ".json" and read_json(item) is None:
                    with suppress(FileNotFoundError):
                        destination.unlink()
                    item.unlink()
                    continue
                item.replace(destination)
            shutil.rmtree(draft, ignore_errors=True)
        pointer = self.node_spec_root(plan_id, node_id) / "current"
        write_text_atomic(pointer, f"{attempt_number}\n")
        logger.debug(
            "snapshotted specs plan=%s node=%s attempt=%s", plan_id, node_id, attempt_number
        )
        return target

    def read_node_spec_for_attempt(
        self, plan_id: str, node_id: str, phase: str, attempt_number: int
    ) -> WorkSpec | None:
        _check_phase(phase)
        for number in range(attempt_number, 0, -1):
            spec_file = self.attempt_dir(plan_id, node_id, number) / f"{phase}.json"
            if spec_file.is_file():
                return self._read_spec_file(spec_file)
        return self.read_node_spec(plan_id, node_id, phase)

    # plans

    def list_plan_ids(self) -> list[str]:
        if not self.root.is_dir():
            return []
        plan_ids: list[str] = []
        for entry in sorted(self.root.iterdir()):
            if is_symlink_path(entry):
                continue
            if entry.is_dir() and (entry / PLAN_FILE).is_file():
                plan_ids.append(entry.name)
            elif (
                entry.is_file()
                and entry.name.startswith(LEGACY_PREFIX)
                and entry.name.endswith(".json")
            ):
                plan_id = entry.name[len(LEGACY_PREFIX) : -len(".json")]
                if plan_id and plan_id not in plan_ids:
                    plan_ids.append(plan_id)
        return plan_ids

    def exists(self, plan_id: str) -> bool:
        return self.metadata_path(plan_id).is_file()

    def is_legacy(self, plan_id: str) -> bool:
        return not self.exists(plan_id) and self.legacy_path(plan_id).is_file()

    def delete_plan(self, plan_id: str) -> None:
        plan_dir = self.plan_dir(plan_id)
        if is_symlink_path(plan_dir):
            raise StoreError(f"plan dir must not be symlink: {plan_dir}")
        shutil.rmtree(plan_dir, ignore_errors=True)
        with suppress(FileNotFoundError):
            self.legacy_path(plan_id).unlink()

    def migrate_legacy(self, plan_id: str) -> StoredPlanMetadata:
        """Convert ``plan-<id>.json`` into the directory layout and remove it.

        Inline node specs become spec files; nodes that already ran get their
        specs frozen under the latest recorded attempt.
        """
        legacy_file = self.legacy_path(plan_id)
        raw = read_json(legacy_file)
        if not isinstance(raw, dict):
            raise StoreError(f"legacy plan must be an object: {legacy_file}")
        data = as_dict(raw)
        metadata = StoredPlanMetadata.from_dict(data)
        metadata.id = as_str(data.get("id"), plan_id) or plan_id

        jobs_by_producer: dict[str, dict[str, object]] = {}
        raw_spec = as_dict(data.get("spec"))
        raw_spec_jobs = raw_spec.get("jobs")
        if isinstance(raw_spec_jobs, list):
            for job in raw_spec_jobs:
                job_data = as_dict(job)
                producer_id = as_str(pick(job_data, "producer_id", "producerId"))
                if producer_id:
                    jobs_by_producer[producer_id] = job_data

        metadata.jobs = []
        raw_nodes = data.get("nodes")
        for raw_node in raw_nodes if isinstance(raw_nodes, list) else []:
            node = as_dict(raw_node)
            node_id = as_str(node.get("id"))
            if not node_id:
                continue
            producer_id = as_str(pick(node, "producer_id", "producerId"))
            job = StoredJobMetadata(
                id=node_id,
                producer_id=producer_id,
                name=as_str(node.get("name"), producer_id),
                task=as_str(node.get("task")),
                dependencies=as_list_str(node.get("dependencies")),
                group=as_optional_str(node.get("group")),
                expects_no_changes=node.get("expects_no_changes") is True,
                auto_heal=as_optional_bool(node.get("auto_heal")),
                base_branch=as_optional_str(node.get("base_branch")),
            )
            fallback = jobs_by_producer.get(producer_id, {})
            for phase in SPEC_PHASES:
                spec = normalize_work_spec(node.get(phase) or fallback.get(phase))
                if spec is not None:
                    self.write_node_spec(metadata.id, node_id, phase, spec)
                job.set_phase(phase, spec is not None)
            state = metadata.node_states.get(node_id)
            if state is not None and state.attempt_history:
                latest = max(record.attempt_number for record in state.attempt_history)
                self.snapshot_specs_for_attempt(metadata.id, node_id, latest)
            metadata.jobs.append(job)
            metadata.producer_id_to_node_id.setdefault(producer_id, node_id)

        self.write_plan_metadata(metadata)
        legacy_file.unlink()
        logger.info("migrated legacy plan plan=%s jobs=%s", metadata.id, len(metadata.jobs))
        return metadata
