from __future__ import annotations

import errno
import math
import os
import re
import stat
from contextlib import suppress
from pathlib import Path
from typing import Any, NamedTuple

import yaml

from planforge.config.schema import DEFAULT_MAX_PARALLEL, JobSpec, PlanSpec
from planforge.dag.validate import assert_acyclic, detect_cycles, validate_all_deps_exist
from planforge.util.errors import PlanError
from planforge.util.fs import has_symlink_ancestor
from planforge.work.spec import (
    AgentSpec,
    ProcessSpec,
    ShellSpec,
    WorkSpec,
    normalize_work_spec,
)

_SAFE_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")
_PRODUCER_ID_MAX_LEN = 128
_ALLOWED_PLAN_KEYS = {
    "name",
    "base_branch",
    "target_branch",
    "max_parallel",
    "clean_up_successful_work",
    "start_paused",
    "env",
    "verify_ri",
    "snapshot",
    "resume_after_plan",
    "jobs",
}
_ALLOWED_JOB_KEYS = {
    "producer_id",
    "name",
    "task",
    "work",
    "prechecks",
    "postchecks",
    "dependencies",
    "group",
    "expects_no_changes",
    "auto_heal",
    "base_branch",
}
_WORK_TYPES = {"process", "shell", "agent"}


class _JobRef(NamedTuple):
    id: str
    dependencies: list[str]


def _is_finite_real_number(value: object) -> bool:
    if not isinstance(value, (int, float)) or isinstance(value, bool):
        return False
    return math.isfinite(value)


def _is_non_blank_str(value: object) -> bool:
    return isinstance(value, str) and bool(value.strip()) and "\x00" not in value


def _is_str_without_nul(value: object) -> bool:
    return isinstance(value, str) and "\x00" not in value


def _is_valid_env_key(value: object) -> bool:
    if not isinstance(value, str):
        return False
    return _is_non_blank_str(value) and "=" not in value


def _is_safe_id(value: object) -> bool:
    return isinstance(value, str) and _SAFE_ID_PATTERN.fullmatch(value) is not None


def _ensure_list_str(name: str, value: Any, *, non_empty_items: bool = False) -> list[str]:
    if value is None:
        return []
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise PlanError(f"{name} must be list[str]")
    if non_empty_items and any(not _is_non_blank_str(v) for v in value):
        raise PlanError(f"{name} must not contain empty strings")
    return value


def _ensure_env(name: str, value: Any) -> dict[str, str] | None:
    if value is None:
        return None
    if not isinstance(value, dict) or not all(
        _is_valid_env_key(k) and _is_str_without_nul(v) for k, v in value.items()
    ):
        raise PlanError(f"{name} must be dict[str, str]")
    return dict(value)


def _ensure_optional_bool(name: str, value: Any) -> bool | None:
    if value is not None and not isinstance(value, bool):
        raise PlanError(f"{name} must be boolean")
    return value


def _ensure_optional_str(name: str, value: Any) -> str | None:
    if value is not None and not _is_non_blank_str(value):
        raise PlanError(f"{name} must be non-empty string when provided")
    return value


def parse_work(name: str, raw: Any) -> WorkSpec | None:
    """Validate one work field and upgrade it into a structured spec."""
    if raw is None:
        return None
    if isinstance(raw, str):
        if not _is_non_blank_str(raw):
            raise PlanError(f"{name} must be non-empty string")
        spec = normalize_work_spec(raw)
    elif isinstance(raw, dict):
        if any(not isinstance(key, str) for key in raw):
            raise PlanError(f"{name} fields must use string keys")
        kind = raw.get("type")
        if kind is not None and kind not in _WORK_TYPES:
            raise PlanError(f"{name}.type must be one of {sorted(_WORK_TYPES)}")
        timeout = raw.get("timeout_ms")
        if timeout is not None and (not _is_finite_real_number(timeout) or timeout <= 0):
            raise PlanError(f"{name}.timeout_ms must be > 0")
        _ensure_env(f"{name}.env", raw.get("env"))
        spec = normalize_work_spec(raw)
    else:
        raise PlanError(f"{name} must be string or mapping")
    if spec is None:
        raise PlanError(f"{name} does not describe process, shell or agent work")
    if isinstance(spec, ProcessSpec) and not _is_non_blank_str(spec.executable):
        raise PlanError(f"{name}.executable must be non-empty string")
    if isinstance(spec, ShellSpec) and not _is_non_blank_str(spec.command):
        raise PlanError(f"{name}.command must be non-empty string")
    if isinstance(spec, AgentSpec) and not _is_non_blank_str(spec.instructions):
        raise PlanError(f"{name}.instructions must be non-empty string")
    return spec


def _parse_job(raw: Any) -> JobSpec:
    if not isinstance(raw, dict):
        raise PlanError("job must be mapping")
    if any(not isinstance(key, str) for key in raw):
        raise PlanError("job fields must use string keys")
    producer_id = raw.get("producer_id")
    if not _is_non_blank_str(producer_id):
        raise PlanError("job.producer_id is required and must be non-empty string")
    if len(producer_id) > _PRODUCER_ID_MAX_LEN:
        raise PlanError(f"job.producer_id must be <= {_PRODUCER_ID_MAX_LEN} characters")
    if not _is_safe_id(producer_id):
        raise PlanError("job.producer_id must match ^[A-Za-z0-9][A-Za-z0-9._-]*$")
    unknown = set(raw.keys()) - _ALLOWED_JOB_KEYS
    if unknown:
        raise PlanError(f"job '{producer_id}' has unknown fields: {sorted(unknown)}")

    task = raw.get("task", "")
    if not _is_str_without_nul(task):
        raise PlanError(f"job '{producer_id}' task must be string")
    name = _ensure_optional_str(f"job '{producer_id}' name", raw.get("name"))
    group = _ensure_optional_str(f"job '{producer_id}' group", raw.get("group"))
    base_branch = _ensure_optional_str(
        f"job '{producer_id}' base_branch", raw.get("base_branch")
    )
    expects_no_changes = _ensure_optional_bool(
        f"job '{producer_id}' expects_no_changes", raw.get("expects_no_changes")
    )
    dependencies = _ensure_list_str(
        "dependencies", raw.get("dependencies", []), non_empty_items=True
    )

    return JobSpec(
        producer_id=producer_id,
        name=name or producer_id,
        task=task,
        work=parse_work(f"job '{producer_id}' work", raw.get("work")),
        prechecks=parse_work(f"job '{producer_id}' prechecks", raw.get("prechecks")),
        postchecks=parse_work(f"job '{producer_id}' postchecks", raw.get("postchecks")),
        dependencies=dependencies,
        group=group.strip("/") if group else None,
        expects_no_changes=bool(expects_no_changes),
        auto_heal=_ensure_optional_bool(f"job '{producer_id}' auto_heal", raw.get("auto_heal")),
        base_branch=base_branch,
    )


def validate_plan(plan: PlanSpec) -> None:
    if not plan.jobs:
        raise PlanError("plan.jobs must contain at least one job")

    ids = [job.producer_id for job in plan.jobs]
    if len(set(ids)) != len(ids):
        raise PlanError("job.producer_id must be unique")
    folded_ids = [producer_id.casefold() for producer_id in ids]
    if len(set(folded_ids)) != len(folded_ids):
        raise PlanError("job.producer_id must be unique (case-insensitive)")

    for job in plan.jobs:
        if job.producer_id in job.dependencies:
            raise PlanError(f"job '{job.producer_id}' must not depend on itself")
        if len(set(job.dependencies)) != len(job.dependencies):
            raise PlanError(f"job '{job.producer_id}' has duplicate dependencies")

    refs = [_JobRef(job.producer_id, list(job.dependencies)) for job in plan.jobs]
    validate_all_deps_exist(refs)
    cycle = detect_cycles({ref.id: ref.dependencies for ref in refs})
    if cycle is not None:
        raise PlanError(cycle)
    assert_acyclic(refs)


def parse_plan(raw: Any) -> PlanSpec:
    if not isinstance(raw, dict):
        raise PlanError("plan root must be a mapping")
    if any(not isinstance(key, str) for key in raw):
        raise PlanError("plan root keys must be strings")
    unknown_root = set(raw.keys()) - _ALLOWED_PLAN_KEYS
    if unknown_root:
        raise PlanError(f"plan contains unknown fields: {sorted(unknown_root)}")

    raw_jobs = raw.get("jobs")
    if not isinstance(raw_jobs, list):
        raise PlanError("plan.jobs must be a list")

    name = _ensure_optional_str("plan.name", raw.get("name"))
    base_branch = _ensure_optional_str("plan.base_branch", raw.get("base_branch"))
    target_branch = _ensure_optional_str("plan.target_branch", raw.get("target_branch"))
    resume_after_plan = _ensure_optional_str(
        "plan.resume_after_plan", raw.get("resume_after_plan")
    )

    max_parallel = raw.get("max_parallel", DEFAULT_MAX_PARALLEL)
    if not isinstance(max_parallel, int) or isinstance(max_parallel, bool) or max_parallel < 1:
        raise PlanError("plan.max_parallel must be int >= 1")

    clean_up = _ensure_optional_bool(
        "plan.clean_up_successful_work", raw.get("clean_up_successful_work")
    )
    start_paused = _ensure_optional_bool("plan.start_paused", raw.get("start_paused"))
    snapshot = _ensure_optional_bool("plan.snapshot", raw.get("snapshot"))

    plan = PlanSpec(
        name=name or "plan",
        base_branch=base_branch or "main",
        target_branch=target_branch,
        max_parallel=max_parallel,
        clean_up_successful_work=True if clean_up is None else clean_up,
        start_paused=bool(start_paused),
        env=_ensure_env("plan.env", raw.get("env")),
        verify_ri=parse_work("plan.verify_ri", raw.get("verify_ri")),
        snapshot=bool(snapshot),
        resume_after_plan=resume_after_plan,
        jobs=[_parse_job(job) for job in raw_jobs],
    )
    validate_plan(plan)
    return plan


def load_plan(path: Path) -> PlanSpec:
    if has_symlink_ancestor(path):
        raise PlanError(f"plan file path must not include symlink: {path}")
    try:
        meta = path.lstat()
    except FileNotFoundError:
        meta = None
    except (OSError, RuntimeError) as exc:
        raise PlanError(f"failed to read plan file: {path}") from exc

    if meta is not None:
        if stat.S_ISLNK(meta.st_mode):
            raise PlanError(f"plan file must not be symlink: {path}")
        if not stat.S_ISREG(meta.st_mode):
            raise PlanError(f"failed to read plan file: {path}")

    open_flags = os.O_RDONLY
    if hasattr(os, "O_NONBLOCK"):
        open_flags |= os.O_NONBLOCK
    if hasattr(os, "O_NOFOLLOW"):
        open_flags |= os.O_NOFOLLOW
    fd: int | None = None
    try:
        fd = os.open(str(path), open_flags)
        opened_meta = os.fstat(fd)
        if not stat.S_ISREG(opened_meta.st_mode):
            raise PlanError(f"failed to read plan file: {path}")
        with os.fdopen(fd, "r", encoding="utf-8") as f:
            fd = None
            content = f.read()
    except FileNotFoundError as exc:
        raise PlanError(f"plan file not found: {path}") from exc
    except UnicodeError as exc:
        raise PlanError(f"failed to decode plan file as utf-8: {path}") from exc
    except RuntimeError as exc:
        raise PlanError(f"failed to read plan file: {path}") from exc
    except OSError as exc:
        if exc.errno == errno.ELOOP:
            raise PlanError(f"plan file must not be symlink: {path}") from exc
        raise PlanError(f"failed to read plan file: {path}") from exc
    finally:
        if fd is not None:
            with suppress(OSError, RuntimeError):
                os.close(fd)

    try:
        raw = yaml.safe_load(content)
    except yaml.YAMLError as exc:
        raise PlanError(f"failed to parse yaml: {exc}") from exc
    return parse_plan(raw)
