from __future__ import annotations

from dataclasses import dataclass, field

from planforge.util.coerce import (
    as_bool,
    as_int,
    as_list_str,
    as_optional_bool,
    as_optional_str,
    as_str,
    as_str_map,
)
from planforge.work.spec import WorkSpec, normalize_work_spec, work_spec_to_dict

DEFAULT_MAX_PARALLEL = 4


@dataclass(slots=True)
class JobSpec:
    producer_id: str
    name: str
    task: str
    work: WorkSpec | None = None
    prechecks: WorkSpec | None = None
    postchecks: WorkSpec | None = None
    dependencies: list[str] = field(default_factory=list)
    group: str | None = None
    expects_no_changes: bool = False
    auto_heal: bool | None = None
    base_branch: str | None = None

    def to_dict(self) -> dict[str, object]:
        data: dict[str, object] = {
            "producer_id": self.producer_id,
            "name": self.name,
            "task": self.task,
            "dependencies": list(self.dependencies),
            "expects_no_changes": self.expects_no_changes,
        }
        for key, spec in (
            ("work", self.work),
            ("prechecks", self.prechecks),
            ("postchecks", self.postchecks),
        ):
            if spec is not None:
                data[key] = work_spec_to_dict(spec)
        if self.group is not None:
            data["group"] = self.group
        if self.auto_heal is not None:
            data["auto_heal"] = self.auto_heal
        if self.base_branch is not None:
            data["base_branch"] = self.base_branch
        return data

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> JobSpec:
        producer_id = as_str(data.get("producer_id"))
        return cls(
            producer_id=producer_id,
            name=as_str(data.get("name"), producer_id),
            task=as_str(data.get("task")),
            work=normalize_work_spec(data.get("work")),
            prechecks=normalize_work_spec(data.get("prechecks")),
            postchecks=normalize_work_spec(data.get("postchecks")),
            dependencies=as_list_str(data.get("dependencies")),
            group=as_optional_str(data.get("group")),
            expects_no_changes=as_bool(data.get("expects_no_changes")),
            auto_heal=as_optional_bool(data.get("auto_heal")),
            base_branch=as_optional_str(data.get("base_branch")),
        )


@dataclass(slots=True)
class PlanSpec:
    name: str
    base_branch: str = "main"
    target_branch: str | None = None
    max_parallel: int = DEFAULT_MAX_PARALLEL
    clean_up_successful_work: bool = True
    start_paused: bool = False
    env: dict[str, str] | None = None
    verify_ri: WorkSpec | None = None
    snapshot: bool = False
    resume_after_plan: str | None = None
    jobs: list[JobSpec] = field(default_factory=list)

    def to_dict(self, *, include_jobs: bool = True) -> dict[str, object]:
        data: dict[str, object] = {
            "name": self.name,
            "base_branch": self.base_branch,
            "target_branch": self.target_branch,
            "max_parallel": self.max_parallel,
            "clean_up_successful_work": self.clean_up_successful_work,
            "start_paused": self.start_paused,
            "snapshot": self.snapshot,
            "env": self.env,
            "resume_after_plan": self.resume_after_plan,
            "jobs": [job.to_dict() for job in self.jobs] if include_jobs else [],
        }
        if self.verify_ri is not None:
            data["verify_ri"] = work_spec_to_dict(self.verify_ri)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> PlanSpec:
        raw_jobs = data.get("jobs")
        jobs = (
            [JobSpec.from_dict(job) for job in raw_jobs if isinstance(job, dict)]
            if isinstance(raw_jobs, list)
            else []
        )
        max_parallel = as_int(data.get("max_parallel"), DEFAULT_MAX_PARALLEL)
        return cls(
            name=as_str(data.get("name"), "plan"),
            base_branch=as_str(data.get("base_branch"), "main"),
            target_branch=as_optional_str(data.get("target_branch")),
            max_parallel=max_parallel if max_parallel >= 1 else DEFAULT_MAX_PARALLEL,
            clean_up_successful_work=as_bool(data.get("clean_up_successful_work"), True),
            start_paused=as_bool(data.get("start_paused")),
            env=as_str_map(data.get("env")),
            verify_ri=normalize_work_spec(data.get("verify_ri")),
            snapshot=as_bool(data.get("snapshot")),
            resume_after_plan=as_optional_str(data.get("resume_after_plan")),
            jobs=jobs,
        )
