"""Machine-wide job budget shared by every coordinator process on one storage root.

Each coordinator registers itself in ``capacity-registry.json`` and
heartbeats its running job count. Instances that stop heartbeating or whose
pid is gone are dropped by whoever writes next.
"""

from __future__ import annotations

import logging
import os
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

from planforge.exec.process import OsProcessTable, ProcessTable
from planforge.exec.retry import call_with_retries
from planforge.store.lock import file_lock
from planforge.util.coerce import as_dict, as_int, as_list_str, as_optional_float, as_str
from planforge.util.errors import RunConflictError, StoreError
from planforge.util.fs import ensure_directory, read_json, write_json_atomic
from planforge.util.ids import new_instance_id

logger = logging.getLogger(__name__)

REGISTRY_FILE = "capacity-registry.json"
DEFAULT_GLOBAL_MAX_PARALLEL = 16
HEARTBEAT_INTERVAL_SEC = 5.0
STALE_AFTER_SEC = 30.0
WRITE_BACKOFF_SEC = [0.1, 0.2, 0.4]


@dataclass(slots=True)
class InstanceEntry:
    instance_id: str
    pid: int
    running_jobs: int = 0
    last_heartbeat: float = 0.0
    active_plans: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        return {
            "instance_id": self.instance_id,
            "pid": self.pid,
            "running_jobs": self.running_jobs,
            "last_heartbeat": self.last_heartbeat,
            "active_plans": list(self.active_plans),
        }

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> InstanceEntry:
        return cls(
            instance_id=as_str(data.get("instance_id")),
            pid=as_int(data.get("pid")),
            running_jobs=max(0, as_int(data.get("running_jobs"))),
            last_heartbeat=as_optional_float(data.get("last_heartbeat")) or 0.0,
            active_plans=as_list_str(data.get("active_plans")),
        )


@dataclass(slots=True)
class CapacityRegistry:
    global_max_parallel: int = DEFAULT_GLOBAL_MAX_PARALLEL
    instances: dict[str, InstanceEntry] = field(default_factory=dict)

    @property
    def total_running(self) -> int:
        return sum(entry.running_jobs for entry in self.instances.values())

    def to_dict(self) -> dict[str, object]:
        return {
            "global_max_parallel": self.global_max_parallel,
            "instances": {key: entry.to_dict() for key, entry in self.instances.items()},
        }

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> CapacityRegistry:
        instances: dict[str, InstanceEntry] = {}
        for key, raw in as_dict(data.get("instances")).items():
            if isinstance(raw, dict):
                entry = InstanceEntry.from_dict(as_dict(raw))
                if entry.instance_id:
                    instances[key] = entry
        global_max = as_int(data.get("global_max_parallel"), DEFAULT_GLOBAL_MAX_PARALLEL)
        return cls(
            global_max_parallel=global_max if global_max >= 1 else DEFAULT_GLOBAL_MAX_PARALLEL,
            instances=instances,
        )


class GlobalCapacity:
    def __init__(
        self,
        storage_path: Path,
        *,
        global_max_parallel: int | None = None,
        instance_id: str | None = None,
        pid: int | None = None,
        process_table: ProcessTable | None = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.path = storage_path / REGISTRY_FILE
        self.lock_path = storage_path / f".{REGISTRY_FILE}.lock"
        self.instance_id = instance_id or new_instance_id()
        self.pid = pid if pid is not None else os.getpid()
        self.global_max_parallel = global_max_parallel
        self.process_table = process_table or OsProcessTable()
        self._clock = clock
        self._sleep = sleep
        self._running_jobs = 0
        self._active_plans: list[str] = []
        self._last_heartbeat: float | None = None
        self._registered = False

    def read(self) -> CapacityRegistry:
        try:
            raw = read_json(self.path)
        except FileNotFoundError:
            return CapacityRegistry(
                global_max_parallel=self.global_max_parallel or DEFAULT_GLOBAL_MAX_PARALLEL
            )
        if not isinstance(raw, dict):
            raise StoreError(f"capacity registry must be an object: {self.path}")
        return CapacityRegistry.from_dict(as_dict(raw))

    def _prune(self, registry: CapacityRegistry) -> None:
        now = self._clock()
        for key, entry in list(registry.instances.items()):
            if key == self.instance_id:
                continue
            stale = now - entry.last_heartbeat > STALE_AFTER_SEC
            if stale or not self.process_table.is_alive(entry.pid):
                logger.info(
                    "dropping capacity instance=%s pid=%s stale=%s", key, entry.pid, stale
                )
                del registry.instances[key]

    def _update(self, mutate: Callable[[CapacityRegistry], None]) -> None:
        def _write() -> None:
            ensure_directory(self.path.parent)
            with file_lock(self.lock_path, stale_sec=STALE_AFTER_SEC):
                try:
                    registry = self.read()
                except StoreError as exc:
                    logger.warning("capacity registry unreadable, rebuilding: %s", exc)
                    registry = CapacityRegistry()
                if self.global_max_parallel is not None:
                    registry.global_max_parallel = self.global_max_parallel
                mutate(registry)
                self._prune(registry)
                write_json_atomic(self.path, registry.to_dict(), tmp_name=f".{REGISTRY_FILE}.tmp")

        call_with_retries(
            _write,
            retry_on=(RunConflictError, OSError),
            backoff=WRITE_BACKOFF_SEC,
            sleep=self._sleep,
        )

    def _entry(self) -> InstanceEntry:
        return InstanceEntry(
            instance_id=self.instance_id,
            pid=self.pid,
            running_jobs=self._running_jobs,
            last_heartbeat=self._clock(),
            active_plans=list(self._active_plans),
        )

    def _publish(self, registry: CapacityRegistry) -> None:
        registry.instances[self.instance_id] = self._entry()

    def _withdraw(self, registry: CapacityRegistry) -> None:
        registry.instances.pop(self.instance_id, None)

    def register(self) -> None:
        self._update(self._publish)
        self._registered = True
        self._last_heartbeat = self._clock()
        logger.debug("capacity registered instance=%s", self.instance_id)

    def unregister(self) -> None:
        if not self._registered:
            return
        try:
            self._update(self._withdraw)
        except (RunConflictError, OSError) as exc:
            logger.warning(
                "capacity unregister failed instance=%s error=%s", self.instance_id, exc
            )
        self._registered = False

    def heartbeat(self, running_jobs: int, active_plans: list[str], *, force: bool = False) -> bool:
        """Publish this instance's load when it changed or a heartbeat is due."""
        changed = running_jobs != self._running_jobs or active_plans != self._active_plans
        self._running_jobs = running_jobs
        self._active_plans = list(active_plans)
        now = self._clock()
        due = self._last_heartbeat is None or now - self._last_heartbeat >= HEARTBEAT_INTERVAL_SEC
        if not (force or due or changed):
            return False
        try:
            self._update(self._publish)
        except (RunConflictError, OSError) as exc:
            logger.warning("capacity heartbeat failed instance=%s error=%s", self.instance_id, exc)
            return False
        self._registered = True
        self._last_heartbeat = now
        return True

    def available(self) -> int:
        """Jobs this instance may run in total, counting the ones it already runs."""
        try:
            registry = self.read()
        except (StoreError, OSError) as exc:
            logger.warning("capacity registry unreadable, using local count: %s", exc)
            global_max = self.global_max_parallel or DEFAULT_GLOBAL_MAX_PARALLEL
            return max(0, global_max - self._running_jobs) + self._running_jobs
        if self.global_max_parallel is not None:
            registry.global_max_parallel = self.global_max_parallel
        self._prune(registry)
        others = sum(
            entry.running_jobs
            for key, entry in registry.instances.items()
            if key != self.instance_id
        )
        total = others + self._running_jobs
        return max(0, registry.global_max_parallel - total) + self._running_jobs
