from __future__ import annotations

from planforge.store.fs_store import FileSystemPlanStore
from planforge.store.metadata import StoredJobMetadata, StoredPlanMetadata
from planforge.work.spec import WorkSpec


class FilePlanDefinition:
    """Read-only view of a stored plan's topology and specs.

    Spec accessors go to the store on every call; nothing is cached.
    """

    def __init__(self, metadata: StoredPlanMetadata, store: FileSystemPlanStore) -> None:
        self._metadata = metadata
        self._store = store

    @property
    def id(self) -> str:
        return self._metadata.id

    @property
    def name(self) -> str:
        return self._metadata.spec.name

    @property
    def base_branch(self) -> str:
        return self._metadata.base_branch

    @property
    def target_branch(self) -> str | None:
        return self._metadata.target_branch

    @property
    def max_parallel(self) -> int:
        return self._metadata.max_parallel or self._metadata.spec.max_parallel

    @property
    def node_ids(self) -> list[str]:
        return [job.id for job in self._metadata.jobs if job.id]

    def get_node(self, node_id: str) -> StoredJobMetadata | None:
        return self._metadata.job(node_id)

    def get_node_by_producer_id(self, producer_id: str) -> StoredJobMetadata | None:
        node_id = self._metadata.producer_id_to_node_id.get(producer_id)
        if node_id is not None:
            return self._metadata.job(node_id)
        for job in self._metadata.jobs:
            if job.producer_id == producer_id:
                return job
        return None

    def get_dependencies(self, node_id: str) -> list[str]:
        job = self._metadata.job(node_id)
        return list(job.dependencies) if job is not None else []

    def _read(self, node_id: str, phase: str) -> WorkSpec | None:
        job = self._metadata.job(node_id)
        if job is None or not job.has_phase(phase):
            return None
        return self._store.read_node_spec(self._metadata.id, node_id, phase)

    def get_work_spec(self, node_id: str) -> WorkSpec | None:
        return self._read(node_id, "work")

    def get_prechecks_spec(self, node_id: str) -> WorkSpec | None:
        return self._read(node_id, "prechecks")

    def get_postchecks_spec(self, node_id: str) -> WorkSpec | None:
        return self._read(node_id, "postchecks")

    def get_verify_spec(self) -> WorkSpec | None:
        return self._metadata.spec.verify_ri
