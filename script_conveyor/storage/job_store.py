"""Job Store - canonical store for jobs and their iterations.

The orchestrators are the only writers. Each job is unique per
(subject, source item); iteration versions are assigned here so they stay
contiguous from 1 and are never reused.
"""

import json
import logging
import threading
import uuid
from collections import Counter
from datetime import datetime
from pathlib import Path
from typing import Any

from ..errors import DuplicateJobError, JobNotFoundError
from ..models import Iteration, Job, JobStatus, Review, Scene

logger = logging.getLogger(__name__)


class JobStore:
    """Thread-safe store of jobs and iterations.

    Persists to ``<data_dir>/jobs.json`` after every write when a data
    directory is given, otherwise keeps everything in memory.
    """

    def __init__(self, data_dir: Path | str | None = None):
        """Initialize the store.

        Args:
            data_dir: Directory for the JSON index. None keeps state in memory.
        """
        self._lock = threading.Lock()
        self._jobs: dict[str, Job] = {}
        self._iterations: dict[str, list[Iteration]] = {}
        self._index_path: Path | None = None

        if data_dir is not None:
            data_dir = Path(data_dir)
            data_dir.mkdir(parents=True, exist_ok=True)
            self._index_path = data_dir / "jobs.json"
            self._load_index()

    def _load_index(self) -> None:
        """Load jobs and iterations from disk."""
        if not self._index_path or not self._index_path.exists():
            return
        with open(self._index_path) as f:
            data = json.load(f)
        for job_data in data.get("jobs", []):
            job = Job.from_dict(job_data)
            self._jobs[job.id] = job
            self._iterations[job.id] = []
        for iteration_data in data.get("iterations", []):
            iteration = Iteration.from_dict(iteration_data)
            self._iterations.setdefault(iteration.job_id, []).append(iteration)
        for iterations in self._iterations.values():
            iterations.sort(key=lambda i: i.version)
        logger.debug("Loaded %d jobs from %s", len(self._jobs), self._index_path)

    def _save_index(self) -> None:
        """Rewrite the whole index on the calling thread. Caller holds the lock."""
        if not self._index_path:
            return
        data = {
            "jobs": [job.to_dict() for job in self._jobs.values()],
            "iterations": [
                iteration.to_dict()
                for iterations in self._iterations.values()
                for iteration in iterations
            ],
            "updated_at": datetime.now().isoformat(),
        }
        tmp_path = self._index_path.with_suffix(".tmp")
        with open(tmp_path, "w") as f:
            json.dump(data, f, indent=2)
        tmp_path.replace(self._index_path)

    # === Jobs ===

    def create_job(self, subject_id: str, source_item_id: str, title: str = "") -> Job:
        """Create a pending job unless one already exists for the source item.

        Raises:
            DuplicateJobError: If any job, terminal or not, exists for the pair.
        """
        with self._lock:
            existing = self._find(subject_id, source_item_id)
            if existing is not None:
                raise DuplicateJobError(subject_id, source_item_id, existing.id)

            job = Job(
                id=f"job_{uuid.uuid4().hex[:12]}",
                subject_id=subject_id,
                source_item_id=source_item_id,
                title=title,
            )
            self._jobs[job.id] = job
            self._iterations[job.id] = []
            self._save_index()
            return job

    def _find(self, subject_id: str, source_item_id: str) -> Job | None:
        for job in self._jobs.values():
            if job.subject_id == subject_id and job.source_item_id == source_item_id:
                return job
        return None

    def find_job(self, subject_id: str, source_item_id: str) -> Job | None:
        """Return the job for a (subject, source item) pair, if any."""
        with self._lock:
            return self._find(subject_id, source_item_id)

    def get_job(self, job_id: str) -> Job:
        """Get a job by ID.

        Raises:
            JobNotFoundError: If no such job exists.
        """
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise JobNotFoundError(job_id)
            return job

    def list_jobs(
        self,
        subject_id: str | None = None,
        status: JobStatus | None = None,
    ) -> list[Job]:
        """List jobs, newest first, optionally filtered by subject and status."""
        with self._lock:
            jobs = list(self._jobs.values())
        if subject_id is not None:
            jobs = [j for j in jobs if j.subject_id == subject_id]
        if status is not None:
            jobs = [j for j in jobs if j.status == status]
        return sorted(jobs, key=lambda j: j.created_at, reverse=True)

    def update_job(self, job_id: str, **changes: Any) -> Job:
        """Apply field changes to a job and bump its update time."""
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise JobNotFoundError(job_id)
            for name, value in changes.items():
                if not hasattr(job, name):
                    raise AttributeError(f"Job has no field '{name}'")
                setattr(job, name, value)
            job.updated_at = datetime.now()
            self._save_index()
            return job

    def count_by_status(self, subject_id: str) -> dict[JobStatus, int]:
        """Count a subject's jobs per status."""
        with self._lock:
            counts = Counter(j.status for j in self._jobs.values() if j.subject_id == subject_id)
        return {status: counts.get(status, 0) for status in JobStatus}

    # === Iterations ===

    def add_iteration(self, job_id: str, scenes: list[Scene]) -> Iteration:
        """Persist a draft as the job's next iteration version."""
        with self._lock:
            if job_id not in self._jobs:
                raise JobNotFoundError(job_id)
            iterations = self._iterations.setdefault(job_id, [])
            version = iterations[-1].version + 1 if iterations else 1
            iteration = Iteration(job_id=job_id, version=version, scenes=list(scenes))
            iterations.append(iteration)
            self._save_index()
            return iteration

    def attach_review(self, job_id: str, version: int, review: Review) -> Iteration:
        """Attach the editor review to an existing iteration."""
        with self._lock:
            for iteration in self._iterations.get(job_id, []):
                if iteration.version == version:
                    iteration.review = review
                    self._save_index()
                    return iteration
        raise KeyError(f"Iteration {version} not found for job {job_id}")

    def list_iterations(self, job_id: str) -> list[Iteration]:
        """Return a job's iterations in version order."""
        with self._lock:
            if job_id not in self._jobs:
                raise JobNotFoundError(job_id)
            return list(self._iterations.get(job_id, []))

    def latest_iteration(self, job_id: str) -> Iteration | None:
        """Return the most recent iteration, if any."""
        iterations = self.list_iterations(job_id)
        return iterations[-1] if iterations else None

    def latest_review(self, job_id: str) -> Review | None:
        """Return the review of the newest iteration that has one."""
        for iteration in reversed(self.list_iterations(job_id)):
            if iteration.review is not None:
                return iteration.review
        return None
