"""Revision orchestrator - human-requested corrective passes.

A reviewer can send a job that left the automatic loop back for one more
draft with their feedback. Revisions are capped per job; a request past
the cap rejects the job for good unless an operator resets it.
"""

import asyncio
import logging
from datetime import datetime

from ..channels import job_key, subject_key
from ..channels import manager as events
from ..errors import (
    AlreadyRunningError,
    InvalidJobStatusError,
    MaxRevisionsReachedError,
    RevisionNotStuckError,
    SettingsValidationError,
)
from ..models import Job, JobStatus
from .orchestrator import GenerationPipeline

logger = logging.getLogger(__name__)

MAX_REVISIONS = 5
MAX_REVISIONS_REASON = "Maximum revision limit reached"

REVISABLE_STATUSES = frozenset({JobStatus.NEEDS_HUMAN_REVIEW, JobStatus.APPROVED})
REJECTABLE_STATUSES = REVISABLE_STATUSES


class RevisionOrchestrator:
    """Schedules revision passes and resets stuck jobs."""

    def __init__(self, pipeline: GenerationPipeline, max_revisions: int = MAX_REVISIONS):
        self.pipeline = pipeline
        self.store = pipeline.store
        self.channels = pipeline.channels
        self.learning = pipeline.learning
        self.max_revisions = max_revisions
        self._in_flight: dict[str, asyncio.Task] = {}

    def is_revising(self, job_id: str) -> bool:
        return job_id in self._in_flight

    async def request_revision(
        self,
        job_id: str,
        feedback: str,
        scene_refs: list[int] | None = None,
    ) -> asyncio.Task:
        """Accept reviewer feedback and start one corrective pass.

        The pass runs in the background; its outcome is reported only
        through the push channels and the job's final status.

        Args:
            job_id: The job to revise.
            feedback: Reviewer notes for the scriptwriter.
            scene_refs: Scene numbers the feedback is aimed at, if any.

        Returns:
            The background task running the pass.

        Raises:
            JobNotFoundError: If the job does not exist.
            SettingsValidationError: If the feedback is empty.
            InvalidJobStatusError: If the job is not awaiting review.
            AlreadyRunningError: If a batch is running for the subject.
            MaxRevisionsReachedError: If the job has used up its
                revisions. The job is rejected as a side effect.
        """
        job = self.store.get_job(job_id)

        feedback = (feedback or "").strip()
        if not feedback:
            raise SettingsValidationError("Revision feedback must not be empty")

        if job.status not in REVISABLE_STATUSES or self.is_revising(job.id):
            raise InvalidJobStatusError(job.status.value, "revision")
        if self.pipeline.is_running(job.subject_id):
            raise AlreadyRunningError()

        if job.revision_count >= self.max_revisions:
            await self._reject_at_limit(job)
            raise MaxRevisionsReachedError(self.max_revisions)

        refs = sorted({n for n in scene_refs or [] if n >= 1})
        updated = self.store.update_job(
            job.id,
            status=JobStatus.ITERATING,
            revision_count=job.revision_count + 1,
            revision_notes=feedback,
            revision_scene_refs=refs,
            reviewed_at=datetime.now(),
            error=None,
        )
        self.learning.on_revise(job.subject_id, feedback)

        logger.info(
            "Revision %d/%d requested for job %s",
            updated.revision_count,
            self.max_revisions,
            job.id,
        )

        task = self.pipeline.spawn_job_work(
            job, self._run(updated, feedback, refs), name=f"revision-{job.id}"
        )
        self._in_flight[job.id] = task
        task.add_done_callback(lambda _: self._in_flight.pop(job.id, None))
        return task

    async def _run(self, job: Job, feedback: str, refs: list[int]) -> None:
        result = await self.pipeline.run_revision_pass(job, feedback, refs)
        if result.success:
            logger.info("Revision of job %s approved (score %s)", job.id, result.final_score)
        else:
            logger.info("Revision of job %s not approved: %s", job.id, result.error)
        await self.channels.emit(
            subject_key(job.subject_id),
            events.STATS,
            self.pipeline.get_stats(job.subject_id).to_dict(),
        )

    async def _reject_at_limit(self, job: Job) -> None:
        updated = self.store.update_job(
            job.id,
            status=JobStatus.REJECTED,
            error=MAX_REVISIONS_REASON,
        )
        logger.warning("Job %s rejected after %d revisions", job.id, job.revision_count)

        payload = {
            "job_id": job.id,
            "source_item_id": job.source_item_id,
            "success": False,
            "reason": MAX_REVISIONS_REASON,
            "job": updated.to_dict(),
        }
        await self.channels.emit(subject_key(job.subject_id), events.JOB_COMPLETED, payload)
        await self.channels.emit(job_key(job.id), events.JOB_COMPLETED, payload)
        await self.channels.close_all(job_key(job.id), {"status": updated.status.value})

    async def approve_job(self, job_id: str) -> Job:
        """Record a reviewer's approval of a job awaiting review.

        Raises:
            JobNotFoundError: If the job does not exist.
            InvalidJobStatusError: If the job is not awaiting review.
        """
        job = self.store.get_job(job_id)
        if job.status != JobStatus.NEEDS_HUMAN_REVIEW or self.is_revising(job.id):
            raise InvalidJobStatusError(job.status.value, "approval")

        updated = self.store.update_job(
            job.id,
            status=JobStatus.APPROVED,
            reviewed_at=datetime.now(),
            error=None,
        )
        settings = self.pipeline.settings_for(job.subject_id)
        self.learning.on_approve(job.subject_id, updated.final_score, settings.approval_threshold)
        logger.info("Job %s approved by reviewer", job.id)

        await self._announce(updated, success=True, reason=None)
        return updated

    async def reject_job(self, job_id: str, reason: str, category: str | None = None) -> Job:
        """Record a reviewer's rejection and learn from its reason.

        Raises:
            JobNotFoundError: If the job does not exist.
            SettingsValidationError: If the reason is empty.
            InvalidJobStatusError: If the job is neither awaiting review
                nor approved.
        """
        job = self.store.get_job(job_id)

        reason = (reason or "").strip()
        if not reason:
            raise SettingsValidationError("Rejection reason must not be empty")
        if job.status not in REJECTABLE_STATUSES or self.is_revising(job.id):
            raise InvalidJobStatusError(job.status.value, "rejection")

        updated = self.store.update_job(
            job.id,
            status=JobStatus.REJECTED,
            reviewed_at=datetime.now(),
            error=reason,
        )
        settings = self.pipeline.settings_for(job.subject_id)
        filed_under = self.learning.on_reject(
            job.subject_id, reason, category, settings.approval_threshold
        )
        logger.info("Job %s rejected by reviewer (%s)", job.id, filed_under)

        await self._announce(updated, success=False, reason=reason)
        return updated

    async def _announce(self, job: Job, success: bool, reason: str | None) -> None:
        payload = {
            "job_id": job.id,
            "source_item_id": job.source_item_id,
            "success": success,
            "reason": reason,
            "job": job.to_dict(),
        }
        await self.channels.emit(job_key(job.id), events.JOB_COMPLETED, payload)
        await self.channels.emit(subject_key(job.subject_id), events.JOB_COMPLETED, payload)
        await self.channels.close_all(job_key(job.id), {"status": job.status.value})
        await self.channels.emit(
            subject_key(job.subject_id),
            events.STATS,
            self.pipeline.get_stats(job.subject_id).to_dict(),
        )

    def reset_revision(self, job_id: str) -> Job:
        """Clear a job's revision history and return it to pending.

        Only stuck jobs qualify: jobs awaiting human review, or jobs at the
        revision limit. A job with a revision in flight is never reset.

        Raises:
            JobNotFoundError: If the job does not exist.
            RevisionNotStuckError: If the job does not qualify.
        """
        job = self.store.get_job(job_id)
        if self.is_revising(job.id):
            raise RevisionNotStuckError("A revision is still running for this job")

        stuck = job.status == JobStatus.NEEDS_HUMAN_REVIEW or job.revision_count >= self.max_revisions
        if not stuck:
            raise RevisionNotStuckError()

        updated = self.store.update_job(
            job.id,
            status=JobStatus.PENDING,
            gate_decision=None,
            final_score=None,
            revision_count=0,
            revision_notes=None,
            revision_scene_refs=[],
            error=None,
        )
        logger.info("Revision state reset for job %s", job.id)
        return updated
