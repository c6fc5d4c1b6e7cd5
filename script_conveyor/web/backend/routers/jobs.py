"""Jobs router: listing, iterations and the human revision loop."""

from typing import Annotated

from fastapi import APIRouter, Query, status

from ....errors import ConveyorError, JobNotFoundError
from ....models import Job, JobStatus
from ..dependencies import JobStoreDep, PipelineDep, RevisionDep, SubjectDep
from ..errors import to_http_exception
from ..models.requests import RejectRequest, ReviseRequest
from ..models.responses import AcceptedResponse, IterationResponse, JobResponse

router = APIRouter(prefix="/jobs", tags=["jobs"])


def _get_owned_job(store, job_id: str, subject_id: str) -> Job:
    """Fetch a job, hiding other subjects' jobs behind a 404."""
    try:
        job = store.get_job(job_id)
    except JobNotFoundError as e:
        raise to_http_exception(e) from e
    if job.subject_id != subject_id:
        raise to_http_exception(JobNotFoundError(job_id))
    return job


@router.get("", response_model=list[JobResponse])
def list_jobs(
    subject_id: SubjectDep,
    store: JobStoreDep,
    status_filter: Annotated[JobStatus | None, Query(alias="status")] = None,
) -> list[JobResponse]:
    """List the caller's jobs, newest first."""
    jobs = store.list_jobs(subject_id=subject_id, status=status_filter)
    return [JobResponse.from_job(job) for job in jobs]


@router.get("/{job_id}", response_model=JobResponse)
def get_job(job_id: str, subject_id: SubjectDep, store: JobStoreDep) -> JobResponse:
    """Get a job."""
    return JobResponse.from_job(_get_owned_job(store, job_id, subject_id))


@router.get("/{job_id}/iterations", response_model=list[IterationResponse])
def list_iterations(job_id: str, subject_id: SubjectDep, store: JobStoreDep) -> list[IterationResponse]:
    """Get a job's iterations in version order."""
    _get_owned_job(store, job_id, subject_id)
    return [IterationResponse.from_iteration(i) for i in store.list_iterations(job_id)]


@router.post("/{job_id}/revise", response_model=AcceptedResponse, status_code=status.HTTP_202_ACCEPTED)
async def request_revision(
    job_id: str,
    request: ReviseRequest,
    subject_id: SubjectDep,
    store: JobStoreDep,
    revisions: RevisionDep,
) -> AcceptedResponse:
    """Send a job back to the scriptwriter with reviewer feedback.

    The outcome arrives over the job's and the subject's push channels.
    """
    _get_owned_job(store, job_id, subject_id)
    try:
        await revisions.request_revision(job_id, request.feedback, request.scene_refs)
    except ConveyorError as e:
        raise to_http_exception(e) from e

    return AcceptedResponse(message="Revision started", job_id=job_id)


@router.post("/{job_id}/approve", response_model=JobResponse)
async def approve_job(
    job_id: str,
    subject_id: SubjectDep,
    store: JobStoreDep,
    revisions: RevisionDep,
) -> JobResponse:
    """Accept a job that is waiting for human review."""
    _get_owned_job(store, job_id, subject_id)
    try:
        job = await revisions.approve_job(job_id)
    except ConveyorError as e:
        raise to_http_exception(e) from e
    return JobResponse.from_job(job)


@router.post("/{job_id}/reject", response_model=JobResponse)
async def reject_job(
    job_id: str,
    request: RejectRequest,
    subject_id: SubjectDep,
    store: JobStoreDep,
    revisions: RevisionDep,
) -> JobResponse:
    """Reject a job. The reason feeds the subject's learned preferences."""
    _get_owned_job(store, job_id, subject_id)
    try:
        job = await revisions.reject_job(job_id, request.reason, request.category)
    except ConveyorError as e:
        raise to_http_exception(e) from e
    return JobResponse.from_job(job)


@router.post("/{job_id}/reset-revision", response_model=JobResponse)
def reset_revision(
    job_id: str,
    subject_id: SubjectDep,
    store: JobStoreDep,
    revisions: RevisionDep,
) -> JobResponse:
    """Clear a stuck job's revision state and return it to pending."""
    _get_owned_job(store, job_id, subject_id)
    try:
        job = revisions.reset_revision(job_id)
    except ConveyorError as e:
        raise to_http_exception(e) from e
    return JobResponse.from_job(job)


@router.post("/{job_id}/regenerate", response_model=AcceptedResponse, status_code=status.HTTP_202_ACCEPTED)
async def regenerate(
    job_id: str,
    subject_id: SubjectDep,
    store: JobStoreDep,
    pipeline: PipelineDep,
) -> AcceptedResponse:
    """Run the automatic loop again for a pending job."""
    _get_owned_job(store, job_id, subject_id)
    try:
        pipeline.regenerate(job_id)
    except ConveyorError as e:
        raise to_http_exception(e) from e

    return AcceptedResponse(message="Regeneration started", job_id=job_id)
