"""Pydantic response models for API endpoints."""

from datetime import datetime

from pydantic import BaseModel, Field

from ....models import Iteration, Job, normalize_score


class AcceptedResponse(BaseModel):
    """Response for work that continues in the background."""

    status: str = "accepted"
    message: str
    job_id: str | None = None


class StatusResponse(BaseModel):
    """Generic status response."""

    status: str
    message: str


class StatsResponse(BaseModel):
    """Job counts and quota counters for a subject."""

    running: bool
    written: int
    iterating: int
    in_review: int
    approved: int
    rejected: int
    items_processed_today: int
    daily_limit: int
    remaining_today: int
    current_month_cost: float
    monthly_budget_limit: float
    total_processed: int
    total_passed: int
    total_failed: int


class QuotaSettingsResponse(BaseModel):
    """A subject's quota limits and learned preferences."""

    daily_limit: int
    monthly_budget_limit: float
    items_processed_today: int
    current_month_cost: float
    learned_threshold: int | None = None
    rejection_patterns: dict[str, int] = Field(
        default_factory=dict,
        description="Complaint category -> number of times seen",
    )
    generation: dict = Field(default_factory=dict, description="Default generation settings")


class JobResponse(BaseModel):
    """A generation job."""

    id: str
    subject_id: str
    source_item_id: str
    title: str
    status: str
    gate_decision: str | None
    iteration_count: int
    revision_count: int
    final_score: int | None
    revision_notes: str | None
    revision_scene_refs: list[int]
    error: str | None
    created_at: datetime
    updated_at: datetime
    reviewed_at: datetime | None

    @classmethod
    def from_job(cls, job: Job) -> "JobResponse":
        return cls(**job.to_dict())


class SceneResponse(BaseModel):
    number: int
    text: str
    visual: str
    duration: float


class CommentResponse(BaseModel):
    type: str
    text: str


class SceneCommentResponse(BaseModel):
    scene_number: int
    comments: list[CommentResponse]


class ReviewResponse(BaseModel):
    """Editor review; ``score`` is on the stored 0-100 scale."""

    score: int
    raw_score: float
    verdict: str
    overall_comment: str
    scene_comments: list[SceneCommentResponse]


class IterationResponse(BaseModel):
    """One draft/evaluate pass of a job."""

    version: int
    scenes: list[SceneResponse]
    review: ReviewResponse | None
    created_at: datetime

    @classmethod
    def from_iteration(cls, iteration: Iteration) -> "IterationResponse":
        data = iteration.to_dict()
        review = data["review"]
        if review is not None:
            review = {
                **review,
                "raw_score": review["score"],
                "score": normalize_score(review["score"]),
            }
        return cls(
            version=data["version"],
            scenes=data["scenes"],
            review=review,
            created_at=data["created_at"],
        )
