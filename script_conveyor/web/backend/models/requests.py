"""Pydantic request models for API endpoints."""

from typing import Any

from pydantic import BaseModel, Field


class StartGenerationRequest(BaseModel):
    """Request to generate scripts for a batch of source items."""

    item_ids: list[str] = Field(default_factory=list, description="Source item IDs, processed in order")
    settings: dict[str, Any] | None = Field(
        default=None,
        description="Generation settings; missing fields use configured defaults",
    )


class StartSingleRequest(BaseModel):
    """Request to generate a script for one source item."""

    item_id: str = Field(..., min_length=1, description="Source item ID")
    settings: dict[str, Any] | None = Field(default=None, description="Generation settings")


class UpdateQuotaRequest(BaseModel):
    """Request to change a subject's quota limits."""

    daily_limit: int | None = Field(default=None, ge=1, le=1000, description="Items per day")
    monthly_budget_limit: float | None = Field(default=None, ge=0, description="Monthly budget in USD")


class ReviseRequest(BaseModel):
    """Request a revision pass with reviewer feedback."""

    feedback: str = Field(..., min_length=1, description="Reviewer notes for the scriptwriter")
    scene_refs: list[int] = Field(default_factory=list, description="Scene numbers the feedback targets")


class RejectRequest(BaseModel):
    """Request to reject a job."""

    reason: str = Field(..., min_length=1, description="Why the script was rejected")
    category: str | None = Field(
        default=None, description="Rejection category, e.g. too_long; inferred from the reason if omitted"
    )
