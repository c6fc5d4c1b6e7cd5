"""Generation control router: batches, stats and quota settings."""

from fastapi import APIRouter, status

from ....budget import LearningService
from ....config import GenerationSettings
from ....errors import ConveyorError
from ..dependencies import ConfigDep, GovernorDep, PipelineDep, SubjectDep
from ..errors import to_http_exception
from ..models.requests import StartGenerationRequest, StartSingleRequest, UpdateQuotaRequest
from ..models.responses import (
    AcceptedResponse,
    QuotaSettingsResponse,
    StatsResponse,
    StatusResponse,
)

router = APIRouter(prefix="/generation", tags=["generation"])


@router.get("/stats", response_model=StatsResponse)
def get_stats(subject_id: SubjectDep, pipeline: PipelineDep) -> StatsResponse:
    """Get job counts and quota usage for the caller."""
    return StatsResponse(**pipeline.get_stats(subject_id).to_dict())


@router.post("/start", response_model=AcceptedResponse, status_code=status.HTTP_202_ACCEPTED)
async def start_generation(
    request: StartGenerationRequest,
    subject_id: SubjectDep,
    pipeline: PipelineDep,
    config: ConfigDep,
) -> AcceptedResponse:
    """Start generating scripts for a batch of source items."""
    try:
        settings = GenerationSettings.parse(request.settings, config.generation)
        pipeline.start_batch(subject_id, request.item_ids, settings)
    except ConveyorError as e:
        raise to_http_exception(e) from e

    return AcceptedResponse(message=f"Generation started for {len(request.item_ids)} items")


@router.post("/start-single", response_model=AcceptedResponse, status_code=status.HTTP_202_ACCEPTED)
async def start_single(
    request: StartSingleRequest,
    subject_id: SubjectDep,
    pipeline: PipelineDep,
    config: ConfigDep,
) -> AcceptedResponse:
    """Start generating a script for one source item."""
    try:
        settings = GenerationSettings.parse(request.settings, config.generation)
        pipeline.start_single(subject_id, request.item_id, settings)
    except ConveyorError as e:
        raise to_http_exception(e) from e

    return AcceptedResponse(message=f"Generation started for item {request.item_id}")


@router.post("/stop", response_model=StatusResponse)
async def stop_generation(subject_id: SubjectDep, pipeline: PipelineDep) -> StatusResponse:
    """Stop the caller's running batch after the current step."""
    try:
        await pipeline.stop_batch(subject_id)
    except ConveyorError as e:
        raise to_http_exception(e) from e

    return StatusResponse(status="stopping", message="Generation will stop after the current step")


def _quota_settings(subject_id: str, governor, config) -> QuotaSettingsResponse:
    state = governor.get_state(subject_id)
    return QuotaSettingsResponse(
        daily_limit=state.daily_limit,
        monthly_budget_limit=state.monthly_budget_limit,
        items_processed_today=state.items_processed_today,
        current_month_cost=state.current_month_cost,
        learned_threshold=state.learned_threshold,
        rejection_patterns={k: p.count for k, p in state.rejection_patterns.items()},
        generation=GenerationSettings.from_config(config.generation).model_dump(),
    )


@router.get("/settings", response_model=QuotaSettingsResponse)
def get_settings(subject_id: SubjectDep, governor: GovernorDep, config: ConfigDep) -> QuotaSettingsResponse:
    """Get the caller's quota limits and learned preferences."""
    return _quota_settings(subject_id, governor, config)


@router.put("/settings", response_model=QuotaSettingsResponse)
def update_settings(
    request: UpdateQuotaRequest,
    subject_id: SubjectDep,
    governor: GovernorDep,
    config: ConfigDep,
) -> QuotaSettingsResponse:
    """Change the caller's daily limit or monthly budget."""
    governor.update_limits(
        subject_id,
        daily_limit=request.daily_limit,
        monthly_budget_limit=request.monthly_budget_limit,
    )
    return _quota_settings(subject_id, governor, config)


@router.post("/learning/reset", response_model=StatusResponse)
def reset_learning(subject_id: SubjectDep, governor: GovernorDep) -> StatusResponse:
    """Forget the caller's learned rejection patterns and threshold."""
    LearningService(governor).reset_learning(subject_id)
    return StatusResponse(status="ok", message="Learning data reset")
