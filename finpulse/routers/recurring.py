"""
Recurring pattern, suggestion and suppression endpoints.
"""
from typing import List, Optional

from fastapi import APIRouter, Body, Depends, status
import structlog

from ..models.api_responses import ERROR_RESPONSES, RemovedResponse, SuppressionClearRequest
from ..models.financial import (
    DenialReason,
    DetectionSummary,
    ManualPatternRequest,
    PatternUpdateRequest,
    RecurringOverview,
    RecurringPattern,
    RecurringSuggestion,
    ReviewAction,
    ReviewRequest,
    ReviewResult,
    SuppressionList,
)
from ..services.recurring import RecurringService, get_recurring_service
from ..services.suggestions import SuggestionReviewService, get_suggestion_review_service
from ..utils.dependencies import get_user_id

logger = structlog.get_logger()

router = APIRouter(
    prefix="/recurring",
    tags=["recurring"],
    responses=ERROR_RESPONSES
)


@router.get("", response_model=RecurringOverview)
async def get_recurring_overview(
    user_id: str = Depends(get_user_id),
    service: RecurringService = Depends(get_recurring_service)
) -> RecurringOverview:
    """Active recurring patterns, split into income and expenses."""
    return await service.get_overview(user_id)


@router.post("", response_model=RecurringPattern, status_code=status.HTTP_201_CREATED)
async def create_recurring_pattern(
    request: ManualPatternRequest,
    user_id: str = Depends(get_user_id),
    service: RecurringService = Depends(get_recurring_service)
) -> RecurringPattern:
    """Declare a recurring bill or income by hand."""
    return await service.create_manual_pattern(user_id, request)


@router.post("/detect", response_model=DetectionSummary)
async def run_recurring_detection(
    user_id: str = Depends(get_user_id),
    service: RecurringService = Depends(get_recurring_service)
) -> DetectionSummary:
    """Scan the transaction history for recurring series."""
    return await service.run_detection(user_id)


@router.get("/suppressed", response_model=SuppressionList)
async def get_suppressed_merchants(
    user_id: str = Depends(get_user_id),
    service: RecurringService = Depends(get_recurring_service)
) -> SuppressionList:
    return await service.get_suppression_list(user_id)


@router.delete("/suppressed", response_model=RemovedResponse)
async def clear_suppressed_merchants(
    request: Optional[SuppressionClearRequest] = Body(None),
    user_id: str = Depends(get_user_id),
    service: RecurringService = Depends(get_recurring_service)
) -> RemovedResponse:
    """Let suppressed merchants be detected again. Clears everything when no keys are given."""
    keys = request.keys if request else None
    return RemovedResponse(removed=await service.clear_suppression(user_id, keys))


@router.get("/suggestions", response_model=List[RecurringSuggestion])
async def list_suggestions(
    user_id: str = Depends(get_user_id),
    service: SuggestionReviewService = Depends(get_suggestion_review_service)
) -> List[RecurringSuggestion]:
    """Pending suggestions awaiting review."""
    return await service.list_pending(user_id)


@router.post("/suggestions/review", response_model=ReviewResult)
async def review_suggestions(
    request: ReviewRequest,
    user_id: str = Depends(get_user_id),
    service: SuggestionReviewService = Depends(get_suggestion_review_service)
) -> ReviewResult:
    """Confirm or deny suggestions in bulk. Each item succeeds or fails on its own."""
    if request.action == ReviewAction.CONFIRM:
        result = await service.confirm(user_id, request.ids)
    else:
        result = await service.deny(user_id, request.ids, request.reason or DenialReason.OTHER)
    logger.info(
        "Suggestions reviewed",
        user_id=user_id,
        action=request.action.value,
        succeeded=result.succeeded,
        failed=result.failed,
        skipped=result.skipped
    )
    return result


@router.delete("/suggestions", response_model=RemovedResponse)
async def clear_suggestions(
    user_id: str = Depends(get_user_id),
    service: SuggestionReviewService = Depends(get_suggestion_review_service)
) -> RemovedResponse:
    return RemovedResponse(removed=await service.clear_pending(user_id))


@router.get("/{pattern_id}", response_model=RecurringPattern)
async def get_recurring_pattern(
    pattern_id: str,
    user_id: str = Depends(get_user_id),
    service: RecurringService = Depends(get_recurring_service)
) -> RecurringPattern:
    return await service.get_pattern(user_id, pattern_id)


@router.patch("/{pattern_id}", response_model=RecurringPattern)
async def update_recurring_pattern(
    pattern_id: str,
    request: PatternUpdateRequest,
    user_id: str = Depends(get_user_id),
    service: RecurringService = Depends(get_recurring_service)
) -> RecurringPattern:
    """Override a pattern's schedule. Overridden patterns are not rewritten by detection."""
    return await service.update_pattern(user_id, pattern_id, request)


@router.delete("/{pattern_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_recurring_pattern(
    pattern_id: str,
    user_id: str = Depends(get_user_id),
    service: RecurringService = Depends(get_recurring_service)
) -> None:
    """Delete a pattern and stop it from being detected again."""
    await service.delete_pattern(user_id, pattern_id)
