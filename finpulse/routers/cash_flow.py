"""
Cash-flow forecast and learning loop endpoints.
"""
from typing import List, Optional

from fastapi import APIRouter, Body, Depends, Query

from ..models.api_responses import ERROR_RESPONSES
from ..models.forecast import ForecastSnapshot, LearningAction, LearningCycleResult, LearningStatus
from ..services.cash_flow import CashFlowService, get_cash_flow_service
from ..services.forecast_learning import ForecastLearningService, get_forecast_learning_service
from ..utils.dependencies import get_user_id

router = APIRouter(
    prefix="/cash-flow",
    tags=["cash-flow"],
    responses=ERROR_RESPONSES
)


@router.get("/forecast", response_model=ForecastSnapshot)
async def get_forecast(
    days: Optional[int] = Query(None, ge=1, le=365, description="Forecast horizon in days"),
    threshold: Optional[float] = Query(None, description="Low-balance alert threshold"),
    store: bool = Query(False, description="Persist the forecast for later accuracy scoring"),
    exclude: Optional[List[str]] = Query(None, description="Transaction IDs left out of the spending rate"),
    user_id: str = Depends(get_user_id),
    service: CashFlowService = Depends(get_cash_flow_service)
) -> ForecastSnapshot:
    """Project daily balances over the horizon with alerts and a breakdown."""
    return await service.forecast(
        user_id,
        days=days,
        threshold=threshold,
        store=store,
        exclude_transaction_ids=exclude
    )


@router.post("/learn", response_model=LearningCycleResult)
async def trigger_learning(
    action: LearningAction = Body(LearningAction.FULL_CYCLE, embed=True),
    user_id: str = Depends(get_user_id),
    service: ForecastLearningService = Depends(get_forecast_learning_service)
) -> LearningCycleResult:
    """Run one learning stage, or the full cycle."""
    return await service.trigger(user_id, action)


@router.get("/learn", response_model=LearningStatus)
async def get_learning_status(
    user_id: str = Depends(get_user_id),
    service: ForecastLearningService = Depends(get_forecast_learning_service)
) -> LearningStatus:
    return await service.get_status(user_id)
