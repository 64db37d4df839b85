"""
Anomaly detection endpoints.
"""
from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from ..models.anomaly import (
    AnomalyDetectionReport,
    AnomalyStatus,
    AnomalyStatusUpdate,
    BaselineSummary,
    DetectedAnomaly,
)
from ..models.api_responses import ERROR_RESPONSES
from ..services.anomaly_detection import AnomalyService, get_anomaly_service
from ..utils.dependencies import get_user_id

router = APIRouter(
    prefix="/anomalies",
    tags=["anomalies"],
    responses=ERROR_RESPONSES
)


@router.post("/baselines", response_model=BaselineSummary)
async def recalculate_baselines(
    user_id: str = Depends(get_user_id),
    service: AnomalyService = Depends(get_anomaly_service)
) -> BaselineSummary:
    """Rebuild per-merchant spending baselines."""
    return await service.recalculate_baselines(user_id)


@router.post("/detect", response_model=AnomalyDetectionReport)
async def detect_anomalies(
    save: bool = Query(True, description="Store newly found anomalies"),
    user_id: str = Depends(get_user_id),
    service: AnomalyService = Depends(get_anomaly_service)
) -> AnomalyDetectionReport:
    """Check recent transactions and recurring charges for unusual activity."""
    return await service.run_detection(user_id, save=save)


@router.get("", response_model=List[DetectedAnomaly])
async def list_anomalies(
    status: Optional[AnomalyStatus] = Query(None, description="Only anomalies in this status"),
    limit: Optional[int] = Query(None, ge=1, le=500),
    user_id: str = Depends(get_user_id),
    service: AnomalyService = Depends(get_anomaly_service)
) -> List[DetectedAnomaly]:
    return await service.list_anomalies(user_id, status=status, limit=limit)


@router.patch("/{anomaly_id}", response_model=DetectedAnomaly)
async def update_anomaly_status(
    anomaly_id: str,
    update: AnomalyStatusUpdate,
    user_id: str = Depends(get_user_id),
    service: AnomalyService = Depends(get_anomaly_service)
) -> DetectedAnomaly:
    """Record the user's verdict. Dismissing as expected teaches the detector."""
    return await service.update_status(user_id, anomaly_id, update)
