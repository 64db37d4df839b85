"""
User preference endpoints.
"""
from fastapi import APIRouter, Depends

from ..models.api_responses import ERROR_RESPONSES
from ..models.preferences import PreferencesUpdateRequest, UserPreferences
from ..services.preferences import PreferencesService, get_preferences_service
from ..utils.dependencies import get_user_id

router = APIRouter(
    prefix="/preferences",
    tags=["preferences"],
    responses=ERROR_RESPONSES
)


@router.get("", response_model=UserPreferences)
async def get_preferences(
    user_id: str = Depends(get_user_id),
    service: PreferencesService = Depends(get_preferences_service)
) -> UserPreferences:
    """Current preferences, with defaults for anything never set."""
    return await service.get_preferences(user_id)


@router.put("", response_model=UserPreferences)
async def update_preferences(
    request: PreferencesUpdateRequest,
    user_id: str = Depends(get_user_id),
    service: PreferencesService = Depends(get_preferences_service)
) -> UserPreferences:
    return await service.update_preferences(user_id, request)
