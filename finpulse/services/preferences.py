"""
Per-user preferences.
"""
from typing import Optional

import structlog

from ..infrastructure import DocumentStore, get_document_store
from ..infrastructure.stores import PreferencesStore
from ..models.preferences import PreferencesUpdateRequest, UserPreferences
from ..utils.exceptions import ValidationError

logger = structlog.get_logger()


class PreferencesService:
    """Reads and replaces preference sections."""

    def __init__(self, db: Optional[DocumentStore] = None):
        self.db = db or get_document_store()
        self.store = PreferencesStore(self.db)

    async def get_preferences(self, user_id: str) -> UserPreferences:
        return await self.store.get_preferences(user_id)

    async def update_preferences(self, user_id: str, request: PreferencesUpdateRequest) -> UserPreferences:
        """Replace the sections present in the request; the rest keep their values."""
        sections = {
            name: value
            for name, value in (
                ("detection", request.detection),
                ("anomaly", request.anomaly),
                ("forecast", request.forecast),
            )
            if value is not None
        }
        if not sections:
            raise ValidationError(message="No preference sections to update")

        current = await self.store.get_preferences(user_id)
        saved = await self.store.save_preferences(current.model_copy(update=sections))
        logger.info("Preferences updated", user_id=user_id, sections=sorted(sections), version=saved.version)
        return saved


def get_preferences_service() -> PreferencesService:
    """Preferences service bound to the configured document store."""
    return PreferencesService()
