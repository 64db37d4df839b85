"""
Review queue for recurring suggestions.
"""
from datetime import datetime
from typing import Iterable, List, Optional

import structlog

from ..infrastructure import DocumentStore, get_document_store
from ..infrastructure.stores import PatternStore, SuggestionStore
from ..models.financial import (
    CONFIDENCE_RANK,
    DenialReason,
    PATTERN_FIELDS,
    PatternSource,
    RecurringPattern,
    RecurringSuggestion,
    ReviewResult,
    SuggestionStatus,
)
from ..utils.exceptions import AppException, NotFoundError, ValidationError

logger = structlog.get_logger()


class SuggestionReviewService:
    """Confirms and denies detected suggestions, one item at a time."""

    def __init__(self, db: Optional[DocumentStore] = None):
        self.db = db or get_document_store()
        self.patterns = PatternStore(self.db)
        self.suggestions = SuggestionStore(self.db)

    async def list_pending(self, user_id: str) -> List[RecurringSuggestion]:
        """Pending suggestions, most confident and most frequent first."""
        pending = await self.suggestions.list_pending(user_id)
        return sorted(
            pending,
            key=lambda s: (-CONFIDENCE_RANK[s.confidence], -s.occurrence_count, s.display_name.lower(), s.id)
        )

    async def confirm(self, user_id: str, ids: Iterable[str]) -> ReviewResult:
        """Promote suggestions to active patterns. Already-confirmed ids are skipped."""
        result = ReviewResult()
        for suggestion_id in dict.fromkeys(ids):
            try:
                outcome = await self._confirm_one(user_id, suggestion_id)
            except AppException as e:
                logger.warning(
                    "Failed to confirm suggestion",
                    user_id=user_id,
                    suggestion_id=suggestion_id,
                    error=e.message
                )
                result.failed += 1
                result.errors.append(f"{suggestion_id}: {e.message}")
                continue
            if outcome:
                result.succeeded += 1
            else:
                result.skipped += 1

        logger.info("Suggestions confirmed", user_id=user_id, **result.model_dump(exclude={"errors"}))
        return result

    async def deny(self, user_id: str, ids: Iterable[str], reason: DenialReason) -> ReviewResult:
        """Reject suggestions and suppress their merchants. Already-denied ids are skipped."""
        result = ReviewResult()
        for suggestion_id in dict.fromkeys(ids):
            try:
                outcome = await self._deny_one(user_id, suggestion_id, reason)
            except AppException as e:
                logger.warning(
                    "Failed to deny suggestion",
                    user_id=user_id,
                    suggestion_id=suggestion_id,
                    error=e.message
                )
                result.failed += 1
                result.errors.append(f"{suggestion_id}: {e.message}")
                continue
            if outcome:
                result.succeeded += 1
            else:
                result.skipped += 1

        logger.info(
            "Suggestions denied",
            user_id=user_id,
            reason=reason.value,
            **result.model_dump(exclude={"errors"})
        )
        return result

    async def clear_pending(self, user_id: str) -> int:
        """Drop every pending suggestion."""
        removed = await self.suggestions.delete_pending(user_id)
        logger.info("Pending suggestions cleared", user_id=user_id, removed=removed)
        return removed

    async def _load(self, user_id: str, suggestion_id: str) -> RecurringSuggestion:
        suggestion = await self.suggestions.get(user_id, suggestion_id)
        if suggestion is None:
            raise NotFoundError(resource_type="suggestion", resource_id=suggestion_id)
        return suggestion

    async def _confirm_one(self, user_id: str, suggestion_id: str) -> bool:
        suggestion = await self._load(user_id, suggestion_id)
        if suggestion.status == SuggestionStatus.CONFIRMED:
            return False
        if suggestion.status != SuggestionStatus.PENDING:
            raise ValidationError(message=f"Suggestion is {suggestion.status.value}")

        key = suggestion.normalized_merchant_key
        attributes = suggestion.model_dump(include=PATTERN_FIELDS)
        existing = None
        if suggestion.replaces_pattern_id:
            existing = await self.patterns.get_pattern(user_id, suggestion.replaces_pattern_id)
        if existing is None:
            existing = await self.patterns.find_by_key(user_id, key)

        if existing is not None:
            pattern = existing.model_copy(update=attributes)
            pattern.source = PatternSource.CONFIRMED
            pattern.has_manual_override = False
            pattern.bill_type = suggestion.bill_type
        else:
            pattern = RecurringPattern(
                user_id=user_id,
                source=PatternSource.CONFIRMED,
                bill_type=suggestion.bill_type,
                **attributes
            )

        await self.patterns.upsert_pattern(pattern)
        await self.patterns.remove_from_suppression_list(user_id, [key])

        suggestion.status = SuggestionStatus.CONFIRMED
        suggestion.reviewed_at = datetime.utcnow()
        await self.suggestions.save(suggestion)
        return True

    async def _deny_one(self, user_id: str, suggestion_id: str, reason: DenialReason) -> bool:
        suggestion = await self._load(user_id, suggestion_id)
        if suggestion.status == SuggestionStatus.DENIED:
            return False
        if suggestion.status != SuggestionStatus.PENDING:
            raise ValidationError(message=f"Suggestion is {suggestion.status.value}")

        # Rejecting a re-confirmation keeps the user's own pattern; nothing to suppress
        if suggestion.replaces_pattern_id is None:
            await self.patterns.add_to_suppression_list(
                user_id,
                suggestion.normalized_merchant_key,
                reason=reason.value,
                original_name=suggestion.display_name
            )

        suggestion.status = SuggestionStatus.DENIED
        suggestion.denial_reason = reason
        suggestion.reviewed_at = datetime.utcnow()
        await self.suggestions.save(suggestion)
        return True


def get_suggestion_review_service() -> SuggestionReviewService:
    """Review service bound to the configured document store."""
    return SuggestionReviewService()
