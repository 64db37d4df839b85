"""
Recurring pattern service: detection runs, manual entry and user overrides.
"""
from datetime import date, timedelta
from typing import Dict, List, Optional

import structlog

from ..config import get_settings
from ..infrastructure import DocumentStore, get_document_store
from ..infrastructure.stores import PatternStore, PreferencesStore, SuggestionStore, TransactionFeed, UserRegistry
from ..models.financial import (
    DetectionSummary,
    ManualPatternRequest,
    PATTERN_FIELDS,
    PatternAttributes,
    PatternConfidence,
    PatternSource,
    PatternUpdateRequest,
    RecurringOverview,
    RecurringPattern,
    RecurringSuggestion,
    SuggestionStatus,
    SuppressionList,
    Transaction,
)
from ..utils.exceptions import ConcurrencyConflictError, ConflictError, NotFoundError, ValidationError
from .insights import TransactionClassifier
from .locks import UserLockRegistry, get_lock_registry
from .merchant import normalize_merchant
from .recurring_detection import (
    DetectedSeries,
    DetectionResult,
    advance,
    classify_bill_type,
    detect_recurring,
    monthly_equivalent,
)

logger = structlog.get_logger()

DETECTION_JOB = "recurring_detection"


def pattern_from_series(user_id: str, series: DetectedSeries, source: PatternSource) -> RecurringPattern:
    return RecurringPattern(
        user_id=user_id,
        source=source,
        bill_type=series.bill_type,
        **series.model_dump(include=PATTERN_FIELDS)
    )


def suggestion_from_series(
    user_id: str,
    series: DetectedSeries,
    reason: Optional[str] = None,
    replaces_pattern_id: Optional[str] = None
) -> RecurringSuggestion:
    return RecurringSuggestion(
        user_id=user_id,
        detection_reason=reason or series.detection_reason,
        bill_type=series.bill_type,
        replaces_pattern_id=replaces_pattern_id,
        **series.model_dump(include=PATTERN_FIELDS)
    )


def _same_attributes(left: PatternAttributes, right: PatternAttributes) -> bool:
    return left.model_dump(include=PATTERN_FIELDS) == right.model_dump(include=PATTERN_FIELDS)


class RecurringService:
    """Service for recurring pattern operations."""

    def __init__(
        self,
        db: Optional[DocumentStore] = None,
        locks: Optional[UserLockRegistry] = None,
        classifier: Optional[TransactionClassifier] = None
    ):
        self.settings = get_settings()
        self.db = db or get_document_store()
        self.locks = locks or get_lock_registry()
        self.classifier = classifier
        self.feed = TransactionFeed(self.db)
        self.patterns = PatternStore(self.db)
        self.suggestions = SuggestionStore(self.db)
        self.preferences = PreferencesStore(self.db)
        self.registry = UserRegistry(self.db)

    async def get_overview(self, user_id: str) -> RecurringOverview:
        """Active patterns split into income and expenses with monthly totals."""
        patterns = await self.patterns.get_active_patterns(user_id)
        overview = RecurringOverview()
        for pattern in patterns:
            monthly = monthly_equivalent(pattern.average_amount, pattern.frequency)
            if pattern.is_income:
                overview.income.append(pattern)
                overview.monthly_income += monthly
            else:
                overview.expenses.append(pattern)
                overview.monthly_expenses += monthly
        return overview

    async def get_pattern(self, user_id: str, pattern_id: str) -> RecurringPattern:
        pattern = await self.patterns.get_pattern(user_id, pattern_id)
        if pattern is None:
            raise NotFoundError(resource_type="recurring_pattern", resource_id=pattern_id)
        return pattern

    async def create_manual_pattern(
        self,
        user_id: str,
        request: ManualPatternRequest,
        today: Optional[date] = None
    ) -> RecurringPattern:
        """Declare a recurring item by hand. It is never rewritten by detection runs."""
        today = today or date.today()
        key = normalize_merchant(request.name)
        if not key:
            raise ValidationError(
                message="Name does not produce a usable merchant key",
                details=[f"name: {request.name!r}"]
            )

        existing = await self.patterns.find_by_key(user_id, key)
        if existing is not None:
            raise ConflictError(
                message=f"A recurring pattern for '{existing.display_name}' already exists",
                details=[f"pattern_id: {existing.id}"]
            )

        pattern = RecurringPattern(
            user_id=user_id,
            normalized_merchant_key=key,
            display_name=request.name,
            frequency=request.frequency,
            average_amount=request.amount,
            next_expected_date=request.next_date or advance(today, request.frequency),
            is_income=request.is_income,
            category=request.category,
            confidence=PatternConfidence.HIGH,
            source=PatternSource.USER_DECLARED,
            bill_type=classify_bill_type(request.category, request.name, request.is_income),
        )
        pattern = await self.patterns.upsert_pattern(pattern)
        await self.patterns.remove_from_suppression_list(user_id, [key])
        await self.suggestions.supersede_pending(user_id, key)
        await self.registry.register(user_id)

        logger.info(
            "Manual recurring pattern created",
            user_id=user_id,
            pattern_id=pattern.id,
            key=key,
            frequency=pattern.frequency.value
        )
        return pattern

    async def update_pattern(
        self,
        user_id: str,
        pattern_id: str,
        request: PatternUpdateRequest
    ) -> RecurringPattern:
        """Apply a user override. Forecasts pick it up on their next run."""
        changes = request.model_dump(exclude_none=True)
        if not changes:
            raise ValidationError(message="No fields to update")

        pattern = await self.get_pattern(user_id, pattern_id)
        for field_name, value in changes.items():
            setattr(pattern, field_name, value)
        # Any user edit protects the pattern from detection refreshes
        pattern.has_manual_override = True

        pattern = await self.patterns.upsert_pattern(pattern)
        logger.info(
            "Recurring pattern updated",
            user_id=user_id,
            pattern_id=pattern_id,
            fields=sorted(changes)
        )
        return pattern

    async def delete_pattern(self, user_id: str, pattern_id: str) -> None:
        """Remove a pattern and keep detection from bringing it back."""
        pattern = await self.get_pattern(user_id, pattern_id)
        await self.patterns.delete_pattern(user_id, pattern_id)
        await self.patterns.add_to_suppression_list(
            user_id,
            pattern.normalized_merchant_key,
            reason="removed",
            original_name=pattern.display_name
        )
        logger.info(
            "Recurring pattern deleted",
            user_id=user_id,
            pattern_id=pattern_id,
            key=pattern.normalized_merchant_key
        )

    async def get_suppression_list(self, user_id: str) -> SuppressionList:
        return await self.patterns.get_suppression_list(user_id)

    async def clear_suppression(self, user_id: str, keys: Optional[List[str]] = None) -> int:
        """Let suppressed merchants be detected again."""
        removed = await self.patterns.remove_from_suppression_list(user_id, keys)
        logger.info("Suppression list cleared", user_id=user_id, removed=removed)
        return removed

    async def run_detection(self, user_id: str, today: Optional[date] = None) -> DetectionSummary:
        """Detect recurring series and reconcile them with stored patterns and suggestions."""
        today = today or date.today()
        async with self.locks.hold(user_id, DETECTION_JOB):
            preferences = await self.preferences.get_preferences(user_id)
            since = today - timedelta(days=preferences.detection.lookback_days)
            transactions = await self.feed.fetch_transactions(user_id, since, exclude_ignored=True)
            suppression = await self.patterns.get_suppression_list(user_id)

            result = detect_recurring(
                transactions,
                today,
                suppressed=set(suppression.entries),
                amount_tolerance=preferences.detection.amount_tolerance,
                require_similar_amounts=preferences.detection.require_similar_amounts
            )
            if self.classifier is not None:
                await self._fill_categories(result, transactions)

            summary = DetectionSummary(
                groups_considered=result.groups_considered,
                suppressed_skipped=result.suppressed_skipped
            )
            if not result.patterns and not result.suggestions:
                logger.info(
                    "No recurring series detected",
                    user_id=user_id,
                    transactions=len(transactions)
                )
                return summary

            await self._ensure_suppression_unchanged(user_id, suppression.version)

            existing = {p.normalized_merchant_key: p for p in await self.patterns.get_active_patterns(user_id)}
            pending: Dict[str, List[RecurringSuggestion]] = {}
            for suggestion in await self.suggestions.list_pending(user_id):
                pending.setdefault(suggestion.normalized_merchant_key, []).append(suggestion)

            for series in result.patterns + result.suggestions:
                await self._reconcile(user_id, series, existing.get(series.normalized_merchant_key),
                                      pending.get(series.normalized_merchant_key, []), summary)

            await self.registry.register(user_id)

        logger.info(
            "Recurring detection completed",
            user_id=user_id,
            transactions=len(transactions),
            **summary.model_dump()
        )
        return summary

    async def _fill_categories(self, result: DetectionResult, transactions: List[Transaction]) -> None:
        """Ask the classifier for a category where the synced data has none."""
        by_id = {tx.id: tx for tx in transactions}
        for series in result.patterns + result.suggestions:
            if series.category or not series.source_transaction_ids:
                continue
            category = await self.classifier.classify(by_id[series.source_transaction_ids[-1]])
            if category:
                series.category = category
                series.bill_type = classify_bill_type(category, series.display_name, series.is_income)

    async def _ensure_suppression_unchanged(self, user_id: str, expected_version: int) -> None:
        current = await self.patterns.get_suppression_list(user_id)
        if current.version != expected_version:
            logger.warning(
                "Suppression list changed during detection",
                user_id=user_id,
                expected_version=expected_version,
                actual_version=current.version
            )
            raise ConcurrencyConflictError(
                message="Suppression list changed during detection; retry the run",
                resource_type="suppression_list",
                expected_version=expected_version,
                actual_version=current.version
            )

    async def _suppressed_now(self, user_id: str, key: str) -> bool:
        suppression = await self.patterns.get_suppression_list(user_id)
        if key in suppression.entries:
            logger.info("Merchant suppressed during detection, skipping", user_id=user_id, key=key)
            return True
        return False

    async def _reconcile(
        self,
        user_id: str,
        series: DetectedSeries,
        existing: Optional[RecurringPattern],
        pending: List[RecurringSuggestion],
        summary: DetectionSummary
    ) -> None:
        key = series.normalized_merchant_key

        # A review may have suppressed the merchant since detection started
        if await self._suppressed_now(user_id, key):
            summary.suppressed_skipped += 1
            return

        if existing is not None and existing.is_protected:
            disagrees = (
                existing.frequency != series.frequency
                or existing.next_expected_date != series.next_expected_date
            )
            if not disagrees:
                return
            denied = await self.suggestions.list_by_key(user_id, key, SuggestionStatus.DENIED)
            if any(s.replaces_pattern_id == existing.id and _same_attributes(s, series) for s in denied):
                return
            reason = (
                f"Detected {series.frequency.value} next on {series.next_expected_date.isoformat()}, "
                f"but your settings say {existing.frequency.value} next on "
                f"{existing.next_expected_date.isoformat()}"
            )
            if await self._queue_suggestion(user_id, series, pending, summary, reason, existing.id):
                summary.reconfirmations_requested += 1
            return

        if existing is not None:
            refreshed = existing.model_copy(update=series.model_dump(include=PATTERN_FIELDS))
            refreshed.bill_type = series.bill_type
            await self.patterns.upsert_pattern(refreshed)
            summary.patterns_refreshed += 1
            summary.suggestions_superseded += await self.suggestions.supersede_pending(user_id, key)
            return

        if series.confidence == PatternConfidence.HIGH:
            created = await self.patterns.upsert_pattern(pattern_from_series(user_id, series, PatternSource.DETECTED))
            if await self._suppressed_now(user_id, key):
                await self.patterns.delete_pattern(user_id, created.id)
                summary.suppressed_skipped += 1
                return
            summary.patterns_created += 1
            summary.suggestions_superseded += await self.suggestions.supersede_pending(user_id, key)
            return

        await self._queue_suggestion(user_id, series, pending, summary)

    async def _queue_suggestion(
        self,
        user_id: str,
        series: DetectedSeries,
        pending: List[RecurringSuggestion],
        summary: DetectionSummary,
        reason: Optional[str] = None,
        replaces_pattern_id: Optional[str] = None
    ) -> bool:
        """Store a pending suggestion unless an identical one is already waiting."""
        for suggestion in pending:
            if _same_attributes(suggestion, series) and suggestion.replaces_pattern_id == replaces_pattern_id:
                return False

        suggestion = suggestion_from_series(user_id, series, reason, replaces_pattern_id)
        await self.suggestions.save(suggestion)
        summary.suggestions_created += 1
        summary.suggestions_superseded += await self.suggestions.supersede_pending(
            user_id, series.normalized_merchant_key, keep_id=suggestion.id
        )
        return True


def get_recurring_service() -> RecurringService:
    """Recurring service bound to the configured document store."""
    return RecurringService()
