"""
Unit tests for the suggestion review queue.
"""
from datetime import date

import pytest

from finpulse.infrastructure.stores import PatternStore, SuggestionStore, TransactionFeed
from finpulse.models.financial import DenialReason, PatternSource, SuggestionStatus
from finpulse.services.recurring import RecurringService
from finpulse.services.suggestions import SuggestionReviewService
from tests.factories.financial_factory import monthly_series

TODAY = date(2024, 6, 15)
USER = "user_123"
GYM_DATES = [date(2024, 4, 5), date(2024, 5, 5), date(2024, 6, 5)]


class TestSuggestionReviewService:
    """Test cases for SuggestionReviewService."""

    @pytest.fixture
    def detection(self, memory_store, locks):
        return RecurringService(db=memory_store, locks=locks)

    @pytest.fixture
    def review(self, memory_store):
        return SuggestionReviewService(db=memory_store)

    @pytest.fixture
    async def pending_id(self, memory_store, detection):
        await TransactionFeed(memory_store).save_transactions(USER, monthly_series("Gym Club", "30.00", GYM_DATES))
        await detection.run_detection(USER, today=TODAY)
        pending = await SuggestionStore(memory_store).list_pending(USER)
        return pending[0].id

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_confirm_promotes_to_pattern(self, review, memory_store, pending_id):
        """Test confirming creates a confirmed pattern."""
        result = await review.confirm(USER, [pending_id])

        assert result.succeeded == 1
        patterns = await PatternStore(memory_store).get_active_patterns(USER)
        assert len(patterns) == 1
        assert patterns[0].source == PatternSource.CONFIRMED
        assert await review.list_pending(USER) == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_confirm_is_idempotent(self, review, pending_id):
        """Test confirming twice skips the second time."""
        await review.confirm(USER, [pending_id])
        result = await review.confirm(USER, [pending_id])
        assert result.succeeded == 0
        assert result.skipped == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_deny_suppresses_future_detection(self, review, detection, memory_store, pending_id):
        """Test a denied merchant is not suggested again."""
        result = await review.deny(USER, [pending_id], DenialReason.NOT_RECURRING)
        assert result.succeeded == 1

        summary = await detection.run_detection(USER, today=TODAY)

        assert summary.suggestions_created == 0
        assert summary.suppressed_skipped == 1
        suggestion = await SuggestionStore(memory_store).get(USER, pending_id)
        assert suggestion.status == SuggestionStatus.DENIED
        assert suggestion.denial_reason == DenialReason.NOT_RECURRING

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_bulk_is_per_item(self, review, pending_id):
        """Test one bad id does not fail the rest."""
        result = await review.confirm(USER, [pending_id, "missing"])
        assert result.succeeded == 1
        assert result.failed == 1
        assert result.errors[0].startswith("missing")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_cannot_deny_confirmed(self, review, pending_id):
        """Test a confirmed suggestion cannot be denied afterwards."""
        await review.confirm(USER, [pending_id])
        result = await review.deny(USER, [pending_id], DenialReason.OTHER)
        assert result.failed == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_clear_pending(self, review, pending_id):
        """Test clearing drops every pending suggestion."""
        assert await review.clear_pending(USER) == 1
        assert await review.list_pending(USER) == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_deny_during_detection_is_not_undone(
        self, review, detection, memory_store, pending_id, monkeypatch
    ):
        """Test a merchant denied while a run is in flight does not come back as a pattern."""
        await TransactionFeed(memory_store).save_transactions(
            USER, monthly_series("Gym Club", "30.00", [date(2024, 3, 5)])
        )
        original = detection.patterns.get_active_patterns

        async def deny_then_read(user_id):
            await review.deny(USER, [pending_id], DenialReason.NOT_RECURRING)
            return await original(user_id)

        monkeypatch.setattr(detection.patterns, "get_active_patterns", deny_then_read)

        summary = await detection.run_detection(USER, today=TODAY)

        assert summary.patterns_created == 0
        assert summary.suppressed_skipped == 1
        assert "gym club" in (await PatternStore(memory_store).get_suppression_list(USER)).entries
        assert await PatternStore(memory_store).get_active_patterns(USER) == []
