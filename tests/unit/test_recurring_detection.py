"""
Unit tests for recurring series detection.
"""
from datetime import date, timedelta
from decimal import Decimal

import pytest

from finpulse.models.financial import BillType, PatternConfidence, RecurringFrequency
from finpulse.services.recurring_detection import (
    add_months,
    advance,
    amounts_are_similar,
    classify_bill_type,
    detect_recurring,
    gap_dispersion,
    infer_frequency,
    monthly_equivalent,
    occurrences_between,
    roll_forward,
    score_confidence,
)
from tests.factories.financial_factory import make_transaction, monthly_series

TODAY = date(2024, 6, 15)


class TestCalendarHelpers:
    """Test cases for date stepping."""

    @pytest.mark.unit
    def test_add_months_clamps_to_month_end(self):
        """Test Jan 31 plus one month lands on the last day of February."""
        assert add_months(date(2024, 1, 31), 1) == date(2024, 2, 29)
        assert add_months(date(2023, 1, 31), 1) == date(2023, 2, 28)
        assert add_months(date(2024, 11, 15), 3) == date(2025, 2, 15)

    @pytest.mark.unit
    def test_advance_by_frequency(self):
        """Test each frequency steps by its interval."""
        start = date(2024, 1, 10)
        assert advance(start, RecurringFrequency.WEEKLY) == date(2024, 1, 17)
        assert advance(start, RecurringFrequency.BIWEEKLY) == date(2024, 1, 24)
        assert advance(start, RecurringFrequency.MONTHLY) == date(2024, 2, 10)
        assert advance(start, RecurringFrequency.QUARTERLY) == date(2024, 4, 10)
        assert advance(start, RecurringFrequency.YEARLY) == date(2025, 1, 10)

    @pytest.mark.unit
    def test_roll_forward_reaches_today(self):
        """Test the next expected date is never in the past."""
        assert roll_forward(date(2024, 6, 1), RecurringFrequency.MONTHLY, TODAY) == date(2024, 7, 1)
        assert roll_forward(date(2024, 3, 15), RecurringFrequency.MONTHLY, TODAY) == date(2024, 6, 15)

    @pytest.mark.unit
    def test_occurrences_between(self):
        """Test occurrences are expanded inside an inclusive window."""
        dates = occurrences_between(date(2024, 6, 20), RecurringFrequency.WEEKLY, date(2024, 6, 16), date(2024, 7, 15))
        assert dates == [date(2024, 6, 20), date(2024, 6, 27), date(2024, 7, 4), date(2024, 7, 11)]

    @pytest.mark.unit
    def test_monthly_equivalent(self):
        """Test normalising amounts to a monthly figure."""
        assert monthly_equivalent(Decimal("100.00"), RecurringFrequency.WEEKLY) == Decimal("433.33")
        assert monthly_equivalent(Decimal("120.00"), RecurringFrequency.YEARLY) == Decimal("10.00")


class TestInferFrequency:
    """Test cases for frequency inference."""

    @pytest.mark.unit
    def test_monthly_from_uneven_month_lengths(self):
        """Test 30/31/28-day gaps infer monthly."""
        dates = [date(2024, 1, 1), date(2024, 1, 31), date(2024, 3, 2), date(2024, 3, 30)]
        frequency, _ = infer_frequency(dates)
        assert frequency == RecurringFrequency.MONTHLY

    @pytest.mark.unit
    def test_weekly(self):
        """Test 7-day gaps infer weekly."""
        dates = [date(2024, 5, 1) + timedelta(days=7 * i) for i in range(4)]
        assert infer_frequency(dates) == (RecurringFrequency.WEEKLY, 7.0)

    @pytest.mark.unit
    def test_biweekly_quarterly_yearly(self):
        """Test the longer cadences."""
        assert infer_frequency([date(2024, 1, 5), date(2024, 1, 19), date(2024, 2, 2)])[0] == RecurringFrequency.BIWEEKLY
        assert infer_frequency([date(2023, 1, 1), date(2023, 4, 1), date(2023, 7, 1)])[0] == RecurringFrequency.QUARTERLY
        assert infer_frequency([date(2022, 3, 1), date(2023, 3, 1)])[0] == RecurringFrequency.YEARLY

    @pytest.mark.unit
    def test_unknown_gap(self):
        """Test a gap matching no frequency yields None."""
        frequency, gap = infer_frequency([date(2024, 1, 1), date(2024, 1, 22), date(2024, 2, 12)])
        assert frequency is None
        assert gap == 21.0

    @pytest.mark.unit
    @pytest.mark.parametrize("dates", [[], [date(2024, 1, 1)]])
    def test_requires_two_dates(self, dates):
        """Test fewer than two dates is a programming error."""
        with pytest.raises(ValueError):
            infer_frequency(dates)


class TestConfidence:
    """Test cases for confidence scoring."""

    @pytest.mark.unit
    def test_thresholds(self):
        """Test the occurrence and dispersion bars."""
        assert score_confidence(4, 0.0) == PatternConfidence.HIGH
        assert score_confidence(3, 0.0) == PatternConfidence.MEDIUM
        assert score_confidence(2, 0.0) == PatternConfidence.LOW
        assert score_confidence(6, 0.3) == PatternConfidence.MEDIUM
        assert score_confidence(6, 0.5) == PatternConfidence.LOW

    @pytest.mark.unit
    def test_dissimilar_amounts_cost_a_level(self):
        """Test irregular amounts downgrade confidence."""
        assert score_confidence(5, 0.0, amounts_similar=False) == PatternConfidence.MEDIUM
        assert score_confidence(3, 0.0, amounts_similar=False) == PatternConfidence.LOW

    @pytest.mark.unit
    @pytest.mark.parametrize("dispersion", [0.0, 0.1, 0.2, 0.4])
    def test_monotone_in_occurrences(self, dispersion):
        """Test more occurrences never lower confidence at fixed dispersion."""
        ranks = {PatternConfidence.LOW: 0, PatternConfidence.MEDIUM: 1, PatternConfidence.HIGH: 2}
        scores = [ranks[score_confidence(n, dispersion)] for n in range(2, 12)]
        assert scores == sorted(scores)

    @pytest.mark.unit
    def test_gap_dispersion_of_regular_series(self):
        """Test perfectly regular gaps have zero dispersion."""
        dates = [date(2024, 1, 1) + timedelta(days=14 * i) for i in range(5)]
        assert gap_dispersion(dates) == 0.0

    @pytest.mark.unit
    def test_amount_similarity(self):
        """Test amounts within tolerance of the mean are similar."""
        assert amounts_are_similar([Decimal("100"), Decimal("110"), Decimal("95")], 0.15)
        assert not amounts_are_similar([Decimal("100"), Decimal("200")], 0.15)


class TestClassifyBillType:
    """Test cases for bill type classification."""

    @pytest.mark.unit
    def test_classification(self):
        """Test category and name keywords map to bill types."""
        assert classify_bill_type("Rent", "Landlord LLC", False) == BillType.HOUSING
        assert classify_bill_type(None, "City Water Dept", False) == BillType.UTILITY
        assert classify_bill_type("Entertainment", "Netflix", False) == BillType.SUBSCRIPTION
        assert classify_bill_type(None, "Acme Corp", True) == BillType.INCOME
        assert classify_bill_type(None, "Acme Corp", False) == BillType.BILL


class TestDetectRecurring:
    """Test cases for detect_recurring."""

    @pytest.mark.unit
    def test_netflix_monthly_subscription(self):
        """Test four monthly charges become one high-confidence expense pattern."""
        transactions = monthly_series(
            "Netflix", "15.99",
            [date(2024, 3, 1), date(2024, 4, 1), date(2024, 5, 1), date(2024, 6, 1)],
            category="Entertainment"
        )

        result = detect_recurring(transactions, TODAY)

        assert len(result.patterns) == 1
        assert result.suggestions == []
        series = result.expenses[0]
        assert series.normalized_merchant_key == "netflix"
        assert series.frequency == RecurringFrequency.MONTHLY
        assert series.average_amount == Decimal("15.99")
        assert series.confidence == PatternConfidence.HIGH
        assert series.is_income is False
        assert series.next_expected_date == date(2024, 7, 1)
        assert series.typical_day == 1
        assert series.occurrence_count == 4
        assert series.bill_type == BillType.SUBSCRIPTION

    @pytest.mark.unit
    def test_single_occurrence_never_emits(self):
        """Test a merchant seen once is not recurring."""
        transactions = [make_transaction(name="One Off Store", date=date(2024, 6, 1), amount=Decimal("40"))]
        result = detect_recurring(transactions, TODAY)
        assert result.patterns == [] and result.suggestions == []
        assert result.groups_considered == 1

    @pytest.mark.unit
    def test_three_occurrences_become_suggestion(self):
        """Test medium confidence series are queued for review."""
        transactions = monthly_series("Gym Club", "30.00", [date(2024, 4, 5), date(2024, 5, 5), date(2024, 6, 5)])
        result = detect_recurring(transactions, TODAY)
        assert result.patterns == []
        assert len(result.suggestions) == 1
        assert result.suggestions[0].confidence == PatternConfidence.MEDIUM

    @pytest.mark.unit
    def test_income_series(self):
        """Test inflows produce an income series."""
        dates = [date(2024, 4, 5) + timedelta(days=14 * i) for i in range(5)]
        transactions = monthly_series("Acme Payroll", "2000.00", dates, is_income=True)
        result = detect_recurring(transactions, TODAY)
        series = result.income[0]
        assert series.is_income is True
        assert series.frequency == RecurringFrequency.BIWEEKLY
        assert series.average_amount == Decimal("2000.00")
        assert series.bill_type == BillType.INCOME

    @pytest.mark.unit
    def test_suppressed_keys_are_skipped(self):
        """Test suppressed merchants are not analysed."""
        transactions = monthly_series(
            "Netflix", "15.99",
            [date(2024, 3, 1), date(2024, 4, 1), date(2024, 5, 1), date(2024, 6, 1)]
        )
        result = detect_recurring(transactions, TODAY, suppressed={"netflix"})
        assert result.patterns == []
        assert result.suppressed_skipped == 1
        assert result.groups_considered == 0

    @pytest.mark.unit
    def test_ignored_transactions_do_not_count(self):
        """Test ignored transactions are left out of groups."""
        transactions = monthly_series(
            "Netflix", "15.99",
            [date(2024, 3, 1), date(2024, 4, 1), date(2024, 5, 1), date(2024, 6, 1)]
        )
        transactions[0] = transactions[0].model_copy(update={"ignored": True})
        result = detect_recurring(transactions, TODAY)
        assert result.patterns == []
        assert result.suggestions[0].occurrence_count == 3

    @pytest.mark.unit
    def test_irregular_amounts_grade_not_gate(self):
        """Test varying amounts lower confidence unless strict mode rejects them."""
        dates = [date(2024, 2, 10), date(2024, 3, 10), date(2024, 4, 10), date(2024, 5, 10), date(2024, 6, 10)]
        transactions = [
            make_transaction(name="City Power", date=day, amount=Decimal(amount))
            for day, amount in zip(dates, ["80", "140", "95", "60", "120"])
        ]

        relaxed = detect_recurring(transactions, TODAY)
        assert relaxed.suggestions[0].confidence == PatternConfidence.MEDIUM
        assert relaxed.suggestions[0].amounts_similar is False

        strict = detect_recurring(transactions, TODAY, require_similar_amounts=True)
        assert strict.patterns == [] and strict.suggestions == []

    @pytest.mark.unit
    def test_deterministic(self):
        """Test the same input gives the same output."""
        transactions = (
            monthly_series("Netflix", "15.99", [date(2024, 3, 1), date(2024, 4, 1), date(2024, 5, 1), date(2024, 6, 1)])
            + monthly_series("Gym Club", "30.00", [date(2024, 4, 5), date(2024, 5, 5), date(2024, 6, 5)])
        )
        first = detect_recurring(transactions, TODAY)
        second = detect_recurring(list(reversed(transactions)), TODAY)
        assert [s.model_dump() for s in first.patterns] == [s.model_dump() for s in second.patterns]
        assert [s.model_dump() for s in first.suggestions] == [s.model_dump() for s in second.suggestions]
