"""
Forecast learning loop.

Stored forecasts are scored against the balances that actually happened and
the result is folded into an accuracy-adjustment multiplier that scales the
discretionary spending rate of later forecasts.
"""
import math
from datetime import date, datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, Iterable, List, Optional, Sequence

import numpy as np
import pandas as pd
import structlog
from sklearn.metrics import mean_absolute_error

from ..config import get_settings
from ..infrastructure import DocumentStore, get_document_store
from ..infrastructure.stores import ForecastStore, LearningRecordStore, TransactionFeed
from ..models.financial import Transaction
from ..models.forecast import (
    AccuracySummary,
    ComparisonSummary,
    DayComparison,
    ErrorAnalysisSummary,
    ForecastSnapshot,
    LearningAction,
    LearningCycleResult,
    LearningRecord,
    LearningStatus,
)
from .insights import ErrorExplainer
from .locks import UserLockRegistry, get_lock_registry
from .recurring import RecurringService

logger = structlog.get_logger()

LEARNING_JOB = "forecast_learning"

CENTS = Decimal("0.01")

# Fewer compared days than this produce no learning record
MIN_DAYS_FOR_ACCURACY = 3


def reconstruct_balances(
    current_balance: Decimal,
    transactions: Iterable[Transaction],
    dates: Sequence[date]
) -> Dict[date, Decimal]:
    """
    End-of-day balances for past ``dates``, walking back from today's balance.

    The balance at the end of day ``d`` is today's balance minus the cash
    effect of every transaction dated after ``d``.
    """
    frame = pd.DataFrame(
        [{"date": tx.date, "effect": float(tx.cash_effect)} for tx in transactions],
        columns=["date", "effect"]
    )
    daily = frame.groupby("date")["effect"].sum().sort_index()
    # Effect of everything dated on or after each transaction date
    from_date = daily[::-1].cumsum()[::-1]

    balances = {}
    for day in dates:
        later = from_date[from_date.index > day]
        moved = float(later.iloc[0]) if not later.empty else 0.0
        balances[day] = (current_balance - Decimal(str(round(moved, 2)))).quantize(CENTS, rounding=ROUND_HALF_UP)
    return balances


def compare_snapshot(snapshot: ForecastSnapshot, actuals: Dict[date, Decimal]) -> List[DayComparison]:
    """Per-day predicted versus actual balances for the projected days."""
    comparisons = []
    for projection in snapshot.daily_projected_balances[1:]:
        actual = actuals[projection.date]
        error = projection.balance - actual
        comparisons.append(DayComparison(
            date=projection.date,
            predicted=projection.balance,
            actual=actual,
            error=error,
            error_percent=round(float(abs(error) / abs(actual)) * 100, 4) if actual != 0 else None,
        ))
    return comparisons


def direction_accuracy(snapshots: Sequence[ForecastSnapshot]) -> float:
    """Share of consecutive day pairs where predicted and actual balances moved the same way."""
    agreed = 0
    pairs = 0
    for snapshot in snapshots:
        predicted = np.array([float(c.predicted) for c in snapshot.comparison], dtype=float)
        actual = np.array([float(c.actual) for c in snapshot.comparison], dtype=float)
        if len(predicted) < 2:
            continue
        agreed += int(np.sum(np.sign(np.diff(predicted)) == np.sign(np.diff(actual))))
        pairs += len(predicted) - 1
    return agreed / pairs if pairs else 0.0


def adjusted_multiplier(
    previous: float,
    snapshots: Sequence[ForecastSnapshot],
    damping: float,
    lower: float,
    upper: float
) -> float:
    """
    Damped update of the discretionary spending multiplier.

    For each snapshot the spend that would have reproduced the actual final
    balance is ``predicted_discretionary + (predicted_final - actual_final)``.
    Its mean ratio to the predicted discretionary spend moves the multiplier
    by ``damping`` of the way.
    """
    ratios = []
    for snapshot in snapshots:
        predicted_spend = float(snapshot.breakdown.discretionary_total)
        if predicted_spend <= 0 or not snapshot.comparison:
            continue
        final = snapshot.comparison[-1]
        implied_spend = predicted_spend + float(final.predicted - final.actual)
        ratios.append(implied_spend / predicted_spend)

    ratio = float(np.mean(ratios)) if ratios else 1.0
    updated = previous * (1 + damping * (ratio - 1))
    if not math.isfinite(updated):
        return previous
    return round(min(max(updated, lower), upper), 4)


class ForecastLearningService:
    """Runs the learning stages for a user."""

    def __init__(
        self,
        db: Optional[DocumentStore] = None,
        locks: Optional[UserLockRegistry] = None,
        explainer: Optional[ErrorExplainer] = None
    ):
        self.settings = get_settings()
        self.db = db or get_document_store()
        self.locks = locks or get_lock_registry()
        self.explainer = explainer
        self.feed = TransactionFeed(self.db)
        self.snapshots = ForecastStore(self.db)
        self.records = LearningRecordStore(self.db)
        self.recurring = RecurringService(self.db, self.locks)

    async def analyze_patterns(self, user_id: str, today: Optional[date] = None) -> int:
        """Refresh recurring patterns. Returns how many were created or refreshed."""
        summary = await self.recurring.run_detection(user_id, today)
        return summary.patterns_created + summary.patterns_refreshed

    async def compare_actuals(self, user_id: str, today: Optional[date] = None) -> ComparisonSummary:
        """Score every elapsed, not yet compared snapshot against reconstructed balances."""
        today = today or date.today()
        summary = ComparisonSummary()
        snapshots = await self.snapshots.get_past_snapshots(user_id, before=today)
        pending = [s for s in snapshots if s.compared_at is None]
        summary.snapshots_skipped = len(snapshots) - len(pending)
        if not pending:
            return summary

        earliest = min(s.start_date for s in pending)
        transactions = await self.feed.fetch_transactions(user_id, earliest, exclude_ignored=False)
        balance = await self.feed.get_cash_balance(user_id)
        days = sorted({p.date for s in pending for p in s.daily_projected_balances})
        actuals = reconstruct_balances(balance, transactions, days)

        now = datetime.utcnow()
        for snapshot in pending:
            snapshot.comparison = compare_snapshot(snapshot, actuals)
            snapshot.compared_at = now
            summary.days_compared += len(snapshot.comparison)
        await self.snapshots.save_comparisons(user_id, pending)
        summary.snapshots_compared = len(pending)

        logger.info("Forecast snapshots compared", user_id=user_id, **summary.model_dump())
        return summary

    async def analyze_errors(self, user_id: str, today: Optional[date] = None) -> ErrorAnalysisSummary:
        if self.explainer is None:
            return ErrorAnalysisSummary()
        compared = await self._compared_in_window(user_id, today or date.today())
        comparisons = [c for s in compared for c in s.comparison]
        if not comparisons:
            return ErrorAnalysisSummary()
        insights = await self.explainer.explain_errors(user_id, comparisons, await self.records.list_records(user_id))
        logger.info("Forecast errors analysed", user_id=user_id, insights=len(insights))
        return ErrorAnalysisSummary(analyzed=True, insights=insights)

    async def calculate_accuracy(self, user_id: str, today: Optional[date] = None) -> AccuracySummary:
        """
        Accuracy metrics and the next multiplier over the trailing window.

        Insufficient data is a normal outcome and writes nothing. Running it
        again without new comparisons returns the latest record unchanged.
        """
        compared = await self._compared_in_window(user_id, today or date.today())
        comparisons = [c for s in compared for c in s.comparison]
        if len(comparisons) < MIN_DAYS_FOR_ACCURACY:
            logger.info("Not enough compared days for accuracy", user_id=user_id, days=len(comparisons))
            return AccuracySummary(insufficient_data=True, days_compared=len(comparisons))

        latest = await self.records.list_records(user_id, limit=1)
        newest_comparison = max(s.compared_at for s in compared)
        if latest and latest[0].analyzed_at >= newest_comparison:
            return AccuracySummary(record=latest[0], days_compared=len(comparisons))

        predicted = [float(c.predicted) for c in comparisons]
        actual = [float(c.actual) for c in comparisons]
        percents = [c.error_percent for c in comparisons if c.error_percent is not None]
        previous = latest[0].accuracy_adjustment_multiplier if latest else 1.0

        record = LearningRecord(
            user_id=user_id,
            mean_error_percent=round(float(np.mean(percents)), 4) if percents else 0.0,
            mean_absolute_error=round(float(mean_absolute_error(actual, predicted)), 4),
            direction_accuracy=round(direction_accuracy(compared), 4),
            accuracy_adjustment_multiplier=adjusted_multiplier(
                previous,
                compared,
                damping=self.settings.learning_damping,
                lower=self.settings.min_multiplier,
                upper=self.settings.max_multiplier
            ),
            previous_multiplier=previous,
            snapshots_analyzed=len(compared),
            days_compared=len(comparisons),
        )
        await self.records.append_learning_record(record)

        logger.info(
            "Forecast accuracy recorded",
            user_id=user_id,
            mean_error_percent=record.mean_error_percent,
            direction_accuracy=record.direction_accuracy,
            previous_multiplier=previous,
            multiplier=record.accuracy_adjustment_multiplier
        )
        return AccuracySummary(record=record, days_compared=len(comparisons))

    async def _compared_in_window(self, user_id: str, today: date) -> List[ForecastSnapshot]:
        window_start = today - timedelta(days=self.settings.learning_window_days)
        snapshots = await self.snapshots.get_past_snapshots(user_id, before=today)
        return [
            s for s in snapshots
            if s.comparison and s.compared_at is not None and s.end_date >= window_start
        ]

    async def trigger(self, user_id: str, action: LearningAction, today: Optional[date] = None) -> LearningCycleResult:
        """Run one stage, or all of them in order for ``full_cycle``."""
        result = LearningCycleResult(action=action)
        full = action == LearningAction.FULL_CYCLE

        if full or action == LearningAction.ANALYZE_PATTERNS:
            result.patterns_learned = await self.analyze_patterns(user_id, today)

        async with self.locks.hold(user_id, LEARNING_JOB):
            if full or action == LearningAction.COMPARE_ACTUALS:
                result.comparison = await self.compare_actuals(user_id, today)
            if full or action == LearningAction.ANALYZE_ERRORS:
                result.errors = await self.analyze_errors(user_id, today)
            if full or action == LearningAction.CALCULATE_ACCURACY:
                result.accuracy = await self.calculate_accuracy(user_id, today)

        logger.info("Learning stage completed", user_id=user_id, action=action.value)
        return result

    async def run_cycle(self, user_id: str, today: Optional[date] = None) -> LearningCycleResult:
        return await self.trigger(user_id, LearningAction.FULL_CYCLE, today)

    async def get_status(self, user_id: str, today: Optional[date] = None) -> LearningStatus:
        today = today or date.today()
        records = await self.records.list_records(user_id)
        snapshots = await self.snapshots.get_past_snapshots(user_id, before=today)
        return LearningStatus(
            current_multiplier=records[0].accuracy_adjustment_multiplier if records else 1.0,
            records=records,
            snapshots_pending_comparison=sum(1 for s in snapshots if s.compared_at is None),
        )


def get_forecast_learning_service() -> ForecastLearningService:
    """Learning service bound to the configured document store."""
    return ForecastLearningService()
