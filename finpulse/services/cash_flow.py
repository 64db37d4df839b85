"""
Cash-flow forecasting.

The projection itself is pure (``build_forecast``); ``CashFlowService``
gathers balances, patterns and the learned multiplier and optionally stores
the resulting snapshot for the learning loop.
"""
from collections import defaultdict
from datetime import date, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, Iterable, List, Optional, Set

import structlog

from ..config import get_settings
from ..infrastructure import DocumentStore, get_document_store
from ..infrastructure.stores import (
    ForecastStore,
    LearningRecordStore,
    PatternStore,
    PreferencesStore,
    TransactionFeed,
    UserRegistry,
)
from ..models.financial import PatternConfidence, RecurringPattern, Transaction
from ..models.forecast import (
    AlertSeverity,
    BreakdownLine,
    DailyProjection,
    ForecastAlert,
    ForecastAlertType,
    ForecastBreakdown,
    ForecastEvent,
    ForecastEventType,
    ForecastItem,
    ForecastSnapshot,
)
from .locks import UserLockRegistry, get_lock_registry
from .merchant import merchant_key_for
from .recurring_detection import occurrences_between

logger = structlog.get_logger()

FORECAST_JOB = "cash_flow_forecast"

CENTS = Decimal("0.01")

# Days of income history before a high-confidence income pattern makes the forecast high confidence
ESTABLISHED_INCOME_DAYS = 90


def _cents(value: Decimal) -> Decimal:
    return value.quantize(CENTS, rounding=ROUND_HALF_UP)


def discretionary_daily_rate(
    transactions: Iterable[Transaction],
    recurring_keys: Set[str],
    lookback_days: int,
    multiplier: float = 1.0
) -> Decimal:
    """Average daily outflow not explained by a recurring pattern, scaled by the learned multiplier."""
    spent = sum(
        (
            tx.amount for tx in transactions
            if not tx.is_inflow
            and not tx.is_exceptional
            and not tx.ignored
            and merchant_key_for(tx) not in recurring_keys
        ),
        Decimal("0")
    )
    return _cents(spent / lookback_days * Decimal(str(multiplier)))


def forecast_confidence(patterns: Iterable[RecurringPattern], today: date) -> PatternConfidence:
    income = [p for p in patterns if p.is_income]
    if not income:
        return PatternConfidence.LOW
    established = today - timedelta(days=ESTABLISHED_INCOME_DAYS)
    for pattern in income:
        if (
            pattern.confidence == PatternConfidence.HIGH
            and pattern.first_seen_date is not None
            and pattern.first_seen_date <= established
        ):
            return PatternConfidence.HIGH
    return PatternConfidence.MEDIUM


def build_forecast(
    user_id: str,
    current_balance: Decimal,
    patterns: List[RecurringPattern],
    daily_rate: Decimal,
    today: date,
    horizon_days: int,
    low_balance_threshold: float,
    large_expense_threshold: float,
    multiplier: float = 1.0
) -> ForecastSnapshot:
    """
    Project end-of-day balances for ``today`` through ``today + horizon_days``.

    Day 0 is the current balance. Occurrences dated today or earlier are
    considered already reflected in that balance.
    """
    if horizon_days < 1:
        raise ValueError("horizon_days must be at least 1")

    first_day = today + timedelta(days=1)
    last_day = today + timedelta(days=horizon_days)
    low = Decimal(str(low_balance_threshold))
    large = Decimal(str(large_expense_threshold))

    scheduled: Dict[date, List[ForecastEvent]] = defaultdict(list)
    income_items: List[ForecastItem] = []
    expense_totals: Dict[str, Decimal] = defaultdict(lambda: Decimal("0"))
    expense_counts: Dict[str, int] = defaultdict(int)
    alerts: List[ForecastAlert] = []

    for pattern in patterns:
        for occurrence in occurrences_between(pattern.next_expected_date, pattern.frequency, first_day, last_day):
            if pattern.is_income:
                scheduled[occurrence].append(ForecastEvent(
                    name=pattern.display_name,
                    amount=pattern.average_amount,
                    event_type=ForecastEventType.RECURRING_INCOME,
                    confidence=pattern.confidence,
                    category=pattern.category,
                    pattern_id=pattern.id,
                ))
                income_items.append(ForecastItem(
                    name=pattern.display_name,
                    amount=pattern.average_amount,
                    date=occurrence,
                    frequency=pattern.frequency,
                    pattern_id=pattern.id,
                ))
                continue

            scheduled[occurrence].append(ForecastEvent(
                name=pattern.display_name,
                amount=-pattern.average_amount,
                event_type=ForecastEventType.RECURRING_EXPENSE,
                confidence=pattern.confidence,
                category=pattern.category,
                pattern_id=pattern.id,
            ))
            expense_totals[pattern.display_name] += pattern.average_amount
            expense_counts[pattern.display_name] += 1
            if pattern.average_amount > large:
                alerts.append(ForecastAlert(
                    alert_type=ForecastAlertType.LARGE_EXPENSE,
                    severity=AlertSeverity.WARNING,
                    date=occurrence,
                    amount=pattern.average_amount,
                    message=f"{pattern.display_name} (${pattern.average_amount:.2f}) is due on {occurrence.isoformat()}",
                ))

    balance = current_balance
    days = [DailyProjection(
        date=today,
        balance=balance,
        is_low=balance < low,
        is_negative=balance < 0,
    )]
    total_income = Decimal("0.00")
    total_expenses = Decimal("0.00")

    for offset in range(1, horizon_days + 1):
        day = today + timedelta(days=offset)
        events = list(scheduled.get(day, []))
        for event in events:
            balance += event.amount
            if event.amount >= 0:
                total_income += event.amount
            else:
                total_expenses -= event.amount
        if daily_rate > 0:
            events.append(ForecastEvent(
                name="Projected spending",
                amount=-daily_rate,
                event_type=ForecastEventType.PROJECTED_SPENDING,
            ))
            balance -= daily_rate
            total_expenses += daily_rate
        days.append(DailyProjection(
            date=day,
            balance=_cents(balance),
            is_low=balance < low,
            is_negative=balance < 0,
            events=events,
        ))

    first_negative = next((d for d in days if d.is_negative), None)
    if first_negative is not None:
        alerts.append(ForecastAlert(
            alert_type=ForecastAlertType.NEGATIVE_BALANCE,
            severity=AlertSeverity.CRITICAL,
            date=first_negative.date,
            amount=first_negative.balance,
            message=f"Balance is projected to go negative on {first_negative.date.isoformat()}",
        ))
    first_low = next((d for d in days if d.is_low), None)
    if first_low is not None:
        alerts.append(ForecastAlert(
            alert_type=ForecastAlertType.LOW_BALANCE,
            severity=AlertSeverity.WARNING,
            date=first_low.date,
            amount=first_low.balance,
            message=f"Balance is projected to drop below ${low:.2f} on {first_low.date.isoformat()}",
        ))
    alerts.sort(key=lambda alert: alert.date)

    lowest = min(days, key=lambda d: (d.balance, d.date))
    discretionary_total = _cents(daily_rate * horizon_days)
    breakdown = ForecastBreakdown(
        income_items=income_items,
        recurring_expense_items=sorted(
            (
                BreakdownLine(name=name, total=_cents(total), occurrences=expense_counts[name])
                for name, total in expense_totals.items()
            ),
            key=lambda line: (-line.total, line.name)
        ),
        discretionary_daily_rate=daily_rate,
        discretionary_total=discretionary_total,
        net_change=_cents(days[-1].balance - current_balance),
    )

    return ForecastSnapshot(
        user_id=user_id,
        start_date=today,
        horizon_days=horizon_days,
        current_balance=current_balance,
        daily_projected_balances=days,
        total_income=_cents(total_income),
        total_expenses=_cents(total_expenses),
        projected_end_balance=days[-1].balance,
        lowest_balance=lowest.balance,
        lowest_balance_date=lowest.date,
        confidence=forecast_confidence(patterns, today),
        breakdown=breakdown,
        alerts=alerts,
        accuracy_adjustment_multiplier=multiplier,
    )


class CashFlowService:
    """Service for cash-flow forecasts."""

    def __init__(self, db: Optional[DocumentStore] = None, locks: Optional[UserLockRegistry] = None):
        self.settings = get_settings()
        self.db = db or get_document_store()
        self.locks = locks or get_lock_registry()
        self.feed = TransactionFeed(self.db)
        self.patterns = PatternStore(self.db)
        self.snapshots = ForecastStore(self.db)
        self.learning = LearningRecordStore(self.db)
        self.preferences = PreferencesStore(self.db)
        self.registry = UserRegistry(self.db)

    async def forecast(
        self,
        user_id: str,
        days: Optional[int] = None,
        threshold: Optional[float] = None,
        store: bool = False,
        exclude_transaction_ids: Optional[Iterable[str]] = None,
        today: Optional[date] = None
    ) -> ForecastSnapshot:
        """
        Project the user's cash balance.

        With ``store=False`` nothing is written. ``exclude_transaction_ids``
        drops transactions (e.g. transfers between own accounts) from the
        discretionary rate.
        """
        today = today or date.today()
        if store:
            async with self.locks.hold(user_id, FORECAST_JOB):
                snapshot = await self._project(user_id, days, threshold, exclude_transaction_ids, today)
                await self.snapshots.save_snapshot(snapshot)
                await self.registry.register(user_id)
            logger.info(
                "Forecast snapshot stored",
                user_id=user_id,
                snapshot_id=snapshot.id,
                horizon_days=snapshot.horizon_days
            )
            return snapshot
        return await self._project(user_id, days, threshold, exclude_transaction_ids, today)

    async def _project(
        self,
        user_id: str,
        days: Optional[int],
        threshold: Optional[float],
        exclude_transaction_ids: Optional[Iterable[str]],
        today: date
    ) -> ForecastSnapshot:
        preferences = (await self.preferences.get_preferences(user_id)).forecast
        horizon = days or preferences.horizon_days
        low_threshold = preferences.low_balance_threshold if threshold is None else threshold

        balance = await self.feed.get_cash_balance(user_id)
        patterns = await self.patterns.get_active_patterns(user_id)
        multiplier = await self.learning.get_latest_multiplier(user_id)

        since = today - timedelta(days=preferences.spending_lookback_days - 1)
        excluded = set(exclude_transaction_ids or ())
        transactions = [
            tx for tx in await self.feed.fetch_transactions(user_id, since, until=today, exclude_exceptional=True)
            if tx.id not in excluded
        ]

        rate = discretionary_daily_rate(
            transactions,
            {p.normalized_merchant_key for p in patterns},
            preferences.spending_lookback_days,
            multiplier
        )
        snapshot = build_forecast(
            user_id,
            current_balance=balance,
            patterns=patterns,
            daily_rate=rate,
            today=today,
            horizon_days=horizon,
            low_balance_threshold=low_threshold,
            large_expense_threshold=preferences.large_expense_threshold,
            multiplier=multiplier,
        )
        if not patterns and not transactions:
            snapshot.insufficient_data = True

        logger.info(
            "Forecast generated",
            user_id=user_id,
            horizon_days=horizon,
            patterns=len(patterns),
            daily_rate=str(rate),
            multiplier=multiplier,
            end_balance=str(snapshot.projected_end_balance),
            alerts=len(snapshot.alerts)
        )
        return snapshot


def get_cash_flow_service() -> CashFlowService:
    """Cash-flow service bound to the configured document store."""
    return CashFlowService()
