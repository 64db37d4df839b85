"""
Cash-flow forecast and learning loop models.
"""
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field

from .base import UserOwnedModel
from .financial import PatternConfidence, RecurringFrequency


class ForecastEventType(str, Enum):
    """Cash movement applied to a projected day."""
    RECURRING_INCOME = "recurring_income"
    RECURRING_EXPENSE = "recurring_expense"
    PROJECTED_SPENDING = "projected_spending"


class ForecastAlertType(str, Enum):
    """Kinds of forecast alerts."""
    LOW_BALANCE = "low_balance"
    NEGATIVE_BALANCE = "negative_balance"
    LARGE_EXPENSE = "large_expense"


class AlertSeverity(str, Enum):
    WARNING = "warning"
    CRITICAL = "critical"


class LearningAction(str, Enum):
    """Stages of the learning cycle that can be triggered on demand."""
    ANALYZE_PATTERNS = "analyze_patterns"
    COMPARE_ACTUALS = "compare_actuals"
    ANALYZE_ERRORS = "analyze_errors"
    CALCULATE_ACCURACY = "calculate_accuracy"
    FULL_CYCLE = "full_cycle"


class ForecastEvent(BaseModel):
    """A single cash movement on a projected day."""

    name: str
    amount: Decimal
    event_type: ForecastEventType
    confidence: Optional[PatternConfidence] = None
    category: Optional[str] = None
    pattern_id: Optional[str] = None


class DailyProjection(BaseModel):
    """Projected end-of-day balance."""

    date: date
    balance: Decimal
    is_low: bool = False
    is_negative: bool = False
    events: List[ForecastEvent] = Field(default_factory=list)


class ForecastAlert(BaseModel):
    """Structured forecast warning."""

    alert_type: ForecastAlertType
    severity: AlertSeverity
    date: date
    amount: Optional[Decimal] = None
    message: str


class ForecastItem(BaseModel):
    """A known recurring movement inside the horizon."""

    name: str
    amount: Decimal
    date: date
    frequency: RecurringFrequency
    pattern_id: Optional[str] = None


class BreakdownLine(BaseModel):
    """Recurring expenses aggregated by name."""

    name: str
    total: Decimal
    occurrences: int


class ForecastBreakdown(BaseModel):
    """Components that make up a forecast."""

    income_items: List[ForecastItem] = Field(default_factory=list)
    recurring_expense_items: List[BreakdownLine] = Field(default_factory=list)
    discretionary_daily_rate: Decimal = Decimal("0.00")
    discretionary_total: Decimal = Decimal("0.00")
    net_change: Decimal = Decimal("0.00")


class DayComparison(BaseModel):
    """Predicted versus realised balance for one day."""

    date: date
    predicted: Decimal
    actual: Decimal
    error: Decimal
    error_percent: Optional[float] = None


class ForecastSnapshot(UserOwnedModel):
    """A generated forecast, stored so it can later be scored against reality."""

    generated_at: datetime = Field(default_factory=datetime.utcnow)
    start_date: date
    horizon_days: int = Field(..., ge=1)
    current_balance: Decimal
    daily_projected_balances: List[DailyProjection]
    total_income: Decimal
    total_expenses: Decimal
    projected_end_balance: Decimal
    lowest_balance: Decimal
    lowest_balance_date: date
    confidence: PatternConfidence
    breakdown: ForecastBreakdown
    alerts: List[ForecastAlert] = Field(default_factory=list)
    accuracy_adjustment_multiplier: float = 1.0
    insufficient_data: bool = False
    comparison: Optional[List[DayComparison]] = None
    compared_at: Optional[datetime] = None

    @property
    def end_date(self) -> date:
        return self.daily_projected_balances[-1].date


class LearningRecord(UserOwnedModel):
    """Accuracy metrics from one learning pass. Append-only."""

    analyzed_at: datetime = Field(default_factory=datetime.utcnow)
    mean_error_percent: float
    mean_absolute_error: float
    direction_accuracy: float = Field(..., ge=0, le=1)
    accuracy_adjustment_multiplier: float
    previous_multiplier: float
    snapshots_analyzed: int
    days_compared: int


class ComparisonSummary(BaseModel):
    """Outcome of the compare-actuals stage."""

    snapshots_compared: int = 0
    snapshots_skipped: int = 0
    days_compared: int = 0


class AccuracySummary(BaseModel):
    """Outcome of the calculate-accuracy stage."""

    insufficient_data: bool = False
    record: Optional[LearningRecord] = None
    days_compared: int = 0


class ErrorAnalysisSummary(BaseModel):
    """Outcome of the analyze-errors stage."""

    analyzed: bool = False
    insights: List[str] = Field(default_factory=list)


class LearningCycleResult(BaseModel):
    """Result of a learning trigger."""

    action: LearningAction
    patterns_learned: Optional[int] = None
    comparison: Optional[ComparisonSummary] = None
    errors: Optional[ErrorAnalysisSummary] = None
    accuracy: Optional[AccuracySummary] = None


class LearningStatus(BaseModel):
    """Current state of the learning loop for a user."""

    current_multiplier: float
    records: List[LearningRecord] = Field(default_factory=list)
    snapshots_pending_comparison: int = 0
