"""
Anomaly detection models: merchant baselines and detected anomalies.
"""
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field

from .base import UserOwnedModel


class AnomalyType(str, Enum):
    """Kinds of unusual activity."""
    NEW_MERCHANT = "new_merchant"
    AMOUNT_OUTLIER = "amount_outlier"
    MISSED_RECURRING = "missed_recurring"
    DUPLICATE_CHARGE = "duplicate_charge"
    PRICE_INCREASE = "price_increase"
    FREQUENCY_SPIKE = "frequency_spike"


class AnomalySeverity(str, Enum):
    """Severity of an anomaly."""
    WARNING = "warning"
    CRITICAL = "critical"


class AnomalyStatus(str, Enum):
    """User-driven lifecycle of an anomaly."""
    PENDING = "pending"
    DISMISSED = "dismissed"
    CONFIRMED = "confirmed"
    RESOLVED = "resolved"


class AnomalyFeedback(str, Enum):
    """User verdict on an anomaly."""
    EXPECTED = "expected"
    SUSPICIOUS = "suspicious"
    FRAUD = "fraud"


class MerchantBaseline(BaseModel):
    """Spending statistics for one merchant over the baseline window."""

    user_id: str
    normalized_merchant_key: str
    merchant_name: str
    mean_amount: float
    std_dev_amount: float = Field(..., ge=0)
    min_amount: float
    max_amount: float
    median_amount: float
    transaction_count: int = Field(..., ge=1)
    typical_category: Optional[str] = None
    first_transaction_date: date
    last_transaction_date: date
    average_days_between: Optional[float] = Field(None, gt=0)
    last_calculated: datetime = Field(default_factory=datetime.utcnow)
    false_positive_count: int = Field(default=0, ge=0)


class DetectedAnomaly(UserOwnedModel):
    """A flagged transaction or missed charge."""

    transaction_id: Optional[str] = None
    pattern_id: Optional[str] = None
    anomaly_type: AnomalyType
    severity: AnomalySeverity
    status: AnomalyStatus = Field(default=AnomalyStatus.PENDING)
    detected_at: datetime = Field(default_factory=datetime.utcnow)
    false_positive: bool = False
    user_feedback: Optional[AnomalyFeedback] = None
    merchant_key: Optional[str] = None
    merchant_name: Optional[str] = None
    amount: Optional[Decimal] = None
    expected_amount: Optional[Decimal] = None
    deviation: Optional[float] = None
    expected_date: Optional[date] = None
    title: str
    description: str
    reviewed_at: Optional[datetime] = None

    @property
    def dedup_key(self) -> str:
        """Deterministic identity used to avoid storing the same anomaly twice."""
        if self.transaction_id:
            return f"{self.transaction_id}__{self.anomaly_type.value}"
        expected = self.expected_date.isoformat() if self.expected_date else "none"
        return f"{self.anomaly_type.value}__{self.pattern_id}__{expected}"


class AnomalyStatusUpdate(BaseModel):
    """Status change requested by the user."""

    status: AnomalyStatus
    feedback: Optional[AnomalyFeedback] = None


class SaveResult(BaseModel):
    """Outcome of persisting anomalies."""

    saved: int = 0
    duplicates: int = 0


class BaselineSummary(BaseModel):
    """Outcome of a baseline recalculation."""

    baselines: int = 0
    transactions_used: int = 0
    window_start: date
    window_end: date


class AnomalyDetectionReport(BaseModel):
    """Outcome of a detection pass."""

    anomalies: List[DetectedAnomaly] = Field(default_factory=list)
    transactions_checked: int = 0
    saved: int = 0
    duplicates: int = 0
