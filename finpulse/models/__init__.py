"""
Pydantic models for the finpulse API.
"""
from .anomaly import (
    AnomalyFeedback,
    AnomalySeverity,
    AnomalyStatus,
    AnomalyType,
    DetectedAnomaly,
    MerchantBaseline,
)
from .base import IdentifiedModel, TimestampedModel, UserOwnedModel, VersionedModel
from .financial import (
    Account,
    AccountType,
    DenialReason,
    PatternConfidence,
    PatternSource,
    RecurringFrequency,
    RecurringPattern,
    RecurringSuggestion,
    SuggestionStatus,
    SuppressionList,
    Transaction,
)
from .forecast import ForecastSnapshot, LearningRecord
from .preferences import UserPreferences

__all__ = [
    "Account",
    "AccountType",
    "AnomalyFeedback",
    "AnomalySeverity",
    "AnomalyStatus",
    "AnomalyType",
    "DenialReason",
    "DetectedAnomaly",
    "ForecastSnapshot",
    "IdentifiedModel",
    "LearningRecord",
    "MerchantBaseline",
    "PatternConfidence",
    "PatternSource",
    "RecurringFrequency",
    "RecurringPattern",
    "RecurringSuggestion",
    "SuggestionStatus",
    "SuppressionList",
    "TimestampedModel",
    "Transaction",
    "UserOwnedModel",
    "UserPreferences",
    "VersionedModel",
]
