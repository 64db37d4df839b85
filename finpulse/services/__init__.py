"""
Business logic services.
"""
from .anomaly_detection import AnomalyService, get_anomaly_service
from .cash_flow import CashFlowService, get_cash_flow_service
from .forecast_learning import ForecastLearningService, get_forecast_learning_service
from .preferences import PreferencesService, get_preferences_service
from .recurring import RecurringService, get_recurring_service
from .suggestions import SuggestionReviewService, get_suggestion_review_service

__all__ = [
    "AnomalyService",
    "get_anomaly_service",
    "CashFlowService",
    "get_cash_flow_service",
    "ForecastLearningService",
    "get_forecast_learning_service",
    "PreferencesService",
    "get_preferences_service",
    "RecurringService",
    "get_recurring_service",
    "SuggestionReviewService",
    "get_suggestion_review_service",
]
