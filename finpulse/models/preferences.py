"""
Per-user tuning of detection, anomaly and forecast behaviour.
"""
from typing import Optional

from pydantic import BaseModel, Field, model_validator

from ..config import get_settings


def _default(name: str):
    return lambda: getattr(get_settings(), name)


class DetectionPreferences(BaseModel):
    amount_tolerance: float = Field(default_factory=_default("amount_tolerance"), gt=0, lt=1)
    require_similar_amounts: bool = Field(default_factory=_default("require_similar_amounts"))
    lookback_days: int = Field(default_factory=_default("detection_lookback_days"), ge=30, le=1095)


class AnomalyPreferences(BaseModel):
    sensitivity: float = Field(default_factory=_default("anomaly_sensitivity"), gt=0, le=10)
    critical_multiple: float = Field(default_factory=_default("anomaly_critical_multiple"), gt=0, le=20)
    recent_window_days: int = Field(default_factory=_default("anomaly_recent_window_days"), ge=1, le=90)
    missed_grace_days: int = Field(default_factory=_default("missed_recurring_grace_days"), ge=0, le=30)
    duplicate_window_days: int = Field(default_factory=_default("duplicate_window_days"), ge=0, le=14)
    price_increase_threshold: float = Field(default_factory=_default("price_increase_threshold"), gt=0, le=5)
    new_merchant_amount_threshold: float = Field(default_factory=_default("new_merchant_amount_threshold"), ge=0)
    frequency_spike_ratio: float = Field(default_factory=_default("frequency_spike_ratio"), gt=1, le=20)
    detect_new_merchants: bool = True
    detect_amount_outliers: bool = True
    detect_missed_recurring: bool = True
    detect_duplicates: bool = True
    detect_price_increases: bool = True
    detect_frequency_spikes: bool = True

    @model_validator(mode="after")
    def check_critical_multiple(self):
        """A critical outlier must be at least as far out as a warning."""
        if self.critical_multiple < self.sensitivity:
            raise ValueError("critical_multiple must be greater than or equal to sensitivity")
        return self


class ForecastPreferences(BaseModel):
    horizon_days: int = Field(default_factory=_default("forecast_horizon_days"), ge=1, le=365)
    low_balance_threshold: float = Field(default_factory=_default("low_balance_threshold"))
    large_expense_threshold: float = Field(default_factory=_default("large_expense_threshold"), ge=0)
    spending_lookback_days: int = Field(default_factory=_default("spending_lookback_days"), ge=7, le=365)


class UserPreferences(BaseModel):
    """Typed per-user configuration."""

    user_id: str
    version: int = Field(default=0, ge=0)
    detection: DetectionPreferences = Field(default_factory=DetectionPreferences)
    anomaly: AnomalyPreferences = Field(default_factory=AnomalyPreferences)
    forecast: ForecastPreferences = Field(default_factory=ForecastPreferences)


class PreferencesUpdateRequest(BaseModel):
    """Partial replacement of preference sections."""

    detection: Optional[DetectionPreferences] = None
    anomaly: Optional[AnomalyPreferences] = None
    forecast: Optional[ForecastPreferences] = None
