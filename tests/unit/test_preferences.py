"""
Unit tests for user preferences.
"""
import pytest
from pydantic import ValidationError as PydanticValidationError

from finpulse.models.preferences import (
    AnomalyPreferences,
    ForecastPreferences,
    PreferencesUpdateRequest,
)
from finpulse.services.preferences import PreferencesService
from finpulse.utils.exceptions import ValidationError

USER = "user_123"


@pytest.fixture
def service(memory_store):
    return PreferencesService(db=memory_store)


@pytest.mark.unit
class TestPreferencesService:
    """Test cases for PreferencesService."""

    async def test_defaults_from_settings(self, service):
        """Test unset preferences fall back to configured defaults."""
        prefs = await service.get_preferences(USER)

        assert prefs.version == 0
        assert prefs.anomaly.sensitivity == 2.5
        assert prefs.forecast.horizon_days == 30
        assert prefs.detection.lookback_days == 400

    async def test_update_replaces_only_given_sections(self, service):
        """Test sections absent from the request keep their values."""
        saved = await service.update_preferences(USER, PreferencesUpdateRequest(
            forecast=ForecastPreferences(horizon_days=60, low_balance_threshold=250.0)
        ))
        assert saved.version == 1

        again = await service.update_preferences(USER, PreferencesUpdateRequest(
            anomaly=AnomalyPreferences(sensitivity=3.0, detect_duplicates=False)
        ))

        assert again.version == 2
        loaded = await service.get_preferences(USER)
        assert loaded.forecast.horizon_days == 60
        assert loaded.forecast.low_balance_threshold == 250.0
        assert loaded.anomaly.sensitivity == 3.0
        assert loaded.anomaly.detect_duplicates is False

    async def test_empty_update_rejected(self, service):
        """Test a request with no sections is a validation error."""
        with pytest.raises(ValidationError):
            await service.update_preferences(USER, PreferencesUpdateRequest())

    def test_critical_must_not_be_below_sensitivity(self):
        """Test a critical multiple under the warning sensitivity is rejected."""
        with pytest.raises(PydanticValidationError):
            AnomalyPreferences(sensitivity=4.0, critical_multiple=3.0)
