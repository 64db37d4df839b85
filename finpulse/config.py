"""
Service settings loaded from the environment (and `.env`).

Analytics defaults here seed each user's preferences; per-user overrides
live in the preferences document.
"""

from typing import List, Optional
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime settings for the finpulse API."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # App settings
    app_name: str = Field(default="finpulse-api", description="Application name")
    version: str = Field(default="1.0.0", description="Service version reported by health checks")
    debug: bool = Field(default=False, description="Enables docs and verbose errors")
    environment: str = Field(default="production", description="development, testing, staging or production")

    # Storage
    storage_backend: str = Field(default="firestore", description="Document store backend: firestore or memory")
    firestore_project_id: Optional[str] = Field(default=None, description="Firestore project ID")
    firestore_database: str = Field(default="(default)", description="Firestore database holding all user collections")
    use_firestore_emulator: bool = Field(default=False, description="Connect to a local Firestore emulator")
    firestore_emulator_host: str = Field(default="localhost:8081", description="host:port of the Firestore emulator")
    google_credentials_path: Optional[str] = Field(default=None, description="Service account key file; ambient credentials when unset")
    batch_size: int = Field(default=25, ge=1, le=500, description="Maximum writes committed per batch")

    # API
    api_prefix: str = Field(default="/api/v1", description="Prefix for every router")
    cors_origins: str = Field(default="", description="Comma-separated origins allowed by CORS")

    # Monitoring and logging
    log_level: str = Field(default="INFO", description="Root log level for structlog output")

    # Server settings
    host: str = Field(default="0.0.0.0", description="Bind address for uvicorn")
    port: int = Field(default=8080, ge=1, le=65535, description="Bind port for uvicorn")

    # Recurring detection defaults
    detection_lookback_days: int = Field(default=400, ge=30, description="History window scanned for recurring series")
    amount_tolerance: float = Field(default=0.15, gt=0, lt=1, description="Allowed relative deviation from the average amount")
    require_similar_amounts: bool = Field(default=False, description="Reject series whose amounts are not similar")

    # Anomaly detection defaults
    baseline_window_days: int = Field(default=180, ge=30, description="Trailing window for merchant baselines")
    anomaly_sensitivity: float = Field(default=2.5, gt=0, description="Standard deviations before an amount is an outlier")
    anomaly_critical_multiple: float = Field(default=5.0, gt=0, description="Standard deviations before an outlier is critical")
    anomaly_recent_window_days: int = Field(default=7, ge=1, description="Days of recent transactions checked for anomalies")
    missed_recurring_grace_days: int = Field(default=4, ge=0, description="Days after the expected date before a charge is missed")
    duplicate_window_days: int = Field(default=2, ge=0, description="Days within which an identical charge is a duplicate")
    price_increase_threshold: float = Field(default=0.10, gt=0, description="Relative rise over a recurring charge's average that is reported")
    new_merchant_amount_threshold: float = Field(default=0.0, ge=0, description="New merchants are flagged only from this amount; 0 flags every one")
    frequency_spike_ratio: float = Field(default=2.0, gt=1, description="Weekly charge count over the baseline rate that is a spike")

    # Forecast defaults
    forecast_horizon_days: int = Field(default=30, ge=1, le=365, description="Default forecast horizon")
    low_balance_threshold: float = Field(default=100.0, description="Balance below which a day is flagged low")
    large_expense_threshold: float = Field(default=500.0, ge=0, description="Recurring charge amount that raises an alert")
    spending_lookback_days: int = Field(default=30, ge=7, description="Trailing window for the discretionary spending rate")

    # Learning loop
    learning_scheduler_enabled: bool = Field(default=True, description="Run the forecast learning cycle periodically")
    learning_interval_hours: int = Field(default=24, ge=1, description="Hours between learning cycles")
    learning_window_days: int = Field(default=30, ge=1, description="Trailing window of comparisons used for accuracy")
    learning_damping: float = Field(default=0.5, gt=0, le=1, description="Fraction of the observed error applied to the multiplier")
    min_multiplier: float = Field(default=0.5, gt=0, description="Lower bound of the accuracy adjustment multiplier")
    max_multiplier: float = Field(default=2.0, gt=0, description="Upper bound of the accuracy adjustment multiplier")

    def get_cors_origins_list(self) -> List[str]:
        """Get CORS origins as a list."""
        if not self.cors_origins:
            return []
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v):
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v.upper()

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v):
        """Validate environment."""
        valid_envs = ["development", "testing", "staging", "production"]
        if v.lower() not in valid_envs:
            raise ValueError(f"Invalid environment. Must be one of: {valid_envs}")
        return v.lower()

    @field_validator("storage_backend")
    @classmethod
    def validate_storage_backend(cls, v):
        """Validate storage backend."""
        valid_backends = ["firestore", "memory"]
        if v.lower() not in valid_backends:
            raise ValueError(f"Invalid storage backend. Must be one of: {valid_backends}")
        return v.lower()

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.environment == "development"

    @property
    def is_testing(self) -> bool:
        """Check if running in testing mode."""
        return self.environment == "testing"

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.environment == "production"

    @property
    def docs_url(self) -> Optional[str]:
        """Get docs URL based on environment."""
        return "/docs" if self.debug or self.is_development else None

    @property
    def openapi_url(self) -> Optional[str]:
        """Get OpenAPI URL based on environment."""
        return "/openapi.json" if self.debug or self.is_development else None


# Module-level settings shared by routers and services
settings = Settings()


def get_settings() -> Settings:
    """Return the shared settings; services call this rather than importing the global."""
    return settings
