"""Configuration settings for the caregate client security layer."""

from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="CAREGATE_",
        case_sensitive=False,
        extra="ignore"
    )

    # Logging Settings
    log_level: str = Field("INFO", description="Logging level")
    log_dir: Path = Field(Path("./logs"), description="Log directory")

    # Rate Limit Storage Settings
    storage_dir: Path = Field(Path("./.caregate"), description="Directory for persisted rate limit data")
    storage_key: str = Field("caregate_rate_limits", description="Key the attempt store is saved under")

    # Rate Limit Maintenance Settings
    sweep_interval_ms: int = Field(60 * 1000, description="Interval between expired-attempt sweeps")
    max_retention_ms: int = Field(60 * 60 * 1000, description="Retention ceiling for attempts of unknown windows")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v):
        """Validate log level setting."""
        allowed = ["TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in allowed:
            raise ValueError(f"Log level must be one of: {allowed}")
        return v.upper()

    @field_validator("sweep_interval_ms", "max_retention_ms")
    @classmethod
    def validate_positive(cls, v):
        """Intervals must be positive."""
        if v <= 0:
            raise ValueError("Value must be greater than zero")
        return v


# Global settings instance
settings = Settings()
