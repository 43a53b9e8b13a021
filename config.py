"""
Configuration management for Email Profile Crawler
"""
from typing import Optional

from dotenv import load_dotenv
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Load environment variables from .env file
load_dotenv()


class Settings(BaseSettings):
    """Application settings with environment variable support"""

    # Input / output files
    identifiers_file: str = Field("emails.txt")
    credentials_file: str = Field("tokens.txt")
    accounts_file: str = Field("accounts.txt")
    results_file: str = Field("hit.txt")
    handoff_file: Optional[str] = Field(None)  # defaults to identifiers_file
    database_path: str = Field("emails.db")

    # Lookup API
    lookup_base_url: str = Field("https://lookup.example.com")
    lookup_path: str = Field("/v1/people/search")
    probe_identifier: str = Field("probe@example.com")
    request_timeout: float = Field(15.0)
    requests_per_second: float = Field(30.0)

    # Provisioning service
    provisioning_url: str = Field("http://127.0.0.1:9222/token")
    provisioning_timeout: float = Field(300.0)
    provisioning_batch_size: int = Field(5)
    provisioning_multiplier: int = Field(3)  # provisioning fails often, over-request
    provisioning_wave_pause: float = Field(10.0)

    # Dispatch
    max_concurrency: int = Field(50)
    max_attempts: int = Field(5)
    attempt_delay_min: float = Field(0.2)
    attempt_delay_max: float = Field(0.6)
    queue_size: int = Field(100)
    status_poll_interval: float = Field(2.0)
    validation_concurrency: int = Field(10)

    # Credential pool
    min_tokens: int = Field(10)
    max_tokens: int = Field(10)

    # Retry rounds
    retry_rounds: int = Field(7)
    retry_delay: float = Field(10.0)

    # Coordinator
    round_pause: float = Field(5.0)
    shutdown_timeout: float = Field(10.0)

    # Monitoring API
    api_host: str = Field("127.0.0.1")
    api_port: int = Field(8000)
    service_name: str = Field("email-profile-crawler")

    # Logging Configuration
    log_level: str = Field("INFO")
    log_file_enabled: bool = Field(True)
    log_file_path: str = Field("logs")
    log_rotation: str = Field("10 MB")
    log_retention: str = Field("30 days")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v):
        """Validate log level is one of the standard logging levels"""
        valid_levels = ["TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Log level must be one of {valid_levels}")
        return v.upper()

    @field_validator("max_concurrency")
    @classmethod
    def validate_max_concurrency(cls, v):
        """Ensure max_concurrency is reasonable"""
        if v < 1 or v > 500:
            raise ValueError("max_concurrency must be between 1 and 500")
        return v

    @field_validator("max_attempts", "retry_rounds", "provisioning_batch_size", "provisioning_multiplier",
                     "queue_size", "validation_concurrency")
    @classmethod
    def validate_positive(cls, v):
        if v < 1:
            raise ValueError("value must be at least 1")
        return v

    @field_validator("min_tokens", "max_tokens")
    @classmethod
    def validate_token_counts(cls, v):
        if v < 1 or v > 1000:
            raise ValueError("token counts must be between 1 and 1000")
        return v

    @field_validator("requests_per_second")
    @classmethod
    def validate_rate(cls, v):
        if v <= 0:
            raise ValueError("requests_per_second must be positive")
        return v

    @model_validator(mode="after")
    def validate_attempt_delays(self):
        """Ensure the randomized inter-attempt window is well formed"""
        if self.attempt_delay_min < 0 or self.attempt_delay_max < self.attempt_delay_min:
            raise ValueError("attempt_delay_max must be >= attempt_delay_min >= 0")
        return self

    @property
    def handoff_path(self) -> str:
        """Path the pending identifiers are exported to on shutdown"""
        return self.handoff_file or self.identifiers_file


# Global settings instance - lazy loaded
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get the global settings instance"""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reload_settings(**overrides) -> Settings:
    """Reload settings from environment, applying explicit overrides"""
    global _settings
    _settings = Settings(**overrides)
    return _settings
