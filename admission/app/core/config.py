from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    All settings can be configured via environment variables or .env file.
    """

    # Debug mode - enables detailed error responses
    debug: bool = False

    # Server bind address for `admission` / `python -m admission.app.main`
    host: str = "127.0.0.1"
    port: int = 8000

    # Rate limiting settings
    rate_limit_window_size_ms: int = 60000
    rate_limit_max_requests: int = 3
    rate_limit_refill_rate_per_second: float = 0.2
    rate_limit_max_bucket_size: int = 3
    # False keeps the historical "limit + 1" admissions per window
    rate_limit_exact_limit: bool = False
    rate_limit_fail_closed: bool = (
        True  # If True, deny requests when the store is unavailable
    )
    rate_limit_key_prefix: str = "ratelimit"
    rate_limit_max_cas_attempts: int = 5

    # Store retry settings (one retry with short backoff)
    store_retry_attempts: int = 1
    store_retry_delay_seconds: float = 0.05

    # Redis settings
    redis_enabled: bool = False
    redis_url: str = "redis://localhost:6379/0"
    redis_timeout_seconds: float = Field(default=0.5, description="Per-command timeout")

    # Client identification
    trust_forwarded_for: bool = False

    # Logging settings
    log_level: str = "INFO"
    log_format: str = "text"  # text | structured | json

    @field_validator(
        "rate_limit_window_size_ms",
        "rate_limit_max_requests",
        "rate_limit_max_bucket_size",
        "rate_limit_max_cas_attempts",
    )
    @classmethod
    def validate_rate_limit_positive(cls, v: int) -> int:
        """Validate rate limit values are positive."""
        if v < 1:
            raise ValueError("Rate limit values must be at least 1")
        return v

    @field_validator("rate_limit_refill_rate_per_second", "redis_timeout_seconds")
    @classmethod
    def validate_positive_float(cls, v: float) -> float:
        """Validate rates and timeouts are positive."""
        if v <= 0:
            raise ValueError("value must be positive")
        return v

    @field_validator("store_retry_attempts")
    @classmethod
    def validate_retry_attempts(cls, v: int) -> int:
        if v < 0:
            raise ValueError("store_retry_attempts must not be negative")
        return v

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        v = v.strip().lower()
        if v not in ("text", "structured", "json"):
            raise ValueError("log_format must be one of: text, structured, json")
        return v

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


# Global settings instance
settings = Settings()
