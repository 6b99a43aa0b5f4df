"""Engine configuration with validation."""

from enum import Enum
from urllib.parse import urlparse

from pydantic_settings import BaseSettings
from pydantic import Field, field_validator

from ..exceptions import ConfigurationError


class Environment(str, Enum):
    """Application environment."""
    DEVELOPMENT = "development"
    PRODUCTION = "production"


class Settings(BaseSettings):
    """
    Permission engine settings.

    Every field can be overridden from the environment with the
    ``PERMISSION_ENGINE_`` prefix, e.g. ``PERMISSION_ENGINE_API_URL``.
    """

    # Environment
    # Development builds fail fast on programming errors; production
    # builds log them and return the safe default.
    environment: Environment = Field(
        default=Environment.DEVELOPMENT,
        description="Application environment (development/production)"
    )

    # Authorization backend
    api_url: str = Field(
        default="http://localhost:8000/api",
        description="Base URL of the authorization backend"
    )
    api_token: str = Field(
        default="",
        description="Bearer token for the current session (empty = unauthenticated transport)"
    )
    api_timeout: float = Field(
        default=30.0,
        description="Per-request timeout in seconds"
    )
    # Total attempts per backend call: 2 means one retry.
    max_retries: int = Field(
        default=2,
        ge=1,
        description="Attempts per backend request, including the first"
    )
    retry_base_delay: float = Field(
        default=0.5,
        description="Base delay for exponential retry backoff, in seconds"
    )

    # Decision cache and summary freshness
    decision_ttl_seconds: float = Field(
        default=15 * 60,
        gt=0,
        description="TTL for cached decisions when the backend sends none"
    )
    summary_stale_seconds: float = Field(
        default=15 * 60,
        gt=0,
        description="Age after which the permission summary is revalidated in the background"
    )
    summary_retry_attempts: int = Field(
        default=1,
        ge=0,
        description="Extra attempts when fetching the permission summary fails"
    )

    # Bulk evaluation
    batch_delay_seconds: float = Field(
        default=0.01,
        ge=0,
        description="Window during which concurrent bulk requests are coalesced"
    )
    fetch_timeout_seconds: float = Field(
        default=10.0,
        gt=0,
        description="Upper bound on one outstanding bulk fetch before it fails closed"
    )

    # Circuit breaker around the backend
    circuit_failure_threshold: int = Field(
        default=3,
        ge=1,
        description="Consecutive failures before the circuit opens"
    )
    circuit_cooldown_seconds: float = Field(
        default=60.0,
        description="Seconds to wait before a half-open trial request"
    )

    # Logging Configuration
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)"
    )
    log_format: str = Field(
        default="json",
        description="Log output format: 'json' for structured, 'text' for human-readable"
    )

    @property
    def is_development(self) -> bool:
        return self.environment == Environment.DEVELOPMENT

    @field_validator('log_level')
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is one of the standard Python logging levels."""
        valid_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v_upper

    @field_validator('api_url')
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip('/')

    def validate_production_config(self) -> None:
        """Validate configuration for production environment.

        In production, fails startup if the backend is reached insecurely.
        In development, returns without raising.

        Raises:
            ConfigurationError: If production config is insecure.
        """
        errors: list[str] = []

        parsed = urlparse(self.api_url)
        host = parsed.hostname or ""
        if parsed.scheme != "https" and host not in ("localhost", "127.0.0.1"):
            errors.append(
                f"API_URL uses '{parsed.scheme}' for non-local host '{host}'. "
                "Use https in production."
            )

        if not self.api_token:
            errors.append(
                "API_TOKEN is empty. "
                "Permission checks would all run unauthenticated."
            )

        if errors and self.environment == Environment.PRODUCTION:
            raise ConfigurationError(
                "Production configuration is insecure:\n  - " + "\n  - ".join(errors)
            )

    class Config:
        """Pydantic configuration."""
        env_prefix = "PERMISSION_ENGINE_"
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False


# Default settings instance, used when the engine is built without explicit settings
settings = Settings()
