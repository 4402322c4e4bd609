"""
Environment configuration loader using Pydantic BaseSettings.

This module centralizes all environment configuration for connect-core.
It provides type safety, validation, and automatic loading from environment variables
and .env files. All settings are validated at startup to fail fast with clear errors.
"""

import json
from typing import Annotated, Any, List, Optional

import structlog
from pydantic import (
    AnyHttpUrl,
    BeforeValidator,
    Field,
    ValidationError,
    field_validator,
)
from pydantic.networks import HttpUrl
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

logger = structlog.get_logger(__name__)


def parse_cors(v: Any) -> List[str]:
    """
    Parse CORS origins from various input formats.

    Supports:
    - Native Python list (from code/tests)
    - JSON array string: '["https://api.example.com", "https://app.example.com"]'
    - Comma-separated string: 'https://api.example.com,https://app.example.com'
    - Empty string or None: returns empty list
    """
    if isinstance(v, list):
        return v
    if isinstance(v, str):
        s = v.strip()
        if not s:
            return []
        # Handle JSON array format
        if s.startswith("["):
            return json.loads(s)
        # Parse comma-separated values
        return [origin.strip() for origin in s.split(",") if origin.strip()]
    return v


# NoDecode prevents automatic JSON parsing, BeforeValidator applies our custom parser
CorsOrigins = Annotated[List[AnyHttpUrl], NoDecode, BeforeValidator(parse_cors)]


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Priority order for loading values:
    1. Environment variables (highest priority)
    2. .env file
    3. Default values defined here
    """

    # ===== Application Settings =====
    app_env: str = Field(
        default="development",
        description="Application environment (development/staging/production/test)",
    )

    app_name: str = Field(
        default="Connect Core",
        description="Application name for logging and identification",
    )

    app_version: str = Field(default="0.1.0", description="Application version")

    log_level: str = Field(
        default="INFO", description="Logging level (DEBUG/INFO/WARNING/ERROR)"
    )

    cors_origins: CorsOrigins = Field(
        default=["http://localhost:3000", "http://localhost:13001"],
        description="List of allowed CORS origins (JSON array or comma-separated in env)",
    )

    # ===== Server Configuration =====
    host: str = Field(default="0.0.0.0", description="Host to bind the server to")

    port: int = Field(
        default=8080, description="Port to bind the server to", ge=1, le=65535
    )

    # ===== OAuth State Configuration =====
    oauth_state_ttl_seconds: int = Field(
        default=600,
        description="Lifetime of a pending authorization attempt",
        ge=30,
        le=3600,
    )

    oauth_state_sweep_interval_seconds: int = Field(
        default=60,
        description="Interval between background sweeps of expired attempts",
        ge=1,
        le=3600,
    )

    oauth_use_pkce: bool = Field(
        default=True, description="Request PKCE for platforms that support it"
    )

    oauth_external_timeout_seconds: float = Field(
        default=10.0,
        description="Timeout for token exchange, refresh and revocation calls",
        gt=0,
        le=120,
    )

    oauth_window_poll_interval_seconds: float = Field(
        default=1.0,
        description="Polling interval for the authorization window monitor",
        gt=0,
        le=30,
    )

    # ===== Token Health & Refresh Configuration =====
    token_health_check_interval_seconds: int = Field(
        default=60,
        description="Interval between token health checks",
        ge=1,
        le=3600,
    )

    token_critical_threshold_seconds: int = Field(
        default=300,
        description="Remaining lifetime below which a token is critical",
        ge=1,
    )

    token_warning_threshold_seconds: int = Field(
        default=3600,
        description="Remaining lifetime below which a token is in warning",
        ge=1,
    )

    oauth_max_failure_count: Optional[int] = Field(
        default=5,
        description="Consecutive refresh failures before requiring re-authentication (unset disables)",
        ge=1,
        le=100,
    )

    oauth_background_refresh_enabled: bool = Field(
        default=True,
        description="Enable the background token refresh coordinator",
    )

    # ===== Security & Encryption =====
    fernet_key: Optional[str] = Field(
        default=None,
        description="Fernet key for encrypting PKCE verifiers at rest (auto-generated if not provided)",
    )

    fernet_previous_keys: str = Field(
        default="",
        description="Comma-separated retired Fernet keys still accepted for decryption",
    )

    # ===== QuickBooks OAuth =====
    quickbooks_client_id: Optional[str] = Field(
        default=None, description="QuickBooks OAuth app client ID"
    )

    quickbooks_client_secret: Optional[str] = Field(
        default=None, description="QuickBooks OAuth app client secret"
    )

    quickbooks_redirect_uri: Optional[HttpUrl] = Field(
        default="http://localhost:13001/api/config/quickbooks/callback",
        description="QuickBooks OAuth callback URL",
    )

    quickbooks_environment: str = Field(
        default="sandbox", description="QuickBooks environment (sandbox/production)"
    )

    # ===== HubSpot OAuth =====
    hubspot_client_id: Optional[str] = Field(
        default=None, description="HubSpot OAuth app client ID"
    )

    hubspot_client_secret: Optional[str] = Field(
        default=None, description="HubSpot OAuth app client secret"
    )

    hubspot_redirect_uri: Optional[HttpUrl] = Field(
        default="http://localhost:13001/api/config/hubspot/callback",
        description="HubSpot OAuth callback URL",
    )

    # ===== Stripe Connect OAuth =====
    stripe_client_id: Optional[str] = Field(
        default=None, description="Stripe Connect client ID"
    )

    stripe_client_secret: Optional[str] = Field(
        default=None, description="Stripe secret key used for Connect token calls"
    )

    stripe_redirect_uri: Optional[HttpUrl] = Field(
        default="http://localhost:13001/api/config/stripe/callback",
        description="Stripe Connect callback URL",
    )

    # ===== Validators =====

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Ensure log level is valid."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ValueError(f"Invalid log level: {v}. Must be one of {valid_levels}")
        return v_upper

    @field_validator("app_env")
    @classmethod
    def validate_app_env(cls, v: str) -> str:
        """Ensure app environment is valid."""
        valid_envs = ["development", "staging", "production", "test"]
        v_lower = v.lower()
        if v_lower not in valid_envs:
            raise ValueError(f"Invalid app_env: {v}. Must be one of {valid_envs}")
        return v_lower

    @field_validator("quickbooks_environment")
    @classmethod
    def validate_quickbooks_environment(cls, v: str) -> str:
        v_lower = v.lower()
        if v_lower not in ("sandbox", "production"):
            raise ValueError(
                f"Invalid quickbooks_environment: {v}. Must be sandbox or production"
            )
        return v_lower

    @field_validator("token_warning_threshold_seconds")
    @classmethod
    def validate_warning_above_critical(cls, v: int, info) -> int:
        """Warning band must start above the critical band."""
        critical = info.data.get("token_critical_threshold_seconds", 300)
        if v <= critical:
            raise ValueError(
                "token_warning_threshold_seconds must be greater than "
                f"token_critical_threshold_seconds ({critical})"
            )
        return v

    @field_validator("fernet_key", mode="before")
    @classmethod
    def generate_fernet_key_if_needed(cls, v: Optional[str]) -> str:
        """Generate Fernet key if not provided."""
        if v is None or v == "":
            from cryptography.fernet import Fernet

            key = Fernet.generate_key().decode()
            logger.warning(
                "Generated new Fernet key - pending attempts will not survive a restart"
            )
            return key
        return v

    # ===== Pydantic Config =====

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    def log_config(self) -> None:
        """Log configuration (with secrets masked)."""
        config_dict = self.model_dump(mode="json")

        sensitive_fields = [
            "fernet_key",
            "fernet_previous_keys",
            "quickbooks_client_secret",
            "hubspot_client_secret",
            "stripe_client_secret",
        ]

        for field in sensitive_fields:
            if field in config_dict and config_dict[field]:
                # Show first 4 chars for debugging, mask the rest
                value = str(config_dict[field])
                if len(value) > 8:
                    config_dict[field] = f"{value[:4]}...{value[-4:]}"
                else:
                    config_dict[field] = "***"

        logger.info("Configuration loaded", **config_dict)

    def validate_required_for_production(self) -> None:
        """Additional validation for production environment."""
        if self.app_env != "production":
            return

        errors = []
        for prefix in ("quickbooks", "hubspot", "stripe"):
            if not getattr(self, f"{prefix}_client_id") or not getattr(
                self, f"{prefix}_client_secret"
            ):
                errors.append(
                    f"{prefix.title()} OAuth credentials required in production"
                )

        if self.log_level == "DEBUG":
            logger.warning(
                "DEBUG log level in production - consider using INFO or higher"
            )

        if errors:
            raise ValueError(f"Production configuration errors: {'; '.join(errors)}")


# ===== Global Settings Instance =====

_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """
    Get the global settings instance (singleton pattern).

    Use this function as a FastAPI dependency for injecting settings.
    """
    global _settings
    if _settings is None:
        try:
            _settings = Settings()
            logger.info(
                "Settings loaded successfully",
                app_env=_settings.app_env,
                app_version=_settings.app_version,
            )
        except ValidationError as e:
            logger.error("Failed to load settings", errors=e.errors())
            raise

    return _settings


def reset_settings() -> None:
    """Reset settings (useful for testing)."""
    global _settings
    _settings = None
