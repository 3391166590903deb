"""
Application Configuration - Pydantic Settings for type-safe config.

NO DICTIONARIES - All configuration is strongly typed.
FAIL FAST - Critical config is validated at startup.
"""

import sys

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ConfigurationError(Exception):
    """Raised when critical configuration is missing or invalid."""

    pass


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database Configuration - NO DEFAULT for production safety
    database_url: str = ""
    database_pool_size: int = 25
    database_max_overflow: int = 10
    database_pool_timeout: int = 30
    database_pool_recycle: int = 3600
    run_migrations_on_startup: bool = False

    # API Configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_title: str = "Subscription Reconciler API"
    api_version: str = "0.1.0"
    api_description: str = "App Store / Google Play subscription reconciliation service"

    # Client authentication - HS256 JWT issued by the upstream API (sub = user id)
    user_jwt_secret: str = ""

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json or console

    # Observability - Metrics
    metrics_enabled: bool = True

    # Observability - Tracing
    tracing_enabled: bool = False
    otlp_endpoint: str = "http://otel-collector:4317"
    otlp_insecure: bool = True
    trace_sample_ratio: float = 1.0
    service_name: str = "subscription-reconciler"

    # Apple App Store Server API
    apple_key_id: str = ""
    apple_issuer_id: str = ""
    apple_private_key: str = ""  # .p8 contents, raw PEM or base64
    apple_bundle_id: str = ""
    # Comma-separated paths to pinned Apple root certificates (PEM or DER)
    apple_root_certificates: str = ""
    apple_jwks_url: str = "https://apple-public.keys.appstoreconnect.apple.com/keys"

    # Google Play
    # Service account JSON for the Android Publisher API (path, raw JSON or base64)
    google_play_service_account: str = ""
    android_package_name: str = ""
    # Base64 DER RSA public key from the Play Console (licensing key)
    google_play_public_key: str = ""

    # External calls
    external_call_timeout_seconds: float = 15.0
    max_history_pages: int = 50

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    @model_validator(mode="after")
    def validate_critical_config(self) -> "Settings":
        """
        FAIL FAST: Validate critical configuration at startup.

        The app MUST NOT start if critical config is missing.
        """
        errors: list[str] = []

        if not self.database_url:
            errors.append("DATABASE_URL is required but empty or missing")
        elif not self.database_url.startswith(("postgresql", "postgres")):
            errors.append(
                f"DATABASE_URL must be a PostgreSQL URL, got: {self.database_url[:20]}..."
            )

        if self.external_call_timeout_seconds <= 0:
            errors.append("EXTERNAL_CALL_TIMEOUT_SECONDS must be positive")

        if not 0.0 <= self.trace_sample_ratio <= 1.0:
            errors.append("TRACE_SAMPLE_RATIO must be between 0 and 1")

        if self.max_history_pages < 1:
            errors.append("MAX_HISTORY_PAGES must be at least 1")

        if errors:
            error_msg = "\n".join(
                [
                    "",
                    "=" * 60,
                    "CRITICAL CONFIGURATION ERROR - APPLICATION CANNOT START",
                    "=" * 60,
                    *[f"  ✗ {e}" for e in errors],
                    "=" * 60,
                    "",
                ]
            )
            print(error_msg, file=sys.stderr)
            raise ConfigurationError(error_msg)

        return self

    @property
    def apple_root_certificate_paths(self) -> list[str]:
        """Pinned Apple root certificate file paths."""
        paths = []
        for path in self.apple_root_certificates.split(","):
            path = path.strip()
            if path and path not in paths:
                paths.append(path)
        return paths

    @property
    def apple_configured(self) -> bool:
        """Whether App Store Server API credentials are present."""
        return bool(
            self.apple_key_id
            and self.apple_issuer_id
            and self.apple_private_key
            and self.apple_bundle_id
        )

    @property
    def google_play_configured(self) -> bool:
        """Whether Android Publisher API credentials are present."""
        return bool(self.google_play_service_account and self.android_package_name)


# Global settings instance - validates at import time
settings = Settings()


def get_settings() -> Settings:
    """Get application settings instance."""
    return settings
