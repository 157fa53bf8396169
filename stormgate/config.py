"""
Configuration module for the Storm Gate authentication gateway.

This module uses Pydantic Settings to load and validate environment variables
for Azure AD authentication, internal token signing, the approval workflow,
the email integrator and runtime behaviour.

Environment variables are loaded from .env file or system environment.
Missing or too-short signing secrets fail validation, so the application
refuses to start instead of running unauthenticated.
"""

import re
from functools import lru_cache
from typing import List, Optional
from urllib.parse import urlparse

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    """

    # =========================================================================
    # Azure AD / Entra ID Configuration (OIDC Authentication)
    # =========================================================================

    AZURE_TENANT_ID: str = Field(
        ...,
        description="Azure AD Tenant ID (GUID format)",
        min_length=36,
        max_length=36,
    )

    AZURE_CLIENT_ID: str = Field(
        ...,
        description="Azure AD Application (Client) ID",
        min_length=36,
        max_length=36,
    )

    AZURE_CLIENT_SECRET: Optional[str] = Field(
        None,
        description="Azure AD Client Secret (optional for public clients)",
    )

    AZURE_REDIRECT_URI: str = Field(
        default="http://localhost:3001/auth/callback",
        description="OAuth redirect URI registered in Azure AD",
        min_length=1,
    )

    AZURE_API_IDENTIFIER: Optional[str] = Field(
        None,
        description="Additional accepted audience for federated access tokens",
    )

    OIDC_SCOPES: str = Field(
        default="openid profile email offline_access",
        description="Space-separated scopes requested at the authorization endpoint",
    )

    # =========================================================================
    # Internal Token Configuration
    # =========================================================================

    ACCESS_TOKEN_SECRET: str = Field(
        ...,
        description="Secret for signing internal access tokens",
        min_length=32,
    )

    REFRESH_TOKEN_SECRET: str = Field(
        ...,
        description="Secret for signing internal refresh tokens",
        min_length=32,
    )

    JWT_SECRET: Optional[str] = Field(
        None,
        description="Shared fallback secret for approval and reset tokens",
        min_length=32,
    )

    APPROVAL_TOKEN_SECRET: Optional[str] = Field(
        None,
        description="Dedicated secret for approval-link tokens",
        min_length=32,
    )

    PASSWORD_RESET_SECRET: Optional[str] = Field(
        None,
        description="Dedicated secret for password-reset tokens",
        min_length=32,
    )

    ACCESS_TOKEN_EXPIRY_MINUTES: int = Field(default=15, ge=1, le=1440)
    REFRESH_TOKEN_EXPIRY_DAYS: int = Field(default=7, ge=1, le=90)
    APPROVAL_TOKEN_EXPIRY_HOURS: int = Field(default=24, ge=1, le=168)
    PASSWORD_RESET_EXPIRY_MINUTES: int = Field(default=20, ge=5, le=1440)

    # =========================================================================
    # OIDC Session / JWKS Caching Configuration
    # =========================================================================

    OIDC_SESSION_TTL_SECONDS: int = Field(
        default=600,
        description="Lifetime of an in-flight login (state + PKCE verifier)",
        ge=60,
        le=3600,
    )

    JWKS_CACHE_SECONDS: int = Field(
        default=3600,
        description="Time to cache Azure AD JWKS keys in seconds",
        ge=300,  # Min 5 minutes
        le=86400,  # Max 24 hours
    )

    PROVIDER_TIMEOUT_SECONDS: float = Field(
        default=10.0,
        description="Timeout for calls to the identity provider",
        gt=0,
        le=60,
    )

    # =========================================================================
    # Approval Workflow / Notifications
    # =========================================================================

    ADMIN_EMAIL: str = Field(
        default="admin@stormgate.com",
        description="Recipient of account approval requests",
    )

    BASE_URL: str = Field(
        default="http://localhost:3001",
        description="Public base URL used to build approval, login and reset links",
    )

    EMAIL_INTEGRATOR_BASE_URL: Optional[str] = Field(
        None,
        description="Base URL of the email integrator service",
    )

    APP_NAME: str = Field(default="Storm Gate")
    APP_DISPLAY_NAME: str = Field(default="User Management System")

    APPROVAL_REQUIRED_APPLICATIONS: Optional[str] = Field(
        None,
        description="Comma-separated applications whose new federated accounts start PENDING",
    )

    # =========================================================================
    # Server / CORS Configuration
    # =========================================================================

    ALLOWED_ORIGINS: Optional[str] = Field(
        None,
        description="Comma-separated allowed origins (CORS and post-login return URLs)",
    )

    ENVIRONMENT: str = Field(
        default="development",
        description="Deployment environment; 'production' enables Secure cookies",
    )

    LOG_LEVEL: str = Field(default="INFO")

    HOST: str = Field(default="0.0.0.0")
    PORT: int = Field(default=3001, ge=1, le=65535)

    # =========================================================================
    # Pydantic Settings Configuration
    # =========================================================================

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # =========================================================================
    # Computed Properties
    # =========================================================================

    @property
    def azure_authority(self) -> str:
        """Authority URL for the tenant's OIDC endpoints."""
        return f"https://login.microsoftonline.com/{self.AZURE_TENANT_ID}"

    @property
    def jwks_uri(self) -> str:
        return f"{self.azure_authority}/discovery/v2.0/keys"

    @property
    def accepted_issuers(self) -> List[str]:
        """
        Azure AD issues tokens from two endpoints for the same tenant
        (v1 via sts.windows.net, v2 via login.microsoftonline.com).
        """
        return [
            f"https://sts.windows.net/{self.AZURE_TENANT_ID}/",
            f"{self.azure_authority}/v2.0",
        ]

    @property
    def accepted_audiences(self) -> List[str]:
        audiences = [self.AZURE_CLIENT_ID, f"api://{self.AZURE_CLIENT_ID}"]
        if self.AZURE_API_IDENTIFIER:
            audiences.append(self.AZURE_API_IDENTIFIER)
        return audiences

    @property
    def approval_token_secret(self) -> str:
        return self.APPROVAL_TOKEN_SECRET or self.JWT_SECRET or self.ACCESS_TOKEN_SECRET

    @property
    def password_reset_secret(self) -> str:
        return self.PASSWORD_RESET_SECRET or self.approval_token_secret

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT.lower() == "production"

    @property
    def allowed_origins_list(self) -> List[str]:
        """
        Parse and return ALLOWED_ORIGINS as a list.

        Returns:
            List of allowed origin URLs, or empty list if not configured.
        """
        if not self.ALLOWED_ORIGINS:
            return []

        return [
            origin.strip().rstrip("/")
            for origin in self.ALLOWED_ORIGINS.split(",")
            if origin.strip()
        ]

    @property
    def approval_required_applications_list(self) -> List[str]:
        if not self.APPROVAL_REQUIRED_APPLICATIONS:
            return []

        return [
            app.strip().lower()
            for app in self.APPROVAL_REQUIRED_APPLICATIONS.split(",")
            if app.strip()
        ]

    # =========================================================================
    # Validators
    # =========================================================================

    @field_validator("AZURE_TENANT_ID", "AZURE_CLIENT_ID")
    @classmethod
    def validate_guid_format(cls, v: str) -> str:
        """
        Validate that Azure IDs are in GUID format.

        Raises:
            ValueError: If not a valid GUID format
        """
        guid_pattern = re.compile(
            r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$",
            re.IGNORECASE
        )

        if not guid_pattern.match(v):
            raise ValueError(
                f"Invalid GUID format: {v}. "
                "Expected format: xxxxxxxx-xxxx-xxxx-xxxx-xxxxxxxxxxxx"
            )

        return v.lower()

    @field_validator("BASE_URL", "EMAIL_INTEGRATOR_BASE_URL")
    @classmethod
    def validate_base_url(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v

        parsed = urlparse(v)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValueError(f"Expected an absolute http(s) URL, got: {v}")

        return v.rstrip("/")


# =============================================================================
# Settings Singleton
# =============================================================================

@lru_cache()
def get_settings() -> Settings:
    """
    Get or create a singleton Settings instance.

    This function is cached so that the settings are loaded only once
    during the application lifecycle.

    Raises:
        ValidationError: If required environment variables are missing
                        or invalid.
    """
    return Settings()


def validate_configuration(settings: Settings) -> dict:
    """
    Report non-fatal configuration problems at startup.

    Fatal problems (missing secrets, malformed tenant/client ids) are already
    rejected while constructing Settings.
    """
    warnings = []

    if not settings.AZURE_CLIENT_SECRET:
        warnings.append("AZURE_CLIENT_SECRET is not set (required for confidential clients)")

    if not settings.EMAIL_INTEGRATOR_BASE_URL:
        warnings.append("EMAIL_INTEGRATOR_BASE_URL is not set; notifications will not be delivered")

    if not (settings.APPROVAL_TOKEN_SECRET or settings.JWT_SECRET):
        warnings.append("Approval tokens fall back to ACCESS_TOKEN_SECRET")

    if settings.ACCESS_TOKEN_SECRET == settings.REFRESH_TOKEN_SECRET:
        warnings.append("ACCESS_TOKEN_SECRET and REFRESH_TOKEN_SECRET should differ")

    if settings.is_production and settings.BASE_URL.startswith("http://"):
        warnings.append("BASE_URL is not HTTPS in production")

    return {
        "valid": True,
        "warnings": warnings,
        "environment": settings.ENVIRONMENT,
        "access_token_expiry_minutes": settings.ACCESS_TOKEN_EXPIRY_MINUTES,
    }
