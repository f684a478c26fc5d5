"""
Claims Processing Configuration
Settings for adjudication, payer forwarding and tracking.
Source: https://docs.pydantic.dev/latest/concepts/pydantic_settings/
Verified: 2026-10-19
"""

from decimal import Decimal
from typing import Any, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from claimhub.core.enums import IntegrationMode


class ClaimsSettings(BaseSettings):
    """
    Claims processing configuration settings.

    All values are read from environment variables prefixed with ``CLAIMS_``.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        env_prefix="CLAIMS_",  # All claims settings prefixed with CLAIMS_
    )

    # =========================================================================
    # Integration Mode
    # =========================================================================
    INTEGRATION_MODE: IntegrationMode = Field(
        default=IntegrationMode.DEMO,
        description="demo (simulate payers without an endpoint) or live (real endpoints only)",
    )

    # =========================================================================
    # Internal Rules Engine
    # =========================================================================
    RULES_CACHE_ENABLED: bool = Field(
        default=True,
        description="Consult the rule result cache before adjudicating",
    )
    RULES_CACHE_MAX_AGE_SECONDS: int = Field(
        default=3600,
        ge=0,
        description="Freshness window for cached adjudication results",
    )
    ALLOWED_AMOUNT_RATE: Decimal = Field(
        default=Decimal("0.80"),
        ge=Decimal("0"),
        le=Decimal("1"),
        description="Share of the billed amount allowed by the internal engine",
    )
    AUTO_INTERNAL_THRESHOLD: Decimal = Field(
        default=Decimal("500.00"),
        ge=Decimal("0"),
        description="AUTO path: claims below this total are adjudicated internally",
    )

    # =========================================================================
    # External Payer Gateway
    # =========================================================================
    GATEWAY_DISPATCH_DELAY_SECONDS: float = Field(
        default=5.0,
        ge=0.0,
        description="Dispatch delay for payers without real-time support",
    )
    GATEWAY_BACKOFF_CAP_SECONDS: float = Field(
        default=1800.0,
        gt=0.0,
        description="Upper bound for the retry backoff delay",
    )
    GATEWAY_BACKOFF_MULTIPLIER: float = Field(
        default=1.5,
        ge=1.0,
        description="Growth factor applied per failed attempt",
    )
    GATEWAY_STATUS_CHECK_INTERVAL_SECONDS: float = Field(
        default=60.0,
        gt=0.0,
        description="Default interval between payer status polls",
    )
    GATEWAY_SWEEP_ENABLED: bool = Field(
        default=True,
        description="Run the periodic pending-forward sweep inside the API process",
    )
    GATEWAY_SWEEP_INTERVAL_SECONDS: float = Field(
        default=300.0,
        gt=0.0,
        description="Interval of the pending-forward recovery sweep",
    )
    GATEWAY_STALE_SENDING_SECONDS: float = Field(
        default=600.0,
        gt=0.0,
        description="A SENDING forward untouched this long is treated as abandoned",
    )
    GATEWAY_HTTP_TIMEOUT_SECONDS: float = Field(
        default=30.0,
        gt=0.0,
        description="Timeout for outbound payer HTTP calls",
    )
    SIMULATED_PAYER_SUCCESS_RATE: float = Field(
        default=0.9,
        ge=0.0,
        le=1.0,
        description="Success probability of the simulated payer adapter",
    )
    SIMULATED_PAYER_SEED: Optional[int] = Field(
        default=None,
        description="Seed for the simulated payer (deterministic demos)",
    )

    # =========================================================================
    # Payer Connections
    # =========================================================================
    PAYER_CONNECTIONS: list[dict[str, Any]] = Field(
        default_factory=list,
        description="Payer connection definitions (JSON array)",
    )
    PAYER_CONNECTIONS_FILE: Optional[str] = Field(
        default=None,
        description="Path to a JSON file with payer connection definitions",
    )

    # =========================================================================
    # Tracking
    # =========================================================================
    TRACKING_STALE_HOURS: int = Field(
        default=24,
        gt=0,
        description="PENDING/SUBMITTED claims unchanged this long need attention",
    )

    # =========================================================================
    # Validators
    # =========================================================================
    @field_validator("PAYER_CONNECTIONS", mode="before")
    @classmethod
    def validate_payer_connections(cls, v: Any) -> Any:
        """Treat an empty env value as no connections."""
        if v is None or (isinstance(v, str) and not v.strip()):
            return []
        return v

    @property
    def is_demo_mode(self) -> bool:
        """Check if running in demo mode."""
        return self.INTEGRATION_MODE == IntegrationMode.DEMO

    @property
    def is_live_mode(self) -> bool:
        """Check if running in live mode."""
        return self.INTEGRATION_MODE == IntegrationMode.LIVE


# Singleton instance
_claims_settings: Optional[ClaimsSettings] = None


def get_claims_settings() -> ClaimsSettings:
    """
    Get cached claims settings instance.

    Returns:
        ClaimsSettings instance
    """
    global _claims_settings
    if _claims_settings is None:
        _claims_settings = ClaimsSettings()
    return _claims_settings
