"""
Application settings and configuration management.

This module handles all environment variables, API keys, and pipeline tuning
knobs using Pydantic settings management for type safety and validation.
Marketplace credential presence drives the market research acquisition path,
so it is exposed here as a small status report.
"""

from functools import lru_cache
from typing import Literal, Optional

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from flipforge.models.schemas import CredentialStatus


# Environment variable -> provider name used by the acquisition selector
MARKETPLACE_CREDENTIALS: dict[str, str] = {
    "SERP_API_KEY": "serpapi",
    "EBAY_API_KEY": "ebay",
    "RAPIDAPI_KEY": "rapidapi",
}

CREDENTIAL_RECOMMENDATIONS: dict[str, str] = {
    "SERP_API_KEY": "Get SerpAPI key: https://serpapi.com/ (100 free searches/month)",
    "EBAY_API_KEY": "Get eBay API key: https://developer.ebay.com/ (Free tier available)",
    "RAPIDAPI_KEY": "Get RapidAPI key: https://rapidapi.com/ (Multiple marketplace APIs)",
}


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    All sensitive values are stored as SecretStr to prevent accidental logging.
    Every API key is optional: with no marketplace key the pipeline falls back
    to AI-estimated market data, and with no Anthropic key that fallback is
    unavailable.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
        populate_by_name=True,
    )

    # API Keys
    anthropic_api_key: Optional[SecretStr] = Field(default=None, alias="ANTHROPIC_API_KEY")
    serp_api_key: Optional[SecretStr] = Field(default=None, alias="SERP_API_KEY")
    ebay_api_key: Optional[SecretStr] = Field(default=None, alias="EBAY_API_KEY")
    rapidapi_key: Optional[SecretStr] = Field(default=None, alias="RAPIDAPI_KEY")

    # Application Configuration
    app_env: Literal["development", "staging", "production"] = Field(
        default="development",
        alias="APP_ENV"
    )
    debug: bool = Field(default=False, alias="DEBUG")
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        alias="LOG_LEVEL"
    )

    # Model Configuration
    claude_model: str = Field(
        default="claude-sonnet-4-20250514",
        alias="CLAUDE_MODEL"
    )
    claude_max_tokens: int = Field(default=2000, alias="CLAUDE_MAX_TOKENS")
    research_temperature: float = Field(default=0.3, alias="RESEARCH_TEMPERATURE")
    analysis_temperature: float = Field(default=0.5, alias="ANALYSIS_TEMPERATURE")

    # Outbound call limits
    max_concurrent_requests: int = Field(default=3, ge=1, alias="MAX_CONCURRENT_REQUESTS")
    request_timeout_seconds: float = Field(default=30.0, gt=0, alias="REQUEST_TIMEOUT_SECONDS")
    max_retries: int = Field(default=3, ge=1, alias="MAX_RETRIES")
    max_listings_per_platform: int = Field(default=5, ge=1, alias="MAX_LISTINGS_PER_PLATFORM")

    # Background phase simulation
    simulation_progress_steps: int = Field(default=5, ge=1, alias="SIMULATION_PROGRESS_STEPS")
    simulation_step_seconds: float = Field(default=1.0, ge=0, alias="SIMULATION_STEP_SECONDS")

    # Review thresholds
    manual_review_confidence_threshold: float = Field(
        default=50.0,
        alias="MANUAL_REVIEW_CONFIDENCE_THRESHOLD",
    )
    manual_review_warning_limit: int = Field(default=5, alias="MANUAL_REVIEW_WARNING_LIMIT")

    @field_validator("anthropic_api_key", mode="before")
    @classmethod
    def validate_anthropic_key(cls, v: Optional[str]) -> Optional[str]:
        """Validate Anthropic API key format when one is supplied."""
        if v is None or v == "":
            return None
        raw = v.get_secret_value() if isinstance(v, SecretStr) else v
        if not raw.startswith("sk-"):
            raise ValueError("Invalid Anthropic API key format")
        return v

    @field_validator("serp_api_key", "ebay_api_key", "rapidapi_key", mode="before")
    @classmethod
    def blank_key_is_missing(cls, v: Optional[str]) -> Optional[str]:
        """Treat empty environment values as absent credentials."""
        if v is None:
            return None
        raw = v.get_secret_value() if isinstance(v, SecretStr) else str(v)
        return raw if raw.strip() else None

    @property
    def has_ai_provider(self) -> bool:
        """Whether AI-estimated market research can run."""
        return self.anthropic_api_key is not None

    def _credential_values(self) -> dict[str, Optional[SecretStr]]:
        return {
            "SERP_API_KEY": self.serp_api_key,
            "EBAY_API_KEY": self.ebay_api_key,
            "RAPIDAPI_KEY": self.rapidapi_key,
        }

    def check_marketplace_credentials(self) -> CredentialStatus:
        """Report which marketplace keys are set and how to obtain the rest."""
        values = self._credential_values()
        available = [key for key, value in values.items() if value is not None]
        missing = [key for key, value in values.items() if value is None]
        return CredentialStatus(
            available=available,
            missing=missing,
            recommendations=[CREDENTIAL_RECOMMENDATIONS[key] for key in missing],
        )

    def available_marketplace_providers(self, status: Optional[CredentialStatus] = None) -> set[str]:
        """Provider names with a configured credential, from status when given."""
        status = status or self.check_marketplace_credentials()
        return {MARKETPLACE_CREDENTIALS[key] for key in status.available}

    def get_credential(self, provider: str) -> Optional[str]:
        """Return the raw secret for a provider name, if configured."""
        for key, name in MARKETPLACE_CREDENTIALS.items():
            if name == provider:
                secret = self._credential_values()[key]
                return secret.get_secret_value() if secret else None
        return None


@lru_cache
def get_settings() -> Settings:
    """Get cached application settings."""
    return Settings()
