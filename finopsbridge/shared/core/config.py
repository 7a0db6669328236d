from functools import lru_cache
from threading import Lock
from typing import Optional

import structlog
from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Environment Constants
ENV_PRODUCTION = "production"
ENV_STAGING = "staging"
ENV_DEVELOPMENT = "development"
ENV_LOCAL = "local"


@lru_cache
def get_settings() -> "Settings":
    """Returns a singleton instance of the worker settings."""
    return Settings()


_settings_reload_lock = Lock()


def reload_settings_from_environment() -> "Settings":
    """
    Atomically rebuild and replace cached settings from environment values.

    This avoids mutating the cached singleton instance in-place.
    """
    logger = structlog.get_logger()
    with _settings_reload_lock:
        logger.info("settings_reload_started")
        get_settings.cache_clear()
        refreshed = get_settings()
        logger.info("settings_reload_completed")
        return refreshed


class Settings(BaseSettings):
    """
    Main configuration for the FinOpsBridge enforcement worker.
    Uses Pydantic-Settings for environment variable parsing from .env.
    """

    APP_NAME: str = "FinOpsBridge"
    VERSION: str = "0.1.0"
    DEBUG: bool = False
    # ENVIRONMENT options: local, development, staging, production
    ENVIRONMENT: str = ENV_DEVELOPMENT
    TESTING: bool = False

    # Database
    DATABASE_URL: Optional[str] = None
    DB_POOL_SIZE: int = 10
    DB_MAX_OVERFLOW: int = 20
    DB_ECHO: bool = False

    # Enforcement loop
    ENFORCEMENT_INTERVAL_SECONDS: int = 300
    ENFORCEMENT_MAX_CONCURRENCY: int = 8

    # Rule engine (Open Policy Agent sidecar)
    RULE_ENGINE_URL: str = "http://localhost:8181"
    RULE_PACKAGE_PREFIX: str = "finopsbridge.policies"
    RULE_RELOAD_INTERVAL_SECONDS: int = 30
    RULE_EVAL_TIMEOUT_SECONDS: float = 5.0
    # Fail-open keeps enforcement available when a rule is missing or broken.
    # Set to false to treat such rules as violations instead.
    RULE_FAIL_OPEN: bool = True

    # Per-call bounds for external I/O
    BILLING_TIMEOUT_SECONDS: float = 10.0
    REMEDIATION_TIMEOUT_SECONDS: float = 10.0
    WEBHOOK_TIMEOUT_SECONDS: float = 10.0

    # Remediation guardrails
    REMEDIATION_MAX_RESOURCES: int = 5
    ESSENTIAL_TAG_KEY: str = "Essential"
    ESSENTIAL_TAG_VALUE: str = "true"
    IDLE_CPU_THRESHOLD_PERCENT: float = 5.0
    DEFAULT_IDLE_HOURS: float = 24.0

    # Violations
    DEFAULT_VIOLATION_SEVERITY: str = "high"
    VIOLATION_SEVERITY_BY_POLICY_TYPE: dict[str, str] = Field(default_factory=dict)

    # Webhooks
    WEBHOOK_REQUIRE_HTTPS: bool = False
    WEBHOOK_BLOCK_PRIVATE_IPS: bool = False

    # Cloud defaults
    AWS_REGION: str = "us-east-1"
    AWS_ENDPOINT_URL: Optional[str] = None
    AWS_ROLE_SESSION_NAME: str = "FinOpsBridgeEnforcement"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_ignore_empty=True,
        extra="ignore",
    )

    @model_validator(mode="after")
    def validate_all_config(self) -> "Settings":
        """Centralized validation, grouped by concern."""
        if self.TESTING and self.ENVIRONMENT in {ENV_PRODUCTION, ENV_STAGING}:
            raise ValueError(
                "TESTING must be false in staging/production runtime environments."
            )

        self._validate_loop_config()
        self._validate_remediation_guardrails()
        if not self.TESTING:
            self._validate_database_config()
        return self

    def _validate_loop_config(self) -> None:
        positive = {
            "ENFORCEMENT_INTERVAL_SECONDS": self.ENFORCEMENT_INTERVAL_SECONDS,
            "ENFORCEMENT_MAX_CONCURRENCY": self.ENFORCEMENT_MAX_CONCURRENCY,
            "RULE_RELOAD_INTERVAL_SECONDS": self.RULE_RELOAD_INTERVAL_SECONDS,
            "RULE_EVAL_TIMEOUT_SECONDS": self.RULE_EVAL_TIMEOUT_SECONDS,
            "BILLING_TIMEOUT_SECONDS": self.BILLING_TIMEOUT_SECONDS,
            "REMEDIATION_TIMEOUT_SECONDS": self.REMEDIATION_TIMEOUT_SECONDS,
            "WEBHOOK_TIMEOUT_SECONDS": self.WEBHOOK_TIMEOUT_SECONDS,
        }
        for name, value in positive.items():
            if value <= 0:
                raise ValueError(f"{name} must be greater than zero.")

    def _validate_remediation_guardrails(self) -> None:
        if self.REMEDIATION_MAX_RESOURCES < 1:
            raise ValueError("REMEDIATION_MAX_RESOURCES must be at least 1.")
        if not self.ESSENTIAL_TAG_KEY.strip():
            raise ValueError("ESSENTIAL_TAG_KEY must not be empty.")
        if not 0 <= self.IDLE_CPU_THRESHOLD_PERCENT <= 100:
            raise ValueError("IDLE_CPU_THRESHOLD_PERCENT must be within 0-100.")

    def _validate_database_config(self) -> None:
        if not self.DATABASE_URL:
            raise ValueError("DATABASE_URL is required outside of tests.")
        if self.is_production and self.DATABASE_URL.startswith("sqlite"):
            raise ValueError("SQLite is not supported in production.")

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT in {ENV_PRODUCTION, ENV_STAGING}

    def severity_for(self, policy_type: str) -> str:
        return self.VIOLATION_SEVERITY_BY_POLICY_TYPE.get(
            policy_type, self.DEFAULT_VIOLATION_SEVERITY
        )
