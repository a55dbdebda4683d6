"""Portal settings.

Every component (store adapter, request lifecycle, claims endpoint,
bootstrap CLI) receives a PortalConfig. Environment variables are read in
exactly one place, ``load_config_from_env()``.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, field_validator


class LogLevel(str, Enum):
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class SigningBackendType(str, Enum):
    """Identity-token signing algorithms; only a shared-secret HMAC exists."""

    HMAC = "hmac"


class StoreBackendType(str, Enum):
    MEMORY = "memory"
    REDIS = "redis"


class PortalSecurityConfig(BaseModel):
    """How identity tokens are signed and verified.

    Disabled means tokens are merely encoded, which lets anyone mint
    admin claims; only acceptable for local development.
    """

    model_config = {"extra": "ignore"}

    enabled: bool = Field(False, description="Sign and verify identity tokens")
    signing_backend: SigningBackendType = SigningBackendType.HMAC
    signing_key_id: str = Field("hmac-001", description="kid stamped on newly signed tokens")
    shared_secret: str = Field("", description="HMAC key shared by issuer and verifiers")
    token_ttl_seconds: int = Field(3600, gt=0, description="Lifetime of a minted identity token")
    token_issuer: str = Field("accessportal", description="iss value of minted tokens")


class PortalConfig(BaseModel):
    """Top-level portal settings."""

    model_config = {
        "use_enum_values": True,
        "extra": "forbid",
    }

    log_level: LogLevel = LogLevel.INFO
    log_json: bool = Field(False, description="One JSON object per log line instead of plain text")
    service_name: Optional[str] = Field(None, description="Logger whose level follows log_level")

    store_backend: StoreBackendType = Field(
        StoreBackendType.MEMORY,
        description="'memory' keeps documents in-process; 'redis' shares them between processes",
    )
    redis_url: Optional[str] = None
    store_prefix: str = Field("accessportal", description="Namespace of every Redis key")
    transaction_max_attempts: int = Field(
        5,
        ge=1,
        description="Runs of a transaction body before a write conflict is reported",
    )

    tech_lead_gate: bool = Field(
        True,
        description="New requests wait for the owning team's tech lead before an admin sees them",
    )
    default_rejection_note: str = Field(
        "No notes provided.",
        description="Stored when a request is rejected without notes",
    )

    claims_endpoint: str = Field("localhost:50061", description="host:port of the gRPC claims service")

    security: PortalSecurityConfig = Field(default_factory=PortalSecurityConfig)

    @field_validator("redis_url")
    @classmethod
    def validate_redis_url(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not v.startswith(("redis://", "rediss://", "unix://")):
            raise ValueError("Redis URL must start with redis://, rediss://, or unix://")
        return v

    @field_validator("log_level", mode="before")
    @classmethod
    def validate_log_level(cls, v: str | LogLevel) -> LogLevel:
        """Accept level names case-insensitively."""
        if isinstance(v, LogLevel):
            return v
        if not isinstance(v, str):
            raise ValueError(f"Log level must be a string, got {type(v).__name__}")
        try:
            return LogLevel[v.upper()]
        except KeyError:
            raise ValueError(f"Invalid log level: {v}. Expected one of {[level.value for level in LogLevel]}")


_TRUTHY = frozenset({"true", "1", "yes", "on"})


def load_config_from_env() -> PortalConfig:
    """Build a PortalConfig from the process environment.

    Variables (unset means the field default):
        LOG_LEVEL, LOG_JSON, SERVICE_NAME
        STORE_BACKEND, REDIS_URL, STORE_PREFIX, TRANSACTION_MAX_ATTEMPTS
        TECH_LEAD_GATE, DEFAULT_REJECTION_NOTE
        CLAIMS_ENDPOINT
        SECURITY_ENABLED, SIGNING_BACKEND, SIGNING_KEY_ID,
        SIGNING_SHARED_SECRET, TOKEN_TTL_SECONDS, TOKEN_ISSUER

    Boolean variables are true for any of: true, 1, yes, on.
    """
    import os

    def flag(name: str, default: bool) -> bool:
        raw = os.getenv(name)
        return default if raw is None else raw.strip().lower() in _TRUTHY

    def collect(names: dict[str, str]) -> dict[str, str]:
        return {field: os.environ[var] for field, var in names.items() if os.getenv(var) is not None}

    security = PortalSecurityConfig(
        enabled=flag("SECURITY_ENABLED", False),
        **collect(
            {
                "signing_backend": "SIGNING_BACKEND",
                "signing_key_id": "SIGNING_KEY_ID",
                "shared_secret": "SIGNING_SHARED_SECRET",
                "token_ttl_seconds": "TOKEN_TTL_SECONDS",
                "token_issuer": "TOKEN_ISSUER",
            }
        ),
    )

    return PortalConfig(
        log_json=flag("LOG_JSON", False),
        tech_lead_gate=flag("TECH_LEAD_GATE", True),
        security=security,
        **collect(
            {
                "log_level": "LOG_LEVEL",
                "service_name": "SERVICE_NAME",
                "store_backend": "STORE_BACKEND",
                "redis_url": "REDIS_URL",
                "store_prefix": "STORE_PREFIX",
                "transaction_max_attempts": "TRANSACTION_MAX_ATTEMPTS",
                "default_rejection_note": "DEFAULT_REJECTION_NOTE",
                "claims_endpoint": "CLAIMS_ENDPOINT",
            }
        ),
    )


__all__ = [
    "LogLevel",
    "PortalConfig",
    "PortalSecurityConfig",
    "SigningBackendType",
    "StoreBackendType",
    "load_config_from_env",
]
