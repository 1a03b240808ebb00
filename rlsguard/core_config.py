"""
RLS Guard - Unified Configuration

ENVIRONMENT VARIABLE CONTRACT
=============================

Database (one of):
  SUPABASE_DB_URL               - Postgres connection string (privileged role)
  SUPABASE_PROJECT_REF          - Project ref, combined with the password below
  SUPABASE_DB_PASSWORD          - Database password for the postgres user
  SUPABASE_DB_HOST              - Optional host override (default db.<ref>.supabase.co)

Environment control:
  SUPABASE_MODE                 - dev | prod (default: dev)
  LOG_LEVEL                     - DEBUG | INFO | WARNING | ERROR (default: INFO)

Connection limits:
  DB_CONNECT_TIMEOUT            - Seconds to wait for a connection (default: 10)
  DB_STATEMENT_TIMEOUT_MS       - Server-side statement timeout (default: 30000)
  DB_POOL_MAX_SIZE              - Upper bound on pooled connections (default: 2)

Artifacts:
  SECURITY_SCHEMA               - Schema under governance (default: public)
  MIGRATIONS_DIR                - Migration scripts (default: supabase/migrations)
  DEFINER_REGISTRY_PATH         - Definer registry JSON
  POLICY_SNAPSHOT_PATH          - Policy/function baseline JSON

Values are read from the process environment first, then from the env file
named by ENV_FILE (default: .env).

Usage:
------
    from rlsguard.core_config import get_settings

    settings = get_settings()
    print(settings.supabase_mode)
"""

from __future__ import annotations

import logging
import os
from functools import lru_cache
from typing import Any, Literal

from pydantic import Field, ValidationError, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from rlsguard.errors import ConfigurationError

logger = logging.getLogger(__name__)

# Values whose embedded newlines would corrupt a DSN
_DSN_KEYS = {"SUPABASE_DB_URL", "SUPABASE_DB_PASSWORD", "SUPABASE_DB_HOST"}


class Settings(BaseSettings):
    """
    Settings shared by every governance tool.

    Set ENV_FILE to switch credential files:
        - ENV_FILE=.env.dev  → development database
        - ENV_FILE=.env.prod → production database
    """

    model_config = SettingsConfigDict(
        env_file=os.environ.get("ENV_FILE", ".env"),
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # =========================================================================
    # DATABASE
    # =========================================================================

    SUPABASE_DB_URL: str | None = Field(
        default=None,
        description="Postgres connection string for a privileged role",
    )
    SUPABASE_PROJECT_REF: str | None = Field(
        default=None,
        description="Supabase project ref used to build a DSN when no URL is set",
    )
    SUPABASE_DB_PASSWORD: str | None = Field(
        default=None,
        description="Database password used with SUPABASE_PROJECT_REF",
    )
    SUPABASE_DB_HOST: str | None = Field(
        default=None,
        description="Database host override (default db.<ref>.supabase.co)",
    )

    # =========================================================================
    # ENVIRONMENT CONTROL
    # =========================================================================

    SUPABASE_MODE: str = Field(default="dev", description="Target environment (dev/prod)")
    LOG_LEVEL: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="Logging level",
    )

    # =========================================================================
    # CONNECTION LIMITS
    # =========================================================================

    DB_CONNECT_TIMEOUT: int = Field(default=10, ge=1, description="Connect timeout (seconds)")
    DB_STATEMENT_TIMEOUT_MS: int = Field(
        default=30_000,
        ge=0,
        description="Server-side statement_timeout applied to every pooled connection",
    )
    DB_POOL_MAX_SIZE: int = Field(default=2, ge=1, description="Maximum pooled connections")

    # =========================================================================
    # ARTIFACTS
    # =========================================================================

    SECURITY_SCHEMA: str = Field(default="public", description="Schema under governance")
    MIGRATIONS_DIR: str = Field(
        default="supabase/migrations",
        description="Directory holding migration scripts",
    )
    DEFINER_REGISTRY_PATH: str = Field(
        default="security_definer_registry.json",
        description="Security-definer registry document",
    )
    POLICY_SNAPSHOT_PATH: str = Field(
        default="security_policy_snapshot.json",
        description="Policy/function baseline snapshot",
    )

    @model_validator(mode="before")
    @classmethod
    def _normalize_values(cls, values: dict[str, Any]) -> dict[str, Any]:
        """Strip whitespace and stray quotes copied from dashboards."""
        for key, value in list(values.items()):
            if not isinstance(value, str):
                continue
            cleaned = value.strip().strip('"').strip("'").strip()
            if key.upper() in _DSN_KEYS:
                original = cleaned
                cleaned = cleaned.replace("\n", "").replace("\r", "").replace("\t", "")
                if cleaned != original:
                    logger.warning(
                        "Sanitized %s: removed internal whitespace (length %d -> %d)",
                        key.upper(),
                        len(original),
                        len(cleaned),
                    )
            if key.upper() == "LOG_LEVEL":
                cleaned = cleaned.upper()
            if key.upper() in _DSN_KEYS and not cleaned:
                values[key] = None
            else:
                values[key] = cleaned
        return values

    @property
    def supabase_mode(self) -> Literal["dev", "prod"]:
        """Normalized Supabase mode."""
        mode = (self.SUPABASE_MODE or "dev").strip().lower()
        if mode in ("prod", "production"):
            return "prod"
        return "dev"

    @property
    def is_production(self) -> bool:
        return self.supabase_mode == "prod"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """
    Get the cached settings instance.

    Call reset_settings() after changing the environment (tests, --env flags).
    Raises ConfigurationError when a value fails validation.
    """
    try:
        return Settings()
    except ValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}" for err in exc.errors()
        )
        raise ConfigurationError(f"Invalid configuration: {problems}") from exc


def reset_settings() -> None:
    """Clear the settings cache so the next get_settings() re-reads the env."""
    get_settings.cache_clear()
