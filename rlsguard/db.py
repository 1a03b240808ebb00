"""
RLS Guard - Database Access

Synchronous psycopg3 connection pooling for the governance tools.

Every tool that touches the database goes through ``open_pool()``: a bounded
``psycopg_pool.ConnectionPool`` whose connections carry a connect timeout and
a server-side statement timeout, so a hung catalog query or attack scenario
cannot stall CI forever.
"""

from __future__ import annotations

import logging
import os
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Tuple
from urllib.parse import quote

import psycopg
from dotenv import load_dotenv
from psycopg.conninfo import conninfo_to_dict
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from rlsguard.core_config import Settings, get_settings, reset_settings
from rlsguard.errors import ConfigurationError, DatabaseUnavailableError

logger = logging.getLogger(__name__)

APPLICATION_NAME = "rlsguard"


def resolve_env(requested_env: str | None) -> str:
    """
    Pin SUPABASE_MODE for this process and return the normalized mode.

    An explicit environment also loads ``.env.<env>`` from the working
    directory when present. Variables already set in the process win.
    """
    if requested_env:
        env = "prod" if requested_env.lower() == "prod" else "dev"
        env_file = Path(f".env.{env}")
        if env_file.exists():
            load_dotenv(env_file)
            logger.debug("Loaded %s", env_file)
        os.environ["SUPABASE_MODE"] = env
        reset_settings()
    return get_settings().supabase_mode


def resolve_db_url(settings: Settings | None = None) -> str:
    """
    Resolve the privileged DSN.

    Priority:
      1. SUPABASE_DB_URL
      2. SUPABASE_DB_PASSWORD + SUPABASE_PROJECT_REF (direct connection, sslmode=require)

    Raises ConfigurationError naming every missing variable.
    """
    settings = settings or get_settings()

    if settings.SUPABASE_DB_URL:
        return settings.SUPABASE_DB_URL

    missing = [
        name
        for name in ("SUPABASE_DB_PASSWORD", "SUPABASE_PROJECT_REF")
        if not getattr(settings, name)
    ]
    if missing:
        raise ConfigurationError(
            "Missing database configuration for {env}. Set SUPABASE_DB_URL, or set {missing}.".format(
                env=settings.supabase_mode,
                missing=" and ".join(missing),
            )
        )

    project_ref = settings.SUPABASE_PROJECT_REF
    host = settings.SUPABASE_DB_HOST or f"db.{project_ref}.supabase.co"
    password = quote(settings.SUPABASE_DB_PASSWORD or "", safe="")
    return f"postgresql://postgres:{password}@{host}:5432/postgres?sslmode=require"


def describe_db_url(db_url: str) -> Tuple[str, str, str]:
    """Return (host, dbname, user) for logging without exposing the password."""
    host = "unknown"
    dbname = "unknown"
    user = "unknown"
    try:
        parts = conninfo_to_dict(db_url)
    except psycopg.ProgrammingError:
        return host, dbname, user
    host_value = parts.get("host") or parts.get("hostaddr")
    if host_value:
        host = str(host_value)
    if parts.get("dbname"):
        dbname = str(parts["dbname"])
    if parts.get("user"):
        user = str(parts["user"])
    return host, dbname, user


def connection_kwargs(settings: Settings) -> dict:
    """Connection settings applied to every pooled connection."""
    return {
        "autocommit": True,
        "row_factory": dict_row,
        "connect_timeout": settings.DB_CONNECT_TIMEOUT,
        "application_name": APPLICATION_NAME,
        "options": f"-c statement_timeout={settings.DB_STATEMENT_TIMEOUT_MS}",
    }


@contextmanager
def open_pool(
    db_url: str | None = None, settings: Settings | None = None
) -> Iterator[ConnectionPool]:
    """
    Open a bounded connection pool and close it on exit.

    Raises DatabaseUnavailableError when no connection can be established
    within the connect timeout.
    """
    settings = settings or get_settings()
    dsn = db_url or resolve_db_url(settings)
    host, dbname, user = describe_db_url(dsn)
    logger.info("Connecting to host=%s db=%s user=%s", host, dbname, user)

    pool = ConnectionPool(
        dsn,
        min_size=1,
        max_size=settings.DB_POOL_MAX_SIZE,
        kwargs=connection_kwargs(settings),
        timeout=float(settings.DB_CONNECT_TIMEOUT),
        open=False,
    )
    try:
        pool.open(wait=True, timeout=float(settings.DB_CONNECT_TIMEOUT))
    except (PoolTimeout, psycopg.OperationalError) as exc:
        pool.close()
        raise DatabaseUnavailableError(
            f"Could not connect to {host}/{dbname} as {user}: {exc}"
        ) from exc

    try:
        yield pool
    except psycopg.OperationalError as exc:
        raise DatabaseUnavailableError(f"Database connection lost: {exc}") from exc
    finally:
        pool.close()
