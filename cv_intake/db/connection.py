"""Postgres connection helpers."""

from __future__ import annotations

import logging
from typing import Tuple

import psycopg
from psycopg.conninfo import conninfo_to_dict

from ..errors import ConfigurationError
from ..settings import Settings

logger = logging.getLogger(__name__)

APPLICATION_NAME = "cv_intake"


def describe_db_url(db_url: str) -> Tuple[str, str, str]:
    """Return (host, dbname, user) for logging without the password."""

    host = "unknown"
    dbname = "unknown"
    user = "unknown"
    try:
        parts = conninfo_to_dict(db_url)
    except psycopg.ProgrammingError:
        return host, dbname, user
    host = str(parts.get("host") or parts.get("hostaddr") or host)
    dbname = str(parts.get("dbname") or dbname)
    user = str(parts.get("user") or user)
    return host, dbname, user


def connect(settings: Settings) -> psycopg.Connection:
    """Open an autocommit connection so every status write is durable immediately."""

    if not settings.supabase_db_url:
        raise ConfigurationError("SUPABASE_DB_URL must be set")
    host, dbname, user = describe_db_url(settings.supabase_db_url)
    logger.info("[db] connecting host=%s db=%s user=%s", host, dbname, user)
    return psycopg.connect(settings.supabase_db_url, autocommit=True, application_name=APPLICATION_NAME)
