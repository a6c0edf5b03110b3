"""Apply the bundled idempotent schema."""

from __future__ import annotations

import logging
from pathlib import Path

import psycopg

logger = logging.getLogger(__name__)

SCHEMA_FILE = Path(__file__).resolve().parent / "schema.sql"


def load_schema(path: Path = SCHEMA_FILE) -> str:
    if not path.exists():
        raise FileNotFoundError(f"schema file not found: {path}")
    return path.read_text(encoding="utf-8")


def apply_schema(conn: psycopg.Connection, path: Path = SCHEMA_FILE) -> None:
    """Run every statement of the schema file on ``conn``.

    Safe to call repeatedly; all DDL uses IF NOT EXISTS.
    """

    ddl = load_schema(path)
    logger.info("[migrate] applying %s", path.name)
    with conn.cursor() as cur:
        cur.execute(ddl)
    logger.info("[migrate] schema up to date")


__all__ = ["SCHEMA_FILE", "apply_schema", "load_schema"]
