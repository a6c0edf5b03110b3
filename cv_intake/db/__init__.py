"""Postgres persistence for batch intake."""

from .connection import connect, describe_db_url
from .migrate import apply_schema
from .postgres import (
    PostgresBatchStore,
    PostgresCandidateStore,
    PostgresFileStatusStore,
    PostgresHoldQueueStore,
    PostgresRejectionLog,
    PostgresUsageLedger,
)

__all__ = [
    "PostgresBatchStore",
    "PostgresCandidateStore",
    "PostgresFileStatusStore",
    "PostgresHoldQueueStore",
    "PostgresRejectionLog",
    "PostgresUsageLedger",
    "apply_schema",
    "connect",
    "describe_db_url",
]
