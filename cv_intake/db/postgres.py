"""
psycopg implementations of the persistence protocols.

All stores share one connection. The connection is expected to be in
autocommit mode (see :func:`cv_intake.db.connection.connect`) so every status
write is durable as soon as it returns; a crashed run leaves exactly the state
it last wrote for the next recovery attempt.
"""

from __future__ import annotations

import logging
import posixpath
from datetime import date
from enum import Enum
from typing import Any, Iterable, Optional

import psycopg
from psycopg import sql
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb

from ..identity import normalize_email, normalize_phone
from ..models import (
    Batch,
    BatchConfig,
    BatchStatus,
    CandidateRecord,
    FileRecord,
    FileStatus,
    HoldQueueEntry,
    HoldReason,
    HoldStatus,
    UsageLedgerEntry,
)

logger = logging.getLogger(__name__)

TERMINAL_BATCH_STATUSES = (BatchStatus.COMPLETE, BatchStatus.AWAITING_INPUT, BatchStatus.FAILED)
CLAIMABLE_BATCH_STATUSES = (BatchStatus.PENDING.value, BatchStatus.AWAITING_INPUT.value)
FINISHED_FILE_STATUSES = (FileStatus.COMPLETE, FileStatus.FAILED, FileStatus.REJECTED)

CANDIDATE_JSON_COLUMNS = frozenset({"profile", "documents"})
HOLD_JSON_COLUMNS = frozenset({"documents", "extraction_data", "manual_contact_info"})


def _adapt(column: str, value: Any, json_columns: Iterable[str]) -> Any:
    if isinstance(value, Enum):
        return value.value
    if column in json_columns and value is not None:
        return Jsonb(value)
    return value


def _update_statement(
    table: str, key_column: str, columns: Iterable[str], *, stamp_processed: bool = False
) -> sql.Composed:
    assignments = [sql.SQL("{} = {}").format(sql.Identifier(column), sql.Placeholder(column)) for column in columns]
    assignments.append(sql.SQL("updated_at = NOW()"))
    if stamp_processed:
        assignments.append(sql.SQL("processed_at = NOW()"))
    return sql.SQL("UPDATE {} SET {} WHERE {} = %(__key)s").format(
        sql.Identifier(table),
        sql.SQL(", ").join(assignments),
        sql.Identifier(key_column),
    )


# ---------------------------------------------------------------------------
# Batches
# ---------------------------------------------------------------------------


class PostgresBatchStore:
    def __init__(self, conn: psycopg.Connection) -> None:
        self._conn = conn

    def get(self, batch_id: str) -> Optional[Batch]:
        with self._conn.cursor(row_factory=dict_row) as cur:
            cur.execute(
                """
                SELECT id, client_id, status, file_count, processed_count,
                       created_at, completed_at, recovery_attempts
                FROM processing_batches
                WHERE id = %s
                """,
                (batch_id,),
            )
            row = cur.fetchone()
        if not row:
            return None
        return Batch(
            id=str(row["id"]),
            status=BatchStatus(row["status"]),
            file_count=int(row["file_count"] or 0),
            processed_count=int(row["processed_count"] or 0),
            client_id=row["client_id"],
            created_at=row["created_at"],
            completed_at=row["completed_at"],
            recovery_attempts=int(row["recovery_attempts"] or 0),
        )

    def claim(self, batch_id: str) -> bool:
        """Compare-and-set the batch into ``processing``.

        Returns False when another run already holds it or it is terminal.
        """

        with self._conn.cursor() as cur:
            cur.execute(
                """
                UPDATE processing_batches
                SET status = 'processing', started_at = NOW()
                WHERE id = %s AND status = ANY(%s)
                RETURNING id
                """,
                (batch_id, list(CLAIMABLE_BATCH_STATUSES)),
            )
            claimed = cur.fetchone() is not None
        if not claimed:
            logger.info("[db] batch %s not claimable", batch_id)
        return claimed

    def set_status(self, batch_id: str, status: BatchStatus, processed_count: Optional[int] = None) -> None:
        completed = status in TERMINAL_BATCH_STATUSES
        with self._conn.cursor() as cur:
            cur.execute(
                """
                UPDATE processing_batches
                SET status = %s,
                    processed_count = COALESCE(%s, processed_count),
                    completed_at = CASE WHEN %s THEN NOW() ELSE completed_at END
                WHERE id = %s
                """,
                (status.value, processed_count, completed, batch_id),
            )

    def set_progress(self, batch_id: str, processed: int, total: int) -> None:
        with self._conn.cursor() as cur:
            cur.execute(
                "UPDATE processing_batches SET processed_count = %s, file_count = GREATEST(file_count, %s) WHERE id = %s",
                (processed, total, batch_id),
            )

    def mark_recovery(self, batch_id: str) -> None:
        with self._conn.cursor() as cur:
            cur.execute(
                """
                UPDATE processing_batches
                SET status = 'pending',
                    recovery_attempts = recovery_attempts + 1,
                    last_recovery_at = NOW()
                WHERE id = %s AND status = 'processing'
                """,
                (batch_id,),
            )

    def load_config(self, batch_id: str) -> BatchConfig:
        with self._conn.cursor(row_factory=dict_row) as cur:
            cur.execute(
                """
                SELECT upload_type, job_id, required_skills, exclude_students, colleague
                FROM processing_batches
                WHERE id = %s
                """,
                (batch_id,),
            )
            row = cur.fetchone() or {}
        return BatchConfig(
            upload_type=row.get("upload_type") or "general",
            job_id=row.get("job_id"),
            required_skills=[skill for skill in (row.get("required_skills") or []) if skill],
            exclude_students=bool(row.get("exclude_students")),
            colleague=row.get("colleague"),
        )


# ---------------------------------------------------------------------------
# Candidates
# ---------------------------------------------------------------------------


class PostgresCandidateStore:
    def __init__(self, conn: psycopg.Connection) -> None:
        self._conn = conn

    def _find(self, where: str, value: str) -> Optional[str]:
        with self._conn.cursor(row_factory=dict_row) as cur:
            cur.execute(
                sql.SQL(
                    """
                    SELECT id
                    FROM candidates
                    WHERE {}
                    ORDER BY updated_at DESC
                    LIMIT 1
                    """
                ).format(sql.SQL(where)),
                (value,),
            )
            row = cur.fetchone()
        return str(row["id"]) if row else None

    def find_by_email(self, email: str) -> Optional[str]:
        normalized = normalize_email(email)
        if not normalized:
            return None
        return self._find("lower(email) = %s", normalized)

    def find_by_phone(self, phone: str) -> Optional[str]:
        normalized = normalize_phone(phone)
        if not normalized:
            return None
        return self._find("phone_normalized = %s", normalized)

    def insert(self, record: CandidateRecord) -> str:
        row = record.as_row()
        row["phone_normalized"] = normalize_phone(row.get("phone"))
        columns = list(row)
        params = {column: _adapt(column, row[column], CANDIDATE_JSON_COLUMNS) for column in columns}
        statement = sql.SQL("INSERT INTO candidates ({}) VALUES ({}) RETURNING id").format(
            sql.SQL(", ").join(sql.Identifier(column) for column in columns),
            sql.SQL(", ").join(sql.Placeholder(column) for column in columns),
        )
        with self._conn.cursor(row_factory=dict_row) as cur:
            cur.execute(statement, params)
            inserted = cur.fetchone()
        if not inserted:
            raise RuntimeError("candidate insert returned no id")
        return str(inserted["id"])

    def patch(self, candidate_id: str, fields: dict[str, Any]) -> None:
        if not fields:
            return
        values = dict(fields)
        if "phone" in values:
            values["phone_normalized"] = normalize_phone(values["phone"])
        params = {column: _adapt(column, value, CANDIDATE_JSON_COLUMNS) for column, value in values.items()}
        params["__key"] = candidate_id
        with self._conn.cursor() as cur:
            cur.execute(_update_statement("candidates", "id", values), params)

    def get(self, candidate_id: str) -> Optional[dict[str, Any]]:
        with self._conn.cursor(row_factory=dict_row) as cur:
            cur.execute("SELECT * FROM candidates WHERE id = %s", (candidate_id,))
            row = cur.fetchone()
        return dict(row) if row else None


# ---------------------------------------------------------------------------
# File status
# ---------------------------------------------------------------------------


class PostgresFileStatusStore:
    def __init__(self, conn: psycopg.Connection) -> None:
        self._conn = conn

    def upsert(
        self,
        batch_id: str,
        file_path: str,
        status: FileStatus,
        *,
        file_name: Optional[str] = None,
        error_message: Optional[str] = None,
        candidate_id: Optional[str] = None,
        document_type: Optional[str] = None,
        pack_id: Optional[str] = None,
    ) -> None:
        params = {
            "batch_id": batch_id,
            "file_path": file_path,
            "file_name": file_name or posixpath.basename(file_path),
            "status": status.value,
            "error_message": error_message,
            "candidate_id": candidate_id,
            "document_type": document_type,
            "pack_id": pack_id,
            "terminal": status in FINISHED_FILE_STATUSES,
        }
        with self._conn.cursor() as cur:
            cur.execute(
                """
                INSERT INTO file_processing_status (
                    batch_id, file_path, file_name, status, error_message,
                    candidate_id, document_type, pack_id, processed_at, updated_at
                )
                VALUES (
                    %(batch_id)s, %(file_path)s, %(file_name)s, %(status)s, %(error_message)s,
                    %(candidate_id)s, %(document_type)s, %(pack_id)s,
                    CASE WHEN %(terminal)s THEN NOW() END, NOW()
                )
                ON CONFLICT (batch_id, file_path) DO UPDATE SET
                    status = EXCLUDED.status,
                    file_name = EXCLUDED.file_name,
                    error_message = CASE
                        WHEN EXCLUDED.status IN ('processing', 'complete') THEN EXCLUDED.error_message
                        ELSE COALESCE(EXCLUDED.error_message, file_processing_status.error_message)
                    END,
                    candidate_id = COALESCE(EXCLUDED.candidate_id, file_processing_status.candidate_id),
                    document_type = COALESCE(EXCLUDED.document_type, file_processing_status.document_type),
                    pack_id = COALESCE(EXCLUDED.pack_id, file_processing_status.pack_id),
                    processed_at = COALESCE(EXCLUDED.processed_at, file_processing_status.processed_at),
                    updated_at = NOW()
                """,
                params,
            )

    def list_for_batch(self, batch_id: str) -> list[FileRecord]:
        with self._conn.cursor(row_factory=dict_row) as cur:
            cur.execute(
                """
                SELECT batch_id, file_path, file_name, status, document_type,
                       pack_id, error_message, candidate_id
                FROM file_processing_status
                WHERE batch_id = %s
                """,
                (batch_id,),
            )
            rows = cur.fetchall()
        return [
            FileRecord(
                batch_id=row["batch_id"],
                file_path=row["file_path"],
                file_name=row["file_name"],
                status=FileStatus(row["status"]),
                document_type=row["document_type"],
                pack_id=row["pack_id"],
                error_message=row["error_message"],
                candidate_id=str(row["candidate_id"]) if row["candidate_id"] else None,
            )
            for row in rows
        ]


# ---------------------------------------------------------------------------
# Hold queue
# ---------------------------------------------------------------------------


class PostgresHoldQueueStore:
    def __init__(self, conn: psycopg.Connection) -> None:
        self._conn = conn

    def insert(self, entry: HoldQueueEntry) -> str:
        row = entry.as_row()
        columns = list(row)
        params = {column: _adapt(column, row[column], HOLD_JSON_COLUMNS) for column in columns}
        statement = sql.SQL("INSERT INTO hold_queue ({}) VALUES ({}) RETURNING id").format(
            sql.SQL(", ").join(sql.Identifier(column) for column in columns),
            sql.SQL(", ").join(sql.Placeholder(column) for column in columns),
        )
        with self._conn.cursor(row_factory=dict_row) as cur:
            cur.execute(statement, params)
            inserted = cur.fetchone()
        if not inserted:
            raise RuntimeError("hold queue insert returned no id")
        return str(inserted["id"])

    def get(self, hold_id: str) -> Optional[HoldQueueEntry]:
        with self._conn.cursor(row_factory=dict_row) as cur:
            cur.execute("SELECT * FROM hold_queue WHERE id = %s", (hold_id,))
            row = cur.fetchone()
        if not row:
            return None
        return HoldQueueEntry(
            id=str(row["id"]),
            batch_id=row["batch_id"],
            client_id=row["client_id"],
            pack_id=row.get("pack_id"),
            reason=HoldReason(row["reason"]),
            status=HoldStatus(row["status"]),
            extracted_name=row.get("extracted_name"),
            extracted_email=row.get("extracted_email"),
            extracted_phone=row.get("extracted_phone"),
            cv_file_path=row.get("cv_file_path"),
            documents=row.get("documents") or [],
            documents_raw_text=row.get("documents_raw_text") or "",
            raw_text_preview=row.get("raw_text_preview") or "",
            extraction_data=row.get("extraction_data") or {},
            duplicate_candidate_id=str(row["duplicate_candidate_id"]) if row.get("duplicate_candidate_id") else None,
            duplicate_crm_contact_id=row.get("duplicate_crm_contact_id"),
            manual_contact_info=row.get("manual_contact_info") or {},
            candidate_id=str(row["candidate_id"]) if row.get("candidate_id") else None,
        )

    def set_status(self, hold_id: str, status: HoldStatus, **fields: Any) -> None:
        values = {"status": status, **fields}
        statement = _update_statement(
            "hold_queue", "id", values, stamp_processed=status in (HoldStatus.COMPLETE, HoldStatus.SKIPPED)
        )
        params = {column: _adapt(column, value, HOLD_JSON_COLUMNS) for column, value in values.items()}
        params["__key"] = hold_id
        with self._conn.cursor() as cur:
            cur.execute(statement, params)


# ---------------------------------------------------------------------------
# Rejections and usage
# ---------------------------------------------------------------------------


class PostgresRejectionLog:
    """Append-only record of rejected documents. Best effort."""

    def __init__(self, conn: psycopg.Connection) -> None:
        self._conn = conn

    def record(
        self,
        batch_id: str,
        file_name: str,
        file_path: str,
        rejection_type: str,
        reason: str,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        try:
            with self._conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO rejected_documents
                        (batch_id, file_name, file_path, rejection_type, rejection_reason, details)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (batch_id, file_name, file_path, rejection_type, reason, Jsonb(details or {})),
                )
        except psycopg.Error as exc:
            logger.warning("[db] failed to record rejection for %s: %s", file_path, exc)


class PostgresUsageLedger:
    def __init__(self, conn: psycopg.Connection) -> None:
        self._conn = conn

    def append(self, entry: UsageLedgerEntry) -> None:
        with self._conn.cursor() as cur:
            cur.execute(
                """
                INSERT INTO api_usage
                    (date, api_name, operation_type, calls_count, tokens_used, cost_usd, batch_id)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    entry.usage_date,
                    entry.api,
                    entry.operation,
                    entry.call_count,
                    entry.tokens,
                    entry.estimated_cost,
                    entry.batch_id,
                ),
            )

    def _select(self, where: str, value: Any) -> list[UsageLedgerEntry]:
        with self._conn.cursor(row_factory=dict_row) as cur:
            cur.execute(
                sql.SQL(
                    """
                    SELECT date, api_name, operation_type, calls_count, tokens_used, cost_usd, batch_id
                    FROM api_usage
                    WHERE {}
                    """
                ).format(sql.SQL(where)),
                (value,),
            )
            rows = cur.fetchall()
        return [
            UsageLedgerEntry(
                usage_date=row["date"],
                operation=row["operation_type"],
                api=row["api_name"],
                call_count=int(row["calls_count"] or 0),
                estimated_cost=float(row["cost_usd"] or 0),
                tokens=int(row["tokens_used"] or 0),
                batch_id=row["batch_id"],
            )
            for row in rows
        ]

    def entries_for_date(self, usage_date: date) -> list[UsageLedgerEntry]:
        return self._select("date = %s", usage_date)

    def entries_for_batch(self, batch_id: str) -> list[UsageLedgerEntry]:
        return self._select("batch_id = %s", batch_id)


__all__ = [
    "PostgresBatchStore",
    "PostgresCandidateStore",
    "PostgresFileStatusStore",
    "PostgresHoldQueueStore",
    "PostgresRejectionLog",
    "PostgresUsageLedger",
]
