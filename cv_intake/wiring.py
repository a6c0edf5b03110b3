"""Assemble production collaborators from settings."""

from __future__ import annotations

import logging
from dataclasses import dataclass

import psycopg

from .cost_guard import CostGuard
from .db.connection import connect
from .db.postgres import (
    PostgresBatchStore,
    PostgresCandidateStore,
    PostgresFileStatusStore,
    PostgresHoldQueueStore,
    PostgresRejectionLog,
    PostgresUsageLedger,
)
from .duplicate_detector import DuplicateDetector
from .errors import ConfigurationError
from .hold_queue import HoldQueueProcessor
from .orchestrator import BatchOrchestrator, IntakeDependencies
from .settings import Settings
from .storage import SupabaseObjectStore, create_supabase_client
from .sync import CandidateSyncer
from .vendors.gemini import GeminiClient
from .vendors.ghl import GHLClient

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Runtime:
    """Open resources for one CLI invocation."""

    settings: Settings
    conn: psycopg.Connection
    deps: IntakeDependencies
    gemini: GeminiClient
    ghl: GHLClient

    def orchestrator(self) -> BatchOrchestrator:
        return BatchOrchestrator(
            self.deps,
            self.settings.processing_limits(),
            self.settings.isolation_policy(),
            min_confidence=self.settings.min_classification_confidence,
            high_confidence=self.settings.high_classification_confidence,
        )

    def hold_processor(self) -> HoldQueueProcessor:
        return HoldQueueProcessor(self.deps, min_text_length=self.settings.min_text_length)

    def close(self) -> None:
        self.gemini.close()
        self.ghl.close()
        self.conn.close()


def _require(settings: Settings) -> None:
    missing = [
        name
        for name, value in (
            ("GEMINI_API_KEY", settings.gemini_api_key),
            ("GHL_PRIVATE_INTEGRATION_KEY", settings.ghl_private_integration_key),
            ("GHL_LOCATION_ID", settings.ghl_location_id),
        )
        if not value
    ]
    if missing:
        raise ConfigurationError(f"Missing required settings: {', '.join(missing)}")


def build_usage_guard(settings: Settings, conn: psycopg.Connection) -> CostGuard:
    return CostGuard(PostgresUsageLedger(conn), settings.cost_limits())


def build_dependencies(settings: Settings) -> Runtime:
    """Connect to every backing service and return the wired runtime."""

    _require(settings)
    conn = connect(settings)
    try:
        return _wire(settings, conn)
    except Exception:
        logger.error("[wiring] runtime setup failed; closing database connection")
        conn.close()
        raise


def _wire(settings: Settings, conn: psycopg.Connection) -> Runtime:
    candidates = PostgresCandidateStore(conn)
    objects = SupabaseObjectStore(
        create_supabase_client(settings),
        settings.storage_bucket,
        allowed_extensions=settings.allowed_extensions,
        retry=settings.storage_retry(),
    )
    cost_guard = build_usage_guard(settings, conn)
    gemini = GeminiClient.from_settings(settings)
    try:
        ghl = GHLClient.from_settings(settings)
    except Exception:
        gemini.close()
        raise

    deps = IntakeDependencies(
        batches=PostgresBatchStore(conn),
        files=PostgresFileStatusStore(conn),
        candidates=candidates,
        hold_queue=PostgresHoldQueueStore(conn),
        rejections=PostgresRejectionLog(conn),
        objects=objects,
        extractor=gemini,
        classifier=gemini,
        parser=gemini,
        cost_guard=cost_guard,
        duplicates=DuplicateDetector(
            candidates,
            ghl,
            check_store=settings.enable_store_duplicate_check,
            check_crm=settings.enable_crm_duplicate_check,
            cost_guard=cost_guard,
        ),
        syncer=CandidateSyncer(ghl, objects, candidates, cost_guard),
    )
    logger.info("[wiring] runtime ready (bucket=%s, model=%s)", settings.storage_bucket, settings.gemini_model)
    return Runtime(settings=settings, conn=conn, deps=deps, gemini=gemini, ghl=ghl)


__all__ = ["Runtime", "build_dependencies", "build_usage_guard"]
