"""Central configuration for the CV intake runtime."""

from __future__ import annotations

from functools import lru_cache
from typing import Final

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .cost_guard import CostLimits
from .models import IsolationPolicy, ProcessingLimits
from .retry_policy import RetryConfig

__all__ = ["Settings", "get_settings", "reset_settings"]

GEMINI_DEFAULT_BASE_URL: Final[str] = "https://generativelanguage.googleapis.com/v1beta"
GHL_DEFAULT_BASE_URL: Final[str] = "https://services.leadconnectorhq.com"


class Settings(BaseSettings):
    # Credentials
    supabase_url: str = Field("", alias="SUPABASE_URL")
    supabase_service_role_key: str = Field("", alias="SUPABASE_SERVICE_ROLE_KEY")
    supabase_db_url: str = Field("", alias="SUPABASE_DB_URL")
    gemini_api_key: str = Field("", alias="GEMINI_API_KEY")
    ghl_private_integration_key: str = Field("", alias="GHL_PRIVATE_INTEGRATION_KEY")
    ghl_location_id: str = Field("", alias="GHL_LOCATION_ID")

    storage_bucket: str = Field("cv-uploads", alias="STORAGE_BUCKET")
    storage_max_attempts: int = Field(3, alias="STORAGE_MAX_ATTEMPTS")
    storage_initial_retry_ms: int = Field(500, alias="STORAGE_INITIAL_RETRY_MS")
    storage_max_retry_ms: int = Field(5000, alias="STORAGE_MAX_RETRY_MS")
    storage_retry_jitter_ms: int = Field(200, alias="STORAGE_RETRY_JITTER_MS")

    # Model endpoint
    gemini_model: str = Field("gemini-2.0-flash", alias="GEMINI_MODEL")
    gemini_base_url: str = Field(GEMINI_DEFAULT_BASE_URL, alias="GEMINI_BASE_URL")
    gemini_timeout_seconds: float = Field(60.0, alias="GEMINI_TIMEOUT_SECONDS")
    gemini_max_attempts: int = Field(6, alias="GEMINI_MAX_ATTEMPTS")
    gemini_initial_retry_ms: int = Field(1200, alias="GEMINI_INITIAL_RETRY_MS")
    gemini_max_retry_ms: int = Field(20000, alias="GEMINI_MAX_RETRY_MS")
    gemini_retry_jitter_ms: int = Field(400, alias="GEMINI_RETRY_JITTER_MS")

    # CRM endpoint
    ghl_base_url: str = Field(GHL_DEFAULT_BASE_URL, alias="GHL_BASE_URL")
    ghl_api_version: str = Field("2021-07-28", alias="GHL_API_VERSION")
    ghl_timeout_seconds: float = Field(30.0, alias="GHL_TIMEOUT_SECONDS")
    ghl_default_tags: list[str] = Field(default_factory=lambda: ["cv-imported"], alias="GHL_DEFAULT_TAGS")
    ghl_field_cache_ttl_seconds: float = Field(300.0, alias="GHL_FIELD_CACHE_TTL_SECONDS")
    ghl_max_attempts: int = Field(4, alias="GHL_MAX_ATTEMPTS")
    ghl_initial_retry_ms: int = Field(800, alias="GHL_INITIAL_RETRY_MS")
    ghl_max_retry_ms: int = Field(8000, alias="GHL_MAX_RETRY_MS")
    ghl_retry_jitter_ms: int = Field(250, alias="GHL_RETRY_JITTER_MS")

    retryable_status_codes: list[int] = Field(
        default_factory=lambda: [429, 500, 503], alias="RETRYABLE_STATUS_CODES"
    )

    # Cost ceilings
    daily_call_ceiling: int = Field(1500, alias="DAILY_CALL_CEILING")
    daily_cost_ceiling_usd: float = Field(50.0, alias="DAILY_COST_CEILING_USD")
    calls_per_file: int = Field(6, alias="CALLS_PER_FILE")
    cost_per_file_usd: float = Field(0.033, alias="COST_PER_FILE_USD")
    cost_warning_threshold: float = Field(0.80, alias="COST_WARNING_THRESHOLD")
    cost_critical_threshold: float = Field(0.95, alias="COST_CRITICAL_THRESHOLD")
    cost_per_1m_input_tokens: float = Field(0.15, alias="COST_PER_1M_INPUT_TOKENS")
    cost_per_1m_output_tokens: float = Field(0.60, alias="COST_PER_1M_OUTPUT_TOKENS")

    # Processing
    max_files_per_batch: int = Field(500, alias="MAX_FILES_PER_BATCH")
    max_file_size_mb: float = Field(10.0, alias="MAX_FILE_SIZE_MB")
    min_text_length: int = Field(50, alias="MIN_TEXT_LENGTH")
    max_text_length_for_parse: int = Field(8000, alias="MAX_TEXT_LENGTH_FOR_PARSE")
    max_files_per_pack: int = Field(10, alias="MAX_FILES_PER_PACK")
    allow_singleton_packs: bool = Field(True, alias="ALLOW_SINGLETON_PACKS")
    require_email_or_phone: bool = Field(True, alias="REQUIRE_EMAIL_OR_PHONE")
    enable_store_duplicate_check: bool = Field(True, alias="ENABLE_STORE_DUPLICATE_CHECK")
    enable_crm_duplicate_check: bool = Field(True, alias="ENABLE_CRM_DUPLICATE_CHECK")
    continue_on_error: bool = Field(True, alias="CONTINUE_ON_ERROR")
    allowed_extensions: list[str] = Field(
        default_factory=lambda: [".pdf", ".docx", ".doc", ".txt"], alias="ALLOWED_EXTENSIONS"
    )

    # Batch timeout rule
    per_file_allowance_seconds: float = Field(10.0, alias="PER_FILE_ALLOWANCE_SECONDS")
    batch_timeout_buffer_seconds: float = Field(300.0, alias="BATCH_TIMEOUT_BUFFER_SECONDS")
    max_batch_duration_seconds: float = Field(3600.0, alias="MAX_BATCH_DURATION_SECONDS")

    # Classification
    min_classification_confidence: float = Field(0.70, alias="MIN_CLASSIFICATION_CONFIDENCE")
    high_classification_confidence: float = Field(0.90, alias="HIGH_CLASSIFICATION_CONFIDENCE")
    classification_sample_chars: int = Field(3000, alias="CLASSIFICATION_SAMPLE_CHARS")

    log_level: str = Field("INFO", alias="LOG_LEVEL")
    max_log_length: int = Field(2000, alias="MAX_LOG_LENGTH")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        populate_by_name=True,
        extra="ignore",
    )

    def model_retry(self) -> RetryConfig:
        return RetryConfig(
            initial_ms=self.gemini_initial_retry_ms,
            max_ms=self.gemini_max_retry_ms,
            jitter_ms=self.gemini_retry_jitter_ms,
            max_attempts=self.gemini_max_attempts,
            retryable_statuses=frozenset(self.retryable_status_codes),
        )

    def crm_retry(self) -> RetryConfig:
        return RetryConfig(
            initial_ms=self.ghl_initial_retry_ms,
            max_ms=self.ghl_max_retry_ms,
            jitter_ms=self.ghl_retry_jitter_ms,
            max_attempts=self.ghl_max_attempts,
            retryable_statuses=frozenset(self.retryable_status_codes),
        )

    def storage_retry(self) -> RetryConfig:
        return RetryConfig(
            initial_ms=self.storage_initial_retry_ms,
            max_ms=self.storage_max_retry_ms,
            jitter_ms=self.storage_retry_jitter_ms,
            max_attempts=self.storage_max_attempts,
            retryable_statuses=frozenset(self.retryable_status_codes),
        )

    def cost_limits(self) -> CostLimits:
        return CostLimits(
            daily_call_ceiling=self.daily_call_ceiling,
            daily_cost_ceiling=self.daily_cost_ceiling_usd,
            calls_per_file=self.calls_per_file,
            cost_per_file=self.cost_per_file_usd,
            warning_threshold=self.cost_warning_threshold,
            critical_threshold=self.cost_critical_threshold,
            cost_per_1m_input_tokens=self.cost_per_1m_input_tokens,
            cost_per_1m_output_tokens=self.cost_per_1m_output_tokens,
        )

    def processing_limits(self) -> ProcessingLimits:
        return ProcessingLimits(
            max_files_per_batch=self.max_files_per_batch,
            max_file_size_bytes=int(self.max_file_size_mb * 1024 * 1024),
            min_text_length=self.min_text_length,
            max_files_per_pack=self.max_files_per_pack,
            allow_singleton_packs=self.allow_singleton_packs,
            require_email_or_phone=self.require_email_or_phone,
            per_file_allowance_seconds=self.per_file_allowance_seconds,
            batch_timeout_buffer_seconds=self.batch_timeout_buffer_seconds,
            max_batch_duration_seconds=self.max_batch_duration_seconds,
        )

    def isolation_policy(self) -> IsolationPolicy:
        return IsolationPolicy.ISOLATE_PACK if self.continue_on_error else IsolationPolicy.FAIL_BATCH


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return the cached intake settings instance."""

    return Settings()


def reset_settings() -> None:
    """Drop the cached settings so the next call re-reads the environment."""

    get_settings.cache_clear()
