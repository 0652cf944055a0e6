"""
Configuration settings for customs-sync.

Uses Pydantic Settings to load environment variables for the remote order API,
business rules, feature flags, quota limits, database connections, and logging.
"""
from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from functools import lru_cache
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

VACIER_STATUS = "Vacier"
UNFULFILLED_STATUS = "Unfulfilled"


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class Settings(BaseSettings):
    # Remote API
    api_url: str = Field("https://public-api.shiphero.com/graphql", alias="SHIPHERO_API_URL")
    auth_url: str = Field("https://public-api.shiphero.com/auth/refresh", alias="SHIPHERO_AUTH_URL")
    access_token: str = Field("", alias="SHIPHERO_ACCESS_TOKEN")
    refresh_token: str = Field("", alias="SHIPHERO_REFRESH_TOKEN")
    customer_account_id: str = Field("", alias="CUSTOMER_ACCOUNT_ID")
    http_timeout_seconds: float = Field(30.0, alias="HTTP_TIMEOUT_SECONDS")
    http_max_retries: int = Field(3, alias="HTTP_MAX_RETRIES")
    http_retry_delay_seconds: float = Field(1.0, alias="HTTP_RETRY_DELAY_SECONDS")
    page_size: int = Field(25, alias="PAGE_SIZE")

    # Business rules
    target_country: str = Field("TR", alias="TARGET_COUNTRY", min_length=2, max_length=2)
    max_total_customs_value: Decimal = Field(Decimal("25.00"), alias="MAX_TOTAL_CUSTOMS_VALUE")
    min_item_customs_value: Decimal = Field(Decimal("0.50"), alias="MIN_ITEM_CUSTOMS_VALUE")
    max_item_customs_value: Decimal = Field(Decimal("8.00"), alias="MAX_ITEM_CUSTOMS_VALUE")
    processed_tag: str = Field("TR_CUSTOMS_SET", alias="PROCESSED_TAG")
    processing_start_date: datetime = Field(
        datetime(2025, 1, 1, tzinfo=timezone.utc), alias="PROCESSING_START_DATE"
    )
    cursor_name: str = Field("main", alias="CURSOR_NAME")

    # Feature flags
    feature_customs_update: bool = Field(True, alias="FEATURE_CUSTOMS_UPDATE")
    feature_order_tagging: bool = Field(True, alias="FEATURE_ORDER_TAGGING")
    feature_vacier_status: bool = Field(True, alias="FEATURE_VACIER_STATUS")
    feature_unfulfilled_status: bool = Field(False, alias="FEATURE_UNFULFILLED_STATUS")
    feature_dry_run: bool = Field(False, alias="FEATURE_DRY_RUN")
    feature_manual_backfill: bool = Field(False, alias="FEATURE_MANUAL_BACKFILL")
    backfill_start_date: Optional[datetime] = Field(None, alias="BACKFILL_START_DATE")
    backfill_end_date: Optional[datetime] = Field(None, alias="BACKFILL_END_DATE")

    # Quota (remote API limits)
    quota_max_credits: int = Field(4004, alias="QUOTA_MAX_CREDITS")
    quota_replenish_rate: float = Field(60.0, alias="QUOTA_REPLENISH_RATE")
    quota_credit_buffer: int = Field(100, alias="QUOTA_CREDIT_BUFFER")
    quota_max_requests: int = Field(7000, alias="QUOTA_MAX_REQUESTS")
    quota_window_seconds: float = Field(300.0, alias="QUOTA_WINDOW_SECONDS")
    quota_request_buffer: int = Field(100, alias="QUOTA_REQUEST_BUFFER")
    estimated_record_cost: int = Field(50, alias="ESTIMATED_RECORD_COST")
    estimated_page_cost: int = Field(100, alias="ESTIMATED_PAGE_COST")
    max_quota_wait_seconds: float = Field(120.0, alias="MAX_QUOTA_WAIT_SECONDS")

    # Run limits
    max_run_seconds: float = Field(280.0, alias="MAX_RUN_SECONDS")
    max_error_details: int = Field(50, alias="MAX_ERROR_DETAILS")
    display_timezone: str = Field("Europe/Amsterdam", alias="DISPLAY_TIMEZONE")

    # Database
    db_host: str = Field("localhost", alias="DB_HOST")
    db_port: int = Field(5432, alias="DB_PORT")
    db_user: str = Field("postgres", alias="DB_USER")
    db_password: str = Field("postgres", alias="DB_PASSWORD")
    db_name: str = Field("customs_sync", alias="DB_NAME")

    # Application
    app_env: str = Field("development", alias="APP_ENV")
    log_level: str = Field("INFO", alias="LOG_LEVEL")
    log_json: bool = Field(False, alias="LOG_JSON")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    @field_validator("processing_start_date", "backfill_start_date", "backfill_end_date")
    @classmethod
    def _normalize_timezone(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(value) if value is not None else None

    @field_validator("target_country")
    @classmethod
    def _upper_country(cls, value: str) -> str:
        return value.upper()

    def fulfillment_statuses(self) -> List[str]:
        """
        Fulfillment statuses to query, derived from the status feature flags.
        """
        statuses: List[str] = []
        if self.feature_vacier_status:
            statuses.append(VACIER_STATUS)
        if self.feature_unfulfilled_status:
            statuses.append(UNFULFILLED_STATUS)
        if not statuses:
            raise ValueError("At least one fulfillment status feature flag must be enabled")
        return statuses

    def configuration_errors(self) -> List[str]:
        """
        List problems that should block a batch run. Empty means runnable.
        """
        errors: List[str] = []
        if not self.feature_vacier_status and not self.feature_unfulfilled_status:
            errors.append("At least one fulfillment status (Vacier or Unfulfilled) must be enabled")
        if not self.feature_order_tagging and not self.feature_dry_run:
            errors.append("Order tagging is disabled: orders would be processed on every run")
        if self.feature_manual_backfill:
            if self.backfill_start_date is None or self.backfill_end_date is None:
                errors.append("Manual backfill requires BACKFILL_START_DATE and BACKFILL_END_DATE")
            elif self.backfill_start_date > self.backfill_end_date:
                errors.append("BACKFILL_START_DATE must not be after BACKFILL_END_DATE")
        if self.min_item_customs_value > self.max_item_customs_value:
            errors.append("MIN_ITEM_CUSTOMS_VALUE must not exceed MAX_ITEM_CUSTOMS_VALUE")
        return errors


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """
    Retrieve a cached instance of Settings to avoid repeated env parsing.
    """
    return Settings()


__all__ = ["Settings", "get_settings", "VACIER_STATUS", "UNFULFILLED_STATUS"]
