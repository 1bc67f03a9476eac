from pydantic_settings import BaseSettings
from pydantic import field_validator
from typing import Optional
from functools import lru_cache
import json


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    DATABASE_URL: str = "sqlite+aiosqlite:///./returns.db"

    # Database Connection Pool Settings (ignored for SQLite)
    DB_POOL_SIZE: int = 10
    DB_MAX_OVERFLOW: int = 20
    DB_POOL_TIMEOUT: int = 30
    DB_POOL_RECYCLE: int = 1800

    # App Settings
    APP_NAME: str = "Return & Refund Orchestrator"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # CORS - accepts JSON string, comma-separated, or list
    CORS_ORIGINS: list[str] = [
        "http://localhost:3000",
        "http://localhost:5173",
    ]

    # Return workflow SLAs
    RETURN_SLA_HOURS: int = 48  # Shop action, shipment, pickup and disposition deadlines
    RETURN_TRANSIT_SLA_HOURS: int = 168  # Picked up but not delivered: auto refund after this
    RETURN_PENDING_TIMEOUT_ACTION: str = "AUTO_REFUND"  # AUTO_REFUND or AUTO_APPROVE
    STALE_STATE_MAX_RETRIES: int = 5  # CAS conflicts retried before RetryLater
    DEADLINE_SWEEP_INTERVAL_MINUTES: int = 5  # Fires overdue deadlines after restarts
    DEADLINE_RETRY_DELAY_MINUTES: int = 15  # Re-arm delay when a timeout side effect fails

    # GHN (Giao Hang Nhanh) Courier Integration
    GHN_API_URL: str = "https://online-gateway.ghn.vn/shiip/public-api"
    GHN_TOKEN: str = ""
    GHN_SHOP_ID: str = ""
    GHN_WEBHOOK_SECRET: Optional[str] = None  # For webhook verification
    GHN_SERVICE_TYPE_ID: int = 2  # 2 = standard (E-commerce delivery)
    GHN_REQUIRED_NOTE: str = "KHONGCHOXEMHANG"
    GHN_REQUEST_TIMEOUT: float = 30.0
    GHN_MAX_RETRIES: int = 3  # Transient failures only (network, 5xx, 429)
    GHN_RETRY_BACKOFF_SECONDS: float = 0.5

    # Settlement (refund) service
    SETTLEMENT_API_URL: str = "http://localhost:8100/api/v1/refunds"
    SETTLEMENT_API_KEY: str = ""
    SETTLEMENT_REQUEST_TIMEOUT: float = 30.0
    SETTLEMENT_SWEEP_INTERVAL_MINUTES: int = 5
    SETTLEMENT_ALERT_AFTER_RETRIES: int = 10  # Failures logged as errors from here on; retries never stop
    SETTLEMENT_RETRY_BACKOFF_SECONDS: int = 60
    SETTLEMENT_MAX_BACKOFF_SECONDS: int = 3600

    # Scheduler
    SCHEDULER_ENABLED: bool = True
    SCHEDULER_TIMEZONE: str = "Asia/Ho_Chi_Minh"

    @field_validator('CORS_ORIGINS', mode='before')
    @classmethod
    def parse_cors_origins(cls, v):
        if isinstance(v, str):
            try:
                return json.loads(v)
            except json.JSONDecodeError:
                return [origin.strip() for origin in v.split(',')]
        return v

    @field_validator('RETURN_PENDING_TIMEOUT_ACTION', mode='before')
    @classmethod
    def normalize_pending_timeout_action(cls, v):
        value = str(v).strip().upper()
        if value not in ("AUTO_REFUND", "AUTO_APPROVE"):
            raise ValueError("RETURN_PENDING_TIMEOUT_ACTION must be AUTO_REFUND or AUTO_APPROVE")
        return value

    @property
    def cors_origins_list(self) -> list[str]:
        return list(self.CORS_ORIGINS)

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
