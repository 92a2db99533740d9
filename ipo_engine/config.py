from __future__ import annotations

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # --- Runtime / env ---
    ENV: str = "prod"
    TZ: str = "Asia/Kolkata"
    LOG_LEVEL: str = "INFO"

    # Reverse proxy prefix (API mounted at /ipo/api/*)
    API_ROOT_PATH: str = "/ipo/api"

    # Sync engine background loops are optional for API-only deployments/testing.
    START_SYNC_ENGINE: bool = False
    # Run the four jobs once, in order, right after startup.
    SYNC_INITIAL_RUN: bool = True

    # --- Database ---
    DATABASE_URL: str = "sqlite:////app/db/ipo_engine.sqlite3"

    # --- Cache / broadcast ---
    # Empty -> in-process memory cache + in-process fan-out only.
    REDIS_URL: str = ""
    REDIS_BROADCAST_CHANNEL: str = "ipo:broadcast"
    CACHE_DEFAULT_TTL_SEC: int = 300
    CACHE_MAX_ENTRIES: int = 5000

    # --- Market data source ---
    MARKET_PROVIDER: str = "HTTP"  # HTTP / MOCK
    MARKET_API_BASE_URL: str = "https://www.nseindia.com"
    MARKET_API_TIMEOUT_SEC: float = 10.0
    MARKET_API_MAX_CONCURRENT: int = 3
    PREMIUM_SOURCES: str = "market,broker,portal,aggregator"

    # --- Orchestrator job intervals (seconds) ---
    SYNC_OFFERING_MASTER_SEC: int = 5 * 60
    SYNC_LIVE_DATA_SEC: int = 60
    SYNC_PREMIUM_SEC: int = 30
    SYNC_ANALYTICS_SEC: int = 15 * 60
    SYNC_HEALTH_CHECK_SEC: int = 60
    SYNC_FAILED_OPS_SEC: int = 5 * 60
    SYNC_CONSISTENCY_SEC: int = 60 * 60
    SYNC_CLEANUP_SEC: int = 30 * 60

    # Staggered startup offsets, one per job, in job order.
    SYNC_STAGGER_SEC: str = "0,5,10,15"

    # Consistency audit
    SYNC_STALE_AFTER_SEC: int = 24 * 3600
    SYNC_AUTO_REPAIR: bool = True

    # Analytics job batching
    SYNC_ANALYTICS_BATCH_SIZE: int = 5
    SYNC_ANALYTICS_BATCH_PAUSE_MS: int = 100

    # --- Retry / failed-operation queue ---
    RETRY_MAX_ATTEMPTS: int = 3
    RETRY_BASE_DELAY_MS: int = 1000
    RETRY_MAX_DELAY_MS: int = 10000
    RETRY_JITTER_MS: int = 1000
    FAILED_OPS_MAX_QUEUE: int = 1000
    FAILED_OPS_MAX_ATTEMPTS: int = 3
    FAILED_OPS_MAX_AGE_SEC: int = 3600

    # --- Demand tracker ---
    START_DEMAND_TRACKER: bool = True
    TRACKER_HIGH_PRIORITY_SEC: int = 30
    TRACKER_MEDIUM_PRIORITY_SEC: int = 5 * 60
    TRACKER_LOW_PRIORITY_SEC: int = 10 * 60
    TRACKER_BATCH_SIZE: int = 5
    TRACKER_MAX_RETRIES: int = 3
    TRACKER_RETENTION_DAYS: int = 7
    TRACKER_MAX_ALERTS: int = 50
    TRACKER_HISTORY_LIMIT: int = 50
    TRACKER_MARKET_ANALYSIS_SEC: int = 2 * 60
    TRACKER_MAINTENANCE_SEC: int = 30 * 60
    TRACKER_PERFORMANCE_SEC: int = 5 * 60
    TRACKER_INBOX_MAX: int = 1000

    # --- Analytics engine ---
    ANALYTICS_TIME_RANGE_DAYS: int = 30
    ANALYTICS_LOCAL_TTL_SEC: int = 10 * 60
    ANALYTICS_SHARED_TTL_SEC: int = 10 * 60
    # 5000 crore
    ANALYTICS_LARGE_ISSUE_SIZE: int = 5000 * 10_000_000

    @field_validator("API_ROOT_PATH", mode="before")
    @classmethod
    def _root_path_strip(cls, v: object) -> str:
        s = "" if v is None else str(v).strip()
        if not s:
            return ""
        # normalize: ensure leading slash, no trailing slash
        if not s.startswith("/"):
            s = "/" + s
        return s.rstrip("/")

    @field_validator("MARKET_API_BASE_URL", mode="before")
    @classmethod
    def _coerce_base_url(cls, v: object) -> str:
        if v is None:
            return "https://www.nseindia.com"
        s = str(v).strip().rstrip("/")
        return s or "https://www.nseindia.com"

    @field_validator("MARKET_PROVIDER", "LOG_LEVEL", mode="before")
    @classmethod
    def _upper(cls, v: object) -> str:
        return str(v or "").strip().upper()

    @field_validator("REDIS_URL", mode="before")
    @classmethod
    def _coerce_redis_url(cls, v: object) -> str:
        if v is None:
            return ""
        return str(v).strip()

    def stagger_offsets(self) -> list[float]:
        out: list[float] = []
        for part in (self.SYNC_STAGGER_SEC or "").split(","):
            part = part.strip()
            if not part:
                continue
            try:
                out.append(max(0.0, float(part)))
            except ValueError:
                out.append(0.0)
        return out

    def premium_sources(self) -> list[str]:
        return [x.strip().lower() for x in (self.PREMIUM_SOURCES or "").split(",") if x.strip()]


settings = Settings()
