"""
RescueBag — Configuration
All settings are read from environment variables (or .env file).
"""
from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # ── Service ──────────────────────────────────────────────
    SERVICE_NAME: str = "rescuebag"
    SERVICE_VERSION: str = "1.0.0"
    DEBUG: bool = False
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    LOG_LEVEL: str = "INFO"

    # ── Storage ──────────────────────────────────────────────
    STORE_BACKEND: str = "sql"  # "sql" | "memory"

    POSTGRES_HOST: str = "orders-db"
    POSTGRES_PORT: int = 5432
    POSTGRES_DB: str = "orders_db"
    POSTGRES_USER: str = "orders_user"
    POSTGRES_PASSWORD: str = "orders_pass"

    @property
    def database_url(self) -> str:
        return (
            f"postgresql+asyncpg://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
            f"@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
        )

    # ── Redis ─────────────────────────────────────────────────
    REDIS_HOST: str = "redis"
    REDIS_PORT: int = 6379
    REDIS_DB: int = 0
    REDIS_PASSWORD: str = ""

    @property
    def redis_url(self) -> str:
        if self.REDIS_PASSWORD:
            return f"redis://:{self.REDIS_PASSWORD}@{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"
        return f"redis://{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"

    @property
    def celery_broker_url(self) -> str:
        return self.redis_url

    @property
    def celery_result_backend(self) -> str:
        return self.redis_url

    # ── Session JWT (issued by the identity provider) ─────────
    JWT_SECRET_KEY: str = "CHANGE_ME_IN_PRODUCTION"
    JWT_ALGORITHM: str = "HS256"

    # ── QR Tokens ─────────────────────────────────────────────
    QR_SECRET_KEY: str = "CHANGE_ME_QR_SECRET"
    QR_ALGORITHM: str = "HS256"
    QR_TOKEN_TTL_SECONDS: int = 86400

    # Redemption straight from CONFIRMED/PREPARING is a product decision;
    # the default only lets READY orders be picked up.
    REDEMPTION_REQUIRES_READY: bool = True

    # ── Optimistic Locking Retry ──────────────────────────────
    OPT_LOCK_MAX_RETRIES: int = 5
    OPT_LOCK_BASE_DELAY_MS: int = 50      # base exponential backoff delay in ms
    OPT_LOCK_MAX_DELAY_MS: int = 1000     # max backoff cap in ms
    OPT_LOCK_JITTER_MS: int = 50          # random jitter range in ms

    # ── Payment Provider ──────────────────────────────────────
    PAYMENT_PROVIDER_URL: str = "http://payment-provider:8010"
    PAYMENT_WEBHOOK_SECRET: str = ""
    PAYMENT_CURRENCY: str = "COP"
    PAYMENT_HTTP_TIMEOUT_SECONDS: float = 5.0
    PAYMENT_MAX_RETRIES: int = 3
    PAYMENT_RETRY_DELAY: int = 1
    PAYMENT_POLL_INTERVAL_SECONDS: int = 30
    PAYMENT_POLL_TIMEOUT_SECONDS: int = 900

    # ── Idempotency ───────────────────────────────────────────
    IDEMPOTENCY_ENABLED: bool = True
    IDEMPOTENCY_KEY_TTL_SECONDS: int = 86400

    # ── Order Watch Streams ───────────────────────────────────
    WATCH_BACKEND: str = "redis"  # "redis" | "polling"
    WATCH_POLL_INTERVAL_SECONDS: float = 30.0
    SSE_RETRY_MILLISECONDS: int = 3000

    # ── Observability ─────────────────────────────────────────
    METRICS_ENABLED: bool = True
    HEALTH_CHECK_TIMEOUT: float = 5.0


@lru_cache()
def get_settings() -> Settings:
    return Settings()
