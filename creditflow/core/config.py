from functools import lru_cache
from typing import Any, List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

_DEFAULT_CORS = ["http://localhost:3000", "http://localhost:5173"]


def _parse_cors_origins(v: Any) -> List[str]:
    try:
        if v is None or v == "":
            return _DEFAULT_CORS.copy()
        if isinstance(v, list):
            return [x for x in v if isinstance(x, str) and x.strip()]
        s = str(v).strip()
        if not s:
            return _DEFAULT_CORS.copy()
        if s.startswith("["):
            import json
            out = json.loads(s)
            return [x for x in out if isinstance(x, str) and x.strip()] or _DEFAULT_CORS.copy()
        return [x.strip() for x in s.split(",") if x.strip()] or _DEFAULT_CORS.copy()
    except Exception:
        return _DEFAULT_CORS.copy()


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    # App
    env: str = Field(default="development", description="ENV")
    debug: bool = Field(default=False, description="DEBUG")
    secret_key: str = Field(default="change-me-in-production-min-32-chars")

    # MongoDB
    mongodb_uri: str = Field(default="mongodb://localhost:27017", alias="MONGODB_URI")
    mongodb_db_name: str = Field(default="creditflow", alias="MONGODB_DB_NAME")

    # Redis (ARQ scheduler)
    redis_url: str = Field(default="redis://localhost:6379/0", alias="REDIS_URL")

    # Payment provider webhooks
    webhook_secret: str = Field(default="", alias="PAYMENTS_WEBHOOK_SECRET")
    webhook_secret_prefix: str = Field(default="whsec_", alias="PAYMENTS_WEBHOOK_SECRET_PREFIX")
    webhook_signature_header: str = Field(default="webhook-signature", alias="PAYMENTS_SIGNATURE_HEADER")
    allow_unsigned_webhooks: bool = Field(default=False, alias="PAYMENTS_ALLOW_UNSIGNED_WEBHOOKS")

    # Ledger
    storage_timeout_seconds: float = Field(default=5.0, alias="STORAGE_TIMEOUT_SECONDS")
    ledger_write_retries: int = Field(default=5, alias="LEDGER_WRITE_RETRIES")
    pricing_config_path: str | None = Field(default=None, alias="PRICING_CONFIG_PATH")
    admin_grant_max_credits: int = 100_000

    # Sentry
    sentry_dsn: str | None = Field(default=None, alias="SENTRY_DSN")

    # CORS: env as string, exposed as list
    cors_origins_raw: str = Field(
        default="http://localhost:3000,http://localhost:5173",
        alias="CORS_ORIGINS",
        description="Comma-separated or JSON list",
    )

    # Scheduler
    expire_credits_minute: int = Field(default=0, alias="EXPIRE_CREDITS_MINUTE")

    @property
    def cors_origins(self) -> List[str]:
        return _parse_cors_origins(getattr(self, "cors_origins_raw", None))

    @property
    def is_production(self) -> bool:
        return self.env.strip().lower() in ("production", "prod")


@lru_cache
def get_settings() -> Settings:
    return Settings()
