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


def _parse_plan_packages(v: str) -> dict[str, str]:
    """'basic:web-basic,pro:web-pro' -> {'basic': 'web-basic', 'pro': 'web-pro'}."""
    out: dict[str, str] = {}
    for pair in (v or "").split(","):
        plan, sep, package = pair.partition(":")
        if sep and plan.strip() and package.strip():
            out[plan.strip()] = package.strip()
    return out


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # App
    env: str = Field(default="development", description="ENV")
    debug: bool = Field(default=False, description="DEBUG")
    secret_key: str = Field(default="change-me-in-production-min-32-chars")
    public_base_url: str = Field(default="http://localhost:8000", alias="PUBLIC_BASE_URL")
    frontend_base_url: str = Field(default="http://localhost:3000", alias="FRONTEND_BASE_URL")

    # Record store: "mongo" or "memory"
    record_store_backend: str = Field(default="mongo", alias="RECORD_STORE_BACKEND")

    # MongoDB
    mongodb_uri: str = Field(default="mongodb://localhost:27017", alias="MONGODB_URI")
    mongodb_db_name: str = Field(default="alatyr_hosting", alias="MONGODB_DB_NAME")

    # Redis (arq worker)
    redis_url: str = Field(default="redis://localhost:6379/0", alias="REDIS_URL")

    # Credential encryption (Fernet key, base64)
    token_encryption_key: str = Field(default="", alias="TOKEN_ENCRYPTION_KEY")

    # Auth tokens
    access_token_ttl_seconds: int = Field(default=15 * 60, alias="ACCESS_TOKEN_TTL_SECONDS")
    refresh_token_ttl_days: int = Field(default=30, alias="REFRESH_TOKEN_TTL_DAYS")

    # GoPay
    gopay_environment: str = Field(default="SANDBOX", alias="GOPAY_ENVIRONMENT")
    gopay_go_id: str = Field(default="", alias="GOPAY_GO_ID")
    gopay_client_id: str = Field(default="", alias="GOPAY_CLIENT_ID")
    gopay_client_secret: str = Field(default="", alias="GOPAY_CLIENT_SECRET")
    gopay_timeout_seconds: float = Field(default=10.0, alias="GOPAY_TIMEOUT_SECONDS")
    gopay_max_attempts: int = Field(default=3, alias="GOPAY_MAX_ATTEMPTS")

    # HestiaCP
    hestiacp_url: str = Field(default="", alias="HESTIACP_URL")
    hestiacp_access_key: str = Field(default="", alias="HESTIACP_ACCESS_KEY")
    hestiacp_secret_key: str = Field(default="", alias="HESTIACP_SECRET_KEY")
    hestiacp_server_ip: str = Field(default="", alias="HESTIACP_SERVER_IP")
    hestiacp_default_package: str = Field(default="default", alias="HESTIACP_DEFAULT_PACKAGE")
    hestiacp_plan_packages_raw: str = Field(
        default="",
        alias="HESTIACP_PLAN_PACKAGES",
        description="Comma-separated plan:package pairs",
    )
    hestiacp_verify_tls: bool = Field(default=False, alias="HESTIACP_VERIFY_TLS")
    hestiacp_timeout_seconds: float = Field(default=30.0, alias="HESTIACP_TIMEOUT_SECONDS")

    # Control-panel retry policy
    panel_max_attempts: int = Field(default=3, alias="PANEL_MAX_ATTEMPTS")
    panel_backoff_base_seconds: float = Field(default=0.5, alias="PANEL_BACKOFF_BASE_SECONDS")
    panel_backoff_max_seconds: float = Field(default=8.0, alias="PANEL_BACKOFF_MAX_SECONDS")

    # Provisioning saga
    saga_lease_seconds: int = Field(default=300, alias="SAGA_LEASE_SECONDS")

    # Return flow polling
    return_poll_attempts: int = Field(default=5, alias="RETURN_POLL_ATTEMPTS")
    return_poll_interval_seconds: float = Field(default=2.0, alias="RETURN_POLL_INTERVAL_SECONDS")

    # Sentry
    sentry_dsn: str | None = Field(default=None, alias="SENTRY_DSN")

    # CORS: env as string, exposed as list
    cors_origins_raw: str = Field(
        default="http://localhost:3000,http://localhost:5173",
        alias="CORS_ORIGINS",
        description="Comma-separated or JSON list",
    )

    @property
    def cors_origins(self) -> List[str]:
        return _parse_cors_origins(getattr(self, "cors_origins_raw", None))

    @property
    def gopay_api_url(self) -> str:
        if self.gopay_environment.upper() == "PRODUCTION":
            return "https://gate.gopay.cz/api"
        return "https://gw.sandbox.gopay.com/api"

    @property
    def gopay_configured(self) -> bool:
        return bool(self.gopay_go_id and self.gopay_client_id and self.gopay_client_secret)

    @property
    def hestiacp_configured(self) -> bool:
        return bool(self.hestiacp_url and self.hestiacp_access_key)

    def package_for_plan(self, plan_id: str | None) -> str:
        packages = _parse_plan_packages(self.hestiacp_plan_packages_raw)
        return packages.get(plan_id or "", self.hestiacp_default_package)


@lru_cache
def get_settings() -> Settings:
    return Settings()
