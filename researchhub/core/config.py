import logging

from pydantic_settings import BaseSettings
from pydantic import ConfigDict
from typing import Optional

class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    CONFIG_STRICT: bool = False

    # Storage ("memory" for local dev/tests, "sql" for the managed Postgres)
    STORAGE_BACKEND: str = "memory"
    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None
    DB_STATEMENT_TIMEOUT_SECONDS: int = 10

    # Managed auth provider
    AUTH_JWT_SECRET: Optional[str] = None
    AUTH_JWT_AUDIENCE: str = "authenticated"
    AUTH_JWT_ISSUER: Optional[str] = None
    AUTH_URL: Optional[str] = None  # e.g. https://<project>.supabase.co
    AUTH_API_KEY: Optional[str] = None
    AUTH_TIMEOUT_SECONDS: float = 8.0

    # Points ledger
    POINTS_MAX_EXPIRY_DAYS: int = 365

    # CORS
    CORS_ALLOWED_ORIGINS: str = "*"  # comma-separated

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )
settings = Settings()


def validate_config(strict: Optional[bool] = None, settings_obj: Optional[Settings] = None, logger: Optional[logging.Logger] = None) -> bool:
    """Validate required configuration.

    In strict mode raise RuntimeError; otherwise emit warnings only.
    Secrets are not logged, only missing keys.
    """
    cfg = settings_obj or settings
    log = logger or logging.getLogger("researchhub")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    required_keys = ["AUTH_JWT_SECRET"]
    if getattr(cfg, "STORAGE_BACKEND", "memory") == "sql":
        required_keys.append("DATABASE_URL")

    missing = [key for key in required_keys if not getattr(cfg, key, None)]
    if missing:
        message = f"Missing required configuration: {', '.join(missing)}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    return True
