from pydantic_settings import BaseSettings, SettingsConfigDict
from pathlib import Path
from typing import Optional


class Settings(BaseSettings):
    API_KEY: str = "change-me"
    API_KEY_HEADER: str = "X-API-Key"
    # set by the upstream identity provider; absent means anonymous
    OWNER_HEADER: str = "X-Owner-Id"
    PASSWORD_HEADER: str = "X-Crate-Password"

    STORAGE_DIR: Path = Path("./storage")
    LOG_DIR: Path = Path("./logs")
    LOG_LEVEL: str = "INFO"

    # Support either a full DATABASE_URL or individual PG_* settings
    DATABASE_URL: Optional[str] = None
    PG_USER: str = "postgres"
    PG_PASSWORD: str = "password"
    PG_HOST: str = "postgres"
    PG_PORT: int = 5432
    PG_DB: str = "mcph"

    REDIS_URL: str = "redis://redis:6379/0"

    # upload limits, TTLs are in hours
    MAX_UPLOAD_BYTES: int = 10 * 1024 * 1024
    DEFAULT_TTL_HOURS: float = 1.0
    MIN_TTL_HOURS: float = 1 / 60
    MAX_TTL_HOURS: float = 24.0

    SIGNED_URL_TTL_SECONDS: int = 15 * 60
    SIGNING_SECRET: str = "change-me-too"

    PURGE_LOCK_KEY: str = "mcph:purge:lock"
    PURGE_LOCK_LEASE_SECONDS: int = 10 * 60
    ORPHAN_GRACE_SECONDS: int = 60 * 60

    # Allow extra env vars to be ignored and load from .env file
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    def __init__(self, **values):
        super().__init__(**values)
        # Build a Postgres URL when DATABASE_URL not provided
        if not self.DATABASE_URL:
            self.DATABASE_URL = (
                f"postgresql+psycopg2://{self.PG_USER}:"
                f"{self.PG_PASSWORD}@{self.PG_HOST}:{self.PG_PORT}/{self.PG_DB}"
            )


settings = Settings()
