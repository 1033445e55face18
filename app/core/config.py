import os
from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    PROJECT_NAME: str = "Creem Webhooks"
    ENVIRONMENT: str = "development"
    DATABASE_URL: str = "sqlite+aiosqlite:///./creem_webhooks.db"
    CREEM_WEBHOOK_SECRET: str = ""
    CREEM_PROVIDER_NAME: str = "creem"
    SUPABASE_URL: str = ""
    SUPABASE_SERVICE_ROLE_KEY: str = ""
    SUPABASE_ADMIN_PAGE_SIZE: int = 1000
    SUPABASE_ADMIN_MAX_PAGES: int = 50
    SUPABASE_TIMEOUT_SECONDS: float = 10.0
    # auto | supabase | database
    USER_DIRECTORY_BACKEND: str = "auto"
    SUBSCRIPTION_REJECT_STALE_EVENTS: bool = False
    # A ledger row left in "processing" longer than this is treated as abandoned.
    WEBHOOK_PROCESSING_LEASE_SECONDS: int = 300
    ADMIN_API_KEY: str = ""
    DB_AUTO_INIT_ON_STARTUP: bool | None = None

    model_config = SettingsConfigDict(
        env_file=".env",
        env_ignore_empty=True,
        extra="ignore"
    )

    @model_validator(mode='after')
    def check_database_url_in_production(self):
        if os.environ.get("VERCEL"):
            self.ENVIRONMENT = "production"

        if self.ENVIRONMENT == "production":
            if "sqlite" in self.DATABASE_URL:
                raise ValueError(
                    "Production environment detected but DATABASE_URL is missing or set to SQLite. "
                    "Set DATABASE_URL to the PostgreSQL connection string."
                )

            # Supabase hands out libpq style URLs; the async engine needs the asyncpg driver.
            if self.DATABASE_URL.startswith("postgres://"):
                self.DATABASE_URL = self.DATABASE_URL.replace("postgres://", "postgresql+asyncpg://", 1)
            elif self.DATABASE_URL.startswith("postgresql://") and "+asyncpg" not in self.DATABASE_URL:
                self.DATABASE_URL = self.DATABASE_URL.replace("postgresql://", "postgresql+asyncpg://", 1)

        if self.DB_AUTO_INIT_ON_STARTUP is None:
            self.DB_AUTO_INIT_ON_STARTUP = self.ENVIRONMENT != "production"

        self.USER_DIRECTORY_BACKEND = (self.USER_DIRECTORY_BACKEND or "auto").strip().lower()
        return self

    @property
    def supabase_configured(self) -> bool:
        return bool(self.SUPABASE_URL and self.SUPABASE_SERVICE_ROLE_KEY)

settings = Settings()
