from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import AnyUrl

class Settings(BaseSettings):
    APP_NAME: str = "Check-in Sync API"
    APP_ENV: str = "dev"
    APP_DEBUG: bool = True
    LOG_LEVEL: str = "INFO"

    DATABASE_URL: AnyUrl

    SUPABASE_JWT_SECRET: str | None = None
    JWT_AUDIENCE: str = "authenticated"

    # "postgres" listens on NOTIFY channels, "memory" fans out in-process
    CHANGE_FEED_BACKEND: str = "postgres"

    DEFAULT_SESSION_MINUTES: int = 10
    DEFAULT_TURN_SECONDS: int = 90
    DEFAULT_MAX_EXTENSIONS: int = 2

    # idle participant runtimes are closed by a periodic sweep
    RUNTIME_IDLE_SECONDS: int = 1800
    RUNTIME_SWEEP_SECONDS: int = 60

    RESEND_API_KEY: str | None = None
    EMAIL_FROM: str = "Check-in <checkins@example.com>"
    SITE_URL: str = "http://localhost:3000"

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False)

settings = Settings()  # type: ignore
