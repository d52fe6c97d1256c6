from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    # Basic auth (single author account)
    BASIC_USER: str = "admin"
    BASIC_PASS: str = "changeme"

    # Persistence
    DATABASE_URL: str = "sqlite:///./jobs.db"

    # HTTP
    CORS_ORIGINS: list[str] = ["http://localhost:3000"]
    LOG_LEVEL: str = "INFO"

    # Job streaming
    STREAM_HEARTBEAT_SECONDS: float = 1.0  # idle re-read / keepalive cadence
    JOB_RETENTION_SECONDS: int = 3600  # terminal jobs older than this get reaped
    REAPER_INTERVAL_SECONDS: float = 60.0

    # Content generation
    STEP_DELAY_SECONDS: float = 0.2

    # Subscription client
    API_BASE_URL: str = "http://127.0.0.1:8000"
    CLIENT_CONNECT_TIMEOUT_SECONDS: float = 30.0
    CLIENT_PROCESSING_TIMEOUT_SECONDS: float = 300.0

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

settings = Settings()
