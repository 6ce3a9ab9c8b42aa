from decimal import Decimal

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Application
    APP_NAME: str = "Binary Network Engine"
    APP_VERSION: str = "0.1"
    ENVIRONMENT: str = "development"
    DEBUG: bool = True
    LOG_LEVEL: str = "INFO"

    # Database
    DATABASE_URL: str
    DATABASE_URL_SYNC: str

    # Security (tokens are issued by the auth service, we only verify them)
    SECRET_KEY: str
    ALGORITHM: str = "HS256"

    # Email (SendGrid)
    SENDGRID_API_KEY: str = ""
    SENDGRID_FROM_EMAIL: str = "noreply@binary-network.local"
    SENDGRID_FROM_NAME: str = "Binary Network"
    SENDGRID_ENABLED: bool = False  # set True when API key is configured

    # CORS
    CORS_ORIGINS: list[str] = ["http://localhost:3000", "http://localhost:5173"]

    # Binary commission plan
    BINARY_PERCENTAGE: Decimal = Decimal("10")  # percent of matched volume
    BINARY_CAP_PER_CYCLE: Decimal = Decimal("10000")
    BINARY_MAX_CARRYOVER_CYCLES: int = 3
    BINARY_MIN_PERSONAL_VOLUME: Decimal = Decimal("0")

    # Placement
    PLACEMENT_MAX_ATTEMPTS: int = 3

    # Scheduler
    SCHEDULER_ENABLED: bool = False
    SCHEDULER_TIMEZONE: str = "UTC"
    BINARY_CYCLE_CRON: str = "0 0 * * mon"  # weekly, Monday 00:00

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


settings = Settings()
