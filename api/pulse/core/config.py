from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    PROJECT_NAME: str = "Pulse Analytics"
    LOG_LEVEL: str = "INFO"
    HOST: str = "0.0.0.0"
    PORT: int = 8000

    # CORS
    CORS_ORIGINS: list[str] = ["*"]

    # Client pipeline
    ANALYTICS_ENABLED: bool = True
    ANALYTICS_DEBUG: bool = False
    ANALYTICS_SAMPLING_RATE: float = 1.0
    APP_ENV: str = "development"
    APP_VERSION: str = "1.0.0"
    # absolute collector URL; "" keeps conversions client-side only
    EVENTS_ENDPOINT: str = ""

    # Identity
    ANONYMOUS_ID_EXPIRY_DAYS: int = 365
    SESSION_TIMEOUT_MINUTES: int = 30
    DAILY_SESSION_RESET: bool = True

    # Cost control
    COST_EVENTS_PER_DAY: int = 100_000
    COST_BASE_SAMPLING_RATE: float = 1.0

    # Destinations (empty = destination disabled)
    GA4_MEASUREMENT_ID: str = ""
    GA4_API_SECRET: str = ""
    TELEMETRY_ENDPOINT: str = ""
    TELEMETRY_INSTRUMENTATION_KEY: str = ""

    # Feature flags
    FEATURE_FLAGS_ENDPOINT: str = ""
    FEATURE_FLAGS_REFRESH_SECONDS: int = 0  # 0 disables polling

    # Collector
    RATE_LIMIT_REQUESTS_PER_MINUTE: int = 100
    # "" disables dedup, "memory://" keeps records in-process
    IDEMPOTENCY_DATABASE_URL: str = ""
    DATA_LAKE_ENDPOINT: str = ""

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}


settings = Settings()
