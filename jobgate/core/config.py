from functools import lru_cache
from typing import Literal, Optional
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # Application
    APP_NAME: str = "jobgate"
    APP_ENV: Literal["dev", "prod"] = "dev"
    APP_VERSION: str = "0.1.0"

    # Backing store
    REDIS_URL: str = "redis://localhost:6379/0"

    # Ops
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = True

    # Concurrency limiter (seconds)
    CONCURRENT_HEARTBEAT: float = 15
    MAX_CLOCK_SKEW: float = 60
    MAINTENANCE_PROBABILITY: float = 0.01

    # Sidecar slots not released within this many seconds are released by a
    # sweep running every LEASE_SWEEP_INTERVAL seconds
    MAX_JOB_DURATION: float = 3600
    LEASE_SWEEP_INTERVAL: float = 60

    # Overflow queue
    RESTRICTION_QUEUE_PREFIX: str = "restriction"
    MAX_QUEUE_PEEK: int = 100

    # Admit everything without touching the store (local development)
    INLINE: bool = False

    # Observability
    OTEL_EXPORTER_OTLP_ENDPOINT: Optional[str] = None
    METRICS_NAMESPACE: str = "jobgate"

    model_config = SettingsConfigDict(env_file=".env", env_prefix="JOBGATE_")

    @property
    def STALE_TTL(self) -> float:  # type: ignore
        return self.MAX_CLOCK_SKEW + self.CONCURRENT_HEARTBEAT

    @property
    def OTEL_SERVICE_NAME(self) -> str:  # type: ignore
        return self.APP_NAME


@lru_cache()
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
