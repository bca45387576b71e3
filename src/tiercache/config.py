from __future__ import annotations

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="TIERCACHE_", env_file=".env", extra="ignore", populate_by_name=True
    )

    # Redis
    redis_host: str = Field(default="127.0.0.1", validation_alias="REDIS_HOST")
    redis_port: int = Field(default=6379, validation_alias="REDIS_PORT")
    redis_password: str | None = Field(default=None, validation_alias="REDIS_PASSWORD")
    redis_db: int = Field(default=0, validation_alias="REDIS_DB")
    # "pika" backends speak the Redis protocol but have no server-side scripting
    redis_backend: Literal["redis", "pika"] = Field(
        default="redis", validation_alias="REDIS_BACKEND"
    )

    # Pub/Sub (defaults to the main Redis connection when unset)
    pubsub_host: str | None = Field(default=None, validation_alias="PUBSUB_HOST")
    pubsub_port: int | None = Field(default=None, validation_alias="PUBSUB_PORT")

    # Cache behaviour
    global_prefix: str = Field(default="all", validation_alias="CACHE_GLOBAL_PREFIX")
    use_local_cache: bool = Field(default=True, validation_alias="CACHE_USE_LOCAL")
    max_local_items: int | None = Field(
        default=None, gt=0, validation_alias="CACHE_MAX_LOCAL_ITEMS"
    )
    log_on_local_write: bool = Field(default=False, validation_alias="CACHE_LOG_ON_LOCAL_WRITE")
    scan_count: int = Field(default=100, gt=0, validation_alias="CACHE_SCAN_COUNT")

    # Local garbage collection
    gc_interval_ms: int = Field(
        default=15 * 60 * 1000, ge=0, validation_alias="CACHE_GC_INTERVAL_MS"
    )  # 15 minutes
    gc_size_threshold: int = Field(
        default=1000, ge=0, validation_alias="CACHE_GC_SIZE_THRESHOLD"
    )

    # Observability
    log_level: str = "INFO"
    log_json: bool = Field(default=False, validation_alias="LOG_JSON")


settings = Settings()
