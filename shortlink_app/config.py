from pydantic import BaseModel, ConfigDict
from pydantic_settings import BaseSettings, SettingsConfigDict


class OperationConfig(BaseModel):
    """
    Fixed tuning knobs handed to a component.

    Components receive one of these instead of reading the whole settings
    object, so what they can be tuned with is enumerated here.
    """

    model_config = ConfigDict(frozen=True)

    timeout_ms: int
    max_retries: int
    ttl_seconds: int

    @property
    def timeout_seconds(self) -> float:
        return self.timeout_ms / 1000


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Loading priority (highest to lowest):
    1. Environment variables
    2. .env file
    3. Default values below
    """

    # Environment
    environment: str = "development"
    debug: bool = False

    # Application
    app_name: str = "Shortlink"
    app_version: str = "1.0.0"

    # Database (links + clicks tables)
    database_url: str = "sqlite:///./shortlink.db"
    store_timeout_ms: int = 2000
    store_max_retries: int = 3  # Read paths only
    store_retry_backoff_ms: int = 50

    # Short links
    base_url: str = "http://127.0.0.1:8000"
    short_code_length: int = 7
    max_retries: int = 5  # Code generation attempts on collision
    password_hash_rounds: int = 12  # bcrypt cost for protected links

    # Cache settings
    cache_backend: str = "redis"  # Options: "redis", "memory", "null"
    redis_url: str = "redis://localhost:6379/0"
    cache_ttl: int = 3600  # Cache TTL in seconds (1 hour)
    cache_timeout_ms: int = 200
    cache_invalidate_retries: int = 3

    # Queue settings
    queue_backend: str = "redis_streams"  # Options: "redis_streams", "memory"
    queue_name: str = "click_events"
    queue_consumer_group: str = "click_workers"
    queue_max_length: int = 100_000  # Publishing beyond this drops events
    queue_batch_size: int = 100
    queue_worker_interval: float = 1.0  # Idle poll interval in seconds

    # Click recorder (in-process buffer in front of the queue)
    recorder_buffer_size: int = 10_000
    recorder_retry_backoff_ms: int = 100
    run_click_worker: bool = True  # Run a worker inside the API process

    # Click storage settings
    click_storage_backend: str = "database"  # Options: "database", "clickhouse"
    click_storage_clickhouse_url: str = "http://localhost:8123"

    # Click webhooks
    webhook_timeout_ms: int = 5000
    webhook_max_pending: int = 100  # Deliveries in flight before new ones are dropped

    # Logging
    log_level: str = "INFO"
    log_json: bool = True

    # Pydantic v2 configuration
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    def cache_config(self) -> OperationConfig:
        return OperationConfig(
            timeout_ms=self.cache_timeout_ms,
            max_retries=self.cache_invalidate_retries,
            ttl_seconds=self.cache_ttl,
        )

    def store_config(self) -> OperationConfig:
        return OperationConfig(
            timeout_ms=self.store_timeout_ms,
            max_retries=self.store_max_retries,
            ttl_seconds=self.cache_ttl,
        )


# Create settings instance
settings = Settings()
