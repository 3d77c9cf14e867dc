from pydantic import ConfigDict
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    database_url: str = "sqlite:///./event_import.db"
    date_default_dayfirst: bool = False
    log_level: str = "INFO"

    # Error recovery
    retry_max_attempts: int = 3
    retry_base_delay_seconds: int = 30
    retry_max_delay_seconds: int = 300  # Upper bound for exponential backoff
    retry_backoff_multiplier: float = 2.0
    pending_retry_limit: int = 10

    # Schema inference
    schema_sample_size: int = 500
    schema_batch_size: int = 100

    # Batch-oriented stages
    geocoding_batch_size: int = 100
    event_creation_batch_size: int = 500
    geocoding_concurrency: int = 4
    geocoding_min_confidence: float = 0.5
    geocoding_cache_ttl_days: int = 30
    geocoding_cache_max_entries: int = 10000

    # Field mapping language when a dataset does not declare one (ISO-639-3)
    default_language: str = "eng"

    # Per-row errors kept on the job record; the counters keep the full total
    max_recorded_row_errors: int = 200

    model_config = ConfigDict(env_file=".env", extra="ignore")


settings = Settings()
