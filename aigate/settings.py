import os

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field

load_dotenv()


class Settings(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    # Inference Service Configuration
    inference_base_url: str = Field(
        default="https://api.openai.com/v1", alias="INFERENCE_BASE_URL"
    )
    inference_api_key: str = Field(default="", alias="INFERENCE_API_KEY")
    inference_timeout: float = Field(default=60.0, alias="INFERENCE_TIMEOUT")
    inference_service_id: str = Field(default="inference", alias="INFERENCE_SERVICE_ID")
    small_model: str = Field(default="gpt-4o-mini", alias="SMALL_MODEL")
    medium_model: str = Field(default="gpt-4o", alias="MEDIUM_MODEL")
    large_model: str = Field(default="gpt-4.1", alias="LARGE_MODEL")
    temperature: float = Field(default=0.7, alias="TEMPERATURE")

    # Circuit Breaker Configuration
    cb_failure_threshold: int = Field(default=5, alias="CB_FAILURE_THRESHOLD")
    cb_reset_timeout_seconds: float = Field(default=60.0, alias="CB_RESET_TIMEOUT")
    cb_half_open_max_calls: int = Field(default=3, alias="CB_HALF_OPEN_MAX_CALLS")

    # Rate Limit Configuration
    rate_limit_per_hour: int = Field(default=10, alias="RATE_LIMIT_PER_HOUR")
    rate_limit_per_day: int = Field(default=50, alias="RATE_LIMIT_PER_DAY")
    rate_limit_cleanup_minutes: float = Field(
        default=5.0, alias="RATE_LIMIT_CLEANUP_INTERVAL"
    )

    # Retry Configuration
    retry_max_attempts: int = Field(default=3, alias="RETRY_MAX_ATTEMPTS")
    retry_base_delay: float = Field(default=1.0, alias="RETRY_BASE_DELAY")
    retry_max_delay: float = Field(default=30.0, alias="RETRY_MAX_DELAY")
    retry_backoff_multiplier: float = Field(default=2.0, alias="RETRY_BACKOFF")
    retry_jitter: float = Field(default=0.1, alias="RETRY_JITTER")

    # Batching Configuration
    batch_max_size: int = Field(default=5, alias="BATCH_MAX_SIZE")
    batch_max_wait_ms: int = Field(default=2000, alias="BATCH_MAX_WAIT_MS")
    batch_max_payload_chars: int = Field(default=4000, alias="BATCH_MAX_PAYLOAD_CHARS")

    # Cache Configuration
    cache_max_age_hours: float = Field(default=24.0, alias="CACHE_MAX_AGE_HOURS")

    # Database Configuration
    database_url: str = Field(
        default="sqlite+aiosqlite:///./aigate.db", alias="DATABASE_URL"
    )
    database_echo: bool = Field(default=False, alias="DATABASE_ECHO")


global_settings = Settings.model_validate(dict(os.environ))
