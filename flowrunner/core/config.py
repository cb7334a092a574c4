"""Environment-driven configuration with Pydantic v2."""

from pathlib import Path
from typing import List, Literal, Optional
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings driven entirely by environment variables."""

    # Server Configuration
    host: str = Field(default="0.0.0.0", env="HOST")
    port: int = Field(default=8010, env="PORT", ge=1024, le=65535)
    debug: bool = Field(default=False, env="DEBUG")
    cors_origins: List[str] = Field(default=["*"], env="CORS_ORIGINS")

    # Database Configuration
    database_url: str = Field(default="sqlite+aiosqlite:///./flowrunner.db", env="DATABASE_URL")
    database_echo: bool = Field(default=False, env="DATABASE_ECHO")
    database_pool_size: int = Field(default=20, env="DATABASE_POOL_SIZE", ge=5, le=100)
    database_max_overflow: int = Field(default=30, env="DATABASE_MAX_OVERFLOW", ge=10, le=100)

    # Redis (locks, rate limits, queues, subscription tokens)
    redis_url: str = Field(default="redis://localhost:6379/0", env="REDIS_URL")

    # Execution Engine
    max_steps_per_execution: int = Field(default=100, env="MAX_STEPS_PER_EXECUTION", ge=1)
    subscription_token_ttl_ms: int = Field(default=3_600_000, env="SUBSCRIPTION_TOKEN_TTL_MS", ge=1000)
    sse_heartbeat_seconds: float = Field(default=10.0, env="SSE_HEARTBEAT_SECONDS", gt=0)

    # Queue / Workers
    workers_enabled: bool = Field(default=True, env="WORKERS_ENABLED")
    workflow_worker_concurrency: int = Field(default=1, env="WORKFLOW_WORKER_CONCURRENCY", ge=1)
    node_worker_concurrency: int = Field(default=10, env="NODE_WORKER_CONCURRENCY", ge=1)
    llm_worker_concurrency: int = Field(default=5, env="LLM_WORKER_CONCURRENCY", ge=1)
    trigger_worker_concurrency: int = Field(default=5, env="TRIGGER_WORKER_CONCURRENCY", ge=1)
    max_jobs_per_second: int = Field(default=200, env="MAX_JOBS_PER_SECOND", ge=1)
    default_job_attempts: int = Field(default=3, env="DEFAULT_JOB_ATTEMPTS", ge=1)
    retry_backoff_delay_ms: int = Field(default=2000, env="RETRY_BACKOFF_DELAY_MS", ge=0)
    job_timeout_seconds: float = Field(default=600.0, env="JOB_TIMEOUT_SECONDS", gt=0)
    queue_poll_interval: float = Field(default=0.5, env="QUEUE_POLL_INTERVAL", gt=0)
    completed_jobs_retained: int = Field(default=1000, env="COMPLETED_JOBS_RETAINED", ge=0)
    failed_jobs_retained: int = Field(default=5000, env="FAILED_JOBS_RETAINED", ge=0)

    # LLM service
    llm_service_url: str = Field(default="http://localhost:8020", env="LLM_SERVICE_URL")
    llm_job_timeout_seconds: float = Field(default=200.0, env="LLM_JOB_TIMEOUT_SECONDS", gt=0)

    # Secrets handed to node processors
    wallet_private_key: Optional[str] = Field(default=None, env="WALLET_PRIVATE_KEY")

    # Logging
    log_level: str = Field(default="INFO", env="LOG_LEVEL")
    log_format: Literal["json", "console"] = Field(default="json", env="LOG_FORMAT")
    log_file: Optional[str] = Field(default=None, env="LOG_FILE")

    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, v):
        """Ensure the directory of a file-backed SQLite database exists."""
        if v and v.startswith("sqlite") and ":///" in v:
            db_path = v.split(":///", 1)[1]
            if db_path and db_path != ":memory:":
                Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        return v

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")

    model_config = {
        "env_file": ".env",
        "case_sensitive": False,
        "extra": "ignore",
    }
