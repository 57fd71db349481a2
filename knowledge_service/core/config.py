from pydantic import computed_field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    APP_NAME: str = "knowledge-service"
    APP_VERSION: str = "1.0.0"
    APP_ENV: str = "local"
    HOST: str = "0.0.0.0"
    SERVICE_PORT: int = 8100

    DATABASE_URL: str = "sqlite+pysqlite:///./knowledge.db"
    DATABASE_ECHO: bool = False
    DATABASE_AUTO_CREATE_SCHEMA: bool = True

    EMBEDDINGS_SERVICE_URL: str = "http://localhost:8200"
    EMBEDDINGS_MODEL_ID: str = "bge-m3"
    EMBEDDINGS_BATCH_SIZE: int = 100
    EMBEDDINGS_TIMEOUT_SECONDS: int = 30

    JOB_RUNNER_ENABLED: bool = False
    JOB_POLL_INTERVAL_SECONDS: float = 5.0
    JOB_LOCK_TIMEOUT_SECONDS: int = 300
    JOB_CONCURRENCY_RETRY_DELAY_SECONDS: int = 5
    JOB_RATE_LIMIT_RETRY_DELAY_SECONDS: int = 30
    JOB_BACKOFF_BASE_SECONDS: float = 1.0
    JOB_BACKOFF_MAX_SECONDS: float = 1800.0
    JOB_DEFAULT_MAX_ATTEMPTS: int = 3
    JOB_PROGRESS_WRITE_INTERVAL_SECONDS: float = 1.0
    JOB_IDEMPOTENCY_BUCKET_SECONDS: int = 300

    CONNECTOR_DEFAULT_MAX_CONCURRENCY: int = 1
    CONNECTOR_UPLOAD_MAX_CONCURRENCY: int = 5
    RATE_LIMIT_DEFAULT_MAX_TOKENS: float = 10.0
    RATE_LIMIT_DEFAULT_REFILL_PER_SECOND: float = 1.0
    RATE_LIMIT_UPLOAD_MAX_TOKENS: float = 20.0
    RATE_LIMIT_UPLOAD_REFILL_PER_SECOND: float = 2.0

    CHUNK_TARGET_CHARS: int = 1000
    CHUNK_MIN_CHARS: int = 800
    CHUNK_MAX_CHARS: int = 1200
    CHUNK_OVERLAP_CHARS: int = 150

    RETRIEVAL_DEFAULT_TOP_K: int = 8
    RETRIEVAL_SCORE_THRESHOLD: float = 0.65
    RETRIEVAL_HYBRID_ALPHA: float = 0.7
    RETRIEVAL_MIN_RESULTS: int = 5
    RETRIEVAL_PADDING_SCORE: float = 0.1

    SANITIZE_MAX_LENGTH: int = 10000

    GOOGLE_DRIVE_API_BASE_URL: str = "https://www.googleapis.com/drive/v3"
    JIRA_API_BASE_URL: str = "https://api.atlassian.com/ex/jira"
    CONFLUENCE_API_BASE_URL: str = "https://api.atlassian.com/ex/confluence"
    SLACK_API_BASE_URL: str = "https://slack.com/api"
    CONNECTOR_REQUEST_TIMEOUT_SECONDS: int = 30
    CONNECTOR_PAGE_SIZE: int = 100
    CONNECTOR_MAX_ITEMS_PER_RUN: int = 5000
    SLACK_HISTORY_LIMIT: int = 200
    CONNECTOR_ACCESS_TOKENS: dict[str, str] = {}

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="forbid")

    @field_validator("RETRIEVAL_HYBRID_ALPHA", "RETRIEVAL_SCORE_THRESHOLD")
    @classmethod
    def validate_unit_interval(cls, value: float) -> float:
        if not 0.0 <= value <= 1.0:
            raise ValueError("value must be within [0, 1]")
        return value

    @field_validator("CONNECTOR_DEFAULT_MAX_CONCURRENCY", "CONNECTOR_UPLOAD_MAX_CONCURRENCY")
    @classmethod
    def validate_positive_concurrency(cls, value: int) -> int:
        if value < 1:
            raise ValueError("max concurrency must be at least 1")
        return value

    @model_validator(mode="after")
    def validate_consistency(self) -> "Settings":
        if self.JOB_BACKOFF_MAX_SECONDS < self.JOB_BACKOFF_BASE_SECONDS:
            raise ValueError("JOB_BACKOFF_MAX_SECONDS must be greater than or equal to JOB_BACKOFF_BASE_SECONDS")
        if not self.CHUNK_MIN_CHARS <= self.CHUNK_TARGET_CHARS <= self.CHUNK_MAX_CHARS:
            raise ValueError("CHUNK_MIN_CHARS <= CHUNK_TARGET_CHARS <= CHUNK_MAX_CHARS must hold")
        if self.CHUNK_OVERLAP_CHARS >= self.CHUNK_MIN_CHARS:
            raise ValueError("CHUNK_OVERLAP_CHARS must be less than CHUNK_MIN_CHARS")
        return self

    @computed_field
    @property
    def database_url(self) -> str:
        return self.DATABASE_URL


settings = Settings()
