"""
Central configuration for the Scribeflow ingestion service
"""

from typing import List
from pydantic_settings import BaseSettings
from pydantic import Field
from enum import Enum


class Environment(str, Enum):
    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


class ModelName(str, Enum):
    GPT_4_1_NANO = "gpt-4.1-nano"
    GPT_4O_MINI = "gpt-4o-mini"
    GPT_4O = "gpt-4o"


class STTModel(str, Enum):
    GPT_4O_MINI_TRANSCRIBE = "gpt-4o-mini-transcribe"
    GPT_4O_TRANSCRIBE = "gpt-4o-transcribe"


class ProviderId(str, Enum):
    ASSEMBLYAI = "assemblyai"
    OPENAI = "openai"
    BROWSER = "browser"


class StorageBackend(str, Enum):
    MEMORY = "memory"
    POSTGREST = "postgrest"


class Settings(BaseSettings):
    # Environment
    environment: Environment = Environment.DEVELOPMENT
    debug: bool = Field(default=False)
    log_level: str = Field(default="INFO")

    # API Configuration
    api_title: str = Field(default="Scribeflow API")
    api_description: str = Field(default="Resilient transcript ingestion and clinical workflow service")
    api_version: str = Field(default="1.0.0")
    api_host: str = Field(default="0.0.0.0")
    api_port: int = Field(default=3001)
    api_secret_key: str = Field(...)

    # External Service APIs
    openai_api_key: str = Field(default="")
    assemblyai_api_key: str = Field(default="")
    assemblyai_api_base_url: str = Field(default="https://api.assemblyai.com")

    # Rate Limiting
    rate_limit_requests: int = Field(default=10)
    rate_limit_window: int = Field(default=60)  # seconds

    # Audio chunk limits
    max_chunk_size_mb: int = Field(default=10)
    supported_audio_formats: List[str] = Field(
        default=["audio/mpeg", "audio/wav", "audio/mp4", "audio/m4a", "audio/ogg", "audio/webm"]
    )
    language: str = Field(default="en")

    # Timeouts
    stt_timeout: int = Field(default=60)
    llm_timeout: int = Field(default=60)

    # Retry policy
    max_retries: int = Field(default=5, ge=0)
    initial_delay_ms: int = Field(default=1000, ge=0)
    max_delay_ms: int = Field(default=30000, ge=0)
    backoff_multiplier: float = Field(default=2.0, ge=1.0)
    jitter_factor: float = Field(default=0.2, ge=0.0, le=1.0)
    retryable_error_patterns: List[str] = Field(
        default=[
            "rate limit",
            "temporarily unavailable",
            "timeout",
            "timed out",
            "network error",
            "connection",
            "429",
            "5xx",
        ]
    )

    # Circuit breaker
    failure_threshold: int = Field(default=5, ge=1)
    reset_timeout_ms: int = Field(default=60000, ge=0)
    success_threshold: int = Field(default=2, ge=1)

    # Ingestion queue
    batch_size: int = Field(default=5, ge=1)
    debounce_ms: int = Field(default=3000, ge=0)
    auto_resync: bool = Field(default=True)
    confidence_threshold_low: float = Field(default=0.6, ge=0.0, le=1.0)
    confidence_threshold_high: float = Field(default=0.8, ge=0.0, le=1.0)

    # Speaker turn heuristic
    pause_threshold_ms: int = Field(default=2000, ge=0)
    sentence_count_before_switch: int = Field(default=2, ge=1)

    # Providers
    default_provider: str = Field(default="auto")
    max_provider_restarts: int = Field(default=3, ge=0)
    provider_event_buffer: int = Field(default=256, ge=1)
    default_stt_model: STTModel = Field(default=STTModel.GPT_4O_MINI_TRANSCRIBE)

    # Session events (SSE)
    event_channel_size: int = Field(default=100, ge=1)

    # Storage
    storage_backend: StorageBackend = Field(default=StorageBackend.MEMORY)
    postgrest_url: str = Field(default="")
    postgrest_api_key: str = Field(default="")
    postgrest_table: str = Field(default="session_transcripts")

    # LLM Configuration
    llm_temperature: float = Field(default=0.0)
    llm_max_tokens: int = Field(default=2000)
    default_llm_model: ModelName = Field(default=ModelName.GPT_4_1_NANO)
    coding_region: str = Field(default="US")

    # CORS Configuration
    cors_origins: List[str] = Field(
        default=[
            "http://localhost:3000",
            "http://localhost:8080",
        ]
    )
    cors_allow_credentials: bool = Field(default=True)
    cors_allow_methods: List[str] = Field(default=["GET", "POST", "DELETE"])
    cors_allow_headers: List[str] = Field(default=["*"])

    # Security
    api_keys: List[str] = Field(default=[])
    token_algorithm: str = Field(default="HS256")
    access_token_expire_minutes: int = Field(default=30)

    # Monitoring
    enable_metrics: bool = Field(default=True)
    metrics_path: str = Field(default="/metrics")

    # Audit Logging
    audit_log_enabled: bool = Field(default=True)

    class Config:
        env_file = ".env"
        case_sensitive = False


# Global settings instance
settings = Settings()
