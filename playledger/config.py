"""Application configuration and environment settings"""
from functools import lru_cache
from typing import Optional
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

class FraudThresholds(BaseModel):
    """Listen-duration thresholds used by the fraud heuristics"""
    min_listen_ms: int = Field(..., description="Absolute listen floor in ms")
    min_listen_fraction: float = Field(..., description="Fraction of the track that also satisfies the floor")
    completion_fraction: float = Field(..., description="Fraction of the track counted as a completed play")
    dedupe_min_window_ms: int = Field(..., description="Lower bound for the dedupe window in ms")

class Settings(BaseSettings):
    """Application settings loaded from environment variables"""
    # Required settings
    IP_HASH_SALT: str = Field(..., min_length=1, description="Secret key for hashing client IP addresses")

    # Storage
    DATABASE_URL: str = Field("sqlite:///playledger.db", description="SQLAlchemy database URL")

    # Identity
    JWT_SECRET: Optional[str] = Field(None, description="HS256 secret used to verify bearer tokens")
    JWT_AUDIENCE: str = Field("authenticated", description="Expected audience claim of bearer tokens")

    # Ingestion
    MAX_BATCH_SIZE: int = Field(1000, description="Maximum number of plays per reported batch")
    MAX_CLOCK_SKEW_SECONDS: Optional[int] = Field(300, description="How far in the future a play timestamp may be")

    # Fraud heuristics
    MIN_LISTEN_MS: int = Field(20000, description="Absolute listen floor in ms")
    MIN_LISTEN_FRACTION: float = Field(0.5, description="Fraction of track that satisfies the listen floor")
    COMPLETION_FRACTION: float = Field(0.85, description="Fraction of track counted as completed")
    DEDUPE_MIN_WINDOW_MS: int = Field(30000, description="Minimum dedupe window in ms")

    # Materialization
    MATERIALIZE_BATCH_LIMIT: int = Field(500, description="Raw events handled per polling pass")
    MATERIALIZE_MAX_WORKERS: int = Field(1, description="Thread pool size for a polling pass")

    # Payouts
    DEFAULT_NET_MONTHLY: int = Field(765, description="Allocatable revenue in cents when a subscription has none")

    # Client reporter
    INGEST_ENDPOINT: str = Field("http://localhost:8000/plays/batch", description="URL of the batch ingestion endpoint")

    LOG_LEVEL: str = Field("INFO", description="Root logging level")

    @property
    def fraud_thresholds(self) -> FraudThresholds:
        """Get fraud thresholds as a separate model"""
        return FraudThresholds(
            min_listen_ms=self.MIN_LISTEN_MS,
            min_listen_fraction=self.MIN_LISTEN_FRACTION,
            completion_fraction=self.COMPLETION_FRACTION,
            dedupe_min_window_ms=self.DEDUPE_MIN_WINDOW_MS
        )

    model_config = SettingsConfigDict(
        env_file='.env',
        env_file_encoding='utf-8',
        case_sensitive=True,
        extra='ignore'
    )

@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Load settings once per process"""
    return Settings()
