"""Application settings for Eem, loaded from EEM_* environment variables."""

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="EEM_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Storage directory (default: .eem in current directory)
    storage_dir: Path = Field(default=Path(".eem"))

    # Processing switches
    enable_flow_processing: bool = True
    enable_correlation_analysis: bool = True

    # Limits
    retention_days: int = 90
    max_events_per_activity: int = 1000
    max_entities: int = 200
    event_buffer_size: int = 100
    concurrency: int = 4

    # Correlation
    correlation_threshold: float = 0.75

    # Context retrieval: lowest search score that counts as a match
    context_min_score: float = 0.5

    # Semantic index: embed indexed text (False falls back to keyword scoring)
    index_embeddings: bool = True

    # Gateway
    llm_provider: str = "anthropic"
    llm_model: str = "claude-sonnet-4-20250514"
    embedding_provider: str = "fastembed"
    embedding_model: str = "BAAI/bge-small-en-v1.5"

    @property
    def database_path(self) -> Path:
        """Path to the SQLite file backing the blob store and semantic index."""
        return self.storage_dir / "eem.db"

    @property
    def database_url(self) -> str:
        """SQLAlchemy URL for the storage database."""
        return f"sqlite:///{self.database_path}"

    @property
    def logs_dir(self) -> Path:
        """Directory for JSONL run logs."""
        return self.storage_dir / "logs"

    def ensure_storage_dir(self) -> None:
        """Create storage directory if it doesn't exist."""
        self.storage_dir.mkdir(parents=True, exist_ok=True)


_settings: Settings | None = None


def get_settings() -> Settings:
    """Get cached settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reset_settings() -> None:
    """Reset settings cache (useful for testing)."""
    global _settings
    _settings = None
