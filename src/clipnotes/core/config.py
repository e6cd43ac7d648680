"""
Application Configuration

Centralized settings management using Pydantic BaseSettings.
All values are loaded from environment variables or .env file.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings with environment variable binding.

    Required env vars (no defaults):
        POSTGRES_USER, POSTGRES_PASSWORD, POSTGRES_HOST, POSTGRES_DB

    Provider env vars:
        PROVIDER_API_KEY (unset or 'mock' enables offline mock mode),
        PROVIDER_BASE_URL, EMBEDDING_MODEL, EMBEDDING_DIMENSION (1536),
        COMPLETION_MODEL, EMBEDDING_TIMEOUT (30s), COMPLETION_TIMEOUT (60s)

    Index maintenance env vars:
        BACKFILL_BATCH_SIZE (5), INTER_BATCH_DELAY (2s), ERROR_COOLDOWN (5s),
        CREATION_DEBOUNCE (2s), EMBED_MAX_RETRIES (3)
    """

    PROJECT_NAME: str = "Clipnotes"

    # Database
    POSTGRES_USER: str
    POSTGRES_PASSWORD: str
    POSTGRES_HOST: str
    POSTGRES_PORT: int = 5432
    POSTGRES_DB: str
    DATABASE_URL_OVERRIDE: str | None = None

    # LLM provider
    PROVIDER_API_KEY: str | None = None
    PROVIDER_BASE_URL: str = "https://api.openai.com/v1"
    EMBEDDING_MODEL: str = "text-embedding-3-small"
    EMBEDDING_DIMENSION: int = 1536
    COMPLETION_MODEL: str = "gpt-3.5-turbo"
    COMPLETION_MAX_TOKENS: int = 1000
    COMPLETION_TEMPERATURE: float = 0.7
    EMBEDDING_TIMEOUT: float = 30.0
    COMPLETION_TIMEOUT: float = 60.0

    # Index maintenance
    BACKFILL_BATCH_SIZE: int = 5
    INTER_BATCH_DELAY: float = 2.0
    ERROR_COOLDOWN: float = 5.0
    CREATION_DEBOUNCE: float = 2.0
    EMBED_MAX_RETRIES: int = 3
    EMBEDDING_COST_PER_NOTE: float = 0.00002  # USD, text-embedding-3-small

    # Identity header set by the upstream auth gateway
    OWNER_HEADER: str = "X-Owner-Id"

    # Logging
    LOG_LEVEL: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_ignore_empty=True,
        extra="ignore",  # Silently ignore unknown env vars
    )

    @property
    def DATABASE_URL(self) -> str:
        """Async PostgreSQL connection string using asyncpg driver."""
        if self.DATABASE_URL_OVERRIDE:
            return self.DATABASE_URL_OVERRIDE
        return (
            f"postgresql+asyncpg://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
            f"@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
        )

    @property
    def mock_provider(self) -> bool:
        """True when no real provider key is configured."""
        return is_mock_key(self.PROVIDER_API_KEY)


def is_mock_key(key: str | None) -> bool:
    """An unset key or the literal ``mock`` selects the offline provider."""
    return not key or key.lower() == "mock"


settings = Settings()  # type: ignore[call-arg]
