"""Configuration settings for the boardroom service."""

from decimal import Decimal

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    db_host: str = "localhost"
    db_port: int = 15432
    db_name: str = "boardroom"
    db_user: str = "boardroom"
    db_password: str = "boardroom"
    db_url_override: str | None = None

    # Redis
    redis_url: str = "redis://localhost:16379/0"
    redis_rate_limit_enabled: bool = True
    redis_publish_enabled: bool = False
    debate_rate_limit: int = 10  # debates per window per user
    debate_rate_window_seconds: int = 60

    # Text completion (OpenRouter)
    openrouter_api_key: str = ""
    openrouter_base_url: str = "https://openrouter.ai/api/v1"
    openrouter_referer: str = "https://consensusai.app"
    openrouter_title: str = "ConsensusAI"
    default_model: str = "mistralai/mixtral-8x7b-instruct"
    temperature: float = 0.7
    max_tokens: int = 500

    # Debate
    turn_timeout_seconds: float = 60.0
    turn_max_retries: int = 1
    summary_timeout_seconds: float = 90.0
    min_topic_length: int = 10
    max_debate_rounds: int = 5
    default_debate_rounds: int = 2

    # Billing
    tax_rate: Decimal = Decimal("0.08")
    currency: str = "USD"

    @property
    def database_url(self) -> str:
        """SQLAlchemy database URL."""
        return f"postgresql://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"

    @property
    def async_database_url(self) -> str:
        """Async SQLAlchemy database URL."""
        if self.db_url_override:
            return self.db_url_override
        return f"postgresql+asyncpg://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"

    class Config:
        env_prefix = "BOARDROOM_"
        env_file = ".env"


def get_settings() -> Settings:
    """Build settings from the current environment."""
    return Settings()
