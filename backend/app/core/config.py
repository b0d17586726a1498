import logging

from pydantic import Field
from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """
    Application settings, loaded from environment variables and .env file.

    Required env vars for production:
        DATABASE_URL        - PostgreSQL connection string (asyncpg driver)
        NEON_DATABASE_URL   - Neon connection string (takes priority over DATABASE_URL)
        GEMINI_API_KEY      - Google Gemini API key (read by litellm)
        GOOGLE_CLIENT_ID    - OAuth client ID that Google ID tokens must be issued for
        CORS_ORIGINS        - Comma-separated allowed origins
    """

    model_config = {"env_file": ".env", "extra": "ignore"}

    # Database: default is local PostgreSQL; override with NEON_DATABASE_URL for Neon
    database_url: str = "postgresql+asyncpg://localhost:5432/selftest"
    neon_database_url: str = ""

    @property
    def effective_database_url(self) -> str:
        """Return Neon URL if set, otherwise the default database_url."""
        return self.neon_database_url or self.database_url

    # LLM provider (litellm format)
    gemini_api_key: str = ""
    default_llm_model: str = "gemini/gemini-2.5-flash-lite"

    # Google sign-in
    google_client_id: str = ""
    session_ttl_days: int = Field(default=30, ge=1)

    # Rate limiting
    rate_limit_default_limit: int = Field(default=10, ge=1)
    rate_limit_default_window_ms: int = Field(default=60_000, ge=1)
    rate_limit_cleanup_probability: float = Field(default=0.02, ge=0.0, le=1.0)
    rate_limit_retention_days: int = Field(default=2, ge=1)
    rate_limit_timeout_seconds: float = Field(default=5.0, gt=0)

    # Environment (development | staging | production)
    environment: str = "development"

    # Langfuse observability
    langfuse_enabled: bool = False
    langfuse_public_key: str = ""
    langfuse_secret_key: str = ""
    langfuse_host: str = "https://us.cloud.langfuse.com"

    # Production settings
    cors_origins: str = "http://localhost:3000,http://127.0.0.1:3000"  # comma-separated origins
    debug: bool = True
    log_level: str = "INFO"
    host: str = "0.0.0.0"
    port: int = 8000

    @property
    def is_development(self) -> bool:
        return self.environment == "development"

    @property
    def cors_origin_list(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]


settings = Settings()

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)

# Warn about missing config in production
if not settings.is_development and not settings.gemini_api_key:
    logger.warning("GEMINI_API_KEY is not set, quiz generation will fail")
if not settings.is_development and not settings.google_client_id:
    logger.warning("GOOGLE_CLIENT_ID is not set, Google sign-in will fail")
