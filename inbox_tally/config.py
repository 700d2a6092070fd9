"""
Configuration management using Pydantic settings.
Loads environment variables and provides type-safe configuration.
"""

from typing import List, Optional
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Uses pydantic-settings for validation and type safety.
    """

    # Google OAuth Configuration
    GOOGLE_CLIENT_SECRETS_FILE: str = "credentials.json"
    TOKEN_FILE: str = "tokencache.json"
    GMAIL_SCOPES: List[str] = ["https://www.googleapis.com/auth/gmail.readonly"]

    # Loopback redirect used by the installed-app flow (port 0 picks a free port)
    OAUTH_CALLBACK_HOST: str = "localhost"
    OAUTH_CALLBACK_PORT: int = 0
    OAUTH_CALLBACK_TIMEOUT: int = 300  # seconds
    OAUTH_OPEN_BROWSER: bool = True
    OAUTH_INTERACTIVE: bool = True

    # Refresh tokens this many seconds before they expire
    TOKEN_REFRESH_MARGIN: int = 300

    # Encryption Configuration (token file is stored in plain JSON when empty)
    ENCRYPTION_KEY: str = ""

    # Database Configuration
    DATABASE_URL: str = "sqlite+aiosqlite:///./stats.db"
    DATABASE_ECHO: bool = False

    # Sync Configuration
    SYNC_PAGE_SIZE: int = 500  # Gmail API maximum for messages.list
    SYNC_INCLUDE_SPAM_TRASH: bool = False
    SYNC_QUERY: Optional[str] = None
    SYNC_MAX_RETRIES: int = 5
    SYNC_BACKOFF_MIN: float = 2.0
    SYNC_BACKOFF_MAX: float = 60.0
    SYNC_FETCH_CONCURRENCY: int = 1

    # Application Configuration
    LOG_LEVEL: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    def is_encrypted_token_storage(self) -> bool:
        """Check if the token file should be encrypted at rest."""
        return bool(self.ENCRYPTION_KEY)


# Global settings instance
settings = Settings()
