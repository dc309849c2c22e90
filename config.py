from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import Dict, Optional

class Settings(BaseSettings):
    # Database
    DATABASE_URL: str = "sqlite:///hookrouter.db"

    # Public address of this service, used to build OAuth callback URLs
    BASE_URL: str = "http://localhost:7000"
    PORT: int = 7000

    # Logging
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # Deliveries for unknown tokens are dumped here
    RAW_DUMP_DIR: str = "./raw"

    # Security
    SECRET_KEY: str = "your-secret-key-here"  # Change this in production!

    # Telegram
    TELEGRAM_BOT_USERNAME: Optional[str] = None
    TELEGRAM_BOT_TOKENS: str = ""  # comma separated, "<bot_id>:<secret>"

    # OAuth correlation records
    OAUTH_CORRELATION_TTL_MINUTES: int = 60

    # Shorter GET paths are not treated as hook links opened in a browser
    BROWSER_LINK_MIN_LENGTH: int = 10

    # Plugin System Settings
    PLUGINS_AUTO_DISCOVER: bool = True

    class Config:
        env_file = ".env"
        extra = "ignore"  # Allow extra fields from environment variables

    def bot_tokens(self) -> Dict[int, str]:
        """Map of bot id to bot token for every configured bot."""
        tokens = {}
        for token in self.TELEGRAM_BOT_TOKENS.split(","):
            token = token.strip()
            if not token:
                continue
            bot_id, _, _ = token.partition(":")
            try:
                tokens[int(bot_id)] = token
            except ValueError:
                continue
        return tokens

@lru_cache()
def get_settings():
    return Settings()
