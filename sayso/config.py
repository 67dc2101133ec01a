# sayso/config.py

from pydantic_settings import BaseSettings, SettingsConfigDict
from pathlib import Path
from typing import Optional

# Define the base directory of the project
PROJECT_DIR = Path(__file__).parent.parent.resolve()

class Settings(BaseSettings):
    """
    Manages the backend's configuration settings using pydantic-settings.
    It automatically reads values from environment variables or a .env file.
    """

    model_config = SettingsConfigDict(
        env_file="sayso.env",
        env_file_encoding="utf-8"
    )

    # --- HTTP API Settings ---
    HTTP_HOST: str = "127.0.0.1"
    HTTP_PORT: int = 3000
    FRONTEND_URL: str = "*"

    # --- Realtime (notification WebSocket at /ws) Settings ---
    # When enabled, a 'register' message must carry a token for the same user.
    REALTIME_REQUIRE_TOKEN: bool = False

    # --- Database Settings ---
    DATABASE_PATH: Path = PROJECT_DIR / "sayso.db"

    # --- Auth Settings ---
    SESSION_SECRET: str = "change-me-to-a-long-random-secret"
    TOKEN_TTL_SECONDS: int = 24 * 60 * 60

    # --- Google Login Settings ---
    # Google login is enabled only when all three are set.
    GOOGLE_CLIENT_ID: Optional[str] = None
    GOOGLE_CLIENT_SECRET: Optional[str] = None
    GOOGLE_CALLBACK_URL: Optional[str] = None

    # --- Media Settings ---
    MEDIA_ROOT: Path = PROJECT_DIR / "media"
    MEDIA_URL_PREFIX: str = "/media"

    # --- Logging Settings ---
    LOG_LEVEL: str = "INFO"

    @property
    def google_login_enabled(self) -> bool:
        return bool(self.GOOGLE_CLIENT_ID and self.GOOGLE_CLIENT_SECRET and self.GOOGLE_CALLBACK_URL)


# Create a single, globally accessible instance of the settings.
# Other modules will import this `settings` object.
settings = Settings()
