import os
from functools import lru_cache
from typing import List, Optional

from dotenv import load_dotenv

load_dotenv()


def _as_bool(value: Optional[str]) -> bool:
    return (value or "").strip().lower() in ("1", "true", "yes", "on")


class Settings:
    """Runtime configuration read from the environment (and an optional .env file)."""

    def __init__(self):
        self.database_url: Optional[str] = os.getenv("DATABASE_URL")
        self.database_name: Optional[str] = os.getenv("DATABASE_NAME")
        self.jwt_secret: Optional[str] = os.getenv("JWT_SECRET")
        self.jwt_expires_minutes: int = int(os.getenv("JWT_EXPIRES_MINUTES", 60 * 24 * 7))
        self.google_client_id: Optional[str] = os.getenv("GOOGLE_CLIENT_ID")
        self.api_prefix: str = os.getenv("API_PREFIX", "/api").rstrip("/")
        self.environment: str = os.getenv("ENVIRONMENT", "development")
        self.debug: bool = _as_bool(os.getenv("DEBUG"))
        self.log_level: str = os.getenv("LOG_LEVEL", "INFO").upper()
        self.port: int = int(os.getenv("PORT", 8000))
        frontend = os.getenv("FRONTEND_URL")
        self.cors_origins: List[str] = (
            [u.strip() for u in frontend.split(",") if u.strip()] if frontend else ["*"]
        )


@lru_cache()
def get_settings() -> Settings:
    return Settings()
