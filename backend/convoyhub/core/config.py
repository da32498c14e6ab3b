import os
from typing import List

from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_number(name: str, default, cast):
    value = os.environ.get(name)
    if value is None:
        return default
    try:
        return cast(value)
    except ValueError:
        raise ValueError(f"{name} must be a valid {cast.__name__}, got {value!r}") from None


class Settings:
    """Runtime configuration, read from the environment (and .env if present)."""

    def __init__(self):
        self.DATABASE_URL: str = os.environ.get("DATABASE_URL", "sqlite+aiosqlite:///./convoyhub.db")
        self.SQL_ECHO: bool = _env_bool("SQL_ECHO", False)
        self.LOG_LEVEL: str = os.environ.get("LOG_LEVEL", "INFO")

        self.SECRET_KEY: str = os.environ.get("SECRET_KEY", "change-me-in-production")
        self.ALGORITHM: str = os.environ.get("ALGORITHM", "HS256")
        self.ACCESS_TOKEN_EXPIRE_MINUTES: int = _env_number("ACCESS_TOKEN_EXPIRE_MINUTES", 10080, int)

        # Comma-separated so it can be set from a single env var
        self.CORS_ORIGINS: str = os.environ.get("CORS_ORIGINS", "*")

        self.ROUTING_ENABLED: bool = _env_bool("ROUTING_ENABLED", False)
        self.OSRM_BASE_URL: str = os.environ.get("OSRM_BASE_URL", "http://router.project-osrm.org")
        self.ROUTING_TIMEOUT: float = _env_number("ROUTING_TIMEOUT", 5.0, float)

    @property
    def cors_origins(self) -> List[str]:
        return [origin.strip() for origin in self.CORS_ORIGINS.split(",") if origin.strip()]


settings = Settings()
