from functools import lru_cache
from typing import List, Union

from pydantic import field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Application
    APP_NAME: str = "Pushlab"
    ENVIRONMENT: str = "development"
    DEBUG: bool = True
    LOG_LEVEL: str = "INFO"

    # API
    API_V1_PREFIX: str = "/api/v1"
    HOST: str = "0.0.0.0"
    PORT: int = 8000

    # Database
    DATABASE_URL: str
    DB_POOL_SIZE: int = 10
    DB_MAX_OVERFLOW: int = 20

    # User directory scans
    DIRECTORY_BATCH_SIZE: int = 500

    # OneSignal push delivery
    ONESIGNAL_API_URL: str = "https://onesignal.com/api/v1"
    ONESIGNAL_APP_ID: str = ""
    ONESIGNAL_API_KEY: str = ""
    PUSH_TIMEOUT_SECONDS: float = 10.0

    # Experiment defaults
    DEFAULT_DURATION_DAYS: int = 7
    DEFAULT_CONFIDENCE_THRESHOLD: int = 95

    # CORS
    CORS_ORIGINS: Union[List[str], str] = []

    @field_validator("CORS_ORIGINS", mode="before")
    @classmethod
    def parse_cors_origins(cls, v):
        if isinstance(v, str):
            # Handle both comma-separated and JSON array strings
            if v.strip().startswith("["):
                import json

                return json.loads(v)
            return [origin.strip() for origin in v.split(",") if origin.strip()]
        return v

    class Config:
        env_file = ".env"
        case_sensitive = True


@lru_cache()
def get_settings() -> Settings:
    return Settings()
