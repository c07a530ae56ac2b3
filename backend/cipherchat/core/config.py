from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache


class Settings(BaseSettings):
    DATABASE_URL: str = "sqlite:///./cipherchat.db"
    SECRET_KEY: str = "change-me"
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 24 * 60

    LOG_LEVEL: str = "INFO"

    # Blob storage
    STORAGE_BACKEND: str = "disk"
    FILES_DIR: str = "./files"
    FILES_MAX_MB: int = 2048
    AVATAR_MAX_MB: int = 5

    # Message lifecycle
    MESSAGE_FETCH_LIMIT: int = 50
    SWEEP_ENABLED: bool = True
    SWEEP_INTERVAL_SECONDS: int = 60

    RATE_LIMIT_ENABLED: bool = True
    LOGIN_RATE_LIMIT: str = "5/15minutes"

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


@lru_cache()
def get_settings():
    return Settings()
