from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="CASGATE_", env_file=".env", extra="ignore")

    project_name: str = "casgate"
    log_level: str = "INFO"

    # CAS server
    cas_url: str = Field(default="https://cas.example.com/cas", min_length=1)
    max_attempts: int = Field(default=2, gt=0)
    anonymous_user: str = Field(default="anonymous-user", min_length=1)
    validate_timeout: float = Field(default=10.0, gt=0)

    # Proxy tickets: absolute URL of this app's /pgtCallback, if any
    proxy_callback_url: Optional[str] = None
    pgt_ttl: float = Field(default=300.0, gt=0)
    pgt_max_entries: int = Field(default=10000, gt=0)

    # Application
    session_secret: str = "change-me"
    database_url: str = "sqlite:///data/database.db"
    default_next_url: str = "/"


@lru_cache()
def get_settings() -> Settings:
    return Settings()
