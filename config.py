from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Relay settings, read from RELAY_* environment variables."""

    model_config = SettingsConfigDict(env_prefix="RELAY_", case_sensitive=True)

    HOST: str = "0.0.0.0"
    PORT: int = Field(default=8080, ge=1, le=65535)
    LOG_LEVEL: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    WS_PATH: str = "/ws"

    @field_validator("LOG_LEVEL", mode="before")
    @classmethod
    def upper_log_level(cls, value):
        return value.upper() if isinstance(value, str) else value


settings = Settings()

HOST = settings.HOST
PORT = settings.PORT
LOG_LEVEL = settings.LOG_LEVEL
WS_PATH = settings.WS_PATH
