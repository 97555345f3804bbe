"""Runtime configuration."""

from functools import lru_cache
from typing import Annotated
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from .broadcaster import MAX_CLIENTS_PER_ROOM
from .controller import MAX_DURATION_SECONDS, TICK_SECONDS
from .registry import MAX_ROOMS


class Settings(BaseSettings):
    """Service settings, read from ``EXAM_TIMER_*`` environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="EXAM_TIMER_", env_file=".env", case_sensitive=False, extra="ignore"
    )

    host: str = Field(default="127.0.0.1")
    port: int = Field(default=3000)
    log_level: str = Field(default="INFO")
    cors_allow_origins: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: ["http://localhost:5173", "http://127.0.0.1:5173"]
    )

    identity_base_url: str = Field(default="http://127.0.0.1:8000/api")
    identity_timeout_seconds: float = Field(default=10.0, gt=0)
    token_cache_ttl_seconds: float = Field(default=60.0, ge=0)
    control_roles: Annotated[list[str], NoDecode] = Field(default_factory=lambda: ["teacher"])

    tick_seconds: float = Field(default=TICK_SECONDS, gt=0)
    server_timezone: str = Field(default="America/La_Paz")
    max_duration_seconds: int = Field(default=MAX_DURATION_SECONDS, ge=1)
    max_rooms: int = Field(default=MAX_ROOMS, ge=1)
    max_clients_per_room: int = Field(default=MAX_CLIENTS_PER_ROOM, ge=1)
    websocket_idle_seconds: float = Field(default=30.0, gt=0)

    @field_validator("cors_allow_origins", "control_roles", mode="before")
    @classmethod
    def _split_csv(cls, value: object) -> object:
        """Allow comma-separated env values for list settings."""
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("server_timezone")
    @classmethod
    def _check_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"Unknown time zone: {value}") from e
        return value


@lru_cache
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()
