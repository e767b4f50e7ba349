"""Manager server configuration via environment variables."""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings

from manager.servers.types import ServerDefaults
from shared.validators import StringListEnvSettingsSource, parse_string_list

if TYPE_CHECKING:
    from pydantic_settings.sources.base import PydanticBaseSettingsSource


class ManagerSettings(BaseSettings):
    model_config = {"env_prefix": "LIGHTHOUSE_"}

    database_path: str = "backend/storage/lighthouse.db"
    log_dir: str = "backend/logs/manager"
    fixtures_path: Path | None = None
    cors_origins: list[str] = []

    monitor_enabled: bool = True
    monitor_interval_seconds: float = Field(default=30.0, gt=0)

    default_close_min_players: int = Field(default=2, ge=1)
    default_close_idle_time: int = Field(default=900, ge=0)
    default_close_wait_time: int = Field(default=300, ge=0)

    notification_timeout_seconds: float = Field(default=10.0, gt=0)
    # Background jobs get this long to finish at shutdown before they are cancelled.
    shutdown_grace_seconds: float = Field(default=10.0, ge=0)

    @field_validator("cors_origins", mode="before")
    @classmethod
    def validate_cors_origins(cls, v: str | list[str]) -> list[str]:
        return parse_string_list(v, allow_empty=True)

    @property
    def server_defaults(self) -> ServerDefaults:
        return ServerDefaults(
            close_min_players=self.default_close_min_players,
            close_idle_time=self.default_close_idle_time,
            close_wait_time=self.default_close_wait_time,
        )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,  # noqa: ARG003
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return (init_settings, StringListEnvSettingsSource(settings_cls), dotenv_settings, file_secret_settings)
