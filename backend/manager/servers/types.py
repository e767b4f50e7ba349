from typing import Any

from pydantic import BaseModel, Field


class CreateServerRequest(BaseModel):
    game: str = Field(min_length=1)
    region: str = Field(min_length=1)
    provider: str = Field(min_length=1)
    # password, rcon_password, close_* thresholds, callback_url, map, config,
    # git_repository, git_deploy_key, sdr_enable, tv_enable, ...
    data: dict[str, Any] = Field(default_factory=dict)


class ServerDefaults(BaseModel, frozen=True):
    """Thresholds applied when a request does not set them."""

    close_min_players: int = Field(default=2, ge=1)
    close_idle_time: int = Field(default=900, ge=0)
    close_wait_time: int = Field(default=300, ge=0)
