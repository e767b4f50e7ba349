"""Provisioning configuration via environment variables."""

from pydantic import Field
from pydantic_settings import BaseSettings


class ProvisioningSettings(BaseSettings):
    model_config = {"env_prefix": "PROVISION_"}

    # Bounded wait for a newly created instance to get an address.
    poll_interval_seconds: float = Field(default=5.0, gt=0)
    poll_attempts: int = Field(default=120, ge=1)
    http_timeout_seconds: float = Field(default=30.0, gt=0)

    port_allocation_attempts: int = Field(default=64, ge=1)
    token_reserve_attempts: int = Field(default=5, ge=1)

    probe_timeout_seconds: float = Field(default=5.0, gt=0)
    rcon_timeout_seconds: float = Field(default=5.0, gt=0)
    sdr_attempts: int = Field(default=3, ge=1)
    sdr_retry_delay_seconds: float = Field(default=5.0, ge=0)
    map_change_wait_seconds: float = Field(default=30.0, ge=0)

    steam_api_key: str = ""
    steam_api_url: str = "https://api.steampowered.com"
    steam_app_id: int = 440
    steam_token_memo: str = "Lighthouse"
