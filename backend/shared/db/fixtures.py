"""Seed data for providers, clients and games, loaded from YAML.

Example::

    games:
      - slug: tf2
        query_type: a2s
    providers:
      - id: k8s-eu-1
        kind: KUBERNETES_NODE
        region: eu
        limit: 10
        metadata: {ports: {min: 27000, max: 27100}}
    clients:
      - id: bookings
        secret: change-me        # or secret_hash: <sha256 hex>
        access: {games: [tf2], limit: 5, regions: {eu: {limit: 3}}}
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import structlog
import yaml
from pydantic import BaseModel, Field, model_validator

from shared.dal.models import Client, Game, Provider, hash_secret

if TYPE_CHECKING:
    from pathlib import Path

    from shared.dal.client_repository import ClientRepository
    from shared.dal.game_repository import GameRepository
    from shared.dal.provider_repository import ProviderRepository

logger = structlog.get_logger()


class Fixtures(BaseModel):
    games: list[Game] = Field(default_factory=list)
    providers: list[Provider] = Field(default_factory=list)
    clients: list[Client] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _hash_plain_secrets(cls, data: Any) -> Any:  # noqa: ANN401
        if not isinstance(data, dict):
            return data
        clients = []
        for raw in data.get("clients") or []:
            entry = dict(raw)
            if "secret" in entry:
                entry["secret_hash"] = hash_secret(str(entry.pop("secret")))
            clients.append(entry)
        return {**data, "clients": clients}


def load_fixtures(path: Path) -> Fixtures:
    """Parse a fixtures file. A missing file yields empty fixtures."""
    if not path.exists():
        logger.warning("fixtures file not found", path=str(path))
        return Fixtures()
    with path.open() as f:
        raw = yaml.safe_load(f) or {}
    return Fixtures.model_validate(raw)


async def seed_fixtures(
    path: Path,
    *,
    games: GameRepository,
    providers: ProviderRepository,
    clients: ClientRepository,
) -> Fixtures:
    """Upsert every fixture record; existing ids are overwritten."""
    fixtures = load_fixtures(path)
    for game in fixtures.games:
        await games.upsert(game)
    for provider in fixtures.providers:
        await providers.upsert(provider)
    for client in fixtures.clients:
        await clients.upsert(client)
    logger.info(
        "fixtures loaded",
        path=str(path),
        games=len(fixtures.games),
        providers=len(fixtures.providers),
        clients=len(fixtures.clients),
    )
    return fixtures
