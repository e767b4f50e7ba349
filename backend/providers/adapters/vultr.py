"""Vultr provider: one cloud instance per server, started from user data."""

from __future__ import annotations

import base64
from http import HTTPStatus
from typing import TYPE_CHECKING

import httpx
import structlog

from providers.handler import ProviderHandler, required_metadata

if TYPE_CHECKING:
    from shared.dal.models import Server

logger = structlog.get_logger()

VULTR_API_URL = "https://api.vultr.com/v2"
_UNASSIGNED_IP = "0.0.0.0"  # noqa: S104 - Vultr's placeholder before the address is assigned


class VultrHandler(ProviderHandler):
    """Provider metadata: ``api_key``, ``region``, ``plan``, ``image`` (container)
    and optionally ``app_id`` (defaults to the Docker marketplace app).
    """

    def build_http_client(self) -> httpx.AsyncClient:
        metadata = self.provider.metadata
        return httpx.AsyncClient(
            base_url=metadata.get("api_url", VULTR_API_URL),
            headers={"Authorization": f"Bearer {required_metadata(metadata, 'api_key')}"},
            timeout=self._settings.http_timeout_seconds,
        )

    async def provision(self, server: Server) -> Server:
        server = server.model_copy(update={"port": self.profile.default_port})
        options = self.instance_options(server)
        client = await self.http_client()

        user_data = base64.b64encode(options.startup_script().encode()).decode()
        response = await client.post(
            "/instances",
            json={
                "region": required_metadata(options.metadata, "region"),
                "plan": required_metadata(options.metadata, "plan"),
                "app_id": options.metadata.get("app_id", 37),
                "label": options.name,
                "user_data": user_data,
            },
        )
        response.raise_for_status()
        instance_id = response.json()["instance"]["id"]
        logger.info("vultr instance created", server_id=server.id, instance_id=instance_id)

        async def _main_ip() -> str | None:
            instance = (await client.get(f"/instances/{instance_id}")).raise_for_status().json()["instance"]
            if instance.get("status") != "active" or instance.get("main_ip") in (None, "", _UNASSIGNED_IP):
                return None
            return instance["main_ip"]

        ip = await self.poll_for_address(_main_ip, resource=f"vultr instance {instance_id}")
        data = dict(server.data)
        tv_port = self.profile.tv_port(options.port)
        if tv_port is not None:
            data["tv_port"] = tv_port
        return server.model_copy(update={"ip": ip, "image": options.image, "data": data})

    async def destroy_instance(self, server: Server) -> None:
        label = f"{self.game.slug}-{server.id}"
        client = await self.http_client()
        response = await client.get("/instances", params={"label": label})
        response.raise_for_status()
        instances = response.json().get("instances", [])
        if not instances:
            logger.warning("vultr instance already gone", server_id=server.id, label=label)
            return
        for instance in instances:
            deleted = await client.delete(f"/instances/{instance['id']}")
            if deleted.status_code != HTTPStatus.NOT_FOUND:
                deleted.raise_for_status()
            logger.info("vultr instance deleted", server_id=server.id, instance_id=instance["id"])
