"""DigitalOcean provider: one droplet per server, started from user data."""

from __future__ import annotations

from http import HTTPStatus
from typing import TYPE_CHECKING

import httpx
import structlog

from providers.handler import ProviderHandler, required_metadata

if TYPE_CHECKING:
    from shared.dal.models import Server

logger = structlog.get_logger()

DIGITAL_OCEAN_API_URL = "https://api.digitalocean.com/v2"


def _tag(server_id: str) -> str:
    return f"lighthouse-{server_id}"


class DigitalOceanHandler(ProviderHandler):
    """Provider metadata: ``api_token``, ``region``, ``size``, ``image`` (container)
    and optionally ``droplet_image`` and ``ssh_keys``.
    """

    def build_http_client(self) -> httpx.AsyncClient:
        metadata = self.provider.metadata
        return httpx.AsyncClient(
            base_url=metadata.get("api_url", DIGITAL_OCEAN_API_URL),
            headers={"Authorization": f"Bearer {required_metadata(metadata, 'api_token')}"},
            timeout=self._settings.http_timeout_seconds,
        )

    async def provision(self, server: Server) -> Server:
        server = server.model_copy(update={"port": self.profile.default_port})
        options = self.instance_options(server)
        client = await self.http_client()

        response = await client.post(
            "/droplets",
            json={
                "name": options.name,
                "region": required_metadata(options.metadata, "region"),
                "size": required_metadata(options.metadata, "size"),
                "image": options.metadata.get("droplet_image", "docker-20-04"),
                "ssh_keys": options.metadata.get("ssh_keys", []),
                "user_data": options.startup_script(),
                "tags": [_tag(server.id)],
            },
        )
        response.raise_for_status()
        droplet_id = response.json()["droplet"]["id"]
        logger.info("droplet created", server_id=server.id, droplet_id=droplet_id)

        async def _public_ip() -> str | None:
            droplet = (await client.get(f"/droplets/{droplet_id}")).raise_for_status().json()["droplet"]
            for network in droplet.get("networks", {}).get("v4", []):
                if network.get("type") == "public":
                    return network.get("ip_address")
            return None

        ip = await self.poll_for_address(_public_ip, resource=f"droplet {droplet_id}")
        data = dict(server.data)
        tv_port = self.profile.tv_port(options.port)
        if tv_port is not None:
            data["tv_port"] = tv_port
        return server.model_copy(update={"ip": ip, "image": options.image, "data": data})

    async def destroy_instance(self, server: Server) -> None:
        client = await self.http_client()
        response = await client.delete("/droplets", params={"tag_name": _tag(server.id)})
        if response.status_code == HTTPStatus.NOT_FOUND:
            logger.warning("droplet already gone", server_id=server.id)
            return
        response.raise_for_status()
        logger.info("droplets deleted", server_id=server.id, tag=_tag(server.id))
