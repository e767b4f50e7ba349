"""Kubernetes node provider: one host-network Deployment pinned to a node."""

from __future__ import annotations

from http import HTTPStatus
from typing import TYPE_CHECKING

import httpx
import structlog

from games.templates import render_deployment
from providers.handler import ProviderHandler, required_metadata

if TYPE_CHECKING:
    from shared.dal.models import Server

logger = structlog.get_logger()


class KubernetesHandler(ProviderHandler):
    """Provider metadata: ``api_url``, ``token``, ``namespace``, ``hostname``
    (node name), ``ip`` (node address), ``image``, ``ports`` and optionally
    ``verify_tls``.
    """

    @property
    def _namespace(self) -> str:
        return self.provider.metadata.get("namespace", "default")

    def _deployments_path(self) -> str:
        return f"/apis/apps/v1/namespaces/{self._namespace}/deployments"

    def build_http_client(self) -> httpx.AsyncClient:
        metadata = self.provider.metadata
        return httpx.AsyncClient(
            base_url=required_metadata(metadata, "api_url"),
            headers={"Authorization": f"Bearer {required_metadata(metadata, 'token')}"},
            verify=metadata.get("verify_tls", True),
            timeout=self._settings.http_timeout_seconds,
        )

    async def provision(self, server: Server) -> Server:
        server = await self._ports.allocate(self.provider, server)
        node_ip = required_metadata(self.provider.metadata, "ip")
        options = self.instance_options(server, ip=node_ip)
        manifest = render_deployment(
            name=options.name,
            app=options.app,
            id=server.id,
            image=options.image,
            hostname=required_metadata(options.metadata, "hostname"),
            args=options.args,
            git_repository=options.git_repository,
            git_deploy_key=options.git_deploy_key,
        )

        client = await self.http_client()
        response = await client.post(self._deployments_path(), json=manifest)
        response.raise_for_status()
        logger.info("deployment created", server_id=server.id, name=options.name, ip=node_ip, port=server.port)

        data = dict(server.data)
        tv_port = self.profile.tv_port(options.port)
        if tv_port is not None:
            data["tv_port"] = tv_port
        return server.model_copy(update={"ip": node_ip, "image": options.image, "data": data})

    async def destroy_instance(self, server: Server) -> None:
        name = f"{self.game.slug}-{server.id}"
        client = await self.http_client()
        response = await client.delete(
            f"{self._deployments_path()}/{name}",
            params={"propagationPolicy": "Background"},
        )
        if response.status_code == HTTPStatus.NOT_FOUND:
            logger.warning("deployment already gone", server_id=server.id, name=name)
            return
        response.raise_for_status()
        logger.info("deployment deleted", server_id=server.id, name=name)
