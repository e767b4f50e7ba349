"""Best-effort status webhooks to the client's callback URL."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import httpx
import structlog

if TYPE_CHECKING:
    from manager.servers.jobs import JobRunner
    from shared.dal.models import Server

logger = structlog.get_logger()


class NotificationError(Exception):
    """The callback endpoint answered with an error status."""


class NotificationDispatcher:
    """POSTs ``{callback_url}?status=<STATUS>`` with the server record as JSON.

    Delivery runs as a background job: it never blocks, reverts or fails
    the transition that triggered it.
    """

    def __init__(
        self,
        jobs: JobRunner,
        *,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._jobs = jobs
        self._timeout = timeout
        self._transport = transport

    def notify(self, server: Server, **extra: Any) -> None:  # noqa: ANN401
        if not server.callback_url:
            logger.info("status updated", server_id=server.id, status=server.status)
            return
        self._jobs.submit(self.send(server, extra), name=f"notify-{server.id}-{server.status}")

    async def send(self, server: Server, extra: dict[str, Any] | None = None) -> None:
        url = server.callback_url
        log = logger.bind(server_id=server.id, status=server.status, callback_url=url)
        log.info("notifying callback url")
        try:
            await self._post(url, server, extra or {})
        except httpx.ConnectError:
            log.warning("failed to connect to callback url")
        except (httpx.HTTPError, NotificationError):
            log.exception("failed to notify callback url")

    async def _post(self, url: str, server: Server, extra: dict[str, Any]) -> None:
        payload = {**server.model_dump(mode="json"), **extra}
        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
            response = await client.post(url, params={"status": server.status.value}, json=payload)
        if response.is_error:
            raise NotificationError(f"Callback answered {response.status_code}")
