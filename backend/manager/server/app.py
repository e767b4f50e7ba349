from __future__ import annotations

import asyncio
import contextlib
import json
from http import HTTPStatus
from typing import TYPE_CHECKING, cast

import structlog
from pydantic import ValidationError
from starlette.applications import Starlette
from starlette.exceptions import HTTPException
from starlette.middleware.authentication import AuthenticationMiddleware
from starlette.middleware.cors import CORSMiddleware
from starlette.responses import JSONResponse, Response
from starlette.routing import Route

from games.catalog import GameCatalog
from games.query import probe
from games.setup import InitialSetup
from manager.auth.backend import BearerSecretBackend
from manager.auth.policy import protected_api, public_route, validate_route_auth_policy
from manager.server.settings import ManagerSettings
from manager.servers.errors import AdmissionError
from manager.servers.jobs import JobRunner
from manager.servers.lifecycle import ServerLifecycleController
from manager.servers.monitor import HealthMonitor
from manager.servers.notifications import NotificationDispatcher
from manager.servers.types import CreateServerRequest
from providers.allocator import PortAllocator, TokenPool
from providers.cache import ClientCache
from providers.registry import ProviderRegistry
from providers.settings import ProvisioningSettings
from providers.steam import SteamTokenIssuer
from shared.db import (
    Database,
    SqliteClientRepository,
    SqliteGameRepository,
    SqliteProviderRepository,
    SqliteServerRepository,
    SqliteTokenRepository,
)
from shared.db.fixtures import seed_fixtures
from shared.logging import setup_logging

logger = structlog.get_logger()

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator, Awaitable, Callable

    from starlette.requests import Request

    from providers.allocator import TokenIssuer
    from shared.dal.models import Client, Server


def _server_json(server: Server) -> dict:
    return server.model_dump(mode="json")


def _client(request: Request) -> Client:
    return request.user.client


def _error(reason: str, status_code: int) -> JSONResponse:
    return JSONResponse({"error": reason}, status_code=status_code)


async def _http_error_handler(_request: Request, exc: Exception) -> Response:
    """Render HTTP errors as JSON; 401s carry a fixed message."""
    http_exc = cast("HTTPException", exc)
    if http_exc.status_code == HTTPStatus.UNAUTHORIZED:
        return _error("Authentication required", HTTPStatus.UNAUTHORIZED)
    if http_exc.status_code in {HTTPStatus.NO_CONTENT, HTTPStatus.NOT_MODIFIED}:
        return Response(status_code=http_exc.status_code, headers=http_exc.headers)
    return JSONResponse({"error": http_exc.detail}, status_code=http_exc.status_code, headers=http_exc.headers)


async def health(_request: Request) -> JSONResponse:
    return JSONResponse({"status": "ok"})


async def create_server(request: Request) -> JSONResponse:
    lifecycle: ServerLifecycleController = request.app.state.lifecycle

    try:
        body = json.loads(await request.body() or b"{}")
    except ValueError:
        return _error("Invalid JSON body", HTTPStatus.UNPROCESSABLE_ENTITY)

    try:
        server_request = CreateServerRequest.model_validate(body)
    except ValidationError as e:
        return _error(str(e), HTTPStatus.UNPROCESSABLE_ENTITY)

    try:
        server = await lifecycle.create_request(_client(request), server_request)
    except AdmissionError as e:
        return _error(e.reason, e.status_code)

    return JSONResponse(_server_json(server), status_code=HTTPStatus.CREATED)


async def list_servers(request: Request) -> JSONResponse:
    lifecycle: ServerLifecycleController = request.app.state.lifecycle
    if request.query_params.get("all", "").lower() == "true":
        servers = await lifecycle.list_all(_client(request))
    else:
        servers = await lifecycle.list_active(_client(request))
    return JSONResponse({"servers": [_server_json(server) for server in servers]})


async def get_server(request: Request) -> JSONResponse:
    lifecycle: ServerLifecycleController = request.app.state.lifecycle
    try:
        server = await lifecycle.get_for_client(_client(request), request.path_params["server_id"])
    except AdmissionError as e:
        return _error(e.reason, e.status_code)
    return JSONResponse(_server_json(server))


async def close_server(request: Request) -> Response:
    lifecycle: ServerLifecycleController = request.app.state.lifecycle
    try:
        await lifecycle.close_request(_client(request), request.path_params["server_id"])
    except AdmissionError as e:
        return _error(e.reason, e.status_code)
    return Response(status_code=HTTPStatus.NO_CONTENT)


async def region_providers(request: Request) -> JSONResponse:
    registry: ProviderRegistry = request.app.state.registry
    providers = await registry.available(_client(request), request.path_params["region"])
    return JSONResponse({"providers": providers})


def create_app(
    settings: ManagerSettings | None = None,
    provisioning: ProvisioningSettings | None = None,
    *,
    token_issuer: TokenIssuer | None = None,
    probe_func: Callable[..., Awaitable] = probe,
    setup: InitialSetup | None = None,
) -> Starlette:
    if settings is None:  # pragma: no cover
        settings = ManagerSettings()
    if provisioning is None:  # pragma: no cover
        provisioning = ProvisioningSettings()

    routes = [
        Route("/health", public_route(health), methods=["GET"], name="health"),
        Route("/api/v1/servers", protected_api(list_servers), methods=["GET"], name="list_servers"),
        Route("/api/v1/servers", protected_api(create_server), methods=["POST"], name="create_server"),
        Route("/api/v1/servers/{server_id}", protected_api(get_server), methods=["GET"], name="get_server"),
        Route("/api/v1/servers/{server_id}", protected_api(close_server), methods=["DELETE"], name="close_server"),
        Route(
            "/api/v1/providers/region/{region}",
            protected_api(region_providers),
            methods=["GET"],
            name="region_providers",
        ),
    ]
    validate_route_auth_policy(routes)

    db = Database(settings.database_path)
    db.connect()
    servers = SqliteServerRepository(db)
    clients = SqliteClientRepository(db)
    games = SqliteGameRepository(db)
    providers = SqliteProviderRepository(db)
    tokens = SqliteTokenRepository(db)

    if token_issuer is None and provisioning.steam_api_key:
        token_issuer = SteamTokenIssuer.from_settings(provisioning)
    token_pool = TokenPool(tokens, servers, token_issuer, max_attempts=provisioning.token_reserve_attempts)
    registry = ProviderRegistry(
        providers,
        servers,
        cache=ClientCache(timeout=provisioning.http_timeout_seconds),
        ports=PortAllocator(servers, max_attempts=provisioning.port_allocation_attempts),
        tokens=token_pool,
        settings=provisioning,
    )
    catalog = GameCatalog(games)
    jobs = JobRunner()
    lifecycle = ServerLifecycleController(
        servers,
        catalog=catalog,
        registry=registry,
        tokens=token_pool,
        jobs=jobs,
        notifications=NotificationDispatcher(jobs, timeout=settings.notification_timeout_seconds),
        defaults=settings.server_defaults,
    )
    if setup is None:
        setup = InitialSetup(
            sdr_attempts=provisioning.sdr_attempts,
            sdr_retry_delay=provisioning.sdr_retry_delay_seconds,
            map_change_wait=provisioning.map_change_wait_seconds,
            rcon_timeout=provisioning.rcon_timeout_seconds,
        )
    monitor = HealthMonitor(
        servers,
        lifecycle=lifecycle,
        catalog=catalog,
        setup=setup,
        jobs=jobs,
        interval=settings.monitor_interval_seconds,
        probe_timeout=provisioning.probe_timeout_seconds,
        probe_func=probe_func,
    )

    @contextlib.asynccontextmanager
    async def lifespan(_app: Starlette) -> AsyncGenerator[None]:
        if settings.fixtures_path is not None:
            await seed_fixtures(settings.fixtures_path, games=games, providers=providers, clients=clients)
        if settings.monitor_enabled:
            monitor.start()
        yield
        await monitor.stop()
        try:
            async with asyncio.timeout(settings.shutdown_grace_seconds):
                await jobs.drain()
        except TimeoutError:
            logger.warning("cancelling unfinished background jobs", jobs=len(jobs))
            await jobs.cancel_all()
        await registry.aclose()
        db.close()

    app = Starlette(
        routes=routes,
        lifespan=lifespan,
        exception_handlers={HTTPException: _http_error_handler},
    )
    app.add_middleware(AuthenticationMiddleware, backend=BearerSecretBackend(clients))  # type: ignore[arg-type]
    app.add_middleware(
        CORSMiddleware,  # type: ignore[arg-type]
        allow_origins=settings.cors_origins,
        allow_methods=["GET", "POST", "DELETE"],
        allow_headers=["Authorization", "Content-Type"],
    )

    app.state.settings = settings
    app.state.db = db
    app.state.jobs = jobs
    app.state.registry = registry
    app.state.lifecycle = lifecycle
    app.state.monitor = monitor

    logger.info("lighthouse manager ready")
    return app


def get_app() -> Starlette:  # pragma: no cover
    """Factory function for uvicorn --factory manager.server.app:get_app."""
    s = ManagerSettings()
    setup_logging(log_dir=s.log_dir)
    return create_app(settings=s, provisioning=ProvisioningSettings())
