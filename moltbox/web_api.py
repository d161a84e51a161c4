"""
Authenticating proxy in front of the OpenClaw gateway.

Every HTTP request and WebSocket upgrade is verified against Cloudflare Access
before it reaches the gateway, then forwarded to ``127.0.0.1:<gateway port>``.
The gateway is started lazily: each request awaits ``ensure_running()``,
which is single-flight, so a burst of requests during boot share one start.

SECURITY: only ``/_moltbox/health`` is served without a verified token.
OPENCLAW_DEV_MODE=true disables verification entirely.
"""

import asyncio
import contextlib
import time
from collections.abc import Iterable, Mapping

import httpx
import websockets
from fastapi import FastAPI, HTTPException, Request, WebSocket
from fastapi.responses import StreamingResponse
from starlette.background import BackgroundTask
from websockets import Subprotocol
from websockets.exceptions import InvalidHandshake

from .config import ConfigMaterializationError
from .log_config import configure_logging, get_logger
from .proxy.access import (
    AccessConfigurationError,
    AccessDeniedError,
    AccessVerifier,
    extract_token,
)
from .proxy.ws_bridge import WebSocketBridge
from .sandbox.entrypoint import materialize_failure, prepare_config
from .sandbox.supervisor import GatewaySupervisor
from .sandbox.sync import DurableStateSync
from .sandbox.types import GatewayStatus, StartResult
from .settings import SandboxSettings

configure_logging()
log = get_logger("web_api", service="proxy")

HEALTH_PATH = "/_moltbox/health"
POLICY_VIOLATION = 1008
INTERNAL_ERROR = 1011

HOP_BY_HOP_HEADERS = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "te",
        "trailer",
        "trailers",
        "transfer-encoding",
        "upgrade",
    }
)
# Set by the websocket handshake itself
WEBSOCKET_HANDSHAKE_HEADERS = frozenset(
    {
        "sec-websocket-key",
        "sec-websocket-version",
        "sec-websocket-extensions",
        "sec-websocket-protocol",
        "sec-websocket-accept",
    }
)
PROXY_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"]


def filter_headers(
    headers: Iterable[tuple[bytes, bytes]], drop: Iterable[str] = ()
) -> list[tuple[bytes, bytes]]:
    """
    Drop hop-by-hop headers (and any the Connection header names).

    Repeated headers such as Set-Cookie are kept in order. Names come back
    lowercased.
    """
    headers = [(name.lower(), value) for name, value in headers]
    excluded = set(HOP_BY_HOP_HEADERS) | {name.lower() for name in drop}
    for name, value in headers:
        if name == b"connection":
            excluded.update(
                token.strip().lower() for token in value.decode("latin-1").split(",") if token.strip()
            )
    return [(name, value) for name, value in headers if name.decode("latin-1") not in excluded]


async def require_access(
    verifier: AccessVerifier, headers: Mapping[str, str], cookies: Mapping[str, str]
) -> dict:
    """
    Verify the request's access token, raising HTTPException on failure.

    Raises:
        HTTPException: 401 if the token is missing or invalid, 503 if access
            verification is misconfigured
    """
    try:
        return await verifier.verify(extract_token(headers, cookies))
    except AccessDeniedError as e:
        log.info("proxy.access_denied", reason=str(e))
        raise HTTPException(
            status_code=401,
            detail="Unauthorized: Invalid or missing access token",
        )
    except AccessConfigurationError as e:
        # Misconfiguration is a server error, not a client error
        raise HTTPException(
            status_code=503,
            detail=f"Service unavailable: Access verification not configured. {e}",
        )


def unavailable(result: StartResult) -> HTTPException:
    return HTTPException(
        status_code=503,
        detail={
            "error": "gateway_unavailable",
            "status": result.status.value,
            "failure": result.failure.model_dump(mode="json") if result.failure else None,
        },
    )


async def backup_loop(sync: DurableStateSync, interval: float) -> None:
    """Back up durable state every ``interval`` seconds until cancelled."""
    while True:
        await asyncio.sleep(interval)
        try:
            await asyncio.to_thread(sync.backup)
        except Exception as e:
            log.error("sync.backup_loop_error", exc=e)


def create_app(
    settings: SandboxSettings | None = None,
    *,
    supervisor: GatewaySupervisor | None = None,
    sync: DurableStateSync | None = None,
    verifier: AccessVerifier | None = None,
    http_client: httpx.AsyncClient | None = None,
    env: Mapping[str, str] | None = None,
) -> FastAPI:
    """Build the proxy application. Collaborators default to ones built from settings."""
    settings = settings or SandboxSettings.from_env()
    supervisor = supervisor or GatewaySupervisor.from_settings(settings)
    sync = sync or DurableStateSync.from_settings(settings)
    owns_client = http_client is None
    client = http_client or httpx.AsyncClient(timeout=httpx.Timeout(300.0, connect=10.0))
    verifier = verifier or AccessVerifier.from_settings(settings, http_client=client)

    @contextlib.asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.config = None
        app.state.boot_failure = None
        start_task = None
        backup_task = None

        if verifier.dev_mode:
            log.warn("proxy.dev_mode_enabled", detail="access verification is disabled")

        try:
            app.state.config = await asyncio.to_thread(prepare_config, settings, sync, env)
        except ConfigMaterializationError as e:
            log.error("sandbox.config_error", exc=e)
            app.state.boot_failure = materialize_failure(e)
        else:
            start_task = asyncio.create_task(supervisor.ensure_running(app.state.config))

        if settings.backup_interval > 0:
            backup_task = asyncio.create_task(backup_loop(sync, settings.backup_interval))

        try:
            yield
        finally:
            for task in (backup_task, start_task):
                if task is not None and not task.done():
                    task.cancel()
                    with contextlib.suppress(asyncio.CancelledError):
                        await task
            await supervisor.shutdown()
            if owns_client:
                await client.aclose()

    app = FastAPI(title="moltbox", lifespan=lifespan, docs_url=None, redoc_url=None, openapi_url=None)
    app.state.config = None
    app.state.boot_failure = None

    async def ensure_gateway() -> StartResult:
        if app.state.boot_failure is not None:
            return app.state.boot_failure
        # A gateway we spawned and still hold is trusted without an HTTP round trip
        if (
            supervisor.status == GatewayStatus.READY
            and supervisor.owns_live_process
            and supervisor.last_result is not None
        ):
            return supervisor.last_result
        return await supervisor.ensure_running(app.state.config)

    @app.get(HEALTH_PATH)
    async def health():
        """Unauthenticated liveness check for the proxy itself."""
        return {
            "status": "ok",
            "gateway": supervisor.status.value,
            "config_error": app.state.boot_failure.failure.reason
            if app.state.boot_failure and app.state.boot_failure.failure
            else None,
        }

    @app.websocket("/{path:path}")
    async def proxy_websocket(websocket: WebSocket, path: str):
        try:
            await require_access(verifier, websocket.headers, websocket.cookies)
        except HTTPException as e:
            log.info("ws.rejected", path=f"/{path}", status_code=e.status_code)
            await websocket.close(code=POLICY_VIOLATION)
            return

        result = await ensure_gateway()
        if not result.ready:
            await websocket.close(code=INTERNAL_ERROR, reason="gateway unavailable")
            return

        url = f"ws://127.0.0.1:{supervisor.port}/{path}"
        if websocket.url.query:
            url = f"{url}?{websocket.url.query}"
        subprotocols = [Subprotocol(p) for p in websocket.scope.get("subprotocols", [])]
        headers = [
            (name.decode("latin-1"), value.decode("latin-1"))
            for name, value in filter_headers(
                websocket.headers.raw, drop={"host", *WEBSOCKET_HANDSHAKE_HEADERS}
            )
        ]

        try:
            upstream = await websockets.connect(
                url,
                subprotocols=subprotocols or None,
                additional_headers=headers,
                max_size=None,
            )
        except (OSError, TimeoutError, InvalidHandshake) as e:
            log.error("ws.upstream_connect_error", exc=e, path=f"/{path}")
            await websocket.close(code=INTERNAL_ERROR, reason="gateway unreachable")
            return

        try:
            await websocket.accept(subprotocol=upstream.subprotocol)
            await WebSocketBridge(websocket, upstream, path=f"/{path}").run()
        finally:
            await upstream.close()

    @app.api_route("/{path:path}", methods=PROXY_METHODS)
    async def proxy_http(request: Request, path: str):
        start_time = time.time()
        await require_access(verifier, request.headers, request.cookies)

        result = await ensure_gateway()
        if not result.ready:
            raise unavailable(result)

        url = f"{supervisor.base_url}/{path}"
        if request.url.query:
            url = f"{url}?{request.url.query}"

        upstream_request = client.build_request(
            request.method,
            url,
            headers=filter_headers(request.headers.raw, drop={"host"}),
            content=await request.body(),
        )
        try:
            upstream = await client.send(upstream_request, stream=True)
        except httpx.TransportError as e:
            log.error("proxy.upstream_error", exc=e, method=request.method, path=f"/{path}")
            raise HTTPException(status_code=502, detail=f"Bad gateway: {type(e).__name__}")

        response = StreamingResponse(
            upstream.aiter_raw(),
            status_code=upstream.status_code,
            background=BackgroundTask(upstream.aclose),
        )
        response.raw_headers = filter_headers(upstream.headers.raw)

        log.info(
            "proxy.http_request",
            method=request.method,
            path=f"/{path}",
            status_code=upstream.status_code,
            duration_ms=int((time.time() - start_time) * 1000),
            outcome="success" if upstream.status_code < 500 else "error",
        )
        return response

    return app
