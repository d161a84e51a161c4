"""Tests for the authenticating proxy application."""

import asyncio
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from moltbox.proxy.access import AccessConfigurationError, AccessDeniedError, AccessVerifier
from moltbox.sandbox.types import GatewayStatus, StartResult, StartupFailure, StartupStep
from moltbox.settings import SandboxSettings
from moltbox.web_api import create_app, filter_headers

READY = StartResult(status=GatewayStatus.READY, spawned=True, pid=7)


class MockGateway:
    """httpx.MockTransport handler recording forwarded requests."""

    def __init__(self):
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(
            201,
            headers=[
                ("content-type", "text/plain"),
                ("set-cookie", "a=1"),
                ("set-cookie", "b=2"),
                ("keep-alive", "timeout=5"),
            ],
            content=b"from gateway",
        )


CLOSE = object()


class EchoUpstream:
    """Stands in for the gateway's websocket: echoes text, closes with 4000 on "bye"."""

    subprotocol = "openclaw.v1"

    def __init__(self):
        self.incoming: asyncio.Queue = asyncio.Queue()
        self.received: list = []
        self.closes: list[tuple[int, str]] = []
        self.close_code: int | None = None
        self.close_reason: str | None = None

    def __aiter__(self):
        return self

    async def __anext__(self):
        message = await self.incoming.get()
        if message is CLOSE:
            raise StopAsyncIteration
        return message

    async def send(self, message) -> None:
        self.received.append(message)
        if message == "bye":
            self.close_code, self.close_reason = 4000, "done"
            self.incoming.put_nowait(CLOSE)
        else:
            self.incoming.put_nowait(f"echo:{message}")

    async def close(self, code: int = 1000, reason: str = "") -> None:
        self.closes.append((code, reason))


def create_supervisor(result: StartResult = READY) -> MagicMock:
    supervisor = MagicMock()
    supervisor.port = 18789
    supervisor.base_url = "http://127.0.0.1:18789"
    supervisor.status = result.status
    supervisor.owns_live_process = False
    supervisor.last_result = None
    supervisor.ensure_running = AsyncMock(return_value=result)
    supervisor.shutdown = AsyncMock()
    return supervisor


def create_verifier(error: Exception | None = None) -> MagicMock:
    verifier = MagicMock()
    verifier.dev_mode = False
    verifier.verify = AsyncMock(side_effect=error, return_value={"sub": "user-1"})
    return verifier


@pytest.fixture
def settings(tmp_path: Path) -> SandboxSettings:
    return SandboxSettings(
        config_dir=tmp_path / "config",
        template_file=tmp_path / "missing.template",
        durable_root=tmp_path / "not-mounted",
        workspace_dir=tmp_path / "clawd",
        skills_dir=tmp_path / "clawd" / "skills",
        backup_interval=0,
    )


@pytest.fixture
def gateway() -> MockGateway:
    return MockGateway()


def build_client(settings, gateway, supervisor=None, verifier=None, env=None) -> TestClient:
    app = create_app(
        settings,
        supervisor=supervisor or create_supervisor(),
        verifier=verifier or create_verifier(),
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(gateway)),
        env=env or {},
    )
    return TestClient(app)


class TestFilterHeaders:
    def test_drops_hop_by_hop_and_connection_listed(self):
        headers = [
            (b"Connection", b"close, X-Internal"),
            (b"X-Internal", b"1"),
            (b"Transfer-Encoding", b"chunked"),
            (b"Set-Cookie", b"a=1"),
            (b"Set-Cookie", b"b=2"),
        ]

        assert filter_headers(headers) == [(b"set-cookie", b"a=1"), (b"set-cookie", b"b=2")]


class TestHealth:
    def test_unauthenticated(self, settings, gateway):
        """Health is served even when every token would be rejected."""
        verifier = create_verifier(AccessDeniedError("no token"))

        with build_client(settings, gateway, verifier=verifier) as client:
            response = client.get("/_moltbox/health")

        assert response.status_code == 200
        assert response.json()["gateway"] == "ready"
        verifier.verify.assert_not_called()


class TestAuthentication:
    """Access verification on proxied routes."""

    def test_denied_is_401(self, settings, gateway):
        with build_client(
            settings, gateway, verifier=create_verifier(AccessDeniedError("bad"))
        ) as client:
            response = client.get("/")

        assert response.status_code == 401
        assert gateway.requests == []

    def test_misconfigured_is_503(self, settings, gateway):
        verifier = create_verifier(AccessConfigurationError("CF_ACCESS_AUD missing"))

        with build_client(settings, gateway, verifier=verifier) as client:
            response = client.get("/")

        assert response.status_code == 503
        assert "not configured" in response.json()["detail"]

    def test_token_passed_to_verifier(self, settings, gateway):
        verifier = create_verifier()

        with build_client(settings, gateway, verifier=verifier) as client:
            client.get("/", headers={"Cf-Access-Jwt-Assertion": "tok"})

        verifier.verify.assert_awaited_once_with("tok")

    def test_dev_mode_bypass(self, settings, gateway):
        verifier = AccessVerifier(team_domain="", audience="", dev_mode=True)

        with build_client(settings, gateway, verifier=verifier) as client:
            response = client.get("/")

        assert response.status_code == 201

    def test_websocket_denied_before_accept(self, settings, gateway):
        """A rejected upgrade is closed with policy violation."""
        verifier = create_verifier(AccessDeniedError("bad"))

        with build_client(settings, gateway, verifier=verifier) as client:
            with pytest.raises(WebSocketDisconnect) as exc_info:
                with client.websocket_connect("/ws"):
                    pass

        assert exc_info.value.code == 1008


class TestForwarding:
    """HTTP forwarding to the gateway."""

    def test_request_forwarded(self, settings, gateway):
        with build_client(settings, gateway) as client:
            response = client.post(
                "/api/sessions?limit=5",
                content=b'{"x": 1}',
                headers={"X-Custom": "yes", "Content-Type": "application/json"},
            )

        assert response.status_code == 201
        assert response.content == b"from gateway"
        forwarded = gateway.requests[0]
        assert forwarded.method == "POST"
        assert forwarded.url.path == "/api/sessions"
        assert forwarded.url.query == b"limit=5"
        assert forwarded.url.host == "127.0.0.1"
        assert forwarded.url.port == 18789
        assert forwarded.headers["x-custom"] == "yes"
        assert forwarded.headers["host"] == "127.0.0.1:18789"
        assert forwarded.content == b'{"x": 1}'

    def test_repeated_headers_preserved(self, settings, gateway):
        with build_client(settings, gateway) as client:
            response = client.get("/")

        assert response.headers.get_list("set-cookie") == ["a=1", "b=2"]
        assert "keep-alive" not in response.headers

    def test_upstream_unreachable_is_502(self, settings):
        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        with build_client(settings, refuse) as client:
            response = client.get("/")

        assert response.status_code == 502


class TestGatewayUnavailable:
    """Requests while the gateway cannot start."""

    def test_failed_start_is_503(self, settings, gateway):
        failed = StartResult(
            status=GatewayStatus.FAILED,
            spawned=True,
            failure=StartupFailure(
                step=StartupStep.AWAIT_READY,
                reason="gateway exited before becoming ready",
                last_output="Error: bad config",
                exit_code=1,
            ),
        )

        with build_client(settings, gateway, supervisor=create_supervisor(failed)) as client:
            response = client.get("/")

        assert response.status_code == 503
        detail = response.json()["detail"]
        assert detail["failure"]["step"] == "await_ready"
        assert detail["failure"]["exit_code"] == 1
        assert gateway.requests == []

    def test_config_error_reported(self, settings, gateway):
        """A materialisation error is surfaced without attempting a start."""
        supervisor = create_supervisor()
        env = {"DISCORD_BOT_TOKEN": "dc", "DISCORD_DM_POLICY": "allowlist"}

        with build_client(settings, gateway, supervisor=supervisor, env=env) as client:
            health = client.get("/_moltbox/health").json()
            response = client.get("/")

        assert "DISCORD_DM_ALLOW_FROM" in health["config_error"]
        assert response.status_code == 503
        assert response.json()["detail"]["failure"]["step"] == "materialize"
        supervisor.ensure_running.assert_not_called()

    def test_lifespan_starts_and_stops_gateway(self, settings, gateway):
        supervisor = create_supervisor()

        with build_client(settings, gateway, supervisor=supervisor):
            pass

        config = supervisor.ensure_running.call_args.args[0]
        assert config["gateway"]["port"] == 18789
        supervisor.shutdown.assert_awaited_once()


class TestWebSocketForwarding:
    """WebSocket upgrades are bridged to the gateway."""

    def test_duplex_session(self, settings, gateway):
        upstream = EchoUpstream()
        connect = AsyncMock(return_value=upstream)

        with patch("moltbox.web_api.websockets.connect", connect):
            with build_client(settings, gateway) as client:
                with client.websocket_connect(
                    "/chat?session=1", subprotocols=["openclaw.v1"], headers={"X-Custom": "yes"}
                ) as ws:
                    assert ws.accepted_subprotocol == "openclaw.v1"
                    ws.send_text("hello")
                    assert ws.receive_text() == "echo:hello"
                    ws.send_text("bye")
                    with pytest.raises(WebSocketDisconnect) as exc_info:
                        ws.receive_text()

        assert exc_info.value.code == 4000
        assert upstream.received == ["hello", "bye"]
        assert upstream.closes

        args, kwargs = connect.call_args
        assert args[0] == "ws://127.0.0.1:18789/chat?session=1"
        assert kwargs["subprotocols"] == ["openclaw.v1"]
        forwarded = dict(kwargs["additional_headers"])
        assert forwarded["x-custom"] == "yes"
        assert "host" not in forwarded
        assert "sec-websocket-key" not in forwarded
        assert "sec-websocket-protocol" not in forwarded

    def test_gateway_unavailable_closes_1011(self, settings, gateway):
        failed = StartResult(status=GatewayStatus.FAILED)
        connect = AsyncMock()

        with patch("moltbox.web_api.websockets.connect", connect):
            with build_client(settings, gateway, supervisor=create_supervisor(failed)) as client:
                with pytest.raises(WebSocketDisconnect) as exc_info:
                    with client.websocket_connect("/ws"):
                        pass

        assert exc_info.value.code == 1011
        connect.assert_not_called()

    def test_upstream_connect_failure_closes_1011(self, settings, gateway):
        connect = AsyncMock(side_effect=OSError("connection refused"))

        with patch("moltbox.web_api.websockets.connect", connect):
            with build_client(settings, gateway) as client:
                with pytest.raises(WebSocketDisconnect) as exc_info:
                    with client.websocket_connect("/ws"):
                        pass

        assert exc_info.value.code == 1011


class TestReadyGatewayShortcut:
    """A live gateway spawned by this proxy is not re-checked per request."""

    def test_live_process_skips_start_attempt(self, settings, gateway):
        supervisor = create_supervisor()
        supervisor.owns_live_process = True
        supervisor.last_result = READY

        with build_client(settings, gateway, supervisor=supervisor) as client:
            responses = [client.get("/") for _ in range(3)]

        assert [r.status_code for r in responses] == [201, 201, 201]
        # Only the lifespan's initial start
        assert supervisor.ensure_running.call_count == 1

    def test_exited_process_triggers_new_attempt(self, settings, gateway):
        supervisor = create_supervisor()
        supervisor.owns_live_process = False
        supervisor.last_result = READY

        with build_client(settings, gateway, supervisor=supervisor) as client:
            client.get("/")
            client.get("/")

        assert supervisor.ensure_running.call_count == 3
