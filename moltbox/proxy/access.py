"""
Cloudflare Access token verification for the proxy.

Tokens are RS256 JWTs signed by the team's Access keys, published at
``https://<team>.cloudflareaccess.com/cdn-cgi/access/certs``. Keys are cached
with a TTL; when stale they keep being served while a single background
refresh runs. Every concurrent refresh shares one in-flight fetch.

Dev mode (OPENCLAW_DEV_MODE=true) skips verification for every request. It is
insecure and only meant for local development.
"""

import asyncio
import time
from collections.abc import Mapping
from typing import Any

import httpx
import jwt

from ..log_config import get_logger
from ..settings import SandboxSettings

TOKEN_HEADER = "cf-access-jwt-assertion"
TOKEN_COOKIE = "CF_Authorization"
ALGORITHMS = ["RS256"]


class AccessConfigurationError(Exception):
    """Verification cannot run: team domain, audience or key source is unavailable."""

    pass


class AccessDeniedError(Exception):
    """The request carried no valid access token."""

    pass


def team_issuer(team_domain: str) -> str:
    """Normalise ``myteam`` / ``myteam.cloudflareaccess.com`` / full URL to the issuer URL."""
    domain = team_domain.strip().rstrip("/")
    if domain.startswith("https://") or domain.startswith("http://"):
        return domain
    if "." not in domain:
        domain = f"{domain}.cloudflareaccess.com"
    return f"https://{domain}"


class AccessKeyCache:
    """JWKS cache with a freshness window and single-flight refresh."""

    FORCED_REFRESH_INTERVAL = 30.0

    def __init__(
        self,
        certs_url: str,
        ttl_seconds: float = 300.0,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.certs_url = certs_url
        self.ttl_seconds = ttl_seconds
        self.http_client = http_client

        self._keys: dict[str, dict[str, Any]] = {}
        self._fetched_at: float | None = None
        self._refresh_task: asyncio.Task[dict[str, dict[str, Any]]] | None = None
        self.fetch_count = 0

        self.log = get_logger("access", service="proxy")

    @property
    def is_fresh(self) -> bool:
        return (
            self._fetched_at is not None
            and time.monotonic() - self._fetched_at < self.ttl_seconds
        )

    async def get_keys(self, force_refresh: bool = False) -> dict[str, dict[str, Any]]:
        """
        Return ``kid -> JWK``.

        Fresh keys are returned as-is. Stale keys are returned immediately while
        a background refresh runs. With no keys at all, callers wait for the
        in-flight fetch.
        """
        if force_refresh:
            recently = (
                self._fetched_at is not None
                and time.monotonic() - self._fetched_at < self.FORCED_REFRESH_INTERVAL
            )
            if not recently:
                return await asyncio.shield(self._start_refresh())
            return self._keys

        if self._keys and self.is_fresh:
            return self._keys

        task = self._start_refresh()
        if self._keys:
            return self._keys
        return await asyncio.shield(task)

    def _start_refresh(self) -> asyncio.Task[dict[str, dict[str, Any]]]:
        if self._refresh_task is None or self._refresh_task.done():
            self._refresh_task = asyncio.create_task(self._fetch())
            self._refresh_task.add_done_callback(self._log_refresh_failure)
        return self._refresh_task

    def _log_refresh_failure(self, task: asyncio.Task[dict[str, dict[str, Any]]]) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self.log.warn("access.keys_refresh_error", exc=exc, has_stale_keys=bool(self._keys))

    async def _fetch(self) -> dict[str, dict[str, Any]]:
        self.fetch_count += 1
        start_time = time.time()

        if self.http_client is not None:
            resp = await self.http_client.get(self.certs_url, timeout=10.0)
        else:
            async with httpx.AsyncClient() as client:
                resp = await client.get(self.certs_url, timeout=10.0)
        resp.raise_for_status()

        keys = {
            jwk["kid"]: jwk
            for jwk in resp.json().get("keys", [])
            if isinstance(jwk, dict) and jwk.get("kid")
        }
        if not keys:
            raise AccessConfigurationError(f"No signing keys published at {self.certs_url}")

        self._keys = keys
        self._fetched_at = time.monotonic()
        self.log.info(
            "access.keys_refreshed",
            key_count=len(keys),
            duration_ms=int((time.time() - start_time) * 1000),
        )
        return keys


def extract_token(headers: Mapping[str, str], cookies: Mapping[str, str]) -> str | None:
    """Find the access token in the assertion header, a bearer header, or the cookie."""
    token = headers.get(TOKEN_HEADER)
    if token:
        return token

    authorization = headers.get("authorization", "")
    scheme, _, credentials = authorization.partition(" ")
    if scheme.lower() == "bearer" and credentials.strip():
        return credentials.strip()

    return cookies.get(TOKEN_COOKIE) or None


class AccessVerifier:
    """Verify access tokens against the team's published keys."""

    def __init__(
        self,
        team_domain: str,
        audience: str,
        key_cache: AccessKeyCache | None = None,
        dev_mode: bool = False,
    ):
        self.dev_mode = dev_mode
        self.audience = audience
        self.issuer = team_issuer(team_domain) if team_domain else ""
        self.key_cache = key_cache or AccessKeyCache(
            f"{self.issuer}/cdn-cgi/access/certs" if self.issuer else ""
        )
        self.log = get_logger("access", service="proxy")

    @classmethod
    def from_settings(
        cls,
        settings: SandboxSettings,
        http_client: httpx.AsyncClient | None = None,
    ) -> "AccessVerifier":
        issuer = team_issuer(settings.access_team_domain) if settings.access_team_domain else ""
        cache = AccessKeyCache(
            f"{issuer}/cdn-cgi/access/certs" if issuer else "",
            ttl_seconds=settings.access_keys_ttl,
            http_client=http_client,
        )
        return cls(
            team_domain=settings.access_team_domain,
            audience=settings.access_audience,
            key_cache=cache,
            dev_mode=settings.dev_mode,
        )

    async def verify(self, token: str | None) -> dict[str, Any]:
        """
        Verify ``token`` and return its claims.

        Raises:
            AccessDeniedError: token missing, malformed, unsigned by a known key,
                expired, or for another audience
            AccessConfigurationError: team domain / audience not configured or
                keys unavailable
        """
        if self.dev_mode:
            return {"sub": "dev-mode", "dev_mode": True}

        if not self.issuer or not self.audience:
            raise AccessConfigurationError("CF_ACCESS_TEAM_DOMAIN and CF_ACCESS_AUD must be set")

        if not token:
            raise AccessDeniedError("Missing access token")

        try:
            kid = jwt.get_unverified_header(token).get("kid")
        except jwt.PyJWTError as e:
            raise AccessDeniedError(f"Malformed access token: {e}") from e

        try:
            keys = await self.key_cache.get_keys()
            if kid not in keys:
                keys = await self.key_cache.get_keys(force_refresh=True)
        except (httpx.HTTPError, ValueError) as e:
            raise AccessConfigurationError(f"Access keys unavailable: {e}") from e

        jwk = keys.get(kid)
        if jwk is None:
            raise AccessDeniedError("Access token signed by an unknown key")

        try:
            signing_key = jwt.PyJWK(jwk).key
            return jwt.decode(
                token,
                key=signing_key,
                algorithms=ALGORITHMS,
                audience=self.audience,
                issuer=self.issuer,
            )
        except jwt.PyJWTError as e:
            raise AccessDeniedError(f"Invalid access token: {e}") from e
