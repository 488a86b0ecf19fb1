"""HTTP client for the OAuth proxy.

The proxy holds the real client secrets and performs token exchange and
revocation on the host's behalf. Requests carry the ``REDACTED`` sentinel
where a secret would go; the proxy substitutes the real value.
"""

from typing import Any, Optional

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from shared.config import OAuthSettings
from shared.errors import UpstreamUnavailable
from shared.logging import get_logger

logger = get_logger(__name__)

CLIENT_SECRET_SENTINEL = "REDACTED"


class OAuthProxyClient:
    """
    Client for the OAuth proxy.

    Token operations use ``token_timeout``; health and capability probes
    use the shorter ``probe_timeout``. Transport failures, timeouts and
    non-2xx responses all surface as ``UpstreamUnavailable``.
    """

    def __init__(
        self,
        settings: Optional[OAuthSettings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ) -> None:
        """
        Initialize the proxy client.

        Args:
            settings: OAuth settings (proxy URL and timeouts)
            transport: Optional httpx transport, used by tests
        """
        self.settings = settings or OAuthSettings()
        self.base_url = self.settings.proxy_url.rstrip("/")
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.settings.token_timeout,
                headers={
                    "Content-Type": "application/json",
                    "Accept": "application/json",
                },
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "OAuthProxyClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def _request(
        self,
        method: str,
        path: str,
        timeout: float,
        json: Optional[dict[str, Any]] = None
    ) -> dict[str, Any]:
        client = await self._get_client()

        try:
            response = await client.request(method, path, json=json, timeout=timeout)
        except httpx.TimeoutException as e:
            raise UpstreamUnavailable(
                f"OAuth proxy timed out after {timeout}s",
                upstream="oauth-proxy",
                path=path
            ) from e
        except httpx.HTTPError as e:
            raise UpstreamUnavailable(
                f"Cannot reach OAuth proxy: {e}",
                upstream="oauth-proxy",
                path=path
            ) from e

        if response.is_error:
            logger.error(
                "OAuth proxy request failed",
                path=path,
                status=response.status_code,
            )
            raise UpstreamUnavailable(
                f"OAuth proxy failed: {response.status_code} {response.reason_phrase}",
                upstream="oauth-proxy",
                status=response.status_code,
                path=path
            )

        if not response.content:
            return {}

        try:
            return response.json()
        except ValueError as e:
            raise UpstreamUnavailable(
                "OAuth proxy returned a non-JSON response",
                upstream="oauth-proxy",
                status=response.status_code,
                path=path
            ) from e

    async def exchange_generic(
        self,
        server_id: str,
        token_endpoint: str,
        params: dict[str, Any]
    ) -> dict[str, Any]:
        """
        Exchange a code or refresh token through the generic OAuth route.

        Args:
            server_id: MCP server the tokens are for
            token_endpoint: Provider token endpoint the proxy should call
            params: grant_type plus code/redirect_uri or refresh_token

        Returns:
            Raw token response
        """
        body = {
            "grant_type": params.get("grant_type", "authorization_code"),
            "mcp_server_id": server_id,
            "token_endpoint": token_endpoint,
            "client_secret": CLIENT_SECRET_SENTINEL,
        }
        for key in ("code", "redirect_uri", "refresh_token", "code_verifier"):
            if params.get(key) is not None:
                body[key] = params[key]

        logger.info("Exchanging generic OAuth tokens", server_id=server_id)
        return await self._request(
            "POST", "/oauth/token", self.settings.token_timeout, json=body
        )

    async def exchange_via_discovery(
        self,
        server_id: str,
        auth_server_url: str,
        params: dict[str, Any]
    ) -> dict[str, Any]:
        """
        Exchange tokens through the discovery-based route.

        The proxy discovers the token endpoint from ``auth_server_url``.
        """
        body = {
            "authorization_code": params.get("code"),
            "code_verifier": params.get("code_verifier"),
            "redirect_uri": params.get("redirect_uri"),
            "resource": params.get("resource"),
            "authorization_server_url": auth_server_url,
        }
        if params.get("refresh_token") is not None:
            body["refresh_token"] = params["refresh_token"]
            body["grant_type"] = "refresh_token"

        logger.info("Exchanging OAuth tokens via discovery", server_id=server_id)
        return await self._request(
            "POST", f"/mcp/sdk-token/{server_id}", self.settings.token_timeout, json=body
        )

    async def revoke(
        self,
        server_id: str,
        revocation_endpoint: str,
        token: str
    ) -> None:
        """Ask the proxy to revoke a token at the provider."""
        body = {
            "mcp_server_id": server_id,
            "revocation_endpoint": revocation_endpoint,
            "token": token,
            "client_secret": CLIENT_SECRET_SENTINEL,
        }
        await self._request(
            "POST", "/oauth/revoke", self.settings.token_timeout, json=body
        )

    @retry(
        retry=retry_if_exception_type(UpstreamUnavailable),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        reraise=True
    )
    async def health(self) -> dict[str, Any]:
        """
        Check proxy health.

        Returns:
            Health document, including the allowed token destinations
        """
        return await self._request("GET", "/health", self.settings.probe_timeout)
