"""OAuth token broker.

Exchanges, refreshes and revokes tokens through the OAuth proxy and maps
tokens into server environments. The host never holds a client secret.
"""

from datetime import datetime, timedelta
from typing import Any, Optional

from pydantic import ValidationError as PydanticValidationError

from shared.config import OAuthSettings, TokenMapping
from shared.errors import UpstreamUnavailable, ValidationError
from shared.logging import get_logger
from shared.models import OAuthServerConfig, TokenSet, utcnow

from oauth_broker.env import resolve_environment_variables
from oauth_broker.proxy import OAuthProxyClient

logger = get_logger(__name__)


def tokens_expired(
    tokens: TokenSet,
    buffer_minutes: int = 5,
    issued_at: Optional[datetime] = None
) -> bool:
    """
    Check whether tokens are expired or expire within the buffer.

    Tokens without ``expires_in`` are treated as valid. Without
    ``issued_at`` the lifetime is measured from now.
    """
    if not tokens.expires_in:
        return False

    now = utcnow()
    expiry = (issued_at or now) + timedelta(seconds=tokens.expires_in)
    return expiry - timedelta(minutes=buffer_minutes) <= now


def map_tokens_to_env(
    env: dict[str, str],
    tokens: TokenSet,
    mapping: TokenMapping
) -> dict[str, str]:
    """
    Copy tokens into environment variables.

    ``access_token`` goes to the primary variable and ``refresh_token`` to
    the secondary one. Values already present in ``env`` win.

    Returns:
        A new environment mapping
    """
    result = dict(env)

    if tokens.access_token and not result.get(mapping.primary):
        result[mapping.primary] = tokens.access_token

    if mapping.secondary and tokens.refresh_token and not result.get(mapping.secondary):
        result[mapping.secondary] = tokens.refresh_token

    return result


class OAuthBroker:
    """
    Token operations on behalf of MCP servers.

    Two exchange paths exist: the generic path, where the caller knows the
    provider's token endpoint, and the discovery path, where the proxy
    discovers it from the authorization server URL.
    """

    def __init__(
        self,
        settings: Optional[OAuthSettings] = None,
        proxy: Optional[OAuthProxyClient] = None
    ) -> None:
        self.settings = settings or OAuthSettings()
        self.proxy = proxy or OAuthProxyClient(self.settings)

    async def close(self) -> None:
        await self.proxy.close()

    def resolve_config(self, config: OAuthServerConfig) -> OAuthServerConfig:
        """
        Resolve ``process.env.NAME`` references in a provider config.

        Raises:
            ValidationError: If a required field resolves to nothing
        """
        resolved = resolve_environment_variables(config.model_dump(exclude_none=True))
        try:
            return OAuthServerConfig.model_validate(resolved)
        except PydanticValidationError as e:
            raise ValidationError(
                f"OAuth config '{config.name}' references unset environment variables",
                errors=[err["msg"] for err in e.errors()],
            ) from e

    def token_mapping(self, provider: Optional[str]) -> Optional[TokenMapping]:
        """Configured env mapping for a browser-auth provider."""
        if not provider:
            return None
        return self.settings.token_mappings.get(provider)

    def tokens_expired(self, tokens: TokenSet, issued_at: Optional[datetime] = None) -> bool:
        return tokens_expired(tokens, self.settings.expiry_buffer_minutes, issued_at)

    async def exchange_generic(
        self,
        server_id: str,
        token_endpoint: str,
        params: dict[str, Any]
    ) -> TokenSet:
        """Exchange via the proxy's generic ``/oauth/token`` route."""
        data = await self.proxy.exchange_generic(server_id, token_endpoint, params)
        return self._parse_tokens(server_id, data)

    async def exchange_via_discovery(
        self,
        server_id: str,
        auth_server_url: str,
        params: dict[str, Any]
    ) -> TokenSet:
        """Exchange via the proxy's discovery ``/mcp/sdk-token/{id}`` route."""
        data = await self.proxy.exchange_via_discovery(server_id, auth_server_url, params)
        return self._parse_tokens(server_id, data)

    async def exchange_code(
        self,
        server_id: str,
        config: OAuthServerConfig,
        params: dict[str, Any]
    ) -> TokenSet:
        """
        Exchange an authorization code using whichever path the config selects.

        Args:
            server_id: MCP server the tokens are for
            config: Provider config (env references are resolved here)
            params: code, redirect_uri and, for discovery, code_verifier/resource
        """
        config = self.resolve_config(config)
        params = {"grant_type": "authorization_code", **params}

        if config.generic_oauth:
            return await self.exchange_generic(
                server_id, self._require_token_endpoint(config), params
            )

        return await self.exchange_via_discovery(
            server_id, config.auth_server_url or config.server_url, params
        )

    async def refresh(
        self,
        server_id: str,
        config: OAuthServerConfig,
        refresh_token: str
    ) -> TokenSet:
        """
        Refresh tokens.

        The old refresh token is kept when the provider does not return a
        new one.
        """
        config = self.resolve_config(config)
        params = {"grant_type": "refresh_token", "refresh_token": refresh_token}

        if config.generic_oauth:
            tokens = await self.exchange_generic(
                server_id, self._require_token_endpoint(config), params
            )
        else:
            tokens = await self.exchange_via_discovery(
                server_id, config.auth_server_url or config.server_url, params
            )

        if not tokens.refresh_token:
            tokens = tokens.model_copy(update={"refresh_token": refresh_token})

        logger.info("OAuth tokens refreshed", server_id=server_id)
        return tokens

    async def revoke(
        self,
        server_id: str,
        endpoint: Optional[str],
        token: Optional[str]
    ) -> None:
        """
        Revoke a token, best effort.

        A missing endpoint or token is a no-op. Failures are logged and
        never raised; expiry still applies to an unrevoked token.
        """
        if not endpoint or not token:
            return

        try:
            await self.proxy.revoke(server_id, endpoint, token)
            logger.info("OAuth token revoked", server_id=server_id)
        except Exception as e:
            logger.warning("OAuth token revocation failed", server_id=server_id, error=str(e))

    async def health(self) -> list[str]:
        """
        Check the proxy and list the token destinations it allows.

        Raises:
            UpstreamUnavailable: If the proxy is unreachable
        """
        data = await self.proxy.health()
        destinations = data.get("allowed_destinations", data.get("destinations", []))
        return list(destinations or [])

    def _require_token_endpoint(self, config: OAuthServerConfig) -> str:
        if not config.token_endpoint:
            raise ValidationError(
                f"Generic OAuth config '{config.name}' has no token_endpoint"
            )
        return config.token_endpoint

    def _parse_tokens(self, server_id: str, data: dict[str, Any]) -> TokenSet:
        try:
            tokens = TokenSet.model_validate(data)
        except PydanticValidationError as e:
            raise UpstreamUnavailable(
                "OAuth proxy returned an invalid token response",
                upstream="oauth-proxy",
                server_id=server_id
            ) from e

        logger.info("OAuth token exchange successful", server_id=server_id)
        return tokens
