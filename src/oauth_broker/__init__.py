"""OAuth brokering through a remote proxy that holds the client secrets."""

from oauth_broker.broker import OAuthBroker, map_tokens_to_env, tokens_expired
from oauth_broker.env import resolve_environment_variables
from oauth_broker.proxy import CLIENT_SECRET_SENTINEL, OAuthProxyClient

__all__ = [
    "OAuthBroker",
    "OAuthProxyClient",
    "CLIENT_SECRET_SENTINEL",
    "map_tokens_to_env",
    "resolve_environment_variables",
    "tokens_expired",
]
