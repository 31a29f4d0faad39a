import hmac

from fastapi import Depends, Header

from .deps import get_gateway
from .errors import AuthenticationError
from .state import GatewayState


async def require_api_key(
    authorization: str | None = Header(default=None),
    gateway: GatewayState = Depends(get_gateway),
) -> str:
    """
    Clients authenticate with `Authorization: Bearer <DEFAULT_KEY>`.
    """
    if not authorization:
        raise AuthenticationError("Missing Authorization header")

    scheme, _, token = authorization.partition(" ")
    token = token.strip()
    if scheme.lower() != "bearer" or not token:
        raise AuthenticationError("Invalid Authorization header, expected 'Bearer <key>'")

    expected = gateway.settings.default_key
    if not hmac.compare_digest(token.encode("utf-8"), expected.encode("utf-8")):
        raise AuthenticationError("Invalid API key")
    return token
