"""
Caller authentication.

Token verification is delegated to the identity provider: the bearer token
is sent to its introspection endpoint (RFC 7662) and the returned subject is
the caller's external auth id. This service never inspects tokens itself.
"""

from __future__ import annotations

import httpx

from converse.config import Settings
from converse.exceptions import AuthenticationError, ConfigurationError, IdentityProviderError
from converse.logging import get_logger
from converse.types import Caller

logger = get_logger(__name__)


def bearer_token(authorization: str | None) -> str:
    """Extract the token from an Authorization header.

    Raises:
        AuthenticationError: If the header is missing or not a bearer token.
    """
    if not authorization:
        raise AuthenticationError("Missing Authorization header")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise AuthenticationError("Authorization header must be a bearer token")
    return token.strip()


class Authenticator:
    """Resolves bearer tokens to callers through the identity provider."""

    def __init__(
        self,
        introspect_url: str | None,
        client_secret: str | None = None,
        timeout: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.introspect_url = introspect_url
        self.client_secret = client_secret
        self.timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @classmethod
    def from_settings(cls, settings: Settings) -> Authenticator:
        return cls(settings.AUTH_INTROSPECT_URL, settings.AUTH_CLIENT_SECRET)

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout, transport=self._transport)
        return self._client

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def authenticate(self, authorization: str | None) -> Caller:
        """Verify the caller's token.

        Args:
            authorization: Raw Authorization header value.

        Returns:
            The authenticated caller.

        Raises:
            AuthenticationError: If the token is missing, inactive or rejected.
            IdentityProviderError: If the identity provider is unreachable or
                answers with a server error.
            ConfigurationError: If no introspection endpoint is configured.
        """
        token = bearer_token(authorization)

        if not self.introspect_url:
            raise ConfigurationError("AUTH_INTROSPECT_URL is not configured")

        data = {"token": token}
        if self.client_secret:
            data["client_secret"] = self.client_secret

        client = await self._get_client()
        try:
            response = await client.post(self.introspect_url, data=data)
        except httpx.HTTPError as e:
            logger.warning("Identity provider unreachable", error=str(e))
            raise IdentityProviderError(
                "Identity provider unreachable", context={"error": str(e)}
            ) from e

        if response.status_code >= 500:
            raise IdentityProviderError(
                "Identity provider failed",
                context={"status_code": response.status_code},
            )
        if response.status_code != 200:
            raise AuthenticationError(
                "Token rejected by identity provider",
                context={"status_code": response.status_code},
            )

        try:
            claims = response.json()
        except ValueError as e:
            raise AuthenticationError("Identity provider returned invalid JSON") from e

        subject = claims.get("sub")
        if not claims.get("active") or not isinstance(subject, str) or not subject:
            raise AuthenticationError("Token is not active")

        return Caller(auth_id=subject, token=token)
